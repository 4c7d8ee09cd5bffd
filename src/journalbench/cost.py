# Copyright (c) Syntropy Systems
"""Table-driven cost estimates for chat-completion calls.

Pure lookups, no I/O. Unknown provider/model pairs fall back to a
conservative default rate so a cost estimate never blocks a run.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

# USD per 1K tokens: (input, output)
RATES_PER_1K: dict[str, tuple[Decimal, Decimal]] = {
    "openai:gpt-4o": (Decimal("0.0025"), Decimal("0.01")),
    "openai:gpt-4o-mini": (Decimal("0.00015"), Decimal("0.0006")),
    "openai:gpt-4-turbo": (Decimal("0.01"), Decimal("0.03")),
    "anthropic:claude-3-opus": (Decimal("0.015"), Decimal("0.075")),
    "anthropic:claude-3-sonnet": (Decimal("0.003"), Decimal("0.015")),
    "anthropic:claude-3-haiku": (Decimal("0.00025"), Decimal("0.00125")),
    "anthropic:claude-sonnet-4": (Decimal("0.003"), Decimal("0.015")),
    "deepseek:deepseek-chat": (Decimal("0.00014"), Decimal("0.00028")),
    "deepseek:deepseek-coder": (Decimal("0.00014"), Decimal("0.00028")),
    "google:gemini-1.5-pro": (Decimal("0.00125"), Decimal("0.005")),
    "google:gemini-1.5-flash": (Decimal("0.000075"), Decimal("0.0003")),
}

DEFAULT_RATE: tuple[Decimal, Decimal] = (Decimal("0.001"), Decimal("0.002"))

# Providers that run on the operator's own hardware
LOCAL_PROVIDERS = frozenset({"ollama", "lmstudio", "local", "stub"})

_ZERO = Decimal(0)
_QUANTUM = Decimal("0.000001")
_PER = Decimal(1000)


@dataclass(frozen=True)
class CostBreakdown:
    """Estimated cost of a call or run, in USD."""

    input_cost: float
    output_cost: float
    total_cost: float
    currency: str = "USD"


def is_local(provider: str) -> bool:
    return provider.strip().lower() in LOCAL_PROVIDERS


def rate_for(provider: str, model: str) -> tuple[Decimal, Decimal]:
    """Per-1K (input, output) rates for a provider and model.

    Exact "provider:model" keys win; otherwise the longest table model that
    appears inside the model id, so dated ids like gpt-4o-mini-2024-07-18
    price as gpt-4o-mini rather than gpt-4o.
    """
    provider = provider.strip().lower()
    model = model.strip().lower()
    if provider in LOCAL_PROVIDERS:
        return (_ZERO, _ZERO)

    exact = RATES_PER_1K.get(f"{provider}:{model}")
    if exact is not None:
        return exact

    best: tuple[Decimal, Decimal] | None = None
    best_len = 0
    for key, rates in RATES_PER_1K.items():
        key_provider, _, key_model = key.partition(":")
        if key_provider == provider and key_model in model and len(key_model) > best_len:
            best = rates
            best_len = len(key_model)
    return best if best is not None else DEFAULT_RATE


def _money(value: Decimal) -> float:
    return float(value.quantize(_QUANTUM, rounding=ROUND_HALF_UP))


def cost_breakdown(
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
) -> CostBreakdown:
    input_rate, output_rate = rate_for(provider, model)
    input_cost = Decimal(max(input_tokens, 0)) / _PER * input_rate
    output_cost = Decimal(max(output_tokens, 0)) / _PER * output_rate
    return CostBreakdown(
        input_cost=_money(input_cost),
        output_cost=_money(output_cost),
        total_cost=_money(input_cost + output_cost),
    )


def estimate_cost(
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
) -> float:
    """Estimated USD cost of the given token usage."""
    return cost_breakdown(provider, model, input_tokens, output_tokens).total_cost


def estimate_tokens(text: str) -> int:
    """Rough token count at about four characters per token."""
    return max(len(text) // 4, 1) if text else 0
