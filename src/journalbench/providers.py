# Copyright (c) Syntropy Systems
"""Chat-completion providers.

Every provider exposes one capability: given a system prompt, messages and a
temperature, return text plus token usage, or raise ProviderError. Which
implementation a run gets is decided once, by ProviderFactory, from the
provider name; the stub is a provider like any other (``stub:echo``), never a
silent stand-in for a missing API key.
"""
from __future__ import annotations

import logging
import os
import time
from collections.abc import Mapping
from types import TracebackType
from typing import Protocol, cast

import httpx
from pydantic import BaseModel, ValidationError
from typing_extensions import Self

from journalbench.cost import LOCAL_PROVIDERS, estimate_tokens
from journalbench.errors import ProviderError, ProviderTimeoutError
from journalbench.models.experiment import Completion
from journalbench.prompts import FIELD_LABELS, split_entry_blocks

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "google": "https://generativelanguage.googleapis.com/v1beta/openai",
    "deepseek": "https://api.deepseek.com/v1",
    "ollama": "http://localhost:11434/v1",
    "lmstudio": "http://localhost:1234/v1",
}

API_KEY_ENV: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY",),
    "google": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
    "deepseek": ("DEEPSEEK_API_KEY",),
}

# HTTP statuses worth retrying at the batch level
TRANSIENT_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


class ChatMessage(BaseModel):
    role: str
    content: str


class ChatProvider(Protocol):
    """The uniform chat-completion capability."""

    name: str
    model: str

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        temperature: float,
        timeout: float,
    ) -> Completion:
        ...

    def close(self) -> None:
        ...


class StubProvider:
    """Deterministic offline provider.

    The model id picks the behavior:

    * ``echo``   - reports every entry field back as "You wrote that ..."
    * ``edges``  - like echo, but only for the first and last entry in the
                   prompt (a model that loses the middle of its context)
    * ``fail``   - raises a permanent ProviderError
    * ``silent`` - answers with encouragement only, no journal facts
    """

    OPENING = "Here is your weekly summary."
    CLOSING = "Keep pushing, you've got this!"

    def __init__(self, model: str = "echo", delay: float = 0.0) -> None:
        self.name = "stub"
        self.model = model
        self.delay = delay

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        temperature: float,
        timeout: float,
    ) -> Completion:
        if self.delay:
            if self.delay > timeout:
                time.sleep(timeout)
                msg = f"stub/{self.model} timed out after {timeout:g}s"
                raise ProviderTimeoutError(msg)
            time.sleep(self.delay)
        mode = self.model.lower()
        if mode == "fail":
            raise ProviderError("stub provider configured to fail")

        prompt = "\n".join(m.content for m in messages if m.role == "user")
        blocks = split_entry_blocks(prompt)
        if mode == "edges" and len(blocks) > 2:
            blocks = [blocks[0], blocks[-1]]
        if mode == "silent":
            blocks = []

        lines = [self.OPENING]
        for block in blocks:
            for line in block:
                lines.extend(self._echo_line(line))
        lines.append(self.CLOSING)
        text = "\n".join(lines)

        return Completion(
            text=text,
            input_tokens=estimate_tokens(system_prompt + prompt),
            output_tokens=estimate_tokens(text),
        )

    @staticmethod
    def _echo_line(line: str) -> list[str]:
        labels = set(FIELD_LABELS.values()) | {"Feeling", "Reflection", "Barriers"}
        sentences = []
        for part in line.split(" | "):
            label, sep, value = part.partition(": ")
            value = value.strip()
            if sep and label in labels and value:
                sentences.append(f"You wrote that {value.rstrip('.')}.")
        return sentences

    def close(self) -> None:
        pass


class _ChoiceMessage(BaseModel):
    content: str | None = None


class _Choice(BaseModel):
    message: _ChoiceMessage


class _Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0


class _ChatCompletionResponse(BaseModel):
    choices: list[_Choice]
    usage: _Usage | None = None


class OpenAICompatibleProvider:
    """Provider speaking the OpenAI chat-completions wire format over httpx."""

    def __init__(
        self,
        name: str,
        model: str,
        base_url: str,
        api_key: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            name: Provider name, used in error messages
            model: Model id sent with every request
            base_url: API root, e.g. "https://api.openai.com/v1"
            api_key: Bearer token; local servers need none
            transport: Optional httpx transport, for tests

        """
        self.name = name
        self.model = model
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.Client(headers=headers, transport=transport)

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def complete(
        self,
        system_prompt: str,
        messages: list[ChatMessage],
        temperature: float,
        timeout: float,
    ) -> Completion:
        payload = {
            "model": self.model,
            "temperature": temperature,
            "messages": [{"role": "system", "content": system_prompt}]
            + [m.model_dump() for m in messages],
        }
        label = f"{self.name}/{self.model}"
        try:
            response = self._client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                timeout=timeout,
            )
            _ = response.raise_for_status()
            parsed = _ChatCompletionResponse.model_validate(response.json())
        except httpx.TimeoutException as e:
            msg = f"{label} timed out after {timeout:g}s"
            raise ProviderTimeoutError(msg) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            msg = f"{label} returned HTTP {status}: {e.response.text[:200]}"
            raise ProviderError(msg, transient=status in TRANSIENT_STATUSES) from e
        except httpx.RequestError as e:
            msg = f"Connection error talking to {label}: {e}"
            raise ProviderError(msg, transient=True) from e
        except (ValidationError, ValueError) as e:
            msg = f"Malformed response from {label}: {e}"
            raise ProviderError(msg) from e

        if not parsed.choices or parsed.choices[0].message.content is None:
            msg = f"Malformed response from {label}: no message content"
            raise ProviderError(msg)

        text = parsed.choices[0].message.content
        usage = parsed.usage or _Usage()
        prompt_text = system_prompt + "".join(m.content for m in messages)
        return Completion(
            text=text,
            input_tokens=usage.prompt_tokens or estimate_tokens(prompt_text),
            output_tokens=usage.completion_tokens or estimate_tokens(text),
        )


class ProviderFactory:
    """Build providers by name.

    ``stub`` yields a StubProvider; every other name is an OpenAI-compatible
    endpoint, from ``endpoints`` or DEFAULT_ENDPOINTS. Hosted providers need
    an API key in the environment; a missing key is a permanent provider
    error for the run that asked, not a fallback to the stub.
    """

    def __init__(
        self,
        endpoints: Mapping[str, str] | None = None,
        environ: Mapping[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.endpoints = {**DEFAULT_ENDPOINTS, **(endpoints or {})}
        self._environ = environ if environ is not None else os.environ
        self._transport = transport

    def available(self) -> list[str]:
        return sorted({"stub", *self.endpoints})

    def create(self, provider: str, model: str) -> ChatProvider:
        provider = provider.strip().lower()
        if provider == "stub":
            return StubProvider(model)

        base_url = self.endpoints.get(provider)
        if base_url is None:
            msg = f"No endpoint configured for provider '{provider}'"
            raise ProviderError(msg)

        api_key = self._api_key(provider)
        if api_key is None and provider not in LOCAL_PROVIDERS:
            names = " or ".join(API_KEY_ENV.get(provider, (f"{provider.upper()}_API_KEY",)))
            msg = f"No API key for provider '{provider}' (set {names})"
            raise ProviderError(msg)

        logger.debug("Creating %s provider for model %s at %s", provider, model, base_url)
        provider_impl = OpenAICompatibleProvider(
            provider, model, base_url, api_key=api_key, transport=self._transport
        )
        return cast("ChatProvider", provider_impl)

    def _api_key(self, provider: str) -> str | None:
        for env_name in API_KEY_ENV.get(provider, (f"{provider.upper()}_API_KEY",)):
            value = self._environ.get(env_name)
            if value:
                return value
        return None
