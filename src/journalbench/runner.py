# Copyright (c) Syntropy Systems
"""Experiment runner: one experiment against one provider and model."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from journalbench.claims import extract_claims
from journalbench.config import LabConfig
from journalbench.cost import estimate_cost
from journalbench.errors import (
    PersistenceError,
    ProviderError,
    ProviderTimeoutError,
    RunCancelledError,
)
from journalbench.journal import select_entries
from journalbench.models.enums import (
    EventType,
    ExperimentStatus,
    ExperimentType,
    NeedlePosition,
)
from journalbench.models.experiment import (
    Completion,
    ExperimentConfig,
    ExtractedClaim,
    JournalEntry,
    PositionOutcome,
    ProgressEvent,
    RunResult,
    parse_experiment_config,
)
from journalbench.position import describe_u_curve, evaluate_position
from journalbench.prompts import (
    PromptPlan,
    build_user_prompt,
    insert_needle,
    needle_entry,
    system_prompt,
)
from journalbench.providers import ChatMessage, ChatProvider, ProviderFactory

if TYPE_CHECKING:
    from journalbench.db import Database
    from journalbench.journal import JournalSource
    from journalbench.models.base import JSONObject
    from journalbench.progress import ProgressChannel

logger = logging.getLogger(__name__)


@dataclass
class _RunState:
    run_id: int
    config: ExperimentConfig
    channel: Optional[ProgressChannel]
    cancel_event: Optional[threading.Event]
    batch_id: Optional[str]
    terminal_events: bool
    entries: list[JournalEntry] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    tokens_by_label: dict[str, int] = field(default_factory=dict)
    claims: list[ExtractedClaim] = field(default_factory=list)
    positions: list[PositionOutcome] = field(default_factory=list)


class ExperimentRunner:
    """Runs experiments and owns their run records.

    A run moves pending -> running -> completed|failed and nothing else
    writes to it while it is active. Capability failures, timeouts and
    cancellation fail the run with a message and keep whatever was already
    persisted; nothing is retried here.

    Provider calls go through an executor owned by the run, so a call that
    hangs past its timeout only ever holds that run's thread.
    """

    def __init__(
        self,
        db: Database,
        journal: JournalSource,
        providers: ProviderFactory,
        config: LabConfig | None = None,
    ) -> None:
        self.db = db
        self.journal = journal
        self.providers = providers
        self.config = config or LabConfig()

    def prepare(self, config: ExperimentConfig | JSONObject) -> ExperimentConfig:
        """Validate a config and fill run-time defaults."""
        parsed = parse_experiment_config(config)
        updates: dict[str, object] = {}
        if parsed.experiment_type is ExperimentType.POSITION and not parsed.needle_fact:
            updates["needle_fact"] = self.config.default_needle_fact
        if "prompt_version" not in parsed.model_fields_set:
            updates["prompt_version"] = self.config.prompt_version
        return parsed.model_copy(update=updates) if updates else parsed

    def create_run(self, config: ExperimentConfig, batch_id: Optional[str] = None) -> int:
        """Record a pending run."""
        return self.db.create_run(self.prepare(config), batch_id=batch_id)

    def cancel_pending(self, run_id: int, reason: str) -> bool:
        """Fail a run that never started. False if it already started."""
        run = self.db.require_run(run_id)
        if run.status is not ExperimentStatus.PENDING:
            return False
        return self.db.finish_run(run_id, ExperimentStatus.FAILED, reason)

    def run(
        self,
        config: ExperimentConfig | JSONObject,
        run_id: Optional[int] = None,
        channel: Optional[ProgressChannel] = None,
        cancel_event: Optional[threading.Event] = None,
        batch_id: Optional[str] = None,
        terminal_events: bool = True,
    ) -> RunResult:
        """Execute one experiment and return its outcome.

        Args:
            config: Experiment configuration; validated before anything is stored
            run_id: A pending run created earlier (by the batch dispatcher);
                a new run is created when omitted
            channel: Progress channel to publish events on
            cancel_event: Checked before every capability call
            batch_id: Correlation id attached to published events
            terminal_events: Publish ``complete``/``error`` at the end; the
                batch dispatcher turns this off and reports per provider instead

        Raises:
            ConfigurationError: the configuration is invalid (no run is created)
            PersistenceError: the store failed; the run is left as last committed

        """
        config = self.prepare(config)
        if run_id is None:
            run_id = self.db.create_run(config, batch_id=batch_id)

        state = _RunState(
            run_id=run_id,
            config=config,
            channel=channel,
            cancel_event=cancel_event,
            batch_id=batch_id,
            terminal_events=terminal_events,
        )
        self._emit(
            state,
            EventType.PROGRESS,
            f"Starting {config.experiment_type.value} experiment on "
            f"{config.provider}/{config.model}",
        )

        try:
            return self._execute(state)
        except PersistenceError as e:
            logger.error("Run %s stopped on a storage error: %s", run_id, e)
            if state.terminal_events:
                self._emit(
                    state,
                    EventType.ERROR,
                    f"Run {run_id} stopped on a storage error: {e}",
                    {"retryable": True},
                )
            raise

    def _execute(self, state: _RunState) -> RunResult:
        config = state.config
        try:
            entries = select_entries(
                self.journal.get_entries(config.athlete_id),
                config.entry_order,
                config.max_entries,
            )
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception("Journal fetch failed for athlete %s", config.athlete_id)
            return self._fail(state, f"Journal fetch failed: {e}")

        try:
            provider = self.providers.create(config.provider, config.model)
        except ProviderError as e:
            return self._fail(state, str(e), retryable=e.transient)

        calls = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"journalbench-run-{state.run_id}")
        try:
            self.db.mark_run_running(state.run_id, len(entries))
            state.entries = entries
            self._emit(state, EventType.PROGRESS, f"Loaded {len(entries)} journal entries")
            for plan in self._plans(config, entries):
                self._check_cancel(state)
                self._emit(state, EventType.PROGRESS, f"Calling {config.provider}/{config.model} ({plan.label})")
                completion = self._call(calls, provider, plan, config)
                self._record_usage(state, plan, completion)
                self._evaluate(state, plan, completion.text)
        except ProviderError as e:
            return self._fail(state, str(e), retryable=e.transient)
        except RunCancelledError as e:
            return self._fail(state, str(e), retryable=True)
        finally:
            # A timed-out call may still be running; it is abandoned, not awaited
            calls.shutdown(wait=False, cancel_futures=True)
            provider.close()

        self.db.finish_run(state.run_id, ExperimentStatus.COMPLETED)
        result = self._result(state, ExperimentStatus.COMPLETED)
        logger.info(
            "Run %s completed: %d tokens, $%.6f",
            state.run_id, result.tokens_used, result.estimated_cost,
        )
        if state.terminal_events:
            self._emit(
                state,
                EventType.COMPLETE,
                f"Run {state.run_id} completed",
                {
                    "status": result.status.value,
                    "tokens": result.tokens_used,
                    "cost": result.estimated_cost,
                    "supported_claims": result.supported_claim_count,
                    "claims": len(result.claims),
                },
            )
        return result

    def _plans(self, config: ExperimentConfig, entries: list[JournalEntry]) -> list[PromptPlan]:
        if config.experiment_type is ExperimentType.POSITION:
            needle = needle_entry(config.needle_fact or self.config.default_needle_fact, entries)
            return [
                PromptPlan(
                    label=position.value,
                    system_prompt=system_prompt(config.persona),
                    user_prompt=build_user_prompt(insert_needle(entries, needle, position)),
                    persona=config.persona,
                    position=position,
                )
                for position in NeedlePosition
            ]

        if config.experiment_type is ExperimentType.COMPRESSION:
            persona = config.persona
            limited = entries[: self.config.limited_entry_count]
            return [
                PromptPlan(
                    f"{persona.value}/full",
                    system_prompt(persona),
                    build_user_prompt(entries),
                    persona,
                ),
                PromptPlan(
                    f"{persona.value}/compressed",
                    system_prompt(persona),
                    build_user_prompt(
                        entries,
                        compressed=True,
                        include_metadata=False,
                        field_length=self.config.compressed_field_length,
                    ),
                    persona,
                ),
                PromptPlan(
                    f"{persona.value}/limited",
                    system_prompt(persona),
                    build_user_prompt(limited),
                    persona,
                ),
            ]

        user_prompt = build_user_prompt(entries)
        return [
            PromptPlan(persona.value, system_prompt(persona), user_prompt, persona)
            for persona in config.personas()
        ]

    def _check_cancel(self, state: _RunState) -> None:
        if state.cancel_event is not None and state.cancel_event.is_set():
            raise RunCancelledError("Cancelled: batch was cancelled before this call")

    def _call(
        self,
        calls: ThreadPoolExecutor,
        provider: ChatProvider,
        plan: PromptPlan,
        config: ExperimentConfig,
    ) -> Completion:
        timeout = self.config.call_timeout
        label = f"{config.provider}/{config.model}"
        future = calls.submit(
            provider.complete,
            plan.system_prompt,
            [ChatMessage(role="user", content=plan.user_prompt)],
            config.temperature,
            timeout,
        )
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError as e:
            msg = f"{label} did not answer within {timeout:g}s"
            raise ProviderTimeoutError(msg) from e
        except ProviderError:
            raise
        except Exception as e:
            logger.exception("Unexpected error from %s", label)
            msg = f"{label} call failed: {e}"
            raise ProviderError(msg) from e

    def _record_usage(self, state: _RunState, plan: PromptPlan, completion: Completion) -> None:
        config = state.config
        state.input_tokens += completion.input_tokens
        state.output_tokens += completion.output_tokens
        state.tokens_by_label[plan.label] = completion.input_tokens + completion.output_tokens
        try:
            state.cost = estimate_cost(
                config.provider, config.model, state.input_tokens, state.output_tokens
            )
        except Exception:
            logger.exception("Cost estimate failed for %s/%s; keeping last estimate", config.provider, config.model)
        self.db.update_run_usage(state.run_id, state.input_tokens, state.output_tokens, state.cost)
        self._emit(
            state,
            EventType.PROGRESS,
            f"{plan.label}: {completion.input_tokens + completion.output_tokens} tokens",
            {"tokens": state.input_tokens + state.output_tokens, "cost": state.cost},
        )

    def _evaluate(self, state: _RunState, plan: PromptPlan, text: str) -> None:
        if plan.position is not None:
            outcome = evaluate_position(plan.position, state.config.needle_fact or "", text)
            self.db.add_position_test(state.run_id, outcome)
            state.positions.append(outcome)
            self._emit(
                state,
                EventType.POSITION,
                f"Needle at {plan.position.value}: {'found' if outcome.found else 'not found'}",
                {
                    "position": plan.position.value,
                    "found": outcome.found,
                    "confidence": outcome.confidence,
                    "snippet": outcome.snippet,
                },
            )
            return

        try:
            claims = extract_claims(text, state.entries)
        except Exception:
            logger.exception("Claim extraction failed for run %s (%s)", state.run_id, plan.label)
            claims = []
        claims = [c.model_copy(update={"persona": plan.label}) for c in claims]
        self.db.add_claims(state.run_id, claims, persona=plan.label)
        state.claims.extend(claims)
        supported = sum(1 for c in claims if c.is_supported)
        self._emit(
            state,
            EventType.CLAIM,
            f"{plan.label}: {supported}/{len(claims)} claims supported",
            {"persona": plan.label, "claims": len(claims), "supported": supported},
        )

    def _fail(self, state: _RunState, message: str, retryable: bool = False) -> RunResult:
        self.db.finish_run(state.run_id, ExperimentStatus.FAILED, message)
        logger.warning("Run %s failed: %s", state.run_id, message)
        if state.terminal_events:
            self._emit(
                state,
                EventType.ERROR,
                message,
                {"status": ExperimentStatus.FAILED.value, "retryable": retryable},
            )
        return self._result(state, ExperimentStatus.FAILED, message, retryable)

    def _result(
        self,
        state: _RunState,
        status: ExperimentStatus,
        error_message: Optional[str] = None,
        retryable: bool = False,
    ) -> RunResult:
        config = state.config
        record = self.db.get_run(state.run_id)
        conclusion = None
        if config.experiment_type is ExperimentType.POSITION and len(state.positions) == len(NeedlePosition):
            conclusion = describe_u_curve({p.position: p.found for p in state.positions})
        elif config.experiment_type is ExperimentType.COMPRESSION and state.tokens_by_label:
            conclusion = "Token comparison: " + ", ".join(
                f"{label.split('/')[-1]}={tokens}" for label, tokens in state.tokens_by_label.items()
            )
        return RunResult(
            run_id=state.run_id,
            status=status,
            provider=config.provider,
            model=config.model,
            experiment_type=config.experiment_type,
            entries_analyzed=len(state.entries),
            input_tokens=state.input_tokens,
            output_tokens=state.output_tokens,
            estimated_cost=state.cost,
            duration_seconds=record.duration_seconds if record else None,
            claims=state.claims,
            position_results=state.positions,
            conclusion=conclusion,
            error_message=error_message,
            retryable=retryable,
        )

    def _emit(
        self,
        state: _RunState,
        event_type: EventType,
        message: str,
        data: Optional[JSONObject] = None,
    ) -> None:
        if state.channel is None:
            return
        state.channel.publish(
            ProgressEvent(
                type=event_type,
                message=message,
                data=data,
                batch_id=state.batch_id,
                run_id=state.run_id,
                provider=state.config.provider,
                model=state.config.model,
            )
        )

