# Copyright (c) Syntropy Systems
"""Tagged types shared by storage, logic and the API.

Each enum's value is its only serialized form, in SQLite text columns and in
JSON payloads alike. ``parse`` is the single way in from untrusted text.
"""

from __future__ import annotations

from enum import Enum

from typing_extensions import Self

from journalbench.errors import ConfigurationError


class _ParsableEnum(str, Enum):
    @classmethod
    def parse(cls, value: object) -> Self:
        """Parse a case-insensitive value, raising ConfigurationError."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if member.value == text:
                return member
        allowed = ", ".join(m.value for m in cls)
        msg = f"Unknown {cls.label()} {value!r} (expected one of: {allowed})"
        raise ConfigurationError(msg)

    @classmethod
    def label(cls) -> str:
        return cls.__name__

    def __str__(self) -> str:
        return self.value


class ExperimentType(_ParsableEnum):
    POSITION = "position"
    PERSONA = "persona"
    COMPRESSION = "compression"

    @classmethod
    def label(cls) -> str:
        return "experiment type"


class ExperimentStatus(_ParsableEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExperimentStatus.COMPLETED, ExperimentStatus.FAILED)

    @classmethod
    def label(cls) -> str:
        return "run status"


class NeedlePosition(_ParsableEnum):
    START = "start"
    MIDDLE = "middle"
    END = "end"

    @classmethod
    def label(cls) -> str:
        return "needle position"


class EntryOrder(_ParsableEnum):
    REVERSE = "reverse"
    CHRONOLOGICAL = "chronological"

    @classmethod
    def label(cls) -> str:
        return "entry order"


class Persona(_ParsableEnum):
    GOGGINS = "goggins"
    LASSO = "lasso"

    @property
    def contrast(self) -> Persona:
        """The persona with the opposite tone."""
        return Persona.LASSO if self is Persona.GOGGINS else Persona.GOGGINS

    @classmethod
    def label(cls) -> str:
        return "persona"


class BatchStatus(_ParsableEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    @classmethod
    def label(cls) -> str:
        return "batch status"


class EventType(_ParsableEnum):
    BATCH_STARTED = "batch_started"
    PROGRESS = "progress"
    PROVIDER_STARTED = "provider_started"
    PROVIDER_COMPLETE = "provider_complete"
    PROVIDER_ERROR = "provider_error"
    CLAIM = "claim"
    POSITION = "position"
    COMPLETE = "complete"
    ERROR = "error"
    BATCH_COMPLETE = "batch_complete"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.COMPLETE, EventType.ERROR, EventType.BATCH_COMPLETE)

    @classmethod
    def label(cls) -> str:
        return "event type"


def batch_status(statuses: list[ExperimentStatus]) -> BatchStatus:
    """Derive a batch's status from its member runs.

    Running while any member is pending or running; otherwise completed only
    when every member completed, failed only when every member failed.
    """
    if not statuses:
        return BatchStatus.FAILED
    if any(not s.is_terminal for s in statuses):
        return BatchStatus.RUNNING
    if all(s is ExperimentStatus.COMPLETED for s in statuses):
        return BatchStatus.COMPLETED
    if all(s is ExperimentStatus.FAILED for s in statuses):
        return BatchStatus.FAILED
    return BatchStatus.PARTIAL
