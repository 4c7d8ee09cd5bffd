# Copyright (c) Syntropy Systems
"""Exception hierarchy for journalbench."""
from __future__ import annotations


class JournalbenchError(Exception):
    """Base class for journalbench errors."""


class ConfigurationError(JournalbenchError, ValueError):
    """Invalid experiment type, persona, provider:model pair or preset."""


class NotFoundError(JournalbenchError):
    """Unknown run, batch or preset."""


class RunStateError(JournalbenchError):
    """A run cannot make the requested transition."""


class PersistenceError(JournalbenchError):
    """The store rejected a write. Safe to retry the run."""

    retryable = True


class ProviderError(JournalbenchError):
    """A chat-completion call failed.

    ``transient`` is True for rate limits, timeouts and 5xx responses, which
    are worth retrying at the batch level; auth and malformed responses are
    permanent.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class ProviderTimeoutError(ProviderError):
    """A chat-completion call exceeded its timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class RunCancelledError(JournalbenchError):
    """The batch owning a run was cancelled."""
