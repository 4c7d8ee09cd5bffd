# Copyright (c) Syntropy Systems
"""
journalbench - LLM journal-summary experiment harness.

Dispatch prompts to many providers, check every claim against the journal.
"""

__version__ = "0.1.0"

from journalbench.lab import Lab  # noqa: E402

__all__ = ["Lab", "__version__"]
