#!/usr/bin/env python3
"""Common error types shared across modules.

Kept dependency-free so every module can import it without circular imports.
"""

from typing import List, Optional


class RSSInsightError(Exception):
    """Base class for application errors."""


class LLMNotConfiguredError(RSSInsightError):
    """Raised before any network call when required LLM settings are missing.

    Attributes:
        missing: Names of the environment variables / settings that are unset.
    """

    def __init__(self, missing: Optional[List[str]] = None):
        self.missing = list(missing or [])
        names = ", ".join(self.missing) if self.missing else "LLM settings"
        super().__init__(f"LLM not configured: {names} not set")


class LLMRequestError(RSSInsightError):
    """Transport or API failure talking to the LLM endpoint."""


class LLMTimeoutError(LLMRequestError):
    """The LLM request exceeded its deadline and was aborted."""

    def __init__(self, message: str = "Request timeout"):
        super().__init__(message)


class MalformedLLMResponseError(RSSInsightError):
    """Model output did not contain a usable JSON payload.

    Attributes:
        raw: The untrusted model output (truncated) for diagnostics.
    """

    def __init__(self, message: str = "Failed to parse LLM response", raw: str = ""):
        super().__init__(message)
        self.raw = (raw or "")[:500]


class FetchError(RSSInsightError):
    """HTTP fetch failed (non-OK status, network error, or both fetch modes failed)."""


class ScrapeTimeoutError(RSSInsightError):
    """A scrape task exceeded its per-task time budget."""


class DatabaseError(RSSInsightError):
    """A storage operation failed inside the database worker."""


__all__ = [
    "RSSInsightError",
    "LLMNotConfiguredError",
    "LLMRequestError",
    "LLMTimeoutError",
    "MalformedLLMResponseError",
    "FetchError",
    "ScrapeTimeoutError",
    "DatabaseError",
]
