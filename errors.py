#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from datetime import datetime
from typing import Dict, Any, Optional


class ContentFilterError(Exception):
    """Raised when the LLM provider's content filtering blocks a response.

    Attributes:
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str = "Content filtered by provider", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class IngestError(Exception):
    """Base class for failures that abort processing of a single source."""


class AntiBotBlockedError(IngestError):
    """Raised when a fetched page carries a known anti-bot signature.

    The string form is the block marker persisted as the source's last error,
    which is later parsed back to enforce the cooldown.
    """

    def __init__(self, keyword: str, url: str, blocked_at: datetime, message: str):
        super().__init__(message)
        self.keyword = keyword
        self.url = url
        self.blocked_at = blocked_at


class TransportError(Exception):
    """Raised when a subprocess fetch cannot complete (spawn failure, kill on timeout)."""


class ExtractionError(Exception):
    """Raised when the extraction service returns nothing usable."""


class DatabaseError(Exception):
    """Raised by DatabaseQueue.execute when a queued operation fails."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


__all__ = [
    "ContentFilterError",
    "IngestError",
    "AntiBotBlockedError",
    "TransportError",
    "ExtractionError",
    "DatabaseError",
]
