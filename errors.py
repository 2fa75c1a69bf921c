#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class ConfigurationError(Exception):
    """Raised at startup when mandatory configuration is missing or invalid."""


class UpstreamError(Exception):
    """Raised by source adapters when one upstream page cannot be fetched.

    Attributes:
        source: Adapter/strategy name that produced the error.
        status: HTTP status code, if the upstream answered at all.
        details: Optional provider-specific payload for diagnostics.
    """

    def __init__(self, message: str, source: str = "", status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.source = source
        self.status = status
        self.details = details or {}


class StoreError(Exception):
    """Raised when a content store operation fails or times out."""


class QueueError(Exception):
    """Raised when a task queue operation fails or times out."""


__all__ = ["ConfigurationError", "UpstreamError", "StoreError", "QueueError"]
