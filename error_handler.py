#!/usr/bin/env python3
"""
Error taxonomy and centralized error handling for subtitle discovery and export
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from logging_setup import get_logger
from log_events import evt, classify_error_type
from subtitle_config import MESSAGES


class SubtitleError(Exception):
    """Base error carrying a stable code and the underlying cause."""

    code = "SUBTITLE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, original_error: Optional[BaseException] = None):
        super().__init__(message)
        if code is not None:
            self.code = code
        self.original_error = original_error


class FetchError(SubtitleError):
    """Network or transport failure while fetching a page or payload."""

    code = "SUBTITLE_FETCH_ERROR"


class ConversionError(SubtitleError):
    """Timed-text payload could not be parsed or converted."""

    code = "CONVERSION_ERROR"


class ClipboardError(SubtitleError):
    """Clipboard write was denied or failed."""

    code = "CLIPBOARD_ERROR"


class DownloadError(SubtitleError):
    """A subtitle file could not be written."""

    code = "DOWNLOAD_ERROR"


class ElementTimeoutError(SubtitleError):
    """A host element never appeared within the wait window."""

    code = "ELEMENT_TIMEOUT"


class ErrorHandler:
    """Centralized error handling with categorization and user-facing messages"""

    def __init__(self):
        self.logger = get_logger(__name__)
        self.error_counts: Dict[str, int] = {}
        self.last_errors: Dict[str, Dict[str, Any]] = {}

    def record(self, context: str, error: Exception, **fields) -> None:
        """Count and log an error under the given context."""
        self.error_counts[context] = self.error_counts.get(context, 0) + 1
        self.last_errors[context] = {
            "error": str(error),
            "error_type": classify_error_type(error),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **fields,
        }

        evt(f"{context}_error", logging.WARNING,
            error_type=classify_error_type(error),
            detail=str(error)[:200],
            error_count=self.error_counts[context],
            **fields)

        cause = getattr(error, "original_error", None)
        if cause is not None:
            self.logger.debug(f"{context}: caused by {type(cause).__name__}: {cause}")

    def user_message(self, error: Exception) -> str:
        """Map an error to the single message shown to the user."""
        if isinstance(error, ClipboardError):
            return MESSAGES["ERROR"]["COPY"]
        if isinstance(error, DownloadError):
            return MESSAGES["ERROR"]["DOWNLOAD"]
        if isinstance(error, ElementTimeoutError):
            return MESSAGES["ERROR"]["NO_VIDEO"]
        return MESSAGES["ERROR"]["FETCH"]

    def handle_export_error(self, context: str, error: Exception, **fields) -> str:
        """Record an export-time failure and return the toast message for it."""
        self.record(context, error, **fields)
        return self.user_message(error)

    def get_error_stats(self) -> Dict[str, Any]:
        return {
            "error_counts": dict(self.error_counts),
            "last_errors": dict(self.last_errors),
        }
