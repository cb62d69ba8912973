#!/usr/bin/env python3
"""
Configuration Management for the Subtitle Engine

This module provides centralized configuration for timings, HTTP settings and
file naming used by the track codec, the reconciler and the export pipeline.
It loads settings from environment variables with sensible defaults and
provides validation.
"""

import os
from dataclasses import dataclass
from typing import Optional, Dict, Any

from logging_setup import get_logger

logger = get_logger(__name__)


MESSAGES = {
    "NO_SUBTITLE": "No Subtitles Available",
    "HAVE_SUBTITLE": "Available Subtitles",
    "LOADING": "Loading Subtitles...",
    "FETCHING": "Fetching subtitles...",
    "DOWNLOADING": "Downloading subtitles...",
    "COPYING": "Copying subtitles...",
    "COPY_SUCCESS": "✓ Copied!",
    "SELECT_SUBTITLE": "Please select at least one subtitle",
    "SELECT_VIDEO": "Please select at least one video",
    "BULK_DIALOG_TITLE": "Select Subtitles to Download",
    "DOWNLOAD_BUTTON": "Download Subtitles",
    "BULK_BUTTON": "Get Videos Sub",
    "BULK_BUTTON_IDLE": "Select Videos Sub",
    "BULK_BUTTON_READY": "Get Subtitles",
    "BULK_BUTTON_PROCESSING": "Processing...",
    "SELECT_ALL": "Select All",
    "UNTITLED": "Untitled Video",
    "ERROR": {
        "COPY": "Failed to copy to clipboard",
        "DOWNLOAD": "Failed to save subtitles",
        "FETCH": "Failed to fetch subtitles",
        "NO_VIDEO": "No video found",
    },
}

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/127.0.0.0 Safari/537.36"
)


@dataclass
class SubtitleConfig:
    """Configuration for the subtitle engine."""

    # Timings (milliseconds)
    debounce_ms: int = 500
    download_delay_ms: int = 500
    toast_duration_ms: int = 2000
    element_wait_timeout_ms: int = 5000

    # HTTP
    fetch_timeout: int = 15
    watch_url: str = "https://www.youtube.com/watch"
    user_agent: str = DEFAULT_USER_AGENT
    accept_language: str = "en-US,en;q=0.9"

    # File naming
    filename_max_length: int = 100

    @classmethod
    def from_env(cls) -> 'SubtitleConfig':
        """Load configuration from environment variables with validation."""
        config = cls(
            debounce_ms=cls._parse_int_env("SUBS_DEBOUNCE_MS", 500, min_val=0, max_val=10000),
            download_delay_ms=cls._parse_int_env("SUBS_DOWNLOAD_DELAY_MS", 500, min_val=0, max_val=10000),
            toast_duration_ms=cls._parse_int_env("SUBS_TOAST_DURATION_MS", 2000, min_val=100, max_val=60000),
            element_wait_timeout_ms=cls._parse_int_env("SUBS_ELEMENT_WAIT_TIMEOUT_MS", 5000, min_val=100, max_val=60000),
            fetch_timeout=cls._parse_int_env("SUBS_FETCH_TIMEOUT", 15, min_val=1, max_val=120),
            watch_url=os.getenv("SUBS_WATCH_URL", cls.watch_url),
            user_agent=os.getenv("SUBS_USER_AGENT", DEFAULT_USER_AGENT),
            accept_language=os.getenv("SUBS_ACCEPT_LANGUAGE", cls.accept_language),
            filename_max_length=cls._parse_int_env("SUBS_FILENAME_MAX_LENGTH", 100, min_val=10, max_val=255),
        )

        config._validate_config()
        config._log_config()

        return config

    @staticmethod
    def _parse_int_env(env_var: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
        """Parse integer environment variable with validation."""
        try:
            value = int(os.getenv(env_var, str(default)))

            if min_val is not None and value < min_val:
                logger.warning(f"{env_var}={value} is below minimum {min_val}, using {min_val}")
                return min_val

            if max_val is not None and value > max_val:
                logger.warning(f"{env_var}={value} is above maximum {max_val}, using {max_val}")
                return max_val

            return value

        except (ValueError, TypeError):
            logger.error(f"Invalid value for {env_var}: {os.getenv(env_var)}, using default {default}")
            return default

    def _validate_config(self) -> None:
        """Log warnings for problematic combinations."""
        warnings = []

        if self.download_delay_ms < 200:
            warnings.append(
                f"Download pacing ({self.download_delay_ms}ms) is low - hosts may throttle multiple downloads"
            )

        if self.debounce_ms == 0:
            warnings.append("Debounce disabled - every change notification burst triggers a reconciliation pass")

        if not self.watch_url.startswith(("http://", "https://")):
            warnings.append(f"SUBS_WATCH_URL does not look like an HTTP URL: {self.watch_url}")

        for warning in warnings:
            logger.warning(f"Configuration warning: {warning}")

    def _log_config(self) -> None:
        logger.info("Subtitle configuration loaded:")
        logger.info(f"  Timings: debounce={self.debounce_ms}ms, download_delay={self.download_delay_ms}ms, "
                    f"element_wait={self.element_wait_timeout_ms}ms")
        logger.info(f"  HTTP: timeout={self.fetch_timeout}s, watch_url={self.watch_url}")

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000

    @property
    def download_delay_seconds(self) -> float:
        return self.download_delay_ms / 1000

    @property
    def element_wait_timeout_seconds(self) -> float:
        return self.element_wait_timeout_ms / 1000

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for serialization."""
        return {
            "timings": {
                "debounce_ms": self.debounce_ms,
                "download_delay_ms": self.download_delay_ms,
                "toast_duration_ms": self.toast_duration_ms,
                "element_wait_timeout_ms": self.element_wait_timeout_ms,
            },
            "http": {
                "fetch_timeout": self.fetch_timeout,
                "watch_url": self.watch_url,
                "accept_language": self.accept_language,
            },
            "files": {
                "filename_max_length": self.filename_max_length,
            },
        }


# Global configuration instance
_subtitle_config: Optional[SubtitleConfig] = None


def get_subtitle_config() -> SubtitleConfig:
    """Get the global subtitle configuration instance."""
    global _subtitle_config
    if _subtitle_config is None:
        _subtitle_config = SubtitleConfig.from_env()
    return _subtitle_config


def reload_subtitle_config() -> SubtitleConfig:
    """Reload configuration from environment variables."""
    global _subtitle_config
    _subtitle_config = SubtitleConfig.from_env()
    return _subtitle_config
