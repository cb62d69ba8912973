"""
Download and clipboard capabilities of the host environment.

Downloads receive the already-encoded bytes of a subtitle file; clipboard
writes receive text. Failures surface as DownloadError and ClipboardError.
"""

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional, TextIO

from error_handler import ClipboardError, DownloadError
from logging_setup import get_logger

logger = get_logger(__name__)


class DirectoryDownloader:
    """Writes each emitted download into a directory."""

    def __init__(self, directory):
        self.directory = Path(directory)

    async def emit(self, filename: str, data: bytes) -> Path:
        path = self.directory / filename
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_bytes, data)
        except OSError as e:
            raise DownloadError(f"Failed to save {path}", original_error=e)
        logger.info(f"Saved {path}")
        return path


class MemoryDownloader:
    """Keeps emitted downloads in memory, in emission order."""

    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.order: List[str] = []

    async def emit(self, filename: str, data: bytes) -> str:
        self.files[filename] = data
        self.order.append(filename)
        return filename


class MemoryClipboard:
    def __init__(self, deny: bool = False):
        self.text: Optional[str] = None
        self.deny = deny
        self.writes = 0

    async def write_text(self, text: str) -> None:
        if self.deny:
            raise ClipboardError("Clipboard write denied")
        self.text = text
        self.writes += 1


class StreamClipboard:
    """Clipboard stand-in for terminals: writes the payload to a stream."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout

    async def write_text(self, text: str) -> None:
        try:
            self.stream.write(text)
            self.stream.flush()
        except (OSError, ValueError) as e:
            raise ClipboardError("Failed to copy to clipboard", original_error=e)
