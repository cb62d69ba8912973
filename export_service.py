"""
Export pipeline: fetch, convert and emit subtitle files or a clipboard payload.

Jobs run one after another with a pacing delay between downloads so hosts do
not throttle a burst of files. Any failure aborts only the current export and
surfaces exactly one toast; selection and mode state stay usable for a retry.
"""

import asyncio
import re
from typing import Optional, Sequence

from error_handler import ErrorHandler, SubtitleError
from logging_setup import get_logger
from log_events import evt, time_stage
from models import ExportFormat, ExportJob
from subtitle_config import MESSAGES, SubtitleConfig, get_subtitle_config
from timedtext_service import TimedTextService

logger = get_logger(__name__)

UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1F]')
BOM = "\ufeff"


def sanitize_filename(name: str, max_length: int = 100) -> str:
    return UNSAFE_FILENAME_CHARS.sub("_", name or "")[:max_length]


def build_filename(title: str, language_code: str, fmt, max_length: int = 100) -> str:
    return f"{sanitize_filename(title, max_length)}_{language_code}.{ExportFormat.parse(fmt).value}"


def encode_download(content: str) -> bytes:
    """UTF-8 bytes with a leading byte-order mark."""
    return (BOM + content).encode("utf-8")


def build_clipboard_payload(sections) -> str:
    return "".join(f"=== {header} ===\n{content}\n\n" for header, content in sections)


class SubtitleExporter:
    def __init__(self, codec: TimedTextService, downloader, clipboard, ui,
                 config: Optional[SubtitleConfig] = None, error_handler: Optional[ErrorHandler] = None):
        self.codec = codec
        self.downloader = downloader
        self.clipboard = clipboard
        self.ui = ui
        self.config = config or get_subtitle_config()
        self.error_handler = error_handler or ErrorHandler()

    async def download(self, jobs: Sequence[ExportJob], fmt=ExportFormat.SRT) -> bool:
        """Emit one download per job; returns False when nothing or not everything was emitted."""
        if not jobs:
            self.ui.show_toast(MESSAGES["SELECT_SUBTITLE"])
            return False

        fmt = ExportFormat.parse(fmt)
        loading = self.ui.show_loading(MESSAGES["DOWNLOADING"])
        try:
            with time_stage("export_download", jobs=len(jobs), format=fmt.value) as stage:
                for index, job in enumerate(jobs):
                    if index:
                        await asyncio.sleep(self.config.download_delay_seconds)
                    content = await self.codec.fetch_and_convert(job.track, fmt)
                    filename = build_filename(job.title, job.track.language_code, fmt,
                                              self.config.filename_max_length)
                    await self.downloader.emit(filename, encode_download(content))
                    evt("subtitle_downloaded", language=job.track.language_code, file_name=filename)
                    stage.note(emitted=index + 1)
            return True
        except SubtitleError as e:
            logger.error(f"Download error: {e}")
            self.ui.show_toast(self.error_handler.handle_export_error("export_download", e))
            return False
        finally:
            self.ui.remove_loading(loading)

    async def copy(self, jobs: Sequence[ExportJob], fmt=ExportFormat.SRT) -> bool:
        """Concatenate every job under its header and write it to the clipboard once."""
        if not jobs:
            self.ui.show_toast(MESSAGES["SELECT_SUBTITLE"])
            return False

        fmt = ExportFormat.parse(fmt)
        loading = self.ui.show_loading(MESSAGES["COPYING"])
        try:
            with time_stage("export_copy", jobs=len(jobs), format=fmt.value):
                sections = []
                for job in jobs:
                    sections.append((job.header, await self.codec.fetch_and_convert(job.track, fmt)))
                await self.clipboard.write_text(build_clipboard_payload(sections))
            self.ui.show_toast(MESSAGES["COPY_SUCCESS"])
            return True
        except SubtitleError as e:
            logger.error(f"Copy error: {e}")
            self.ui.show_toast(self.error_handler.handle_export_error("export_copy", e))
            return False
        finally:
            self.ui.remove_loading(loading)
