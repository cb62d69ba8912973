import argparse
import asyncio
import os
import sys
from typing import Optional

from dotenv import load_dotenv

from logging_setup import configure_logging

# Load .env and initialize logging before anything reads config
load_dotenv()
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    use_json=os.getenv("USE_MINIMAL_LOGGING", "true").lower() == "true"
)

from error_handler import ErrorHandler, SubtitleError  # noqa: E402
from export_service import SubtitleExporter  # noqa: E402
from host_io import DirectoryDownloader, StreamClipboard  # noqa: E402
from mode_controller import VideoModeController  # noqa: E402
from models import ExportFormat, ExportJob  # noqa: E402
from page_document import PageDocument  # noqa: E402
from subtitle_config import MESSAGES, SubtitleConfig, get_subtitle_config  # noqa: E402
from timedtext_service import TimedTextService  # noqa: E402
from ui_toolkit import HeadlessUI, UIToolkit  # noqa: E402


def create_session(document: PageDocument, ui: UIToolkit, downloader, clipboard,
                   config: Optional[SubtitleConfig] = None,
                   codec: Optional[TimedTextService] = None) -> VideoModeController:
    """Wire one controller with its own codec, exporter and error handler."""
    config = config or get_subtitle_config()
    codec = codec or TimedTextService(config=config)
    error_handler = ErrorHandler()
    exporter = SubtitleExporter(codec, downloader, clipboard, ui, config, error_handler)
    return VideoModeController(document, ui, codec, exporter, config, error_handler)


async def list_tracks(video_id: str) -> int:
    async with TimedTextService() as codec:
        record = await codec.discover_item(video_id)
    if not record.has_tracks:
        print(MESSAGES["NO_SUBTITLE"], file=sys.stderr)
        return 1
    print(record.title)
    for track in record.tracks:
        print(f"{track.language_code}\t{track.language_name}")
    return 0


async def export_tracks(video_id: str, languages, fmt: str, out_dir: str, copy: bool) -> int:
    config = get_subtitle_config()
    document = PageDocument(url=f"{config.watch_url}?v={video_id}")
    ui = HeadlessUI(document, config)

    async with TimedTextService(config=config) as codec:
        record = await codec.discover_item(video_id)
        tracks = [track for track in record.tracks or ()
                  if not languages or track.language_code in languages]
        if not tracks:
            print(MESSAGES["NO_SUBTITLE"], file=sys.stderr)
            return 1

        jobs = [ExportJob(title=record.title, track=track, header=track.language_name) for track in tracks]
        exporter = SubtitleExporter(codec, DirectoryDownloader(out_dir), StreamClipboard(), ui, config)
        if copy:
            ok = await exporter.copy(jobs, fmt)
        else:
            ok = await exporter.download(jobs, fmt)

    for message in ui.toasts:
        print(message, file=sys.stderr)
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Discover and export video subtitles")
    subparsers = parser.add_subparsers(dest="command", required=True)

    tracks = subparsers.add_parser("tracks", help="List available subtitle tracks")
    tracks.add_argument("video_id")

    export = subparsers.add_parser("export", help="Download subtitles as files or print them")
    export.add_argument("video_id")
    export.add_argument("--lang", action="append", default=[],
                        help="Language code to export (repeatable, default: all)")
    export.add_argument("--format", choices=[fmt.value for fmt in ExportFormat], default=ExportFormat.SRT.value)
    export.add_argument("--out", default=".", help="Directory for downloaded files")
    export.add_argument("--copy", action="store_true", help="Print the combined clipboard payload instead")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "tracks":
            return asyncio.run(list_tracks(args.video_id))
        return asyncio.run(export_tracks(args.video_id, args.lang, args.format, args.out, args.copy))
    except SubtitleError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
