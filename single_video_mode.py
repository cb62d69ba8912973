"""
Single-item flow: a "Download Subtitles" button on the watch page.
"""

from typing import List, Optional, Tuple

from bs4 import Tag

from error_handler import ElementTimeoutError, SubtitleError, ErrorHandler
from export_service import SubtitleExporter
from logging_setup import get_logger, set_flow_ctx
from log_events import evt
from models import CaptionTrack, ExportJob, ReviewChoice, ReviewSection
from page_document import PageDocument, NAVIGATE_FINISH, TreeObserver
from selection_reconciler import Debouncer
from subtitle_config import MESSAGES, SubtitleConfig, get_subtitle_config
from timedtext_service import TimedTextService
from ui_toolkit import ReviewDialog, UIToolkit

logger = get_logger(__name__)

APP_SELECTOR = "ytd-app"
BUTTON_CONTAINER_SELECTOR = "#above-the-fold"
BUTTON_SELECTOR = ".yt-sub-btn"


class SingleVideoMode:
    """
    Owns the watch-page button for one video.

    Identity is (video id, full URL). Tree changes and navigation signals both
    re-derive it, and setup only re-runs when it actually changed. Every
    async step checks the epoch it started under, so work that resolves
    after cleanup() does nothing.
    """

    def __init__(self, document: PageDocument, ui: UIToolkit, codec: TimedTextService,
                 exporter: SubtitleExporter, config: Optional[SubtitleConfig] = None,
                 error_handler: Optional[ErrorHandler] = None):
        self.document = document
        self.ui = ui
        self.codec = codec
        self.exporter = exporter
        self.config = config or get_subtitle_config()
        self.error_handler = error_handler or ErrorHandler()

        self.video_id: Optional[str] = None
        self.current_url: Optional[str] = None
        self.subtitle_tracks: Optional[List[CaptionTrack]] = None
        self.download_button: Optional[Tag] = None
        self.dialog: Optional[ReviewDialog] = None
        self.initialized = False
        self.torn_down = False
        self.epoch = 0
        self.setups = 0

        self._observer: Optional[TreeObserver] = None
        self._debouncer = Debouncer(self._check_for_change, self.config.debounce_seconds)
        self._unsubscribe_navigation = None

    @property
    def identity(self) -> Tuple[Optional[str], Optional[str]]:
        return self.video_id, self.current_url

    async def initialize(self) -> None:
        if self.initialized:
            logger.debug("SingleVideoMode already initialized, skipping")
            return
        self.initialized = True
        self.torn_down = False
        self.epoch += 1
        self.current_url = self.document.location
        self.setup_video_observer()
        await self.initialize_button()

    def setup_video_observer(self) -> None:
        app = self.document.select_one(APP_SELECTOR)
        if app is not None:
            self._observer = self.document.observe(lambda records, observer: self._debouncer())
            self._observer.observe(app, subtree=True, child_list=True, attribute_filter=["video-id"])
        else:
            logger.debug(f"No {APP_SELECTOR} element; relying on navigation signals")
        self._unsubscribe_navigation = self.document.on(NAVIGATE_FINISH, self._on_navigate)

    async def _on_navigate(self, url) -> None:
        logger.debug("Navigation event detected")
        await self.handle_video_change()

    async def _check_for_change(self) -> None:
        if self.current_url != self.document.location:
            await self.handle_video_change()

    async def handle_video_change(self) -> None:
        if self.torn_down:
            return
        new_identity = (self.extract_video_id(), self.document.location)
        if new_identity == self.identity:
            return
        logger.debug(f"Video changed from {self.video_id} to {new_identity[0]}")
        self.video_id, self.current_url = new_identity
        self.subtitle_tracks = None
        await self.initialize_button()

    def extract_video_id(self) -> Optional[str]:
        return self.document.query_param("v")

    async def initialize_button(self) -> None:
        epoch = self.epoch
        self.video_id = self.extract_video_id()
        if not self.video_id:
            logger.debug("No video ID found")
            return
        if self.download_button is not None:
            self.document.remove(self.download_button)
            self.download_button = None
        await self.add_download_button(epoch)

    async def add_download_button(self, epoch: int) -> None:
        try:
            container = await self.document.wait_for_element(
                BUTTON_CONTAINER_SELECTOR, timeout=self.config.element_wait_timeout_seconds)
        except ElementTimeoutError as e:
            logger.debug(f"Container not found: {e}")
            return

        if epoch != self.epoch or self.torn_down:
            logger.debug(f"Discarding button setup from superseded epoch {epoch}")
            return

        for existing in self.document.select(BUTTON_SELECTOR, root=container):
            self.document.remove(existing)

        self.download_button = self.ui.create_button(MESSAGES["DOWNLOAD_BUTTON"], self.handle_button_click)
        self.document.append_child(container, self.download_button)
        self.setups += 1
        evt("single_button_added", item_id=self.video_id, epoch=epoch)

    async def handle_button_click(self) -> None:
        epoch = self.epoch
        video_id = self.video_id
        set_flow_ctx(item_id=video_id, mode="single", epoch=epoch)
        loading = self.ui.show_loading()
        try:
            # Always fresh: tracks may have changed upstream since the last click
            tracks = await self.codec.discover_tracks(video_id)
            if epoch != self.epoch or self.torn_down:
                return
            self.subtitle_tracks = tracks
            if not tracks:
                self.ui.show_toast(MESSAGES["NO_SUBTITLE"])
                return
            self.show_subtitle_dialog()
        except SubtitleError as e:
            self.error_handler.record("single_discovery", e, item_id=video_id)
            self.ui.show_toast(MESSAGES["ERROR"]["FETCH"])
        finally:
            self.ui.remove_loading(loading)

    def show_subtitle_dialog(self) -> ReviewDialog:
        section = ReviewSection(item_id=self.video_id, title=self.document.title or self.video_id,
                                tracks=tuple(self.subtitle_tracks or ()))
        self.dialog = self.ui.create_review_dialog(
            MESSAGES["HAVE_SUBTITLE"], [section],
            on_download=self.handle_download,
            on_copy=self.handle_copy,
            on_close=self._on_dialog_closed,
        )
        return self.dialog

    def _on_dialog_closed(self) -> None:
        self.dialog = None

    def get_selected_jobs(self, choice: ReviewChoice) -> List[ExportJob]:
        by_code = {track.language_code: track for track in self.subtitle_tracks or ()}
        title = self.document.title or self.video_id or ""
        return [ExportJob(title=title, track=by_code[code], header=by_code[code].language_name)
                for code in choice.language_codes if code in by_code]

    async def handle_download(self, choice: ReviewChoice) -> bool:
        return await self.exporter.download(self.get_selected_jobs(choice), choice.format)

    async def handle_copy(self, choice: ReviewChoice) -> bool:
        return await self.exporter.copy(self.get_selected_jobs(choice), choice.format)

    def cleanup(self) -> None:
        """Tear down; safe to call more than once and after a partial setup."""
        logger.debug("Cleaning up SingleVideoMode")
        self.epoch += 1
        self.torn_down = True
        self.initialized = False
        self._debouncer.cancel()
        if self.download_button is not None:
            self.document.remove(self.download_button)
            self.download_button = None
        if self._observer is not None:
            self._observer.disconnect()
            self._observer = None
        if self._unsubscribe_navigation is not None:
            self._unsubscribe_navigation()
            self._unsubscribe_navigation = None
        if self.dialog is not None:
            self.dialog.close()
        self.video_id = None
        self.subtitle_tracks = None
        self.current_url = None
