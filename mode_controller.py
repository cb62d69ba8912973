"""
Mode controller: decides which flow is live for the current page.

The single-item flow exists only on watch pages; the bulk flow lives for the
whole session. Page changes are picked up from two independent signals (a
debounced body observer and the navigation-finished event) that may race, so
the single flow reference is assigned before anything is awaited.
"""

from typing import Callable, Optional
from urllib.parse import urlparse

from bulk_video_mode import BulkVideoMode
from error_handler import ErrorHandler
from export_service import SubtitleExporter
from logging_setup import get_logger
from log_events import evt
from models import ModeState, PageType
from page_document import NAVIGATE_FINISH, PageDocument, TreeObserver
from selection_reconciler import Debouncer
from single_video_mode import SingleVideoMode
from subtitle_config import SubtitleConfig, get_subtitle_config
from timedtext_service import TimedTextService
from ui_toolkit import UIToolkit

logger = get_logger(__name__)

PAGE_TYPES = {
    "/watch": PageType.WATCH,
    "/results": PageType.SEARCH,
    "/": PageType.HOME,
}


def classify_page(url: str) -> PageType:
    return PAGE_TYPES.get(urlparse(url).path or "/", PageType.OTHER)


class VideoModeController:
    def __init__(self, document: PageDocument, ui: UIToolkit, codec: TimedTextService,
                 exporter: SubtitleExporter, config: Optional[SubtitleConfig] = None,
                 error_handler: Optional[ErrorHandler] = None,
                 single_factory: Optional[Callable[[], SingleVideoMode]] = None,
                 bulk_factory: Optional[Callable[[], BulkVideoMode]] = None):
        self.document = document
        self.ui = ui
        self.codec = codec
        self.exporter = exporter
        self.config = config or get_subtitle_config()
        self.error_handler = error_handler or ErrorHandler()
        self._single_factory = single_factory or self._create_single_mode
        self._bulk_factory = bulk_factory or self._create_bulk_mode

        self.single_mode: Optional[SingleVideoMode] = None
        self.bulk_mode: Optional[BulkVideoMode] = None
        self.last_page_type: Optional[PageType] = None
        self.initialized = False

        self._observer: Optional[TreeObserver] = None
        self._debouncer = Debouncer(self._check_page_type, self.config.debounce_seconds)
        self._unsubscribe_navigation = None

    def _create_single_mode(self) -> SingleVideoMode:
        return SingleVideoMode(self.document, self.ui, self.codec, self.exporter,
                               self.config, self.error_handler)

    def _create_bulk_mode(self) -> BulkVideoMode:
        return BulkVideoMode(self.document, self.ui, self.codec, self.exporter,
                             self.config, self.error_handler)

    @property
    def page_type(self) -> PageType:
        return classify_page(self.document.location)

    @property
    def single_state(self) -> ModeState:
        return ModeState.SINGLE_ACTIVE if self.single_mode is not None else ModeState.IDLE

    @property
    def bulk_state(self) -> ModeState:
        return self.bulk_mode.state if self.bulk_mode is not None else ModeState.IDLE

    async def initialize(self) -> None:
        if self.initialized:
            logger.debug("VideoModeController already initialized, skipping")
            return
        # Set first: a signal racing the awaits below must not re-enter
        self.initialized = True
        logger.debug("Initializing VideoModeController")

        self.bulk_mode = self._bulk_factory()
        self.bulk_mode.initialize()
        self.setup_page_observer()
        await self.handle_page_change()

    def setup_page_observer(self) -> None:
        self._observer = self.document.observe(lambda records, observer: self._debouncer())
        self._observer.observe(self.document.body, subtree=True, child_list=True)
        self._unsubscribe_navigation = self.document.on(NAVIGATE_FINISH, self._on_navigate)

    async def _check_page_type(self) -> None:
        page_type = self.page_type
        if page_type != self.last_page_type:
            logger.debug(f"Page type changed from {self.last_page_type} to {page_type}")
            await self.handle_page_change()

    async def _on_navigate(self, url) -> None:
        logger.debug(f"Navigation event detected: {url}")
        await self.handle_page_change()

    async def handle_page_change(self) -> None:
        page_type = self.page_type
        previous, self.last_page_type = self.last_page_type, page_type
        logger.debug(f"Handling page change. Current: {page_type.value}, Last: {previous}")

        if not self.initialized:
            return

        if self.bulk_mode is None:
            logger.debug("Recreating BulkVideoMode")
            self.bulk_mode = self._bulk_factory()
            self.bulk_mode.initialize()
        else:
            self.bulk_mode.refresh()

        if page_type is PageType.WATCH:
            if self.single_mode is None:
                single_mode = self._single_factory()
                self.single_mode = single_mode
                evt("single_mode_created", item_id=self.document.query_param("v"))
                await single_mode.initialize()
        elif self.single_mode is not None:
            logger.debug("Cleaning up SingleVideoMode")
            single_mode, self.single_mode = self.single_mode, None
            single_mode.cleanup()

    def uninstall(self) -> None:
        """Disconnect every subscription and remove all injected controls."""
        self._debouncer.cancel()
        if self._observer is not None:
            self._observer.disconnect()
            self._observer = None
        if self._unsubscribe_navigation is not None:
            self._unsubscribe_navigation()
            self._unsubscribe_navigation = None
        if self.single_mode is not None:
            single_mode, self.single_mode = self.single_mode, None
            single_mode.cleanup()
        if self.bulk_mode is not None:
            self.bulk_mode.cleanup(full=True)
            self.bulk_mode = None
        self.initialized = False
        self.last_page_type = None
        logger.debug("VideoModeController uninstalled")
