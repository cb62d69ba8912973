"""
Bulk flow: select items across the catalog, pre-fetch their tracks, then
review and export in one go.
"""

import asyncio
from typing import List, Optional

from bs4 import Tag

from error_handler import ErrorHandler, SubtitleError
from export_service import SubtitleExporter
from logging_setup import get_logger, set_flow_ctx
from log_events import evt, time_stage
from models import ExportJob, ModeState, ReviewChoice, ReviewSection, SelectionModel
from page_document import DOMEvent, PageDocument
from selection_reconciler import SelectionReconciler
from subtitle_config import MESSAGES, SubtitleConfig, get_subtitle_config
from timedtext_service import TimedTextService
from ui_toolkit import ReviewDialog, UIToolkit

logger = get_logger(__name__)

BULK_BUTTON_CLASS = "yt-sub-bulk-btn"
SELECT_ALL_ID = "select-all"


class BulkVideoMode:
    def __init__(self, document: PageDocument, ui: UIToolkit, codec: TimedTextService,
                 exporter: SubtitleExporter, config: Optional[SubtitleConfig] = None,
                 error_handler: Optional[ErrorHandler] = None):
        self.document = document
        self.ui = ui
        self.codec = codec
        self.exporter = exporter
        self.config = config or get_subtitle_config()
        self.error_handler = error_handler or ErrorHandler()

        self.selection = SelectionModel()
        self.reconciler = SelectionReconciler(document, self.selection, self.config,
                                              on_change=self.update_button_state)
        self.state = ModeState.IDLE
        self.is_processing = False
        self.initialized = False
        self.epoch = 0

        self.button: Optional[Tag] = None
        self.select_all_container: Optional[Tag] = None
        self.select_all_checkbox: Optional[Tag] = None
        self.dialog: Optional[ReviewDialog] = None

    @property
    def is_selection_mode(self) -> bool:
        return self.state is not ModeState.IDLE

    def initialize(self) -> None:
        if self.initialized:
            logger.debug("BulkVideoMode already initialized, skipping")
            return
        self.create_controls()
        self.initialized = True

    def create_controls(self) -> None:
        doc = self.document
        self.button = self.ui.create_button(MESSAGES["BULK_BUTTON"], self.toggle_selection_mode, BULK_BUTTON_CLASS)
        doc.set_attribute(self.button, "style",
                          "position: fixed; right: 20px; top: 80px; z-index: 9999")

        self.select_all_container = doc.create_element("div", {
            "class": ["yt-sub-select-all"],
            "style": "position: fixed; right: 20px; top: 130px; z-index: 9999; display: none",
        })
        self.select_all_checkbox = doc.create_element("input", {"type": "checkbox", "id": SELECT_ALL_ID})
        doc.add_event_listener(self.select_all_checkbox, "change", self.handle_select_all)
        self.select_all_container.append(self.select_all_checkbox)
        self.select_all_container.append(doc.create_element("label", {"for": SELECT_ALL_ID},
                                                            text=MESSAGES["SELECT_ALL"]))

        doc.append_child(doc.body, self.button)
        doc.append_child(doc.body, self.select_all_container)

    async def toggle_selection_mode(self) -> None:
        logger.debug(f"Toggling selection mode from {self.state.value}")
        if self.state is ModeState.IDLE:
            self.start_selection()
        elif self.state is ModeState.BULK_REVIEWING and self.dialog is not None:
            logger.debug("Review dialog already open; ignoring click")
        else:
            await self.process_selected()

    def start_selection(self) -> None:
        if self.state is not ModeState.IDLE:
            logger.debug("Already in selection mode, skipping")
            return
        self.state = ModeState.BULK_SELECTING
        self.epoch += 1
        if self.select_all_container is not None:
            self.document.set_style(self.select_all_container, "display", "flex")
        self.reconciler.activate()
        self.update_button_state()
        evt("bulk_selection_started", mode="bulk", epoch=self.epoch)

    def refresh(self) -> None:
        """Re-run the selection pass, e.g. after a navigation."""
        if self.state is ModeState.BULK_SELECTING:
            self.reconciler.run_pass()

    def handle_select_all(self, event: DOMEvent) -> None:
        if self.is_processing:
            return
        self.reconciler.set_all(bool(event.checked))

    def update_button_state(self) -> None:
        if self.button is None:
            return
        if self.is_processing:
            label = MESSAGES["BULK_BUTTON_PROCESSING"]
            self.document.set_attribute(self.button, "disabled", "")
        else:
            label = MESSAGES["BULK_BUTTON_READY"] if self.selection.size() else MESSAGES["BULK_BUTTON_IDLE"]
            self.document.remove_attribute(self.button, "disabled")
        if self.button.get_text() != label:
            self.document.set_text(self.button, label)

    async def process_selected(self) -> None:
        if self.dialog is not None:
            return
        if not self.selection.size():
            self.ui.show_toast(MESSAGES["SELECT_VIDEO"])
            return
        if self.is_processing:
            return

        epoch = self.epoch
        set_flow_ctx(mode="bulk", epoch=epoch)
        self.is_processing = True
        self.update_button_state()
        loading = self.ui.show_loading(MESSAGES["FETCHING"])
        try:
            with time_stage("bulk_prefetch", items=self.selection.size()) as stage:
                outcomes = await asyncio.gather(*(self._prefetch_item(item_id, epoch) for item_id in self.selection))
                stage.note(failed=outcomes.count("failed"), discarded=outcomes.count("discarded"))
            if epoch != self.epoch:
                logger.debug(f"Discarding review for superseded epoch {epoch}")
                return
            self.show_bulk_dialog()
        finally:
            self.ui.remove_loading(loading)
            self.is_processing = False
            self.update_button_state()

    async def _prefetch_item(self, item_id: str, epoch: int) -> str:
        try:
            tracks = await self.codec.discover_tracks(item_id)
        except SubtitleError as e:
            # Review shows the item with no subtitles
            self.error_handler.record("bulk_prefetch", e, item_id=item_id)
            return "failed"

        record = self.selection.get(item_id)
        if epoch != self.epoch or record is None:
            logger.debug(f"Discarding tracks for {item_id}; selection changed while fetching")
            return "discarded"
        self.selection.set(item_id, record.with_tracks(tracks))
        return "fetched"

    def show_bulk_dialog(self) -> ReviewDialog:
        sections = [ReviewSection(item_id=item_id, title=record.title, tracks=record.tracks or ())
                    for item_id, record in self.selection.entries()]
        self.state = ModeState.BULK_REVIEWING
        self.dialog = self.ui.create_review_dialog(
            MESSAGES["BULK_DIALOG_TITLE"], sections,
            on_download=self.handle_bulk_download,
            on_copy=self.handle_bulk_copy,
            on_close=self._on_dialog_closed,
        )
        evt("bulk_review_shown", mode="bulk", epoch=self.epoch, items=len(sections),
            with_tracks=sum(1 for section in sections if section.has_tracks))
        return self.dialog

    def _on_dialog_closed(self) -> None:
        if self.dialog is None:
            return
        self.dialog = None
        self.cleanup()

    def get_selected_jobs(self, choice: ReviewChoice) -> List[ExportJob]:
        jobs = []
        for item_id, language_code in choice.pairs:
            record = self.selection.get(item_id)
            track = record.find_track(language_code) if record is not None else None
            if track is None:
                logger.debug(f"Skipping unknown pair {item_id}/{language_code}")
                continue
            jobs.append(ExportJob(title=record.title, track=track,
                                  header=f"{record.title} - {track.language_name}"))
        return jobs

    async def handle_bulk_download(self, choice: ReviewChoice) -> bool:
        return await self.exporter.download(self.get_selected_jobs(choice), choice.format)

    async def handle_bulk_copy(self, choice: ReviewChoice) -> bool:
        return await self.exporter.copy(self.get_selected_jobs(choice), choice.format)

    def cleanup(self, full: bool = False) -> None:
        """
        Leave selection mode and drop the selection.

        Skipped while a pre-fetch is running unless ``full``; ``full`` also
        removes the fixed controls so the flow can be uninstalled.
        """
        if self.is_processing and not full:
            logger.debug("Processing in progress, skipping cleanup")
            return

        self.epoch += 1
        self.reconciler.deactivate()
        self.selection.clear()
        self.state = ModeState.IDLE

        dialog, self.dialog = self.dialog, None
        if dialog is not None:
            dialog.close()

        if self.select_all_container is not None:
            self.document.set_style(self.select_all_container, "display", "none")
        if self.select_all_checkbox is not None:
            self.document.set_checked(self.select_all_checkbox, False)
        self.update_button_state()

        if full:
            self.document.remove(self.button)
            self.document.remove(self.select_all_container)
            self.button = None
            self.select_all_container = None
            self.select_all_checkbox = None
            self.initialized = False
        logger.debug(f"BulkVideoMode cleanup complete (full={full})")
