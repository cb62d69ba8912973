"""
UI collaborator contract and a headless implementation.

The engine never renders widgets itself; it asks a UIToolkit for buttons,
review dialogs, loading overlays and toasts. HeadlessUI renders minimal
markup into the PageDocument and records what was shown, which is what the
CLI and the tests use.
"""

import asyncio
import inspect
from typing import Callable, List, Optional, Sequence, Tuple

from bs4 import Tag

from logging_setup import get_logger
from models import ReviewChoice, ReviewSection
from page_document import PageDocument
from subtitle_config import MESSAGES, SubtitleConfig, get_subtitle_config

logger = get_logger(__name__)


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


class ReviewDialog:
    """A shown review surface: sections to pick from plus its callbacks."""

    def __init__(self, ui: 'UIToolkit', title: str, sections: Sequence[ReviewSection],
                 on_download: Optional[Callable] = None, on_copy: Optional[Callable] = None,
                 on_close: Optional[Callable] = None, element: Optional[Tag] = None):
        self.ui = ui
        self.title = title
        self.sections = list(sections)
        self.on_download = on_download
        self.on_copy = on_copy
        self.on_close = on_close
        self.element = element
        self.is_open = True

    @property
    def available_pairs(self) -> List[Tuple[str, str]]:
        return [(section.item_id, track.language_code)
                for section in self.sections for track in section.tracks]

    @property
    def sections_with_tracks(self) -> List[ReviewSection]:
        return [section for section in self.sections if section.has_tracks]

    @property
    def sections_without_tracks(self) -> List[ReviewSection]:
        return [section for section in self.sections if not section.has_tracks]

    async def download(self, choice: ReviewChoice):
        if self.on_download is not None:
            return await _maybe_await(self.on_download(choice))

    async def copy(self, choice: ReviewChoice):
        if self.on_copy is not None:
            return await _maybe_await(self.on_copy(choice))

    def close(self) -> None:
        if not self.is_open:
            return
        self.is_open = False
        self.ui.dismiss_dialog(self)
        if self.on_close is not None:
            self.on_close()


class UIToolkit:
    """Factories and primitives the engine calls to show things to the user."""

    def create_button(self, label: str, on_click: Callable, class_name: str = "") -> Tag:
        raise NotImplementedError

    def create_review_dialog(self, title: str, sections: Sequence[ReviewSection],
                             on_download: Optional[Callable] = None, on_copy: Optional[Callable] = None,
                             on_close: Optional[Callable] = None) -> ReviewDialog:
        raise NotImplementedError

    def dismiss_dialog(self, dialog: ReviewDialog) -> None:
        raise NotImplementedError

    def show_loading(self, message: Optional[str] = None):
        raise NotImplementedError

    def remove_loading(self, handle) -> None:
        raise NotImplementedError

    def show_toast(self, message: str, duration_ms: Optional[int] = None) -> None:
        raise NotImplementedError


class HeadlessUI(UIToolkit):
    def __init__(self, document: PageDocument, config: Optional[SubtitleConfig] = None):
        self.document = document
        self.config = config or get_subtitle_config()
        self.toasts: List[str] = []
        self.dialogs: List[ReviewDialog] = []
        self.loading: List[Tag] = []

    @property
    def active_dialog(self) -> Optional[ReviewDialog]:
        open_dialogs = [dialog for dialog in self.dialogs if dialog.is_open]
        return open_dialogs[-1] if open_dialogs else None

    def create_button(self, label: str, on_click: Callable, class_name: str = "") -> Tag:
        classes = ["yt-sub-btn"] + ([class_name] if class_name else [])
        button = self.document.create_element("button", {"class": classes}, text=label)
        self.document.add_event_listener(button, "click", lambda event: on_click())
        return button

    def create_review_dialog(self, title, sections, on_download=None, on_copy=None, on_close=None) -> ReviewDialog:
        doc = self.document
        overlay = doc.create_element("div", {"class": ["yt-sub-overlay"]})
        dialog_el = doc.create_element("div", {"class": ["yt-sub-dialog"]})
        dialog_el.append(doc.create_element("h2", text=title))

        for section in sections:
            section_el = doc.create_element("div", {"class": ["yt-sub-video-section"],
                                                    "data-video-id": section.item_id})
            section_el.append(doc.create_element("h3", text=section.title))
            if section.has_tracks:
                for track in section.tracks:
                    label = doc.create_element("label", {"class": ["yt-sub-track"]})
                    label.append(doc.create_element("input", {
                        "type": "checkbox",
                        "data-video-id": section.item_id,
                        "data-lang": track.language_code,
                    }))
                    label.append(track.language_name)
                    section_el.append(label)
            else:
                section_el.append(doc.create_element("p", {"class": ["yt-sub-empty"]},
                                                     text=MESSAGES["NO_SUBTITLE"]))
            dialog_el.append(section_el)

        overlay.append(dialog_el)
        doc.append_child(doc.body, overlay)

        dialog = ReviewDialog(self, title, sections, on_download=on_download, on_copy=on_copy,
                              on_close=on_close, element=overlay)
        self.dialogs.append(dialog)
        return dialog

    def dismiss_dialog(self, dialog: ReviewDialog) -> None:
        self.document.remove(dialog.element)

    def show_loading(self, message: Optional[str] = None) -> Tag:
        overlay = self.document.create_element("div", {"class": ["yt-sub-overlay", "yt-sub-loading"]},
                                               text=message or MESSAGES["LOADING"])
        self.document.append_child(self.document.body, overlay)
        self.loading.append(overlay)
        return overlay

    def remove_loading(self, handle) -> None:
        if handle is None:
            return
        self.document.remove(handle)
        self.loading = [overlay for overlay in self.loading if overlay is not handle]

    def show_toast(self, message: str, duration_ms: Optional[int] = None) -> None:
        self.toasts.append(message)
        logger.info(f"toast: {message}")

        toast = self.document.create_element("div", {"class": ["yt-sub-toast"]}, text=message)
        self.document.append_child(self.document.body, toast)
        delay = (duration_ms if duration_ms is not None else self.config.toast_duration_ms) / 1000
        try:
            asyncio.get_running_loop().call_later(delay, self.document.remove, toast)
        except RuntimeError:
            self.document.remove(toast)
