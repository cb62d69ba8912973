"""
Selection reconciler.

Keeps the per-item selection checkboxes and the SelectionModel in step with a
document tree that the host page rewrites whenever it likes. Change
notifications from a few scope containers are coalesced by a Debouncer; each
reconciliation pass is idempotent, so re-running it with no new item elements
touches neither the tree nor the model.
"""

import asyncio
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse, parse_qs

from bs4 import Tag

from logging_setup import get_logger
from log_events import evt
from models import ItemRecord, SelectionModel
from page_document import PageDocument, DOMEvent, TreeObserver, spawn_handler
from subtitle_config import MESSAGES, SubtitleConfig, get_subtitle_config

logger = get_logger(__name__)

ITEM_SELECTOR = "ytd-video-renderer, ytd-compact-video-renderer"
SCAN_SELECTOR = "ytd-video-renderer, ytd-compact-video-renderer, #dismissible"
SCOPE_SELECTORS = ("#content", "ytd-watch-next-secondary-results-renderer", "#related")
THUMBNAIL_SELECTOR = "a#thumbnail"
TITLE_SELECTOR = "#video-title"
CONTAINER_SELECTOR = "#dismissible"
MARKER_CLASS = "yt-sub-checkbox"
MARKER_SELECTOR = "." + MARKER_CLASS
COMPACT_RENDERER = "ytd-compact-video-renderer"


class Debouncer:
    """
    Runs ``func`` once the calls stop for ``wait`` seconds.

    Each call restarts the quiescence window; coroutine results are scheduled
    as tasks and kept referenced until they finish. Outside an event loop the
    call runs at once.
    """

    def __init__(self, func: Callable, wait: float):
        self.func = func
        self.wait = wait
        self._handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks = set()

    def __call__(self, *args, **kwargs) -> None:
        self.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside an event loop there is nothing to coalesce with
            self._fire(args, kwargs)
            return
        self._loop = loop
        self._handle = loop.call_later(self.wait, self._fire, args, kwargs)

    @property
    def pending(self) -> bool:
        # A timer left on a closed loop will never fire
        return self._handle is not None and not self._loop.is_closed()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self, args, kwargs) -> None:
        self._handle = None
        try:
            result = self.func(*args, **kwargs)
        except Exception:
            logger.exception(f"Debounced call to {getattr(self.func, '__name__', self.func)} failed")
            return
        spawn_handler(result, self._tasks, "debounced task")


def extract_item_id(document: PageDocument, element: Tag) -> Optional[str]:
    """Item id is the ``v`` query parameter of the element's thumbnail link."""
    link = document.select_one(THUMBNAIL_SELECTOR, root=element)
    href = link.get("href") if link is not None else None
    if not href:
        return None
    values = parse_qs(urlparse(href).query).get("v")
    return values[0] if values else None


def extract_item_title(document: PageDocument, element: Tag) -> str:
    title = document.select_one(TITLE_SELECTOR, root=element)
    text = title.get_text().strip() if title is not None else ""
    return text or MESSAGES["UNTITLED"]


class SelectionReconciler:
    """Injects selection controls into item elements and syncs toggles into the model."""

    def __init__(self, document: PageDocument, selection: SelectionModel,
                 config: Optional[SubtitleConfig] = None, on_change: Optional[Callable[[], None]] = None):
        self.document = document
        self.selection = selection
        self.config = config or get_subtitle_config()
        self.on_change = on_change
        self.active = False
        self.epoch = 0
        self.passes = 0
        self._observer: Optional[TreeObserver] = None
        self._debouncer = Debouncer(self._debounced_pass, self.config.debounce_seconds)
        # (checkbox, container, item element)
        self._controls: List[Tuple[Tag, Tag, Tag]] = []
        # Containers this reconciler made position: relative, by id()
        self._positioned: Dict[int, Tag] = {}

    @property
    def controls(self) -> List[Tag]:
        return [checkbox for checkbox, _, _ in self._controls]

    @property
    def observed_targets(self) -> List[Tag]:
        return self._observer.targets if self._observer is not None else []

    def activate(self) -> int:
        """Start observing and run one pass right away."""
        if self.active:
            return self.run_pass()
        self.active = True
        self.epoch += 1
        logger.debug(f"Reconciler activated (epoch {self.epoch})")
        return self.run_pass()

    def deactivate(self) -> None:
        """Stop observing, drop pending passes and remove injected controls."""
        self.active = False
        self.epoch += 1
        self._debouncer.cancel()
        if self._observer is not None:
            self._observer.disconnect()
            self._observer = None
        self._remove_controls()

    def run_pass(self) -> int:
        """One reconciliation pass; returns the number of controls injected."""
        if not self.active:
            return 0
        self._ensure_observing()
        self._prune_detached()
        injected = 0
        for element in self.document.select(SCAN_SELECTOR):
            if self._inject_control(element):
                injected += 1
        self.passes += 1
        if injected:
            evt("reconcile_pass", injected=injected, controls=len(self._controls), epoch=self.epoch)
        return injected

    def set_all(self, checked: bool) -> None:
        """Check or uncheck every injected control and update the model to match."""
        for checkbox in self.document.select(MARKER_SELECTOR):
            element = self.document.closest(checkbox, ITEM_SELECTOR)
            if element is None:
                continue
            item_id = extract_item_id(self.document, element)
            self.document.set_checked(checkbox, checked)
            if checked and item_id:
                self.selection.set(item_id, ItemRecord(id=item_id, title=extract_item_title(self.document, element)))
            elif not checked and item_id:
                self.selection.delete(item_id)
        self._notify_change()

    # --- Observation ---

    def _ensure_observing(self) -> bool:
        targets = [self.document.select_one(selector) for selector in SCOPE_SELECTORS]
        targets = [target for target in targets if target is not None]

        if self._observer is not None:
            observed = self._observer.targets
            attached = all(self.document.contains(target) for target in observed)
            covered = all(any(target is current for current in observed) for target in targets)
            if attached and covered:
                return True
            # A scope container was swapped out or a new one appeared; resolve the targets again
            self._observer.disconnect()
            self._observer = None

        if not targets:
            logger.debug("No scope containers present yet; will retry on next pass")
            return False

        observer = self.document.observe(self._on_mutations)
        for target in targets:
            observer.observe(target, subtree=True, child_list=True)
        self._observer = observer
        return True

    def _on_mutations(self, records, observer) -> None:
        if not self.active:
            return
        if any(self._contains_item(node) for record in records for node in record.added_nodes):
            self._debouncer(self.epoch)

    def _contains_item(self, node) -> bool:
        if not isinstance(node, Tag):
            return False
        return self.document.matches(node, ITEM_SELECTOR) or self.document.select_one(ITEM_SELECTOR, root=node) is not None

    def _debounced_pass(self, epoch: int) -> None:
        if epoch != self.epoch or not self.active:
            logger.debug(f"Discarding pass scheduled under superseded epoch {epoch}")
            return
        self.run_pass()

    # --- Controls ---

    def _inject_control(self, element: Tag) -> bool:
        if self.document.select_one(MARKER_SELECTOR, root=element) is not None:
            return False

        item_id = extract_item_id(self.document, element)
        if not item_id:
            return False

        container = self.document.select_one(CONTAINER_SELECTOR, root=element) or element
        top = "5px" if element.name == COMPACT_RENDERER else "20px"
        checkbox = self.document.create_element("input", {
            "type": "checkbox",
            "class": [MARKER_CLASS],
            "data-video-id": item_id,
            "style": f"position: absolute; left: -25px; top: {top}; z-index: 9999; "
                     f"cursor: pointer; width: 20px; height: 20px",
        })
        self.document.add_event_listener(
            checkbox, "change", lambda event: self._on_toggle(element, item_id, event))

        if self.document.get_style(container, "position") != "relative":
            self.document.set_style(container, "position", "relative")
            self._positioned[id(container)] = container
        self.document.prepend_child(container, checkbox)
        self._controls.append((checkbox, container, element))
        logger.debug(f"Added checkbox to video: {item_id}")
        return True

    def _on_toggle(self, element: Tag, injected_id: str, event: DOMEvent) -> None:
        item_id = extract_item_id(self.document, element) or injected_id
        if event.checked:
            self.selection.set(item_id, ItemRecord(id=item_id, title=extract_item_title(self.document, element)))
        else:
            self.selection.delete(item_id)
        logger.debug(f"Selection changed for {item_id}: checked={event.checked} size={self.selection.size()}")
        self._notify_change()

    def _prune_detached(self) -> None:
        self._controls = [entry for entry in self._controls if self.document.contains(entry[0])]

    def _remove_controls(self) -> None:
        for checkbox in self.document.select(MARKER_SELECTOR):
            self.document.remove(checkbox)
        for container in self._positioned.values():
            if self.document.get_style(container, "position") == "relative":
                self.document.set_style(container, "position", None)
        self._positioned = {}
        self._controls = []

    def _notify_change(self) -> None:
        if self.on_change is not None:
            self.on_change()
