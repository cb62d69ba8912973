"""
Live document tree for the catalog page.

The tree is a BeautifulSoup document that both the host page (external code)
and the subtitle engine mutate through this module. Every structural or
attribute change is recorded as a MutationRecord and delivered in batches to
subscribed TreeObservers on a later event-loop iteration, the way browsers
deliver mutation records. The module also carries the navigation-finished
signal and per-node event listeners (change, click).
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse, parse_qs

from bs4 import BeautifulSoup, Tag

from error_handler import ElementTimeoutError
from logging_setup import get_logger

logger = get_logger(__name__)

NAVIGATE_FINISH = "navigate-finish"

DEFAULT_MARKUP = "<html><head><title></title></head><body></body></html>"


async def _drive(awaitable, after: Optional[Callable] = None):
    try:
        return await awaitable
    finally:
        if after is not None:
            await after()


def spawn_handler(result: Any, tasks: set, context: str = "handler",
                  after: Optional[Callable] = None) -> None:
    """
    Run the awaitable a handler returned.

    Inside a running loop it becomes a task kept in ``tasks`` until done.
    Without one, it is driven to completion in place (then ``after`` is
    awaited on the same loop), the same way change delivery runs synchronously
    outside a loop.
    """
    if not inspect.isawaitable(result):
        return
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        try:
            asyncio.run(_drive(result, after))
        except Exception:
            logger.exception(f"Unhandled error in {context}")
        return

    task = asyncio.ensure_future(result)
    tasks.add(task)

    def done(finished: asyncio.Future) -> None:
        tasks.discard(finished)
        if not finished.cancelled() and finished.exception() is not None:
            logger.error(f"Unhandled error in {context}", exc_info=finished.exception())

    task.add_done_callback(done)


@dataclass
class MutationRecord:
    type: str
    target: Tag
    added_nodes: List[Tag] = field(default_factory=list)
    removed_nodes: List[Tag] = field(default_factory=list)
    attribute_name: Optional[str] = None


@dataclass
class DOMEvent:
    type: str
    target: Tag
    checked: Optional[bool] = None
    detail: Dict[str, Any] = field(default_factory=dict)


def is_inclusive_descendant(node: Tag, ancestor: Tag) -> bool:
    if node is ancestor:
        return True
    return any(parent is ancestor for parent in node.parents)


def parse_style(style: Optional[str]) -> Dict[str, str]:
    declarations = {}
    for part in (style or "").split(";"):
        if ":" in part:
            name, value = part.split(":", 1)
            declarations[name.strip().lower()] = value.strip()
    return declarations


def format_style(declarations: Dict[str, str]) -> str:
    return "; ".join(f"{name}: {value}" for name, value in declarations.items() if value)


class TreeObserver:
    """Subscription to change notifications for a set of target nodes."""

    def __init__(self, document: 'PageDocument', callback: Callable):
        self._document = document
        self._callback = callback
        self._targets: List[Tuple[Tag, Dict[str, Any]]] = []
        self._pending: List[MutationRecord] = []

    def observe(self, target: Tag, subtree: bool = True, child_list: bool = True,
                attributes: bool = False, attribute_filter: Optional[Iterable[str]] = None) -> None:
        options = {
            "subtree": subtree,
            "child_list": child_list,
            "attributes": attributes or attribute_filter is not None,
            "attribute_filter": set(attribute_filter) if attribute_filter is not None else None,
        }
        self._targets = [(node, opts) for node, opts in self._targets if node is not target]
        self._targets.append((target, options))
        self._document._register(self)

    def disconnect(self) -> None:
        self._targets = []
        self._pending = []
        self._document._unregister(self)

    @property
    def targets(self) -> List[Tag]:
        return [node for node, _ in self._targets]

    @property
    def is_observing(self) -> bool:
        return bool(self._targets)

    def take_records(self) -> List[MutationRecord]:
        records, self._pending = self._pending, []
        return records

    def _wants(self, record: MutationRecord) -> bool:
        for node, options in self._targets:
            if record.type == "childList" and not options["child_list"]:
                continue
            if record.type == "attributes":
                if not options["attributes"]:
                    continue
                attribute_filter = options["attribute_filter"]
                if attribute_filter is not None and record.attribute_name not in attribute_filter:
                    continue
            if record.target is node:
                return True
            if options["subtree"] and is_inclusive_descendant(record.target, node):
                return True
        return False

    def _enqueue(self, record: MutationRecord) -> None:
        self._pending.append(record)

    def _deliver(self) -> None:
        records = self.take_records()
        if not records or not self._targets:
            return
        try:
            result = self._callback(records, self)
        except Exception:
            logger.exception("Error in tree observer callback")
            return
        self._document._spawn(result)


class PageDocument:
    """
    A mutable document tree with change notifications, a location and
    a navigation-finished signal.
    """

    def __init__(self, markup: str = DEFAULT_MARKUP, url: str = "https://www.youtube.com/"):
        self.soup = BeautifulSoup(markup, "html.parser")
        self.location = url
        self._observers: List[TreeObserver] = []
        self._listeners: Dict[str, List[Callable]] = {}
        self._node_listeners: Dict[int, Tuple[Tag, Dict[str, List[Callable]]]] = {}
        self._tasks = set()
        self._delivery_scheduled = False
        self._delivery_loop: Optional[asyncio.AbstractEventLoop] = None

    # --- Queries ---

    @property
    def body(self) -> Tag:
        return self.soup.body or self.soup

    @property
    def title(self) -> str:
        title = self.soup.title
        return title.get_text().strip() if title is not None else ""

    @property
    def path(self) -> str:
        return urlparse(self.location).path or "/"

    def query_param(self, name: str) -> Optional[str]:
        values = parse_qs(urlparse(self.location).query).get(name)
        return values[0] if values else None

    def select(self, selector: str, root: Optional[Tag] = None) -> List[Tag]:
        return (root or self.soup).select(selector)

    def select_one(self, selector: str, root: Optional[Tag] = None) -> Optional[Tag]:
        return (root or self.soup).select_one(selector)

    def contains(self, node: Optional[Tag]) -> bool:
        return node is not None and is_inclusive_descendant(node, self.soup)

    def closest(self, node: Tag, selector: str) -> Optional[Tag]:
        return node.css.closest(selector)

    def matches(self, node: Any, selector: str) -> bool:
        return isinstance(node, Tag) and node.css.match(selector)

    # --- Mutation ---

    def create_element(self, name: str, attrs: Optional[Dict[str, Any]] = None, text: Optional[str] = None) -> Tag:
        element = self.soup.new_tag(name, attrs=dict(attrs or {}))
        if text is not None:
            element.string = text
        return element

    def append_child(self, parent: Tag, child: Tag) -> Tag:
        parent.append(child)
        self._record(MutationRecord("childList", parent, added_nodes=[child]))
        return child

    def prepend_child(self, parent: Tag, child: Tag) -> Tag:
        parent.insert(0, child)
        self._record(MutationRecord("childList", parent, added_nodes=[child]))
        return child

    def append_html(self, parent: Tag, markup: str) -> List[Tag]:
        """Parse a fragment and append its top-level elements as one change."""
        fragment = BeautifulSoup(markup, "html.parser")
        added = [node for node in list(fragment.contents) if isinstance(node, Tag)]
        for node in added:
            parent.append(node.extract())
        if added:
            self._record(MutationRecord("childList", parent, added_nodes=added))
        return added

    def replace_children(self, parent: Tag, markup: str = "") -> List[Tag]:
        removed = [node for node in list(parent.contents) if isinstance(node, Tag)]
        parent.clear()
        for node in removed:
            self._forget_listeners(node)
        if removed:
            self._record(MutationRecord("childList", parent, removed_nodes=removed))
        return self.append_html(parent, markup) if markup else []

    def remove(self, node: Optional[Tag]) -> bool:
        if node is None or node.parent is None:
            return False
        parent = node.parent
        node.extract()
        self._forget_listeners(node)
        self._record(MutationRecord("childList", parent, removed_nodes=[node]))
        return True

    def set_attribute(self, node: Tag, name: str, value: Any) -> None:
        node[name] = value
        self._record(MutationRecord("attributes", node, attribute_name=name))

    def remove_attribute(self, node: Tag, name: str) -> None:
        if name in node.attrs:
            del node[name]
            self._record(MutationRecord("attributes", node, attribute_name=name))

    def get_style(self, node: Tag, prop: str) -> Optional[str]:
        return parse_style(node.get("style")).get(prop.lower())

    def set_style(self, node: Tag, prop: str, value: Optional[str]) -> None:
        declarations = parse_style(node.get("style"))
        if value:
            declarations[prop.lower()] = value
        else:
            declarations.pop(prop.lower(), None)
        style = format_style(declarations)
        if style:
            self.set_attribute(node, "style", style)
        else:
            self.remove_attribute(node, "style")

    def set_text(self, node: Tag, text: str) -> None:
        removed = [child for child in list(node.contents) if isinstance(child, Tag)]
        node.string = text
        self._record(MutationRecord("childList", node, removed_nodes=removed))

    # --- Navigation ---

    def navigate(self, url: str, title: Optional[str] = None) -> None:
        """Change location and fire the navigation-finished signal."""
        self.location = url
        if title is not None and self.soup.title is not None:
            self.soup.title.string = title
        self._fire(NAVIGATE_FINISH, url)

    def on(self, event: str, callback: Callable) -> Callable:
        self._listeners.setdefault(event, []).append(callback)
        return lambda: self.off(event, callback)

    def off(self, event: str, callback: Callable) -> None:
        callbacks = self._listeners.get(event)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)

    def _fire(self, event: str, payload: Any) -> None:
        # Snapshot: listeners added while handling this event see the next one only
        callbacks = list(self._listeners.get(event, []))

        def run():
            for callback in callbacks:
                self._invoke(callback, payload, context=event)

        try:
            asyncio.get_running_loop().call_soon(run)
        except RuntimeError:
            run()

    # --- Node events ---

    def add_event_listener(self, node: Tag, event: str, callback: Callable) -> None:
        _, events = self._node_listeners.setdefault(id(node), (node, {}))
        events.setdefault(event, []).append(callback)

    def listener_count(self, node: Tag, event: str) -> int:
        entry = self._node_listeners.get(id(node))
        return len(entry[1].get(event, [])) if entry else 0

    def dispatch_event(self, node: Tag, event_type: str, **detail) -> DOMEvent:
        event = DOMEvent(event_type, node, checked=self.is_checked(node), detail=detail)
        entry = self._node_listeners.get(id(node))
        if entry is not None:
            for callback in list(entry[1].get(event_type, [])):
                self._invoke(callback, event, context=event_type)
        return event

    def click(self, node: Tag) -> DOMEvent:
        """Simulate a user click: checkboxes toggle and fire change, others fire click."""
        if node.name == "input" and node.get("type") == "checkbox":
            self.set_checked(node, not self.is_checked(node))
            return self.dispatch_event(node, "change")
        if node.has_attr("disabled"):
            return DOMEvent("click", node)
        return self.dispatch_event(node, "click")

    def is_checked(self, node: Tag) -> bool:
        return node.has_attr("checked")

    def set_checked(self, node: Tag, checked: bool) -> None:
        if checked and not self.is_checked(node):
            self.set_attribute(node, "checked", "")
        elif not checked:
            self.remove_attribute(node, "checked")

    def _forget_listeners(self, node: Tag) -> None:
        for key, (owner, _) in list(self._node_listeners.items()):
            if is_inclusive_descendant(owner, node):
                del self._node_listeners[key]

    # --- Observation ---

    def observe(self, callback: Callable) -> TreeObserver:
        """Create an observer; call ``observe(target, ...)`` on it to start receiving records."""
        return TreeObserver(self, callback)

    async def wait_for_element(self, selector: str, timeout: float = 5.0) -> Tag:
        element = self.select_one(selector)
        if element is not None:
            return element

        future = asyncio.get_running_loop().create_future()

        def on_change(records, observer):
            found = self.select_one(selector)
            if found is not None and not future.done():
                future.set_result(found)

        observer = self.observe(on_change)
        observer.observe(self.body, subtree=True)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise ElementTimeoutError(f"Element {selector} not found")
        finally:
            observer.disconnect()

    async def settle(self, rounds: int = 50) -> None:
        """Let queued notifications and spawned handlers run to completion."""
        for _ in range(rounds):
            await asyncio.sleep(0)
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            elif not (self._delivery_scheduled and self._delivery_loop is asyncio.get_running_loop()):
                return

    def _register(self, observer: TreeObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def _unregister(self, observer: TreeObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _record(self, record: MutationRecord) -> None:
        interested = [observer for observer in self._observers if observer._wants(record)]
        if not interested:
            return
        for observer in interested:
            observer._enqueue(record)
        self._schedule_delivery()

    def _schedule_delivery(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        # A flush queued on a loop that has since closed never runs
        if self._delivery_scheduled and self._delivery_loop is loop:
            return
        if loop is None:
            self._flush()
            return
        self._delivery_scheduled = True
        self._delivery_loop = loop
        loop.call_soon(self._flush)

    def _flush(self) -> None:
        self._delivery_scheduled = False
        self._delivery_loop = None
        for observer in list(self._observers):
            observer._deliver()

    # --- Handlers ---

    def _invoke(self, callback: Callable, payload: Any, context: str) -> None:
        try:
            result = callback(payload)
        except Exception:
            logger.exception(f"Error in {context} listener")
            return
        self._spawn(result, f"{context} listener")

    def _spawn(self, result: Any, context: str = "document handler") -> None:
        spawn_handler(result, self._tasks, context, after=self.settle)
