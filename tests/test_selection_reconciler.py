"""
Tests for the selection reconciler: control injection, toggles, observation
retry and debounced passes.
"""

import asyncio
import unittest
from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import SelectionModel
from page_document import PageDocument
from selection_reconciler import Debouncer, SelectionReconciler, extract_item_id, extract_item_title
from subtitle_config import SubtitleConfig


def item_html(video_id, title, tag="ytd-video-renderer"):
    return (
        f'<{tag}><div id="dismissible">'
        f'<a id="thumbnail" href="/watch?v={video_id}&amp;t=5s"></a>'
        f'<a id="video-title"> {title} </a>'
        f'</div></{tag}>'
    )


def catalog_markup(*items):
    return (
        '<html><head><title>Results</title></head><body><ytd-app><div id="content">'
        + "".join(items)
        + '</div></ytd-app></body></html>'
    )


def make_config():
    return SubtitleConfig(debounce_ms=30, download_delay_ms=0, toast_duration_ms=100)


class TestItemExtraction(unittest.TestCase):
    def test_extracts_id_and_title(self):
        doc = PageDocument(catalog_markup(item_html("vid1", "First video")))
        element = doc.select_one("ytd-video-renderer")

        self.assertEqual(extract_item_id(doc, element), "vid1")
        self.assertEqual(extract_item_title(doc, element), "First video")

    def test_missing_link_and_title(self):
        doc = PageDocument(catalog_markup("<ytd-video-renderer><div id='dismissible'></div></ytd-video-renderer>"))
        element = doc.select_one("ytd-video-renderer")

        self.assertIsNone(extract_item_id(doc, element))
        self.assertEqual(extract_item_title(doc, element), "Untitled Video")


class TestReconcilePass(unittest.TestCase):
    """Test pass idempotence and control placement."""

    def setUp(self):
        self.doc = PageDocument(catalog_markup(
            item_html("vid1", "First video"),
            item_html("vid2", "Second video", tag="ytd-compact-video-renderer"),
        ))
        self.selection = SelectionModel()
        self.on_change = MagicMock()
        self.reconciler = SelectionReconciler(self.doc, self.selection, make_config(), on_change=self.on_change)

    def test_pass_twice_is_idempotent(self):
        first = self.reconciler.activate()
        second = self.reconciler.run_pass()

        self.assertEqual(first, 2)
        self.assertEqual(second, 0)
        self.assertEqual(len(self.doc.select(".yt-sub-checkbox")), 2)
        self.assertEqual(len(self.reconciler.controls), 2)
        self.assertEqual(self.selection.size(), 0)

    def test_control_placement(self):
        self.reconciler.activate()

        compact = self.doc.select_one("ytd-compact-video-renderer")
        checkbox = self.doc.select_one(".yt-sub-checkbox", root=compact)
        container = checkbox.parent

        self.assertEqual(container.get("id"), "dismissible")
        self.assertIs(container.contents[0], checkbox)
        self.assertEqual(checkbox["data-video-id"], "vid2")
        self.assertEqual(self.doc.get_style(checkbox, "top"), "5px")
        self.assertEqual(self.doc.get_style(checkbox, "left"), "-25px")
        self.assertEqual(self.doc.get_style(container, "position"), "relative")

    def test_inactive_reconciler_does_nothing(self):
        self.assertEqual(self.reconciler.run_pass(), 0)
        self.assertEqual(self.doc.select(".yt-sub-checkbox"), [])

    def test_toggle_on_then_off(self):
        self.reconciler.activate()
        checkbox = self.doc.select(".yt-sub-checkbox")[0]

        self.doc.click(checkbox)
        self.assertEqual(self.selection.size(), 1)
        self.assertEqual(self.selection.get("vid1").title, "First video")
        self.assertIsNone(self.selection.get("vid1").tracks)

        self.doc.click(checkbox)
        self.assertEqual(self.selection.size(), 0)
        self.assertNotIn("vid1", self.selection)
        self.assertEqual(self.on_change.call_count, 2)

    def test_toggle_reads_current_id(self):
        self.reconciler.activate()
        element = self.doc.select_one("ytd-video-renderer")
        link = self.doc.select_one("a#thumbnail", root=element)
        # Host reuses the element for another item
        self.doc.set_attribute(link, "href", "/watch?v=recycled")

        self.doc.click(self.doc.select_one(".yt-sub-checkbox", root=element))

        self.assertIn("recycled", self.selection)
        self.assertNotIn("vid1", self.selection)

    def test_set_all(self):
        self.reconciler.activate()

        self.reconciler.set_all(True)
        self.assertEqual(sorted(self.selection), ["vid1", "vid2"])
        self.assertTrue(all(self.doc.is_checked(cb) for cb in self.doc.select(".yt-sub-checkbox")))

        self.reconciler.set_all(False)
        self.assertEqual(self.selection.size(), 0)
        self.assertFalse(any(self.doc.is_checked(cb) for cb in self.doc.select(".yt-sub-checkbox")))

    def test_deactivate_removes_controls_and_restores_position(self):
        self.reconciler.activate()
        self.reconciler.deactivate()

        self.assertEqual(self.doc.select(".yt-sub-checkbox"), [])
        self.assertEqual(self.reconciler.controls, [])
        self.assertEqual(self.reconciler.observed_targets, [])
        for container in self.doc.select("#dismissible"):
            self.assertFalse(container.has_attr("style"))

    def test_deactivate_keeps_host_positioning(self):
        doc = PageDocument(catalog_markup(
            '<ytd-video-renderer><div id="dismissible" style="position: relative">'
            '<a id="thumbnail" href="/watch?v=host1"></a><a id="video-title">Hosted</a>'
            '</div></ytd-video-renderer>',
            item_html("vid1", "First video"),
        ))
        reconciler = SelectionReconciler(doc, SelectionModel(), make_config())

        reconciler.activate()
        reconciler.deactivate()

        hosted, ours = doc.select("#dismissible")
        self.assertEqual(doc.get_style(hosted, "position"), "relative")
        self.assertFalse(ours.has_attr("style"))

    def test_detached_controls_are_pruned(self):
        self.reconciler.activate()
        content = self.doc.select_one("#content")

        self.doc.replace_children(content, item_html("vid3", "Third video"))
        self.reconciler.run_pass()

        self.assertEqual(len(self.reconciler.controls), 1)
        self.assertEqual(self.reconciler.controls[0]["data-video-id"], "vid3")
        self.assertEqual(len(self.doc.select(".yt-sub-checkbox")), 1)


class TestObservation(unittest.TestCase):
    """Test scope observation, retry and debounced passes."""

    def test_retries_observation_when_no_scope_exists(self):
        doc = PageDocument("<html><body><ytd-app></ytd-app></body></html>")
        reconciler = SelectionReconciler(doc, SelectionModel(), make_config())

        reconciler.activate()
        self.assertEqual(reconciler.observed_targets, [])

        doc.append_html(doc.select_one("ytd-app"), '<div id="content"></div>')
        reconciler.run_pass()

        self.assertEqual(len(reconciler.observed_targets), 1)
        self.assertIs(reconciler.observed_targets[0], doc.select_one("#content"))

    def test_reobserves_replaced_scope(self):
        doc = PageDocument(catalog_markup())
        reconciler = SelectionReconciler(doc, SelectionModel(), make_config())
        reconciler.activate()
        old_content = doc.select_one("#content")

        app = doc.select_one("ytd-app")
        doc.replace_children(app, '<div id="content"></div>')
        reconciler.run_pass()

        self.assertIsNot(reconciler.observed_targets[0], old_content)
        self.assertIs(reconciler.observed_targets[0], doc.select_one("#content"))

    def test_observes_scope_that_appears_later(self):
        doc = PageDocument(catalog_markup(item_html("vid1", "First video")))
        reconciler = SelectionReconciler(doc, SelectionModel(), make_config())
        reconciler.activate()
        self.assertEqual(len(reconciler.observed_targets), 1)

        doc.append_html(doc.select_one("ytd-app"), '<div id="related"></div>')
        reconciler.run_pass()

        related = doc.select_one("#related")
        self.assertEqual(len(reconciler.observed_targets), 2)
        self.assertTrue(any(target is related for target in reconciler.observed_targets))

    def test_new_items_trigger_one_debounced_pass(self):
        async def scenario():
            doc = PageDocument(catalog_markup())
            reconciler = SelectionReconciler(doc, SelectionModel(), make_config())
            reconciler.activate()
            passes_before = reconciler.passes
            content = doc.select_one("#content")

            for index in range(3):
                doc.append_html(content, item_html(f"late{index}", f"Late {index}"))
                await asyncio.sleep(0)

            await doc.settle()
            await asyncio.sleep(0.2)
            return doc, reconciler, passes_before

        doc, reconciler, passes_before = asyncio.run(scenario())

        self.assertEqual(reconciler.passes, passes_before + 1)
        self.assertEqual(len(doc.select(".yt-sub-checkbox")), 3)

    def test_pending_pass_dropped_on_deactivate(self):
        async def scenario():
            doc = PageDocument(catalog_markup())
            reconciler = SelectionReconciler(doc, SelectionModel(), make_config())
            reconciler.activate()
            doc.append_html(doc.select_one("#content"), item_html("late", "Late"))
            await doc.settle()
            reconciler.deactivate()
            await asyncio.sleep(0.2)
            return doc

        doc = asyncio.run(scenario())

        self.assertEqual(doc.select(".yt-sub-checkbox"), [])

    def test_superseded_epoch_is_discarded(self):
        doc = PageDocument(catalog_markup(item_html("vid1", "First video")))
        reconciler = SelectionReconciler(doc, SelectionModel(), make_config())
        reconciler.activate()
        stale_epoch = reconciler.epoch
        reconciler.deactivate()
        reconciler.activate()
        passes = reconciler.passes

        reconciler._debounced_pass(stale_epoch)

        self.assertEqual(reconciler.passes, passes)


class TestDebouncer(unittest.TestCase):
    def test_calls_are_coalesced(self):
        calls = []

        async def scenario():
            debouncer = Debouncer(lambda value: calls.append(value), 0.03)
            debouncer(1)
            debouncer(2)
            debouncer(3)
            self.assertTrue(debouncer.pending)
            await asyncio.sleep(0.1)
            self.assertFalse(debouncer.pending)

        asyncio.run(scenario())

        self.assertEqual(calls, [3])

    def test_cancel(self):
        calls = []

        async def scenario():
            debouncer = Debouncer(lambda: calls.append(1), 0.03)
            debouncer()
            debouncer.cancel()
            await asyncio.sleep(0.1)

        asyncio.run(scenario())

        self.assertEqual(calls, [])

    def test_runs_coroutines(self):
        calls = []

        async def record():
            calls.append("ran")

        async def scenario():
            debouncer = Debouncer(record, 0.01)
            debouncer()
            await asyncio.sleep(0.1)

        asyncio.run(scenario())

        self.assertEqual(calls, ["ran"])

    def test_runs_coroutines_outside_event_loop(self):
        calls = []

        async def record(value):
            await asyncio.sleep(0)
            calls.append(value)

        Debouncer(record, 0.01)("now")

        self.assertEqual(calls, ["now"])

    def test_timer_on_closed_loop_is_not_pending(self):
        debouncer = Debouncer(lambda: None, 10)

        async def schedule():
            debouncer()

        asyncio.run(schedule())

        self.assertFalse(debouncer.pending)


if __name__ == '__main__':
    unittest.main()
