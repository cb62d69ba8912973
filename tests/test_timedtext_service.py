"""
Tests for caption track discovery and timed-text conversion.

HTTP is served by httpx.MockTransport so no network access is needed.
"""

import asyncio
import json
import math
import unittest

import httpx

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from error_handler import ConversionError, FetchError
from models import CaptionTrack, ExportFormat
from subtitle_config import SubtitleConfig
from timedtext_service import (
    TimedTextService, convert_to_srt, convert_to_text, extract_player_response,
    format_timestamp, parse_caption_tracks, parse_timed_text, _mask_url_for_logging
)


TIMEDTEXT_XML = (
    '<?xml version="1.0" encoding="utf-8" ?><transcript>'
    '<text start="0" dur="1.5">Hello</text>'
    '<text start="1.5" dur="2">World &amp;amp; all</text>'
    '<text start="3725.25" dur="1">End</text>'
    '</transcript>'
)

PLAYER_RESPONSE = {
    "videoDetails": {"title": "Test Video"},
    "captions": {
        "playerCaptionsTracklistRenderer": {
            "captionTracks": [
                {
                    "baseUrl": "https://www.youtube.com/api/timedtext?v=abc123&lang=en",
                    "name": {"simpleText": "English"},
                    "languageCode": "en",
                },
                {
                    "baseUrl": "https://www.youtube.com/api/timedtext?v=abc123&lang=fr",
                    "name": {"runs": [{"text": "French"}]},
                    "languageCode": "fr",
                    "kind": "asr",
                },
            ]
        }
    },
}


def watch_page(player_response=None, raw_blob=None):
    if raw_blob is None and player_response is not None:
        raw_blob = json.dumps(player_response)
    script = f"<script>var ytInitialPlayerResponse = {raw_blob};var meta = 1;</script>" if raw_blob else ""
    return f"<html><head><title>Watch</title></head><body>{script}</body></html>"


def make_service(handler) -> TimedTextService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TimedTextService(client=client, config=SubtitleConfig())


class TestFormatTimestamp(unittest.TestCase):
    """Test SRT timestamp formatting."""

    def test_hours_minutes_seconds_millis(self):
        self.assertEqual(format_timestamp(3725.250), "01:02:05,250")

    def test_zero(self):
        self.assertEqual(format_timestamp(0), "00:00:00,000")

    def test_millis_are_truncated_not_rounded(self):
        self.assertEqual(format_timestamp(1.9999), "00:00:01,999")

    def test_negative_time_clamps_to_zero(self):
        self.assertEqual(format_timestamp(-3.5), "00:00:00,000")

    def test_non_finite_time_raises(self):
        with self.assertRaises(ConversionError):
            format_timestamp(math.nan)
        with self.assertRaises(ConversionError):
            format_timestamp(math.inf)


class TestConversion(unittest.TestCase):
    """Test timed-text parsing and SRT / plain text conversion."""

    def test_srt_has_one_block_per_cue_in_order(self):
        srt = convert_to_srt(TIMEDTEXT_XML)

        expected = (
            "1\n00:00:00,000 --> 00:00:01,500\nHello\n\n"
            "2\n00:00:01,500 --> 00:00:03,500\nWorld & all\n\n"
            "3\n01:02:05,250 --> 01:02:06,250\nEnd\n\n"
        )
        self.assertEqual(srt, expected)

    def test_text_excludes_empty_cues(self):
        xml = (
            '<transcript>'
            '<text start="0" dur="1">first line</text>'
            '<text start="1" dur="1">   </text>'
            '<text start="2" dur="1">second line</text>'
            '</transcript>'
        )
        self.assertEqual(convert_to_text(xml), "first line\nsecond line")

    def test_missing_duration_defaults_to_zero(self):
        cues = parse_timed_text('<transcript><text start="2">x</text></transcript>')
        self.assertEqual(len(cues), 1)
        self.assertEqual(cues[0].end, 2.0)

    def test_malformed_markup_raises_conversion_error(self):
        with self.assertRaises(ConversionError):
            convert_to_srt("<transcript><text start='0'>unterminated")

    def test_empty_payload_raises_conversion_error(self):
        with self.assertRaises(ConversionError):
            convert_to_text("")

    def test_invalid_start_raises_conversion_error(self):
        with self.assertRaises(ConversionError):
            parse_timed_text('<transcript><text start="abc" dur="1">x</text></transcript>')

    def test_no_cues_gives_empty_output(self):
        self.assertEqual(convert_to_srt("<transcript></transcript>"), "")


class TestTrackParsing(unittest.TestCase):
    """Test extraction of caption tracks from the embedded player response."""

    def test_extract_player_response(self):
        data = extract_player_response(watch_page(PLAYER_RESPONSE))
        self.assertEqual(data["videoDetails"]["title"], "Test Video")

    def test_missing_blob_returns_none(self):
        self.assertIsNone(extract_player_response(watch_page()))

    def test_malformed_blob_returns_none(self):
        self.assertIsNone(extract_player_response(watch_page(raw_blob="{not json}")))

    def test_track_names_from_simple_text_and_runs(self):
        tracks = parse_caption_tracks(PLAYER_RESPONSE)

        self.assertEqual([t.language_code for t in tracks], ["en", "fr"])
        self.assertEqual([t.language_name for t in tracks], ["English", "French"])
        self.assertEqual(tracks[1].kind, "asr")

    def test_skips_incomplete_and_duplicate_tracks(self):
        response = {"captions": {"playerCaptionsTracklistRenderer": {"captionTracks": [
            {"languageCode": "en", "baseUrl": "https://example.com/en", "name": {"simpleText": "English"}},
            {"languageCode": "de", "name": {"simpleText": "German"}},
            {"languageCode": "en", "baseUrl": "https://example.com/en2"},
            {"baseUrl": "https://example.com/none"},
        ]}}}

        tracks = parse_caption_tracks(response)

        self.assertEqual(len(tracks), 1)
        self.assertEqual(tracks[0].payload_locator, "https://example.com/en")

    def test_unexpected_shapes_give_no_tracks(self):
        self.assertEqual(parse_caption_tracks(None), [])
        self.assertEqual(parse_caption_tracks({"captions": []}), [])
        self.assertEqual(parse_caption_tracks({"captions": {"playerCaptionsTracklistRenderer": {}}}), [])


class TestTimedTextService(unittest.TestCase):
    """Test discovery and payload fetching against a mock transport."""

    def test_discover_tracks_found(self):
        requested = []

        def handler(request):
            requested.append(request.url.params.get("v"))
            return httpx.Response(200, text=watch_page(PLAYER_RESPONSE))

        async def scenario():
            async with make_service(handler) as service:
                return await service.discover_item("abc123")

        record = asyncio.run(scenario())

        self.assertEqual(requested, ["abc123"])
        self.assertEqual(record.title, "Test Video")
        self.assertEqual([t.language_code for t in record.tracks], ["en", "fr"])

    def test_discover_tracks_absent_blob_is_empty(self):
        async def scenario():
            async with make_service(lambda request: httpx.Response(200, text=watch_page())) as service:
                return await service.discover_tracks("abc123")

        self.assertEqual(asyncio.run(scenario()), [])

    def test_discover_tracks_malformed_blob_is_empty(self):
        page = watch_page(raw_blob="{broken: json,}")

        async def scenario():
            async with make_service(lambda request: httpx.Response(200, text=page)) as service:
                return await service.discover_tracks("abc123")

        self.assertEqual(asyncio.run(scenario()), [])

    def test_http_error_status_raises_fetch_error(self):
        async def scenario():
            async with make_service(lambda request: httpx.Response(500, text="oops")) as service:
                await service.discover_tracks("abc123")

        with self.assertRaises(FetchError) as ctx:
            asyncio.run(scenario())
        self.assertIsInstance(ctx.exception.original_error, httpx.HTTPStatusError)

    def test_network_error_raises_fetch_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def scenario():
            async with make_service(handler) as service:
                await service.discover_tracks("abc123")

        with self.assertRaises(FetchError):
            asyncio.run(scenario())

    def test_fetch_and_convert(self):
        track = CaptionTrack("en", "English", "https://www.youtube.com/api/timedtext?v=abc123&lang=en")

        def handler(request):
            self.assertEqual(request.url.path, "/api/timedtext")
            return httpx.Response(200, text=TIMEDTEXT_XML)

        async def scenario():
            async with make_service(handler) as service:
                srt = await service.fetch_and_convert(track, ExportFormat.SRT)
                text = await service.fetch_and_convert(track, "txt")
                return srt, text

        srt, text = asyncio.run(scenario())

        self.assertTrue(srt.startswith("1\n00:00:00,000 --> 00:00:01,500\nHello\n\n"))
        self.assertEqual(text, "Hello\nWorld & all\nEnd")

    def test_fetch_and_convert_malformed_payload(self):
        track = CaptionTrack("en", "English", "https://www.youtube.com/api/timedtext?lang=en")

        async def scenario():
            async with make_service(lambda request: httpx.Response(200, text="<transcript><text")) as service:
                await service.fetch_and_convert(track)

        with self.assertRaises(ConversionError):
            asyncio.run(scenario())


class TestUrlMasking(unittest.TestCase):
    def test_sensitive_params_are_masked(self):
        masked = _mask_url_for_logging("https://www.youtube.com/api/timedtext?v=abc&signature=secret&lang=en")
        self.assertNotIn("secret", masked)
        self.assertIn("lang=en", masked)


if __name__ == '__main__':
    unittest.main()
