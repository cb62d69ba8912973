"""
Timedtext service: caption track discovery and subtitle conversion.

This module implements:
- Discovery of caption tracks from the ytInitialPlayerResponse blob embedded in a watch page.
- Tolerant parsing: a missing or malformed blob is "no tracks", never a crash.
- Fetching of timed-text XML payloads and conversion to SRT or plain text.
- One attempt per fetch; transport failures surface as FetchError, malformed markup as ConversionError.
- Logging with masked payload URLs.
"""

import html
import json
import math
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Optional, Dict, List, Any
from urllib.parse import urlencode, urlparse, urlunparse, parse_qs

import httpx

from error_handler import FetchError, ConversionError
from logging_setup import get_logger, set_flow_ctx
from log_events import evt
from models import CaptionTrack, ExportFormat, ItemRecord
from subtitle_config import SubtitleConfig, get_subtitle_config, MESSAGES

logger = get_logger(__name__)

PLAYER_RESPONSE_PATTERN = re.compile(r'ytInitialPlayerResponse\s*=\s*({.+?});')


# --- Helper Functions ---

def _mask_url_for_logging(url: str) -> str:
    """Mask sensitive query parameters in URLs for logging."""
    try:
        parsed = urlparse(url)
        if not parsed.query:
            return url
        params = parse_qs(parsed.query, keep_blank_values=True)
        sensitive_params = {'key', 'token', 'auth', 'session', 'sig', 'signature', 'pot'}
        masked_params = {
            key: ['***MASKED***'] * len(values) if key.lower() in sensitive_params else values
            for key, values in params.items()
        }
        masked_query = urlencode(masked_params, doseq=True)
        return urlunparse(parsed._replace(query=masked_query))
    except ValueError:
        return f"{url.split('?')[0]}?***MASKED_QUERY***" if '?' in url else url


def _create_client(config: SubtitleConfig) -> httpx.AsyncClient:
    """Create an HTTP client for page and timed-text requests."""
    return httpx.AsyncClient(
        timeout=config.fetch_timeout,
        follow_redirects=True,
        headers={
            "User-Agent": config.user_agent,
            "Accept": "*/*",
            "Accept-Language": config.accept_language,
        },
    )


# --- Discovery ---

def extract_player_response(page_html: str) -> Optional[Dict[str, Any]]:
    """Locate and parse the embedded player response; None when absent or malformed."""
    match = PLAYER_RESPONSE_PATTERN.search(page_html or "")
    if not match:
        return None
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        evt("player_response_parse_failed", error=str(e)[:100])
        return None
    return data if isinstance(data, dict) else None


def _track_name(raw_name: Any, fallback: str) -> str:
    if isinstance(raw_name, dict):
        if raw_name.get("simpleText"):
            return raw_name["simpleText"]
        runs = raw_name.get("runs")
        if isinstance(runs, list):
            text = "".join(run.get("text", "") for run in runs if isinstance(run, dict))
            if text:
                return text
    return fallback


def parse_caption_tracks(player_response: Optional[Dict[str, Any]]) -> List[CaptionTrack]:
    """Extract caption tracks from captions.playerCaptionsTracklistRenderer.captionTracks."""
    if not isinstance(player_response, dict):
        return []

    captions = player_response.get("captions")
    if not isinstance(captions, dict):
        return []
    renderer = captions.get("playerCaptionsTracklistRenderer")
    if not isinstance(renderer, dict):
        return []
    raw_tracks = renderer.get("captionTracks")
    if not isinstance(raw_tracks, list):
        return []

    tracks = []
    seen = set()
    for raw in raw_tracks:
        if not isinstance(raw, dict):
            continue
        language_code = raw.get("languageCode")
        base_url = raw.get("baseUrl")
        if not language_code or not base_url:
            logger.debug(f"Skipping caption track without languageCode/baseUrl: {sorted(raw)}")
            continue
        if language_code in seen:
            # Language codes identify tracks within an item
            continue
        seen.add(language_code)
        tracks.append(CaptionTrack(
            language_code=language_code,
            language_name=_track_name(raw.get("name"), language_code),
            payload_locator=base_url,
            kind=raw.get("kind", "") or "",
        ))
    return tracks


def _video_title(player_response: Optional[Dict[str, Any]], fallback: str) -> str:
    if isinstance(player_response, dict):
        details = player_response.get("videoDetails")
        if isinstance(details, dict) and details.get("title"):
            return str(details["title"]).strip() or fallback
    return fallback


# --- Conversion ---

@dataclass(frozen=True)
class Cue:
    start: float
    duration: float
    text: str

    @property
    def end(self) -> float:
        return self.start + self.duration


def _parse_seconds(value: Optional[str], attribute: str, default: Optional[float] = None) -> float:
    if value is None:
        if default is None:
            raise ConversionError(f"Cue is missing the '{attribute}' attribute", code="SRT_CONVERSION_ERROR")
        return default
    try:
        seconds = float(value)
    except ValueError as e:
        raise ConversionError(f"Invalid {attribute} value: {value!r}", code="SRT_CONVERSION_ERROR", original_error=e)
    if not math.isfinite(seconds):
        raise ConversionError(f"Non-finite {attribute} value: {value!r}", code="SRT_CONVERSION_ERROR")
    return seconds


def parse_timed_text(xml_string: str) -> List[Cue]:
    """Parse a timed-text XML document into cues, in document order."""
    if not xml_string or not xml_string.strip():
        raise ConversionError("Timed-text payload is empty", code="TEXT_CONVERSION_ERROR")
    try:
        root = ET.fromstring(xml_string.strip())
    except ET.ParseError as e:
        evt("timedtext_parse_failed", error=str(e)[:100])
        raise ConversionError("Malformed timed-text markup", code="TEXT_CONVERSION_ERROR", original_error=e)

    cues = []
    for node in root.iter("text"):
        text = html.unescape("".join(node.itertext()))
        cues.append(Cue(
            start=_parse_seconds(node.get("start"), "start"),
            duration=_parse_seconds(node.get("dur"), "dur", default=0.0),
            text=text,
        ))
    return cues


def format_timestamp(seconds: float) -> str:
    """Format seconds as HH:MM:SS,mmm; negative values clamp to zero."""
    if not math.isfinite(seconds):
        raise ConversionError(f"Cannot format non-finite time {seconds!r}", code="SRT_CONVERSION_ERROR")
    if seconds < 0:
        logger.debug(f"Clamping negative timestamp {seconds} to 0")
        seconds = 0.0

    millis = math.floor((seconds % 1) * 1000)
    whole = math.floor(seconds)
    hours = whole // 3600
    minutes = (whole % 3600) // 60
    secs = whole % 60
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def convert_to_srt(xml_string: str) -> str:
    blocks = []
    for index, cue in enumerate(parse_timed_text(xml_string), start=1):
        blocks.append(
            f"{index}\n"
            f"{format_timestamp(cue.start)} --> {format_timestamp(cue.end)}\n"
            f"{cue.text}\n\n"
        )
    return "".join(blocks)


def convert_to_text(xml_string: str) -> str:
    lines = (cue.text.strip() for cue in parse_timed_text(xml_string))
    return "\n".join(line for line in lines if line)


CONVERTERS = {
    ExportFormat.SRT: convert_to_srt,
    ExportFormat.TEXT: convert_to_text,
}


# --- Service ---

class TimedTextService:
    """
    Discovers caption tracks for items and converts their timed-text payloads.

    A single ``httpx.AsyncClient`` is shared across calls; each fetch is
    attempted exactly once.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, config: Optional[SubtitleConfig] = None):
        self.config = config or get_subtitle_config()
        self._owns_client = client is None
        self.client = client or _create_client(self.config)

    async def __aenter__(self) -> 'TimedTextService':
        return self

    async def __aexit__(self, exc_type, exc_value, traceback):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _get_text(self, url: str, code: str, **params) -> str:
        try:
            resp = await self.client.get(url, params=params or None)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            evt("timedtext_http_status", url=_mask_url_for_logging(url), status_code=e.response.status_code)
            raise FetchError(MESSAGES["ERROR"]["FETCH"], code=code, original_error=e)
        except httpx.HTTPError as e:
            evt("timedtext_request_failed", url=_mask_url_for_logging(url), error=str(e)[:100])
            raise FetchError(MESSAGES["ERROR"]["FETCH"], code=code, original_error=e)
        return resp.text

    async def discover_item(self, item_id: str) -> ItemRecord:
        """Fetch the watch page of an item and read its title and caption tracks."""
        set_flow_ctx(item_id=item_id)
        page_html = await self._get_text(self.config.watch_url, "SUBTITLE_FETCH_ERROR", v=item_id)

        player_response = extract_player_response(page_html)
        if player_response is None:
            evt("player_response_not_found", item_id=item_id)
            return ItemRecord(id=item_id, title=item_id, tracks=())

        tracks = parse_caption_tracks(player_response)
        title = _video_title(player_response, fallback=item_id)
        evt("tracks_discovered", item_id=item_id, count=len(tracks))
        return ItemRecord(id=item_id, title=title, tracks=tuple(tracks))

    async def discover_tracks(self, item_id: str) -> List[CaptionTrack]:
        """Return the item's caption tracks; empty when none are discoverable."""
        record = await self.discover_item(item_id)
        return list(record.tracks or ())

    async def fetch_and_convert(self, track: CaptionTrack, fmt=ExportFormat.SRT) -> str:
        """Fetch a track's timed-text payload and convert it to the requested format."""
        fmt = ExportFormat.parse(fmt)
        logger.debug(f"Fetching {track.language_code} payload from {_mask_url_for_logging(track.payload_locator)}")

        xml_string = await self._get_text(track.payload_locator, "CONTENT_FETCH_ERROR")
        content = CONVERTERS[fmt](xml_string)

        evt("timedtext_converted", language=track.language_code, format=fmt.value, length=len(content))
        return content
