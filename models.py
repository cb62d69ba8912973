"""
Data model shared by the single-item and bulk flows.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple


@dataclass(frozen=True)
class CaptionTrack:
    """One caption stream of an item, identified by its language code."""

    language_code: str
    language_name: str
    payload_locator: str
    kind: str = ""


@dataclass(frozen=True)
class ItemRecord:
    """An item as known to the selection model.

    ``tracks`` stays ``None`` until discovery ran for the item.
    """

    id: str
    title: str
    tracks: Optional[Tuple[CaptionTrack, ...]] = None

    def with_tracks(self, tracks) -> 'ItemRecord':
        return replace(self, tracks=tuple(tracks))

    def find_track(self, language_code: str) -> Optional[CaptionTrack]:
        for track in self.tracks or ():
            if track.language_code == language_code:
                return track
        return None

    @property
    def has_tracks(self) -> bool:
        return bool(self.tracks)


class SelectionModel:
    """Mapping of item id to ItemRecord; the only store of what gets exported."""

    def __init__(self):
        self._items: Dict[str, ItemRecord] = {}

    def set(self, item_id: str, record: ItemRecord) -> None:
        self._items[item_id] = record

    def delete(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None

    def get(self, item_id: str) -> Optional[ItemRecord]:
        return self._items.get(item_id)

    def clear(self) -> None:
        self._items.clear()

    def size(self) -> int:
        return len(self._items)

    def entries(self) -> List[Tuple[str, ItemRecord]]:
        # Snapshot, so callers may mutate the model while iterating
        return list(self._items.items())

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id) -> bool:
        return item_id in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))


class ModeState(Enum):
    IDLE = "idle"
    SINGLE_ACTIVE = "single_active"
    BULK_SELECTING = "bulk_selecting"
    BULK_REVIEWING = "bulk_reviewing"


class PageType(Enum):
    WATCH = "watch"
    SEARCH = "search"
    HOME = "home"
    OTHER = "other"


class ExportFormat(str, Enum):
    SRT = "srt"
    TEXT = "txt"

    @classmethod
    def parse(cls, value) -> 'ExportFormat':
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


@dataclass(frozen=True)
class ExportJob:
    """One (item, track) pair resolved for export."""

    title: str
    track: CaptionTrack
    header: str


@dataclass
class ReviewSection:
    """One item as rendered by the review dialog."""

    item_id: str
    title: str
    tracks: Tuple[CaptionTrack, ...] = ()

    @property
    def has_tracks(self) -> bool:
        return bool(self.tracks)


@dataclass
class ReviewChoice:
    """What the user picked in a review dialog."""

    pairs: List[Tuple[str, str]] = field(default_factory=list)
    format: ExportFormat = ExportFormat.SRT

    @property
    def language_codes(self) -> List[str]:
        return [language_code for _, language_code in self.pairs]
