"""
Data model for ProxyPrint: card records, print settings, cache entries,
progress events and the cancellation token.
"""

import threading
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from config import (
    DEFAULT_GRID, DEFAULT_SAFE_MARGIN_MM, DEFAULT_BLEED_SIZE_MM, DEFAULT_CROP_MARK_LENGTH_MM,
    DEFAULT_CROP_MARK_OFFSET_MM, DEFAULT_CROP_MARK_THICKNESS_PT, DEFAULT_CARD_BACK,
)
from errors import OperationAborted

IMAGE_URI_PRIORITY = ("full", "large", "small")


class CardRecord(NamedTuple):
    """A resolved card: identifier, display name, prioritised image references, copy count."""
    id: str
    name: str
    image_uris: Tuple[str, ...]
    count: int = 1

    def image_candidates(self) -> List[str]:
        """Non-empty image references in priority order (full > large > small)."""
        seen: List[str] = []
        for uri in self.image_uris:
            uri = (uri or "").strip()
            if uri and uri not in ("null", "undefined") and uri not in seen:
                seen.append(uri)
        return seen

    def primary_image(self) -> Optional[str]:
        candidates = self.image_candidates()
        return candidates[0] if candidates else None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CardRecord":
        """Build a record from {"id", "name", "image_uris": {...} | [...], "count"}."""
        uris = data.get("image_uris") or {}
        if isinstance(uris, dict):
            ordered = tuple(uris.get(key) or "" for key in IMAGE_URI_PRIORITY)
        else:
            ordered = tuple(str(u) for u in uris)
        card_id = str(data.get("id") or data.get("name") or "")
        return cls(
            id=card_id,
            name=str(data.get("name") or card_id or "Unknown card"),
            image_uris=ordered,
            count=int(data.get("count", 1)),
        )


class PrintSettings(NamedTuple):
    grid: str = DEFAULT_GRID
    include_bleed: bool = False
    bleed_size_mm: float = DEFAULT_BLEED_SIZE_MM
    include_crop_marks: bool = True
    crop_mark_length_mm: float = DEFAULT_CROP_MARK_LENGTH_MM
    crop_mark_offset_mm: float = DEFAULT_CROP_MARK_OFFSET_MM
    crop_mark_thickness_pt: float = DEFAULT_CROP_MARK_THICKNESS_PT
    safe_margin_mm: float = DEFAULT_SAFE_MARGIN_MM
    include_back_pages: bool = False
    mirror_back_pages: bool = True
    card_back: str = DEFAULT_CARD_BACK

    @property
    def effective_bleed_mm(self) -> float:
        return self.bleed_size_mm if self.include_bleed else 0.0


class ImageCacheEntry(NamedTuple):
    url: str
    data: bytes
    content_type: str
    method: str
    fetched_at: float


class PageDescriptor(NamedTuple):
    index: int
    cards: Tuple[CardRecord, ...]

    @property
    def occupied(self) -> int:
        return len(self.cards)


class GenerationProgress(NamedTuple):
    current: int
    total: int
    message: str


class CancellationToken:
    """
    Shared cancellation signal threaded through every engine call.

    Components poll it at their suspension points; raise_if_cancelled()
    raises OperationAborted, which callers treat as a clean stop.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationAborted()

    def wait(self, seconds: float) -> None:
        """Sleep for up to `seconds`, waking early (and raising) on cancellation."""
        if self._event.wait(timeout=max(0.0, seconds)):
            raise OperationAborted()
