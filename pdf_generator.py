"""
PDF generation for ProxyPrint.

ProxyPdfGenerator turns card records into an A4 sheet PDF with ReportLab:
all images are preloaded first, then every page is planned (each slot resolved
to an embeddable image or a placeholder) and drawn. A bad image never costs
more than its own slot, and a bad page never costs more than itself.
"""

import io
import os
from enum import Enum
from typing import Callable, Dict, List, NamedTuple, Optional, Set
from urllib.parse import urlsplit

from PIL import Image
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

import config
from errors import (
    EmbedError, OperationAborted, PdfBuildError, ProxyPrintError, classify_exception,
)
from image_handler import ImageAcquirer, ImageCache, default_strategies, group_candidates
from layout_engine import (
    PageLayout, Rect, cell_rect, crop_mark_segments, layout_warnings, mirror_rect, paginate, slot_rect,
    validate_layout,
)
from logging_config import get_logger
from models import CancellationToken, CardRecord, GenerationProgress, PageDescriptor, PrintSettings
from web_utils import fetch_image_bytes, to_absolute_url

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int, str], None]


class GenerationState(Enum):
    IDLE = "idle"
    LOADING_IMAGES = "loading_images"
    READY = "ready"
    GENERATING = "generating"
    DONE = "done"


ALLOWED_TRANSITIONS = {
    GenerationState.IDLE: {GenerationState.LOADING_IMAGES},
    GenerationState.LOADING_IMAGES: {GenerationState.READY},
    GenerationState.READY: {GenerationState.GENERATING},
    GenerationState.GENERATING: {GenerationState.DONE},
    GenerationState.DONE: set(),
}


# --- Embedding ---

def _verified_reader(data: bytes, expected_format: str) -> ImageReader:
    try:
        with Image.open(io.BytesIO(data)) as img:
            actual_format = img.format
            img.load()
    except Exception as e:
        raise EmbedError(f"Could not decode image: {e}")
    if actual_format != expected_format:
        raise EmbedError(f"Not a {expected_format} image (found {actual_format})")
    return ImageReader(io.BytesIO(data))


def embed_jpeg(data: bytes) -> ImageReader:
    return _verified_reader(data, "JPEG")


def embed_png(data: bytes) -> ImageReader:
    return _verified_reader(data, "PNG")


EMBEDDERS = {"jpeg": embed_jpeg, "png": embed_png}


def choose_embedders(data: bytes, url: str = "") -> List[str]:
    """Embedder order: magic bytes first, then the URL extension, then JPEG."""
    if data[:2] == b"\xff\xd8":
        return ["jpeg", "png"]
    if data[:4] == b"\x89PNG":
        return ["png", "jpeg"]
    path = urlsplit(url).path.lower() if url else ""
    if path.endswith(".png"):
        return ["png", "jpeg"]
    return ["jpeg", "png"]


def embed_image(data: bytes, url: str = "") -> ImageReader:
    """Embed with the likely format, retrying once with the other one."""
    problems = []
    for name in choose_embedders(data, url):
        try:
            return EMBEDDERS[name](data)
        except EmbedError as e:
            problems.append(f"{name}: {e.message}")
    raise EmbedError("Image is neither a usable JPEG nor PNG", {"url": url, "attempts": problems})


# --- Progress ---

class ProgressTracker:
    """Forwards progress events, keeping `current` monotonic and within [0, total]."""

    def __init__(self, callback: Optional[ProgressCallback], total: int):
        self.callback = callback
        self.total = max(1, total)
        self.current = 0
        self.events: List[GenerationProgress] = []

    def update(self, current: int, message: str) -> None:
        self.current = max(self.current, min(current, self.total))
        event = GenerationProgress(self.current, self.total, message)
        self.events.append(event)
        if self.callback:
            self.callback(event.current, event.total, event.message)


class SlotPlan(NamedTuple):
    rect: Rect
    cell: Rect
    card_name: str
    image: Optional[ImageReader]


class ProxyPdfGenerator:
    """
    Builds a proxy sheet PDF from card records.

    One instance owns its image cache, so a second generate() call reuses
    everything fetched by the first. Failed URLs are forgotten at the start
    of every run.
    """

    def __init__(
        self,
        settings: Optional[PrintSettings] = None,
        cancel_token: Optional[CancellationToken] = None,
        acquirer: Optional[ImageAcquirer] = None,
        cache: Optional[ImageCache] = None,
        origin: Optional[str] = None,
    ):
        self.settings = settings or PrintSettings()
        self.origin = origin
        if acquirer is None:
            self.cancel_token = cancel_token or CancellationToken()
            acquirer = ImageAcquirer(
                strategies=default_strategies(origin=origin), cache=cache, cancel_token=self.cancel_token,
            )
        else:
            self.cancel_token = cancel_token or acquirer.cancel_token
            acquirer.cancel_token = self.cancel_token
        self.acquirer = acquirer
        self.state = GenerationState.IDLE
        self._embedded: Dict[str, ImageReader] = {}
        self._unembeddable: Set[str] = set()
        self.placeholder_slots = 0
        self.placeholder_pages = 0
        self.back_image_loaded = False
        self.page_count = 0

    @property
    def cache(self) -> ImageCache:
        return self.acquirer.cache

    def _set_state(self, new_state: GenerationState) -> None:
        if new_state is GenerationState.IDLE or new_state in ALLOWED_TRANSITIONS[self.state]:
            logger.debug(f"State {self.state.value} -> {new_state.value}")
            self.state = new_state
        else:
            logger.warning(f"Ignoring invalid state transition {self.state.value} -> {new_state.value}")

    def _card_urls(self, card: CardRecord) -> List[str]:
        return [to_absolute_url(u, self.origin) for u in card.image_candidates()]

    def _preload_groups(self, records: List[CardRecord]) -> List[List[str]]:
        """Every record's candidate URLs, one group per distinct first candidate."""
        return list(group_candidates(self._card_urls(card) for card in records).values())

    def generate(self, records: List[CardRecord], progress_callback: Optional[ProgressCallback] = None) -> bytes:
        """
        Build the PDF and return its bytes.

        Raises OperationAborted on cancellation, LayoutConfigError when the
        cards cannot fit the page, and PdfBuildError when the document
        itself cannot be produced.
        """
        self._set_state(GenerationState.IDLE)
        self.cancel_token.raise_if_cancelled()
        layout = validate_layout(self.settings)
        for warning in layout_warnings(self.settings):
            logger.warning(warning)

        records = list(records)
        pages = paginate(records, layout.cards_per_page)
        if not pages:
            raise PdfBuildError("No cards to print")
        groups = self._preload_groups(records)
        back_pages = len(pages) if self.settings.include_back_pages else 0
        tracker = ProgressTracker(progress_callback, len(groups) + len(pages) + back_pages + 1)
        logger.info(f"Generating {len(pages)} page(s) for {sum(p.occupied for p in pages)} card(s), "
                    f"{len(groups)} unique image(s)")

        self.acquirer.reset_failures()
        self._embedded.clear()
        self._unembeddable.clear()
        self.placeholder_slots = 0
        self.placeholder_pages = 0
        self.back_image_loaded = False
        self.page_count = 0

        try:
            self._set_state(GenerationState.LOADING_IMAGES)
            tracker.update(0, "Loading images...")
            self.acquirer.preload(groups, lambda done, total, message: tracker.update(done, message))
            if self.acquirer.failed:
                logger.warning(f"{len(self.acquirer.failed)} image URL(s) failed to load, using placeholders")
            self._set_state(GenerationState.READY)

            self._set_state(GenerationState.GENERATING)
            buffer = io.BytesIO()
            c = canvas.Canvas(buffer, pagesize=(layout.page_width, layout.page_height))
            c.setTitle("ProxyPrint proxy sheet")
            c.setCreator("ProxyPrint")

            step = len(groups)
            for page in pages:
                self.cancel_token.raise_if_cancelled()
                tracker.update(step, f"Creating page {page.index + 1}/{len(pages)}")
                self._build_front_page(c, layout, page)
                step += 1
                tracker.update(step, f"Page {page.index + 1} completed")

            if back_pages:
                self._build_back_pages(c, layout, pages, tracker, step)
                step += back_pages

            tracker.update(step, "Finalizing PDF...")
            pdf_bytes = self._finalize(c, buffer)
            tracker.update(tracker.total, "PDF ready")
            self._set_state(GenerationState.DONE)
        except (OperationAborted, PdfBuildError):
            self._set_state(GenerationState.IDLE)
            raise
        except ProxyPrintError as e:
            self._set_state(GenerationState.IDLE)
            raise PdfBuildError(f"PDF generation failed: {e.message}", e.details, kind=e.kind) from e
        except Exception as e:
            self._set_state(GenerationState.IDLE)
            raise PdfBuildError(f"PDF generation failed: {e}", kind=classify_exception(e)) from e

        logger.info(f"PDF complete: {self.page_count} page(s), {len(pdf_bytes)} bytes, "
                    f"{self.placeholder_slots} placeholder slot(s)")
        return pdf_bytes

    # --- Images ---

    def _image_for_url(self, url: str) -> Optional[ImageReader]:
        if url in self._embedded:
            return self._embedded[url]
        if url in self._unembeddable:
            return None
        # Only the refetch below touches the network
        entry = self.cache.get(url)
        if entry is None:
            return None
        try:
            reader = embed_image(entry.data, url)
        except EmbedError as e:
            logger.warning(f"Cached bytes for {url[:80]} could not be embedded ({e}); fetching again")
            self.cache.evict(url)
            entry = self.acquirer.acquire(url)
            if entry is None:
                self._unembeddable.add(url)
                return None
            try:
                reader = embed_image(entry.data, url)
            except EmbedError as retry_error:
                logger.warning(f"Giving up on {url[:80]}: {retry_error}")
                self._unembeddable.add(url)
                return None
        self._embedded[url] = reader
        return reader

    def _resolve_card_image(self, card: CardRecord) -> Optional[ImageReader]:
        for url in self._card_urls(card):
            self.cancel_token.raise_if_cancelled()
            reader = self._image_for_url(url)
            if reader is not None:
                return reader
        return None

    # --- Front pages ---

    def _plan_page(self, layout: PageLayout, page: PageDescriptor) -> List[SlotPlan]:
        plan = []
        for i, card in enumerate(page.cards[:layout.cards_per_page]):
            plan.append(SlotPlan(slot_rect(layout, i), cell_rect(layout, i), card.name, self._resolve_card_image(card)))
        return plan

    def _build_front_page(self, c: canvas.Canvas, layout: PageLayout, page: PageDescriptor) -> None:
        try:
            plan = self._plan_page(layout, page)
            header = None
        except OperationAborted:
            raise
        except Exception as e:
            logger.error(f"Page {page.index + 1} could not be prepared, drawing a placeholder page: {e}")
            self.placeholder_pages += 1
            plan = [SlotPlan(slot_rect(layout, i), cell_rect(layout, i), card.name or f"Card {i + 1}", None)
                    for i, card in enumerate(page.cards[:layout.cards_per_page])]
            header = f"Page {page.index + 1} - images could not be loaded"
        try:
            self._draw_page(c, layout, plan, page.index + 1, header)
        except OperationAborted:
            raise
        except Exception as e:
            logger.error(f"Page {page.index + 1} could not be drawn, leaving it blank: {e}")
            self.placeholder_pages += 1
            c.showPage()
            self.page_count += 1

    def _draw_page(self, c: canvas.Canvas, layout: PageLayout, plan: List[SlotPlan],
                   page_number: int, header: Optional[str] = None) -> None:
        if header:
            c.setFillColorRGB(0.6, 0.3, 0.3)
            c.setFont("Helvetica", 14)
            c.drawCentredString(layout.page_width / 2, layout.page_height - 30, header)
        for slot in plan:
            drawn = False
            if slot.image is not None:
                try:
                    c.drawImage(slot.image, slot.rect.x, slot.rect.y, width=slot.rect.width,
                                height=slot.rect.height, mask='auto')
                    drawn = True
                except Exception as e:
                    logger.warning(f"Could not draw '{slot.card_name}' on page {page_number}: {e}")
            if not drawn:
                self._draw_placeholder(c, slot.rect, slot.card_name)
            self._draw_slot_guides(c, layout, slot.rect, slot.cell)
        self._draw_page_number(c, layout, page_number)
        c.showPage()
        self.page_count += 1

    def _draw_placeholder(self, c: canvas.Canvas, rect: Rect, card_name: str) -> None:
        """Outer and inner rectangle, the (truncated) card name and a short notice."""
        x, y, w, h = rect
        self.placeholder_slots += 1
        c.saveState()
        c.setLineWidth(2)
        c.setStrokeColorRGB(*config.PLACEHOLDER_BORDER)
        c.setFillColorRGB(*config.PLACEHOLDER_FILL)
        c.rect(x, y, w, h, stroke=1, fill=1)
        c.setLineWidth(1)
        c.setStrokeColorRGB(*config.PLACEHOLDER_INNER_BORDER)
        c.setFillColorRGB(*config.PLACEHOLDER_INNER_FILL)
        c.rect(x + 2, y + 2, w - 4, h - 4, stroke=1, fill=1)

        name = fit_text(card_name or "Unknown card", "Helvetica-Bold", 11, w - 12)
        c.setFillColorRGB(*config.PLACEHOLDER_TEXT)
        c.setFont("Helvetica-Bold", 11)
        c.drawCentredString(x + w / 2, y + h - 25, name)
        c.setFillColorRGB(*config.PLACEHOLDER_NOTICE)
        c.setFont("Helvetica", 9)
        c.drawCentredString(x + w / 2, y + h - 45, config.PLACEHOLDER_NOTICE_TEXT)
        c.restoreState()

    def _draw_slot_guides(self, c: canvas.Canvas, layout: PageLayout, rect: Rect, cell: Rect) -> None:
        if self.settings.include_bleed and layout.bleed > 0:
            c.saveState()
            c.setLineWidth(0.5)
            c.setStrokeColorRGB(*config.BLEED_OUTLINE)
            c.rect(cell.x, cell.y, cell.width, cell.height, stroke=1, fill=0)
            c.restoreState()
        if self.settings.include_crop_marks:
            c.saveState()
            c.setLineWidth(layout.crop_mark_thickness)
            c.setStrokeColorRGB(0, 0, 0)
            for seg in crop_mark_segments(rect, layout.crop_mark_length, layout.crop_mark_offset):
                c.line(seg.x1, seg.y1, seg.x2, seg.y2)
            c.restoreState()

    def _draw_page_number(self, c: canvas.Canvas, layout: PageLayout, page_number: int, suffix: str = "") -> None:
        c.saveState()
        c.setFont("Helvetica", 8)
        c.setFillColorRGB(*config.PAGE_NUMBER_GREY)
        c.drawString(layout.page_width - 60, 15, f"Page {page_number}{suffix}")
        c.restoreState()

    # --- Back pages ---

    def load_card_back(self) -> Optional[ImageReader]:
        """The card back as an embeddable image, or None if it cannot be loaded."""
        ref = (self.settings.card_back or "").strip()
        if not ref:
            return None
        try:
            if os.path.isfile(ref):
                with open(ref, "rb") as f:
                    data = f.read()
                source = ref
            else:
                source = to_absolute_url(ref, self.origin)
                data, _ = fetch_image_bytes(source, timeout=config.CARD_BACK_TIMEOUT_SECONDS,
                                            cancel_token=self.cancel_token)
            return embed_image(data, source)
        except OperationAborted:
            raise
        except (ProxyPrintError, OSError) as e:
            logger.error(f"Card back '{ref}' could not be loaded, back pages will be blank: {e}")
            return None

    def _build_back_pages(self, c: canvas.Canvas, layout: PageLayout, pages: List[PageDescriptor],
                          tracker: ProgressTracker, step: int) -> None:
        self.cancel_token.raise_if_cancelled()
        back_image = self.load_card_back()
        self.back_image_loaded = back_image is not None
        for page in pages:
            self.cancel_token.raise_if_cancelled()
            occupied = min(page.occupied, layout.cards_per_page) if back_image is not None else 0
            for i in range(occupied):
                rect = slot_rect(layout, i)
                cell = cell_rect(layout, i)
                if self.settings.mirror_back_pages:
                    rect = mirror_rect(layout, rect)
                    cell = mirror_rect(layout, cell)
                try:
                    c.drawImage(back_image, rect.x, rect.y, width=rect.width, height=rect.height, mask='auto')
                except Exception as e:
                    logger.warning(f"Could not draw card back on back page {page.index + 1}: {e}")
                self._draw_slot_guides(c, layout, rect, cell)
            self._draw_page_number(c, layout, page.index + 1, " (back)")
            c.showPage()
            self.page_count += 1
            step += 1
            tracker.update(step, f"Back page {page.index + 1}/{len(pages)} completed")

    def _finalize(self, c: canvas.Canvas, buffer: io.BytesIO) -> bytes:
        self.cancel_token.raise_if_cancelled()
        try:
            c.save()
        except Exception as e:
            raise PdfBuildError(f"Could not serialize PDF: {e}", kind=classify_exception(e)) from e
        data = buffer.getvalue()
        if len(data) < config.MIN_IMAGE_BYTES:
            raise PdfBuildError(f"Generated PDF is too small ({len(data)} bytes), the build is likely corrupt",
                                {"bytes": len(data)})
        return data


def fit_text(text: str, font_name: str, font_size: float, max_width: float) -> str:
    """Truncate with '...' until the string fits `max_width` points."""
    if stringWidth(text, font_name, font_size) <= max_width:
        return text
    while text and stringWidth(text + "...", font_name, font_size) > max_width:
        text = text[:-1]
    return text.rstrip() + "..."


def generate_pdf(records: List[CardRecord], settings: Optional[PrintSettings] = None,
                 progress_callback: Optional[ProgressCallback] = None,
                 cancel_token: Optional[CancellationToken] = None, **kwargs) -> bytes:
    """One-shot convenience wrapper around ProxyPdfGenerator."""
    return ProxyPdfGenerator(settings, cancel_token=cancel_token, **kwargs).generate(records, progress_callback)
