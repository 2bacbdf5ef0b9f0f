"""
Page layout for ProxyPrint.

Pure geometry: everything here is a function of PrintSettings (plus the card
list for pagination). Sizes are configured in millimetres and returned in PDF
points with the origin at the bottom-left of an A4 page.
"""

import math
from typing import Iterable, List, NamedTuple

from config import A4_WIDTH_MM, A4_HEIGHT_MM, CARD_WIDTH_MM, CARD_HEIGHT_MM, MM_TO_PT, GRID_SHAPES
from errors import LayoutConfigError
from models import CardRecord, PageDescriptor, PrintSettings


class Rect(NamedTuple):
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def top(self) -> float:
        return self.y + self.height


class Segment(NamedTuple):
    x1: float
    y1: float
    x2: float
    y2: float
    orientation: str  # "horizontal" | "vertical"

    def bounds(self) -> Rect:
        x0, x1 = sorted((self.x1, self.x2))
        y0, y1 = sorted((self.y1, self.y2))
        return Rect(x0, y0, x1 - x0, y1 - y0)


class PageLayout(NamedTuple):
    page_width: float
    page_height: float
    card_width: float
    card_height: float
    bleed: float
    cell_width: float
    cell_height: float
    gap: float
    cols: int
    rows: int
    margin_x: float
    margin_y: float
    block_width: float
    block_height: float
    available_width: float
    available_height: float
    crop_mark_length: float
    crop_mark_offset: float
    crop_mark_thickness: float

    @property
    def cards_per_page(self) -> int:
        return self.cols * self.rows

    @property
    def fits(self) -> bool:
        return self.block_width <= self.available_width + 1e-6 and self.block_height <= self.available_height + 1e-6


def mm_to_pt(value_mm: float) -> float:
    return value_mm * MM_TO_PT


def pt_to_mm(value_pt: float) -> float:
    return value_pt / MM_TO_PT


def grid_shape(grid: str):
    try:
        return GRID_SHAPES[grid]
    except KeyError:
        raise LayoutConfigError([f"Unsupported grid '{grid}'. Supported: {', '.join(GRID_SHAPES)}"])


def calculate_layout(settings: PrintSettings) -> PageLayout:
    """Compute cell sizes, gaps and margins for one page. Does not validate the fit."""
    cols, rows = grid_shape(settings.grid)
    page_w = mm_to_pt(A4_WIDTH_MM)
    page_h = mm_to_pt(A4_HEIGHT_MM)
    card_w = mm_to_pt(CARD_WIDTH_MM)
    card_h = mm_to_pt(CARD_HEIGHT_MM)
    bleed = mm_to_pt(settings.effective_bleed_mm)
    safe_margin = mm_to_pt(settings.safe_margin_mm)
    offset = mm_to_pt(settings.crop_mark_offset_mm)
    # Neighbouring cells need room for both cells' mark offsets
    gap = offset * 2 if settings.include_crop_marks else 0.0

    cell_w = card_w + bleed * 2
    cell_h = card_h + bleed * 2
    block_w = cell_w * cols + gap * (cols - 1)
    block_h = cell_h * rows + gap * (rows - 1)
    available_w = page_w - safe_margin * 2
    available_h = page_h - safe_margin * 2

    margin_x = (page_w - block_w) / 2 if block_w <= available_w else safe_margin
    margin_y = (page_h - block_h) / 2 if block_h <= available_h else safe_margin
    margin_x = max(margin_x, safe_margin)
    margin_y = max(margin_y, safe_margin)

    return PageLayout(
        page_width=page_w, page_height=page_h,
        card_width=card_w, card_height=card_h,
        bleed=bleed, cell_width=cell_w, cell_height=cell_h,
        gap=gap, cols=cols, rows=rows,
        margin_x=margin_x, margin_y=margin_y,
        block_width=block_w, block_height=block_h,
        available_width=available_w, available_height=available_h,
        crop_mark_length=mm_to_pt(settings.crop_mark_length_mm),
        crop_mark_offset=offset,
        crop_mark_thickness=settings.crop_mark_thickness_pt,
    )


def validate_layout(settings: PrintSettings) -> PageLayout:
    """
    Return the layout for `settings`, or raise LayoutConfigError when the
    configuration cannot be printed. Called before any image is fetched.
    """
    problems: List[str] = []
    if settings.safe_margin_mm < 0:
        problems.append(f"Safe margin cannot be negative ({settings.safe_margin_mm}mm)")
    if settings.include_bleed and settings.bleed_size_mm < 0:
        problems.append(f"Bleed size cannot be negative ({settings.bleed_size_mm}mm)")
    if settings.include_crop_marks:
        if settings.crop_mark_offset_mm <= 0:
            problems.append("Crop mark offset must be greater than 0mm so marks stay clear of the card edge")
        if settings.crop_mark_length_mm <= 0:
            problems.append("Crop mark length must be greater than 0mm")
    if problems:
        raise LayoutConfigError(problems)

    layout = calculate_layout(settings)
    if layout.block_width > layout.available_width + 1e-6:
        problems.append(
            f"Cards do not fit the page width: {pt_to_mm(layout.block_width):.1f}mm > {pt_to_mm(layout.available_width):.1f}mm"
        )
    if layout.block_height > layout.available_height + 1e-6:
        problems.append(
            f"Cards do not fit the page height: {pt_to_mm(layout.block_height):.1f}mm > {pt_to_mm(layout.available_height):.1f}mm"
        )
    if problems:
        raise LayoutConfigError(problems, {"settings": settings._asdict()})
    return layout


def layout_warnings(settings: PrintSettings) -> List[str]:
    """Non-fatal advice about a layout that does fit."""
    warnings: List[str] = []
    if settings.include_crop_marks and settings.crop_mark_offset_mm * 2 < 1:
        warnings.append("Gap between cards is under 1mm; neighbouring crop marks may touch")
    if settings.include_bleed and settings.bleed_size_mm < 2:
        warnings.append("Bleed is under 2mm; 3mm is recommended for professional printing")
    return warnings


def cell_rect(layout: PageLayout, index: int) -> Rect:
    """The full cell (card plus bleed) for slot `index`, counted row by row from the top-left."""
    col = index % layout.cols
    row = index // layout.cols
    x = layout.margin_x + col * (layout.cell_width + layout.gap)
    y = layout.page_height - layout.margin_y - (row + 1) * layout.cell_height - row * layout.gap
    return Rect(x, y, layout.cell_width, layout.cell_height)


def slot_rect(layout: PageLayout, index: int) -> Rect:
    """The trim rectangle (the card itself) for slot `index`."""
    cell = cell_rect(layout, index)
    return Rect(cell.x + layout.bleed, cell.y + layout.bleed, layout.card_width, layout.card_height)


def slot_rects(layout: PageLayout, count: int) -> List[Rect]:
    return [slot_rect(layout, i) for i in range(min(count, layout.cards_per_page))]


def mirror_rect(layout: PageLayout, rect: Rect) -> Rect:
    """Reflect a rectangle across the vertical centre line of the page (duplex alignment)."""
    return Rect(layout.page_width - rect.x - rect.width, rect.y, rect.width, rect.height)


def crop_mark_segments(rect: Rect, length: float, offset: float) -> List[Segment]:
    """Two short guide lines per corner, pushed `offset` away from the card and `length` long."""
    x, y, w, h = rect
    return [
        # top-left
        Segment(x - offset - length, y + h, x - offset, y + h, "horizontal"),
        Segment(x, y + h + offset, x, y + h + offset + length, "vertical"),
        # top-right
        Segment(x + w + offset, y + h, x + w + offset + length, y + h, "horizontal"),
        Segment(x + w, y + h + offset, x + w, y + h + offset + length, "vertical"),
        # bottom-left
        Segment(x - offset - length, y, x - offset, y, "horizontal"),
        Segment(x, y - offset, x, y - offset - length, "vertical"),
        # bottom-right
        Segment(x + w + offset, y, x + w + offset + length, y, "horizontal"),
        Segment(x + w, y - offset, x + w, y - offset - length, "vertical"),
    ]


def expand_placements(records: Iterable[CardRecord]) -> List[CardRecord]:
    """One entry per printed copy, in deck order."""
    placements: List[CardRecord] = []
    for record in records:
        placements.extend([record] * max(0, record.count))
    return placements


def paginate(records: Iterable[CardRecord], cards_per_page: int = 9) -> List[PageDescriptor]:
    placements = expand_placements(records)
    return [
        PageDescriptor(index=page_index, cards=tuple(placements[start:start + cards_per_page]))
        for page_index, start in enumerate(range(0, len(placements), cards_per_page))
    ]


def layout_stats(records: Iterable[CardRecord], settings: PrintSettings) -> dict:
    layout = calculate_layout(settings)
    records = list(records)
    total_cards = sum(max(0, r.count) for r in records)
    per_page = layout.cards_per_page
    total_pages = math.ceil(total_cards / per_page) if total_cards else 0
    last_page_cards = total_cards - (total_pages - 1) * per_page if total_pages else 0
    return {
        "total_cards": total_cards,
        "total_pages": total_pages,
        "cards_per_page": per_page,
        "last_page_cards": last_page_cards,
        "last_page_utilization": last_page_cards / per_page if total_pages else 0.0,
        "paper_efficiency": total_cards / (total_pages * per_page) if total_pages else 0.0,
    }
