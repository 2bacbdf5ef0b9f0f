"""
Main logic for ProxyPrint.
"""

import argparse
import logging
import os
import webbrowser
from typing import List, Optional

import config
from errors import LayoutConfigError, OperationAborted, PdfBuildError, user_message
from image_handler import ImageAcquirer, LocalImageDirectory, default_strategies
from layout_engine import layout_stats
from logging_config import setup_logging
from models import CancellationToken, CardRecord, PrintSettings
from output_utils import deliver_pdf, print_generation_summary, upload_pdf, write_failed_images_file
from parsing_utils import load_card_records, parse_dimension_to_mm
from pdf_generator import ProxyPdfGenerator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Lay out trading card images as a print-ready A4 proxy sheet PDF.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter #type: ignore
    )
    # --- Input/Output Control ---
    io_group = parser.add_argument_group('Input and Output')
    io_group.add_argument(
        "--cards", type=str, required=True,
        help="Path to a JSON card list: [{\"id\", \"name\", \"image_uris\": {\"full\", \"large\", \"small\"}, \"count\"}, ...]"
    )
    io_group.add_argument("--output-file", type=str, default=None, help="Output PDF path. Extension auto-added. Defaults to <cards_file_name>.pdf next to the card list.")
    io_group.add_argument("--download-dir", type=str, default=None, help="Fallback directory if the output file cannot be written. Defaults to ~/Downloads or the temp directory.")
    io_group.add_argument("--no-browser", action="store_true", help="Never fall back to opening the PDF in a web browser.")

    # --- Image Options ---
    image_group = parser.add_argument_group('Image Options')
    image_group.add_argument("--site-origin", type=str, default=None, help="Origin that relative image paths and the image proxy resolve against. Defaults to PROXY_PRINT_SITE_ORIGIN or http://localhost:5000.")
    image_group.add_argument("--no-proxy", action="store_true", help="Skip the same-origin /image-proxy and fetch images directly.")
    image_group.add_argument("--local-images", type=str, default=None, help="Directory of already downloaded card images, matched by file name before any network fetch.")
    image_group.add_argument("--relay-template", type=str, default=None, help="Last-resort relay URL with a {url} placeholder, e.g. 'https://relay.example/?url={url}'.")
    image_group.add_argument("--batch-size", type=int, default=config.BATCH_SIZE, help="Images fetched concurrently per batch.")

    # --- Page & Layout Options ---
    layout_group = parser.add_argument_group('Page and Layout Options (A4, 3x3 grid)')
    layout_group.add_argument("--safe-margin", type=str, default=f"{config.DEFAULT_SAFE_MARGIN_MM}mm", help="Minimum distance between cards and the page edge (e.g., '5mm', '0.2in').")
    layout_group.add_argument("--bleed", action="store_true", help="Add a bleed area around every card.")
    layout_group.add_argument("--bleed-size", type=str, default=f"{config.DEFAULT_BLEED_SIZE_MM}mm", help="Bleed size when --bleed is set.")

    # --- Crop Mark Options ---
    crop_group = parser.add_argument_group('Crop Mark Options')
    crop_group.add_argument("--no-crop-marks", action="store_true", help="Disable crop marks (cards then touch each other).")
    crop_group.add_argument("--crop-mark-length", type=str, default=f"{config.DEFAULT_CROP_MARK_LENGTH_MM}mm", help="Length of each crop mark.")
    crop_group.add_argument("--crop-mark-offset", type=str, default=f"{config.DEFAULT_CROP_MARK_OFFSET_MM}mm", help="Distance between a crop mark and the card edge.")
    crop_group.add_argument("--crop-mark-width-pt", type=float, default=config.DEFAULT_CROP_MARK_THICKNESS_PT, help="Thickness of crop marks in points.")

    # --- Back Page Options ---
    back_group = parser.add_argument_group('Back Page Options')
    back_group.add_argument("--back-pages", action="store_true", help="Add one card-back page after the fronts for every front page.")
    back_group.add_argument("--card-back", type=str, default=config.DEFAULT_CARD_BACK, help="Card back image: local file path or (relative) URL.")
    back_group.add_argument("--no-mirror-backs", action="store_true", help="Do not mirror card back positions for duplex printing.")

    # --- Server Upload Options ---
    upload_group = parser.add_argument_group('Server Upload Options')
    upload_group.add_argument("--upload-url", type=str, default=None, help="PUT the finished PDF to this URL before saving it locally.")
    upload_group.add_argument("--overwrite-server-file", action="store_true", help="If a file exists at --upload-url, overwrite it. Default is to fail.")

    # --- General Options ---
    general_group = parser.add_argument_group('General Options')
    general_group.add_argument("--debug", action="store_true", help="Enable detailed debug messages.")
    general_group.add_argument("--log-file", action="store_true", help="Also write a rotating log file under ./logs.")
    return parser


def settings_from_args(args: argparse.Namespace) -> PrintSettings:
    return PrintSettings(
        include_bleed=args.bleed,
        bleed_size_mm=parse_dimension_to_mm(args.bleed_size),
        include_crop_marks=not args.no_crop_marks,
        crop_mark_length_mm=parse_dimension_to_mm(args.crop_mark_length),
        crop_mark_offset_mm=parse_dimension_to_mm(args.crop_mark_offset),
        crop_mark_thickness_pt=args.crop_mark_width_pt,
        safe_margin_mm=parse_dimension_to_mm(args.safe_margin),
        include_back_pages=args.back_pages,
        mirror_back_pages=not args.no_mirror_backs,
        card_back=args.card_back,
    )


def _output_path(args: argparse.Namespace) -> str:
    if args.output_file:
        base = args.output_file
    else:
        cards_dir = os.path.dirname(args.cards)
        cards_bn = os.path.splitext(os.path.basename(args.cards))[0]
        base = os.path.join(cards_dir, cards_bn) if cards_dir else cards_bn
    return base if base.lower().endswith(".pdf") else f"{base}.pdf"


def _print_progress(current: int, total: int, message: str):
    print(f"  [{current}/{total}] {message}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.batch_size < 1:
        parser.error("--batch-size must be at least 1.")
    if not os.path.isfile(args.cards):
        print(f"Error: Card list file '{args.cards}' not found."); return 1

    setup_logging(log_level=logging.DEBUG if args.debug else logging.WARNING, enable_file_logging=args.log_file)

    try:
        settings = settings_from_args(args)
    except ValueError as e:
        print(f"Error: {e}"); return 1

    try:
        records: List[CardRecord] = load_card_records(args.cards)
    except (OSError, ValueError) as e:
        print(f"Error: Could not read card list: {e}"); return 1
    if not records:
        print("No cards to print. Exiting."); return 1

    print("--- Card List ---")
    print(f"Loaded {len(records)} card(s), {sum(r.count for r in records)} cop(ies) to print.")
    if args.debug:
        for r in records:
            print(f"DEBUG: {r.count}x {r.name} -> {r.primary_image()}")

    rendered_source = None
    if args.local_images:
        if not os.path.isdir(args.local_images):
            print(f"Error: Local image directory '{args.local_images}' not found."); return 1
        rendered_source = LocalImageDirectory(args.local_images)

    cancel_token = CancellationToken()
    acquirer = ImageAcquirer(
        strategies=default_strategies(
            origin=args.site_origin, rendered_source=rendered_source,
            relay_template=args.relay_template, use_proxy=not args.no_proxy,
        ),
        cancel_token=cancel_token,
        batch_size=args.batch_size,
    )
    generator = ProxyPdfGenerator(settings, cancel_token=cancel_token, acquirer=acquirer, origin=args.site_origin)

    print("\n--- PDF Generation ---")
    try:
        pdf_bytes = generator.generate(records, _print_progress)
    except KeyboardInterrupt:
        cancel_token.cancel()
        print("\nGeneration was cancelled."); return 130
    except OperationAborted as e:
        print(f"\n{user_message(e.kind)}"); return 130
    except LayoutConfigError as e:
        print("Error: The cards do not fit on the page:")
        for problem in e.problems: print(f"  - {problem}")
        return 2
    except PdfBuildError as e:
        print(f"Error: {user_message(e.kind)}")
        if args.debug: print(f"DEBUG: {e}")
        return 1

    print_generation_summary(layout_stats(records, settings), acquirer.failed, generator.placeholder_slots, generator.page_count)
    if acquirer.failed:
        write_failed_images_file(args.cards, list(acquirer.failed))
    if settings.include_back_pages and not generator.back_image_loaded:
        print(f"Warning: Card back '{settings.card_back}' could not be loaded; back pages are blank.")

    output_path = _output_path(args)
    if args.upload_url:
        print("\n--- Uploading PDF to Server ---")
        if not upload_pdf(pdf_bytes, args.upload_url, args.overwrite_server_file, args.debug):
            print("Upload failed; saving locally instead.")

    opener = (lambda _url: False) if args.no_browser else webbrowser.open
    result = deliver_pdf(pdf_bytes, os.path.basename(output_path), output_path=output_path, fallback_dir=args.download_dir, opener=opener)
    if not result.success:
        print(f"Error: The PDF could not be saved: {result.error}"); return 1
    if result.method != "save_to_path":
        print(f"Warning: Could not write '{output_path}'.")
    print(f"PDF saved ({len(pdf_bytes)} bytes): {result.location}")
    return 0
