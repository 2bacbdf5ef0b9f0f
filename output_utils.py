"""
Output utilities for ProxyPrint: delivering the finished PDF, uploads and
run summaries.
"""

import base64
import html
import os
import tempfile
import webbrowser
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional

from errors import DeliveryError
from logging_config import get_logger
from web_utils import check_server_file_exists, upload_file_to_server

logger = get_logger(__name__)

# Multiple of 3 so chunk boundaries never introduce base64 padding
DATA_URL_CHUNK_BYTES = 3 * 1024 * 256


class DeliveryResult(NamedTuple):
    success: bool
    method: Optional[str]
    location: Optional[str]
    error: Optional[str]


def _atomic_write(path: str, data: bytes) -> str:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".proxyprint-", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    return os.path.abspath(path)


def default_download_dir() -> str:
    downloads = os.path.join(os.path.expanduser("~"), "Downloads")
    return downloads if os.path.isdir(downloads) else tempfile.gettempdir()


def encode_data_url(data: bytes, mime_type: str = "application/pdf") -> str:
    """base64 data URL, encoded in 3-byte-aligned chunks to bound peak memory."""
    parts = [base64.b64encode(data[i:i + DATA_URL_CHUNK_BYTES]).decode("ascii")
             for i in range(0, len(data), DATA_URL_CHUNK_BYTES)]
    return f"data:{mime_type};base64,{''.join(parts)}"


def save_to_path(pdf_bytes: bytes, filename: str, output_path: Optional[str] = None, **_) -> str:
    if not output_path:
        raise DeliveryError("No output path chosen")
    return _atomic_write(output_path, pdf_bytes)


def save_to_directory(pdf_bytes: bytes, filename: str, fallback_dir: Optional[str] = None, **_) -> str:
    return _atomic_write(os.path.join(fallback_dir or default_download_dir(), filename), pdf_bytes)


def save_as_data_url(pdf_bytes: bytes, filename: str, fallback_dir: Optional[str] = None, **_) -> str:
    """Write a small HTML page whose link downloads the PDF from an embedded data URL."""
    safe_name = html.escape(filename, quote=True)
    page = (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\"><title>" + safe_name + "</title></head>\n"
        "<body><a download=\"" + safe_name + "\" href=\"" + encode_data_url(pdf_bytes) + "\">"
        "Download " + safe_name + "</a></body></html>\n"
    )
    base, _ext = os.path.splitext(filename)
    directory = fallback_dir or tempfile.gettempdir()
    return _atomic_write(os.path.join(directory, f"{base}.download.html"), page.encode("utf-8"))


def open_in_browser(pdf_bytes: bytes, filename: str, opener: Callable[[str], bool] = webbrowser.open, **_) -> str:
    base, _ext = os.path.splitext(filename)
    fd, path = tempfile.mkstemp(prefix=f"{base}-", suffix=".pdf")
    with os.fdopen(fd, "wb") as f:
        f.write(pdf_bytes)
    if not opener("file://" + os.path.abspath(path)):
        raise DeliveryError("No browser available to open the PDF", {"path": path})
    return path


DELIVERY_STAGES = [
    ("save_to_path", save_to_path),
    ("save_to_directory", save_to_directory),
    ("save_as_data_url", save_as_data_url),
    ("open_in_browser", open_in_browser),
]


def deliver_pdf(
    pdf_bytes: bytes,
    filename: str,
    output_path: Optional[str] = None,
    fallback_dir: Optional[str] = None,
    opener: Callable[[str], bool] = webbrowser.open,
) -> DeliveryResult:
    """
    Hand the PDF to the user, trying each delivery method in turn.
    Any failure falls through to the next method; only exhausting all of
    them is reported as a failure.
    """
    if not pdf_bytes:
        return DeliveryResult(False, None, None, "PDF is empty")
    errors: List[str] = []
    for name, stage in DELIVERY_STAGES:
        if name == "save_to_path" and not output_path:
            continue
        try:
            location = stage(pdf_bytes, filename, output_path=output_path, fallback_dir=fallback_dir, opener=opener)
            logger.info(f"PDF delivered via {name}: {location}")
            return DeliveryResult(True, name, location, None)
        except Exception as e:
            logger.warning(f"Delivery via {name} failed: {e}")
            errors.append(f"{name}: {e}")
    return DeliveryResult(False, None, None, "; ".join(errors))


def upload_pdf(pdf_bytes: bytes, upload_url: str, overwrite: bool = False, debug: bool = False) -> bool:
    """PUT the PDF to a server, refusing to replace an existing file unless asked."""
    if not overwrite and check_server_file_exists(upload_url, debug):
        print(f"Error: File already exists at {upload_url}.")
        print("Use --overwrite-server-file to replace it.")
        return False
    return upload_file_to_server(upload_url, pdf_bytes, "application/pdf", debug)


def print_generation_summary(stats: Dict, failed_urls: Iterable[str], placeholder_slots: int, page_count: int):
    """Prints a formatted summary of the finished run."""
    print("\n--- Print Summary ---")
    print(f"Cards: {stats['total_cards']} on {stats['total_pages']} sheet(s), {stats['cards_per_page']} per sheet")
    print(f"Last sheet: {stats['last_page_cards']} card(s) ({stats['last_page_utilization']:.0%} used)")
    print(f"Paper efficiency: {stats['paper_efficiency']:.0%}")
    print(f"PDF pages: {page_count}")
    failed_urls = sorted(failed_urls)
    if failed_urls or placeholder_slots:
        print(f"Placeholders: {placeholder_slots} slot(s)")
        for url in failed_urls:
            print(f"  - {url}")
    print("---------------------")


def write_failed_images_file(cards_path: str, failed_urls: List[str]):
    if not failed_urls: return
    cards_dir = os.path.dirname(cards_path)
    cards_basename_no_ext = os.path.splitext(os.path.basename(cards_path))[0]
    failed_filename = f"{cards_basename_no_ext}_missing_images.txt"
    failed_filepath = os.path.join(cards_dir, failed_filename) if cards_dir else failed_filename
    try:
        with open(failed_filepath, 'w', encoding='utf-8') as f:
            for url in sorted(failed_urls): f.write(f"{url}\n")
        print(f"List of images that could not be loaded saved to: {failed_filepath}")
    except IOError as e: print(f"Error writing missing images file '{failed_filepath}': {e}")
