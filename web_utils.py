"""
Web utilities for ProxyPrint: URL normalization, image fetching and
server upload helpers.
"""

import time
from typing import Dict, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import requests

import config
from errors import AcquisitionError, ErrorKind, ImageTooSmallError, classify_exception
from logging_config import get_logger
from models import CancellationToken

logger = get_logger(__name__)

READ_CHUNK_BYTES = 64 * 1024


def get_site_origin() -> str:
    """The origin relative image references resolve against (configured, else localhost)."""
    origin = (config.SITE_ORIGIN or "").strip()
    return origin.rstrip("/") if origin else config.FALLBACK_SITE_ORIGIN


def to_absolute_url(ref: str, origin: Optional[str] = None) -> str:
    """
    Turn a relative ("/images/x.png") or protocol-relative ("//host/x.png")
    reference into an absolute URL. Never raises: if joining fails the
    origin and path are simply concatenated.
    """
    raw = (ref or "").strip()
    if not raw:
        return raw
    lowered = raw.lower()
    if lowered.startswith("http://") or lowered.startswith("https://"):
        return raw
    if raw.startswith("//"):
        return f"https:{raw}"
    base = (origin or get_site_origin()).strip()
    try:
        if not urlsplit(base).netloc:
            raise ValueError(f"Origin has no host: '{base}'")
        return urljoin(base.rstrip("/") + "/", raw)
    except Exception as e:
        logger.debug(f"URL join failed for '{raw}' against '{base}': {e}")
        return base.rstrip("/") + ("" if raw.startswith("/") else "/") + raw


def is_absolute_http_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def sniff_content_type(data: bytes) -> str:
    """Identify an image by its leading magic bytes."""
    if data[:4] == b"\x89PNG":
        return "image/png"
    if data[:2] == b"\xff\xd8":
        return "image/jpeg"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return "application/octet-stream"


def resolve_content_type(header_value: Optional[str], data: bytes) -> str:
    """Trust an image/* header, otherwise sniff the bytes."""
    if header_value:
        main_type = header_value.split(";", 1)[0].strip().lower()
        if main_type.startswith("image/"):
            return main_type
    return sniff_content_type(data)


def _error_from_response(response: requests.Response) -> str:
    content_type = response.headers.get("Content-Type", "")
    if "application/json" in content_type:
        try:
            payload = response.json()
            if isinstance(payload, dict) and payload.get("error"):
                return str(payload["error"])
        except ValueError:
            pass
    return f"HTTP {response.status_code} {response.reason or ''}".strip()


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 300


def _read_body(response: requests.Response, url: str, deadline: float,
               cancel_token: Optional[CancellationToken]) -> bytes:
    chunks = []
    try:
        for chunk in response.iter_content(chunk_size=READ_CHUNK_BYTES):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            if time.monotonic() > deadline:
                raise AcquisitionError("Download took too long", {"url": url}, kind=ErrorKind.TIMEOUT)
            chunks.append(chunk)
    except requests.exceptions.RequestException as e:
        raise AcquisitionError(f"Download interrupted: {e}", {"url": url}, kind=classify_exception(e)) from e
    return b"".join(chunks)


def fetch_image_bytes(
    url: str,
    timeout: float,
    session: Optional[requests.Session] = None,
    headers: Optional[Dict[str, str]] = None,
    min_bytes: int = config.MIN_IMAGE_BYTES,
    cancel_token: Optional[CancellationToken] = None,
) -> Tuple[bytes, str]:
    """
    GET an image and return (bytes, content_type).

    `timeout` bounds the whole attempt, not just each socket read: the body
    is streamed and the deadline (and `cancel_token`) checked between chunks.

    Raises AcquisitionError (kind set from the underlying failure) on network
    errors, non-2xx statuses, slow downloads and bodies under `min_bytes`;
    OperationAborted when cancelled mid-download.
    """
    http = session or requests
    request_headers = {"Accept": config.IMAGE_ACCEPT_HEADER}
    if headers:
        request_headers.update(headers)
    deadline = time.monotonic() + timeout
    try:
        response = http.get(url, headers=request_headers, timeout=timeout, allow_redirects=True, stream=True)
    except requests.exceptions.RequestException as e:
        raise AcquisitionError(f"Request failed: {e}", {"url": url}, kind=classify_exception(e)) from e

    try:
        if not is_success_status(response.status_code):
            raise AcquisitionError(_error_from_response(response), {"url": url, "status": response.status_code})
        data = _read_body(response, url, deadline, cancel_token)
        content_type = response.headers.get("Content-Type")
    finally:
        response.close()

    if len(data) < min_bytes:
        raise ImageTooSmallError(url, len(data))
    return data, resolve_content_type(content_type, data)


def check_server_file_exists(url: str, debug: bool = False) -> bool:
    """Check if a file already exists at a given URL using a HEAD request."""
    if not url:
        return False
    if debug:
        print(f"DEBUG: Checking for file existence at: {url}")
    try:
        r = requests.head(url, timeout=15, allow_redirects=True)
        if r.status_code == 200:
            return True
        if r.status_code != 404:
            print(f"Warning: Received status {r.status_code} when checking {url}. Assuming it does not exist.")
        return False
    except requests.exceptions.RequestException as e:
        print(f"Warning: Network error while checking {url}: {e}. Assuming it does not exist.")
        return False


def upload_file_to_server(url: str, file_bytes: bytes, mime_type: str, debug: bool = False) -> bool:
    """Uploads file content (bytes) to a server URL using PUT."""
    if not url:
        print("Error: Cannot upload file, server URL is not configured.")
        return False
    if not file_bytes:
        print("Warning: No file content (bytes) to upload.")
        return False

    print(f"Uploading to: {url}")
    try:
        r = requests.put(url, data=file_bytes, headers={"Content-Type": mime_type}, timeout=60)
        r.raise_for_status()
        print(f"Successfully uploaded. URL: {url}")
        return True
    except requests.exceptions.RequestException as e:
        print(f"Error: Upload failed due to a network error: {e}")
        return False
