"""
Configuration constants for ProxyPrint.
"""

import os
from typing import Tuple

from dotenv import load_dotenv

# Environment overrides may live in a .env next to the working directory
load_dotenv()

# --- Page and card geometry (millimetres) ---
A4_WIDTH_MM = 210.0
A4_HEIGHT_MM = 297.0
CARD_WIDTH_MM = 63.5   # 2.5"
CARD_HEIGHT_MM = 88.9  # 3.5"
MM_TO_PT = 72.0 / 25.4

GRID_SHAPES = {"3x3": (3, 3)}
DEFAULT_GRID = "3x3"

# --- Default print settings ---
DEFAULT_SAFE_MARGIN_MM = 5.0
DEFAULT_BLEED_SIZE_MM = 3.0
DEFAULT_CROP_MARK_LENGTH_MM = 2.0
DEFAULT_CROP_MARK_OFFSET_MM = 0.25
DEFAULT_CROP_MARK_THICKNESS_PT = 0.25
DEFAULT_CARD_BACK = "/images/card-back.jpg"

# --- Drawing colours (RGB 0..1) ---
PLACEHOLDER_FILL: Tuple[float, float, float] = (0.9, 0.9, 0.9)
PLACEHOLDER_BORDER: Tuple[float, float, float] = (0.6, 0.6, 0.6)
PLACEHOLDER_INNER_FILL: Tuple[float, float, float] = (0.95, 0.95, 0.95)
PLACEHOLDER_INNER_BORDER: Tuple[float, float, float] = (0.7, 0.7, 0.7)
PLACEHOLDER_TEXT: Tuple[float, float, float] = (0.2, 0.2, 0.2)
PLACEHOLDER_NOTICE: Tuple[float, float, float] = (0.8, 0.3, 0.3)
BLEED_OUTLINE: Tuple[float, float, float] = (0.9, 0.9, 0.9)
PAGE_NUMBER_GREY: Tuple[float, float, float] = (0.5, 0.5, 0.5)
PLACEHOLDER_NOTICE_TEXT = "Image could not be loaded"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# --- Image acquisition ---
# One constant set for every strategy; timeouts are per attempt, in seconds.
MIN_IMAGE_BYTES = 1000
BATCH_SIZE = max(1, _env_int("PROXY_PRINT_BATCH_SIZE", 5))
MAX_RETRIES = 3
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 5.0
RENDERED_TIMEOUT_SECONDS = 8
PROXY_TIMEOUT_SECONDS = 40
DIRECT_TIMEOUT_SECONDS = 30
RELAY_TIMEOUT_SECONDS = 15
CARD_BACK_TIMEOUT_SECONDS = 20
IMAGE_ACCEPT_HEADER = "image/*"

SITE_ORIGIN = (
    os.environ.get("PROXY_PRINT_SITE_ORIGIN")
    or os.environ.get("SITE_URL")
    or os.environ.get("BASE_URL")
    or ""
)
FALLBACK_SITE_ORIGIN = "http://localhost:5000"
IMAGE_PROXY_PATH = "/image-proxy"
# e.g. "https://relay.example/?url={url}"; empty disables the relay strategy
RELAY_TEMPLATE = os.environ.get("PROXY_PRINT_RELAY_TEMPLATE", "")

# --- Same-origin image proxy ---
DEFAULT_ALLOWED_IMAGE_HOSTS = (
    "optcgapi.com",
    "onepiece-cardgame.com",
    "en.onepiece-cardgame.com",
    "onepiece.limitlesstcg.com",
    "cards.scryfall.io",
)
ALLOWED_IMAGE_HOSTS = tuple(
    h.strip().lower()
    for h in os.environ.get("PROXY_PRINT_ALLOWED_HOSTS", ",".join(DEFAULT_ALLOWED_IMAGE_HOSTS)).split(",")
    if h.strip()
)
UPSTREAM_TIMEOUT_SECONDS = 45
PROXY_CACHE_CONTROL = "public, max-age=3600, must-revalidate"
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Max-Age": "86400",
}

DEBUG = os.environ.get("PROXY_PRINT_DEBUG", "0") == "1"


class ProxyServerConfig:
    """Default configuration for the Flask image proxy."""
    ALLOWED_IMAGE_HOSTS = ALLOWED_IMAGE_HOSTS
    UPSTREAM_TIMEOUT_SECONDS = UPSTREAM_TIMEOUT_SECONDS
    MIN_IMAGE_BYTES = MIN_IMAGE_BYTES
    DEBUG = DEBUG
    TESTING = False


class TestingConfig(ProxyServerConfig):
    """Configuration used by the test suite."""
    DEBUG = False
    TESTING = True
