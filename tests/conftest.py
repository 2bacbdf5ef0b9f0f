"""
Shared fixtures for the ProxyPrint test suite.
"""

import io
import os
import threading

import pytest
from PIL import Image

from errors import AcquisitionError
from image_handler import FetchedImage, ImageAcquirer, ImageStrategy
from models import CancellationToken, CardRecord
from web_utils import sniff_content_type


def noise_image_bytes(fmt: str = "PNG", size=(64, 64)) -> bytes:
    """Random pixels compress badly, so even small images clear the 1000 byte floor."""
    img = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
    buffer = io.BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


class FakeStrategy(ImageStrategy):
    """Serves canned bytes per URL and records every call."""

    def __init__(self, name="fake", images=None, error=None, on_call=None):
        self.name = name
        self.images = dict(images or {})
        self.error = error
        self.on_call = on_call
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, url, cancel_token):
        with self._lock:
            self.calls.append(url)
        if self.on_call:
            self.on_call(url)
        if url in self.images:
            data = self.images[url]
            return FetchedImage(data, sniff_content_type(data), self.name)
        if self.error is not None:
            raise self.error
        raise AcquisitionError("not found", {"url": url})


def make_card(card_id, count=1, url=None, name=None):
    url = url if url is not None else f"https://cards.example/{card_id}.png"
    return CardRecord(id=card_id, name=name or f"Card {card_id}", image_uris=(url,), count=count)


@pytest.fixture
def png_bytes():
    return noise_image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    return noise_image_bytes("JPEG")


@pytest.fixture
def cancel_token():
    return CancellationToken()


@pytest.fixture
def make_acquirer(cancel_token):
    """Acquirer over the given strategies with backoff disabled."""
    def _make(*strategies, **kwargs):
        kwargs.setdefault("backoff_base", 0)
        kwargs.setdefault("backoff_max", 0)
        kwargs.setdefault("cancel_token", cancel_token)
        return ImageAcquirer(strategies=list(strategies), **kwargs)
    return _make
