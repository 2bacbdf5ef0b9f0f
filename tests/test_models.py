"""
Tests for the data model and error classification.
"""

import threading
import time

import pytest
import requests

from errors import (
    AcquisitionError, ErrorKind, LayoutConfigError, OperationAborted, ProxyPrintError, classify_exception,
    user_message,
)
from models import CancellationToken, CardRecord, PrintSettings


class TestCardRecord:

    def test_candidates_skip_blank_and_duplicate_entries(self):
        record = CardRecord("a", "A", ("https://x/1.png", " ", "null", "https://x/1.png", "https://x/2.png"))
        assert record.image_candidates() == ["https://x/1.png", "https://x/2.png"]
        assert record.primary_image() == "https://x/1.png"

    def test_no_candidates(self):
        assert CardRecord("a", "A", ("", "undefined")).primary_image() is None

    def test_list_image_uris_keep_their_order(self):
        record = CardRecord.from_dict({"name": "Nami", "image_uris": ["b.png", "a.png"]})
        assert record.id == "Nami"
        assert record.image_uris == ("b.png", "a.png")


def test_effective_bleed():
    assert PrintSettings(bleed_size_mm=3).effective_bleed_mm == 0.0
    assert PrintSettings(include_bleed=True, bleed_size_mm=3).effective_bleed_mm == 3.0


class TestCancellationToken:

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(OperationAborted):
            token.raise_if_cancelled()

    def test_wait_returns_after_timeout(self):
        CancellationToken().wait(0.01)

    def test_wait_wakes_on_cancel(self):
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()
        started = time.monotonic()
        with pytest.raises(OperationAborted):
            token.wait(5)
        assert time.monotonic() - started < 2


class TestErrors:

    @pytest.mark.parametrize("exc, kind", [
        (requests.exceptions.ReadTimeout("slow"), ErrorKind.TIMEOUT),
        (TimeoutError(), ErrorKind.TIMEOUT),
        (requests.exceptions.ConnectionError("refused"), ErrorKind.NETWORK),
        (ConnectionResetError(), ErrorKind.NETWORK),
        (MemoryError(), ErrorKind.MEMORY),
        (OperationAborted(), ErrorKind.CANCELLED),
        (AcquisitionError("x"), ErrorKind.NETWORK),
        (FileNotFoundError("x"), ErrorKind.UNKNOWN),
        (ValueError("x"), ErrorKind.UNKNOWN),
    ])
    def test_classify_exception(self, exc, kind):
        assert classify_exception(exc) is kind

    def test_explicit_kind_wins(self):
        assert ProxyPrintError("x", kind=ErrorKind.MEMORY).kind is ErrorKind.MEMORY

    def test_str_includes_details(self):
        assert str(ProxyPrintError("boom", {"url": "u"})) == "boom | Details: {'url': 'u'}"

    def test_layout_error_lists_problems(self):
        error = LayoutConfigError(["width", "height"])
        assert error.problems == ["width", "height"]
        assert "width; height" in error.message

    def test_user_messages(self):
        assert "internet connection" in user_message(ErrorKind.NETWORK)
        assert user_message(ErrorKind.CANCELLED) == "Generation was cancelled."
