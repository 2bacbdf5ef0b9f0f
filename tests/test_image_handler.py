"""
Unit tests for the image acquisition pipeline.
"""

import threading
import time
from unittest.mock import MagicMock, Mock

import pytest
import requests

from conftest import FakeStrategy, noise_image_bytes
from errors import AcquisitionError, ErrorKind, OperationAborted, StrategyAbandoned
from image_handler import (
    DirectFetchStrategy, FetchedImage, ImageCache, LocalImageDirectory, ProxyFetchStrategy,
    RelayFetchStrategy, RenderedImageStrategy, default_strategies, group_candidates,
)

URL = "https://cards.example/OP01-001.png"


def _response(status=200, content=b"", content_type="image/png", reason="OK"):
    response = Mock()
    response.status_code = status
    response.reason = reason
    response.content = content
    response.iter_content.return_value = [content]
    response.headers = {"Content-Type": content_type}
    response.json.return_value = {}
    return response


def _session(*responses):
    session = MagicMock()
    session.get.side_effect = list(responses)
    return session


# Cache

class TestImageCache:

    def test_put_get_evict(self, png_bytes):
        cache = ImageCache()
        entry = cache.put(URL, FetchedImage(png_bytes, "image/png", "direct"))
        assert URL in cache and len(cache) == 1
        assert cache.get(URL) is entry
        assert entry.method == "direct"
        cache.evict(URL)
        assert cache.get(URL) is None
        cache.evict(URL)

    def test_clear(self, png_bytes):
        cache = ImageCache()
        cache.put(URL, FetchedImage(png_bytes, "image/png", "direct"))
        cache.clear()
        assert len(cache) == 0

    def test_implausible_entry_is_dropped(self):
        cache = ImageCache()
        cache.put(URL, FetchedImage(b"x" * 10, "image/png", "direct"))
        assert cache.get(URL) is None
        assert URL not in cache


# Strategies

class TestHttpStrategies:

    def test_proxy_target_url_is_same_origin(self):
        strategy = ProxyFetchStrategy(origin="https://site.example")
        assert strategy.target_url(URL) == (
            "https://site.example/image-proxy?url=https%3A%2F%2Fcards.example%2FOP01-001.png"
        )

    def test_relay_target_url(self):
        strategy = RelayFetchStrategy("https://relay.example/?url={url}")
        assert strategy.target_url(URL).startswith("https://relay.example/?url=https%3A%2F%2F")

    def test_direct_success(self, cancel_token, png_bytes):
        session = _session(_response(content=png_bytes))
        image = DirectFetchStrategy(session=session)(URL, cancel_token)
        assert image.data == png_bytes
        assert image.content_type == "image/png"
        assert image.method == "direct"
        _, kwargs = session.get.call_args
        assert kwargs["timeout"] == 30

    def test_forbidden_is_abandoned(self, cancel_token):
        session = _session(_response(status=403, reason="Forbidden"))
        with pytest.raises(StrategyAbandoned) as exc_info:
            ProxyFetchStrategy(origin="https://site.example", session=session)(URL, cancel_token)
        assert exc_info.value.details["status"] == 403

    def test_server_error_is_retryable(self, cancel_token):
        session = _session(_response(status=502, reason="Bad Gateway"))
        with pytest.raises(AcquisitionError) as exc_info:
            DirectFetchStrategy(session=session)(URL, cancel_token)
        assert not isinstance(exc_info.value, StrategyAbandoned)

    def test_tiny_body_is_abandoned(self, cancel_token):
        session = _session(_response(content=b"\x89PNG" + b"\x00" * 496))
        with pytest.raises(StrategyAbandoned):
            DirectFetchStrategy(session=session)(URL, cancel_token)

    def test_timeout_is_classified(self, cancel_token):
        session = MagicMock()
        session.get.side_effect = requests.exceptions.Timeout("slow")
        with pytest.raises(AcquisitionError) as exc_info:
            DirectFetchStrategy(session=session)(URL, cancel_token)
        assert exc_info.value.kind is ErrorKind.TIMEOUT

    def test_cancelled_before_request(self, cancel_token):
        session = MagicMock()
        cancel_token.cancel()
        with pytest.raises(OperationAborted):
            DirectFetchStrategy(session=session)(URL, cancel_token)
        session.get.assert_not_called()


class TestRenderedImageStrategy:

    def test_finds_image_by_file_name(self, tmp_path, cancel_token):
        (tmp_path / "OP01-001.jpg").write_bytes(noise_image_bytes("JPEG"))
        source = LocalImageDirectory(str(tmp_path))
        assert source.find(URL + "?v=2").endswith("OP01-001.jpg")
        image = RenderedImageStrategy(source)(URL, cancel_token)
        assert image.data[:4] == b"\x89PNG"
        assert image.method == "rendered"

    def test_name_matching_ignores_case_and_accents(self, tmp_path):
        (tmp_path / "op01-001.png").write_bytes(noise_image_bytes("PNG"))
        (tmp_path / "Dand\u00e2n.png").write_bytes(noise_image_bytes("PNG"))
        source = LocalImageDirectory(str(tmp_path))
        assert source.find("https://cards.example/images/OP01-001.PNG").endswith("op01-001.png")
        assert source.find("https://cards.example/Dand%C3%A2n.png") is not None

    def test_missing_image_is_abandoned(self, tmp_path, cancel_token):
        source = LocalImageDirectory(str(tmp_path))
        with pytest.raises(StrategyAbandoned):
            RenderedImageStrategy(source)(URL, cancel_token)

    def test_unreadable_image_is_abandoned(self, tmp_path, cancel_token):
        (tmp_path / "OP01-001.png").write_bytes(b"not an image" * 200)
        source = LocalImageDirectory(str(tmp_path))
        with pytest.raises(StrategyAbandoned):
            RenderedImageStrategy(source)(URL, cancel_token)

    def test_missing_directory_matches_nothing(self, tmp_path):
        source = LocalImageDirectory(str(tmp_path / "nope"))
        assert source.find(URL) is None


def test_default_strategy_order(tmp_path):
    names = [s.name for s in default_strategies(origin="https://site.example", relay_template="")]
    assert names == ["proxy", "direct"]
    names = [s.name for s in default_strategies(
        rendered_source=LocalImageDirectory(str(tmp_path)), relay_template="https://r.example/{url}")]
    assert names == ["rendered", "proxy", "direct", "relay"]
    names = [s.name for s in default_strategies(use_proxy=False, relay_template="")]
    assert names == ["direct"]


# Acquirer

class TestAcquire:

    def test_success_is_cached(self, make_acquirer, png_bytes):
        strategy = FakeStrategy(images={URL: png_bytes})
        acquirer = make_acquirer(strategy)
        entry = acquirer.acquire(URL)
        assert entry.data == png_bytes
        assert URL in acquirer.cache

    def test_same_url_twice_is_one_attempt_and_one_hit(self, make_acquirer, png_bytes):
        strategy = FakeStrategy(images={URL: png_bytes})
        acquirer = make_acquirer(strategy)
        acquirer.acquire(URL)
        acquirer.acquire(URL)
        assert acquirer.attempts[URL] == 1
        assert acquirer.cache_hits == 1
        assert strategy.calls == [URL]

    def test_falls_through_to_next_strategy(self, make_acquirer, png_bytes):
        first = FakeStrategy(name="proxy", error=StrategyAbandoned("Domain not allowed"))
        second = FakeStrategy(name="direct", images={URL: png_bytes})
        acquirer = make_acquirer(first, second)
        entry = acquirer.acquire(URL)
        assert entry.method == "direct"
        assert first.calls == [URL] and second.calls == [URL]

    def test_retries_up_to_limit_then_fails(self, make_acquirer):
        strategy = FakeStrategy(name="direct", error=AcquisitionError("boom"))
        acquirer = make_acquirer(strategy, max_retries=3)
        assert acquirer.acquire(URL) is None
        assert acquirer.attempts[URL] == 3
        assert len(strategy.calls) == 3
        assert URL in acquirer.failed

    def test_failed_url_is_not_retried_in_the_same_run(self, make_acquirer):
        strategy = FakeStrategy(error=AcquisitionError("boom"))
        acquirer = make_acquirer(strategy, max_retries=2)
        acquirer.acquire(URL)
        acquirer.acquire(URL)
        assert len(strategy.calls) == 2
        acquirer.reset_failures()
        acquirer.acquire(URL)
        assert len(strategy.calls) == 4

    def test_abandoned_strategy_is_skipped_on_later_passes(self, make_acquirer):
        abandoned = FakeStrategy(name="proxy", error=StrategyAbandoned("403"))
        flaky = FakeStrategy(name="direct", error=AcquisitionError("reset"))
        acquirer = make_acquirer(abandoned, flaky, max_retries=3)
        acquirer.acquire(URL)
        assert len(abandoned.calls) == 1
        assert len(flaky.calls) == 3

    def test_all_abandoned_stops_early(self, make_acquirer):
        strategy = FakeStrategy(error=StrategyAbandoned("never"))
        acquirer = make_acquirer(strategy, max_retries=3)
        assert acquirer.acquire(URL) is None
        assert acquirer.attempts[URL] == 1

    def test_unexpected_exception_is_a_failure(self, make_acquirer):
        strategy = FakeStrategy(error=ValueError("weird"))
        acquirer = make_acquirer(strategy, max_retries=1)
        assert acquirer.acquire(URL) is None
        assert URL in acquirer.failed

    def test_backoff_is_capped(self, make_acquirer):
        acquirer = make_acquirer(FakeStrategy(), backoff_base=1.0, backoff_max=5.0)
        assert [acquirer._backoff_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_backoff_waits_on_the_token(self, make_acquirer, cancel_token):
        cancel_token.wait = Mock()
        strategy = FakeStrategy(error=AcquisitionError("boom"))
        acquirer = make_acquirer(strategy, max_retries=3, backoff_base=1.0, backoff_max=5.0)
        acquirer.acquire(URL)
        assert [c.args[0] for c in cancel_token.wait.call_args_list] == [1.0, 2.0]


class TestPreload:

    def test_deduplicates_urls(self, make_acquirer, png_bytes):
        strategy = FakeStrategy(images={URL: png_bytes})
        acquirer = make_acquirer(strategy)
        report = acquirer.preload([URL, URL, ""])
        assert report.loaded == [URL]
        assert strategy.calls == [URL]
        acquirer.acquire(URL)
        assert acquirer.attempts[URL] == 1
        assert acquirer.cache_hits == 1

    def test_one_failure_does_not_stop_siblings(self, make_acquirer, png_bytes):
        urls = [f"https://cards.example/{i}.png" for i in range(7)]
        images = {u: png_bytes for u in urls if not u.endswith("/3.png")}
        acquirer = make_acquirer(FakeStrategy(images=images), max_retries=1)
        report = acquirer.preload(urls)
        assert len(report.loaded) == 6
        assert report.failed == ["https://cards.example/3.png"]
        assert len(acquirer.cache) == 6

    def test_progress_once_per_url(self, make_acquirer, png_bytes):
        urls = [f"https://cards.example/{i}.png" for i in range(6)]
        acquirer = make_acquirer(FakeStrategy(images={u: png_bytes for u in urls}), batch_size=4)
        events = []
        acquirer.preload(urls, lambda done, total, message: events.append((done, total)))
        assert [done for done, _ in events] == [1, 2, 3, 4, 5, 6]
        assert all(total == 6 for _, total in events)

    def test_cached_and_failed_urls_are_skipped(self, make_acquirer, png_bytes):
        good, bad = "https://cards.example/good.png", "https://cards.example/bad.png"
        strategy = FakeStrategy(images={good: png_bytes})
        acquirer = make_acquirer(strategy, max_retries=1)
        acquirer.preload([good, bad])
        calls_before = len(strategy.calls)
        report = acquirer.preload([good, bad])
        assert len(strategy.calls) == calls_before
        assert sorted(report.skipped) == sorted([good, bad])

    def test_batches_never_exceed_batch_size(self, make_acquirer, png_bytes):
        urls = [f"https://cards.example/{i}.png" for i in range(12)]
        lock = threading.Lock()
        state = {"active": 0, "peak": 0}

        def track(url):
            with lock:
                state["active"] += 1
                state["peak"] = max(state["peak"], state["active"])
            time.sleep(0.01)
            with lock:
                state["active"] -= 1

        strategy = FakeStrategy(images={u: png_bytes for u in urls}, on_call=track)
        acquirer = make_acquirer(strategy, batch_size=5)
        acquirer.preload(urls)
        assert state["peak"] <= 5
        assert len(strategy.calls) == 12

    def test_cancel_stops_at_batch_boundary(self, make_acquirer, cancel_token, png_bytes):
        urls = [f"https://cards.example/{i}.png" for i in range(10)]
        strategy = FakeStrategy(images={u: png_bytes for u in urls})
        acquirer = make_acquirer(strategy, batch_size=2)
        with pytest.raises(OperationAborted):
            acquirer.preload(urls, lambda done, total, message: cancel_token.cancel())
        assert len(strategy.calls) <= 2

    def test_cancelled_before_start(self, make_acquirer, cancel_token, png_bytes):
        strategy = FakeStrategy(images={URL: png_bytes})
        acquirer = make_acquirer(strategy)
        cancel_token.cancel()
        with pytest.raises(OperationAborted):
            acquirer.preload([URL])
        assert strategy.calls == []

    def test_alternate_fetched_only_after_first_candidate_fails(self, make_acquirer, png_bytes):
        full, small = "https://cards.example/full.png", "https://cards.example/small.png"
        strategy = FakeStrategy(images={small: png_bytes})
        acquirer = make_acquirer(strategy, max_retries=1)
        events = []
        report = acquirer.preload([[full, small]], lambda done, total, message: events.append((done, total)))
        assert strategy.calls == [full, small]
        assert report.loaded == [full]
        assert full in acquirer.failed
        assert small in acquirer.cache
        assert events == [(1, 1)]

    def test_alternate_skipped_when_first_candidate_loads(self, make_acquirer, png_bytes):
        full, small = "https://cards.example/full.png", "https://cards.example/small.png"
        strategy = FakeStrategy(images={full: png_bytes, small: png_bytes})
        make_acquirer(strategy).preload([[full, small]])
        assert strategy.calls == [full]

    def test_item_fails_when_every_candidate_fails(self, make_acquirer):
        full, small = "https://cards.example/full.png", "https://cards.example/small.png"
        acquirer = make_acquirer(FakeStrategy(), max_retries=1)
        report = acquirer.preload([[full, small]])
        assert report.failed == [full]
        assert acquirer.failed == {full, small}

    def test_shared_alternate_fetched_once(self, make_acquirer, png_bytes):
        a, b, shared = (f"https://cards.example/{n}.png" for n in ("a", "b", "shared"))
        strategy = FakeStrategy(images={shared: png_bytes})
        acquirer = make_acquirer(strategy, max_retries=1)
        report = acquirer.preload([[a, shared], [b, shared]])
        assert sorted(strategy.calls) == sorted([a, b, shared])
        assert sorted(report.loaded) == sorted([a, b])

    def test_interrupt_does_not_wait_for_workers(self, make_acquirer, cancel_token, png_bytes):
        fast, slow = "https://cards.example/fast.png", "https://cards.example/slow.png"
        release = threading.Event()
        strategy = FakeStrategy(images={fast: png_bytes, slow: png_bytes},
                                on_call=lambda url: url == slow and release.wait(5))
        acquirer = make_acquirer(strategy, batch_size=2)

        def interrupt(done, total, message):
            raise KeyboardInterrupt

        started = time.monotonic()
        try:
            with pytest.raises(KeyboardInterrupt):
                acquirer.preload([fast, slow], interrupt)
            assert time.monotonic() - started < 2
            assert cancel_token.cancelled
        finally:
            release.set()


def test_group_candidates_merges_by_first_url():
    a, b, c = "https://x/a.png", "https://x/b.png", "https://x/c.png"
    groups = group_candidates([[a, b], a, [a, c, b], ["", ""], [b], ""])
    assert groups == {a: [a, b, c], b: [b]}
