"""
Image acquisition for ProxyPrint.

Each URL goes through an ordered chain of strategies until one produces
plausible image bytes:

    cache -> rendered (optional, local) -> same-origin proxy -> direct -> relay (optional)

Batches are fetched a chunk at a time on a small thread pool; every chunk
settles completely before the next one starts. A card's alternate image URLs
are fetched in later rounds, only once its earlier candidates have failed.
Results are written to the cache and the failed set from the calling thread
only.
"""

import io
import os
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Union
from urllib.parse import quote, unquote, urlsplit

import requests
from PIL import Image

import config
from errors import (
    AcquisitionError, ImageTooSmallError, OperationAborted, StrategyAbandoned, classify_exception,
)
from logging_config import get_logger
from models import CancellationToken, ImageCacheEntry
from parsing_utils import normalize_card_name
from web_utils import fetch_image_bytes, to_absolute_url

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int, str], None]
# One URL, or a card's candidate URLs in priority order
Candidates = Union[str, Sequence[str]]

_thread_local = threading.local()


def get_session() -> requests.Session:
    """One Session per worker thread."""
    s = getattr(_thread_local, "session", None)
    if s is None:
        s = requests.Session()
        s.headers.update({"User-Agent": "ProxyPrint/1.0"})
        _thread_local.session = s
    return s


class FetchedImage(NamedTuple):
    data: bytes
    content_type: str
    method: str


class ImageCache:
    """Content cache keyed by absolute URL, owned by one engine (or shared on purpose by its caller)."""

    def __init__(self):
        self._entries: Dict[str, ImageCacheEntry] = {}

    def get(self, url: str) -> Optional[ImageCacheEntry]:
        entry = self._entries.get(url)
        if entry is not None and len(entry.data) < config.MIN_IMAGE_BYTES:
            del self._entries[url]
            return None
        return entry

    def put(self, url: str, image: FetchedImage) -> ImageCacheEntry:
        entry = ImageCacheEntry(url=url, data=image.data, content_type=image.content_type,
                                method=image.method, fetched_at=time.time())
        self._entries[url] = entry
        return entry

    def evict(self, url: str) -> None:
        self._entries.pop(url, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, url: str) -> bool:
        return url in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# --- Strategies ---

class ImageStrategy:
    """A single way of turning a URL into bytes. Raise AcquisitionError on failure."""
    name = "strategy"
    timeout: float = 0

    def __call__(self, url: str, cancel_token: CancellationToken) -> FetchedImage:
        raise NotImplementedError


class RenderedImageSource:
    """Something that may already hold a rendered copy of an image (looked up by URL)."""

    def find(self, url: str) -> Optional[str]:
        raise NotImplementedError


class LocalImageDirectory(RenderedImageSource):
    """
    A directory of previously downloaded card images, matched by file name.
    'https://host/cards/OP01-001.png' finds 'OP01-001.png' or 'op01-001.jpg'.
    """
    EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")

    def __init__(self, directory: str):
        self.directory = directory
        self._index: Dict[str, str] = {}
        if os.path.isdir(directory):
            for filename in sorted(os.listdir(directory)):
                stem, ext = os.path.splitext(filename)
                if ext.lower() in self.EXTENSIONS:
                    self._index.setdefault(normalize_card_name(stem), os.path.join(directory, filename))
        logger.debug(f"Indexed {len(self._index)} local images in '{directory}'")

    def find(self, url: str) -> Optional[str]:
        path = unquote(urlsplit(url).path or url)
        stem = os.path.splitext(os.path.basename(path))[0]
        if not stem:
            return None
        return self._index.get(normalize_card_name(stem))


class RenderedImageStrategy(ImageStrategy):
    """Re-encode an image that is already available locally instead of fetching it."""
    name = "rendered"
    timeout = config.RENDERED_TIMEOUT_SECONDS

    def __init__(self, source: RenderedImageSource):
        self.source = source

    def __call__(self, url: str, cancel_token: CancellationToken) -> FetchedImage:
        path = self.source.find(url)
        if not path:
            raise StrategyAbandoned("No rendered copy available", {"url": url})
        try:
            with Image.open(path) as img:
                img.load()
                buffer = io.BytesIO()
                img.save(buffer, format="PNG")
        except Exception as e:
            # An unreadable file will not become readable on retry
            raise StrategyAbandoned(f"Rendered copy unreadable: {e}", {"url": url, "path": path})
        data = buffer.getvalue()
        if len(data) < config.MIN_IMAGE_BYTES:
            raise StrategyAbandoned(f"Rendered copy too small ({len(data)} bytes)", {"url": url, "path": path})
        return FetchedImage(data, "image/png", self.name)


class HttpFetchStrategy(ImageStrategy):
    """Shared GET logic; subclasses choose the URL actually requested."""
    # Statuses worth another pass; other 4xx responses will not change
    RETRYABLE_CLIENT_STATUSES = (408, 429)

    def __init__(self, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        if timeout is not None:
            self.timeout = timeout
        self.session = session

    def target_url(self, url: str) -> str:
        raise NotImplementedError

    def __call__(self, url: str, cancel_token: CancellationToken) -> FetchedImage:
        cancel_token.raise_if_cancelled()
        target = self.target_url(url)
        try:
            data, content_type = fetch_image_bytes(target, timeout=self.timeout, session=self.session or get_session(),
                                                   cancel_token=cancel_token)
        except ImageTooSmallError as e:
            raise StrategyAbandoned(e.message, {"url": url, "via": self.name})
        except AcquisitionError as e:
            status = e.details.get("status")
            if status and 400 <= status < 500 and status not in self.RETRYABLE_CLIENT_STATUSES:
                raise StrategyAbandoned(e.message, {"url": url, "via": self.name, "status": status})
            raise
        return FetchedImage(data, content_type, self.name)


class ProxyFetchStrategy(HttpFetchStrategy):
    """Fetch through the same-origin /image-proxy endpoint."""
    name = "proxy"
    timeout = config.PROXY_TIMEOUT_SECONDS

    def __init__(self, origin: Optional[str] = None, path: str = config.IMAGE_PROXY_PATH, **kwargs):
        super().__init__(**kwargs)
        self.origin = origin
        self.path = path

    def target_url(self, url: str) -> str:
        return to_absolute_url(f"{self.path}?url={quote(url, safe='')}", self.origin)


class DirectFetchStrategy(HttpFetchStrategy):
    name = "direct"
    timeout = config.DIRECT_TIMEOUT_SECONDS

    def target_url(self, url: str) -> str:
        return url


class RelayFetchStrategy(HttpFetchStrategy):
    """Last resort through a third-party relay, e.g. 'https://relay.example/?url={url}'."""
    name = "relay"
    timeout = config.RELAY_TIMEOUT_SECONDS

    def __init__(self, template: str, **kwargs):
        super().__init__(**kwargs)
        self.template = template

    def target_url(self, url: str) -> str:
        return self.template.format(url=quote(url, safe=""))


def default_strategies(
    origin: Optional[str] = None,
    rendered_source: Optional[RenderedImageSource] = None,
    relay_template: Optional[str] = None,
    use_proxy: bool = True,
    session: Optional[requests.Session] = None,
) -> List[ImageStrategy]:
    """Build the standard chain; optional capabilities are simply left out when absent."""
    strategies: List[ImageStrategy] = []
    if rendered_source is not None:
        strategies.append(RenderedImageStrategy(rendered_source))
    if use_proxy:
        strategies.append(ProxyFetchStrategy(origin=origin, session=session))
    strategies.append(DirectFetchStrategy(session=session))
    relay_template = config.RELAY_TEMPLATE if relay_template is None else relay_template
    if relay_template:
        strategies.append(RelayFetchStrategy(relay_template, session=session))
    return strategies


# --- Acquirer ---

def group_candidates(items: Iterable[Candidates]) -> Dict[str, List[str]]:
    """
    Candidate lists keyed by their first URL. Items sharing a first URL are
    merged, keeping every alternate once and in order.
    """
    groups: Dict[str, List[str]] = {}
    for item in items:
        candidates = [item] if isinstance(item, str) else list(item)
        candidates = [u for u in candidates if u]
        if not candidates:
            continue
        merged = groups.setdefault(candidates[0], [])
        merged.extend(u for u in dict.fromkeys(candidates) if u not in merged)
    return groups


class AttemptOutcome(NamedTuple):
    url: str
    image: Optional[FetchedImage]
    passes: int
    error: Optional[AcquisitionError]


class PreloadReport(NamedTuple):
    loaded: List[str]
    failed: List[str]
    skipped: List[str]


class ImageAcquirer:
    """
    Runs the strategy chain for URLs, with retries, backoff and a byte cache.

    Args:
        strategies: Ordered strategy chain (default_strategies() when omitted)
        cache: ImageCache to read and fill (a fresh one when omitted)
        cancel_token: Shared cancellation signal
        batch_size: URLs in flight at once during preload
        max_retries: Full-chain passes per URL
    """

    def __init__(
        self,
        strategies: Optional[List[ImageStrategy]] = None,
        cache: Optional[ImageCache] = None,
        cancel_token: Optional[CancellationToken] = None,
        batch_size: int = config.BATCH_SIZE,
        max_retries: int = config.MAX_RETRIES,
        backoff_base: float = config.BACKOFF_BASE_SECONDS,
        backoff_max: float = config.BACKOFF_MAX_SECONDS,
    ):
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.cache = cache if cache is not None else ImageCache()
        self.cancel_token = cancel_token or CancellationToken()
        self.batch_size = max(1, batch_size)
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.failed: Set[str] = set()
        self.attempts: Dict[str, int] = defaultdict(int)
        self.cache_hits = 0

    def reset_failures(self) -> None:
        """Forget failed URLs; called at the start of every run."""
        self.failed.clear()

    def _backoff_delay(self, pass_index: int) -> float:
        return min(self.backoff_base * (2 ** pass_index), self.backoff_max)

    def _run_chain(self, url: str) -> AttemptOutcome:
        """Try every strategy, up to max_retries passes. Safe to run on a worker thread."""
        abandoned: Set[str] = set()
        last_error: Optional[AcquisitionError] = None
        passes = 0
        for pass_index in range(self.max_retries):
            self.cancel_token.raise_if_cancelled()
            passes += 1
            for strategy in self.strategies:
                if strategy.name in abandoned:
                    continue
                self.cancel_token.raise_if_cancelled()
                try:
                    image = strategy(url, self.cancel_token)
                    logger.debug(f"{strategy.name} fetched {len(image.data)} bytes for {url[:80]}")
                    return AttemptOutcome(url, image, passes, None)
                except OperationAborted:
                    raise
                except StrategyAbandoned as e:
                    abandoned.add(strategy.name)
                    last_error = e
                    logger.debug(f"{strategy.name} gave up on {url[:80]}: {e.message}")
                except AcquisitionError as e:
                    last_error = e
                    logger.debug(f"{strategy.name} failed for {url[:80]} (pass {passes}): {e.message}")
                except Exception as e:
                    last_error = AcquisitionError(f"{strategy.name} failed: {e}", {"url": url}, kind=classify_exception(e))
                    logger.debug(f"{strategy.name} raised unexpectedly for {url[:80]}: {e}")
            if len(abandoned) >= len({s.name for s in self.strategies}):
                break
            if pass_index < self.max_retries - 1:
                self.cancel_token.wait(self._backoff_delay(pass_index))
        if last_error is None:
            last_error = AcquisitionError("No acquisition strategies configured", {"url": url})
        return AttemptOutcome(url, None, passes, last_error)

    def _record(self, outcome: AttemptOutcome) -> Optional[ImageCacheEntry]:
        self.attempts[outcome.url] += outcome.passes
        if outcome.image is not None:
            return self.cache.put(outcome.url, outcome.image)
        self.failed.add(outcome.url)
        logger.warning(f"Image unavailable after {outcome.passes} attempt(s), placeholder will be used: "
                       f"{outcome.url[:80]} ({outcome.error})")
        return None

    def acquire(self, url: str) -> Optional[ImageCacheEntry]:
        """Bytes for one URL from the cache or the chain; None when every strategy failed."""
        entry = self.cache.get(url)
        if entry is not None:
            self.cache_hits += 1
            return entry
        if url in self.failed:
            return None
        self.cancel_token.raise_if_cancelled()
        return self._record(self._run_chain(url))

    def _fetch_batches(self, urls: List[str], on_result: Callable[[str, Optional[ImageCacheEntry]], None]) -> None:
        """
        Run the chain for `urls` a chunk at a time, recording each outcome and
        passing it to `on_result` on the calling thread.
        """
        batch_count = (len(urls) + self.batch_size - 1) // self.batch_size
        for batch_number, start in enumerate(range(0, len(urls), self.batch_size), 1):
            self.cancel_token.raise_if_cancelled()
            batch = urls[start:start + self.batch_size]
            logger.debug(f"Batch {batch_number}/{batch_count}: {len(batch)} images")
            aborted = False
            interrupted = False
            pool = ThreadPoolExecutor(max_workers=len(batch), thread_name_prefix="img")
            try:
                futures = {pool.submit(self._run_chain, url): url for url in batch}
                for future in as_completed(futures):
                    url = futures[future]
                    try:
                        outcome = future.result()
                    except OperationAborted:
                        aborted = True
                        continue
                    except Exception as e:
                        outcome = AttemptOutcome(url, None, 1, AcquisitionError(str(e), {"url": url}, kind=classify_exception(e)))
                    on_result(url, self._record(outcome))
            except (KeyboardInterrupt, SystemExit):
                # Workers see the token at their next check; nobody waits for them
                interrupted = True
                self.cancel_token.cancel()
                raise
            finally:
                pool.shutdown(wait=not interrupted, cancel_futures=interrupted)
            if aborted:
                raise OperationAborted()

    def preload(self, items: Iterable[Candidates], progress_callback: Optional[ProgressCallback] = None) -> PreloadReport:
        """
        Fetch images for every item not already cached, chunk by chunk.

        An item is a URL or a list of candidate URLs in priority order. A
        candidate is only fetched, in a later round of batches, once every
        earlier candidate of its item has failed. The progress callback
        receives (done, total, message) once per item, and the report lists
        items by their first candidate.
        Raises OperationAborted at the first chunk boundary after cancellation.
        """
        self.cancel_token.raise_if_cancelled()
        groups = group_candidates(items)
        total = len(groups)
        done = 0
        loaded: List[str] = []
        failed: List[str] = []
        skipped: List[str] = []

        def report(message: str) -> None:
            if progress_callback:
                progress_callback(done, total, message)

        pending: Dict[str, List[str]] = {}
        for primary, candidates in groups.items():
            if any(self.cache.get(u) is not None for u in candidates):
                self.cache_hits += 1
                skipped.append(primary)
                done += 1
                report(f"Image cached: {done}/{total}")
            elif all(u in self.failed for u in candidates):
                skipped.append(primary)
                done += 1
                report(f"Image skipped (failed earlier): {done}/{total}")
            else:
                pending[primary] = candidates

        if pending:
            logger.info(f"Preloading {len(pending)} images in batches of {self.batch_size}")
        while pending:
            # Each round fetches the best untried candidate of every unresolved item
            waiting: Dict[str, List[str]] = defaultdict(list)
            for primary in list(pending):
                remaining = [u for u in pending[primary] if u not in self.failed]
                if not remaining:
                    del pending[primary]
                    failed.append(primary)
                    done += 1
                    report(f"Image failed: {done}/{total}")
                elif self.cache.get(remaining[0]) is not None:
                    del pending[primary]
                    loaded.append(primary)
                    done += 1
                    report(f"Image loaded: {done}/{total}")
                else:
                    pending[primary] = remaining
                    waiting[remaining[0]].append(primary)
            if not waiting:
                break

            def settle(url: str, entry: Optional[ImageCacheEntry]) -> None:
                nonlocal done
                for primary in waiting[url]:
                    if entry is not None:
                        del pending[primary]
                        loaded.append(primary)
                        done += 1
                        report(f"Image loaded: {done}/{total}")
                        continue
                    pending[primary] = [u for u in pending[primary][1:] if u not in self.failed]
                    if pending[primary]:
                        logger.debug(f"Trying the next image candidate for {primary[:80]}")
                    else:
                        del pending[primary]
                        failed.append(primary)
                        done += 1
                        report(f"Image failed: {done}/{total}")

            self._fetch_batches(list(waiting), settle)

        if failed:
            logger.warning(f"{len(failed)} of {total} images failed to load; they will print as placeholders")
        logger.info(f"Preload finished: {len(loaded)} loaded, {len(failed)} failed, {len(skipped)} already known")
        return PreloadReport(loaded, failed, skipped)
