"""
Generic paginated fetch engine.

A PageFetcher knows how to fetch one page of a resource and how to convert, filter
and skip its items. fetch_all_pages walks the pages in provider order, assumes the
provider delivers items newest-first, and stops early once whole pages fall before
the requested window. Results are cached under the caller's key so an unchanged
upstream is not re-fetched within the cache TTL.
"""
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, List, Optional

from ingest.cancel import CancelToken, ensure_token
from ingest.errors import FetchError, RetryExhaustedError, RateLimitError
from storage.cache import NoopCache

logger = logging.getLogger(__name__)

DEFAULT_EARLY_TERMINATION_THRESHOLD = 2
DEFAULT_PROGRESS_EVERY = 50


def _noop_report(message: str):
    pass


class DateFilter(Enum):
    INCLUDE = 'include'
    TOO_NEW = 'too_new'
    TOO_OLD = 'too_old'


def filter_by_date(ts: Optional[datetime], since: Optional[datetime], until: Optional[datetime]) -> DateFilter:
    if ts is None:
        return DateFilter.INCLUDE
    if until is not None and ts > until:
        return DateFilter.TOO_NEW
    if since is not None and ts < since:
        return DateFilter.TOO_OLD
    return DateFilter.INCLUDE


def hard_cutoff(since: Optional[datetime], days: int = 7) -> Optional[datetime]:
    """The point past which nothing older can still matter, allowing for clock skew."""
    if since is None:
        return None
    return since - timedelta(days=days)


class Page:
    def __init__(self, items: List[Any], has_next: bool, next_token: Any = None):
        self.items = items
        self.has_next = has_next
        self.next_token = next_token


class FetchConfig:
    def __init__(
        self,
        resource_name: str,
        early_termination: bool = True,
        early_termination_threshold: int = DEFAULT_EARLY_TERMINATION_THRESHOLD,
        progress_every: int = DEFAULT_PROGRESS_EVERY,
        quiet: bool = False,
    ):
        self.resource_name = resource_name
        self.early_termination = early_termination
        self.early_termination_threshold = max(1, int(early_termination_threshold))
        self.progress_every = progress_every
        self.quiet = quiet


class PageFetcher:
    """Strategy for one paginated resource. Subclasses override fetch_page and convert."""

    first_token: Any = 1

    def fetch_page(self, token: Any) -> Page:
        raise NotImplementedError

    def convert(self, item: Any) -> Any:
        return item

    def filter(self, item: Any) -> DateFilter:
        return DateFilter.INCLUDE

    def should_skip(self, item: Any) -> bool:
        return False

    def past_hard_cutoff(self, item: Any) -> bool:
        """True when nothing after this item can fall inside the window; ends the walk at once."""
        return False

    def to_cache(self, result: Any) -> Any:
        return result.to_dict() if hasattr(result, 'to_dict') else result

    def from_cache(self, raw: Any) -> Any:
        return raw


class SimpleFetcher(PageFetcher):
    """Fetcher built from plain callables, no date filtering."""

    def __init__(self, fetch_page: Callable[[Any], Page], convert: Callable[[Any], Any], from_cache: Optional[Callable[[Any], Any]] = None, should_skip: Optional[Callable[[Any], bool]] = None):
        self._fetch_page = fetch_page
        self._convert = convert
        self._from_cache = from_cache
        self._should_skip = should_skip

    def fetch_page(self, token: Any) -> Page:
        return self._fetch_page(token)

    def convert(self, item: Any) -> Any:
        return self._convert(item)

    def should_skip(self, item: Any) -> bool:
        return bool(self._should_skip and self._should_skip(item))

    def from_cache(self, raw: Any) -> Any:
        return self._from_cache(raw) if self._from_cache else raw


class DateFilteredFetcher(SimpleFetcher):
    """SimpleFetcher that also filters items by a timestamp accessor against [since, until]."""

    def __init__(self, fetch_page, convert, date_of: Callable[[Any], Optional[datetime]], since: Optional[datetime], until: Optional[datetime], from_cache=None, should_skip=None):
        super().__init__(fetch_page, convert, from_cache=from_cache, should_skip=should_skip)
        self._date_of = date_of
        self.since = since
        self.until = until

    def filter(self, item: Any) -> DateFilter:
        return filter_by_date(self._date_of(item), self.since, self.until)


class EnrichingFetcher(DateFilteredFetcher):
    """Adds a per-item detail call made before an item is accepted."""

    def __init__(self, fetch_page, convert, enrich: Callable[[Any], Any], date_of, since, until, from_cache=None, should_skip=None):
        super().__init__(fetch_page, convert, date_of, since, until, from_cache=from_cache, should_skip=should_skip)
        self._enrich = enrich

    def enrich(self, item: Any) -> Any:
        return self._enrich(item)


def _cached_results(cache, cache_key: str, fetcher: PageFetcher, config: FetchConfig):
    if not cache_key:
        return None
    value, found = cache.get(cache_key)
    if not found:
        return None
    logger.debug("cache hit for %s (%s)", config.resource_name, cache_key)
    return [fetcher.from_cache(v) for v in value or []]


def _store_results(cache, cache_key: str, fetcher: PageFetcher, results: List[Any]):
    if cache_key:
        cache.set(cache_key, [fetcher.to_cache(r) for r in results])


def fetch_all_pages(
    cache,
    cache_key: str,
    config: FetchConfig,
    fetcher: PageFetcher,
    report: Optional[Callable[[str], None]] = None,
    cancel: Optional[CancelToken] = None,
) -> List[Any]:
    """Fetch every relevant page of a resource and return the converted results."""
    cache = cache if cache is not None else NoopCache()
    report = report or _noop_report
    cancel = ensure_token(cancel)

    cached = _cached_results(cache, cache_key, fetcher, config)
    if cached is not None:
        return cached

    results: List[Any] = []
    token = fetcher.first_token
    consecutive_old_pages = 0
    page_count = 0

    while True:
        cancel.check()
        page = fetcher.fetch_page(token)
        page_count += 1

        eligible = 0
        too_old = 0
        hard_stop = False
        for item in page.items:
            if fetcher.should_skip(item):
                continue
            if fetcher.past_hard_cutoff(item):
                hard_stop = True
                break
            eligible += 1
            verdict = fetcher.filter(item)
            if verdict is DateFilter.TOO_OLD:
                too_old += 1
            elif verdict is DateFilter.INCLUDE:
                results.append(fetcher.convert(item))

        if not config.quiet:
            report(f"    {config.resource_name}: page {page_count}, {len(results)} collected")

        if hard_stop:
            logger.debug("%s: reached hard cutoff on page %d", config.resource_name, page_count)
            break

        if config.early_termination and eligible > 0 and too_old == eligible:
            consecutive_old_pages += 1
            if consecutive_old_pages >= config.early_termination_threshold:
                logger.debug("%s: %d consecutive pages older than window, stopping", config.resource_name, consecutive_old_pages)
                break
        else:
            consecutive_old_pages = 0

        if not page.has_next:
            break
        token = page.next_token

    _store_results(cache, cache_key, fetcher, results)
    return results


def fetch_all_pages_with_enrichment(
    cache,
    cache_key: str,
    config: FetchConfig,
    fetcher: EnrichingFetcher,
    report: Optional[Callable[[str], None]] = None,
    cancel: Optional[CancelToken] = None,
) -> List[Any]:
    """Like fetch_all_pages, but each accepted item is enriched by a detail call first.

    Items whose enrichment fails are logged and dropped. Early termination does not
    apply: list endpoints used with enrichment are not reliably date ordered.
    """
    cache = cache if cache is not None else NoopCache()
    report = report or _noop_report
    cancel = ensure_token(cancel)

    cached = _cached_results(cache, cache_key, fetcher, config)
    if cached is not None:
        return cached

    results: List[Any] = []
    token = fetcher.first_token
    processed = 0

    while True:
        cancel.check()
        page = fetcher.fetch_page(token)
        for item in page.items:
            if fetcher.should_skip(item) or fetcher.filter(item) is not DateFilter.INCLUDE:
                continue
            cancel.check()
            try:
                detailed = fetcher.enrich(item)
            except (RetryExhaustedError, RateLimitError):
                raise
            except FetchError as ex:
                logger.warning("%s: dropping item after failed enrichment: %s", config.resource_name, ex)
                continue
            results.append(fetcher.convert(detailed))
            processed += 1
            if config.progress_every and processed % config.progress_every == 0 and not config.quiet:
                report(f"    {config.resource_name}: {processed} enriched")
        if not page.has_next:
            break
        token = page.next_token

    _store_results(cache, cache_key, fetcher, results)
    return results


__all__ = [
    "DateFilter",
    "filter_by_date",
    "hard_cutoff",
    "Page",
    "FetchConfig",
    "PageFetcher",
    "SimpleFetcher",
    "DateFilteredFetcher",
    "EnrichingFetcher",
    "fetch_all_pages",
    "fetch_all_pages_with_enrichment",
]
