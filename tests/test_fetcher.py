import unittest
from datetime import datetime, timedelta, timezone

import pytest

from ingest.cancel import CancelToken, Cancelled
from ingest.errors import FetchError, RetryExhaustedError
from ingest.fetcher import (
    DateFilter,
    DateFilteredFetcher,
    EnrichingFetcher,
    FetchConfig,
    Page,
    fetch_all_pages,
    fetch_all_pages_with_enrichment,
    filter_by_date,
    hard_cutoff,
)
from storage.cache import MemoryCache

SINCE = datetime(2024, 6, 1, tzinfo=timezone.utc)
UNTIL = datetime(2024, 6, 30, 23, 59, 59, tzinfo=timezone.utc)


def _item(n, ts):
    return {'n': n, 'ts': ts}


class PagedSource:
    """Serves fixed pages and records which page numbers were requested."""

    def __init__(self, pages):
        self.pages = pages
        self.requested = []

    def __call__(self, token):
        self.requested.append(token)
        items = self.pages[token - 1]
        has_next = token < len(self.pages)
        return Page(items, has_next, token + 1 if has_next else None)


def _fetcher(source, **kwargs):
    return DateFilteredFetcher(source, dict, lambda i: i['ts'], SINCE, UNTIL, **kwargs)


class TestFilterByDate(unittest.TestCase):
    def test_verdicts(self):
        self.assertIs(filter_by_date(SINCE + timedelta(days=1), SINCE, UNTIL), DateFilter.INCLUDE)
        self.assertIs(filter_by_date(SINCE - timedelta(seconds=1), SINCE, UNTIL), DateFilter.TOO_OLD)
        self.assertIs(filter_by_date(UNTIL + timedelta(seconds=1), SINCE, UNTIL), DateFilter.TOO_NEW)
        self.assertIs(filter_by_date(None, SINCE, UNTIL), DateFilter.INCLUDE)
        self.assertIs(filter_by_date(SINCE - timedelta(days=400), None, None), DateFilter.INCLUDE)

    def test_hard_cutoff(self):
        self.assertEqual(hard_cutoff(SINCE), SINCE - timedelta(days=7))
        self.assertIsNone(hard_cutoff(None))


class TestFetchAllPages(unittest.TestCase):
    def test_early_termination_after_two_old_pages(self):
        old = SINCE - timedelta(days=3)
        source = PagedSource([
            [_item(1, SINCE + timedelta(days=5)), _item(2, SINCE + timedelta(days=2))],
            [_item(3, old), _item(4, old)],
            [_item(5, old), _item(6, old)],
            [_item(7, old)],
        ])
        results = fetch_all_pages(None, '', FetchConfig('commits', early_termination_threshold=2), _fetcher(source))
        self.assertEqual(source.requested, [1, 2, 3])
        self.assertEqual([r['n'] for r in results], [1, 2])

    def test_mixed_page_resets_counter(self):
        old = SINCE - timedelta(days=3)
        source = PagedSource([
            [_item(1, old)],
            [_item(2, SINCE + timedelta(days=1)), _item(3, old)],
            [_item(4, old)],
            [_item(5, old)],
        ])
        fetch_all_pages(None, '', FetchConfig('prs', early_termination_threshold=2), _fetcher(source))
        self.assertEqual(source.requested, [1, 2, 3, 4])

    def test_disabled_early_termination_reads_everything(self):
        old = SINCE - timedelta(days=3)
        source = PagedSource([[_item(1, old)], [_item(2, old)], [_item(3, old)]])
        results = fetch_all_pages(None, '', FetchConfig('comments', early_termination=False), _fetcher(source))
        self.assertEqual(source.requested, [1, 2, 3])
        self.assertEqual(results, [])

    def test_too_new_and_skipped_items_excluded(self):
        source = PagedSource([[_item(1, UNTIL + timedelta(days=1)), _item(2, SINCE), _item(3, SINCE + timedelta(hours=1))]])
        fetcher = _fetcher(source, should_skip=lambda i: i['n'] == 3)
        results = fetch_all_pages(None, '', FetchConfig('issues'), fetcher)
        self.assertEqual([r['n'] for r in results], [2])

    def test_cached_results_are_not_refetched(self):
        cache = MemoryCache(ttl_seconds=60)
        source = PagedSource([[_item(1, SINCE + timedelta(days=1))]])
        first = fetch_all_pages(cache, 'issues:o/r', FetchConfig('issues'), _fetcher(source))
        second = fetch_all_pages(cache, 'issues:o/r', FetchConfig('issues'), _fetcher(source))
        self.assertEqual(first, second)
        self.assertEqual(source.requested, [1])

    def test_report_called_per_page(self):
        messages = []
        source = PagedSource([[_item(1, SINCE)], [_item(2, SINCE)]])
        fetch_all_pages(None, '', FetchConfig('reviews'), _fetcher(source), report=messages.append)
        self.assertEqual(len(messages), 2)

    def test_cancelled_before_first_page(self):
        token = CancelToken()
        token.cancel()
        source = PagedSource([[_item(1, SINCE)]])
        with self.assertRaises(Cancelled):
            fetch_all_pages(None, '', FetchConfig('commits'), _fetcher(source), cancel=token)
        self.assertEqual(source.requested, [])


def _enriching(source, enrich):
    return EnrichingFetcher(source, dict, enrich, lambda i: i['ts'], SINCE, UNTIL)


def test_enrichment_failure_drops_item():
    source = PagedSource([[_item(1, SINCE), _item(2, SINCE), _item(3, SINCE)]])

    def enrich(item):
        if item['n'] == 2:
            raise FetchError('detail endpoint returned 404', status=404)
        return dict(item, detail=True)

    results = fetch_all_pages_with_enrichment(None, '', FetchConfig('commits'), _enriching(source, enrich))
    assert [r['n'] for r in results] == [1, 3]
    assert all(r['detail'] for r in results)


def test_enrichment_exhausted_retries_propagate():
    source = PagedSource([[_item(1, SINCE)]])

    def enrich(item):
        raise RetryExhaustedError('failed after 3 retries: status 503')

    with pytest.raises(RetryExhaustedError):
        fetch_all_pages_with_enrichment(None, '', FetchConfig('commits'), _enriching(source, enrich))


def test_enrichment_skips_items_outside_window():
    calls = []
    source = PagedSource([[_item(1, SINCE - timedelta(days=1)), _item(2, SINCE + timedelta(days=1))]])

    def enrich(item):
        calls.append(item['n'])
        return item

    results = fetch_all_pages_with_enrichment(None, '', FetchConfig('commits'), _enriching(source, enrich))
    assert calls == [2]
    assert [r['n'] for r in results] == [2]
