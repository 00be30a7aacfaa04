import unittest
from datetime import datetime, timedelta, timezone

from normalize.util import (
    extract_login,
    format_timestamp,
    hours,
    noreply_login,
    normalize_for_comparison,
    parse_timestamp,
    slugify_login,
)


class TestTimestamps(unittest.TestCase):
    def test_github_zulu(self):
        self.assertEqual(parse_timestamp('2024-06-03T10:00:00Z'), datetime(2024, 6, 3, 10, tzinfo=timezone.utc))

    def test_git_offset_kept(self):
        dt = parse_timestamp('2024-06-03T10:00:00+09:00')
        self.assertEqual(dt.utcoffset(), timedelta(hours=9))
        self.assertEqual(format_timestamp(dt), '2024-06-03T10:00:00+09:00')

    def test_naive_assumed_utc(self):
        self.assertEqual(parse_timestamp(datetime(2024, 1, 1)).tzinfo, timezone.utc)

    def test_empty(self):
        self.assertIsNone(parse_timestamp(''))
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(format_timestamp(None))


class TestLogins(unittest.TestCase):
    def test_noreply(self):
        self.assertEqual(noreply_login('12345+octocat@users.noreply.github.com'), 'octocat')
        self.assertEqual(noreply_login('octocat@users.noreply.github.com'), 'octocat')
        self.assertEqual(noreply_login('octocat@example.com'), '')

    def test_slug(self):
        self.assertEqual(slugify_login('  Jane Q. Doe '), 'jane-q-doe')
        self.assertEqual(slugify_login(''), '')

    def test_extract_login_prefers_noreply(self):
        self.assertEqual(extract_login('1+jdoe@users.noreply.github.com', 'Jane Doe'), 'jdoe')
        self.assertEqual(extract_login('jane@corp.example', 'Jane Doe'), 'jane-doe')

    def test_comparison_form(self):
        for value in ('Jane Doe', 'jane-doe', 'janedoe'):
            self.assertEqual(normalize_for_comparison(value), 'janedoe')

    def test_hours(self):
        self.assertEqual(hours(7200), 2.0)
        self.assertEqual(hours(None), 0.0)


if __name__ == '__main__':
    unittest.main()
