import threading
import time
import unittest
from datetime import datetime, timezone
from unittest.mock import Mock, patch

from ingest.errors import FetchError
from ingest.github import (
    GitHubClient,
    convert_commit,
    convert_issue,
    convert_issue_comment,
    convert_pull_request,
    convert_review,
    match_pattern,
)
from normalize.models import PR_STATE_CLOSED, PR_STATE_MERGED, Author, PullRequest, Review
from storage.retry import RetryPolicy


def _resp(status, body=None, headers=None):
    resp = Mock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.json.return_value = body if body is not None else []
    resp.text = ''
    return resp


def _client(**kwargs):
    return GitHubClient('', retry_policy=RetryPolicy(max_retries=0, backoff_base=0, backoff_jitter=0), **kwargs)


class TestMatchPattern(unittest.TestCase):
    def test_patterns(self):
        self.assertTrue(match_pattern('anything', '*'))
        self.assertTrue(match_pattern('api', 'api'))
        self.assertFalse(match_pattern('api-v2', 'api'))
        self.assertTrue(match_pattern('api-gateway', 'api-*'))
        self.assertTrue(match_pattern('user-service', '*-service'))
        self.assertTrue(match_pattern('my-core-lib', '*core*'))
        self.assertTrue(match_pattern('dependabot[bot]', '*[bot]'))
        self.assertTrue(match_pattern('svc-a-prod', 'svc-*-prod'))
        self.assertFalse(match_pattern('web', 'api-*'))


class TestConverters(unittest.TestCase):
    def test_commit_skips_doc_files_and_flags_tests(self):
        raw = {
            'sha': 'abc123',
            'html_url': 'https://github.com/o/r/commit/abc123',
            'commit': {
                'message': 'Add parser\n\nlong body',
                'author': {'name': 'Jane Doe', 'email': '12345+janedoe@users.noreply.github.com', 'date': '2024-06-03T10:00:00Z'},
                'committer': {'name': 'GitHub', 'email': 'noreply@github.com', 'date': '2024-06-03T10:00:00Z'},
            },
            'author': None,
            'files': [
                {'filename': 'README.md', 'additions': 50, 'deletions': 0, 'patch': '+docs'},
                {'filename': 'parser.go', 'additions': 2, 'deletions': 1, 'patch': '@@ -1 +1,2 @@\n-old()\n+// note\n+parse()'},
                {'filename': 'parser_test.go', 'additions': 1, 'deletions': 0, 'patch': '+assert()'},
            ],
        }
        commit = convert_commit(raw, 'o/r')
        self.assertEqual(commit.author.login, 'janedoe')
        self.assertEqual(commit.message, 'Add parser')
        self.assertEqual(commit.files_changed, 2)
        self.assertEqual(commit.additions, 3)
        self.assertEqual(commit.deletions, 1)
        self.assertEqual(commit.meaningful_additions, 2)
        self.assertEqual(commit.comment_additions, 1)
        self.assertTrue(commit.has_tests)
        self.assertEqual(commit.date, datetime(2024, 6, 3, 10, tzinfo=timezone.utc))

    def test_pull_request_state_and_timing(self):
        merged = convert_pull_request(
            {'number': 7, 'state': 'closed', 'user': {'login': 'alice'}, 'created_at': '2024-06-01T00:00:00Z', 'merged_at': '2024-06-01T06:00:00Z'},
            'o/r',
        )
        self.assertEqual(merged.state, PR_STATE_MERGED)
        self.assertEqual(merged.time_to_merge, 6 * 3600)
        closed = convert_pull_request({'number': 8, 'state': 'closed', 'user': {'login': 'bob'}, 'created_at': '2024-06-01T00:00:00Z'}, 'o/r')
        self.assertEqual(closed.state, PR_STATE_CLOSED)
        self.assertIsNone(closed.time_to_merge)

    def test_review_response_time(self):
        created = datetime(2024, 6, 1, tzinfo=timezone.utc)
        review = convert_review({'id': 1, 'user': {'login': 'bob'}, 'state': 'approved', 'submitted_at': '2024-06-01T02:00:00Z'}, 'o/r', 7, created)
        self.assertEqual(review.state, 'APPROVED')
        self.assertEqual(review.response_time, 7200)

    def test_issue_and_comment(self):
        issue = convert_issue(
            {
                'number': 3,
                'state': 'closed',
                'user': {'login': 'carol'},
                'closed_by': {'login': 'carol'},
                'created_at': '2024-06-01T00:00:00Z',
                'closed_at': '2024-06-02T00:00:00Z',
                'labels': [{'name': 'bug'}],
            },
            'o/r',
        )
        self.assertTrue(issue.is_closed())
        self.assertEqual(issue.closed_by.login, 'carol')
        self.assertEqual(issue.labels, ['bug'])
        self.assertEqual(issue.time_to_close, 86400)
        comment = convert_issue_comment({'id': 9, 'issue_url': 'https://api.github.com/repos/o/r/issues/3', 'user': {'login': 'dave'}, 'created_at': '2024-06-01T05:00:00Z'}, 'o/r')
        self.assertEqual(comment.issue_number, 3)
        self.assertEqual(comment.author.login, 'dave')


class TestGitHubClientHTTP(unittest.TestCase):
    def test_list_org_repos_falls_back_to_user_repos(self):
        def fake_request(method, url, **kwargs):
            if '/orgs/' in url:
                return _resp(404, {'message': 'Not Found'})
            return _resp(200, [{'name': 'api-gateway'}, {'name': 'web'}, {'name': 'api-core'}])

        with patch('storage.retry.requests.request', side_effect=fake_request):
            names = _client().list_org_repos('someone', 'api-*')
        self.assertEqual(names, ['api-core', 'api-gateway'])

    def test_list_org_repos_other_errors_propagate(self):
        with patch('storage.retry.requests.request', return_value=_resp(401, {'message': 'Bad credentials'})):
            with self.assertRaises(FetchError):
                _client().list_org_repos('acme')

    def test_count_commits_since_reads_last_page(self):
        link = '<https://api.github.com/repos/o/r/commits?since=x&per_page=1&page=2>; rel="next", <https://api.github.com/repos/o/r/commits?since=x&per_page=1&page=42>; rel="last"'
        with patch('storage.retry.requests.request', return_value=_resp(200, [{'sha': 'a'}], {'Link': link})):
            count = _client().count_commits_since('o', 'r', datetime(2024, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(count, 42)

    def test_fetch_issues_skips_pull_requests(self):
        page = [
            {'number': 2, 'state': 'open', 'user': {'login': 'a'}, 'created_at': '2024-06-05T00:00:00Z'},
            {'number': 1, 'state': 'open', 'user': {'login': 'b'}, 'created_at': '2024-06-04T00:00:00Z', 'pull_request': {}},
        ]
        with patch('storage.retry.requests.request', return_value=_resp(200, page)):
            issues = _client().fetch_issues('o', 'r', datetime(2024, 6, 1, tzinfo=timezone.utc), None)
        self.assertEqual([i.number for i in issues], [2])

    def test_user_profiles_are_cached(self):
        calls = []

        def fake_request(method, url, **kwargs):
            calls.append(url)
            login = url.rsplit('/', 1)[-1]
            return _resp(200, {'login': login, 'name': login.title(), 'email': f'{login}@example.com', 'id': len(login)})

        client = _client()
        with patch('storage.retry.requests.request', side_effect=fake_request):
            first = client.fetch_user_profiles(['alice', 'bob', 'alice'])
            second = client.fetch_user_profiles(['alice'])
        self.assertEqual(sorted(first), ['alice', 'bob'])
        self.assertEqual(second['alice'].email, 'alice@example.com')
        self.assertEqual(len(calls), 2)

    def test_no_graphql_without_token(self):
        self.assertFalse(_client().has_graphql())
        self.assertTrue(GitHubClient('tok').has_graphql())
        self.assertFalse(GitHubClient('tok', use_graphql=False).has_graphql())


class BoundedClient(GitHubClient):
    """Records how many review fetches run at once."""

    def __init__(self, concurrency, failing=()):
        super().__init__('', concurrency=concurrency)
        self.failing = set(failing)
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def fetch_reviews(self, owner, name, pr, cancel=None):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(0.02)
            if pr.number in self.failing:
                raise FetchError('status 500')
            return [Review(pr.number * 10, pr.number, 'o/r', Author(login='rev'), 'APPROVED', pr.created_at)]
        finally:
            with self._lock:
                self.in_flight -= 1


def _prs(n):
    created = datetime(2024, 6, 1, tzinfo=timezone.utc)
    return [PullRequest(i, f'PR {i}', PR_STATE_MERGED, Author(login='alice'), 'o/r', created, merged_at=created) for i in range(1, n + 1)]


def test_review_fetch_is_bounded():
    client = BoundedClient(concurrency=3)
    prs, reviews = client.fetch_reviews_for_prs('o', 'r', _prs(12))
    assert client.max_in_flight <= 3
    assert [pr.number for pr in prs] == list(range(1, 13))
    assert len(reviews) == 12
    assert all(pr.time_to_first_review == 0 for pr in prs)


def test_review_fetch_failure_keeps_pr_without_reviews():
    client = BoundedClient(concurrency=2, failing={2})
    prs, reviews = client.fetch_reviews_for_prs('o', 'r', _prs(3))
    assert [len(pr.reviews) for pr in prs] == [1, 0, 1]
    assert len(reviews) == 2
