import time
import unittest
from datetime import datetime, timedelta, timezone

from config import Config, Options, RepositoryConfig
from ingest.cancel import CancelToken, Cancelled
from ingest.errors import FetchError, GraphQLError, RepositoryError
from normalize.models import Author, Commit, Issue, IssueComment, PullRequest, Review, UserProfile
from pipeline import Pipeline
from storage.cache import NoopCache

NOW = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)
DAY = datetime(2024, 6, 4, 10, 0, tzinfo=timezone.utc)


class FakeClient:
    def __init__(self, graphql=True, graphql_fails=False, failing=(), repos=None, commit_count=0):
        self.graphql = graphql
        self.graphql_fails = graphql_fails
        self.failing = set(failing)
        self.repos = repos or {}
        self.commit_count = commit_count
        self.calls = []

    def has_graphql(self):
        return self.graphql

    def _check(self, owner, name):
        if f"{owner}/{name}" in self.failing:
            raise FetchError(f"{owner}/{name} unavailable", status=500)

    def list_org_repos(self, owner, pattern='*', cancel=None):
        self.calls.append(('list', owner, pattern))
        return self.repos.get(owner, [])

    def count_commits_since(self, owner, name, since, cancel=None):
        return self.commit_count

    def _prs(self, owner, name):
        repo = f"{owner}/{name}"
        pr = PullRequest(1, 'Add feature', 'merged', Author(login='alice'), repo, DAY, merged_at=DAY + timedelta(hours=5)).with_derived_fields()
        bot_pr = PullRequest(2, 'Bump deps', 'open', Author(login='dependabot[bot]'), repo, DAY).with_derived_fields()
        review = Review(10, 1, repo, Author(login='bob'), 'APPROVED', DAY + timedelta(hours=2), response_time=7200)
        return [pr, bot_pr], [review]

    def fetch_prs_with_reviews_graphql(self, owner, name, since, until, cancel=None):
        self.calls.append(('graphql_prs', owner, name))
        if self.graphql_fails:
            raise GraphQLError("boom")
        self._check(owner, name)
        return self._prs(owner, name)

    def fetch_pull_requests(self, owner, name, since, until, cancel=None):
        self.calls.append(('rest_prs', owner, name))
        self._check(owner, name)
        return self._prs(owner, name)[0]

    def fetch_reviews_for_prs(self, owner, name, prs, cancel=None):
        return prs, self._prs(owner, name)[1]

    def _issues(self, owner, name):
        repo = f"{owner}/{name}"
        issue = Issue(5, 'Bug', 'open', Author(login='carol'), repo, DAY)
        comment = IssueComment(50, 5, repo, Author(login='alice'), DAY + timedelta(hours=1))
        return [issue], [comment]

    def fetch_issues_with_comments_graphql(self, owner, name, since, until, cancel=None):
        if self.graphql_fails:
            raise GraphQLError("boom")
        return self._issues(owner, name)

    def fetch_issues(self, owner, name, since, until, cancel=None):
        self.calls.append(('rest_issues', owner, name))
        return self._issues(owner, name)[0]

    def fetch_issue_comments(self, owner, name, since, until, cancel=None):
        return self._issues(owner, name)[1]

    def fetch_user_profiles(self, logins, cancel=None):
        self.calls.append(('profiles', tuple(logins)))
        return {login: UserProfile(login, name=login.title()) for login in logins}


class FakeRepository:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.cloned = []

    def ensure_cloned(self, owner, name, token='', depth=None, remote_url=None, cancel=None):
        if f"{owner}/{name}" in self.failing:
            raise RepositoryError(f"clone of {owner}/{name} failed")
        self.cloned.append((owner, name, depth))
        return f"/tmp/{owner}/{name}"

    def fetch_commits(self, owner, name, since=None, until=None, cancel=None):
        repo = f"{owner}/{name}"
        return [
            Commit(f'{name}-1', 'work', Author(login='alice', email='alice@example.com'), None, DAY, repo, additions=10, meaningful_additions=10),
            Commit(f'{name}-2', 'bump', Author(login='renovate[bot]'), None, DAY, repo, additions=1),
        ]


def _config(repositories, **options):
    return Config(auth_token='t', repositories=repositories, date_start='2024-06-01', granularity=['all'], options=Options(**options))


class TestPipeline(unittest.TestCase):
    def _run(self, cfg, client, repository, cancel=None):
        messages = []
        gm = Pipeline(cfg, client=client, repository=repository, cache=NoopCache(), report=messages.append, now=NOW, cancel=cancel).run()
        return gm, messages

    def test_single_repository_run(self):
        client = FakeClient()
        gm, messages = self._run(_config([RepositoryConfig('acme', 'api')]), client, FakeRepository())
        self.assertEqual(sorted(cm.login for cm in gm.contributors), ['alice', 'bob', 'carol'])
        alice = gm.contributor('alice')
        self.assertEqual(alice.commit_count, 1)
        self.assertEqual(alice.prs_merged, 1)
        self.assertEqual(alice.name, 'Alice')
        self.assertEqual(gm.contributor('bob').reviews_given, 1)
        self.assertGreater(alice.score.total, 0)
        self.assertEqual(gm.leaderboard[0].rank, 1)
        self.assertIn(('profiles', ('alice', 'bob')), client.calls)
        self.assertIn('Fetching data from repositories...', messages)

    def test_bots_are_dropped(self):
        gm, _ = self._run(_config([RepositoryConfig('acme', 'api')]), FakeClient(), FakeRepository())
        logins = {cm.login for cm in gm.contributors}
        self.assertNotIn('dependabot[bot]', logins)
        self.assertNotIn('renovate[bot]', logins)
        self.assertEqual(gm.total_commits, 1)

    def test_graphql_failure_falls_back_to_rest(self):
        client = FakeClient(graphql_fails=True)
        gm, _ = self._run(_config([RepositoryConfig('acme', 'api')]), client, FakeRepository())
        kinds = [c[0] for c in client.calls]
        self.assertIn('graphql_prs', kinds)
        self.assertIn('rest_prs', kinds)
        self.assertIn('rest_issues', kinds)
        self.assertEqual(gm.contributor('alice').prs_opened, 1)

    def test_rest_only_client(self):
        client = FakeClient(graphql=False)
        self._run(_config([RepositoryConfig('acme', 'api')]), client, FakeRepository())
        self.assertNotIn('graphql_prs', [c[0] for c in client.calls])

    def test_pattern_failures_are_skipped(self):
        client = FakeClient(repos={'acme': ['web-a', 'web-b']})
        repository = FakeRepository(failing={'acme/web-a'})
        gm, _ = self._run(_config([RepositoryConfig('acme', pattern='web-*')]), client, repository)
        self.assertEqual([r.full_name for r in gm.repositories], ['acme/web-b'])
        self.assertIn(('list', 'acme', 'web-*'), client.calls)

    def test_named_repository_failure_aborts(self):
        client = FakeClient(failing={'acme/api'}, graphql=False)
        with self.assertRaises(RepositoryError) as ctx:
            self._run(_config([RepositoryConfig('acme', 'api')]), client, FakeRepository())
        self.assertIn('acme/api', str(ctx.exception))

    def test_repositories_merged_in_configuration_order(self):
        cfg = _config([RepositoryConfig('acme', 'zeta'), RepositoryConfig('acme', 'alpha')], repo_workers=2)
        pipeline = Pipeline(cfg, client=FakeClient(), repository=FakeRepository(), cache=NoopCache(), now=NOW)
        raw = pipeline.collect_data(cfg.date_range(NOW))
        self.assertEqual([c.sha for c in raw.commits], ['zeta-1', 'alpha-1'])

    def test_shallow_clone_depth(self):
        repository = FakeRepository()
        cfg = _config([RepositoryConfig('acme', 'api')], shallow_clone=True, shallow_clone_buffer=50)
        self._run(cfg, FakeClient(commit_count=42), repository)
        self.assertEqual(repository.cloned, [('acme', 'api', 92)])

    def test_full_clone_without_count(self):
        repository = FakeRepository()
        cfg = _config([RepositoryConfig('acme', 'api')], shallow_clone=True)
        self._run(cfg, FakeClient(commit_count=0), repository)
        self.assertEqual(repository.cloned, [('acme', 'api', None)])

    def test_cancelled_run(self):
        token = CancelToken()
        token.cancel()
        with self.assertRaises(Cancelled):
            self._run(_config([RepositoryConfig('acme', 'api')]), FakeClient(), FakeRepository(), cancel=token)

    def test_fatal_failure_cancels_running_repositories(self):
        class SlowRepository(FakeRepository):
            def ensure_cloned(self, owner, name, token='', depth=None, remote_url=None, cancel=None):
                if name == 'slow':
                    cancel.sleep(30)
                return super().ensure_cloned(owner, name, token, depth, remote_url, cancel)

        token = CancelToken()
        cfg = _config([RepositoryConfig('acme', 'slow'), RepositoryConfig('acme', 'broken')], repo_workers=2)
        pipeline = Pipeline(cfg, client=FakeClient(), repository=SlowRepository(failing={'acme/broken'}), cache=NoopCache(), now=NOW, cancel=token)
        started = time.monotonic()
        with self.assertRaises(RepositoryError) as ctx:
            pipeline.collect_data(cfg.date_range(NOW))
        self.assertLess(time.monotonic() - started, 10)
        self.assertIn('acme/broken', str(ctx.exception))
        self.assertTrue(token.is_cancelled())

    def test_scoring_can_be_disabled(self):
        cfg = _config([RepositoryConfig('acme', 'api')])
        cfg.scoring_enabled = False
        gm, _ = self._run(cfg, FakeClient(), FakeRepository())
        self.assertEqual(gm.leaderboard, [])


if __name__ == '__main__':
    unittest.main()
