"""
Run orchestration: ingest -> reconcile -> aggregate -> score.

Per repository the local clone supplies commits while the API supplies pull requests,
reviews, issues and issue comments (GraphQL first, REST when GraphQL fails). Bot
accounts are dropped before anything is merged into the run's RawData.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from aggregate.aggregator import Aggregator
from config import Config, DateRange
from ingest.cancel import CancelToken, ensure_token
from ingest.errors import FetchError, RepositoryError
from ingest.github import GitHubClient
from ingest.localgit import Repository
from normalize.identity import reconcile_raw_data
from normalize.models import GlobalMetrics, RawData, UserProfile
from scoring.calculator import ScoreCalculator
from storage.cache import open_cache

logger = logging.getLogger(__name__)


def _noop_report(message: str):
    pass


class RepoTask:
    """One repository to collect; fatal tasks abort the run when they fail."""

    def __init__(self, owner: str, name: str, fatal: bool):
        self.owner = owner
        self.name = name
        self.fatal = fatal

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class Pipeline:
    def __init__(
        self,
        config: Config,
        client: Optional[GitHubClient] = None,
        repository: Optional[Repository] = None,
        cache=None,
        report: Optional[Callable[[str], None]] = None,
        now: Optional[datetime] = None,
        cancel: Optional[CancelToken] = None,
    ):
        self.config = config
        self.report = report or _noop_report
        self.now = now
        self.cancel = ensure_token(cancel)
        opts = config.options
        if cache is None:
            cache = open_cache(config.cache.enabled, config.cache.directory, config.cache.ttl_seconds())
        self.cache = cache
        self.client = client or GitHubClient(
            config.auth_token,
            cache=cache,
            concurrency=opts.concurrent_requests,
            report=self.report,
            use_graphql=opts.use_graphql,
            early_termination_threshold=opts.early_termination_threshold,
        )
        self.repository = repository or Repository(opts.clone_directory, report=self.report, max_consecutive_old=opts.max_consecutive_old)

    def _now(self) -> datetime:
        return self.now or datetime.now(timezone.utc)

    def _humans(self, items):
        return [item for item in items if not self.config.is_bot(item.author.login)]

    # --- per repository ------------------------------------------------------

    def _clone_depth(self, owner: str, name: str, date_range: DateRange) -> Optional[int]:
        opts = self.config.options
        if not opts.shallow_clone or date_range.start is None:
            return None
        try:
            count = self.client.count_commits_since(owner, name, date_range.start, self.cancel)
        except FetchError as ex:
            logger.warning("%s/%s: commit count for shallow clone failed, cloning in full: %s", owner, name, ex)
            return None
        if count <= 0:
            return None
        depth = count + opts.shallow_clone_buffer
        self.report(f"    Using shallow clone (depth: {depth} = {count} commits + {opts.shallow_clone_buffer} buffer)")
        return depth

    def _prs_and_reviews(self, owner: str, name: str, date_range: DateRange):
        if self.client.has_graphql():
            try:
                return self.client.fetch_prs_with_reviews_graphql(owner, name, date_range.start, date_range.end, self.cancel)
            except FetchError as ex:
                logger.warning("%s/%s: GraphQL pull request fetch failed, falling back to REST: %s", owner, name, ex)
        prs = self.client.fetch_pull_requests(owner, name, date_range.start, date_range.end, self.cancel)
        self.report(f"    Found {len(prs)} pull requests")
        return self.client.fetch_reviews_for_prs(owner, name, prs, self.cancel)

    def _issues_and_comments(self, owner: str, name: str, date_range: DateRange):
        if self.client.has_graphql():
            try:
                return self.client.fetch_issues_with_comments_graphql(owner, name, date_range.start, date_range.end, self.cancel)
            except FetchError as ex:
                logger.warning("%s/%s: GraphQL issue fetch failed, falling back to REST: %s", owner, name, ex)
        issues = self.client.fetch_issues(owner, name, date_range.start, date_range.end, self.cancel)
        self.report(f"    Found {len(issues)} issues")
        try:
            comments = self.client.fetch_issue_comments(owner, name, date_range.start, date_range.end, self.cancel)
        except FetchError as ex:
            logger.warning("%s/%s: failed to fetch issue comments: %s", owner, name, ex)
            comments = []
        return issues, comments

    def collect_repo_data(self, owner: str, name: str, date_range: DateRange) -> RawData:
        """Collect every event of one repository inside the date range."""
        self.cancel.check()
        self.report(f"  Fetching data from {owner}/{name}...")
        depth = self._clone_depth(owner, name, date_range)
        self.repository.ensure_cloned(owner, name, self.config.auth_token, depth=depth, cancel=self.cancel)
        commits = self.repository.fetch_commits(owner, name, date_range.start, date_range.end, self.cancel)

        prs, reviews = self._prs_and_reviews(owner, name, date_range)
        issues, comments = self._issues_and_comments(owner, name, date_range)

        data = RawData(
            commits=self._humans(commits),
            pull_requests=self._humans(prs),
            reviews=self._humans(reviews),
            issues=self._humans(issues),
            issue_comments=self._humans(comments),
        )
        self.report(
            f"    {owner}/{name}: {len(data.commits)} commits, {len(data.pull_requests)} PRs, "
            f"{len(data.reviews)} reviews, {len(data.issues)} issues"
        )
        return data

    # --- whole run -----------------------------------------------------------

    def repo_tasks(self) -> List[RepoTask]:
        """Expand configured repositories; pattern entries list the owner's repositories."""
        tasks: List[RepoTask] = []
        for repo in self.config.repositories:
            if repo.is_pattern():
                names = self.client.list_org_repos(repo.owner, repo.pattern, self.cancel)
                self.report(f"  {repo.owner}/{repo.pattern}: {len(names)} repositories matched")
                tasks.extend(RepoTask(repo.owner, n, fatal=False) for n in names)
            else:
                tasks.append(RepoTask(repo.owner, repo.name, fatal=True))
        return tasks

    def collect_data(self, date_range: DateRange) -> RawData:
        """Collect all repositories, merging their data in configuration order.

        Failures of pattern-matched repositories are logged and skipped; a failing
        explicitly named repository aborts the run. Any abort (fatal failure, Ctrl-C,
        cancellation) cancels the run's token before waiting for running tasks, so
        they stop at their next cancellation check.
        """
        tasks = self.repo_tasks()
        workers = max(1, self.config.options.repo_workers)
        results: Dict[int, RawData] = {}
        executor = ThreadPoolExecutor(max_workers=workers)
        try:
            futures = {executor.submit(self.collect_repo_data, task.owner, task.name, date_range): i for i, task in enumerate(tasks)}
            for future in as_completed(futures):
                index = futures[future]
                task = tasks[index]
                try:
                    results[index] = future.result()
                except (RepositoryError, FetchError) as ex:
                    if task.fatal:
                        raise RepositoryError(f"failed to collect data for {task.full_name}: {ex}") from ex
                    logger.warning("failed to collect data for %s: %s", task.full_name, ex)
        except BaseException:
            self.cancel.cancel()
            raise
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        data = RawData()
        for index in sorted(results):
            data.extend(results[index])
        return data

    def fetch_profiles(self, raw: RawData) -> Dict[str, UserProfile]:
        logins = {pr.author.login for pr in raw.pull_requests if pr.author.login}
        logins.update(r.author.login for r in raw.reviews if r.author.login)
        if not logins:
            return {}
        profiles = self.client.fetch_user_profiles(sorted(logins), self.cancel)
        self.report(f"Fetched {len(profiles)} user profiles")
        return profiles

    def run(self) -> GlobalMetrics:
        cfg = self.config
        date_range = cfg.date_range(self._now())
        self.report("Fetching data from repositories...")
        raw = self.collect_data(date_range)
        self.report(f"Collected {len(raw.commits)} commits, {len(raw.pull_requests)} PRs, {len(raw.reviews)} reviews, {len(raw.issues)} issues")

        profiles = self.fetch_profiles(raw)
        reconciler = reconcile_raw_data(raw, profiles, cfg.options.user_aliases)

        self.report("Aggregating metrics...")
        aggregator = Aggregator(teams=cfg.teams, points=cfg.points, now=self.now)
        gm = aggregator.aggregate(raw, date_range, cfg.granularity, cfg.parsed_custom_periods(), reconciler)

        if cfg.scoring_enabled:
            self.report("Calculating scores and achievements...")
            ScoreCalculator(cfg.points).calculate(gm)
        return gm


def run(config: Config, report: Optional[Callable[[str], None]] = None, cancel: Optional[CancelToken] = None) -> GlobalMetrics:
    return Pipeline(config, report=report, cancel=cancel).run()


__all__ = ["Pipeline", "RepoTask", "run"]
