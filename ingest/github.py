"""
GitHub REST ingestion client.

Wraps every call in storage.retry.RetryPolicy and routes paginated listings through
ingest.fetcher so results are cached and date-bounded. Converters turn REST payloads
into normalize.models records.
"""
import logging
import queue
import re
import threading
from datetime import datetime
from typing import List, Dict, Any, Optional, Callable, Tuple

from ingest.cancel import CancelToken, Cancelled, ensure_token
from ingest.errors import FetchError
from ingest.fetcher import (
    Page,
    FetchConfig,
    DateFilteredFetcher,
    EnrichingFetcher,
    SimpleFetcher,
    fetch_all_pages,
    fetch_all_pages_with_enrichment,
    DEFAULT_EARLY_TERMINATION_THRESHOLD,
)
from ingest.graphql import GraphQLClient
from normalize.lines import analyze_patch, is_documentation_file, is_test_file, PatchStats
from normalize.models import (
    Author,
    Commit,
    PullRequest,
    Review,
    Issue,
    IssueComment,
    UserProfile,
    PR_STATE_OPEN,
    PR_STATE_CLOSED,
    PR_STATE_MERGED,
)
from normalize.util import parse_timestamp, extract_login, format_timestamp
from storage.cache import NoopCache, MemoryCache
from storage.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.github.com"
DEFAULT_CONCURRENCY = 5
PER_PAGE = 100
BASE_BRANCHES = ('main', 'master', 'develop', 'dev')

_LAST_PAGE = re.compile(r'[?&]page=(\d+)[^>]*>;\s*rel="last"')


def _noop_report(message: str):
    pass


def match_pattern(name: str, pattern: str) -> bool:
    """Simple glob: '*', exact, 'prefix*', '*suffix' and '*contains*'."""
    if pattern in ('', '*'):
        return True
    if '*' not in pattern:
        return name == pattern
    if pattern.startswith('*') and pattern.endswith('*') and len(pattern) > 1:
        return pattern[1:-1] in name
    if pattern.endswith('*'):
        return name.startswith(pattern[:-1])
    if pattern.startswith('*'):
        return name.endswith(pattern[1:])
    prefix, _, suffix = pattern.partition('*')
    return name.startswith(prefix) and name.endswith(suffix) and len(name) >= len(prefix) + len(suffix)


def _iso(ts: Optional[datetime]) -> str:
    return format_timestamp(ts) or ''


# --- converters -------------------------------------------------------------

def convert_user(raw: Optional[Dict[str, Any]]) -> Author:
    raw = raw or {}
    return Author(login=raw.get('login') or '', name=raw.get('name') or '', email=raw.get('email') or '', avatar_url=raw.get('avatar_url') or '', id=raw.get('id'))


def _git_identity(git_person: Dict[str, Any], platform_user: Optional[Dict[str, Any]]) -> Author:
    name = git_person.get('name') or ''
    email = git_person.get('email') or ''
    platform_user = platform_user or {}
    login = platform_user.get('login') or extract_login(email, name)
    return Author(login=login, name=name, email=email, avatar_url=platform_user.get('avatar_url') or '', id=platform_user.get('id'))


def _file_stats(files: List[Dict[str, Any]]) -> Tuple[PatchStats, int, bool, int, int]:
    stats = PatchStats()
    counted = 0
    additions = deletions = 0
    has_tests = False
    for f in files or []:
        path = f.get('filename') or ''
        if is_test_file(path):
            has_tests = True
        if is_documentation_file(path):
            continue
        counted += 1
        additions += int(f.get('additions') or 0)
        deletions += int(f.get('deletions') or 0)
        stats.add(analyze_patch(f.get('patch') or ''))
    return stats, counted, has_tests, additions, deletions


def convert_commit(raw: Dict[str, Any], repository: str) -> Commit:
    """Convert a REST commit detail payload (with files) into a Commit."""
    git = raw.get('commit') or {}
    git_author = git.get('author') or {}
    git_committer = git.get('committer') or {}
    stats, counted, has_tests, additions, deletions = _file_stats(raw.get('files') or [])
    return Commit(
        sha=raw.get('sha', ''),
        message=git.get('message', ''),
        author=_git_identity(git_author, raw.get('author')),
        committer=_git_identity(git_committer, raw.get('committer')),
        date=parse_timestamp(git_author.get('date') or git_committer.get('date')),
        repository=repository,
        additions=additions,
        deletions=deletions,
        files_changed=counted,
        url=raw.get('html_url') or '',
        meaningful_additions=stats.meaningful_additions,
        meaningful_deletions=stats.meaningful_deletions,
        comment_additions=stats.comment_additions,
        comment_deletions=stats.comment_deletions,
        has_tests=has_tests,
    )


def convert_pull_request(raw: Dict[str, Any], repository: str) -> PullRequest:
    merged_at = parse_timestamp(raw.get('merged_at'))
    if merged_at is not None:
        state = PR_STATE_MERGED
    elif (raw.get('state') or '').lower() == 'closed':
        state = PR_STATE_CLOSED
    else:
        state = PR_STATE_OPEN
    pr = PullRequest(
        number=raw.get('number'),
        title=raw.get('title') or '',
        state=state,
        author=convert_user(raw.get('user')),
        repository=repository,
        created_at=parse_timestamp(raw.get('created_at')),
        updated_at=parse_timestamp(raw.get('updated_at')),
        merged_at=merged_at,
        closed_at=parse_timestamp(raw.get('closed_at')),
        base_branch=(raw.get('base') or {}).get('ref', ''),
        head_branch=(raw.get('head') or {}).get('ref', ''),
        additions=int(raw.get('additions') or 0),
        deletions=int(raw.get('deletions') or 0),
        files_changed=int(raw.get('changed_files') or 0),
        commit_count=int(raw.get('commits') or 0),
        comments=int(raw.get('comments') or 0) + int(raw.get('review_comments') or 0),
        url=raw.get('html_url') or '',
    )
    return pr.with_derived_fields()


def convert_review(raw: Dict[str, Any], repository: str, pr_number: int, pr_created_at: Optional[datetime] = None) -> Review:
    submitted_at = parse_timestamp(raw.get('submitted_at'))
    response_time = None
    if submitted_at is not None and pr_created_at is not None:
        response_time = (submitted_at - pr_created_at).total_seconds()
    return Review(
        id=raw.get('id'),
        pull_request=pr_number,
        repository=repository,
        author=convert_user(raw.get('user')),
        state=raw.get('state') or '',
        submitted_at=submitted_at,
        body=raw.get('body') or '',
        comments_count=int(raw.get('comments_count') or 0),
        response_time=response_time,
    )


def convert_issue(raw: Dict[str, Any], repository: str) -> Issue:
    closed_by = raw.get('closed_by')
    issue = Issue(
        number=raw.get('number'),
        title=raw.get('title') or '',
        state=raw.get('state') or 'open',
        author=convert_user(raw.get('user')),
        repository=repository,
        created_at=parse_timestamp(raw.get('created_at')),
        updated_at=parse_timestamp(raw.get('updated_at')),
        closed_at=parse_timestamp(raw.get('closed_at')),
        closed_by=convert_user(closed_by) if closed_by else None,
        labels=[lbl.get('name', '') for lbl in raw.get('labels') or [] if isinstance(lbl, dict)],
        comments=int(raw.get('comments') or 0),
        url=raw.get('html_url') or '',
    )
    return issue.replace(time_to_close=issue.calculate_time_to_close())


def _issue_number_from_url(issue_url: str) -> int:
    try:
        return int((issue_url or '').rstrip('/').rsplit('/', 1)[-1])
    except ValueError:
        return 0


def convert_issue_comment(raw: Dict[str, Any], repository: str) -> IssueComment:
    return IssueComment(
        id=raw.get('id'),
        issue_number=_issue_number_from_url(raw.get('issue_url') or ''),
        repository=repository,
        author=convert_user(raw.get('user')),
        created_at=parse_timestamp(raw.get('created_at')),
        body=raw.get('body') or '',
        url=raw.get('html_url') or '',
    )


def convert_profile(raw: Dict[str, Any]) -> UserProfile:
    return UserProfile(login=raw.get('login') or '', name=raw.get('name') or '', email=raw.get('email') or '', avatar_url=raw.get('avatar_url') or '', id=raw.get('id'))


# --- client -----------------------------------------------------------------

class GitHubClient:
    """GitHub REST client with caching, early termination and bounded concurrency."""

    def __init__(
        self,
        token: str,
        base_url: Optional[str] = None,
        cache=None,
        concurrency: int = DEFAULT_CONCURRENCY,
        report: Optional[Callable[[str], None]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        graphql_url: Optional[str] = None,
        use_graphql: bool = True,
        early_termination_threshold: int = DEFAULT_EARLY_TERMINATION_THRESHOLD,
        profile_cache=None,
    ):
        self.token = token
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip('/')
        self.headers = {
            "Authorization": f"Bearer {self.token}" if self.token else "",
            "Accept": "application/vnd.github+json",
        }
        self.cache = cache if cache is not None else NoopCache()
        self.profile_cache = profile_cache if profile_cache is not None else MemoryCache()
        self.concurrency = max(1, int(concurrency or DEFAULT_CONCURRENCY))
        self.report = report or _noop_report
        self.retry_policy = retry_policy or RetryPolicy()
        self.early_termination_threshold = early_termination_threshold
        self.graphql: Optional[GraphQLClient] = None
        if self.token and use_graphql:
            self.graphql = GraphQLClient(
                self.token,
                url=graphql_url,
                cache=self.cache,
                retry_policy=self.retry_policy,
                report=self.report,
                early_termination_threshold=early_termination_threshold,
            )

    def has_graphql(self) -> bool:
        return self.graphql is not None

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None, cancel: Optional[CancelToken] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        res = self.retry_policy.request('GET', url, headers=self.headers, params=params, cancel=cancel)
        status = res.get('status', 0)
        if status != 200:
            raise FetchError(f"GET {path} returned status {status}", status=status)
        return res

    def _page_loader(self, path: str, params: Dict[str, Any], cancel: Optional[CancelToken]) -> Callable[[Any], Page]:
        def load(page: int) -> Page:
            data = self._get(path, dict(params, page=page, per_page=PER_PAGE), cancel).get('response') or []
            return Page(data, has_next=len(data) >= PER_PAGE, next_token=page + 1)

        return load

    def _config(self, resource: str, early_termination: bool = True) -> FetchConfig:
        return FetchConfig(resource, early_termination=early_termination, early_termination_threshold=self.early_termination_threshold)

    # repositories

    def list_org_repos(self, owner: str, pattern: str = '*', cancel: Optional[CancelToken] = None) -> List[str]:
        """Return repository names of an organisation (or user) matching a glob pattern, sorted."""
        def list_under(path: str) -> List[Dict[str, Any]]:
            fetcher = SimpleFetcher(self._page_loader(path, {'type': 'all'}, cancel), convert=lambda r: r.get('name') or '')
            return fetch_all_pages(self.cache, f"repos:{owner}", self._config('repositories', early_termination=False), fetcher, self.report, cancel)

        try:
            names = list_under(f"/orgs/{owner}/repos")
        except FetchError as ex:
            if ex.status != 404:
                raise
            names = list_under(f"/users/{owner}/repos")
        return sorted(n for n in names if n and match_pattern(n, pattern))

    def count_commits_since(self, owner: str, name: str, since: datetime, cancel: Optional[CancelToken] = None) -> int:
        """Number of commits on the default branch since a date, read from the Link header."""
        res = self._get(f"/repos/{owner}/{name}/commits", {'since': _iso(since), 'per_page': 1}, cancel)
        link = (res.get('headers') or {}).get('Link') or ''
        m = _LAST_PAGE.search(link)
        if m:
            return int(m.group(1))
        return len(res.get('response') or [])

    # commits

    def fetch_commits(self, owner: str, name: str, since: Optional[datetime], until: Optional[datetime], cancel: Optional[CancelToken] = None) -> List[Commit]:
        """Commits via REST, one detail call per commit for line statistics."""
        repo = f"{owner}/{name}"
        params: Dict[str, Any] = {}
        if since:
            params['since'] = _iso(since)
        if until:
            params['until'] = _iso(until)
        fetcher = EnrichingFetcher(
            self._page_loader(f"/repos/{repo}/commits", params, cancel),
            convert=lambda raw: convert_commit(raw, repo),
            enrich=lambda item: self._get(f"/repos/{repo}/commits/{item.get('sha')}", cancel=cancel).get('response') or {},
            date_of=lambda item: parse_timestamp(((item.get('commit') or {}).get('author') or {}).get('date')),
            since=since,
            until=until,
            from_cache=Commit.from_dict,
        )
        key = f"commits:{repo}:{_iso(since)}:{_iso(until)}"
        return fetch_all_pages_with_enrichment(self.cache, key, self._config('commits', early_termination=False), fetcher, self.report, cancel)

    # pull requests and reviews

    def fetch_pull_requests(self, owner: str, name: str, since: Optional[datetime], until: Optional[datetime], cancel: Optional[CancelToken] = None) -> List[PullRequest]:
        """Merged pull requests into the usual base branches, filtered by merge date."""
        repo = f"{owner}/{name}"
        seen = set()
        prs: List[PullRequest] = []
        for base in BASE_BRANCHES:
            params = {'state': 'closed', 'base': base, 'sort': 'updated', 'direction': 'desc'}
            fetcher = DateFilteredFetcher(
                self._page_loader(f"/repos/{repo}/pulls", params, cancel),
                convert=lambda raw: convert_pull_request(raw, repo),
                date_of=lambda raw: parse_timestamp(raw.get('merged_at')),
                since=since,
                until=until,
                from_cache=PullRequest.from_dict,
                should_skip=lambda raw: not raw.get('merged_at'),
            )
            key = f"prs:{repo}:{base}:{_iso(since)}:{_iso(until)}"
            for pr in fetch_all_pages(self.cache, key, self._config(f'pull requests ({base})'), fetcher, self.report, cancel):
                if pr.number not in seen:
                    seen.add(pr.number)
                    prs.append(pr)
        return prs

    def fetch_reviews(self, owner: str, name: str, pr: PullRequest, cancel: Optional[CancelToken] = None) -> List[Review]:
        repo = f"{owner}/{name}"
        fetcher = SimpleFetcher(
            self._page_loader(f"/repos/{repo}/pulls/{pr.number}/reviews", {}, cancel),
            convert=lambda raw: convert_review(raw, repo, pr.number, pr.created_at),
            from_cache=Review.from_dict,
        )
        config = FetchConfig(f'reviews #{pr.number}', early_termination=False, quiet=True)
        return fetch_all_pages(self.cache, f"reviews:{repo}:{pr.number}", config, fetcher, self.report, cancel)

    def _run_bounded(self, items: List[Any], fn: Callable[[Any], Any], cancel: CancelToken) -> List[Tuple[Any, Any, Optional[FetchError]]]:
        """Run ``fn`` over items with at most ``concurrency`` calls in flight.

        Results come back through a queue sized to the item count, so no worker blocks
        handing off its result. Returns (item, result, fetch_error) in input order.
        Cancellation and unexpected errors are re-raised once every worker finished.
        """
        gate = threading.Semaphore(self.concurrency)
        done: "queue.Queue" = queue.Queue(maxsize=len(items))

        def worker(index: int, item: Any):
            with gate:
                try:
                    cancel.check()
                    done.put((index, fn(item), None))
                except Exception as ex:
                    done.put((index, None, ex))

        threads = [threading.Thread(target=worker, args=(i, item), daemon=True) for i, item in enumerate(items)]
        for t in threads:
            t.start()
        outcomes: Dict[int, Tuple[Any, Optional[Exception]]] = {}
        for _ in items:
            index, result, err = done.get()
            outcomes[index] = (result, err)
        for t in threads:
            t.join()

        fatal = [err for _, err in outcomes.values() if err is not None and not isinstance(err, FetchError)]
        cancelled = [err for err in fatal if isinstance(err, Cancelled)]
        if cancelled:
            raise cancelled[0]
        if fatal:
            raise fatal[0]
        return [(item, outcomes[i][0], outcomes[i][1]) for i, item in enumerate(items)]

    def fetch_reviews_for_prs(self, owner: str, name: str, prs: List[PullRequest], cancel: Optional[CancelToken] = None) -> Tuple[List[PullRequest], List[Review]]:
        """Fetch reviews for many PRs with bounded concurrency.

        Returns the PRs with reviews attached (and derived review timings) plus the flat
        review list, both in input order. A PR whose reviews cannot be fetched keeps an
        empty review list and a warning is logged.
        """
        cancel = ensure_token(cancel)
        with_reviews: List[PullRequest] = []
        all_reviews: List[Review] = []
        for pr, reviews, err in self._run_bounded(prs, lambda p: self.fetch_reviews(owner, name, p, cancel), cancel):
            if err is not None:
                logger.warning("failed to fetch reviews for %s/%s#%s: %s", owner, name, pr.number, err)
                reviews = []
            all_reviews.extend(reviews)
            with_reviews.append(pr.replace(reviews=list(reviews)).with_derived_fields())
        self.report(f"    Found {len(all_reviews)} reviews (REST)")
        return with_reviews, all_reviews

    # issues

    def fetch_issues(self, owner: str, name: str, since: Optional[datetime], until: Optional[datetime], cancel: Optional[CancelToken] = None) -> List[Issue]:
        repo = f"{owner}/{name}"
        params = {'state': 'all', 'sort': 'created', 'direction': 'desc'}
        fetcher = DateFilteredFetcher(
            self._page_loader(f"/repos/{repo}/issues", params, cancel),
            convert=lambda raw: convert_issue(raw, repo),
            date_of=lambda raw: parse_timestamp(raw.get('created_at')),
            since=since,
            until=until,
            from_cache=Issue.from_dict,
            should_skip=lambda raw: 'pull_request' in raw,
        )
        key = f"issues:{repo}:{_iso(since)}:{_iso(until)}"
        return fetch_all_pages(self.cache, key, self._config('issues'), fetcher, self.report, cancel)

    def fetch_issue_comments(self, owner: str, name: str, since: Optional[datetime], until: Optional[datetime], cancel: Optional[CancelToken] = None) -> List[IssueComment]:
        repo = f"{owner}/{name}"
        params: Dict[str, Any] = {'sort': 'created', 'direction': 'asc'}
        if since:
            params['since'] = _iso(since)
        fetcher = DateFilteredFetcher(
            self._page_loader(f"/repos/{repo}/issues/comments", params, cancel),
            convert=lambda raw: convert_issue_comment(raw, repo),
            date_of=lambda raw: parse_timestamp(raw.get('created_at')),
            since=since,
            until=until,
            from_cache=IssueComment.from_dict,
        )
        key = f"issue_comments:{repo}:{_iso(since)}:{_iso(until)}"
        # ascending order: the date-based early stop would cut off the newest comments
        return fetch_all_pages(self.cache, key, self._config('issue comments', early_termination=False), fetcher, self.report, cancel)

    # user profiles

    def fetch_user_profile(self, login: str, cancel: Optional[CancelToken] = None) -> UserProfile:
        key = f"user_profile_{login}"
        for store in (self.profile_cache, self.cache):
            value, found = store.get(key)
            if found:
                return UserProfile.from_dict(value)
        profile = convert_profile(self._get(f"/users/{login}", cancel=cancel).get('response') or {})
        self.cache.set(key, profile.to_dict())
        self.profile_cache.set(key, profile.to_dict())
        return profile

    def fetch_user_profiles(self, logins: List[str], cancel: Optional[CancelToken] = None) -> Dict[str, UserProfile]:
        """Fetch public profiles for logins with bounded concurrency. Failures are logged and skipped."""
        cancel = ensure_token(cancel)
        unique = sorted({login for login in logins if login})
        profiles: Dict[str, UserProfile] = {}
        for login, profile, err in self._run_bounded(unique, lambda lg: self.fetch_user_profile(lg, cancel), cancel):
            if err is not None:
                logger.warning("failed to fetch profile for %s: %s", login, err)
                continue
            profiles[login] = profile
        return profiles

    # graphql strategy

    def fetch_prs_with_reviews_graphql(self, owner: str, name: str, since: Optional[datetime], until: Optional[datetime], cancel: Optional[CancelToken] = None) -> Tuple[List[PullRequest], List[Review]]:
        if self.graphql is None:
            raise FetchError("GraphQL is not configured")
        return self.graphql.fetch_prs_with_reviews(owner, name, since, until, cancel)

    def fetch_issues_with_comments_graphql(self, owner: str, name: str, since: Optional[datetime], until: Optional[datetime], cancel: Optional[CancelToken] = None) -> Tuple[List[Issue], List[IssueComment]]:
        if self.graphql is None:
            raise FetchError("GraphQL is not configured")
        return self.graphql.fetch_issues_with_comments(owner, name, since, until, cancel)


__all__ = [
    "GitHubClient",
    "match_pattern",
    "convert_commit",
    "convert_pull_request",
    "convert_review",
    "convert_issue",
    "convert_issue_comment",
    "convert_profile",
]
