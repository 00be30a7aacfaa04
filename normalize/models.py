"""
Unified data models for contribution records and aggregated metrics.

Fetched and extracted records (Commit, PullRequest, Review, Issue, IssueComment)
are treated as read-only once their derived fields have been computed; later
stages copy rather than mutate them. Every model can be flattened with
``to_dict()`` into nested dicts/lists of primitives for the rendering layer.
"""

import copy
from datetime import datetime
from typing import List, Optional, Dict, Any

from normalize.util import parse_timestamp, format_timestamp

PR_STATE_OPEN = 'open'
PR_STATE_CLOSED = 'closed'
PR_STATE_MERGED = 'merged'

ISSUE_STATE_OPEN = 'open'
ISSUE_STATE_CLOSED = 'closed'

REVIEW_APPROVED = 'APPROVED'
REVIEW_CHANGES_REQUESTED = 'CHANGES_REQUESTED'
REVIEW_COMMENTED = 'COMMENTED'
REVIEW_PENDING = 'PENDING'
REVIEW_DISMISSED = 'DISMISSED'

REVIEW_STATES = (REVIEW_APPROVED, REVIEW_CHANGES_REQUESTED, REVIEW_COMMENTED, REVIEW_PENDING, REVIEW_DISMISSED)

# PRs below this many changed lines count as "small"
SMALL_PR_THRESHOLD = 100


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if hasattr(value, 'to_dict'):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_serialize(v) for v in value]
    return value


class Record:
    """Base for plain attribute records: generic to_dict/copy/equality."""

    def to_dict(self) -> Dict[str, Any]:
        return {k: _serialize(v) for k, v in vars(self).items()}

    def replace(self, **changes):
        """Return a shallow copy with some attributes replaced."""
        clone = copy.copy(self)
        for k, v in changes.items():
            setattr(clone, k, v)
        return clone

    def __eq__(self, other):
        return type(self) is type(other) and vars(self) == vars(other)

    def __repr__(self):
        fields = ', '.join(f"{k}={v!r}" for k, v in list(vars(self).items())[:4])
        return f"{type(self).__name__}({fields})"


class Author(Record):
    """A raw or reconciled identity. login may be empty for pure-git authors."""

    def __init__(self, login: str = '', name: str = '', email: str = '', avatar_url: str = '', id: Optional[int] = None):
        self.id = id
        self.login = login or ''
        self.name = name or ''
        self.email = email or ''
        self.avatar_url = avatar_url or ''

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> 'Author':
        raw = raw or {}
        return cls(login=raw.get('login', ''), name=raw.get('name', ''), email=raw.get('email', ''), avatar_url=raw.get('avatar_url', ''), id=raw.get('id'))


class UserProfile(Record):
    """Public GitHub profile, used to match commit emails/names to logins."""

    def __init__(self, login: str, name: str = '', email: str = '', avatar_url: str = '', id: Optional[int] = None):
        self.id = id
        self.login = login
        self.name = name or ''
        self.email = email or ''
        self.avatar_url = avatar_url or ''

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'UserProfile':
        return cls(login=raw.get('login', ''), name=raw.get('name', ''), email=raw.get('email', ''), avatar_url=raw.get('avatar_url', ''), id=raw.get('id'))


class Commit(Record):
    def __init__(
        self,
        sha: str,
        message: str,
        author: Author,
        committer: Optional[Author],
        date: datetime,
        repository: str,
        additions: int = 0,
        deletions: int = 0,
        files_changed: int = 0,
        url: str = '',
        meaningful_additions: int = 0,
        meaningful_deletions: int = 0,
        comment_additions: int = 0,
        comment_deletions: int = 0,
        has_tests: bool = False,
    ):
        self.sha = sha
        self.message = (message or '').split('\n', 1)[0]
        self.author = author
        self.committer = committer or author
        self.date = date
        self.repository = repository
        self.additions = additions
        self.deletions = deletions
        self.files_changed = files_changed
        self.url = url
        self.meaningful_additions = meaningful_additions
        self.meaningful_deletions = meaningful_deletions
        self.comment_additions = comment_additions
        self.comment_deletions = comment_deletions
        self.has_tests = has_tests

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'Commit':
        return cls(
            sha=raw['sha'],
            message=raw.get('message', ''),
            author=Author.from_dict(raw.get('author')),
            committer=Author.from_dict(raw.get('committer')),
            date=parse_timestamp(raw.get('date')),
            repository=raw.get('repository', ''),
            additions=raw.get('additions', 0),
            deletions=raw.get('deletions', 0),
            files_changed=raw.get('files_changed', 0),
            url=raw.get('url', ''),
            meaningful_additions=raw.get('meaningful_additions', 0),
            meaningful_deletions=raw.get('meaningful_deletions', 0),
            comment_additions=raw.get('comment_additions', 0),
            comment_deletions=raw.get('comment_deletions', 0),
            has_tests=bool(raw.get('has_tests', False)),
        )


class Review(Record):
    def __init__(
        self,
        id: int,
        pull_request: int,
        repository: str,
        author: Author,
        state: str,
        submitted_at: Optional[datetime],
        body: str = '',
        comments_count: int = 0,
        response_time: Optional[float] = None,
    ):
        self.id = id
        self.pull_request = pull_request
        self.repository = repository
        self.author = author
        self.state = (state or '').upper()
        self.submitted_at = submitted_at
        self.body = body or ''
        self.comments_count = comments_count
        self.response_time = response_time  # seconds from PR creation

    def is_approval(self) -> bool:
        return self.state == REVIEW_APPROVED

    def requests_changes(self) -> bool:
        return self.state == REVIEW_CHANGES_REQUESTED

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'Review':
        return cls(
            id=raw.get('id'),
            pull_request=raw.get('pull_request'),
            repository=raw.get('repository', ''),
            author=Author.from_dict(raw.get('author')),
            state=raw.get('state', ''),
            submitted_at=parse_timestamp(raw.get('submitted_at')),
            body=raw.get('body', ''),
            comments_count=raw.get('comments_count', 0),
            response_time=raw.get('response_time'),
        )


class PullRequest(Record):
    def __init__(
        self,
        number: int,
        title: str,
        state: str,
        author: Author,
        repository: str,
        created_at: datetime,
        updated_at: Optional[datetime] = None,
        merged_at: Optional[datetime] = None,
        closed_at: Optional[datetime] = None,
        base_branch: str = '',
        head_branch: str = '',
        additions: int = 0,
        deletions: int = 0,
        files_changed: int = 0,
        commit_count: int = 0,
        comments: int = 0,
        reviews: Optional[List[Review]] = None,
        url: str = '',
        time_to_merge: Optional[float] = None,
        time_to_first_review: Optional[float] = None,
    ):
        self.number = number
        self.title = title
        self.state = state
        self.author = author
        self.repository = repository
        self.base_branch = base_branch
        self.head_branch = head_branch
        self.created_at = created_at
        self.updated_at = updated_at
        self.merged_at = merged_at
        self.closed_at = closed_at
        self.additions = additions
        self.deletions = deletions
        self.files_changed = files_changed
        self.commit_count = commit_count
        self.comments = comments
        self.reviews = reviews or []
        self.url = url
        self.time_to_merge = time_to_merge
        self.time_to_first_review = time_to_first_review

    def is_merged(self) -> bool:
        return self.state == PR_STATE_MERGED or self.merged_at is not None

    def total_changes(self) -> int:
        return self.additions + self.deletions

    def calculate_time_to_merge(self) -> Optional[float]:
        if self.merged_at is None or self.created_at is None:
            return None
        return (self.merged_at - self.created_at).total_seconds()

    def calculate_time_to_first_review(self) -> Optional[float]:
        submitted = [r.submitted_at for r in self.reviews if r.submitted_at is not None]
        if not submitted or self.created_at is None:
            return None
        return (min(submitted) - self.created_at).total_seconds()

    def with_derived_fields(self) -> 'PullRequest':
        """Return a copy with time_to_merge/time_to_first_review filled in."""
        return self.replace(time_to_merge=self.calculate_time_to_merge(), time_to_first_review=self.calculate_time_to_first_review())

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'PullRequest':
        return cls(
            number=raw['number'],
            title=raw.get('title', ''),
            state=raw.get('state', PR_STATE_OPEN),
            author=Author.from_dict(raw.get('author')),
            repository=raw.get('repository', ''),
            created_at=parse_timestamp(raw.get('created_at')),
            updated_at=parse_timestamp(raw.get('updated_at')),
            merged_at=parse_timestamp(raw.get('merged_at')),
            closed_at=parse_timestamp(raw.get('closed_at')),
            base_branch=raw.get('base_branch', ''),
            head_branch=raw.get('head_branch', ''),
            additions=raw.get('additions', 0),
            deletions=raw.get('deletions', 0),
            files_changed=raw.get('files_changed', 0),
            commit_count=raw.get('commit_count', 0),
            comments=raw.get('comments', 0),
            reviews=[Review.from_dict(r) for r in raw.get('reviews') or []],
            url=raw.get('url', ''),
            time_to_merge=raw.get('time_to_merge'),
            time_to_first_review=raw.get('time_to_first_review'),
        )


class Issue(Record):
    def __init__(
        self,
        number: int,
        title: str,
        state: str,
        author: Author,
        repository: str,
        created_at: datetime,
        updated_at: Optional[datetime] = None,
        closed_at: Optional[datetime] = None,
        closed_by: Optional[Author] = None,
        labels: Optional[List[str]] = None,
        comments: int = 0,
        url: str = '',
        time_to_close: Optional[float] = None,
    ):
        self.number = number
        self.title = title
        self.state = (state or ISSUE_STATE_OPEN).lower()
        self.author = author
        self.repository = repository
        self.created_at = created_at
        self.updated_at = updated_at
        self.closed_at = closed_at
        self.closed_by = closed_by
        self.labels = labels or []
        self.comments = comments
        self.url = url
        self.time_to_close = time_to_close

    def is_closed(self) -> bool:
        return self.state == ISSUE_STATE_CLOSED

    def calculate_time_to_close(self) -> Optional[float]:
        if self.closed_at is None or self.created_at is None:
            return None
        return (self.closed_at - self.created_at).total_seconds()

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'Issue':
        closed_by = raw.get('closed_by')
        return cls(
            number=raw['number'],
            title=raw.get('title', ''),
            state=raw.get('state', ISSUE_STATE_OPEN),
            author=Author.from_dict(raw.get('author')),
            repository=raw.get('repository', ''),
            created_at=parse_timestamp(raw.get('created_at')),
            updated_at=parse_timestamp(raw.get('updated_at')),
            closed_at=parse_timestamp(raw.get('closed_at')),
            closed_by=Author.from_dict(closed_by) if closed_by else None,
            labels=list(raw.get('labels') or []),
            comments=raw.get('comments', 0),
            url=raw.get('url', ''),
            time_to_close=raw.get('time_to_close'),
        )


class IssueComment(Record):
    def __init__(self, id: int, issue_number: int, repository: str, author: Author, created_at: datetime, body: str = '', url: str = ''):
        self.id = id
        self.issue_number = issue_number
        self.repository = repository
        self.author = author
        self.created_at = created_at
        self.body = body or ''
        self.url = url

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'IssueComment':
        return cls(
            id=raw.get('id'),
            issue_number=raw.get('issue_number'),
            repository=raw.get('repository', ''),
            author=Author.from_dict(raw.get('author')),
            created_at=parse_timestamp(raw.get('created_at')),
            body=raw.get('body', ''),
            url=raw.get('url', ''),
        )


class RawData(Record):
    """All events collected for a run, before aggregation."""

    def __init__(self, commits=None, pull_requests=None, reviews=None, issues=None, issue_comments=None):
        self.commits: List[Commit] = list(commits or [])
        self.pull_requests: List[PullRequest] = list(pull_requests or [])
        self.reviews: List[Review] = list(reviews or [])
        self.issues: List[Issue] = list(issues or [])
        self.issue_comments: List[IssueComment] = list(issue_comments or [])

    def extend(self, other: 'RawData'):
        self.commits.extend(other.commits)
        self.pull_requests.extend(other.pull_requests)
        self.reviews.extend(other.reviews)
        self.issues.extend(other.issues)
        self.issue_comments.extend(other.issue_comments)


class Period(Record):
    def __init__(self, start: Optional[datetime], end: Optional[datetime], granularity: str = 'all', label: str = 'All Time'):
        self.start = start
        self.end = end
        self.granularity = granularity
        self.label = label

    def contains(self, ts: Optional[datetime]) -> bool:
        if ts is None:
            return False
        if self.start is not None and ts < self.start:
            return False
        if self.end is not None and ts > self.end:
            return False
        return True


class ScoreBreakdown(Record):
    def __init__(self, commits=0.0, prs=0.0, reviews=0.0, comments=0.0, line_changes=0.0, response_bonus=0.0, out_of_hours=0.0, issues=0.0, tests_bonus=0.0):
        self.commits = commits
        self.prs = prs
        self.reviews = reviews
        self.comments = comments
        self.line_changes = line_changes
        self.response_bonus = response_bonus
        self.out_of_hours = out_of_hours
        self.issues = issues
        self.tests_bonus = tests_bonus

    def total(self) -> float:
        return sum(float(v) for v in vars(self).values())


class Score(Record):
    def __init__(self, total: float = 0.0, breakdown: Optional[ScoreBreakdown] = None, rank: int = 0, percentile_rank: float = 0.0):
        self.total = total
        self.breakdown = breakdown or ScoreBreakdown()
        self.rank = rank
        self.percentile_rank = percentile_rank


# counters that are plain sums when rolling contributors up into a team
SUMMABLE_COUNTERS = (
    'commit_count',
    'lines_added',
    'lines_deleted',
    'meaningful_lines_added',
    'meaningful_lines_deleted',
    'comment_lines_added',
    'comment_lines_deleted',
    'files_changed',
    'commits_with_tests',
    'prs_opened',
    'prs_merged',
    'prs_closed',
    'reviews_given',
    'review_comments',
    'approvals_given',
    'changes_requested',
    'small_pr_count',
    'perfect_prs',
    'issues_opened',
    'issues_closed',
    'issue_comments',
    'early_bird_count',
    'night_owl_count',
    'midnight_count',
    'weekend_count',
    'out_of_hours_count',
)


class ContributorMetrics(Record):
    """Counters for one canonical contributor in one period and scope ('' repository = global)."""

    def __init__(self, login: str, name: str = '', avatar_url: str = '', period: Optional[Period] = None, repository: str = ''):
        self.login = login
        self.name = name or login
        self.avatar_url = avatar_url or ''
        self.period = period
        self.repository = repository
        for counter in SUMMABLE_COUNTERS:
            setattr(self, counter, 0)
        self.unique_reviewees = 0
        self.avg_pr_size = 0.0
        self.avg_time_to_merge = 0.0
        self.avg_review_time = 0.0
        self.largest_pr_size = 0
        self.repositories_contributed: List[str] = []
        self.active_days = 0
        self.longest_streak = 0
        self.current_streak = 0
        self.work_week_streak = 0
        self.score = Score()
        self.achievements: List[str] = []
        self.top_category = ''

    def repo_count(self) -> int:
        return len(self.repositories_contributed)


class RepositoryMetrics(Record):
    def __init__(self, owner: str, name: str, period: Optional[Period] = None):
        self.owner = owner
        self.name = name
        self.full_name = f"{owner}/{name}" if owner else name
        self.period = period
        self.total_commits = 0
        self.total_prs = 0
        self.total_reviews = 0
        self.total_issues = 0
        self.total_lines_added = 0
        self.total_lines_deleted = 0
        self.contributors: List[ContributorMetrics] = []
        self.active_contributors = 0


class TeamMetrics(Record):
    def __init__(self, name: str, color: str = '', members: Optional[List[str]] = None, period: Optional[Period] = None):
        self.name = name
        self.color = color
        self.members = list(members or [])
        self.period = period
        self.member_metrics: List[ContributorMetrics] = []
        self.aggregated = ContributorMetrics(login=name, name=name, period=period)
        self.total_score = 0.0
        self.avg_score = 0.0


class LeaderboardEntry(Record):
    def __init__(self, rank: int, login: str, name: str, avatar_url: str, score: float, top_category: str = '', team: str = ''):
        self.rank = rank
        self.login = login
        self.name = name
        self.avatar_url = avatar_url
        self.score = score
        self.top_category = top_category
        self.team = team


class PeriodMetrics(Record):
    def __init__(self, period: Period, contributors: Optional[List[ContributorMetrics]] = None):
        self.period = period
        self.contributors = list(contributors or [])


class VelocityTimeline(Record):
    def __init__(self, labels: Optional[List[str]] = None, series: Optional[Dict[str, List[float]]] = None):
        self.labels = list(labels or [])
        self.series = dict(series or {})


class GlobalMetrics(Record):
    """Terminal artifact of a run, consumed by the rendering layer."""

    def __init__(self, period: Period):
        self.period = period
        self.repositories: List[RepositoryMetrics] = []
        self.contributors: List[ContributorMetrics] = []
        self.teams: List[TeamMetrics] = []
        self.periods: List[PeriodMetrics] = []
        self.leaderboard: List[LeaderboardEntry] = []
        self.top_achievers: Dict[str, str] = {}
        self.achievement_index: Dict[str, List[str]] = {}
        self.total_contributors = 0
        self.total_commits = 0
        self.total_prs = 0
        self.total_reviews = 0
        self.total_issues = 0
        self.total_lines_added = 0
        self.total_lines_deleted = 0
        self.velocity_timeline: Optional[VelocityTimeline] = None
        self.generated_at: Optional[datetime] = None

    def contributor(self, login: str) -> Optional[ContributorMetrics]:
        for cm in self.contributors:
            if cm.login == login:
                return cm
        return None
