"""
Metrics aggregation.

Folds identity-resolved commits, pull requests, reviews, issues and issue comments into
ContributorMetrics per canonical login, both globally and per repository, and rolls
those up into repository, team and period views plus the weekly velocity timeline.
No network access happens here: every PR-derived statistic comes from the PR and
Review records already fetched.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from aggregate.activity import activity_buckets, calculate_streaks, calculate_work_week_streak
from aggregate.timeline import build_velocity_timeline
from normalize.models import (
    Author,
    ContributorMetrics,
    GlobalMetrics,
    Period,
    PeriodMetrics,
    RawData,
    RepositoryMetrics,
    SMALL_PR_THRESHOLD,
    SUMMABLE_COUNTERS,
    TeamMetrics,
)
from normalize.util import hours
from scoring.utils import PointConfig, safe_avg

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = ''


class _Tally:
    """ContributorMetrics under construction plus the sets/sums needed to finish it."""

    def __init__(self, cm: ContributorMetrics):
        self.cm = cm
        self.days: Set[date] = set()
        self.repos: Set[str] = set()
        self.reviewees: Set[str] = set()
        self.merge_hours = 0.0
        self.review_hours = 0.0
        self.timed_reviews = 0
        self.pr_lines = 0

    def finish(self, today: date) -> ContributorMetrics:
        cm = self.cm
        cm.active_days = len(self.days)
        cm.longest_streak, cm.current_streak = calculate_streaks(self.days, today)
        cm.work_week_streak = calculate_work_week_streak(self.days)
        cm.repositories_contributed = sorted(self.repos)
        cm.unique_reviewees = len(self.reviewees)
        cm.avg_time_to_merge = safe_avg(self.merge_hours, cm.prs_merged)
        cm.avg_review_time = safe_avg(self.review_hours, self.timed_reviews)
        cm.avg_pr_size = safe_avg(self.pr_lines, cm.prs_opened)
        return cm


def _repo_parts(full_name: str) -> Tuple[str, str]:
    owner, sep, name = full_name.partition('/')
    if not sep:
        return '', full_name
    return owner, name


def _sort_contributors(contributors: Iterable[ContributorMetrics]) -> List[ContributorMetrics]:
    return sorted(contributors, key=lambda cm: (-cm.commit_count, cm.login))


def period_for(ts: datetime, granularity: str) -> Period:
    """The daily/weekly/monthly bucket containing ts."""
    day = ts.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == 'daily':
        return Period(day, day + timedelta(days=1) - timedelta(microseconds=1), 'daily', f"{day:%Y-%m-%d}")
    if granularity == 'weekly':
        start = day - timedelta(days=day.weekday())
        iso_year, iso_week, _ = start.isocalendar()
        return Period(start, start + timedelta(days=7) - timedelta(microseconds=1), 'weekly', f"{iso_year}-W{iso_week:02d}")
    if granularity == 'monthly':
        start = day.replace(day=1)
        nxt = start.replace(year=start.year + 1, month=1) if start.month == 12 else start.replace(month=start.month + 1)
        return Period(start, nxt - timedelta(microseconds=1), 'monthly', f"{start:%Y-%m}")
    raise ValueError(f"unsupported granularity: {granularity}")


class Aggregator:
    def __init__(self, teams=None, points: Optional[PointConfig] = None, now: Optional[datetime] = None):
        self.teams = list(teams or [])
        self.points = points or PointConfig()
        self.now = now
        self._reconciler = None

    def _now(self) -> datetime:
        return self.now or datetime.now(timezone.utc)

    def aggregate(self, raw: RawData, date_range=None, granularity='all', custom_periods=None, reconciler=None) -> GlobalMetrics:
        """Aggregate raw events into GlobalMetrics.

        granularity may be one name or a list of names ('all', 'daily', 'weekly',
        'monthly', 'custom'); everything except 'all' adds PeriodMetrics buckets.
        custom_periods is a list of (name, start, end) tuples.
        """
        if reconciler is not None:
            raw = reconciler.apply(raw)
        self._reconciler = reconciler

        now = self._now()
        start = getattr(date_range, 'start', None)
        end = getattr(date_range, 'end', None) or now
        overall = Period(start, end, 'all', 'All Time')

        scopes = self._build(raw, None, overall)
        gm = GlobalMetrics(overall)
        gm.contributors = _sort_contributors(scopes.pop(GLOBAL_SCOPE, {}).values())
        gm.repositories = self._repositories(raw, scopes, overall)
        gm.teams = self._teams(gm.contributors, overall)
        gm.periods = self._periods(raw, granularity, custom_periods)

        gm.total_contributors = len(gm.contributors)
        gm.total_commits = sum(rm.total_commits for rm in gm.repositories)
        gm.total_prs = sum(rm.total_prs for rm in gm.repositories)
        gm.total_reviews = sum(rm.total_reviews for rm in gm.repositories)
        gm.total_issues = sum(rm.total_issues for rm in gm.repositories)
        gm.total_lines_added = sum(rm.total_lines_added for rm in gm.repositories)
        gm.total_lines_deleted = sum(rm.total_lines_deleted for rm in gm.repositories)
        gm.velocity_timeline = build_velocity_timeline(raw, start, end, self.points, now=now)
        gm.generated_at = now
        logger.debug("aggregated %d contributors over %d repositories", gm.total_contributors, len(gm.repositories))
        return gm

    # --- contributor folding -------------------------------------------------

    def _identity(self, author: Author) -> Tuple[str, str]:
        name = author.name
        avatar = author.avatar_url
        profile = self._reconciler.profile_for(author.login) if self._reconciler is not None else None
        if profile is not None:
            name = profile.name or name
            avatar = profile.avatar_url or avatar
        return name, avatar

    def _build(self, raw: RawData, window: Optional[Period], period: Period) -> Dict[str, Dict[str, ContributorMetrics]]:
        """Fold events inside window (None = all) into {scope: {login: metrics}}; scope '' is global."""
        tallies: Dict[str, Dict[str, _Tally]] = {}

        def inside(ts: Optional[datetime]) -> bool:
            return window is None or window.contains(ts)

        def targets(author: Author, repo: str) -> List[_Tally]:
            login = author.login
            found = []
            for scope in ((GLOBAL_SCOPE, repo) if repo else (GLOBAL_SCOPE,)):
                bucket = tallies.setdefault(scope, {})
                tally = bucket.get(login)
                if tally is None:
                    name, avatar = self._identity(author)
                    tally = _Tally(ContributorMetrics(login, name, avatar, period, repository=scope))
                    bucket[login] = tally
                else:
                    if not tally.cm.avatar_url and author.avatar_url:
                        tally.cm.avatar_url = author.avatar_url
                    if tally.cm.name == login and author.name:
                        tally.cm.name = author.name
                found.append(tally)
            return found

        for c in raw.commits:
            if not c.author.login or not inside(c.date):
                continue
            early, night, midnight, weekend, ooh = activity_buckets(c.date)
            for t in targets(c.author, c.repository):
                cm = t.cm
                cm.commit_count += 1
                cm.lines_added += c.additions
                cm.lines_deleted += c.deletions
                cm.meaningful_lines_added += c.meaningful_additions
                cm.meaningful_lines_deleted += c.meaningful_deletions
                cm.comment_lines_added += c.comment_additions
                cm.comment_lines_deleted += c.comment_deletions
                cm.files_changed += c.files_changed
                cm.commits_with_tests += 1 if c.has_tests else 0
                cm.early_bird_count += early
                cm.night_owl_count += night
                cm.midnight_count += midnight
                cm.weekend_count += weekend
                cm.out_of_hours_count += ooh
                t.days.add(c.date.date())
                t.repos.add(c.repository)

        pr_authors: Dict[Tuple[str, int], str] = {}
        changes_requested: Set[Tuple[str, int]] = set()
        for pr in raw.pull_requests:
            pr_authors[(pr.repository, pr.number)] = pr.author.login
            for r in pr.reviews:
                if r.requests_changes():
                    changes_requested.add((pr.repository, pr.number))
        for r in raw.reviews:
            if r.requests_changes():
                changes_requested.add((r.repository, r.pull_request))

        for pr in raw.pull_requests:
            if not pr.author.login or not inside(pr.merged_at or pr.created_at):
                continue
            size = pr.total_changes()
            for t in targets(pr.author, pr.repository):
                cm = t.cm
                cm.prs_opened += 1
                t.pr_lines += size
                t.repos.add(pr.repository)
                if pr.is_merged():
                    cm.prs_merged += 1
                    merge_seconds = pr.time_to_merge if pr.time_to_merge is not None else pr.calculate_time_to_merge()
                    t.merge_hours += hours(merge_seconds)
                    cm.largest_pr_size = max(cm.largest_pr_size, size)
                    if size < SMALL_PR_THRESHOLD:
                        cm.small_pr_count += 1
                    if (pr.repository, pr.number) not in changes_requested:
                        cm.perfect_prs += 1
                elif pr.state == 'closed':
                    cm.prs_closed += 1

        for r in raw.reviews:
            if not r.author.login or not inside(r.submitted_at):
                continue
            reviewee = pr_authors.get((r.repository, r.pull_request), '')
            for t in targets(r.author, r.repository):
                cm = t.cm
                cm.reviews_given += 1
                cm.review_comments += r.comments_count
                if r.is_approval():
                    cm.approvals_given += 1
                elif r.requests_changes():
                    cm.changes_requested += 1
                if r.response_time is not None:
                    t.review_hours += hours(r.response_time)
                    t.timed_reviews += 1
                if reviewee and reviewee != r.author.login:
                    t.reviewees.add(reviewee)

        for issue in raw.issues:
            if not issue.author.login or not inside(issue.created_at):
                continue
            closed_by_self = issue.is_closed() and issue.closed_by is not None and issue.closed_by.login == issue.author.login
            for t in targets(issue.author, issue.repository):
                t.cm.issues_opened += 1
                if closed_by_self:
                    t.cm.issues_closed += 1
                t.repos.add(issue.repository)

        for comment in raw.issue_comments:
            if not comment.author.login or not inside(comment.created_at):
                continue
            for t in targets(comment.author, comment.repository):
                t.cm.issue_comments += 1

        today = self._now().date()
        return {scope: {login: t.finish(today) for login, t in bucket.items()} for scope, bucket in tallies.items()}

    # --- roll-ups ------------------------------------------------------------

    def _repositories(self, raw: RawData, scopes: Dict[str, Dict[str, ContributorMetrics]], period: Period) -> List[RepositoryMetrics]:
        repos: Dict[str, RepositoryMetrics] = {}

        def repo(full_name: str) -> RepositoryMetrics:
            if full_name not in repos:
                owner, name = _repo_parts(full_name)
                repos[full_name] = RepositoryMetrics(owner, name, period)
            return repos[full_name]

        for c in raw.commits:
            if not c.author.login:
                continue
            rm = repo(c.repository)
            rm.total_commits += 1
            rm.total_lines_added += c.additions
            rm.total_lines_deleted += c.deletions
        for pr in raw.pull_requests:
            if pr.author.login:
                repo(pr.repository).total_prs += 1
        for r in raw.reviews:
            if r.author.login:
                repo(r.repository).total_reviews += 1
        for issue in raw.issues:
            if issue.author.login:
                repo(issue.repository).total_issues += 1

        for full_name, contributors in scopes.items():
            rm = repo(full_name)
            rm.contributors = _sort_contributors(contributors.values())
            rm.active_contributors = len(rm.contributors)
        return [repos[k] for k in sorted(repos)]

    def _teams(self, contributors: List[ContributorMetrics], period: Period) -> List[TeamMetrics]:
        by_login = {cm.login.lower(): cm for cm in contributors}
        teams = []
        for cfg in self.teams:
            team = TeamMetrics(cfg.name, cfg.color, cfg.members, period)
            counted = set()
            for member in cfg.members:
                key = member.lower()
                cm = by_login.get(key)
                if cm is None or key in counted:
                    continue
                counted.add(key)
                team.member_metrics.append(cm)
                for counter in SUMMABLE_COUNTERS:
                    setattr(team.aggregated, counter, getattr(team.aggregated, counter) + getattr(cm, counter))
            team.aggregated.repositories_contributed = sorted({r for cm in team.member_metrics for r in cm.repositories_contributed})
            teams.append(team)
        return teams

    def _periods(self, raw: RawData, granularity, custom_periods) -> List[PeriodMetrics]:
        names = [granularity] if isinstance(granularity, str) else list(granularity or [])
        buckets: List[Period] = []
        for g in names:
            if g == 'all':
                continue
            if g == 'custom':
                for name, start, end in custom_periods or []:
                    buckets.append(Period(start, end, 'custom', name))
                continue
            seen: Dict[str, Period] = {}
            for ts in _event_times(raw):
                p = period_for(ts, g)
                seen.setdefault(p.label, p)
            buckets.extend(seen[label] for label in sorted(seen))

        result = []
        for p in buckets:
            scoped = self._build(raw, p, p)
            result.append(PeriodMetrics(p, _sort_contributors(scoped.get(GLOBAL_SCOPE, {}).values())))
        return result


def _event_times(raw: RawData) -> Iterable[datetime]:
    for c in raw.commits:
        yield c.date
    for pr in raw.pull_requests:
        yield pr.merged_at or pr.created_at
    for r in raw.reviews:
        if r.submitted_at is not None:
            yield r.submitted_at
    for issue in raw.issues:
        yield issue.created_at
    for comment in raw.issue_comments:
        if comment.created_at is not None:
            yield comment.created_at


def aggregate(raw: RawData, date_range=None, granularity='all', teams=None, points: Optional[PointConfig] = None, custom_periods=None, reconciler=None, now: Optional[datetime] = None) -> GlobalMetrics:
    return Aggregator(teams=teams, points=points, now=now).aggregate(raw, date_range, granularity, custom_periods, reconciler)


__all__ = ["Aggregator", "aggregate", "period_for"]
