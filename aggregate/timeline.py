"""
Weekly velocity timeline: commits, PRs, reviews and a points estimate per week.
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from normalize.models import RawData, VelocityTimeline

DEFAULT_LOOKBACK_DAYS = 90


def week_start(ts: datetime) -> datetime:
    """Midnight of the Monday on or before ts."""
    monday = ts - timedelta(days=ts.weekday())
    return monday.replace(hour=0, minute=0, second=0, microsecond=0)


def week_label(ts: datetime) -> str:
    return f"{ts:%b} {ts.day}"


def _week_index(weeks: List[datetime], ts: datetime) -> int:
    for i in range(len(weeks) - 1, -1, -1):
        if ts >= weeks[i]:
            return i
    return 0


def build_velocity_timeline(raw: RawData, start: Optional[datetime], end: Optional[datetime], points, now: Optional[datetime] = None) -> Optional[VelocityTimeline]:
    now = now or datetime.now(timezone.utc)
    end = end or now
    start = start or (now - timedelta(days=DEFAULT_LOOKBACK_DAYS))

    weeks: List[datetime] = []
    w = week_start(start)
    while w <= end:
        weeks.append(w)
        w += timedelta(days=7)
    if not weeks:
        return None

    commits = [0.0] * len(weeks)
    prs = [0.0] * len(weeks)
    reviews = [0.0] * len(weeks)
    score = [0.0] * len(weeks)

    def slot(ts: Optional[datetime]) -> Optional[int]:
        if ts is None or ts < start or ts > end:
            return None
        return _week_index(weeks, ts)

    for c in raw.commits:
        i = slot(c.date)
        if i is not None:
            commits[i] += 1
            score[i] += points.commit

    for pr in raw.pull_requests:
        i = slot(pr.merged_at or pr.created_at)
        if i is not None:
            prs[i] += 1
            score[i] += points.pr_merged if pr.is_merged() else points.pr_opened

    for r in raw.reviews:
        i = slot(r.submitted_at)
        if i is not None:
            reviews[i] += 1
            score[i] += points.pr_reviewed

    return VelocityTimeline(
        labels=[week_label(w) for w in weeks],
        series={'Commits': commits, 'PRs': prs, 'Reviews': reviews, 'Score': score},
    )


__all__ = ["build_velocity_timeline", "week_start", "week_label"]
