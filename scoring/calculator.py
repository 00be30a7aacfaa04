"""
Score calculation.

score() turns one ContributorMetrics into a ScoreBreakdown and its achievement set; it
performs no I/O and identical metrics always give identical results. ScoreCalculator
applies it to a whole GlobalMetrics: ranks, leaderboard, top achievers, achievement
index, team totals and per-repository / per-period contributors.
"""
import logging
from typing import Dict, List, Optional, Tuple

from normalize.models import ContributorMetrics, GlobalMetrics, LeaderboardEntry, Score, ScoreBreakdown
from scoring.achievements import evaluate_achievements
from scoring.utils import PointConfig, round_score

logger = logging.getLogger(__name__)

# (label, counter) pairs compared when picking a contributor's strongest area
TOP_CATEGORIES = (
    ('Commits', 'commit_count'),
    ('PRs', 'prs_opened'),
    ('Reviews', 'reviews_given'),
    ('Comments', 'review_comments'),
)

# top_achievers key -> counter
ACHIEVER_CATEGORIES = (
    ('commits', 'commit_count'),
    ('pull_requests', 'prs_opened'),
    ('reviews', 'reviews_given'),
    ('comments', 'review_comments'),
    ('issues', 'issues_opened'),
    ('lines', 'meaningful_lines_added'),
)


def _commit_points(cm: ContributorMetrics, points: PointConfig) -> float:
    base = cm.commit_count * points.commit
    if not points.time_multipliers:
        return base
    surcharge = 0.0
    for bucket, counter in (('early_bird', 'early_bird_count'), ('night_owl', 'night_owl_count'), ('midnight', 'midnight_count'), ('weekend', 'weekend_count')):
        surcharge += getattr(cm, counter) * points.commit * (points.multipliers.get(bucket, 1.0) - 1.0)
    return base + surcharge


def response_bonus(cm: ContributorMetrics, points: PointConfig) -> float:
    """One bonus tier from the average review response time in hours."""
    if cm.reviews_given <= 0 or cm.avg_review_time <= 0:
        return 0.0
    if cm.avg_review_time <= 1:
        return points.fast_review_1h
    if cm.avg_review_time <= 4:
        return points.fast_review_4h
    if cm.avg_review_time <= 24:
        return points.fast_review_24h
    return 0.0


def score(cm: ContributorMetrics, points: Optional[PointConfig] = None) -> Tuple[ScoreBreakdown, List[str]]:
    points = points or PointConfig()
    if points.meaningful_lines_only:
        added, deleted = cm.meaningful_lines_added, cm.meaningful_lines_deleted
    else:
        added, deleted = cm.lines_added, cm.lines_deleted
    breakdown = ScoreBreakdown(
        commits=round_score(_commit_points(cm, points)),
        prs=round_score(cm.prs_opened * points.pr_opened + cm.prs_merged * points.pr_merged),
        reviews=round_score(cm.reviews_given * points.pr_reviewed),
        comments=round_score(cm.review_comments * points.review_comment),
        line_changes=round_score(added * points.lines_added + deleted * points.lines_deleted),
        response_bonus=round_score(response_bonus(cm, points)),
        out_of_hours=round_score(cm.out_of_hours_count * points.out_of_hours),
        issues=round_score(cm.issues_opened * points.issue_opened + cm.issues_closed * points.issue_closed + cm.issue_comments * points.issue_comment),
        tests_bonus=round_score(cm.commits_with_tests * points.commit_with_tests),
    )
    return breakdown, evaluate_achievements(cm)


def top_category(cm: ContributorMetrics) -> str:
    best, best_value = '', 0
    for label, counter in TOP_CATEGORIES:
        value = getattr(cm, counter)
        if value > best_value:
            best, best_value = label, value
    return best


def _rank_key(cm: ContributorMetrics):
    return (-cm.score.total, cm.login)


class ScoreCalculator:
    def __init__(self, points: Optional[PointConfig] = None):
        self.points = points or PointConfig()

    def score_contributor(self, cm: ContributorMetrics) -> ContributorMetrics:
        breakdown, achievements = score(cm, self.points)
        cm.score = Score(total=round_score(breakdown.total()), breakdown=breakdown)
        cm.achievements = achievements
        cm.top_category = top_category(cm)
        return cm

    def rank(self, contributors: List[ContributorMetrics]) -> List[ContributorMetrics]:
        """Score, sort by total (ties by login) and assign rank and percentile."""
        for cm in contributors:
            self.score_contributor(cm)
        ranked = sorted(contributors, key=_rank_key)
        n = len(ranked)
        for i, cm in enumerate(ranked):
            cm.score.rank = i + 1
            cm.score.percentile_rank = round_score((n - i) / n * 100) if n else 0.0
        return ranked

    def calculate(self, gm: GlobalMetrics) -> GlobalMetrics:
        gm.contributors = self.rank(gm.contributors)

        team_of: Dict[str, str] = {}
        for team in gm.teams:
            for member in team.members:
                team_of.setdefault(member.lower(), team.name)

        gm.leaderboard = [
            LeaderboardEntry(
                rank=cm.score.rank,
                login=cm.login,
                name=cm.name,
                avatar_url=cm.avatar_url,
                score=cm.score.total,
                top_category=cm.top_category,
                team=team_of.get(cm.login.lower(), ''),
            )
            for cm in gm.contributors
        ]
        gm.top_achievers = self._top_achievers(gm.contributors)
        gm.achievement_index = self._achievement_index(gm.contributors)

        for team in gm.teams:
            team.total_score = round_score(sum(cm.score.total for cm in team.member_metrics))
            team.avg_score = round_score(team.total_score / len(team.member_metrics)) if team.member_metrics else 0.0

        for repo in gm.repositories:
            repo.contributors = self.rank(repo.contributors)
        for period in gm.periods:
            period.contributors = self.rank(period.contributors)

        logger.debug("scored %d contributors", len(gm.contributors))
        return gm

    @staticmethod
    def _top_achievers(ranked: List[ContributorMetrics]) -> Dict[str, str]:
        result: Dict[str, str] = {}
        if ranked:
            result['overall'] = ranked[0].login
        for key, counter in ACHIEVER_CATEGORIES:
            best, best_value = '', 0
            for cm in ranked:
                value = getattr(cm, counter)
                if value > best_value:
                    best, best_value = cm.login, value
            if best:
                result[key] = best
        return result

    @staticmethod
    def _achievement_index(contributors: List[ContributorMetrics]) -> Dict[str, List[str]]:
        index: Dict[str, List[str]] = {}
        for cm in contributors:
            for achievement_id in cm.achievements:
                index.setdefault(achievement_id, []).append(cm.login)
        return {k: sorted(v) for k, v in sorted(index.items())}


__all__ = ["score", "response_bonus", "top_category", "ScoreCalculator"]
