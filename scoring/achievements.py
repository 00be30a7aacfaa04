"""
Fixed achievement tiers.

Each category reads one ContributorMetrics field and unlocks a tier per threshold met.
Ids are ``<category>-<threshold>``. Every met tier stays earned; current_tiers() picks
the highest tier per category for display. The table is not configurable.
"""
from typing import Dict, List


class AchievementTier:
    def __init__(self, category: str, field: str, thresholds: List[float], lower_is_better: bool = False, requires: str = ''):
        self.category = category
        self.field = field
        self.thresholds = list(thresholds)
        self.lower_is_better = lower_is_better
        # a counter that must be positive before the tier can be evaluated at all
        self.requires = requires

    def achievement_id(self, threshold: float) -> str:
        return f"{self.category}-{threshold:g}"

    def value(self, cm) -> float:
        raw = getattr(cm, self.field)
        if callable(raw):
            raw = raw()
        return float(raw or 0)

    def met(self, cm, threshold: float) -> bool:
        if self.requires and not getattr(cm, self.requires):
            return False
        value = self.value(cm)
        if self.lower_is_better:
            return 0 < value <= threshold
        return value >= threshold

    def earned(self, cm) -> List[str]:
        return [self.achievement_id(t) for t in self.thresholds if self.met(cm, t)]


ACHIEVEMENT_TIERS = (
    AchievementTier('commit', 'commit_count', [1, 10, 50, 100, 500, 1000]),
    AchievementTier('pr', 'prs_opened', [1, 10, 25, 50, 100, 250]),
    AchievementTier('review', 'reviews_given', [1, 10, 25, 50, 100, 250]),
    AchievementTier('comment', 'review_comments', [10, 50, 100, 250, 500]),
    AchievementTier('lines-added', 'meaningful_lines_added', [100, 1000, 5000, 10000, 50000]),
    AchievementTier('lines-deleted', 'meaningful_lines_deleted', [100, 500, 1000, 5000, 10000]),
    AchievementTier('review-time', 'avg_review_time', [24, 4, 1], lower_is_better=True, requires='reviews_given'),
    AchievementTier('repo', 'repo_count', [2, 5, 10]),
    AchievementTier('reviewees', 'unique_reviewees', [3, 10, 25]),
    AchievementTier('large-pr', 'largest_pr_size', [500, 1000, 5000]),
    AchievementTier('small-pr', 'small_pr_count', [5, 10, 25, 50]),
    AchievementTier('perfect-pr', 'perfect_prs', [1, 5, 10, 25]),
    AchievementTier('active', 'active_days', [7, 30, 60, 100]),
    AchievementTier('streak', 'longest_streak', [3, 7, 14, 30]),
    AchievementTier('workweek', 'work_week_streak', [3, 5, 10, 20]),
    AchievementTier('earlybird', 'early_bird_count', [10, 25, 50, 100]),
    AchievementTier('nightowl', 'night_owl_count', [10, 25, 50, 100]),
    AchievementTier('midnight', 'midnight_count', [5, 10, 25, 50]),
    AchievementTier('weekend', 'weekend_count', [5, 10, 25, 50]),
    AchievementTier('ooh', 'out_of_hours_count', [10, 25, 50, 100]),
    AchievementTier('docs', 'comment_lines_added', [100, 500, 1000, 2500, 5000]),
    AchievementTier('docs-del', 'comment_lines_deleted', [50, 200, 500, 1000, 2500]),
    AchievementTier('issue', 'issues_opened', [1, 5, 10, 25, 50]),
    AchievementTier('issue-close', 'issues_closed', [1, 5, 10, 25, 50]),
    AchievementTier('issue-comment', 'issue_comments', [5, 10, 25, 50, 100]),
)

_TIER_BY_CATEGORY = {t.category: t for t in ACHIEVEMENT_TIERS}


def evaluate_achievements(cm) -> List[str]:
    """All achievement ids the metrics qualify for, sorted."""
    earned: List[str] = []
    for tier in ACHIEVEMENT_TIERS:
        earned.extend(tier.earned(cm))
    return sorted(earned)


def _split_id(achievement_id: str):
    category, _, threshold = achievement_id.rpartition('-')
    return category, float(threshold)


def current_tiers(achievements: List[str]) -> Dict[str, str]:
    """Highest earned tier per category."""
    best: Dict[str, str] = {}
    best_threshold: Dict[str, float] = {}
    for achievement_id in achievements:
        category, threshold = _split_id(achievement_id)
        tier = _TIER_BY_CATEGORY.get(category)
        if tier is None:
            continue
        previous = best_threshold.get(category)
        better = previous is None or (threshold < previous if tier.lower_is_better else threshold > previous)
        if better:
            best[category] = achievement_id
            best_threshold[category] = threshold
    return best


__all__ = ["AchievementTier", "ACHIEVEMENT_TIERS", "evaluate_achievements", "current_tiers"]
