"""
Scoring utility functions.
Provides the point table, its YAML loading and small numeric helpers used by scoring.calculator.
"""
from typing import Dict, Any, Optional
import os

import yaml

# filename used for point YAML configuration
POINTS_FILENAME = 'points.yaml'

DEFAULT_POINTS = {
    'commit': 10.0,
    'commit_with_tests': 15.0,
    'lines_added': 0.1,
    'lines_deleted': 0.05,
    'pr_opened': 25.0,
    'pr_merged': 50.0,
    'pr_reviewed': 30.0,
    'review_comment': 5.0,
    'issue_opened': 15.0,
    'issue_closed': 20.0,
    'issue_comment': 5.0,
    'fast_review_1h': 50.0,
    'fast_review_4h': 25.0,
    'fast_review_24h': 10.0,
    'out_of_hours': 2.0,
}

# commit multipliers per activity bucket when time_multipliers is on; each bucket a
# commit falls into adds (multiplier - 1) x commit points on top of the base value
DEFAULT_TIME_MULTIPLIERS = {
    'early_bird': 2.0,
    'night_owl': 2.5,
    'midnight': 5.0,
    'weekend': 1.5,
}


class PointConfig:
    """Point values per event plus the two behavioural switches."""

    def __init__(self, points: Optional[Dict[str, float]] = None, meaningful_lines_only: bool = True, time_multipliers: bool = False, multipliers: Optional[Dict[str, float]] = None):
        merged = DEFAULT_POINTS.copy()
        for k, v in (points or {}).items():
            if k in DEFAULT_POINTS:
                merged[k] = float(v)
        for k, v in merged.items():
            setattr(self, k, v)
        self.meaningful_lines_only = bool(meaningful_lines_only)
        self.time_multipliers = bool(time_multipliers)
        self.multipliers = DEFAULT_TIME_MULTIPLIERS.copy()
        self.multipliers.update({k: float(v) for k, v in (multipliers or {}).items()})

    def values(self) -> Dict[str, float]:
        return {k: getattr(self, k) for k in DEFAULT_POINTS}

    def negative_keys(self):
        return [k for k, v in self.values().items() if v < 0]

    def to_dict(self) -> Dict[str, Any]:
        d = self.values()
        d['meaningful_lines_only'] = self.meaningful_lines_only
        # enabled multipliers serialize as their table so from_dict restores them
        d['time_multipliers'] = dict(self.multipliers) if self.time_multipliers else False
        return d

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> 'PointConfig':
        raw = dict(raw or {})
        meaningful = raw.pop('meaningful_lines_only', True)
        time_mult = raw.pop('time_multipliers', False)
        multipliers = None
        if isinstance(time_mult, dict):
            multipliers = time_mult
            time_mult = True
        return cls(points=raw, meaningful_lines_only=meaningful, time_multipliers=time_mult, multipliers=multipliers)


def load_points(path: Optional[str] = None) -> PointConfig:
    """
    Load point values from a YAML file's ``points:`` mapping, otherwise return defaults.
    Raises ValueError when the file exists but cannot be parsed.
    """
    if not path:
        path = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'config', POINTS_FILENAME)
    if not os.path.exists(path):
        return PointConfig()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            doc = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as ex:
        raise ValueError(f"Failed to load points from {path}: {ex}")
    if not isinstance(doc, dict):
        raise ValueError(f"Points file {path} must contain a mapping")
    section = doc.get('points', doc)
    if not isinstance(section, dict):
        raise ValueError(f"'points' in {path} must be a mapping")
    return PointConfig.from_dict(section)


def safe_avg(total: float, count: int) -> float:
    """Average that is 0.0 for an empty population."""
    if not count:
        return 0.0
    return float(total) / float(count)


def round_score(value: float) -> float:
    return round(float(value), 2)


__all__ = ["PointConfig", "DEFAULT_POINTS", "load_points", "safe_avg", "round_score"]
