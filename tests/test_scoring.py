import unittest
from datetime import datetime, timedelta, timezone

import pytest

from aggregate import aggregate
from config import TeamConfig
from normalize.models import Author, Commit, ContributorMetrics, RawData
from scoring.achievements import ACHIEVEMENT_TIERS, current_tiers, evaluate_achievements
from scoring.calculator import ScoreCalculator, response_bonus, score, top_category
from scoring.utils import DEFAULT_POINTS, PointConfig, load_points, round_score, safe_avg

NOW = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)
MON = datetime(2024, 6, 3, 10, 0, tzinfo=timezone.utc)


def _commit(sha, login, ts, repo='acme/api'):
    return Commit(sha, 'msg', Author(login=login), None, ts, repo, additions=10, deletions=2, files_changed=1, meaningful_additions=10, meaningful_deletions=2)


def _metrics(login='alice', **counters):
    cm = ContributorMetrics(login)
    for k, v in counters.items():
        setattr(cm, k, v)
    return cm


def _set_value(cm, tier, value):
    if tier.field == 'repo_count':
        cm.repositories_contributed = [f'acme/r{i}' for i in range(int(value))]
    else:
        setattr(cm, tier.field, value)


class TestAchievements(unittest.TestCase):
    def test_count_thresholds_are_exact(self):
        for tier in ACHIEVEMENT_TIERS:
            if tier.lower_is_better:
                continue
            for threshold in tier.thresholds:
                below = ContributorMetrics('x')
                _set_value(below, tier, threshold - 1)
                at = ContributorMetrics('x')
                _set_value(at, tier, threshold)
                achievement_id = tier.achievement_id(threshold)
                self.assertNotIn(achievement_id, evaluate_achievements(below), achievement_id)
                self.assertIn(achievement_id, evaluate_achievements(at), achievement_id)

    def test_review_time_needs_reviews_and_is_lower_is_better(self):
        self.assertEqual(evaluate_achievements(_metrics(avg_review_time=0.5)), [])
        earned = evaluate_achievements(_metrics(avg_review_time=3.0, reviews_given=1))
        self.assertIn('review-time-24', earned)
        self.assertIn('review-time-4', earned)
        self.assertNotIn('review-time-1', earned)

    def test_ids_and_current_tiers(self):
        earned = evaluate_achievements(_metrics(commit_count=60, reviews_given=1, avg_review_time=0.5))
        self.assertEqual(earned, sorted(earned))
        self.assertIn('commit-1', earned)
        self.assertIn('commit-50', earned)
        tiers = current_tiers(earned)
        self.assertEqual(tiers['commit'], 'commit-50')
        self.assertEqual(tiers['review-time'], 'review-time-1')
        self.assertEqual(tiers['review'], 'review-1')


class TestScore(unittest.TestCase):
    def setUp(self):
        self.cm = _metrics(
            commit_count=3,
            prs_opened=2,
            prs_merged=1,
            reviews_given=4,
            review_comments=5,
            meaningful_lines_added=100,
            meaningful_lines_deleted=20,
            lines_added=500,
            avg_review_time=2.0,
            out_of_hours_count=1,
            issues_opened=1,
            issues_closed=1,
            issue_comments=2,
            commits_with_tests=1,
        )

    def test_breakdown_with_defaults(self):
        breakdown, _ = score(self.cm)
        self.assertEqual(breakdown.commits, 30)
        self.assertEqual(breakdown.prs, 100)
        self.assertEqual(breakdown.reviews, 120)
        self.assertEqual(breakdown.comments, 25)
        self.assertEqual(breakdown.line_changes, 11)
        self.assertEqual(breakdown.response_bonus, 25)
        self.assertEqual(breakdown.out_of_hours, 2)
        self.assertEqual(breakdown.issues, 45)
        self.assertEqual(breakdown.tests_bonus, 15)
        self.assertAlmostEqual(breakdown.total(), 373)

    def test_raw_lines_when_meaningful_only_is_off(self):
        breakdown, _ = score(self.cm, PointConfig(meaningful_lines_only=False))
        self.assertEqual(breakdown.line_changes, 50)

    def test_time_multipliers_add_surcharge(self):
        self.cm.early_bird_count = 1
        self.cm.weekend_count = 1
        self.assertEqual(score(self.cm)[0].commits, 30)
        breakdown, _ = score(self.cm, PointConfig(time_multipliers=True))
        self.assertEqual(breakdown.commits, 45)

    def test_score_is_deterministic(self):
        self.assertEqual(score(self.cm), score(self.cm))

    def test_response_bonus_tiers(self):
        points = PointConfig()
        for hours, expected in ((0.5, 50), (1, 50), (4, 25), (24, 10), (25, 0)):
            self.assertEqual(response_bonus(_metrics(reviews_given=1, avg_review_time=hours), points), expected, hours)
        self.assertEqual(response_bonus(_metrics(avg_review_time=0.5), points), 0)

    def test_top_category(self):
        self.assertEqual(top_category(self.cm), 'Reviews')
        self.assertEqual(top_category(ContributorMetrics('idle')), '')


class TestScoreCalculator(unittest.TestCase):
    def _gm(self):
        raw = RawData(commits=[
            _commit('a', 'alice', MON),
            _commit('b', 'alice', MON + timedelta(hours=1)),
            _commit('c', 'bob', MON, repo='acme/web'),
            _commit('d', 'amy', MON),
        ])
        return aggregate(raw, teams=[TeamConfig('Core', ['alice', 'bob'])], now=NOW)

    def test_ranks_leaderboard_and_teams(self):
        gm = ScoreCalculator().calculate(self._gm())
        self.assertEqual([cm.login for cm in gm.contributors], ['alice', 'amy', 'bob'])
        self.assertEqual([cm.score.rank for cm in gm.contributors], [1, 2, 3])
        self.assertEqual(gm.contributors[0].score.percentile_rank, 100.0)
        self.assertEqual(gm.contributors[2].score.percentile_rank, round_score(100 / 3))
        self.assertEqual([e.login for e in gm.leaderboard], ['alice', 'amy', 'bob'])
        self.assertEqual(gm.leaderboard[0].team, 'Core')
        self.assertEqual(gm.leaderboard[1].team, '')
        self.assertEqual(gm.top_achievers['overall'], 'alice')
        self.assertEqual(gm.top_achievers['commits'], 'alice')
        self.assertEqual(gm.achievement_index['commit-1'], ['alice', 'amy', 'bob'])
        team = gm.teams[0]
        self.assertEqual(team.total_score, round_score(gm.contributor('alice').score.total + gm.contributor('bob').score.total))
        self.assertEqual(team.avg_score, round_score(team.total_score / 2))

    def test_repository_contributors_ranked(self):
        gm = ScoreCalculator().calculate(self._gm())
        api = gm.repositories[0]
        self.assertEqual(api.full_name, 'acme/api')
        self.assertEqual([(cm.login, cm.score.rank) for cm in api.contributors], [('alice', 1), ('amy', 2)])

    def test_calculation_is_repeatable(self):
        first = ScoreCalculator().calculate(self._gm())
        second = ScoreCalculator().calculate(self._gm())
        self.assertEqual([e.to_dict() for e in first.leaderboard], [e.to_dict() for e in second.leaderboard])


class TestPointConfig(unittest.TestCase):
    def test_unknown_keys_ignored_and_defaults_kept(self):
        points = PointConfig({'commit': 7, 'bogus': 99})
        self.assertEqual(points.commit, 7.0)
        self.assertEqual(points.pr_merged, DEFAULT_POINTS['pr_merged'])
        self.assertFalse(hasattr(points, 'bogus'))

    def test_from_dict_time_multiplier_table(self):
        points = PointConfig.from_dict({'time_multipliers': {'weekend': 3.0}, 'meaningful_lines_only': False})
        self.assertTrue(points.time_multipliers)
        self.assertEqual(points.multipliers['weekend'], 3.0)
        self.assertEqual(points.multipliers['midnight'], 5.0)
        self.assertFalse(points.meaningful_lines_only)
        self.assertEqual(PointConfig.from_dict(points.to_dict()).multipliers['weekend'], 3.0)

    def test_negative_keys(self):
        self.assertEqual(PointConfig({'lines_deleted': -1}).negative_keys(), ['lines_deleted'])

    def test_safe_avg(self):
        self.assertEqual(safe_avg(10, 0), 0.0)
        self.assertEqual(safe_avg(10, 4), 2.5)


def test_load_points_reads_points_section(tmp_path):
    path = tmp_path / 'points.yaml'
    path.write_text('points:\n  commit: 12\n  pr_merged: 60\n  time_multipliers: true\n', encoding='utf-8')
    points = load_points(str(path))
    assert points.commit == 12.0
    assert points.pr_merged == 60.0
    assert points.time_multipliers


def test_load_points_missing_file_gives_defaults(tmp_path):
    assert load_points(str(tmp_path / 'none.yaml')).values() == DEFAULT_POINTS


def test_load_points_rejects_bad_yaml(tmp_path):
    path = tmp_path / 'points.yaml'
    path.write_text('points: [unclosed\n', encoding='utf-8')
    with pytest.raises(ValueError):
        load_points(str(path))
