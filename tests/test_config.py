import unittest
from datetime import datetime, timedelta, timezone

import pytest

from config import (
    Config,
    ConfigError,
    RepositoryConfig,
    TeamConfig,
    config_from_dict,
    expand_env_vars,
    load_config,
    parse_date_range,
    parse_duration,
    parse_relative_date,
)

NOW = datetime(2024, 3, 31, 15, 30, tzinfo=timezone.utc)


class TestDurations(unittest.TestCase):
    def test_compound(self):
        self.assertEqual(parse_duration('24h'), 86400)
        self.assertEqual(parse_duration('1h30m'), 5400)
        self.assertEqual(parse_duration('500ms'), 0.5)
        self.assertEqual(parse_duration(''), 86400)

    def test_invalid(self):
        for bad in ('abc', '10x', 'h10'):
            with self.assertRaises(ConfigError):
                parse_duration(bad)


class TestDates(unittest.TestCase):
    def test_relative_dates_start_of_day(self):
        self.assertEqual(parse_relative_date('-30d', NOW), datetime(2024, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(parse_relative_date('-2w', NOW), datetime(2024, 3, 17, tzinfo=timezone.utc))
        self.assertEqual(parse_relative_date('-1m', NOW), datetime(2024, 2, 29, tzinfo=timezone.utc))
        self.assertEqual(parse_relative_date('-1y', NOW), datetime(2023, 3, 31, tzinfo=timezone.utc))
        self.assertIsNone(parse_relative_date('2024-01-01', NOW))

    def test_absolute_range_end_of_day(self):
        dr = parse_date_range('2024-01-01', '2024-01-31', NOW)
        self.assertEqual(dr.start, datetime(2024, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(dr.end, datetime(2024, 1, 31, 23, 59, 59, tzinfo=timezone.utc))

    def test_missing_end_is_now(self):
        self.assertEqual(parse_date_range('-7d', None, NOW).end, NOW)
        self.assertIsNone(parse_date_range(None, None, NOW).start)

    def test_end_before_start(self):
        with self.assertRaises(ConfigError):
            parse_date_range('2024-02-01', '2024-01-01', NOW)

    def test_bad_format(self):
        with self.assertRaises(ConfigError):
            parse_date_range('01/02/2024', None, NOW)


class TestConfig(unittest.TestCase):
    def test_bot_detection(self):
        cfg = Config()
        self.assertTrue(cfg.is_bot('dependabot[bot]'))
        self.assertTrue(cfg.is_bot('Renovate-Bot'))
        self.assertFalse(cfg.is_bot('alice'))
        cfg.options.include_bots = True
        self.assertFalse(cfg.is_bot('dependabot[bot]'))

    def test_bot_patterns_extend_defaults(self):
        cfg = config_from_dict({'options': {'bot_patterns': ['ci-*']}})
        self.assertTrue(cfg.is_bot('ci-runner'))
        self.assertTrue(cfg.is_bot('github-actions[bot]'))

    def test_team_lookup(self):
        cfg = Config(teams=[TeamConfig('Core', ['Alice'])])
        self.assertEqual(cfg.get_team_for_user('alice').name, 'Core')
        self.assertIsNone(cfg.get_team_for_user('bob'))

    def test_validate_lists_every_problem(self):
        cfg = Config(repositories=[RepositoryConfig('', '')], granularity=['hourly'])
        with self.assertRaises(ConfigError) as ctx:
            cfg.validate()
        message = str(ctx.exception)
        self.assertIn('github_token', message)
        self.assertIn('repositories[0].owner', message)
        self.assertIn('either name or pattern', message)
        self.assertIn('invalid granularity: hourly', message)

    def test_validate_custom_requires_periods(self):
        cfg = Config(auth_token='t', repositories=[RepositoryConfig('acme', 'api')], granularity=['custom'])
        with self.assertRaisesRegex(ConfigError, 'custom granularity'):
            cfg.validate()

    def test_negative_points_rejected(self):
        cfg = config_from_dict({'auth': {'github_token': 't'}, 'repositories': [{'owner': 'acme', 'name': 'api'}], 'scoring': {'points': {'commit': -1}}})
        with self.assertRaisesRegex(ConfigError, 'scoring.points.commit'):
            cfg.validate()

    def test_defaults(self):
        cfg = config_from_dict({})
        self.assertEqual(cfg.granularity, ['daily', 'weekly', 'monthly'])
        self.assertTrue(cfg.cache.enabled)
        self.assertEqual(cfg.cache.ttl_seconds(), 86400)
        self.assertEqual(cfg.options.max_consecutive_old, 100)
        self.assertEqual(cfg.options.early_termination_threshold, 2)
        self.assertTrue(cfg.options.use_graphql)


def test_env_expansion(monkeypatch):
    monkeypatch.setenv('VELOCITY_TEST_TOKEN', 'abc')
    monkeypatch.delenv('VELOCITY_UNSET', raising=False)
    assert expand_env_vars('${VELOCITY_TEST_TOKEN}/${VELOCITY_UNSET}') == 'abc/'


def test_load_config_from_yaml(tmp_path, monkeypatch):
    monkeypatch.setenv('VELOCITY_TEST_TOKEN', 'secret')
    path = tmp_path / 'velocity.yaml'
    path.write_text(
        'auth:\n'
        '  github_token: ${VELOCITY_TEST_TOKEN}\n'
        'repositories:\n'
        '  - owner: acme\n'
        '    pattern: "web-*"\n'
        'granularity: weekly\n'
        'teams:\n'
        '  - name: Core\n'
        '    members: [alice]\n'
        'options:\n'
        '  user_aliases:\n'
        '    - github_login: alice\n'
        '      emails: [alice@corp.example]\n',
        encoding='utf-8',
    )
    cfg = load_config(str(path))
    assert cfg.auth_token == 'secret'
    assert cfg.repositories[0].is_pattern()
    assert cfg.granularity == ['weekly']
    assert cfg.options.user_aliases[0].github_login == 'alice'


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / 'missing.yaml'))


def test_points_file_merged_with_inline_points(tmp_path):
    points = tmp_path / 'points.yaml'
    points.write_text('points:\n  commit: 12\n  pr_merged: 70\n', encoding='utf-8')
    cfg = config_from_dict({'scoring': {'points_file': str(points), 'points': {'commit': 20}}})
    assert cfg.points.commit == 20.0
    assert cfg.points.pr_merged == 70.0


def test_custom_period_parse():
    cfg = config_from_dict({'custom_periods': [{'name': 'Sprint 1', 'start': '2024-06-03', 'end': '2024-06-14'}]})
    name, start, end = cfg.parsed_custom_periods()[0]
    assert name == 'Sprint 1'
    assert end - start == timedelta(days=11, hours=23, minutes=59, seconds=59)
