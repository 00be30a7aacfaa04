"""
Run configuration: YAML loading, defaults, validation and date-range parsing.

Example file::

    auth:
      github_token: ${GITHUB_TOKEN}
    repositories:
      - owner: acme
        name: api
      - owner: acme
        pattern: "web-*"
    date_range:
      start: -90d
    teams:
      - name: Platform
        members: [alice, bob]
    options:
      user_aliases:
        - github_login: alice
          emails: [alice@corp.example]
"""
import calendar
import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import yaml

from ingest.github import match_pattern
from normalize.identity import UserAlias
from scoring.utils import PointConfig, load_points

logger = logging.getLogger(__name__)

GRANULARITIES = ('all', 'daily', 'weekly', 'monthly', 'custom')
DEFAULT_GRANULARITY = ['daily', 'weekly', 'monthly']
DEFAULT_BOT_PATTERNS = ['*[bot]', 'dependabot*', 'renovate*', 'github-actions*']
DEFAULT_CACHE_TTL = '24h'

_ENV_VAR = re.compile(r'\$\{([^}]+)\}')
_RELATIVE_DATE = re.compile(r'^([+-])(\d+)([dwmy])$')
_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h|d)')
_DURATION_UNITS = {'ms': 0.001, 's': 1, 'm': 60, 'h': 3600, 'd': 86400}


class ConfigError(ValueError):
    pass


def expand_env_vars(text: str) -> str:
    """Replace ${VAR} with the environment value ('' when unset)."""
    return _ENV_VAR.sub(lambda m: os.environ.get(m.group(1), ''), text)


def parse_duration(value: Optional[str]) -> float:
    """Parse durations like '24h', '90m' or '1h30m' into seconds."""
    if value is None or value == '':
        return parse_duration(DEFAULT_CACHE_TTL)
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    pos = 0
    total = 0.0
    for m in _DURATION_PART.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(text):
        raise ConfigError(f"invalid duration: {value!r}")
    return total


def _add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def parse_relative_date(value: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """'-90d', '-2w', '-3m', '-1y' relative to now, normalized to the start of that day."""
    m = _RELATIVE_DATE.match((value or '').strip())
    if not m:
        return None
    sign = -1 if m.group(1) == '-' else 1
    num = sign * int(m.group(2))
    unit = m.group(3)
    now = now or datetime.now(timezone.utc)
    if unit == 'd':
        result = now + timedelta(days=num)
    elif unit == 'w':
        result = now + timedelta(days=7 * num)
    elif unit == 'm':
        result = _add_months(now, num)
    else:
        result = _add_months(now, 12 * num)
    return result.replace(hour=0, minute=0, second=0, microsecond=0)


def _parse_date(value: str, now: Optional[datetime], field: str) -> datetime:
    relative = parse_relative_date(value, now)
    if relative is not None:
        return relative
    try:
        return datetime.strptime(str(value).strip(), '%Y-%m-%d').replace(tzinfo=timezone.utc)
    except ValueError:
        raise ConfigError(f"invalid {field} date format {value!r} (use YYYY-MM-DD or -Nd/-Nw/-Nm/-Ny)")


def _end_of_day(dt: datetime) -> datetime:
    return dt + timedelta(hours=23, minutes=59, seconds=59)


class DateRange:
    def __init__(self, start: Optional[datetime], end: Optional[datetime]):
        self.start = start
        self.end = end

    def __repr__(self):
        return f"DateRange(start={self.start!r}, end={self.end!r})"


def parse_date_range(start: Optional[str], end: Optional[str], now: Optional[datetime] = None) -> DateRange:
    """Resolve the configured range. The end is pushed to the end of its day; a missing end means now."""
    now = now or datetime.now(timezone.utc)
    parsed_start = _parse_date(start, now, 'start') if start else None
    parsed_end = _end_of_day(_parse_date(end, now, 'end')) if end else now
    if parsed_start is not None and parsed_end < parsed_start:
        raise ConfigError("date_range end is before start")
    return DateRange(parsed_start, parsed_end)


class CustomPeriod:
    def __init__(self, name: str, start: str, end: str):
        self.name = name
        self.start = start
        self.end = end

    def parse(self):
        start = _parse_date(self.start, None, f"custom period {self.name} start")
        end = _end_of_day(_parse_date(self.end, None, f"custom period {self.name} end"))
        return self.name, start, end


class RepositoryConfig:
    def __init__(self, owner: str, name: str = '', pattern: str = ''):
        self.owner = owner or ''
        self.name = name or ''
        self.pattern = pattern or ''

    def is_pattern(self) -> bool:
        return bool(self.pattern)

    def __repr__(self):
        return f"RepositoryConfig({self.owner}/{self.name or self.pattern})"


class TeamConfig:
    def __init__(self, name: str, members: Optional[List[str]] = None, color: str = ''):
        self.name = name or ''
        self.members = list(members or [])
        self.color = color or ''


class CacheConfig:
    def __init__(self, enabled: bool = True, directory: str = '.cache', ttl: str = DEFAULT_CACHE_TTL):
        self.enabled = bool(enabled)
        self.directory = directory or ''
        self.ttl = ttl or DEFAULT_CACHE_TTL

    def ttl_seconds(self) -> float:
        return parse_duration(self.ttl)


class Options:
    def __init__(
        self,
        concurrent_requests: int = 5,
        include_bots: bool = False,
        bot_patterns: Optional[List[str]] = None,
        clone_directory: str = '.repos',
        shallow_clone: bool = False,
        shallow_clone_buffer: int = 50,
        use_graphql: bool = True,
        repo_workers: int = 1,
        max_consecutive_old: int = 100,
        early_termination_threshold: int = 2,
        user_aliases: Optional[List[UserAlias]] = None,
    ):
        self.concurrent_requests = int(concurrent_requests)
        self.include_bots = bool(include_bots)
        self.bot_patterns = list(bot_patterns) if bot_patterns is not None else list(DEFAULT_BOT_PATTERNS)
        self.clone_directory = clone_directory or '.repos'
        self.shallow_clone = bool(shallow_clone)
        self.shallow_clone_buffer = int(shallow_clone_buffer)
        self.use_graphql = bool(use_graphql)
        self.repo_workers = int(repo_workers)
        self.max_consecutive_old = int(max_consecutive_old)
        self.early_termination_threshold = int(early_termination_threshold)
        self.user_aliases = list(user_aliases or [])


class Config:
    def __init__(
        self,
        auth_token: str = '',
        repositories: Optional[List[RepositoryConfig]] = None,
        date_start: Optional[str] = None,
        date_end: Optional[str] = None,
        granularity: Optional[List[str]] = None,
        custom_periods: Optional[List[CustomPeriod]] = None,
        teams: Optional[List[TeamConfig]] = None,
        scoring_enabled: bool = True,
        points: Optional[PointConfig] = None,
        cache: Optional[CacheConfig] = None,
        options: Optional[Options] = None,
    ):
        self.auth_token = auth_token or ''
        self.repositories = list(repositories or [])
        self.date_start = date_start
        self.date_end = date_end
        self.granularity = list(granularity) if granularity is not None else list(DEFAULT_GRANULARITY)
        self.custom_periods = list(custom_periods or [])
        self.teams = list(teams or [])
        self.scoring_enabled = bool(scoring_enabled)
        self.points = points or PointConfig()
        self.cache = cache or CacheConfig()
        self.options = options or Options()

    def date_range(self, now: Optional[datetime] = None) -> DateRange:
        return parse_date_range(self.date_start, self.date_end, now)

    def parsed_custom_periods(self):
        return [cp.parse() for cp in self.custom_periods]

    def is_bot(self, login: str) -> bool:
        """Case-insensitive glob match of a login against the bot patterns."""
        if self.options.include_bots or not login:
            return False
        lower = login.lower()
        return any(p and match_pattern(lower, p.lower()) for p in self.options.bot_patterns)

    def get_team_for_user(self, login: str) -> Optional[TeamConfig]:
        wanted = (login or '').lower()
        for team in self.teams:
            if any(m.lower() == wanted for m in team.members):
                return team
        return None

    def validate(self):
        """Raise ConfigError listing every problem found."""
        errors: List[str] = []
        if not self.auth_token:
            errors.append("auth: github_token must be configured")
        if not self.repositories:
            errors.append("repositories: at least one repository must be specified")
        for i, repo in enumerate(self.repositories):
            if not repo.owner:
                errors.append(f"repositories[{i}].owner: owner is required")
            if not repo.name and not repo.pattern:
                errors.append(f"repositories[{i}]: either name or pattern must be specified")
        try:
            self.date_range()
        except ConfigError as ex:
            errors.append(f"date_range: {ex}")
        for g in self.granularity:
            if g not in GRANULARITIES:
                errors.append(f"granularity: invalid granularity: {g} (must be one of {', '.join(GRANULARITIES)})")
        if 'custom' in self.granularity and not self.custom_periods:
            errors.append("custom_periods: custom granularity requires at least one custom period")
        for cp in self.custom_periods:
            try:
                cp.parse()
            except ConfigError as ex:
                errors.append(f"custom_periods: {ex}")
        for i, team in enumerate(self.teams):
            if not team.name:
                errors.append(f"teams[{i}].name: team name is required")
            if not team.members:
                errors.append(f"teams[{i}].members: team must have at least one member")
        for key in self.points.negative_keys():
            errors.append(f"scoring.points.{key}: point values cannot be negative")
        if self.cache.enabled:
            if not self.cache.directory:
                errors.append("cache.directory: cache directory is required when caching is enabled")
            try:
                self.cache.ttl_seconds()
            except ConfigError as ex:
                errors.append(f"cache.ttl: {ex}")
        if self.options.concurrent_requests < 1:
            errors.append("options.concurrent_requests: must be at least 1")
        if self.options.repo_workers < 1:
            errors.append("options.repo_workers: must be at least 1")
        if errors:
            raise ConfigError('; '.join(errors))


def _section(doc: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = doc.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key}: expected a mapping")
    return value


def _list(doc: Dict[str, Any], key: str) -> List[Any]:
    value = doc.get(key) or []
    if not isinstance(value, list):
        raise ConfigError(f"{key}: expected a list")
    return value


def _points(scoring: Dict[str, Any]) -> PointConfig:
    """Point values from an optional points_file, overridden by inline scoring.points."""
    merged: Dict[str, Any] = {}
    points_file = scoring.get('points_file')
    if points_file:
        try:
            merged.update(load_points(points_file).to_dict())
        except ValueError as ex:
            raise ConfigError(f"scoring.points_file: {ex}")
    inline = scoring.get('points') or {}
    if not isinstance(inline, dict):
        raise ConfigError("scoring.points: expected a mapping")
    merged.update(inline)
    return PointConfig.from_dict(merged)


def config_from_dict(doc: Dict[str, Any]) -> Config:
    auth = _section(doc, 'auth')
    date_range = _section(doc, 'date_range')
    scoring = _section(doc, 'scoring')
    cache = _section(doc, 'cache')
    opts = _section(doc, 'options')

    defaults = Options()
    options = Options(
        concurrent_requests=opts.get('concurrent_requests', defaults.concurrent_requests),
        include_bots=opts.get('include_bots', False),
        bot_patterns=list(DEFAULT_BOT_PATTERNS) + [p for p in _list(opts, 'bot_patterns') if p not in DEFAULT_BOT_PATTERNS],
        clone_directory=opts.get('clone_directory', defaults.clone_directory),
        shallow_clone=opts.get('shallow_clone', False),
        shallow_clone_buffer=opts.get('shallow_clone_buffer', defaults.shallow_clone_buffer),
        use_graphql=opts.get('use_graphql', True),
        repo_workers=opts.get('repo_workers', defaults.repo_workers),
        max_consecutive_old=opts.get('max_consecutive_old', defaults.max_consecutive_old),
        early_termination_threshold=opts.get('early_termination_threshold', defaults.early_termination_threshold),
        user_aliases=[UserAlias.from_dict(a) for a in _list(opts, 'user_aliases')],
    )
    granularity = doc.get('granularity')
    if isinstance(granularity, str):
        granularity = [granularity]
    return Config(
        auth_token=auth.get('github_token', ''),
        repositories=[RepositoryConfig(r.get('owner', ''), r.get('name', ''), r.get('pattern', '')) for r in _list(doc, 'repositories')],
        date_start=date_range.get('start') or None,
        date_end=date_range.get('end') or None,
        granularity=granularity,
        custom_periods=[CustomPeriod(p.get('name', ''), p.get('start', ''), p.get('end', '')) for p in _list(doc, 'custom_periods')],
        teams=[TeamConfig(t.get('name', ''), t.get('members'), t.get('color', '')) for t in _list(doc, 'teams')],
        scoring_enabled=scoring.get('enabled', True),
        points=_points(scoring),
        cache=CacheConfig(cache.get('enabled', True), cache.get('directory', '.cache'), cache.get('ttl', DEFAULT_CACHE_TTL)),
        options=options,
    )


def load_config(path: str, validate: bool = True) -> Config:
    """Read a YAML config file, expanding ${VAR} references, and validate it."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            text = f.read()
    except OSError as ex:
        raise ConfigError(f"failed to read config file: {ex}")
    try:
        doc = yaml.safe_load(expand_env_vars(text)) or {}
    except yaml.YAMLError as ex:
        raise ConfigError(f"failed to parse config file: {ex}")
    if not isinstance(doc, dict):
        raise ConfigError("config file must contain a mapping")
    cfg = config_from_dict(doc)
    if validate:
        cfg.validate()
    logger.debug("loaded config from %s: %d repositories, %d teams", path, len(cfg.repositories), len(cfg.teams))
    return cfg


__all__ = [
    "Config",
    "ConfigError",
    "RepositoryConfig",
    "TeamConfig",
    "CacheConfig",
    "Options",
    "CustomPeriod",
    "DateRange",
    "UserAlias",
    "load_config",
    "config_from_dict",
    "parse_date_range",
    "parse_relative_date",
    "parse_duration",
    "expand_env_vars",
]
