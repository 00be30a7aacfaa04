"""
CLI entry point for contrib-velocity. Wires the pipeline: ingest -> reconcile -> aggregate -> score
and writes the resulting GlobalMetrics as JSON.
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from config import ConfigError, load_config
from ingest.cancel import CancelToken, Cancelled
from ingest.errors import FetchError, RepositoryError
from pipeline import Pipeline
from storage.cache import FileCache
from storage.retry import configure_retry

logger = logging.getLogger("velocity")

DEFAULT_CONFIG_FILES = ("velocity.yaml", "config.yaml")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130


def _print_json(obj):
    print(json.dumps(obj, indent=2, default=str))


def _print_cache_stats(cache: FileCache):
    _print_json(cache.stats())


def _print_cache_list(cache: FileCache):
    _print_json(cache.list_keys(limit=1000))


def _print_cache_get(cache: FileCache, key: str):
    value, found = cache.get(key)
    if not found:
        print(f"Cache key not found: {key}")
    else:
        _print_json(value)


def _confirm(prompt: str) -> bool:
    return input(prompt).strip().lower() in ("y", "yes")


def _remove_cache_key(cache: FileCache, key: str, force: bool):
    if not force and not _confirm(f"Are you sure you want to remove cache key '{key}' from {cache.directory}? [y/N]: "):
        print("Aborted cache key removal.")
        return
    _, found = cache.get(key)
    if not found:
        print(f"Cache key not found: {key}")
        return
    cache.delete(key)
    print(f"Removed cache key: {key}")


def _clear_cache(cache: FileCache, force: bool):
    if not force and not _confirm(f"Are you sure you want to clear the cache at {cache.directory}? This cannot be undone. [y/N]: "):
        print("Aborted cache clear.")
        return
    cache.clear()
    print(f"Cleared cache at {cache.directory}")


def _cache_action_requested(args) -> bool:
    return bool(args.cache_info or args.cache_clear or args.cache_list or args.cache_get or args.cache_remove)


def _handle_cache_actions(args, directory: str) -> bool:
    """Run the requested cache inspection/management action.

    Returns True when an action was performed and the CLI should exit.
    """
    if not _cache_action_requested(args):
        return False
    cache = FileCache(directory)
    flag_actions = [
        (args.cache_info, lambda: _print_cache_stats(cache)),
        (args.cache_clear, lambda: _clear_cache(cache, args.force)),
        (args.cache_list, lambda: _print_cache_list(cache)),
        (bool(args.cache_get), lambda: _print_cache_get(cache, args.cache_get)),
        (bool(args.cache_remove), lambda: _remove_cache_key(cache, args.cache_remove, args.force)),
    ]
    for enabled, handler in flag_actions:
        if enabled:
            handler()
            return True
    return True


def _resolve_config_path(path: str) -> str:
    if path:
        return path
    for candidate in DEFAULT_CONFIG_FILES:
        if os.path.exists(candidate):
            return candidate
    return DEFAULT_CONFIG_FILES[0]


def _apply_overrides(cfg, args):
    """CLI flags and GITHUB_TOKEN take precedence over the config file."""
    token = args.github_token or os.getenv("GITHUB_TOKEN")
    if token:
        cfg.auth_token = token
    if args.start:
        cfg.date_start = args.start
    if args.end:
        cfg.date_end = args.end
    if args.no_cache:
        cfg.cache.enabled = False
    if args.repo_workers:
        cfg.options.repo_workers = args.repo_workers


def write_output(document: dict, out_file: str):
    """Write the metrics document to a file, or stdout when no file is given."""
    text = json.dumps(document, indent=2, default=str)
    if not out_file:
        print(text)
        return
    out_dir = os.path.dirname(out_file)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    with open(out_file, "w", encoding="utf-8") as f:
        f.write(text)
    print(f"Wrote metrics to {out_file}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Contribution velocity metrics for GitHub repositories")
    parser.add_argument("-c", "--config", type=str, default="", help="Path to the YAML config (default: velocity.yaml or config.yaml)")
    parser.add_argument("-o", "--output", type=str, default="", help="Write the metrics JSON to this file instead of stdout")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--start", type=str, default="", help="Override date_range.start (YYYY-MM-DD or -30d/-2w/-3m/-1y)")
    parser.add_argument("--end", type=str, default="", help="Override date_range.end")
    parser.add_argument("--github-token", type=str, default="", help="GitHub token (overrides config and GITHUB_TOKEN env)")
    parser.add_argument("--repo-workers", type=int, default=0, help="Number of repositories processed in parallel")
    parser.add_argument("--no-cache", action="store_true", help="Disable the API response cache for this run")
    # retry/backoff knobs; VELOCITY_MAX_RETRIES, VELOCITY_BACKOFF_BASE, VELOCITY_BACKOFF_JITTER and
    # VELOCITY_MAX_BACKOFF set the defaults
    parser.add_argument("--max-retries", type=int, default=None, help="Maximum retry attempts for HTTP requests (overrides VELOCITY_MAX_RETRIES env)")
    parser.add_argument("--backoff-base", type=float, default=None, help="Base backoff seconds (overrides VELOCITY_BACKOFF_BASE env)")
    parser.add_argument("--backoff-jitter", type=float, default=None, help="Jitter seconds added to backoff (overrides VELOCITY_BACKOFF_JITTER env)")
    parser.add_argument("--max-backoff", type=float, default=None, help="Maximum backoff cap in seconds (overrides VELOCITY_MAX_BACKOFF env)")
    parser.add_argument("--cache-info", action="store_true", help="Show cache statistics")
    parser.add_argument("--cache-clear", action="store_true", help="Clear the response cache")
    parser.add_argument("--cache-list", action="store_true", help="List cache keys")
    parser.add_argument("--cache-get", type=str, default="", help="Print the cached value of a key")
    parser.add_argument("--cache-remove", type=str, default="", help="Remove a specific cache key")
    parser.add_argument("--force", action="store_true", help="Skip confirmation (use with --cache-clear or --cache-remove)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    configure_retry(max_retries=args.max_retries, backoff_base=args.backoff_base, backoff_jitter=args.backoff_jitter, max_backoff=args.max_backoff)

    config_path = _resolve_config_path(args.config)
    cache_only = _cache_action_requested(args)
    try:
        cfg = load_config(config_path, validate=False)
        _apply_overrides(cfg, args)
        if not cache_only:
            cfg.validate()
    except ConfigError as ex:
        print(f"Configuration error: {ex}", file=sys.stderr)
        return EXIT_CONFIG

    if _handle_cache_actions(args, cfg.cache.directory):
        return EXIT_OK

    cancel = CancelToken()
    try:
        metrics = Pipeline(cfg, report=logger.info, cancel=cancel).run()
    except KeyboardInterrupt:
        cancel.cancel()
        print("Interrupted.", file=sys.stderr)
        return EXIT_CANCELLED
    except Cancelled:
        print("Cancelled.", file=sys.stderr)
        return EXIT_CANCELLED
    except (RepositoryError, FetchError) as ex:
        logger.error("run failed: %s", ex)
        return EXIT_FAILURE

    write_output(metrics.to_dict(), args.output)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
