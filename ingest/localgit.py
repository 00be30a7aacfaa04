"""
Local git history extraction.

Clones or updates repositories under ``<clone_dir>/<owner>/<name>`` and walks every
local ref (branches, remote-tracking branches, tags) newest-first through the git
CLI. Commits reachable from several refs are emitted once. Each ref's walk is bounded
by the requested window:

- a hard cutoff seven days before ``since`` ends the ref outright
- commits before ``since`` are skipped; MAX_CONSECUTIVE_OLD skips in a row end the ref
- commits after ``until`` are skipped without counting towards that limit

Per-commit line statistics come from the unified diff against the first parent (the
empty tree for root commits), classified by normalize.lines. In a shallow clone the
boundary commits look parentless to git; the walk of a ref ends there instead.
"""
import base64
import logging
import os
import subprocess
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from ingest.cancel import CancelToken, ensure_token
from ingest.errors import RepositoryError
from ingest.fetcher import hard_cutoff
from normalize.lines import PatchStats, analyze_patch, is_documentation_file, is_test_file, is_rename_or_move
from normalize.models import Author, Commit
from normalize.util import parse_timestamp, extract_login

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_OLD = 100
PROGRESS_EVERY = 10
EMPTY_TREE = '4b825dc642cb6eb9a060e54bf8d69288fbee4904'
GITHUB_CLONE_URL = 'https://github.com/{owner}/{name}.git'

# one line per commit, fields separated by the ASCII unit separator
_FIELDS = ('sha', 'parents', 'author_name', 'author_email', 'author_date', 'committer_name', 'committer_email', 'committer_date', 'subject')
_LOG_FORMAT = '%x1f'.join(('%H', '%P', '%an', '%ae', '%aI', '%cn', '%ce', '%cI', '%s'))

_MISSING_OBJECT_MARKERS = ('object not found', 'bad object', 'missing', 'invalid object', 'unable to read', 'shallow')


def _noop_report(message: str):
    pass


class GitError(RepositoryError):
    def __init__(self, message: str, stderr: str = ''):
        super().__init__(message)
        self.stderr = stderr

    def is_missing_object(self) -> bool:
        text = (self.stderr or str(self)).lower()
        return any(marker in text for marker in _MISSING_OBJECT_MARKERS)


def _git(repo_path: Optional[str], *args: str, config: Optional[List[str]] = None) -> str:
    cmd = ['git', '-c', 'core.quotepath=off']
    for item in config or []:
        cmd += ['-c', item]
    cmd += list(args)
    proc = subprocess.run(cmd, cwd=repo_path, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, encoding='utf-8', errors='replace')
    if proc.returncode != 0:
        stderr = (proc.stderr or '').strip()
        raise GitError(f"git {args[0]} failed: {stderr}", stderr=stderr)
    return proc.stdout


def _is_git_repo(path: str) -> bool:
    if not os.path.isdir(path):
        return False
    try:
        _git(path, 'rev-parse', '--git-dir')
        return True
    except GitError:
        return False


class WalkStep(Enum):
    CONTINUE_REF = 'continue'
    STOP_REF = 'stop'


class SeenSet:
    """Commit hashes already emitted during one extraction call."""

    def __init__(self):
        self._hashes = set()

    def add(self, sha: str) -> bool:
        """Record a hash; False when it was already present."""
        if sha in self._hashes:
            return False
        self._hashes.add(sha)
        return True

    def __contains__(self, sha: str) -> bool:
        return sha in self._hashes

    def __len__(self) -> int:
        return len(self._hashes)


class RefWindow:
    """Date window plus the per-ref consecutive-old counter."""

    def __init__(self, since: Optional[datetime], until: Optional[datetime], max_consecutive_old: int = MAX_CONSECUTIVE_OLD):
        self.since = since
        self.until = until
        self.cutoff = hard_cutoff(since)
        self.max_consecutive_old = max_consecutive_old
        self.consecutive_old = 0

    def reset(self):
        self.consecutive_old = 0

    def step(self, date: datetime) -> Tuple[WalkStep, bool]:
        """Decide what to do with one commit: (walk step, whether to emit it)."""
        if self.cutoff is not None and date < self.cutoff:
            return WalkStep.STOP_REF, False
        if self.since is not None and date < self.since:
            self.consecutive_old += 1
            if self.consecutive_old >= self.max_consecutive_old:
                return WalkStep.STOP_REF, False
            return WalkStep.CONTINUE_REF, False
        if self.until is not None and date > self.until:
            return WalkStep.CONTINUE_REF, False
        self.consecutive_old = 0
        return WalkStep.CONTINUE_REF, True


def list_refs(repo_path: str) -> List[str]:
    """Local branches, remote-tracking branches and tags that point (directly or peeled) at commits."""
    out = _git(repo_path, 'for-each-ref', '--format=%(refname)%09%(objecttype)%09%(*objecttype)', 'refs/heads', 'refs/remotes', 'refs/tags')
    refs = []
    for line in out.splitlines():
        refname, objtype, peeled = (line.split('\t') + ['', ''])[:3]
        if refname.endswith('/HEAD'):
            continue
        if objtype == 'commit' or peeled == 'commit':
            refs.append(refname)
    return refs


def shallow_boundary(repo_path: str) -> Set[str]:
    """Hashes git recorded as the grafted edge of a shallow clone (empty for full clones)."""
    path = _git(repo_path, 'rev-parse', '--git-path', 'shallow').strip()
    if not os.path.isabs(path):
        path = os.path.join(repo_path, path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return {line.strip() for line in f if line.strip()}
    except FileNotFoundError:
        return set()


def _iter_log(repo_path: str, ref: str) -> Iterator[Dict[str, str]]:
    """Stream commits of one ref newest-first. Stops the git process when the consumer stops."""
    cmd = ['git', '-c', 'core.quotepath=off', 'log', '--date-order', f'--format={_LOG_FORMAT}', ref, '--']
    proc = subprocess.Popen(cmd, cwd=repo_path, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, encoding='utf-8', errors='replace')
    finished = False
    try:
        for line in proc.stdout:
            fields = line.rstrip('\n').split('\x1f')
            if len(fields) < len(_FIELDS):
                continue
            yield dict(zip(_FIELDS, fields[: len(_FIELDS) - 1] + ['\x1f'.join(fields[len(_FIELDS) - 1:])]))
        finished = True
    finally:
        if not finished:
            proc.kill()
        proc.stdout.close()
        stderr = proc.stderr.read()
        proc.stderr.close()
        returncode = proc.wait()
    if returncode != 0:
        raise GitError(f"git log {ref} failed: {stderr.strip()}", stderr=stderr)


def _split_diff(diff: str) -> List[Tuple[str, str, str]]:
    """Split a multi-file unified diff into (old_path, new_path, text) chunks."""
    chunks: List[Tuple[str, str, str]] = []
    old_path = new_path = ''
    lines: List[str] = []

    def flush():
        if lines:
            chunks.append((old_path, new_path, '\n'.join(lines)))

    for line in diff.split('\n'):
        if line.startswith('diff --git '):
            flush()
            lines = []
            header = line[len('diff --git '):]
            a_part, _, b_part = header.partition(' b/')
            old_path = a_part[2:] if a_part.startswith('a/') else a_part
            new_path = b_part
            continue
        if line.startswith('--- a/'):
            old_path = line[len('--- a/'):]
        elif line.startswith('+++ b/'):
            new_path = line[len('+++ b/'):]
        elif line.startswith('+++ /dev/null'):
            new_path = ''
        elif line.startswith('rename from '):
            old_path = line[len('rename from '):]
        elif line.startswith('rename to '):
            new_path = line[len('rename to '):]
        lines.append(line)
    flush()
    return chunks


class CommitStats:
    def __init__(self):
        self.lines = PatchStats()
        self.files_changed = 0
        self.has_tests = False


def commit_stats(repo_path: str, sha: str, parents: List[str]) -> CommitStats:
    """Line/file statistics of a commit against its first parent, documentation files excluded."""
    base = parents[0] if parents else EMPTY_TREE
    diff = _git(repo_path, 'diff', '--no-color', '--no-ext-diff', '-M', base, sha)
    result = CommitStats()
    for old_path, new_path, text in _split_diff(diff):
        path = new_path or old_path
        if is_test_file(path):
            result.has_tests = True
        if is_documentation_file(path):
            continue
        patch = analyze_patch(text)
        if is_rename_or_move(old_path, new_path) and patch.total_additions == 0 and patch.total_deletions == 0:
            # a pure move carries no authored lines
            continue
        result.files_changed += 1
        result.lines.add(patch)
    return result


def _author(name: str, email: str) -> Author:
    return Author(login=extract_login(email, name), name=name, email=email)


def _build_commit(repo_path: str, repository: str, meta: Dict[str, str], date: datetime) -> Commit:
    parents = meta['parents'].split()
    stats = commit_stats(repo_path, meta['sha'], parents)
    return Commit(
        sha=meta['sha'],
        message=meta['subject'],
        author=_author(meta['author_name'], meta['author_email']),
        committer=_author(meta['committer_name'], meta['committer_email']),
        date=date,
        repository=repository,
        additions=stats.lines.total_additions,
        deletions=stats.lines.total_deletions,
        files_changed=stats.files_changed,
        url=f"https://github.com/{repository}/commit/{meta['sha']}",
        meaningful_additions=stats.lines.meaningful_additions,
        meaningful_deletions=stats.lines.meaningful_deletions,
        comment_additions=stats.lines.comment_additions,
        comment_deletions=stats.lines.comment_deletions,
        has_tests=stats.has_tests,
    )


def extract_commits(
    repo_path: str,
    owner: str,
    name: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    report: Optional[Callable[[str], None]] = None,
    cancel: Optional[CancelToken] = None,
    max_consecutive_old: int = MAX_CONSECUTIVE_OLD,
) -> List[Commit]:
    """Extract distinct commits in [since, until] from every local ref of a working copy."""
    report = report or _noop_report
    cancel = ensure_token(cancel)
    if not _is_git_repo(repo_path):
        raise RepositoryError(f"not a git repository: {repo_path}")

    repository = f"{owner}/{name}"
    seen = SeenSet()
    boundary = shallow_boundary(repo_path)
    commits: List[Commit] = []

    for ref in list_refs(repo_path):
        window = RefWindow(since, until, max_consecutive_old)
        try:
            for meta in _iter_log(repo_path, ref):
                cancel.check()
                if meta['sha'] in seen:
                    continue
                if meta['sha'] in boundary:
                    logger.debug("%s: reached shallow boundary on %s", repository, ref)
                    break
                date = parse_timestamp(meta['author_date'])
                step, emit = window.step(date)
                if step is WalkStep.STOP_REF:
                    break
                if not emit:
                    continue
                seen.add(meta['sha'])
                commits.append(_build_commit(repo_path, repository, meta, date))
                if len(commits) % PROGRESS_EVERY == 0:
                    report(f"    {repository}: processed {len(commits)} commits")
        except GitError as ex:
            if not ex.is_missing_object():
                raise
            logger.debug("%s: reached shallow boundary on %s", repository, ref)

    report(f"    {repository}: {len(commits)} commits extracted from local history")
    return commits


def _auth_config(token: str) -> List[str]:
    if not token:
        return []
    creds = base64.b64encode(f"x-access-token:{token}".encode('utf-8')).decode('ascii')
    return [f"http.extraHeader=Authorization: Basic {creds}"]


class Repository:
    """Manages local clones below a base directory."""

    def __init__(self, base_dir: str, report: Optional[Callable[[str], None]] = None, max_consecutive_old: int = MAX_CONSECUTIVE_OLD):
        self.base_dir = base_dir
        self.report = report or _noop_report
        self.max_consecutive_old = max_consecutive_old

    def repo_path(self, owner: str, name: str) -> str:
        return os.path.join(self.base_dir, owner, name)

    def ensure_cloned(self, owner: str, name: str, token: str = '', depth: Optional[int] = None, remote_url: Optional[str] = None, cancel: Optional[CancelToken] = None) -> str:
        """Clone the repository, or fetch all branches and tags when a clone already exists."""
        ensure_token(cancel).check()
        path = self.repo_path(owner, name)
        auth = _auth_config(token)
        depth_args = [f'--depth={int(depth)}'] if depth else []
        try:
            if os.path.isdir(os.path.join(path, '.git')):
                self.report(f"    Updating local clone of {owner}/{name}")
                _git(path, 'fetch', '--force', '--prune', '--tags', *depth_args, 'origin', config=auth)
            else:
                url = remote_url or GITHUB_CLONE_URL.format(owner=owner, name=name)
                self.report(f"    Cloning {owner}/{name}")
                os.makedirs(os.path.dirname(path), exist_ok=True)
                extra = ['--no-single-branch'] if depth else []
                _git(None, 'clone', '--no-checkout', *depth_args, *extra, url, path, config=auth)
        except GitError as ex:
            raise RepositoryError(f"failed to clone or update {owner}/{name}: {ex.stderr or ex}") from ex
        return path

    def fetch_commits(self, owner: str, name: str, since: Optional[datetime] = None, until: Optional[datetime] = None, cancel: Optional[CancelToken] = None) -> List[Commit]:
        return extract_commits(self.repo_path(owner, name), owner, name, since, until, report=self.report, cancel=cancel, max_consecutive_old=self.max_consecutive_old)


__all__ = ["Repository", "extract_commits", "commit_stats", "list_refs", "shallow_boundary", "RefWindow", "SeenSet", "WalkStep", "GitError"]
