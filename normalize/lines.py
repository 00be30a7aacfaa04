"""
Line-level change classification.

Classifies single changed lines as meaningful code, comments or whitespace and
counts them across a unified diff patch. Every function here is pure and uses only
module-level immutable tables, so it is safe to call from any number of threads.
"""
from enum import Enum
from typing import Optional

# Longer prefixes come first: '///' must win over '//', '/**' over '/*'.
COMMENT_PREFIXES = (
    '///',
    '//',
    '#',
    '/**',
    '/*',
    '*/',
    '<!--',
    '-->',
    '--',
    ';',
    "'",
    '"""',
    "'''",
)

DOC_COMMENT_PREFIXES = ('///', '//!', '/**', '"""', "'''")

ANNOTATION_PREFIXES = ('* @', '*  @', '// @', '# @')

# markers stripped before looking at what follows a comment marker
COMMENTED_CODE_MARKERS = ('///', '//', '#', '/*', '--', ';')

CODE_ENDINGS = (';', '{', '}', '(', ')', ',', ':', '=>', '->')

CODE_KEYWORDS = (
    'if', 'else', 'for', 'while', 'switch', 'case', 'return', 'break', 'continue',
    'const', 'let', 'var', 'func', 'function', 'def', 'class', 'struct', 'type',
    'import', 'from', 'package', 'public', 'private', 'protected', 'static',
    'async', 'await', 'try', 'catch', 'throw', 'raise',
)

CODE_OPERATORS = (' = ', ' := ', ' == ', ' != ')

DOC_FILE_PATTERNS = (
    '.md',
    '.markdown',
    '.rst',
    '.txt',
    '.adoc',
    'readme',
    'changelog',
    'license',
    'contributing',
    'docs/',
    'documentation/',
    '/doc/',
)

TEST_FILE_PATTERNS = ('_test.go', '.test.', '.spec.', '/tests/', '/test/', '__tests__')


class LineType(Enum):
    MEANINGFUL = 'meaningful'
    COMMENT = 'comment'
    WHITESPACE = 'whitespace'


def is_whitespace_line(line: str) -> bool:
    return (line or '').strip() == ''


def _is_block_continuation(trimmed: str) -> bool:
    # '*' alone or followed by whitespace or '/' continues a block comment; '*ptr = x' does not
    if not trimmed.startswith('*'):
        return False
    if len(trimmed) == 1:
        return True
    return trimmed[1] in (' ', '\t', '/')


def is_comment_line(line: str) -> bool:
    trimmed = (line or '').strip()
    if not trimmed:
        return False
    for prefix in COMMENT_PREFIXES:
        if trimmed.startswith(prefix):
            return True
    return _is_block_continuation(trimmed)


def classify(line: str) -> LineType:
    """Classify one changed line. Always returns exactly one LineType."""
    if is_whitespace_line(line):
        return LineType.WHITESPACE
    if is_comment_line(line):
        return LineType.COMMENT
    return LineType.MEANINGFUL


def is_doc_comment(line: str) -> bool:
    """True for documentation comment syntaxes (///, //!, /**, docstring quotes) and annotation lines."""
    trimmed = (line or '').strip()
    if trimmed.startswith(DOC_COMMENT_PREFIXES):
        return True
    return trimmed.startswith(ANNOTATION_PREFIXES)


def _strip_comment_marker(trimmed: str) -> Optional[str]:
    for marker in COMMENTED_CODE_MARKERS:
        if trimmed.startswith(marker):
            return trimmed[len(marker):].strip()
    return None


def _starts_with_keyword(text: str) -> bool:
    for kw in CODE_KEYWORDS:
        if text == kw:
            return True
        if text.startswith(kw) and text[len(kw)] in (' ', '('):
            return True
    return False


def is_commented_out_code(line: str) -> bool:
    """Best-effort guess whether a comment line is disabled code.

    Looks at the text after the comment marker. Known misses: prose ending in a
    colon ("Note:") is flagged, and code without punctuation, keywords or
    operators (a bare call like ``foo bar``) is not. Callers treat the result as
    a statistic, not a fact.
    """
    trimmed = (line or '').strip()
    text = _strip_comment_marker(trimmed)
    if not text:
        return False
    if text.endswith(CODE_ENDINGS):
        return True
    if _starts_with_keyword(text):
        return True
    padded = f' {text} '
    return any(op in padded for op in CODE_OPERATORS)


def is_documentation_file(path: str) -> bool:
    lowered = (path or '').lower()
    return any(p in lowered for p in DOC_FILE_PATTERNS)


def is_test_file(path: str) -> bool:
    lowered = (path or '').lower()
    if any(p in lowered for p in TEST_FILE_PATTERNS):
        return True
    base = lowered.rsplit('/', 1)[-1]
    return base.startswith('test_') and base.endswith('.py')


def is_rename_or_move(old_path: str, new_path: str) -> bool:
    return bool(old_path) and bool(new_path) and old_path != new_path


class PatchStats:
    """Line counts for one unified diff patch."""

    def __init__(self):
        self.total_additions = 0
        self.total_deletions = 0
        self.meaningful_additions = 0
        self.meaningful_deletions = 0
        self.comment_additions = 0
        self.comment_deletions = 0
        self.doc_comment_additions = 0
        self.doc_comment_deletions = 0
        self.commented_code_additions = 0
        self.commented_code_deletions = 0

    def add(self, other: 'PatchStats'):
        for k, v in vars(other).items():
            setattr(self, k, getattr(self, k) + v)

    def to_dict(self):
        return dict(vars(self))

    def __eq__(self, other):
        return isinstance(other, PatchStats) and vars(self) == vars(other)

    def __repr__(self):
        return f"PatchStats({vars(self)})"


def _count_line(stats: PatchStats, content: str, side: str):
    setattr(stats, f'total_{side}', getattr(stats, f'total_{side}') + 1)
    kind = classify(content)
    if kind is LineType.MEANINGFUL:
        setattr(stats, f'meaningful_{side}', getattr(stats, f'meaningful_{side}') + 1)
    elif kind is LineType.COMMENT:
        setattr(stats, f'comment_{side}', getattr(stats, f'comment_{side}') + 1)
        if is_doc_comment(content):
            setattr(stats, f'doc_comment_{side}', getattr(stats, f'doc_comment_{side}') + 1)
        if is_commented_out_code(content):
            setattr(stats, f'commented_code_{side}', getattr(stats, f'commented_code_{side}') + 1)


def analyze_patch(patch: str) -> PatchStats:
    """Count added/removed lines of a unified diff by classification.
    File headers (+++/---) and hunk headers (@@) are ignored.
    """
    stats = PatchStats()
    for raw in (patch or '').split('\n'):
        if raw.startswith('+++') or raw.startswith('---') or raw.startswith('@@'):
            continue
        if raw.startswith('+'):
            _count_line(stats, raw[1:], 'additions')
        elif raw.startswith('-'):
            _count_line(stats, raw[1:], 'deletions')
    return stats


__all__ = [
    "LineType",
    "PatchStats",
    "classify",
    "is_comment_line",
    "is_whitespace_line",
    "is_doc_comment",
    "is_commented_out_code",
    "is_documentation_file",
    "is_test_file",
    "is_rename_or_move",
    "analyze_patch",
]
