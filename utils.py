"""
Utility functions for the Stashvault store.
"""

import os
import re
from collections import Counter
from datetime import datetime, time, timezone
from typing import Dict, List, Optional

from errors import ValidationError

SNIPPET_RADIUS = 32

_LANGUAGES = {
    '.js': 'javascript',
    '.jsx': 'javascript',
    '.mjs': 'javascript',
    '.ts': 'typescript',
    '.tsx': 'typescript',
    '.py': 'python',
    '.rb': 'ruby',
    '.go': 'go',
    '.rs': 'rust',
    '.java': 'java',
    '.kt': 'kotlin',
    '.cs': 'csharp',
    '.cpp': 'cpp',
    '.hpp': 'cpp',
    '.c': 'c',
    '.h': 'c',
    '.php': 'php',
    '.swift': 'swift',
    '.sh': 'bash',
    '.bash': 'bash',
    '.zsh': 'bash',
    '.fish': 'bash',
    '.env': 'bash',
    '.ps1': 'powershell',
    '.sql': 'sql',
    '.html': 'html',
    '.htm': 'html',
    '.css': 'css',
    '.scss': 'scss',
    '.sass': 'sass',
    '.less': 'less',
    '.json': 'json',
    '.yaml': 'yaml',
    '.yml': 'yaml',
    '.xml': 'xml',
    '.md': 'markdown',
    '.markdown': 'markdown',
    '.txt': 'text',
    '.toml': 'toml',
    '.ini': 'ini',
    '.cfg': 'ini',
    '.conf': 'ini',
    '.dockerfile': 'docker',
    '.lua': 'lua',
    '.r': 'r',
    '.dart': 'dart',
    '.scala': 'scala',
    '.zig': 'zig',
    '.nim': 'nim',
    '.ex': 'elixir',
    '.exs': 'elixir',
    '.erl': 'erlang',
    '.hs': 'haskell',
    '.ml': 'ocaml',
    '.clj': 'clojure',
    '.lisp': 'lisp',
    '.vue': 'markup',
    '.svelte': 'markup',
}

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def detect_language(filename: str) -> str:
    """
    Guess a file's language from its extension.

    Args:
        filename: The file name, with or without directories

    Returns:
        Language identifier, or an empty string when unknown
    """
    base = os.path.basename(filename or '').lower()
    if base == 'dockerfile':
        return 'docker'
    if base == 'makefile':
        return 'makefile'
    ext = os.path.splitext(base)[1]
    if not ext and base.startswith('.'):
        # dotfiles such as ".env" have no splitext extension
        ext = base
    return _LANGUAGES.get(ext, '')


def tokenize(text: Optional[str]) -> List[str]:
    """Lowercase word tokens of ``text``."""
    if not text:
        return []
    return [token.lower() for token in _TOKEN_RE.findall(text)]


def term_frequencies(text: Optional[str]) -> Dict[str, int]:
    return dict(Counter(tokenize(text)))


def make_snippet(text: Optional[str], terms: List[str], radius: int = SNIPPET_RADIUS) -> Optional[str]:
    """
    Cut a short window of ``text`` around the first matching term.

    Matches are wrapped in ``**``. Returns None when no term occurs.
    """
    if not text or not terms:
        return None
    lowered = text.lower()
    hits = [(lowered.find(term), term) for term in terms if term and term in lowered]
    if not hits:
        return None
    pos, term = min(hits)
    start = max(0, pos - radius)
    end = min(len(text), pos + len(term) + radius)
    window = text[start:pos] + '**' + text[pos:pos + len(term)] + '**' + text[pos + len(term):end]
    window = ' '.join(window.split())
    prefix = '…' if start > 0 else ''
    suffix = '…' if end < len(text) else ''
    return f"{prefix}{window}{suffix}"


def escape_like(value: str) -> str:
    """Escape LIKE wildcards; use with ``escape='\\\\'``."""
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


def parse_time_bound(value, end_of_day: bool = False) -> Optional[datetime]:
    """
    Parse an ISO date or datetime used as a range bound.

    A bare date used as an upper bound covers that whole day. Aware values are
    converted to naive UTC, the form timestamps are stored in.

    Raises:
        ValidationError: If the value is not an ISO date/datetime
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError(f"Invalid ISO date: {value!r}", value=str(value))
        if end_of_day and len(text) == 10:
            parsed = datetime.combine(parsed.date(), time.max)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))
