"""codevoice context indexer — editing context and ranked identifiers, refreshed per utterance.

The OS integration layer owns the real context (accessibility tree, editor
plugins). This module is the boundary: providers turn whatever that layer
hands over into a ContextSnapshot.
"""

import os
import re
import threading
from collections import Counter

from logging_utils import log_debug
from models import ContextSnapshot, CorrectionContext

LANGUAGE_BY_EXTENSION = {
    '.rs': 'rust',
    '.py': 'python', '.pyi': 'python',
    '.go': 'go',
    '.ts': 'typescript', '.tsx': 'typescript',
    '.js': 'javascript', '.jsx': 'javascript', '.mjs': 'javascript',
    '.java': 'java',
    '.c': 'c', '.h': 'c',
    '.cc': 'cpp', '.cpp': 'cpp', '.hpp': 'cpp',
    '.sh': 'shell', '.bash': 'shell', '.zsh': 'shell',
    '.md': 'markdown', '.txt': 'text',
}

LANGUAGE_KEYWORDS = {
    'rust': {'fn', 'let', 'mut', 'pub', 'impl', 'struct', 'enum', 'use', 'mod', 'match',
             'self', 'Self', 'where', 'trait', 'async', 'await', 'return', 'crate'},
    'python': {'def', 'class', 'import', 'from', 'return', 'self', 'None', 'True', 'False',
               'elif', 'lambda', 'with', 'yield', 'async', 'await', 'pass', 'raise'},
    'go': {'func', 'package', 'import', 'type', 'struct', 'interface', 'return', 'var',
           'const', 'defer', 'chan', 'range', 'nil'},
    'typescript': {'function', 'const', 'let', 'var', 'interface', 'type', 'export',
                   'import', 'return', 'class', 'extends', 'implements', 'async', 'await',
                   'undefined', 'null', 'this'},
    'javascript': {'function', 'const', 'let', 'var', 'export', 'import', 'return', 'class',
                   'extends', 'async', 'await', 'undefined', 'null', 'this'},
    'java': {'public', 'private', 'protected', 'class', 'interface', 'static', 'final',
             'void', 'return', 'import', 'package', 'new', 'this', 'extends', 'implements'},
}

_COMMON_WORDS = {
    'the', 'and', 'for', 'with', 'this', 'that', 'from', 'into', 'not', 'are', 'was',
    'but', 'all', 'any', 'can', 'has', 'have', 'will', 'when', 'then', 'else', 'true',
    'false', 'new', 'get', 'set', 'out', 'use', 'let', 'var', 'end', 'if', 'in', 'of',
    'to', 'is', 'it', 'be', 'as', 'or', 'at', 'by', 'on', 'an',
}

_IDENTIFIER_RE = re.compile(r'\b[A-Za-z_][A-Za-z0-9_]{2,}\b')
_FILENAME_RE = re.compile(r'[\w.-]+\.(\w{1,4})\b')

# Content fingerprints used when no file name is known.
_CONTENT_HINTS = (
    ('rust', re.compile(r'\bfn\s+\w+\s*\(|\blet\s+mut\b|\bimpl\b.*\{|->\s*Result<')),
    ('python', re.compile(r'^\s*def\s+\w+\(.*\)\s*:|^\s*import\s+\w+|^\s*from\s+\w+\s+import', re.M)),
    ('go', re.compile(r'^\s*package\s+\w+|\bfunc\s+(\(\w+\s+\*?\w+\)\s*)?\w+\(', re.M)),
    ('typescript', re.compile(r'\binterface\s+\w+\s*\{|:\s*(string|number|boolean)\b')),
    ('javascript', re.compile(r'\bconst\s+\w+\s*=\s*(\(|function|require\()')),
)


def detect_language(file_path='', text='', window_class=''):
    """Best guess at the language being edited: extension, then terminal, then content."""
    if file_path:
        ext = os.path.splitext(file_path)[1].lower()
        if ext in LANGUAGE_BY_EXTENSION:
            return LANGUAGE_BY_EXTENSION[ext]
    if window_class:
        from text_output import is_terminal
        if is_terminal(window_class):
            return 'shell'
    if text:
        first = text.lstrip().split('\n', 1)[0]
        if first.startswith('#!'):
            if 'python' in first:
                return 'python'
            if 'sh' in first:
                return 'shell'
        for language, pattern in _CONTENT_HINTS:
            if pattern.search(text):
                return language
    return ''


def language_from_title(title):
    """Editor window titles usually lead with the file name ("main.rs - project - Code")."""
    if not title:
        return '', ''
    for match in _FILENAME_RE.finditer(title):
        name = match.group(0)
        ext = os.path.splitext(name)[1].lower()
        if ext in LANGUAGE_BY_EXTENSION:
            return LANGUAGE_BY_EXTENSION[ext], name
    return '', ''


def rank_identifiers(text, cursor_offset=None, language='', limit=32):
    """Identifiers in text ordered by relevance: frequency plus proximity to the cursor.

    Language keywords and common English words are excluded; identifiers that
    look technical (snake_case, camelCase, digits) get a bonus.
    """
    if not text:
        return []
    keywords = LANGUAGE_KEYWORDS.get(language, set())
    counts = Counter()
    nearest = {}
    for match in _IDENTIFIER_RE.finditer(text):
        word = match.group(0)
        if word in keywords or word.lower() in _COMMON_WORDS:
            continue
        counts[word] += 1
        if cursor_offset is not None:
            distance = abs(match.start() - cursor_offset)
            if word not in nearest or distance < nearest[word]:
                nearest[word] = distance

    def score(word):
        value = float(counts[word])
        if '_' in word or re.search(r'[a-z][A-Z]', word) or re.search(r'\d', word):
            value += 1.5
        if cursor_offset is not None and word in nearest:
            value += 4.0 / (1.0 + nearest[word] / 200.0)
        return value

    ranked = sorted(counts, key=lambda w: (-score(w), w))
    return ranked[:limit]


def split_window(text, cursor_offset):
    """Split text at the cursor into (preceding_lines, current_line, following_lines, line, column)."""
    if cursor_offset is None or cursor_offset < 0:
        cursor_offset = len(text)
    cursor_offset = min(cursor_offset, len(text))
    before = text[:cursor_offset]
    after = text[cursor_offset:]
    before_lines = before.split('\n')
    after_lines = after.split('\n')
    current = before_lines[-1] + after_lines[0]
    line = len(before_lines) - 1
    column = len(before_lines[-1])
    return tuple(before_lines[:-1]), current, tuple(after_lines[1:]), line, column


class StaticContextProvider:
    """Fixed language and keywords from [context] in settings.conf."""

    def __init__(self, config):
        self.language = config.get('context_language', '')
        self.keywords = tuple(config.get('context_keywords', []))
        self.max_keywords = config.get('bias_max_keywords', 32)

    def snapshot(self):
        return ContextSnapshot(
            keywords=self.keywords[:self.max_keywords],
            context=CorrectionContext(language=self.language),
        )


class TextWindowContextProvider(StaticContextProvider):
    """Context pushed in by an editor integration: buffer text, cursor offset, file path."""

    def __init__(self, config):
        super().__init__(config)
        self._lock = threading.Lock()
        self._text = ''
        self._cursor = None
        self._file_path = ''

    def update(self, text, cursor_offset=None, file_path=''):
        with self._lock:
            self._text = text or ''
            self._cursor = cursor_offset
            self._file_path = file_path or ''

    def snapshot(self):
        with self._lock:
            text, cursor, file_path = self._text, self._cursor, self._file_path
        language = detect_language(file_path, text) or self.language
        preceding, current, following, line, column = split_window(text, cursor)
        ranked = rank_identifiers(text, cursor, language, self.max_keywords)
        keywords = _merge(ranked, self.keywords, self.max_keywords)
        return ContextSnapshot(
            keywords=keywords,
            context=CorrectionContext(
                language=language,
                preceding_lines=preceding,
                following_lines=following,
                current_line=current,
                cursor_line=line,
                cursor_column=column,
                file_path=file_path,
            ),
        )


class ActiveWindowContextProvider(StaticContextProvider):
    """Language from the focused window (title file name, terminal class); keywords from config."""

    def snapshot(self):
        from text_output import get_active_window_class, get_active_window_title
        title = get_active_window_title()
        language, file_name = language_from_title(title)
        if not language:
            language = detect_language(window_class=get_active_window_class() or '') or self.language
        log_debug(f"[CONTEXT] Window '{title}' -> language '{language}'")
        return ContextSnapshot(
            keywords=self.keywords[:self.max_keywords],
            context=CorrectionContext(language=language, file_path=file_name),
        )


PROVIDERS = {
    'static': StaticContextProvider,
    'text': TextWindowContextProvider,
    'window': ActiveWindowContextProvider,
}


def build_context_provider(config):
    name = config.get('context_provider', 'static')
    if name not in PROVIDERS:
        raise ValueError(f"Unknown context provider '{name}'. Available: {sorted(PROVIDERS)}")
    return PROVIDERS[name](config)


def _merge(first, second, limit):
    seen = set()
    merged = []
    for word in list(first) + list(second):
        key = word.lower()
        if key in seen:
            continue
        seen.add(key)
        merged.append(word)
        if len(merged) >= limit:
            break
    return tuple(merged)
