"""codevoice text processing — spoken punctuation, word replacement and case commands."""

import re
from logging_utils import log_debug

# "snake case user config" -> user_config; the words run until punctuation, a line break or end of text
_CASE_COMMAND_RE = re.compile(
    r'\b(snake|camel|pascal|kebab|screaming snake|constant)\s+case\s+'
    r'([A-Za-z0-9]+(?: [A-Za-z0-9]+)*)(?=[ \t]*(?:[^A-Za-z0-9 \t]|$))',
    re.IGNORECASE
)


def process_text(text, config):
    """Apply punctuation conversion and word replacements from config."""
    # Apply spoken punctuation rules (from config, pre-built as (pattern_str, replacement) tuples)
    for pattern, replacement in config['spoken_punctuation']:
        text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)

    # Apply word replacements (from config)
    for wrong, right in config['word_replacements'].items():
        text = re.sub(r'\b' + re.escape(wrong) + r'\b', right, text, flags=re.IGNORECASE)

    text = apply_case_commands(text)

    # Clean up whitespace
    text = re.sub(r' +', ' ', text)                    # Multiple spaces -> single
    text = re.sub(r' *\n *', '\n', text)               # No spaces around newlines
    text = re.sub(r' ([.,!?;:\)\]\}])', r'\1', text)   # Remove space before closing punct
    text = re.sub(r'([(\[\{]) ', r'\1', text)          # Remove space after opening punct

    return text.strip(' ')


def split_words(text):
    """Words of a spoken identifier, with camelCase and snake_case pulled apart."""
    text = re.sub(r'([a-z0-9])([A-Z])', r'\1 \2', text)
    return [w.lower() for w in re.split(r'[\s_\-]+', text) if w]


def to_case(words, style):
    if not words:
        return ''
    if style == 'snake':
        return '_'.join(words)
    if style in ('screaming snake', 'constant'):
        return '_'.join(words).upper()
    if style == 'kebab':
        return '-'.join(words)
    if style == 'camel':
        return words[0] + ''.join(w.capitalize() for w in words[1:])
    if style == 'pascal':
        return ''.join(w.capitalize() for w in words)
    raise ValueError(f"Unknown case style '{style}'")


def apply_case_commands(text):
    """Rewrite "camel case max retry count" as maxRetryCount, and so on."""
    def replace(match):
        style = ' '.join(match.group(1).lower().split())
        result = to_case(split_words(match.group(2)), style)
        log_debug(f"[TEXT] {style} case -> {result}")
        return result
    return _CASE_COMMAND_RE.sub(replace, text)

