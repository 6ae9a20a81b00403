"""codevoice bias vocabulary — ranked identifiers squeezed into a bounded decoder prompt."""

import math
import re

from logging_utils import log_debug
from models import BiasVocabulary

_PIECE_RE = re.compile(r"\w+|[^\w\s]")
_MAX_TERM_CHARS = 64


def approximate_token_count(text):
    """Rough BPE estimate: one token per 4 characters of each word, one per symbol."""
    count = 0
    for piece in _PIECE_RE.findall(text):
        if piece[0].isalnum() or piece[0] == '_':
            count += max(1, math.ceil(len(piece) / 4))
        else:
            count += 1
    return count


def render_prompt(terms):
    if not terms:
        return ""
    return ", ".join(terms) + "."


class BiasBuilder:
    """
    Rebuilt once per utterance from the context indexer's ranked keywords.

    Context keywords come first (most relevant first), then the static
    technical vocabulary. A term is admitted only if the whole rendered prompt
    still fits the token budget, so the budget holds for any tokenizer.
    """

    def __init__(self, config, count_tokens=None):
        self.token_budget = config.get('bias_token_budget', 50)
        self.max_keywords = config.get('bias_max_keywords', 32)
        self.vocabulary = list(config.get('bias_vocabulary', []))
        self.count_tokens = count_tokens or approximate_token_count

    def build(self, keywords=()):
        candidates = _clean_terms(list(keywords)[:self.max_keywords] + self.vocabulary)
        terms = []
        prompt = ""
        count = 0
        for term in candidates:
            trial = render_prompt(terms + [term])
            n = self.count_tokens(trial)
            if n > self.token_budget:
                continue
            terms.append(term)
            prompt = trial
            count = n
        if len(terms) < len(candidates):
            log_debug(f"[BIAS] {len(terms)}/{len(candidates)} terms fit in {self.token_budget} tokens")
        return BiasVocabulary(
            terms=tuple(terms),
            prompt=prompt,
            token_count=count,
            token_budget=self.token_budget,
        )


def _clean_terms(terms):
    seen = set()
    cleaned = []
    for term in terms:
        term = " ".join(str(term).split())
        if not term or len(term) > _MAX_TERM_CHARS:
            continue
        key = term.lower()
        if key in seen:
            continue
        seen.add(key)
        cleaned.append(term)
    return cleaned
