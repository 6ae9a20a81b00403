"""codevoice hallucination suppression — decoder output that no speaker said.

Whisper fills silence and noise with boilerplate ("thanks for watching"),
loops on a single token, or produces segments it itself rates as no-speech.
"""

import re

from models import SuppressedSegment

MAX_REPEATS = 3

# Whole-segment phrases that are also things people actually dictate.
AMBIGUOUS_PHRASES = frozenset({"thank you", "you", "bye bye"})

_NORMALIZE_RE = re.compile(r"[^\w\s\[\]()']")


def normalize(text):
    return " ".join(_NORMALIZE_RE.sub(" ", text.lower()).split())


class HallucinationFilter:

    def __init__(self, config):
        self.phrases = {normalize(p) for p in config.get('hallucination_phrases', [])}
        self.phrases.discard("")
        self.no_speech_threshold = config.get('no_speech_threshold', 0.6)
        self.log_prob_threshold = config.get('log_prob_threshold', -1.0)
        self.ambiguous_no_speech_threshold = config.get('ambiguous_no_speech_threshold', 0.3)

    def is_boilerplate(self, text, no_speech_prob=1.0):
        """True if the segment is nothing but known silence phrases.

        A segment made only of ambiguous phrases counts as boilerplate only
        when the decoder also rated it likely non-speech.
        """
        remaining = normalize(text)
        if not remaining:
            return True
        # Peel known phrases off the front, longest first.
        phrases = sorted(self.phrases, key=len, reverse=True)
        only_ambiguous = True
        progress = True
        while remaining and progress:
            progress = False
            for phrase in phrases:
                if remaining == phrase or remaining.startswith(phrase + " "):
                    remaining = remaining[len(phrase):].strip()
                    only_ambiguous = only_ambiguous and phrase in AMBIGUOUS_PHRASES
                    progress = True
                    break
        if remaining:
            return False
        return not only_ambiguous or no_speech_prob >= self.ambiguous_no_speech_threshold

    def check_segment(self, text, no_speech_prob=0.0, avg_logprob=0.0):
        """Reason to suppress a decoded segment, or None to keep it."""
        if not text.strip():
            return "empty"
        if no_speech_prob > self.no_speech_threshold and avg_logprob < self.log_prob_threshold:
            return "no_speech"
        if self.is_boilerplate(text, no_speech_prob):
            return "boilerplate"
        return None

    def filter_segments(self, segments):
        """Split (text, no_speech_prob, avg_logprob) triples into kept texts and suppressed markers."""
        kept = []
        suppressed = []
        for text, no_speech_prob, avg_logprob in segments:
            reason = self.check_segment(text, no_speech_prob, avg_logprob)
            if reason is None:
                kept.append(text)
            elif text.strip():
                suppressed.append(SuppressedSegment(text.strip(), reason))
        return kept, suppressed


def collapse_repetitions(words, max_repeats=MAX_REPEATS):
    """Cut decoder loops: a word repeated more than max_repeats times in a row is truncated.

    Returns (kept_words, removed_count).
    """
    kept = []
    removed = 0
    run = 0
    previous = None
    for word in words:
        key = normalize(word)
        if key and key == previous:
            run += 1
        else:
            run = 1
            previous = key
        if run > max_repeats:
            removed += 1
            continue
        kept.append(word)
    return kept, removed
