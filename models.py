"""codevoice data model — the units of work handed from stage to stage.

Ownership follows the pipeline: frames belong to the audio source until the
gate consumes them, a span belongs to whichever stage holds it, a hypothesis
is consumed once by the corrector, and a result is handed to the sink and
then discarded.
"""

import time
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class AudioFrame:
    """Fixed-duration block of mono int16 PCM at the canonical sample rate."""

    index: int
    timestamp: float
    samples: np.ndarray
    sample_rate: int = 16000

    def __post_init__(self):
        # Frames are shared with the ring buffer; nobody may write into them.
        self.samples.flags.writeable = False

    @property
    def duration(self):
        return len(self.samples) / self.sample_rate

    @property
    def amplitude(self):
        """Mean absolute amplitude, the energy measure used by the gate."""
        if len(self.samples) == 0:
            return 0.0
        return float(np.abs(self.samples.astype(np.int32)).mean())


class SpeechSpan:
    """Contiguous frames between speech onset and confirmed offset.

    Mutable while the gate accumulates it, frozen once the hangover expires.
    """

    def __init__(self, utterance_id, sample_rate=16000):
        self.utterance_id = utterance_id
        self.sample_rate = sample_rate
        self.frames = []
        self.speech_frames = 0
        self.last_speech_index = None
        self.forced = False         # ended by max duration, not by hangover
        self.enhanced = False       # produced by the noise suppressor
        self.finalized_at = None
        self._samples = None

    @property
    def frozen(self):
        return self._samples is not None

    def append(self, frame, is_speech):
        if self.frozen:
            raise RuntimeError(f"Span {self.utterance_id} is frozen")
        self.frames.append(frame)
        if is_speech:
            self.speech_frames += 1
            self.last_speech_index = frame.index

    def freeze(self):
        if self.frozen:
            return self
        if self.frames:
            samples = np.concatenate([f.samples for f in self.frames])
        else:
            samples = np.array([], dtype=np.int16)
        samples.flags.writeable = False
        self._samples = samples
        self.finalized_at = time.time()
        return self

    @property
    def samples(self):
        if not self.frozen:
            raise RuntimeError(f"Span {self.utterance_id} is still accumulating")
        return self._samples

    @property
    def start_index(self):
        return self.frames[0].index if self.frames else None

    @property
    def end_index(self):
        return self.frames[-1].index if self.frames else None

    @property
    def start_time(self):
        return self.frames[0].timestamp if self.frames else None

    @property
    def num_samples(self):
        if self.frozen:
            return len(self._samples)
        return sum(len(f.samples) for f in self.frames)

    def __len__(self):
        return self.num_samples

    @property
    def duration(self):
        return self.num_samples / self.sample_rate

    @property
    def speech_ratio(self):
        if not self.frames:
            return 0.0
        return self.speech_frames / len(self.frames)

    def with_samples(self, samples):
        """Return a frozen copy carrying replacement audio of identical length."""
        if len(samples) != self.num_samples:
            raise ValueError(
                f"Replacement audio has {len(samples)} samples, span has {self.num_samples}"
            )
        span = SpeechSpan(self.utterance_id, self.sample_rate)
        span.frames = self.frames
        span.speech_frames = self.speech_frames
        span.last_speech_index = self.last_speech_index
        span.forced = self.forced
        span.enhanced = True
        samples = np.asarray(samples, dtype=np.int16).copy()
        samples.flags.writeable = False
        span._samples = samples
        span.finalized_at = self.finalized_at
        return span

    def __repr__(self):
        state = "frozen" if self.frozen else "open"
        return (f"SpeechSpan(id={self.utterance_id}, frames={len(self.frames)}, "
                f"duration={self.duration:.2f}s, {state})")


@dataclass(frozen=True)
class BiasVocabulary:
    """Ordered terms used to condition decoding, bounded by a token budget."""

    terms: Tuple[str, ...] = ()
    prompt: str = ""
    token_count: int = 0
    token_budget: int = 0

    def __len__(self):
        return len(self.terms)

    def __iter__(self):
        return iter(self.terms)

    def __bool__(self):
        return bool(self.terms)


@dataclass(frozen=True)
class TokenConfidence:
    text: str
    probability: float
    start: Optional[float] = None
    end: Optional[float] = None


@dataclass(frozen=True)
class SuppressedSegment:
    """A piece of decoder output dropped as a hallucination, kept for provenance."""

    text: str
    reason: str


@dataclass(frozen=True)
class TranscriptionHypothesis:
    """Raw acoustic output for exactly one SpeechSpan."""

    utterance_id: int
    text: str
    tokens: Tuple[TokenConfidence, ...] = ()
    suppressed: Tuple[SuppressedSegment, ...] = ()
    model: str = ""
    language: str = ""
    audio_seconds: float = 0.0
    decode_seconds: float = 0.0
    truncated: bool = False     # deadline hit after some segments decoded
    skipped_decode: bool = False  # silence fast path

    @property
    def is_empty(self):
        return not self.text.strip()

    @property
    def confidence(self):
        if not self.tokens:
            return None
        return sum(t.probability for t in self.tokens) / len(self.tokens)

    @classmethod
    def empty(cls, utterance_id, model="", reason=None, audio_seconds=0.0):
        suppressed = (SuppressedSegment("", reason),) if reason else ()
        return cls(utterance_id=utterance_id, text="", suppressed=suppressed,
                   model=model, audio_seconds=audio_seconds, skipped_decode=True)


@dataclass(frozen=True)
class PartialHypothesis:
    """Incremental decode output. UI feedback only, never correction input."""

    utterance_id: int
    text: str
    segment_index: int


@dataclass(frozen=True)
class CorrectionContext:
    """Snapshot of the editing context around the cursor. May be stale."""

    language: str = ""
    preceding_lines: Tuple[str, ...] = ()
    following_lines: Tuple[str, ...] = ()
    current_line: str = ""
    cursor_line: int = 0
    cursor_column: int = 0
    file_path: str = ""
    captured_at: float = field(default_factory=time.time)

    def window(self, lines_before, lines_after):
        """Return (before, after) line tuples limited to the requested window."""
        before = self.preceding_lines[-lines_before:] if lines_before > 0 else ()
        after = self.following_lines[:lines_after] if lines_after > 0 else ()
        return before, after

    @property
    def indentation(self):
        """Leading whitespace of the line the cursor is on."""
        line = self.current_line
        return line[:len(line) - len(line.lstrip())]


@dataclass(frozen=True)
class ContextSnapshot:
    """What the context indexer hands over once per utterance."""

    keywords: Tuple[str, ...] = ()
    context: CorrectionContext = field(default_factory=CorrectionContext)


@dataclass(frozen=True)
class AppliedCorrection:
    kind: str
    before: str
    after: str


@dataclass(frozen=True)
class PipelineResult:
    """Final output for one utterance plus its provenance. Terminal."""

    utterance_id: int
    text: str
    hypothesis: TranscriptionHypothesis
    corrections: Tuple[AppliedCorrection, ...] = ()
    degraded: bool = False
    degradation_reason: str = ""
    language: str = ""
    correction_model: str = ""
    created_at: float = field(default_factory=time.time)

    @property
    def raw_text(self):
        return self.hypothesis.text


@dataclass(frozen=True)
class Revision:
    """Verifier output that disagrees with an already delivered draft."""

    utterance_id: int
    draft_text: str
    verified_text: str
    model: str
