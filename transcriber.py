"""codevoice acoustic transcriber — faster-whisper decoding with bias prompt and hallucination guards.

One decode per model at a time (single flight) on a dedicated worker thread,
so the deadline holds even when the decoder blocks inside a segment. Segments
come out of the decoder lazily; the gap between segments is where partial text
is streamed and shutdown is honoured.
"""

import gc
import os
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from bias import BiasBuilder
from errors import FatalPipelineError, ModelLoadError, TranscriptionError
from hallucination import HallucinationFilter, collapse_repetitions, normalize
from logging_utils import describe_text, log_debug, log_error, log_info, log_warn
from models import (BiasVocabulary, PartialHypothesis, Revision, SuppressedSegment,
                    TokenConfidence, TranscriptionHypothesis)

# Temperature fallback schedule (re-decode hotter when quality checks fail)
TEMPERATURES = (0.0, 0.2, 0.4, 0.6, 0.8, 1.0)


@dataclass(frozen=True)
class DecodedSegment:
    text: str
    no_speech_prob: float = 0.0
    avg_logprob: float = 0.0
    words: Tuple[TokenConfidence, ...] = field(default_factory=tuple)


@dataclass
class _DecodeProgress:
    """What the decode worker has produced so far for one span."""
    texts: List[str] = field(default_factory=list)
    tokens: List[TokenConfidence] = field(default_factory=list)
    suppressed: List[SuppressedSegment] = field(default_factory=list)
    cancelled: bool = False
    abandoned: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)


class WhisperBackend:
    """faster-whisper model wrapper. Load/unload mirror the GPU lifecycle."""

    def __init__(self, config, model, device='auto', compute_type='int8'):
        self.name = model
        self.device = device
        self.compute_type = compute_type
        self.language = config.get('language') or None
        self.beam_size = config.get('beam_size', 1)
        self.word_confidence = config.get('word_confidence', True)
        self.no_speech_threshold = config.get('no_speech_threshold', 0.6)
        self.log_prob_threshold = config.get('log_prob_threshold', -1.0)
        self.compression_ratio_threshold = config.get('compression_ratio_threshold', 2.4)
        self.model = None

    @property
    def loaded(self):
        return self.model is not None

    def load(self):
        """Load weights. ModelLoadError is retried later; FatalPipelineError is not."""
        if self.model is not None:
            return
        from faster_whisper import WhisperModel

        log_info(f"[MODELS] Loading Whisper model ({self.name})...")
        try:
            self.model = WhisperModel(
                self.name,
                device=self.device,
                compute_type=self.compute_type
            )
        except MemoryError as e:
            raise FatalPipelineError(f"Out of memory loading '{self.name}': {e}") from e
        except Exception as e:
            if os.path.isdir(self.name) or os.path.isfile(self.name):
                raise FatalPipelineError(
                    f"Model files at '{self.name}' exist but could not be loaded (corrupt weights?): {e}"
                ) from e
            raise ModelLoadError(self.name, str(e)) from e
        log_info(f"[MODELS] Whisper model loaded ({self.name})")

    def unload(self):
        """Drop the model and free accelerator memory. Idempotent, no-throw."""
        if self.model is None:
            return
        try:
            del self.model
        except Exception as e:
            log_error(f"[MODELS] Whisper unload failed: {e}")
        self.model = None

        # Force garbage collection and clear CUDA cache
        try:
            gc.collect()
            import torch
            if torch.cuda.is_available():
                torch.cuda.empty_cache()
        except ImportError:
            pass
        except Exception as e:
            log_debug(f"[MODELS] CUDA cache clear failed: {e}")
        log_debug(f"[MODELS] Whisper unloaded ({self.name})")

    def count_tokens(self, text):
        """Token count as the decoder sees an initial prompt (leading space included)."""
        tokenizer = getattr(self.model, 'hf_tokenizer', None)
        if tokenizer is None:
            from bias import approximate_token_count
            return approximate_token_count(text)
        return len(tokenizer.encode(" " + text.strip(), add_special_tokens=False).ids)

    def decode(self, audio, prompt=""):
        """Yield DecodedSegments for float32 16 kHz audio. Lazy: decoding happens as you iterate."""
        if self.model is None:
            raise TranscriptionError(f"Model '{self.name}' is not loaded")
        segments, _info = self.model.transcribe(
            audio,
            language=self.language,
            beam_size=self.beam_size,
            initial_prompt=prompt or None,
            temperature=list(TEMPERATURES),
            compression_ratio_threshold=self.compression_ratio_threshold,
            log_prob_threshold=self.log_prob_threshold,
            no_speech_threshold=self.no_speech_threshold,
            condition_on_previous_text=False,
            without_timestamps=True,
            word_timestamps=self.word_confidence,
            suppress_blank=True,
            vad_filter=False,
        )
        for segment in segments:
            words = ()
            if segment.words:
                words = tuple(
                    TokenConfidence(w.word.strip(), float(w.probability), w.start, w.end)
                    for w in segment.words
                )
            yield DecodedSegment(
                text=segment.text,
                no_speech_prob=float(segment.no_speech_prob),
                avg_logprob=float(segment.avg_logprob),
                words=words,
            )


ACOUSTIC_BACKENDS = {
    'whisper': WhisperBackend,
}


def build_acoustic_backend(config, role='acoustic'):
    """Backend for the draft ('acoustic') or verifier ('speculative') role."""
    name = config.get('acoustic_backend', 'whisper')
    if name not in ACOUSTIC_BACKENDS:
        raise ValueError(f"Unknown acoustic backend '{name}'. Available: {sorted(ACOUSTIC_BACKENDS)}")
    return ACOUSTIC_BACKENDS[name](
        config,
        config[f'{role}_model'],
        device=config.get(f'{role}_device', 'auto'),
        compute_type=config.get(f'{role}_compute_type', 'int8'),
    )


class AcousticTranscriber:
    """Span + bias vocabulary -> TranscriptionHypothesis, around any backend with decode()."""

    def __init__(self, config, backend, bias_builder=None, hallucination_filter=None):
        self.backend = backend
        self.sample_rate = config['sample_rate']
        self.frame_size = config['frame_size']
        self.energy_threshold = config['energy_threshold']
        self.min_speech_seconds = config.get('min_speech_seconds', 0.3)
        self.timeout = config.get('acoustic_timeout', 10.0)
        self.bias_builder = bias_builder or BiasBuilder(config, self._count_tokens)
        self.filter = hallucination_filter or HallucinationFilter(config)
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="decode")
        self._inflight = None
        self.decode_calls = 0

    @property
    def name(self):
        return getattr(self.backend, 'name', type(self.backend).__name__)

    @property
    def busy(self):
        inflight = self._inflight
        return self._lock.locked() or (inflight is not None and not inflight.done())

    def _count_tokens(self, text):
        counter = getattr(self.backend, 'count_tokens', None)
        if counter is None or not getattr(self.backend, 'loaded', True):
            from bias import approximate_token_count
            return approximate_token_count(text)
        return counter(text)

    def build_bias(self, keywords):
        return self.bias_builder.build(keywords)

    def silence_reason(self, span):
        """Why the span needs no decode at all, or None if it should be decoded."""
        if span.num_samples < self.min_speech_seconds * self.sample_rate:
            return "too_short"
        if span.speech_frames == 0:
            return "no_speech_frames"
        samples = span.samples
        usable = len(samples) - len(samples) % self.frame_size
        if usable == 0:
            return "too_short"
        energy = np.abs(samples[:usable].astype(np.int32)).reshape(-1, self.frame_size).mean(axis=1)
        if energy.max() < self.energy_threshold:
            return "silence"
        return None

    def transcribe(self, span, bias=None, on_partial=None, should_stop=None):
        """Decode one frozen span. Raises TranscriptionError; the span is not retried."""
        bias = bias or BiasVocabulary()
        reason = self.silence_reason(span)
        if reason:
            log_debug(f"[TRANSCRIBE] Span {span.utterance_id} skipped ({reason})")
            return TranscriptionHypothesis.empty(
                span.utterance_id, model=self.name, reason=reason, audio_seconds=span.duration
            )

        audio = span.samples.astype(np.float32) / 32768.0
        progress = _DecodeProgress()
        truncated = False

        with self._lock:
            self.decode_calls += 1
            start = time.monotonic()
            future = self._executor.submit(
                self._decode, audio, bias.prompt, span.utterance_id, on_partial, should_stop, progress
            )
            self._inflight = future
            try:
                future.result(timeout=self.timeout)
            except FutureTimeout:
                # The worker may still be inside the backend; it stops at the next segment.
                progress.abandoned.set()
                truncated = True
            except TranscriptionError:
                raise
            except Exception as e:
                raise TranscriptionError(f"Decode failed for span {span.utterance_id}: {e}") from e
            decode_seconds = time.monotonic() - start

        with progress.lock:
            texts = list(progress.texts)
            tokens = list(progress.tokens)
            suppressed = list(progress.suppressed)
            cancelled = progress.cancelled

        if cancelled and not texts:
            raise TranscriptionError(f"Decode of span {span.utterance_id} cancelled")
        if truncated:
            if not texts:
                raise TranscriptionError(
                    f"Decode of span {span.utterance_id} exceeded {self.timeout:.1f}s with no output"
                )
            log_warn(f"[TRANSCRIBE] Deadline hit, keeping {len(texts)} decoded segment(s)")

        words, removed = collapse_repetitions(" ".join(texts).split())
        if removed:
            suppressed.append(SuppressedSegment(f"{removed} repeated word(s)", "repetition"))
        text = " ".join(words)

        log_info(f"[TRANSCRIBE] Span {span.utterance_id}: {span.duration:.1f}s audio in "
                 f"{decode_seconds:.2f}s, {describe_text(text)}")
        return TranscriptionHypothesis(
            utterance_id=span.utterance_id,
            text=text,
            tokens=tuple(tokens),
            suppressed=tuple(suppressed),
            model=self.name,
            language=getattr(self.backend, 'language', None) or "",
            audio_seconds=span.duration,
            decode_seconds=decode_seconds,
            truncated=truncated or cancelled,
        )

    def _decode(self, audio, prompt, utterance_id, on_partial, should_stop, progress):
        """Runs on the decode worker. Segment gaps are the only points it can stop at."""
        for index, segment in enumerate(self.backend.decode(audio, prompt)):
            if progress.abandoned.is_set():
                return
            reason = self.filter.check_segment(
                segment.text, segment.no_speech_prob, segment.avg_logprob
            )
            with progress.lock:
                if reason:
                    if segment.text.strip():
                        progress.suppressed.append(SuppressedSegment(segment.text.strip(), reason))
                else:
                    progress.texts.append(segment.text.strip())
                    progress.tokens.extend(segment.words)
                    texts = list(progress.texts)
            if reason:
                log_debug(f"[TRANSCRIBE] Suppressed segment ({reason})")
            else:
                self._emit_partial(on_partial, utterance_id, texts, index)

            if should_stop is not None and should_stop():
                with progress.lock:
                    progress.cancelled = True
                return

    def close(self):
        """Release the decode worker. A decode still running finishes in the background."""
        self._executor.shutdown(wait=False)

    def _emit_partial(self, on_partial, utterance_id, texts, index):
        if on_partial is None:
            return
        try:
            on_partial(PartialHypothesis(utterance_id, " ".join(texts), index))
        except Exception as e:
            log_error(f"[TRANSCRIBE] Partial callback failed: {e}")


class SpeculativeVerifier:
    """
    Re-decodes already delivered utterances with a larger model when the
    pipeline is idle. The draft result is never held back; disagreements are
    reported afterwards as a Revision.
    """

    def __init__(self, config, transcriber, is_idle, on_revision):
        self.transcriber = transcriber
        self.is_idle = is_idle
        self.on_revision = on_revision
        self._jobs = queue.Queue(maxsize=2)
        self._stop = threading.Event()
        self._thread = None
        self.verified = 0
        self.revisions = 0
        self.dropped = 0

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="verifier", daemon=True)
        self._thread.start()

    def stop(self, timeout=2.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def submit(self, span, bias, hypothesis):
        """Queue a verification. Oldest pending job is dropped when full."""
        if hypothesis.is_empty:
            return
        job = (span, bias, hypothesis)
        try:
            self._jobs.put_nowait(job)
        except queue.Full:
            try:
                self._jobs.get_nowait()
                self.dropped += 1
            except queue.Empty:
                pass
            self._jobs.put_nowait(job)

    def _run(self):
        while not self._stop.is_set():
            try:
                job = self._jobs.get(timeout=0.2)
            except queue.Empty:
                continue
            while not self.is_idle():
                if self._stop.wait(0.05):
                    return
            try:
                self.verify(*job)
            except Exception as e:
                log_warn(f"[VERIFY] Verification failed: {e}")

    def verify(self, span, bias, hypothesis):
        """Decode span with the verifier model. Returns a Revision if it disagrees, else None."""
        verified = self.transcriber.transcribe(span, bias, should_stop=self._stop.is_set)
        self.verified += 1
        if verified.is_empty or normalize(verified.text) == normalize(hypothesis.text):
            log_debug(f"[VERIFY] Span {span.utterance_id} confirmed")
            return None
        revision = Revision(
            utterance_id=hypothesis.utterance_id,
            draft_text=hypothesis.text,
            verified_text=verified.text,
            model=self.transcriber.name,
        )
        self.revisions += 1
        log_info(f"[VERIFY] Span {span.utterance_id} revised by {self.transcriber.name}")
        self.on_revision(revision)
        return revision
