"""codevoice pipeline — the stage threads between the audio source and the output sink.

    frames -> [gate thread] -> span_queue -> [transcribe thread] -> hyp_queue
           -> [correct thread] -> OrderedEmitter -> sink / history

Capture and VAD never wait on inference: the gate thread only ever does a
non-blocking put. Spans are delivered in the order the gate finalized them,
whatever order their results become ready in.
"""

import queue
import threading
from collections import deque

from errors import TranscriptionError
from logging_utils import describe_text, log_debug, log_error, log_info, log_warn
from models import ContextSnapshot

_STOP = object()


class OrderedEmitter:
    """Releases results strictly in registration order, skipping utterances that produced nothing."""

    def __init__(self, deliver):
        self._deliver = deliver
        self._order = deque()
        self._done = {}
        self._lock = threading.Lock()

    def register(self, utterance_id):
        with self._lock:
            self._order.append(utterance_id)

    def submit(self, result):
        with self._lock:
            self._done[result.utterance_id] = result
            self._drain()

    def unregister(self, utterance_id):
        """Forget an utterance that never reached a stage (dropped at hand-off)."""
        with self._lock:
            try:
                self._order.remove(utterance_id)
            except ValueError:
                return
            self._drain()

    def skip(self, utterance_id):
        """Mark an utterance as finished without output (dropped, silent, failed)."""
        with self._lock:
            self._done[utterance_id] = None
            self._drain()

    @property
    def pending(self):
        with self._lock:
            return len(self._order)

    def _drain(self):
        # Runs under the lock so two results can never reach the sink out of order.
        while self._order and self._order[0] in self._done:
            result = self._done.pop(self._order.popleft())
            if result is None:
                continue
            try:
                self._deliver(result)
            except Exception as e:
                log_error(f"[PIPELINE] Delivery of utterance {result.utterance_id} failed: {e}")


class Pipeline:
    def __init__(self, config, source, gate, transcriber, corrector, context_provider, sink,
                 suppressor=None, history=None, verifier=None):
        self.config = config
        self.source = source
        self.gate = gate
        self.transcriber = transcriber
        self.corrector = corrector
        self.context_provider = context_provider
        self.sink = sink
        self.suppressor = suppressor
        self.history = history
        self.verifier = verifier
        self.stream_partials = config.get('stream_partials', False)

        size = config.get('span_queue_size', 8)
        self.span_queue = queue.Queue(maxsize=size)
        self.hyp_queue = queue.Queue(maxsize=size)
        self.emitter = OrderedEmitter(self._deliver)

        self._stop = threading.Event()
        self._cancel = threading.Event()
        self._drain_on_stop = True
        self._threads = []

        self.spans_dropped = 0
        self.utterances_failed = 0
        self.results_delivered = 0

    # --- lifecycle ---------------------------------------------------------

    @property
    def running(self):
        return any(t.is_alive() for t in self._threads)

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._cancel.clear()
        self._threads = [
            threading.Thread(target=self._gate_loop, name="gate", daemon=True),
            threading.Thread(target=self._transcribe_loop, name="transcribe", daemon=True),
            threading.Thread(target=self._correct_loop, name="correct", daemon=True),
        ]
        for t in self._threads:
            t.start()
        if self.verifier is not None:
            self.verifier.start()
        log_debug("[PIPELINE] Started")

    def stop(self, drain=True, timeout=None):
        """Stop the stages.

        drain=True lets every finalized span run to its result (and finalizes
        an open span). drain=False cancels in-flight decode at its next
        segment boundary and discards queued spans.
        """
        self._drain_on_stop = drain
        if not drain:
            self._cancel.set()
        self._stop.set()
        if self.verifier is not None:
            self.verifier.stop()
        for t in self._threads:
            t.join(timeout)
            if t.is_alive():
                log_warn(f"[PIPELINE] Thread '{t.name}' did not stop within {timeout}s")
        self._threads = []
        log_debug("[PIPELINE] Stopped")

    def is_idle(self):
        """True when no span is open, queued, or being decoded or corrected."""
        return (self.gate.state == self.gate.SILENCE
                and self.span_queue.empty()
                and self.hyp_queue.empty()
                and not self.transcriber.busy
                and not self.corrector.busy
                and self.emitter.pending == 0)

    # --- stage threads -----------------------------------------------------

    def _gate_loop(self):
        try:
            for frame in self.source.frames(self._stop):
                span = self.gate.process(frame)
                if span is not None:
                    self._enqueue(span)
            if self._drain_on_stop:
                span = self.gate.flush()
                if span is not None:
                    self._enqueue(span)
            else:
                self.gate.reset()
        except Exception as e:
            log_error(f"[PIPELINE] Gate stage failed: {e}")
        finally:
            self.span_queue.put(_STOP)

    def _enqueue(self, span):
        """Hand a finalized span to the transcriber. A full queue drops the new span."""
        # Registered first: the stages may finish the span before put_nowait returns.
        self.emitter.register(span.utterance_id)
        try:
            self.span_queue.put_nowait(span)
        except queue.Full:
            self.emitter.unregister(span.utterance_id)
            self.spans_dropped += 1
            log_error(f"[PIPELINE] Span queue full, dropped utterance {span.utterance_id} "
                      f"({span.duration:.1f}s)")
            self._status("overloaded", "Transcription is falling behind; an utterance was dropped")
            return
        log_debug(f"[PIPELINE] Queued span {span.utterance_id} ({span.duration:.1f}s)")

    def _transcribe_loop(self):
        while True:
            span = self.span_queue.get()
            if span is _STOP:
                self.hyp_queue.put(_STOP)
                return
            if self._cancel.is_set():
                self.emitter.skip(span.utterance_id)
                continue
            try:
                work = self.transcribe_span(span)
            except Exception as e:
                log_error(f"[PIPELINE] Unexpected transcription failure: {e}")
                work = None
            if work is None:
                self.emitter.skip(span.utterance_id)
            else:
                self.hyp_queue.put(work)

    def _correct_loop(self):
        while True:
            item = self.hyp_queue.get()
            if item is _STOP:
                return
            hypothesis, context = item
            result = self.corrector.correct(hypothesis, context)
            self.emitter.submit(result)

    # --- per-utterance work ------------------------------------------------

    def snapshot_context(self):
        try:
            return self.context_provider.snapshot()
        except Exception as e:
            log_warn(f"[PIPELINE] Context unavailable, continuing without it: {e}")
            return ContextSnapshot()

    def transcribe_span(self, span, snapshot=None):
        """Span -> (hypothesis, CorrectionContext), or None if there is nothing to correct."""
        snapshot = snapshot or self.snapshot_context()
        bias = self.transcriber.build_bias(snapshot.keywords)
        enhanced = self.suppressor.enhance(span) if self.suppressor is not None else span
        on_partial = self._partial if self.stream_partials else None
        try:
            hypothesis = self.transcriber.transcribe(
                enhanced, bias, on_partial=on_partial, should_stop=self._cancel.is_set
            )
        except TranscriptionError as e:
            self.utterances_failed += 1
            log_error(f"[PIPELINE] Utterance {span.utterance_id} dropped: {e}")
            return None
        if hypothesis.is_empty:
            log_debug(f"[PIPELINE] Utterance {span.utterance_id} empty")
            return None
        if self.verifier is not None:
            self.verifier.submit(enhanced, bias, hypothesis)
        return hypothesis, snapshot.context

    def process_span(self, span, snapshot=None):
        """Synchronous path for one span: transcribe, correct, deliver. Returns the result or None."""
        self.emitter.register(span.utterance_id)
        work = self.transcribe_span(span, snapshot)
        if work is None:
            self.emitter.skip(span.utterance_id)
            return None
        result = self.corrector.correct(*work)
        self.emitter.submit(result)
        return result

    def process_frames(self, frames):
        """Run a finite frame sequence through gate and stages on the calling thread."""
        results = []
        spans = [s for s in (self.gate.process(f) for f in frames) if s is not None]
        tail = self.gate.flush()
        if tail is not None:
            spans.append(tail)
        for span in spans:
            result = self.process_span(span)
            if result is not None:
                results.append(result)
        return results

    # --- outputs -----------------------------------------------------------

    def _partial(self, partial):
        self.sink.on_partial(partial)

    def _deliver(self, result):
        self.results_delivered += 1
        tag = " (uncorrected)" if result.degraded else ""
        log_info(f"[PIPELINE] Utterance {result.utterance_id}{tag}: {describe_text(result.text)}")
        try:
            self.sink.on_result(result)
        except Exception as e:
            log_error(f"[PIPELINE] Sink failed for utterance {result.utterance_id}: {e}")
        if self.history is not None:
            try:
                self.history.append(result)
            except Exception as e:
                log_error(f"[HISTORY] Append failed: {e}")

    def _status(self, status, message):
        try:
            self.sink.on_status(status, message)
        except Exception as e:
            log_error(f"[PIPELINE] Status update failed: {e}")
