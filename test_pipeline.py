"""Unit tests for pipeline ordering, overload handling and degradation. Fake models, real gate."""

import os
import queue
import time
import unittest
from unittest import mock

import numpy as np

from config import load_config
from corrector import RuleCorrectionModel, SemanticCorrector
from errors import TranscriptionError
from models import (AudioFrame, BiasVocabulary, ContextSnapshot, CorrectionContext, PartialHypothesis,
                    PipelineResult, SpeechSpan, TranscriptionHypothesis)
from pipeline import _STOP, OrderedEmitter, Pipeline
from vad import VoiceActivityGate


def _make_config(**overrides):
    config = load_config(os.devnull)
    config.update(vad_classifier='energy', noise_enabled=False)
    config.update(overrides)
    return config


def _result(utterance_id, text="x"):
    return PipelineResult(utterance_id=utterance_id, text=text,
                          hypothesis=TranscriptionHypothesis(utterance_id, text))


def _span(utterance_id, frames=20):
    span = SpeechSpan(utterance_id)
    for i in range(frames):
        span.append(AudioFrame(index=i, timestamp=i * 0.03,
                               samples=np.full(480, 2000, dtype=np.int16)), True)
    return span.freeze()


def _utterances(count, speech=20, silence=30):
    """Silence, then `count` speech bursts each followed by enough silence to close the span."""
    frames = []
    index = 0
    for burst in range(count + 1):
        for value, n in ((0, silence), (2000, speech)):
            if burst == count and value:
                break
            for _ in range(n):
                frames.append(AudioFrame(index=index, timestamp=index * 0.03,
                                         samples=np.full(480, value, dtype=np.int16)))
                index += 1
    return frames


class _FakeTranscriber:

    def __init__(self, texts=None, fail_ids=()):
        self.texts = texts or {}
        self.fail_ids = set(fail_ids)
        self.busy = False
        self.name = 'fake'
        self.keywords = []
        self.spans = []

    def build_bias(self, keywords):
        self.keywords.append(tuple(keywords))
        return BiasVocabulary()

    def transcribe(self, span, bias=None, on_partial=None, should_stop=None):
        self.spans.append(span.utterance_id)
        if span.utterance_id in self.fail_ids:
            raise TranscriptionError("decoder crashed")
        text = self.texts.get(span.utterance_id, f"utterance {span.utterance_id}")
        if on_partial is not None:
            on_partial(PartialHypothesis(span.utterance_id, text, 0))
        return TranscriptionHypothesis(span.utterance_id, text, model=self.name)


class _ListSource:

    def __init__(self, frames):
        self._frames = frames

    def frames(self, stop_event):
        for frame in self._frames:
            if stop_event.is_set():
                return
            yield frame


class _SlowHandoffQueue(queue.Queue):
    """Span queue whose producer stalls right after the hand-off, letting the stages race ahead."""

    def put_nowait(self, item):
        super().put_nowait(item)
        time.sleep(0.3)


class TestOrderedEmitter(unittest.TestCase):

    def test_out_of_order_completion_delivered_in_order(self):
        delivered = []
        emitter = OrderedEmitter(lambda r: delivered.append(r.utterance_id))
        emitter.register(1)
        emitter.register(2)
        emitter.submit(_result(2))
        self.assertEqual(delivered, [])
        emitter.submit(_result(1))
        self.assertEqual(delivered, [1, 2])
        self.assertEqual(emitter.pending, 0)

    def test_skipped_utterance_does_not_block_later_ones(self):
        delivered = []
        emitter = OrderedEmitter(lambda r: delivered.append(r.utterance_id))
        for uid in (1, 2, 3):
            emitter.register(uid)
        emitter.submit(_result(3))
        emitter.skip(2)
        self.assertEqual(delivered, [])
        emitter.submit(_result(1))
        self.assertEqual(delivered, [1, 3])

    def test_delivery_failure_does_not_stall(self):
        delivered = []

        def deliver(result):
            if result.utterance_id == 1:
                raise RuntimeError("sink gone")
            delivered.append(result.utterance_id)

        emitter = OrderedEmitter(deliver)
        emitter.register(1)
        emitter.register(2)
        emitter.submit(_result(2))
        emitter.submit(_result(1))
        self.assertEqual(delivered, [2])

    def test_unregistered_utterance_releases_later_ones(self):
        delivered = []
        emitter = OrderedEmitter(lambda r: delivered.append(r.utterance_id))
        emitter.register(1)
        emitter.register(2)
        emitter.submit(_result(2))
        emitter.unregister(1)
        self.assertEqual(delivered, [2])
        self.assertEqual(emitter.pending, 0)
        emitter.unregister(7)


class TestPipeline(unittest.TestCase):

    def _pipeline(self, transcriber=None, corrector=None, context_provider=None, history=None,
                  **overrides):
        config = _make_config(**overrides)
        self.sink = mock.Mock()
        corrector = corrector or SemanticCorrector(config, RuleCorrectionModel(config))
        self.addCleanup(corrector.close)
        if context_provider is None:
            context_provider = mock.Mock()
            context_provider.snapshot.return_value = ContextSnapshot(
                keywords=('UserConfig',), context=CorrectionContext(language='rust'))
        return Pipeline(config, mock.Mock(), VoiceActivityGate(config),
                        transcriber or _FakeTranscriber(), corrector, context_provider, self.sink,
                        history=history)

    def _delivered(self):
        return [c.args[0] for c in self.sink.on_result.call_args_list]

    def test_process_frames_delivers_each_utterance_in_order(self):
        history = mock.Mock()
        transcriber = _FakeTranscriber({1: "let x equal five", 2: "snake case retry count"})
        pipeline = self._pipeline(transcriber, history=history)
        results = pipeline.process_frames(_utterances(2))

        self.assertEqual([r.utterance_id for r in results], [1, 2])
        self.assertEqual([r.text for r in self._delivered()], ["let x equal five", "retry_count"])
        self.assertEqual(history.append.call_count, 2)
        self.assertEqual(transcriber.keywords[0], ('UserConfig',))
        self.assertEqual(pipeline.results_delivered, 2)

    def test_silence_produces_nothing(self):
        pipeline = self._pipeline()
        frames = [AudioFrame(index=i, timestamp=i * 0.03, samples=np.zeros(480, dtype=np.int16))
                  for i in range(100)]
        self.assertEqual(pipeline.process_frames(frames), [])
        self.sink.on_result.assert_not_called()

    def test_failed_utterance_dropped_and_next_delivered(self):
        pipeline = self._pipeline(_FakeTranscriber(fail_ids={1}))
        results = pipeline.process_frames(_utterances(2))
        self.assertEqual([r.utterance_id for r in results], [2])
        self.assertEqual(pipeline.utterances_failed, 1)

    def test_correction_failure_delivers_raw_text(self):
        failing = mock.Mock()
        failing.name = 'broken'
        failing.correct.side_effect = RuntimeError("model crashed")
        config = _make_config()
        pipeline = self._pipeline(_FakeTranscriber({1: "let x equal five"}),
                                  corrector=SemanticCorrector(config, failing))
        result = pipeline.process_span(_span(1))
        self.assertTrue(result.degraded)
        self.assertEqual(result.text, "let x equal five")
        self.assertEqual(self._delivered(), [result])

    def test_context_failure_falls_back_to_empty_context(self):
        provider = mock.Mock()
        provider.snapshot.side_effect = RuntimeError("editor closed")
        transcriber = _FakeTranscriber({1: "hello"})
        pipeline = self._pipeline(transcriber, context_provider=provider)
        result = pipeline.process_span(_span(1))
        self.assertEqual(result.text, "hello")
        self.assertEqual(transcriber.keywords, [()])

    def test_full_span_queue_drops_new_span_and_reports_overload(self):
        pipeline = self._pipeline(span_queue_size=1)
        pipeline._enqueue(_span(1))
        pipeline._enqueue(_span(2))
        self.assertEqual(pipeline.spans_dropped, 1)
        self.assertEqual(pipeline.span_queue.qsize(), 1)
        self.assertEqual(pipeline.span_queue.get_nowait().utterance_id, 1)
        self.assertEqual(pipeline.emitter.pending, 1)
        self.sink.on_status.assert_called_once()
        self.assertEqual(self.sink.on_status.call_args.args[0], "overloaded")

    def test_partials_forwarded_when_enabled(self):
        pipeline = self._pipeline(_FakeTranscriber({1: "fn main"}), stream_partials=True)
        pipeline.process_span(_span(1))
        partial = self.sink.on_partial.call_args.args[0]
        self.assertEqual(partial.text, "fn main")

    def test_threaded_run_drains_on_stop(self):
        config = _make_config()
        self.sink = mock.Mock()
        corrector = SemanticCorrector(config, RuleCorrectionModel(config))
        self.addCleanup(corrector.close)
        provider = mock.Mock()
        provider.snapshot.return_value = ContextSnapshot()
        pipeline = Pipeline(config, _ListSource(_utterances(3)), VoiceActivityGate(config),
                            _FakeTranscriber(), corrector, provider, self.sink)
        pipeline.start()
        for t in pipeline._threads:
            t.join(5.0)
        pipeline.stop(drain=True, timeout=1.0)

        self.assertEqual([r.utterance_id for r in self._delivered()], [1, 2, 3])
        self.assertTrue(pipeline.is_idle())
        self.assertFalse(pipeline.running)

    def test_result_ready_before_handoff_returns_is_delivered(self):
        config = _make_config()
        self.sink = mock.Mock()
        corrector = SemanticCorrector(config, RuleCorrectionModel(config))
        self.addCleanup(corrector.close)
        provider = mock.Mock()
        provider.snapshot.return_value = ContextSnapshot()
        pipeline = Pipeline(config, _ListSource(_utterances(1)), VoiceActivityGate(config),
                            _FakeTranscriber({1: "let x equal five"}), corrector, provider, self.sink)
        pipeline.span_queue = _SlowHandoffQueue(maxsize=config['span_queue_size'])
        pipeline.start()
        for t in pipeline._threads:
            t.join(5.0)
        pipeline.stop(drain=True, timeout=1.0)

        self.assertEqual(self.sink.on_result.call_count, 1)
        self.assertEqual(self._delivered()[0].text, "let x equal five")
        self.assertEqual(pipeline.emitter.pending, 0)
        self.assertTrue(pipeline.is_idle())

    def test_full_queue_drop_does_not_hold_back_later_results(self):
        pipeline = self._pipeline(span_queue_size=1)
        pipeline._enqueue(_span(1))
        pipeline._enqueue(_span(2))
        pipeline.emitter.submit(_result(1))
        self.assertEqual([r.utterance_id for r in self._delivered()], [1])
        self.assertEqual(pipeline.emitter.pending, 0)

    def test_cancel_discards_queued_spans(self):
        transcriber = _FakeTranscriber()
        pipeline = self._pipeline(transcriber)
        pipeline._enqueue(_span(1))
        pipeline._enqueue(_span(2))
        pipeline._cancel.set()
        pipeline.span_queue.put(_STOP)
        pipeline._transcribe_loop()
        self.assertEqual(transcriber.spans, [])
        self.assertEqual(pipeline.emitter.pending, 0)
        self.sink.on_result.assert_not_called()


if __name__ == '__main__':
    unittest.main()
