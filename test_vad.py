"""Unit tests for the voice activity gate — synthetic frames, no audio hardware."""

import os
import unittest
from unittest import mock

import numpy as np

from config import load_config
from models import AudioFrame
from vad import EnergyClassifier, VoiceActivityGate, build_classifier


def _make_config(**overrides):
    config = load_config(os.devnull)
    config.update(vad_classifier='energy')
    config.update(overrides)
    return config


class _Frames:
    """Numbered 30 ms frames at a given amplitude."""

    def __init__(self):
        self.index = 0

    def make(self, count, value):
        frames = []
        for _ in range(count):
            frames.append(AudioFrame(index=self.index, timestamp=self.index * 0.03,
                                     samples=np.full(480, value, dtype=np.int16)))
            self.index += 1
        return frames


def _run(gate, frames):
    spans = []
    for frame in frames:
        span = gate.process(frame)
        if span is not None:
            spans.append(span)
    return spans


class TestSilence(unittest.TestCase):

    def test_sub_threshold_frames_never_emit(self):
        """Even a classifier that says 'speech' cannot open a span below the energy threshold."""
        classifier = mock.Mock()
        classifier.is_speech.return_value = True
        gate = VoiceActivityGate(_make_config(), classifier=classifier)
        frames = _Frames()
        for value in (0, 50, 299):
            self.assertEqual(_run(gate, frames.make(200, value)), [])
        self.assertIsNone(gate.flush())
        classifier.is_speech.assert_not_called()

    def test_short_blip_below_onset_ignored(self):
        gate = VoiceActivityGate(_make_config())
        frames = _Frames()
        spans = _run(gate, frames.make(10, 0) + frames.make(2, 2000) + frames.make(40, 0))
        self.assertEqual(spans, [])
        self.assertEqual(gate.state, gate.SILENCE)


class TestSpanBoundaries(unittest.TestCase):

    def test_hangover_extends_end_boundary(self):
        config = _make_config()
        gate = VoiceActivityGate(config)
        frames = _Frames()
        spans = _run(gate, frames.make(20, 0) + frames.make(30, 2000) + frames.make(40, 0))

        self.assertEqual(len(spans), 1)
        span = spans[0]
        self.assertTrue(span.frozen)
        self.assertFalse(span.forced)
        trailing_ms = (span.end_index - span.last_speech_index) * config['frame_ms']
        self.assertGreaterEqual(trailing_ms, config['hangover_ms'])

    def test_preroll_reaches_back_before_onset(self):
        config = _make_config()
        gate = VoiceActivityGate(config)
        frames = _Frames()
        spans = _run(gate, frames.make(20, 0) + frames.make(30, 2000) + frames.make(40, 0))

        preroll_frames = config['preroll_ms'] // config['frame_ms']
        self.assertEqual(spans[0].start_index, 20 - preroll_frames)
        self.assertEqual(spans[0].speech_frames, 30)

    def test_brief_pause_inside_utterance_does_not_split(self):
        gate = VoiceActivityGate(_make_config())
        frames = _Frames()
        spans = _run(gate, frames.make(10, 2000) + frames.make(5, 0) + frames.make(10, 2000)
                     + frames.make(40, 0))
        self.assertEqual(len(spans), 1)
        self.assertEqual(spans[0].speech_frames, 20)

    def test_max_span_forces_close(self):
        config = _make_config(max_span_seconds=0.6)
        gate = VoiceActivityGate(config)
        frames = _Frames()
        spans = _run(gate, frames.make(50, 2000))
        self.assertGreaterEqual(len(spans), 1)
        self.assertTrue(spans[0].forced)
        self.assertEqual(len(spans[0].frames), gate.max_span_frames)

    def test_spans_numbered_in_order(self):
        gate = VoiceActivityGate(_make_config())
        frames = _Frames()
        utterance = frames.make(10, 2000) + frames.make(30, 0)
        spans = _run(gate, utterance)
        spans += _run(gate, frames.make(10, 2000) + frames.make(30, 0))
        self.assertEqual([s.utterance_id for s in spans], [1, 2])

    def test_flush_finalizes_open_span(self):
        gate = VoiceActivityGate(_make_config())
        frames = _Frames()
        self.assertEqual(_run(gate, frames.make(10, 2000)), [])
        span = gate.flush()
        self.assertIsNotNone(span)
        self.assertTrue(span.forced)
        self.assertEqual(gate.state, gate.SILENCE)

    def test_reset_discards_open_span(self):
        gate = VoiceActivityGate(_make_config())
        frames = _Frames()
        _run(gate, frames.make(10, 2000))
        gate.reset()
        self.assertIsNone(gate.flush())


class TestClassifierFailure(unittest.TestCase):

    def test_classifier_error_falls_back_to_energy(self):
        classifier = mock.Mock()
        classifier.is_speech.side_effect = RuntimeError("bad frame length")
        gate = VoiceActivityGate(_make_config(), classifier=classifier)
        frames = _Frames()
        spans = _run(gate, frames.make(10, 2000) + frames.make(30, 0))
        self.assertEqual(len(spans), 1)
        self.assertEqual(gate.classifier_errors, 10)

    def test_classifier_verdict_respected_above_threshold(self):
        classifier = mock.Mock()
        classifier.is_speech.return_value = False
        gate = VoiceActivityGate(_make_config(), classifier=classifier)
        frames = _Frames()
        self.assertEqual(_run(gate, frames.make(40, 5000)), [])


class TestBuildClassifier(unittest.TestCase):

    def test_energy(self):
        classifier = build_classifier(_make_config(vad_classifier='energy'))
        self.assertIsInstance(classifier, EnergyClassifier)

    def test_webrtc_unavailable_falls_back(self):
        with mock.patch('vad.WebRtcClassifier', side_effect=ImportError("no module")):
            classifier = build_classifier(_make_config(vad_classifier='webrtc'))
        self.assertIsInstance(classifier, EnergyClassifier)

    def test_unknown_rejected(self):
        with self.assertRaises(ValueError):
            build_classifier(_make_config(vad_classifier='silero'))


if __name__ == '__main__':
    unittest.main()
