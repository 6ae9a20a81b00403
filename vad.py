"""codevoice voice activity gate — frame classification and speech span boundaries.

State machine per utterance:

    silence --(onset_frames consecutive speech frames)--> speaking
    speaking --(hangover_frames consecutive non-speech frames)--> silence

Frames below the energy threshold never count as speech, whatever the
classifier says, so pure low-level noise can never open a span.
"""

import itertools
import math
import time

from audio_source import FrameRing
from logging_utils import log_debug, log_info, log_warn
from models import SpeechSpan


class EnergyClassifier:
    """Mean absolute amplitude against a fixed threshold."""

    name = "energy"

    def __init__(self, threshold):
        self.threshold = threshold

    def is_speech(self, frame):
        return frame.amplitude >= self.threshold


class WebRtcClassifier:
    """WebRTC GMM voice detector. Needs 10/20/30 ms frames of 16-bit PCM."""

    name = "webrtc"

    def __init__(self, aggressiveness=2):
        import webrtcvad
        self._vad = webrtcvad.Vad(aggressiveness)

    def is_speech(self, frame):
        return self._vad.is_speech(frame.samples.tobytes(), frame.sample_rate)


def build_classifier(config):
    """Classifier selected by [vad] classifier; energy if the backend can't start."""
    name = config.get('vad_classifier', 'webrtc')
    if name == 'energy':
        return EnergyClassifier(config['energy_threshold'])
    if name == 'webrtc':
        try:
            return WebRtcClassifier(config.get('vad_aggressiveness', 2))
        except Exception as e:
            log_warn(f"[VAD] webrtcvad unavailable ({e}), using energy classifier")
            return EnergyClassifier(config['energy_threshold'])
    raise ValueError(f"Unknown VAD classifier '{name}'")


class VoiceActivityGate:
    SILENCE = "silence"
    SPEAKING = "speaking"

    def __init__(self, config, classifier=None, ring=None):
        frame_ms = config['frame_ms']
        self.sample_rate = config['sample_rate']
        self.energy_threshold = config['energy_threshold']
        self.onset_frames = max(1, math.ceil(config['onset_ms'] / frame_ms))
        self.hangover_frames = max(1, math.ceil(config['hangover_ms'] / frame_ms))
        self.preroll_frames = max(0, config['preroll_ms'] // frame_ms)
        self.max_span_frames = max(
            self.onset_frames + self.hangover_frames,
            int(config['max_span_seconds'] * 1000 / frame_ms),
        )

        self.classifier = classifier or build_classifier(config)

        # Without a shared ring (tests, offline runs) keep just enough history for pre-roll.
        self._owns_ring = ring is None
        self._ring = ring if ring is not None else FrameRing(self.preroll_frames + self.onset_frames + 1)

        self._ids = itertools.count(1)
        self.state = self.SILENCE
        self._span = None
        self._onset_count = 0
        self._onset_start = None
        self._silence_count = 0

        self.classifier_errors = 0
        self._last_error_log_time = 0

    def reset(self):
        """Drop any open span and return to silence (pause, device recovery)."""
        if self._span is not None:
            log_debug(f"[VAD] Discarding open span {self._span.utterance_id}")
        self.state = self.SILENCE
        self._span = None
        self._onset_count = 0
        self._onset_start = None
        self._silence_count = 0

    def classify(self, frame):
        """True if the frame is speech-positive. Classifier errors fall back to energy."""
        if frame.amplitude < self.energy_threshold:
            return False
        try:
            return bool(self.classifier.is_speech(frame))
        except Exception as e:
            self.classifier_errors += 1
            now = time.monotonic()
            if now - self._last_error_log_time > 5.0:
                log_warn(f"[VAD] Classifier failed, energy fallback for this frame: {e}")
                self._last_error_log_time = now
            return True

    def process(self, frame):
        """Feed one frame. Returns a frozen SpeechSpan when an utterance ends, else None."""
        if self._owns_ring:
            self._ring.append(frame)
        speech = self.classify(frame)

        if self.state == self.SILENCE:
            if speech:
                if self._onset_count == 0:
                    self._onset_start = frame.index
                self._onset_count += 1
                if self._onset_count >= self.onset_frames:
                    self._open_span(frame.index)
            else:
                self._onset_count = 0
                self._onset_start = None
            return None

        self._span.append(frame, speech)
        if speech:
            self._silence_count = 0
        else:
            self._silence_count += 1
            if self._silence_count >= self.hangover_frames:
                return self._close_span(forced=False)

        if len(self._span.frames) >= self.max_span_frames:
            log_info("[VAD] Max span duration reached")
            return self._close_span(forced=True)
        return None

    def flush(self):
        """Finalize the open span at end of input. Returns it, or None."""
        if self.state != self.SPEAKING or self._span is None:
            return None
        return self._close_span(forced=True)

    def _open_span(self, confirm_index):
        span = SpeechSpan(next(self._ids), self.sample_rate)
        start = self._onset_start - self.preroll_frames
        for f in self._ring.frames_between(start, confirm_index):
            span.append(f, f.index >= self._onset_start)
        self._span = span
        self.state = self.SPEAKING
        self._silence_count = 0
        self._onset_count = 0
        log_debug(f"[VAD] Speech onset (span {span.utterance_id}, frame {self._onset_start})")

    def _close_span(self, forced):
        span = self._span
        span.forced = forced
        span.freeze()
        self._span = None
        self.state = self.SILENCE
        self._silence_count = 0
        self._onset_count = 0
        self._onset_start = None
        log_debug(f"[VAD] Speech offset: {span!r}")
        return span
