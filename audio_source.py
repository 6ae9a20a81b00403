"""codevoice audio source — device capture, resampling, frame ring buffer and frame queue."""

import logging
import queue
import threading
import time
from collections import deque
from math import gcd

import numpy as np
import sounddevice as sd
from scipy.signal import firwin

from errors import DeviceError
from logging_utils import log_debug, log_info, log_error
from models import AudioFrame

logger = logging.getLogger(__name__)


class FrameRing:
    """
    Bounded history of recent frames, indexed by frame sequence number.

    Single writer (capture callback) and single reader (voice activity gate);
    every access goes through one lock.
    """

    def __init__(self, capacity):
        self._frames = deque(maxlen=max(1, int(capacity)))
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._frames)

    def append(self, frame):
        with self._lock:
            self._frames.append(frame)

    def clear(self):
        with self._lock:
            self._frames.clear()

    @property
    def oldest_index(self):
        with self._lock:
            return self._frames[0].index if self._frames else None

    @property
    def newest_index(self):
        with self._lock:
            return self._frames[-1].index if self._frames else None

    def has_frame(self, index):
        """Check if a frame index is still in the ring (not overwritten)."""
        with self._lock:
            if not self._frames:
                return False
            return self._frames[0].index <= index <= self._frames[-1].index

    def frames_between(self, start_index, end_index):
        """Frames with start_index <= index <= end_index still held by the ring."""
        with self._lock:
            return [f for f in self._frames if start_index <= f.index <= end_index]

    def frames_since(self, timestamp):
        with self._lock:
            return [f for f in self._frames if f.timestamp >= timestamp]


class Resampler:
    """Streaming polyphase resampler from the native device rate.

    Uses the same Kaiser FIR as scipy's resample_poly and keeps the filter
    history across capture blocks, so the output equals resample_poly over the
    whole stream, delayed by `delay` output samples. That delay is the filter
    lookahead; it lets every block be finished as soon as it arrives.
    """

    def __init__(self, native_rate, target_rate, frame_size):
        self.native_rate = int(native_rate)
        self.target_rate = int(target_rate)
        self.frame_size = frame_size
        divisor = gcd(self.native_rate, self.target_rate)
        self.up = self.target_rate // divisor
        self.down = self.native_rate // divisor
        # Device block that yields exactly one canonical frame.
        self.block_size = int(round(frame_size * self.native_rate / self.target_rate))
        self.delay = 0
        if self.passthrough:
            return

        max_rate = max(self.up, self.down)
        self.half_len = 10 * max_rate
        taps = firwin(2 * self.half_len + 1, 1.0 / max_rate, window=('kaiser', 5.0)) * self.up
        self._per_phase = -(-len(taps) // self.up)
        taps = np.pad(taps, (0, self._per_phase * self.up - len(taps)))
        # _phases[p, t] == taps[p + up * t]
        self._phases = taps.reshape(self._per_phase, self.up).T
        self.delay = max(0, -(-(self.half_len + self.up - self.down) // self.down))

        self._history = np.zeros(self._per_phase)
        self._history_start = -self._per_phase
        self._received = 0
        self._next_out = 0
        self._pending = np.zeros(0)

    @property
    def passthrough(self):
        return self.up == self.down

    def process(self, block):
        """float32 block at native rate -> int16 frame of exactly frame_size samples."""
        if self.passthrough:
            out = np.asarray(block, dtype=np.float64)
        else:
            self._pending = np.concatenate((self._pending, self._filter(block)))
            out = self._pending[:self.frame_size]
            self._pending = self._pending[self.frame_size:]
            # Only uneven rate ratios leave a backlog; bound it to one frame.
            if len(self._pending) > self.frame_size:
                self._pending = self._pending[-self.frame_size:]
        if len(out) > self.frame_size:
            out = out[:self.frame_size]
        elif len(out) < self.frame_size:
            out = np.pad(out, (0, self.frame_size - len(out)))
        return (np.clip(out, -1.0, 1.0) * 32767).astype(np.int16)

    def _filter(self, block):
        """Every output sample whose input is now complete, continuing from the last call."""
        self._history = np.concatenate((self._history, np.asarray(block, dtype=np.float64)))
        self._received += len(block)

        last = self.delay + (self._received * self.up - 1 - self.half_len) // self.down
        positions = np.arange(self._next_out, last + 1)
        if len(positions) == 0:
            return np.zeros(0)
        self._next_out = last + 1

        out = np.zeros(len(positions))
        live = positions >= self.delay
        upsampled = (positions[live] - self.delay) * self.down + self.half_len
        newest = upsampled // self.up - self._history_start
        window = newest[:, None] - np.arange(self._per_phase)[None, :]
        out[live] = np.einsum('ij,ij->i', self._phases[upsampled % self.up], self._history[window])

        # Drop input no future output can reach.
        first = max(self._next_out - self.delay, 0) * self.down + self.half_len
        cut = min(first // self.up - (self._per_phase - 1) - self._history_start, len(self._history))
        if cut > 0:
            self._history = self._history[cut:]
            self._history_start += cut
        return out


class AudioSource:
    """
    Continuously captures audio into a ring buffer and a frame queue.

    Ring buffer: last few seconds of frames, so the gate can reach back to
    speech onset that preceded trigger confirmation.
    Frame queue: FIFO of frames awaiting classification by the gate.
    Flushing the frame queue does NOT clear the ring buffer.
    """

    def __init__(self, config):
        self.sample_rate = config['sample_rate']
        self.frame_size = config['frame_size']
        self.frame_duration = self.frame_size / self.sample_rate

        # Device selection
        self.device_name = config.get('audio_device', '')
        self.device_index = None  # resolved fresh on every start()
        self.native_rate = None
        self.resampler = None

        ring_frames = int(config['buffer_seconds'] / self.frame_duration)
        self.ring = FrameRing(ring_frames)
        self.frame_queue = queue.Queue(maxsize=config.get('frame_queue_size', 200))

        # Stream state
        self.stream = None
        self.last_callback_time = None
        self.current_amplitude = 0
        self.frames_dropped = 0
        self._next_index = 0

        # Error tracking (sliding window for disconnect detection)
        self._error_count_window = []       # list of error timestamps
        self._error_window_seconds = 5.0    # time window for error rate calculation
        self._error_rate_threshold = 0.8    # >80% error callbacks = unhealthy
        self._last_error_log_time = 0       # time-based log throttling
        self._first_callback_event = threading.Event()  # signaled on first clean callback
        self._error_lock = threading.Lock()

    def _resolve_device(self):
        """Resolve device name to sounddevice index.

        Returns int device index, or None if no name configured.
        Raises DeviceError if name is configured but cannot be resolved.
        """
        if not self.device_name:
            return None

        devices = sd.query_devices()
        input_devices = [
            (i, d) for i, d in enumerate(devices)
            if d['max_input_channels'] > 0
        ]

        # Step 1: exact match (case-sensitive)
        for idx, dev in input_devices:
            if dev['name'] == self.device_name:
                log_info(f"[AUDIO] Device exact match: [{idx}] {dev['name']}")
                return idx

        # Step 2: case-insensitive substring match
        name_lower = self.device_name.lower()
        matches = [
            (idx, dev) for idx, dev in input_devices
            if name_lower in dev['name'].lower()
        ]

        # Step 3: multiple substring matches are ambiguous
        if len(matches) > 1:
            names = [dev['name'] for _, dev in matches]
            raise DeviceError(
                f"Ambiguous audio device '{self.device_name}' matched {len(matches)} "
                f"devices: {names}. Use a more specific string."
            )

        if len(matches) == 1:
            idx, dev = matches[0]
            log_info(f"[AUDIO] Device substring match: [{idx}] {dev['name']}")
            return idx

        available_names = [dev['name'] for _, dev in input_devices]
        logger.debug("[AUDIO] Full device list: %s", input_devices)
        raise DeviceError(
            f"Audio device '{self.device_name}' not found. "
            f"Available input devices: {available_names}"
        )

    def _native_rate(self, device_index):
        """Default sample rate the device captures at."""
        info = sd.query_devices(device_index, 'input')
        return int(info['default_samplerate'])

    def is_device_present(self):
        """Check if the configured audio device is currently available.

        Does NOT log on failure (caller manages logging).
        """
        try:
            self._resolve_device()
            return True
        except Exception:
            return False

    def start(self):
        """Start audio stream. Idempotent.

        Resolves device index and native rate fresh on each call. On any
        failure, calls stop() to ensure clean stopped state, then raises
        DeviceError.
        """
        if self.stream is not None:
            return
        try:
            self.device_index = self._resolve_device()
            self.native_rate = self._native_rate(self.device_index)
            self.resampler = Resampler(self.native_rate, self.sample_rate, self.frame_size)

            # Reset error tracking state
            with self._error_lock:
                self._error_count_window = []
            self._last_error_log_time = 0
            self._first_callback_event.clear()

            self.stream = sd.InputStream(
                samplerate=self.native_rate,
                channels=1,
                dtype='float32',
                callback=self._audio_callback,
                blocksize=self.resampler.block_size,
                device=self.device_index
            )
            self.stream.start()
            log_info(
                f"[AUDIO] Stream started (device={self.device_index}, "
                f"{self.native_rate}Hz -> {self.sample_rate}Hz)"
            )
        except DeviceError:
            self.stop()
            raise
        except Exception as e:
            self.stop()
            raise DeviceError(f"Audio stream failed to open: {e}") from e

    def stop(self, force=False):
        """Stop stream. Idempotent, no-throw.

        Args:
            force: If True, use stream.abort() instead of stream.stop()
                   (less likely to block on vanished hardware).
        """
        if self.stream is None:
            self._first_callback_event.clear()
            return
        try:
            if force:
                self.stream.abort()
            else:
                self.stream.stop()
        except Exception as e:
            # Handle may be invalid if hardware vanished
            log_error(f"[AUDIO] Stream {'abort' if force else 'stop'} failed: {e}")
        try:
            self.stream.close()
        except Exception as e:
            log_error(f"[AUDIO] Stream close failed: {e}")
        self.stream = None
        self._first_callback_event.clear()
        log_info("[AUDIO] Stream stopped")

    def restart(self):
        """Stop and start. Returns True on success, False on failure.

        Never raises to callers. Uses abort() since restart implies the
        stream is misbehaving.
        """
        try:
            self.stop(force=True)
            self.start()
            log_info("[AUDIO] Restart successful")
            return True
        except Exception as e:
            log_error(f"[AUDIO] Restart failed: {e}")
            return False

    def wait_for_first_frame(self, timeout):
        return self._first_callback_event.wait(timeout)

    def is_healthy(self):
        """Returns True if the audio stream is functioning normally.

        Three failure modes detected:
        1. Callback never fired (last_callback_time is None)
        2. Callback stopped firing (stale > 2s)
        3. Error rate exceeds threshold (device unplugged while PortAudio
           still invokes the callback with error flags)
        """
        if self.last_callback_time is None:
            return False

        if (time.time() - self.last_callback_time) >= 2.0:
            return False

        now = time.monotonic()
        with self._error_lock:
            cutoff = now - self._error_window_seconds
            errors_in_window = [t for t in self._error_count_window if t >= cutoff]
        expected_callbacks = self._error_window_seconds / self.frame_duration
        if expected_callbacks > 0 and len(errors_in_window) > 0:
            error_rate = len(errors_in_window) / expected_callbacks
            if error_rate > self._error_rate_threshold:
                return False

        return True

    def get_frame(self, timeout=0.05):
        """Next frame for the gate, or None if nothing arrived within timeout."""
        try:
            return self.frame_queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def frames(self, stop_event, timeout=0.05):
        """Lazy frame stream for the gate. Each frame is delivered once; ends when stop_event is set."""
        while not stop_event.is_set():
            frame = self.get_frame(timeout)
            if frame is not None:
                yield frame

    def flush_frame_queue(self):
        """Discard all pending frames (NOT the ring buffer)."""
        count = 0
        try:
            while True:
                self.frame_queue.get_nowait()
                count += 1
        except queue.Empty:
            pass
        if count > 0:
            log_debug(f"[AUDIO] Frame queue flushed ({count} frames)")

    def _publish(self, samples):
        """Wrap canonical samples into a frame and hand it to ring and queue."""
        frame = AudioFrame(
            index=self._next_index,
            timestamp=time.time(),
            samples=samples,
            sample_rate=self.sample_rate,
        )
        self._next_index += 1
        self.current_amplitude = frame.amplitude

        # Fill ring buffer (always)
        self.ring.append(frame)

        # Enqueue frame for the gate (overflow: discard oldest)
        try:
            self.frame_queue.put_nowait(frame)
        except queue.Full:
            try:
                self.frame_queue.get_nowait()
                self.frames_dropped += 1
            except queue.Empty:
                pass
            self.frame_queue.put_nowait(frame)
        return frame

    def _audio_callback(self, indata, frames, time_info, status):
        """Called by sounddevice in audio thread."""
        self.last_callback_time = time.time()

        try:
            if status:
                with self._error_lock:
                    self._error_count_window.append(time.monotonic())

                # Throttled error logging (at most once per 5 seconds)
                now = time.monotonic()
                if (now - self._last_error_log_time) > 5.0:
                    log_error(f"[AUDIO] Callback status: {status}")
                    self._last_error_log_time = now

                # Error-status blocks are not enqueued
                return

            with self._error_lock:
                cutoff = time.monotonic() - self._error_window_seconds
                self._error_count_window = [
                    t for t in self._error_count_window if t >= cutoff
                ]

            if not self._first_callback_event.is_set():
                self._first_callback_event.set()

            self._publish(self.resampler.process(indata[:, 0]))

        except Exception as e:
            # Treat callback exceptions as disconnect signal
            log_error(f"[AUDIO] Callback exception: {e}")
            with self._error_lock:
                self._error_count_window.append(time.monotonic())
