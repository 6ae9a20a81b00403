"""codevoice noise suppressor — spectral gating of a finished speech span with noisereduce.

Best effort only: a failure or a missed deadline hands back the original span.
Output always has exactly as many samples as the input.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

import noisereduce as nr
import numpy as np

from logging_utils import log_debug, log_warn

_N_FFT = 512        # 32 ms at 16 kHz


class NoiseSuppressor:

    def __init__(self, config):
        self.enabled = config.get('noise_enabled', True)
        self.timeout = config.get('noise_timeout', 0.5)
        self.stationary = config.get('noise_stationary', True)
        self.std_threshold = config.get('noise_std_threshold', 1.5)
        self.prop_decrease = config.get('noise_prop_decrease', 0.85)
        self.sample_rate = config['sample_rate']
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="denoise")
        self.failures = 0
        self.timeouts = 0

    def enhance(self, span):
        """Return an enhanced copy of span, or span itself if enhancement is off or fails."""
        if not self.enabled:
            return span
        if span.num_samples < _N_FFT:
            return span

        future = self._executor.submit(self.gate, span.samples)
        try:
            samples = future.result(timeout=self.timeout)
        except FutureTimeout:
            self.timeouts += 1
            future.cancel()
            log_warn(f"[NOISE] Enhancement exceeded {self.timeout:.2f}s, using raw audio")
            return span
        except Exception as e:
            self.failures += 1
            log_warn(f"[NOISE] Enhancement failed, using raw audio: {e}")
            return span

        if len(samples) != span.num_samples:
            self.failures += 1
            log_warn(f"[NOISE] Length mismatch ({len(samples)} != {span.num_samples}), using raw audio")
            return span

        log_debug(f"[NOISE] Enhanced span {span.utterance_id}")
        return span.with_samples(samples)

    def gate(self, samples):
        """Attenuate time-frequency bins near the span's own noise floor. int16 in, int16 out."""
        x = np.asarray(samples, dtype=np.float32) / 32768.0
        y = nr.reduce_noise(
            y=x,
            sr=self.sample_rate,
            stationary=self.stationary,
            prop_decrease=self.prop_decrease,
            n_std_thresh_stationary=self.std_threshold,
            n_fft=_N_FFT,
            n_jobs=1,
        )
        y = np.asarray(y, dtype=np.float32)
        if len(y) >= len(x):
            y = y[:len(x)]
        else:
            y = np.pad(y, (0, len(x) - len(y)))
        return np.clip(y * 32768.0, -32768, 32767).astype(np.int16)

    def close(self):
        self._executor.shutdown(wait=False)
