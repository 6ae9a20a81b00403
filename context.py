"""codevoice context — shared state for all state functions."""

from logging_utils import log_debug, log_info, log_error, log_warn
from context_indexer import build_context_provider
from corrector import RuleCorrectionModel, SemanticCorrector, build_correction_model
from errors import ModelLoadError
from hallucination import HallucinationFilter
from history import TranscriptionHistory
from noise_suppressor import NoiseSuppressor
from pipeline import Pipeline
from transcriber import AcousticTranscriber, SpeculativeVerifier, build_acoustic_backend
from vad import VoiceActivityGate

try:
    from gi.repository import GLib
except ImportError:
    GLib = None

# Status -> tray icon name
STATUS_ICONS = {
    'loading': 'CV_DISABLE',
    'listening': 'CV_ON',
    'overloaded': 'CV_ON',
    'paused': 'CV_OFF',
    'disabled': 'CV_DISABLE',
    'unavailable': 'CV_DISABLE',
    'fatal': 'CV_DISABLE',
}


class PipelineContext:
    def __init__(self, config, audio_source, sink, mailbox=None):
        self.config = config
        self.audio_source = audio_source
        self.sink = sink
        self.mailbox = mailbox
        self.tray = None            # set after TrayIcon created
        self.tray_running = False
        self._pending_icon = None   # Last icon requested (for startup race)

        self.context_provider = build_context_provider(config)
        self.hallucination_filter = HallucinationFilter(config)
        self.history = None
        if config.get('history_enabled', False):
            self.history = TranscriptionHistory(config['history_path'],
                                                config.get('history_max_entries', 0))

        # Loaded/unloaded by state functions
        self.transcriber = None
        self.verifier_transcriber = None
        self.corrector = None
        self.suppressor = None

        # Inter-state data passing
        self.pipeline = None            # owned by state_listening
        self.unavailable_reason = None  # "device" or "models", read by state_unavailable
        self.fatal_error = None

        self.status = None
        self.debug = config.get('debug', False)

    @property
    def models_loaded(self):
        return self.transcriber is not None and self.corrector is not None

    def set_status(self, status, message=""):
        """Surface a session status to the sink and the tray icon."""
        if status == self.status and not message:
            return
        self.status = status
        try:
            self.sink.on_status(status, message)
        except Exception as e:
            log_error(f"[STATUS] Sink status update failed: {e}")
        self.set_icon(STATUS_ICONS.get(status, 'CV_DISABLE'))

    def set_icon(self, icon_name):
        """Tell GTK thread to display this icon. Called from worker thread."""
        log_debug(f"[ICON] Setting: {icon_name}")
        self._pending_icon = icon_name
        if self.tray and self.tray_running and GLib is not None:
            try:
                GLib.idle_add(self.tray.set_icon_by_name, icon_name)
            except Exception as e:
                log_error(f"[ICON] Failed to set icon: {e}")

    def load_models(self):
        """Load acoustic, verifier and correction models. Atomic: if any required one fails, all unloaded.

        Raises ModelLoadError (retry later) or FatalPipelineError (give up).
        The verifier and an unreachable correction server are optional and
        only cost quality.
        """
        if self.models_loaded:
            return
        try:
            backend = build_acoustic_backend(self.config, 'acoustic')
            backend.load()
            self.transcriber = AcousticTranscriber(
                self.config, backend, hallucination_filter=self.hallucination_filter
            )

            if self.config.get('speculative_enabled', False):
                verifier_backend = build_acoustic_backend(self.config, 'speculative')
                try:
                    verifier_backend.load()
                    self.verifier_transcriber = AcousticTranscriber(
                        self.config, verifier_backend,
                        bias_builder=self.transcriber.bias_builder,
                        hallucination_filter=self.hallucination_filter,
                    )
                except ModelLoadError as e:
                    log_warn(f"[MODELS] Verifier unavailable, drafts will not be verified: {e}")

            model = build_correction_model(self.config)
            try:
                model.load()
            except ModelLoadError as e:
                log_warn(f"[MODELS] {e}; falling back to rule-based correction")
                model = RuleCorrectionModel(self.config)
            self.corrector = SemanticCorrector(self.config, model)

            self.suppressor = NoiseSuppressor(self.config)
            log_info("[MODELS] Models loaded")
        except Exception as e:
            log_error(f"[MODELS] Load failed: {e}")
            self.unload_models()
            raise

    def unload_models(self):
        """Unload models, free accelerator memory. Idempotent, no-throw."""
        for name in ('transcriber', 'verifier_transcriber'):
            transcriber = getattr(self, name)
            if transcriber is None:
                continue
            try:
                transcriber.close()
                transcriber.backend.unload()
            except Exception as e:
                log_error(f"[MODELS] {name} unload failed: {e}")
            setattr(self, name, None)

        if self.corrector is not None:
            try:
                self.corrector.model.unload()
                self.corrector.close()
            except Exception as e:
                log_error(f"[MODELS] Corrector unload failed: {e}")
            self.corrector = None

        if self.suppressor is not None:
            try:
                self.suppressor.close()
            except Exception as e:
                log_error(f"[MODELS] Noise suppressor shutdown failed: {e}")
            self.suppressor = None

        log_info("[MODELS] Models released")

    def build_pipeline(self):
        """Fresh gate and stage threads around the loaded models (not started)."""
        gate = VoiceActivityGate(self.config, ring=self.audio_source.ring)
        pipeline = Pipeline(
            self.config, self.audio_source, gate, self.transcriber, self.corrector,
            self.context_provider, self.sink,
            suppressor=self.suppressor, history=self.history,
        )
        if self.verifier_transcriber is not None:
            pipeline.verifier = SpeculativeVerifier(
                self.config, self.verifier_transcriber, pipeline.is_idle, self.sink.on_revision
            )
        return pipeline

    def stop_pipeline(self, drain=True):
        if self.pipeline is None:
            return
        try:
            self.pipeline.stop(drain=drain, timeout=self.config.get('acoustic_timeout', 10.0))
        except Exception as e:
            log_error(f"[PIPELINE] Stop failed: {e}")
        self.pipeline = None


def handle_quit(ctx):
    """Common cleanup for QUIT. Returns None (shutdown state)."""
    log_info("[SHUTDOWN] QUIT received")
    # In-flight inference stops at its next checkpoint; queued utterances are dropped.
    ctx.stop_pipeline(drain=False)

    try:
        ctx.unload_models()
    except Exception as e:
        log_error(f"[SHUTDOWN] Model unload failed: {e}")

    try:
        ctx.audio_source.stop()
    except Exception as e:
        log_error(f"[SHUTDOWN] Audio stop failed: {e}")

    try:
        ctx.tray_running = False
        if ctx.tray:
            ctx.tray.stop()
    except Exception as e:
        log_error(f"[SHUTDOWN] Tray stop failed: {e}")

    return None  # Exit state loop


def handle_fatal(ctx, error):
    """Stop everything and say so. Returns None (shutdown state)."""
    ctx.fatal_error = error
    log_error(f"[FATAL] Transcription unavailable: {error}")
    ctx.set_status('fatal', f"Transcription unavailable: {error}")
    return handle_quit(ctx)
