"""codevoice error taxonomy.

Recoverable-local failures (noise suppression, correction) never surface as
exceptions past their stage. Recoverable-session failures move the session to
``unavailable`` and are retried with backoff. Fatal failures stop the session.
"""


class PipelineError(Exception):
    """Base class for all codevoice errors."""


class DeviceError(PipelineError):
    """Audio device missing, ambiguous, or failed to open. Recoverable-session."""


class ModelLoadError(PipelineError):
    """Model could not be loaded right now (missing, download, accelerator). Recoverable-session."""

    def __init__(self, model, reason):
        super().__init__(f"Model '{model}' failed to load: {reason}")
        self.model = model
        self.reason = reason


class FatalPipelineError(PipelineError):
    """Corrupt weights or allocation failure. The session stops."""


class TranscriptionError(PipelineError):
    """Acoustic inference failed. The utterance is dropped."""


class CorrectionError(PipelineError):
    """Correction model failed or produced unusable output. Degrades to raw text."""
