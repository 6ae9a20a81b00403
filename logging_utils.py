"""codevoice logging utilities."""

from datetime import datetime

# Module-level flags (set by main.py after config load)
_DEBUG = False
_LOG_TRANSCRIPTS = False


def set_debug(value):
    global _DEBUG
    _DEBUG = value


def set_log_transcripts(value):
    global _LOG_TRANSCRIPTS
    _LOG_TRANSCRIPTS = value


def is_debug():
    return _DEBUG


def _stamp():
    return datetime.now().strftime("%H:%M:%S.%f")[:-3]


def log_debug(msg):
    """Debug messages (only when debug_mode=true)."""
    if _DEBUG:
        print(f"[{_stamp()}] {msg}", flush=True)


def log_info(msg):
    """Info messages (always printed)."""
    print(msg, flush=True)


def log_warn(msg):
    """Degraded-but-working conditions (always printed)."""
    print(f"[WARN] {msg}", flush=True)


def log_error(msg):
    """Error messages (always printed)."""
    print(f"[ERROR] {msg}", flush=True)


def should_log_transcripts():
    """Check if transcription content should be logged."""
    return _LOG_TRANSCRIPTS


def describe_text(text):
    """Text for a log line: the content itself, or only its length."""
    if _LOG_TRANSCRIPTS:
        return f'"{text}"'
    return f"{len(text)} chars"
