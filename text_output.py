"""codevoice text output — sinks for results, xdotool/xclip injection, focused-window queries."""

import subprocess
import sys
import time
from logging_utils import describe_text, log_debug, log_info, log_error, log_warn


# Known terminal emulator window classes
TERMINAL_CLASSES = {
    'gnome-terminal', 'gnome-terminal-server',
    'xterm', 'konsole', 'terminator', 'alacritty',
    'kitty', 'tilix', 'sakura', 'guake', 'yakuake',
    'st', 'urxvt', 'rxvt', 'wezterm', 'foot',
}

# Window class cache (avoids repeated xdotool subprocess calls)
_cached_window_class = None
_window_class_cache_time = 0
_WINDOW_CLASS_CACHE_TTL = 2.0


def _xdotool_query(*args):
    try:
        result = subprocess.run(
            ['xdotool', 'getactivewindow', *args],
            capture_output=True,
            timeout=1.0,
            shell=False,
            text=True
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except subprocess.TimeoutExpired:
        log_error(f"[OUTPUT] xdotool {args[0]} timeout")
    except Exception as e:
        log_error(f"[OUTPUT] xdotool {args[0]} failed: {e}")
    return None


def get_active_window_class():
    """WM_CLASS of the focused window, lowercase, cached for a couple of seconds. None if unknown."""
    global _cached_window_class, _window_class_cache_time
    now = time.time()
    if now - _window_class_cache_time < _WINDOW_CLASS_CACHE_TTL:
        return _cached_window_class
    value = _xdotool_query('getwindowclassname')
    _cached_window_class = value.lower() if value else None
    _window_class_cache_time = now
    return _cached_window_class


def get_active_window_title():
    """Title of the focused window, or '' if it cannot be read."""
    return _xdotool_query('getwindowname') or ''


def is_terminal(window_class):
    """Check if window class is a known terminal emulator."""
    if window_class is None:
        return False
    return window_class.lower() in TERMINAL_CLASSES


def type_text(text, typing_mode='console'):
    """Type text via xdotool. Returns True on success."""
    if not text:
        return True

    try:
        if typing_mode == 'gui':
            # GUI mode: split on newlines and send actual Enter keypresses
            parts = text.split('\n')
            for i, part in enumerate(parts):
                if part:
                    subprocess.run(
                        ['xdotool', 'type', '--clearmodifiers', '--', part],
                        timeout=5.0,
                        shell=False,
                        check=True
                    )
                if i < len(parts) - 1:
                    subprocess.run(
                        ['xdotool', 'key', 'Return'],
                        timeout=2.0,
                        shell=False,
                        check=True
                    )
        else:
            # Console mode: type text as-is
            subprocess.run(
                ['xdotool', 'type', '--clearmodifiers', '--', text],
                timeout=5.0,
                shell=False,
                check=True
            )
        log_debug(f"[OUTPUT] Typed {len(text)} chars")
        return True
    except subprocess.TimeoutExpired:
        log_error("[OUTPUT] xdotool type timeout")
    except (subprocess.CalledProcessError, OSError) as e:
        log_error(f"[OUTPUT] xdotool type failed: {e}")
    return False


def copy_to_clipboard(text):
    """Copy text to clipboard via xclip. Returns True on success."""
    if not text:
        return True
    try:
        subprocess.run(
            ['xclip', '-selection', 'clipboard'],
            input=text.encode('utf-8'),
            timeout=2.0,
            shell=False,
            check=True
        )
        log_debug(f"[OUTPUT] Copied {len(text)} chars to clipboard")
        return True
    except subprocess.TimeoutExpired:
        log_error("[OUTPUT] xclip timeout")
    except (subprocess.CalledProcessError, OSError) as e:
        log_error(f"[OUTPUT] xclip failed: {e}")
    return False


class OutputSink:
    """Receives everything the pipeline surfaces. Subclasses override what they show."""

    def on_partial(self, partial):
        pass

    def on_result(self, result):
        pass

    def on_status(self, status, message=""):
        log_info(f"[STATUS] {status}" + (f": {message}" if message else ""))

    def on_revision(self, revision):
        pass


class EditorSink(OutputSink):
    """Injects final text into the focused window. Terminals get the clipboard instead."""

    def __init__(self, config):
        self.auto_type = config.get('auto_type', True)
        self.typing_mode = config.get('typing_mode', 'console')
        self.append_space = config.get('append_space', True)
        self.revisions_to_clipboard = config.get('revisions_to_clipboard', False)

    def on_result(self, result):
        text = result.text
        if not text or not self.auto_type:
            return
        # Separate consecutive prose utterances; code and line ends need no space.
        if self.append_space and '\n' not in text and not text.endswith((' ', '\t')):
            text = text + ' '

        if self.typing_mode == 'clipboard':
            copy_to_clipboard(text)
            return

        window_class = get_active_window_class()
        log_debug(f"[OUTPUT] Target window: {window_class}")
        if is_terminal(window_class):
            log_info("[OUTPUT] Terminal detected, copying to clipboard (not typing)")
            copy_to_clipboard(text)
            return
        if not type_text(text, self.typing_mode):
            log_warn("[OUTPUT] Typing failed, text left on the clipboard")
            copy_to_clipboard(text)

    def on_revision(self, revision):
        # Typed text is never rewritten behind the user's back.
        log_info(f"[OUTPUT] Utterance {revision.utterance_id} has a revised transcription "
                 f"from {revision.model}: {describe_text(revision.verified_text)}")
        if self.revisions_to_clipboard:
            copy_to_clipboard(revision.verified_text)


class ConsoleSink(OutputSink):
    """Prints results to stdout (dry runs, piping into other tools)."""

    def __init__(self, config, stream=None):
        self.stream = stream or sys.stdout
        self.show_partials = config.get('stream_partials', False)

    def _write(self, line):
        print(line, file=self.stream, flush=True)

    def on_partial(self, partial):
        if self.show_partials:
            self._write(f"... {partial.text}")

    def on_result(self, result):
        if result.text:
            self._write(result.text)

    def on_revision(self, revision):
        self._write(f"[revised #{revision.utterance_id}] {revision.verified_text}")


SINKS = {
    'editor': EditorSink,
    'console': ConsoleSink,
}


def build_sink(config):
    name = config.get('sink', 'editor')
    if name not in SINKS:
        raise ValueError(f"Unknown output sink '{name}'. Available: {sorted(SINKS)}")
    return SINKS[name](config)
