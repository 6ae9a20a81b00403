#!/usr/bin/env python3
"""codevoice — local speech-to-code dictation."""

import os
import sys

# Ensure DISPLAY is set (needed when launched from environments without it)
if not os.environ.get('DISPLAY'):
    os.environ['DISPLAY'] = ':0'

# CUDA runtime libraries live in the venv (nvidia-cublas-cu12, nvidia-cudnn-cu12).
# LD_LIBRARY_PATH must be set before the process starts, so re-exec if needed.
_venv_nvidia = os.path.join(os.path.dirname(os.path.abspath(__file__)), "venv",
                            "lib", f"python{sys.version_info.major}.{sys.version_info.minor}",
                            "site-packages", "nvidia")
if os.path.isdir(_venv_nvidia) and '_CODEVOICE_CUDA_READY' not in os.environ:
    _cuda_lib_paths = [os.path.join(_venv_nvidia, d, "lib") for d in os.listdir(_venv_nvidia)
                       if os.path.isdir(os.path.join(_venv_nvidia, d, "lib"))]
    if _cuda_lib_paths:
        _existing = os.environ.get('LD_LIBRARY_PATH', '')
        os.environ['LD_LIBRARY_PATH'] = ':'.join(_cuda_lib_paths + ([_existing] if _existing else []))
        os.environ['_CODEVOICE_CUDA_READY'] = '1'
        os.execv(sys.executable, [sys.executable] + sys.argv)

import signal
import threading
import traceback

import logging_utils
from logging_utils import log_info, log_error, log_debug
from config import load_config
from control import Mailbox
from audio_source import AudioSource
from context import PipelineContext
from text_output import build_sink

# State function imports
from state_disabled import state_disabled
from state_listening import state_listening
from state_loading import state_loading
from state_paused import state_paused
from state_unavailable import state_unavailable


# State dispatch table
STATES = {
    "loading": state_loading,
    "listening": state_listening,
    "paused": state_paused,
    "disabled": state_disabled,
    "unavailable": state_unavailable,
}


def state_worker(ctx, initial="loading"):
    """Worker thread: runs state machine loop."""
    state = initial
    while state is not None:
        if state not in STATES:
            log_error(f"Invalid state '{state}' returned, shutting down")
            state = None
        else:
            log_debug(f"[STATE] Dispatching: {state}")
            try:
                state = STATES[state](ctx)
            except Exception as e:
                log_error(f"[STATE] Unhandled error in '{state}': {e}")
                traceback.print_exc()
                ctx.stop_pipeline(drain=False)
                ctx.unavailable_reason = "device"
                state = "unavailable"
    log_info("State worker exiting")


def main():
    try:
        print("=" * 60)
        print("codevoice - Local Speech-to-Code Dictation")
        print("=" * 60)
        print()

        # Load config
        config = load_config()
        logging_utils.set_debug(config.get('debug', False))
        logging_utils.set_log_transcripts(config.get('log_transcripts', False))

        mailbox = Mailbox()
        audio_source = AudioSource(config)
        sink = build_sink(config)

        ctx = PipelineContext(config, audio_source, sink, mailbox)

        # Register signal handlers (after ctx created)
        def handle_signal(sig, frame):
            log_info(f"Signal {sig} received")
            ctx.mailbox.post(Mailbox.QUIT)

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        tray = None
        if config.get('tray_enabled', False):
            # GTK only when the tray is wanted; headless runs never import gi.
            import gi
            gi.require_version('Gtk', '3.0')
            from gi.repository import Gtk
            from tray import TrayIcon

            # Create tray (on main thread, before GTK loop)
            tray = TrayIcon(mailbox, config['icon_dir'])
            tray.setup()
            ctx.tray = tray
            ctx.tray_running = True
            if ctx._pending_icon:
                tray.set_icon_by_name(ctx._pending_icon)

        # Start worker thread (state machine)
        worker = threading.Thread(target=state_worker, args=(ctx,), daemon=False)
        worker.start()

        log_info("codevoice started")
        print()
        if tray is not None:
            print("System tray icon active. Right-click for menu.")
        print("Press Ctrl+C to quit.")
        print()

        if tray is not None:
            # Run GTK main loop (on main thread)
            Gtk.main()
            worker.join(timeout=2.0)
        else:
            # Short joins keep the main thread responsive to signals
            while worker.is_alive():
                worker.join(timeout=0.5)

        if worker.is_alive():
            log_error("Worker thread did not exit cleanly")

    except Exception as e:
        log_error(f"Unhandled exception: {e}")
        traceback.print_exc()

    finally:
        # Final cleanup: always runs, each step individually guarded
        log_info("[SHUTDOWN] Final cleanup")

        if 'ctx' in locals():
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
                if ctx.tray:
                    ctx.tray_running = False
            except Exception as e:
                log_error(f"[SHUTDOWN] Tray cleanup failed: {e}")

            if ctx.fatal_error is not None:
                log_info("codevoice stopped: transcription unavailable.")
                sys.exit(1)

        log_info("codevoice stopped.")


if __name__ == '__main__':
    main()
