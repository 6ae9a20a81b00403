"""codevoice state: unavailable — waiting out a device or model failure with backoff."""

import random
import time

from logging_utils import log_info, log_error
from control import Mailbox
from context import handle_fatal, handle_quit
from errors import DeviceError, FatalPipelineError, ModelLoadError

INITIAL_INTERVAL = 2.0
MAX_INTERVAL = 15.0
RESOURCE_RELEASE_SECS = 600  # 10 minutes
STILL_WAITING_LOG_SECS = 30.0


def next_interval(interval):
    """Exponential backoff, capped."""
    return min(interval * 2, MAX_INTERVAL)


def jittered(interval):
    """Apply jitter: ±20%"""
    return interval * random.uniform(0.8, 1.2)


def _try_recover(ctx):
    """One recovery attempt. Returns True when models and audio are both usable.

    Raises FatalPipelineError if a model turns out to be unloadable for good.
    """
    source = ctx.audio_source
    audio_ok = source.stream is not None and source.is_healthy()
    if not audio_ok and not source.is_device_present():
        return False

    if not ctx.models_loaded:
        try:
            ctx.load_models()
        except ModelLoadError as e:
            log_error(f"[MODELS] Still unavailable: {e}")
            return False
    if audio_ok:
        return True

    log_info(f"[AUDIO] Device '{source.device_name or 'default'}' detected, attempting stream start")
    try:
        source.start()
    except DeviceError as e:
        log_error(f"[AUDIO] Stream start failed after device found: {e}")
        return False

    # Wait for first audio callback to confirm stream is truly functional
    if not source.wait_for_first_frame(2.0):
        log_error("[AUDIO] Callback not received after stream start, retrying...")
        source.stop(force=True)
        return False
    return True


def state_unavailable(ctx):
    """Unavailable state. Retries with exponential backoff (2s -> 15s, ±20% jitter).

    PRE: ctx.unavailable_reason is "device" or "models".
    POST: On recovery, models loaded and audio running.
    RETURNS: "listening" (recovered), "paused" (toggle pause), "disabled" (toggle enable),
             None (quit or fatal).
    INTERRUPTS: Mailbox checked between attempts; RETRY skips the remaining wait.
    """
    reason = ctx.unavailable_reason or "device"
    log_info(f"[STATE] Entering: unavailable ({reason})")
    if ctx.status != 'unavailable':
        ctx.set_status('unavailable', f"Waiting for {reason}")

    if reason == "device":
        # Tear down old stream aggressively (hardware may have vanished)
        ctx.audio_source.stop(force=True)
        ctx.audio_source.flush_frame_queue()

    interval = INITIAL_INTERVAL
    start_time = time.time()
    last_log_time = start_time
    models_unloaded = False

    while True:
        req = ctx.mailbox.wait(timeout=jittered(interval))
        if req == Mailbox.TOGGLE_PAUSE and ctx.models_loaded:
            log_info("[STATE] Exiting: unavailable -> paused")
            return "paused"
        elif req == Mailbox.TOGGLE_ENABLE:
            ctx.unload_models()
            ctx.audio_source.stop(force=True)
            log_info("[STATE] Exiting: unavailable -> disabled")
            return "disabled"
        elif req == Mailbox.QUIT:
            log_info("[STATE] Exiting: unavailable -> shutdown")
            return handle_quit(ctx)
        elif req == Mailbox.RETRY:
            interval = INITIAL_INTERVAL

        elapsed = time.time() - start_time

        # Resource release during a long device outage
        if reason == "device" and not models_unloaded and elapsed >= RESOURCE_RELEASE_SECS:
            ctx.unload_models()
            models_unloaded = True
            log_info("[AUDIO] Models unloaded to free resources during extended disconnect")

        now = time.time()
        if now - last_log_time >= STILL_WAITING_LOG_SECS:
            log_info(f"[STATE] Still waiting for {reason}... ({int(elapsed)}s elapsed)")
            last_log_time = now

        try:
            recovered = _try_recover(ctx)
        except FatalPipelineError as e:
            return handle_fatal(ctx, e)

        if recovered:
            log_info("[STATE] Recovered, exiting: unavailable -> listening")
            ctx.unavailable_reason = None
            return "listening"
        interval = next_interval(interval)
