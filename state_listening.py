"""codevoice state: listening — the pipeline is running.

State transition invariant:
    Audio trouble that a stream restart cannot fix leaves through
    ``"unavailable"`` with ``ctx.unavailable_reason = "device"``. The
    pipeline is always stopped before this state returns.
"""

import time

from logging_utils import log_info, log_error
from control import Mailbox
from context import handle_quit

HEALTH_CHECK_INTERVAL = 2.0


def state_listening(ctx):
    """Listening state. Stage threads transcribe; this thread watches health and the mailbox.

    PRE: Models loaded. Audio source running.
    POST: ctx.pipeline is None.
    RETURNS: "paused" (toggle), "disabled" (toggle enable), "unavailable" (audio failure),
             None (quit).
    INTERRUPTS: Mailbox TOGGLE_PAUSE, TOGGLE_ENABLE, QUIT checked every iteration.
    """
    log_info("[STATE] Entering: listening")

    # Frames captured while paused or recovering are stale.
    ctx.audio_source.flush_frame_queue()
    ctx.pipeline = ctx.build_pipeline()
    ctx.pipeline.start()
    ctx.set_status('listening')
    log_info("Listening... (speak to dictate)")

    last_health_check = time.time()
    last_dropped = 0

    while True:
        req = ctx.mailbox.wait(timeout=0.1)
        if req == Mailbox.TOGGLE_PAUSE:
            log_info("[STATE] Exiting: listening -> paused")
            ctx.stop_pipeline(drain=True)
            return "paused"
        elif req == Mailbox.TOGGLE_ENABLE:
            log_info("[STATE] Exiting: listening -> disabled (unloading models)")
            ctx.stop_pipeline(drain=True)
            ctx.unload_models()
            try:
                ctx.audio_source.stop()
            except Exception as e:
                log_error(f"[AUDIO] Stop failed: {e}")
            return "disabled"
        elif req == Mailbox.QUIT:
            log_info("[STATE] Exiting: listening -> shutdown")
            return handle_quit(ctx)

        # Back to normal once the backlog clears after an overload.
        if ctx.status == 'overloaded' and ctx.pipeline.is_idle():
            ctx.set_status('listening')
        if ctx.pipeline.spans_dropped != last_dropped:
            last_dropped = ctx.pipeline.spans_dropped
            ctx.status = 'overloaded'

        # Periodic health check
        now = time.time()
        if now - last_health_check < HEALTH_CHECK_INTERVAL:
            continue
        last_health_check = now
        if ctx.audio_source.is_healthy():
            continue

        log_error("[AUDIO] Stream unhealthy, attempting restart")
        if ctx.audio_source.restart():
            log_info("[AUDIO] Stream restarted successfully")
            last_health_check = time.time()
            continue

        log_info("[STATE] Exiting: listening -> unavailable (audio failure)")
        ctx.stop_pipeline(drain=True)
        ctx.unavailable_reason = "device"
        ctx.set_status('unavailable', "Audio device lost")
        return "unavailable"
