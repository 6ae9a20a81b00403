"""codevoice state: paused — models loaded, nothing transcribed."""

from logging_utils import log_debug, log_error, log_info
from control import Mailbox
from context import handle_quit


def state_paused(ctx):
    """Paused state. Models loaded, pipeline stopped, audio left running for a quick resume.

    PRE: Models are loaded. Pipeline is stopped.
    RETURNS: "listening" (toggle pause), "disabled" (toggle enable), None (quit).
    INTERRUPTS: Mailbox TOGGLE_PAUSE, TOGGLE_ENABLE, QUIT via blocking wait.
    """
    log_info("[STATE] Entering: paused")
    ctx.set_status('paused')

    while True:
        req = ctx.mailbox.wait(timeout=0.2)
        if req == Mailbox.TOGGLE_PAUSE:
            log_info("[STATE] Exiting: paused -> listening")
            return "listening"
        elif req == Mailbox.TOGGLE_ENABLE:
            log_info("[STATE] Exiting: paused -> disabled (unloading models)")
            ctx.unload_models()
            try:
                ctx.audio_source.stop()
            except Exception as e:
                log_error(f"[AUDIO] Stop failed: {e}")
            return "disabled"
        elif req == Mailbox.RETRY:
            log_debug("[TRAP] In PAUSED, got RETRY (nothing to retry, ignored)")
        elif req == Mailbox.QUIT:
            log_info("[STATE] Exiting: paused -> shutdown")
            return handle_quit(ctx)
