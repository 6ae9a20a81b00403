"""codevoice state: disabled — models unloaded, accelerator free."""

from logging_utils import log_debug, log_info
from control import Mailbox
from context import handle_quit


def state_disabled(ctx):
    """Disabled state. Models unloaded, audio stopped. Wait for TOGGLE_ENABLE.

    PRE: Models are unloaded, audio source stopped.
    RETURNS: "loading" (enable), None (quit).
    INTERRUPTS: Mailbox TOGGLE_ENABLE, QUIT via blocking wait; TOGGLE_PAUSE ignored.
    """
    log_info("[STATE] Entering: disabled")
    ctx.set_status('disabled')
    log_info("codevoice disabled (GPU released). Use tray menu to enable.")

    while True:
        req = ctx.mailbox.wait(timeout=0.5)
        if req == Mailbox.TOGGLE_ENABLE:
            log_info("[STATE] Exiting: disabled -> loading")
            return "loading"
        elif req in (Mailbox.TOGGLE_PAUSE, Mailbox.RETRY):
            log_debug(f"[TRAP] In DISABLED, got {req} (nonsensical, ignored)")
        elif req == Mailbox.QUIT:
            log_info("[STATE] Exiting: disabled -> shutdown")
            return handle_quit(ctx)
