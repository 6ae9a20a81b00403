"""codevoice state: loading — models onto the accelerator, audio stream up."""

from logging_utils import log_info, log_error
from control import Mailbox
from context import handle_fatal, handle_quit
from errors import DeviceError, FatalPipelineError, ModelLoadError

FIRST_FRAME_TIMEOUT = 2.0


def state_loading(ctx):
    """Loading state. Entry state, and the way back from disabled.

    PRE: Models may or may not be loaded. Audio source may or may not be running.
    POST: Models loaded and audio delivering frames, or ctx.unavailable_reason set.
    RETURNS: "listening" (ready), "unavailable" (device or model problem),
             "disabled" (toggle while loading), None (quit or fatal).
    """
    log_info("[STATE] Entering: loading")
    ctx.set_status('loading')
    ctx.unavailable_reason = None

    try:
        ctx.load_models()
    except FatalPipelineError as e:
        return handle_fatal(ctx, e)
    except ModelLoadError as e:
        log_error(f"[MODELS] {e}")
        ctx.unavailable_reason = "models"
        ctx.set_status('unavailable', str(e))
        return "unavailable"

    # Loading can take a while; honour anything posted meanwhile.
    req = ctx.mailbox.check()
    if req == Mailbox.QUIT:
        return handle_quit(ctx)
    elif req == Mailbox.TOGGLE_ENABLE:
        ctx.unload_models()
        log_info("[STATE] Exiting: loading -> disabled")
        return "disabled"

    try:
        ctx.audio_source.start()
    except DeviceError as e:
        log_error(f"[AUDIO] {e}")
        ctx.unavailable_reason = "device"
        ctx.set_status('unavailable', str(e))
        return "unavailable"

    if not ctx.audio_source.wait_for_first_frame(FIRST_FRAME_TIMEOUT):
        log_error("[AUDIO] No audio received after stream start")
        ctx.audio_source.stop(force=True)
        ctx.unavailable_reason = "device"
        ctx.set_status('unavailable', "Audio device delivers no frames")
        return "unavailable"

    if req == Mailbox.TOGGLE_PAUSE:
        log_info("[STATE] Exiting: loading -> paused")
        return "paused"
    log_info("[STATE] Exiting: loading -> listening")
    return "listening"
