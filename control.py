"""codevoice control requests — tray, signals and CLI talk to the state machine through here."""

import threading
from logging_utils import log_debug


class Mailbox:
    """Single-slot request box. A newer request replaces an unread one, except QUIT."""

    TOGGLE_PAUSE = "toggle_pause"
    TOGGLE_ENABLE = "toggle_enable"
    RETRY = "retry"     # skip the remaining backoff while unavailable
    QUIT = "quit"

    def __init__(self):
        self._pending = None
        self._quit = False
        self._lock = threading.Lock()
        self._wakeup = threading.Event()

    def post(self, request):
        with self._lock:
            # QUIT is sticky: once posted, nothing overwrites it
            if self._quit:
                return
            self._pending = request
            self._quit = request == Mailbox.QUIT
            self._wakeup.set()
        log_debug(f"[MAILBOX] Posted: {request}")

    def check(self):
        """Non-blocking check. Returns request or None."""
        with self._lock:
            req = self._pending
            self._pending = None
            self._wakeup.clear()
        if req:
            log_debug(f"[MAILBOX] Read: {req}")
        return req

    def wait(self, timeout):
        """Block until request posted or timeout. Returns request or None."""
        self._wakeup.wait(timeout)
        return self.check()

    @property
    def quit_requested(self):
        """True once QUIT has been posted, even after it was read."""
        return self._quit
