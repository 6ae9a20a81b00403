"""codevoice tray icon — GTK/AppIndicator status indicator, posts to the mailbox only."""

import gi
gi.require_version('Gtk', '3.0')
gi.require_version('AyatanaAppIndicator3', '0.1')
from gi.repository import Gtk, AyatanaAppIndicator3, GLib

from control import Mailbox
from logging_utils import log_info, log_debug


class TrayIcon:
    """
    Status indicator. Responsibilities:
    1. Render whatever icon it's told (via set_icon_by_name)
    2. Post user actions to the mailbox
    Nothing else: no state logic, no model calls, no audio calls.
    """

    def __init__(self, mailbox, icon_dir):
        self.mailbox = mailbox
        self._icon_dir = icon_dir
        self._indicator = None

    def setup(self):
        """Create the indicator and menu. Must be called on GTK main thread."""
        self._indicator = AyatanaAppIndicator3.Indicator.new(
            "codevoice",
            "CV_DISABLE",
            AyatanaAppIndicator3.IndicatorCategory.APPLICATION_STATUS
        )
        self._indicator.set_icon_theme_path(self._icon_dir)
        self._indicator.set_status(AyatanaAppIndicator3.IndicatorStatus.ACTIVE)
        self._indicator.set_menu(self._build_menu())
        log_info("[TRAY] Indicator created")

    def _build_menu(self):
        menu = Gtk.Menu()
        entries = (
            ("Pause / Resume", Mailbox.TOGGLE_PAUSE),
            ("Enable / Disable (GPU)", Mailbox.TOGGLE_ENABLE),
            ("Retry now", Mailbox.RETRY),
            (None, None),
            ("Quit codevoice", Mailbox.QUIT),
        )
        for label, request in entries:
            if label is None:
                menu.append(Gtk.SeparatorMenuItem())
                continue
            item = Gtk.MenuItem(label=label)
            item.connect("activate", self._on_activate, request)
            menu.append(item)
        menu.show_all()
        return menu

    def _on_activate(self, _, request):
        log_debug(f"[TRAY] User selected {request}")
        self.mailbox.post(request)

    def set_icon_by_name(self, name):
        """Set the tray icon. Called via GLib.idle_add from worker thread."""
        if self._indicator:
            self._indicator.set_icon_full(name, "codevoice")

    def stop(self):
        """Quit GTK main loop. Called from worker thread via GLib.idle_add."""
        GLib.idle_add(Gtk.main_quit)
