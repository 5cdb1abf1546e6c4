import logging
from threading import Thread

from gi.repository import GLib

logger = logging.getLogger(__name__)


class GLibDispatcher:
    """Runs blocking work on daemon threads and delivers results back on the
    GLib main loop, which is the only thread allowed to touch app state."""

    def run_async(self, work, on_done=None, on_error=None):
        def task():
            try:
                result = work()
            except Exception as e:
                if on_error is None:
                    logger.warning("Background task failed: %s", e)
                    return
                GLib.idle_add(self._deliver, on_error, e)
                return
            if on_done is not None:
                GLib.idle_add(self._deliver, on_done, result)

        Thread(target=task, daemon=True).start()

    def timeout_add(self, delay_ms, callback):
        def _fire():
            callback()
            return False

        return GLib.timeout_add(int(delay_ms), _fire)

    def source_remove(self, source_id):
        if source_id:
            GLib.source_remove(source_id)

    def _deliver(self, callback, *args):
        callback(*args)
        return False
