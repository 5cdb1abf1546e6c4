import logging
from itertools import count

logger = logging.getLogger(__name__)


class Observable:
    """Minimal connect/emit signal list, named after the GObject calls the
    desktop layer already uses."""

    def __init__(self):
        self._handlers = {}
        self._handler_ids = count(1)

    def connect(self, signal, callback):
        handler_id = next(self._handler_ids)
        self._handlers.setdefault(signal, []).append((handler_id, callback))
        return handler_id

    def disconnect(self, handler_id):
        for signal, handlers in self._handlers.items():
            kept = [h for h in handlers if h[0] != handler_id]
            if len(kept) != len(handlers):
                self._handlers[signal] = kept
                return True
        return False

    def emit(self, signal, *args):
        for _handler_id, callback in list(self._handlers.get(signal, [])):
            try:
                callback(*args)
            except Exception as e:
                logger.warning("Handler for %r failed: %s", signal, e)
