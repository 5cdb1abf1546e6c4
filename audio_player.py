import gi
import logging

gi.require_version('Gst', '1.0')
from gi.repository import Gst, GLib

logger = logging.getLogger(__name__)


class AudioPlayer:
    """GStreamer playbin wrapper. Streams the download URL the catalog hands out."""

    def __init__(self, on_eos_callback=None, on_error_callback=None):
        try:
            Gst.init(None)
        except Exception as e:
            logger.debug("GStreamer init skipped/failed: %s", e)

        self.pipeline = Gst.ElementFactory.make("playbin", "player")
        if self.pipeline is None:
            raise RuntimeError("GStreamer playbin element is not available")

        self.on_eos_callback = on_eos_callback
        self.on_error_callback = on_error_callback
        self.current_uri = None

        bus = self.pipeline.get_bus()
        bus.add_signal_watch()
        bus.connect("message", self.on_message)

    def load(self, uri):
        self.stop()
        self.current_uri = uri
        self.pipeline.set_property("uri", uri)

    def play(self):
        self.pipeline.set_state(Gst.State.PLAYING)

    def pause(self):
        self.pipeline.set_state(Gst.State.PAUSED)

    def stop(self):
        self.pipeline.set_state(Gst.State.NULL)

    def unload(self):
        self.stop()
        self.current_uri = None

    def seek(self, position_seconds):
        self.pipeline.seek_simple(
            Gst.Format.TIME,
            Gst.SeekFlags.FLUSH | Gst.SeekFlags.KEY_UNIT,
            int(max(0.0, position_seconds) * Gst.SECOND),
        )

    def get_position(self):
        try:
            success, pos = self.pipeline.query_position(Gst.Format.TIME)
            success_dur, dur = self.pipeline.query_duration(Gst.Format.TIME)
            if success and success_dur:
                return pos / Gst.SECOND, dur / Gst.SECOND
            if success:
                return pos / Gst.SECOND, 0.0
        except Exception as e:
            logger.debug("Position query failed: %s", e)
        return 0.0, 0.0

    def cleanup(self):
        self.unload()
        bus = self.pipeline.get_bus()
        if bus is not None:
            bus.remove_signal_watch()

    def on_message(self, bus, message):
        t = message.type
        if t == Gst.MessageType.EOS:
            logger.debug("End of stream: %s", self.current_uri)
            if self.on_eos_callback:
                GLib.idle_add(self._run_callback, self.on_eos_callback)
        elif t == Gst.MessageType.ERROR:
            err, debug = message.parse_error()
            logger.error("GStreamer error: %s (%s)", err, debug)
            self.stop()
            if self.on_error_callback:
                GLib.idle_add(self._run_callback, self.on_error_callback, err.message)

    def _run_callback(self, callback, *args):
        callback(*args)
        return False
