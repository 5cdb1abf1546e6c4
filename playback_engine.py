import logging
import math
import random
from functools import partial

from actions import playback_actions
from app_errors import classify_exception, user_message
from models import RESTART_THRESHOLD_SECONDS, PlaybackQueue, RepeatMode
from signals import Observable

logger = logging.getLogger(__name__)


def format_time(seconds):
    try:
        value = float(seconds)
    except (TypeError, ValueError):
        return "0:00"
    if math.isnan(value) or math.isinf(value):
        return "0:00"
    total = int(max(0.0, value))
    return f"{total // 60}:{total % 60:02d}"


def _finite(value):
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


class PlaybackEngine(Observable):
    """
    Queue, transport and shuffle/repeat state for the player.

    `media` is the decoder/output (load, play, pause, seek, unload,
    get_position). `resolve_audio_url` turns a track's audio path into a
    streamable URL and may block, so it runs through `dispatcher`.

    Signals: track-changed, state-changed, queue-changed, shuffle-changed,
    repeat-changed, position-changed, error.
    """

    def __init__(self, media, resolve_audio_url, dispatcher, rng=None, restart_threshold=RESTART_THRESHOLD_SECONDS):
        super().__init__()
        self.media = media
        self.resolve_audio_url = resolve_audio_url
        self.dispatcher = dispatcher
        self.rng = rng or random.Random()
        self.restart_threshold = restart_threshold

        self.queue = PlaybackQueue()
        self.shuffle = False
        self.repeat_mode = RepeatMode.OFF
        self.is_playing = False
        self.position = 0.0
        self.duration = 0.0
        self.current_track = None
        self.last_error = None
        self._play_request_id = 0

    @property
    def current_index(self):
        return self.queue.index

    @property
    def tracks(self):
        return list(self.queue.tracks)

    # ------------------------------------------------------------------
    # queue

    def play(self, track, queue, start_index=None):
        tracks = list(queue or [])
        if start_index is None or not (0 <= start_index < len(tracks)) or tracks[start_index].id != track.id:
            start_index = next((i for i, t in enumerate(tracks) if t.id == track.id), -1)
        if start_index < 0:
            logger.warning("Track %s is not part of the queue it was played from", track.id)
            return False

        if self.shuffle:
            order = playback_actions.build_shuffled_queue(track, tracks, start_index, rng=self.rng)
            self.queue = PlaybackQueue(order, 0, original=tracks)
        else:
            self.queue = PlaybackQueue(tracks, start_index)

        self.current_track = track
        logger.info("Play %r (queue=%s index=%s shuffle=%s)", track.title, len(self.queue), self.queue.index, self.shuffle)
        self.emit("queue-changed", self.tracks)
        self.emit("track-changed", track)
        self._load_and_play(track)
        return True

    def toggle_shuffle(self):
        self.shuffle = not self.shuffle
        current = self.current_track

        if current is not None:
            if self.shuffle:
                order = playback_actions.build_shuffled_queue(current, self.queue.original, rng=self.rng)
                self.queue = PlaybackQueue(order, 0, original=self.queue.original)
            else:
                idx = self.queue.index_of(current, in_original=True)
                if idx >= 0:
                    self.queue = PlaybackQueue(self.queue.original, idx)
            self.emit("queue-changed", self.tracks)

        self.emit("shuffle-changed", self.shuffle)
        return self.shuffle

    def toggle_repeat(self):
        self.repeat_mode = self.repeat_mode.next()
        self.emit("repeat-changed", self.repeat_mode)
        return self.repeat_mode

    def next(self):
        if not len(self.queue):
            return
        idx = playback_actions.get_next_index(self.queue.index, len(self.queue), self.shuffle, rng=self.rng)
        self._jump_to(idx)

    def previous(self):
        if not len(self.queue):
            return
        if self._elapsed() > self.restart_threshold:
            self.seek(0)
            return
        idx = playback_actions.get_prev_index(self.queue.index, len(self.queue), self.shuffle, rng=self.rng)
        self._jump_to(idx)

    def handle_track_ended(self):
        mode = self.repeat_mode
        logger.debug("Track ended (repeat=%s index=%s/%s)", mode.value, self.queue.index, len(self.queue))
        if mode == RepeatMode.ONE:
            self.seek(0)
            self.resume()
        elif mode == RepeatMode.ALL:
            self.next()
        elif playback_actions.should_advance_on_end(self.queue.index, len(self.queue)):
            self.next()
        else:
            self.is_playing = False
            self.emit("state-changed", self.is_playing)

    def set_track_liked(self, track_id, liked):
        changed = False
        for t in self.queue.tracks + self.queue.original:
            if t.id == track_id and t.liked != liked:
                t.liked = liked
                changed = True
        if self.current_track is not None and self.current_track.id == track_id:
            if self.current_track.liked != liked:
                self.current_track.liked = liked
                changed = True
            # The caller may already have flipped this shared object.
            self.emit("track-changed", self.current_track)
        return changed

    # ------------------------------------------------------------------
    # transport

    def toggle_play_pause(self):
        if self.is_playing:
            self.pause()
        else:
            self.resume()

    def pause(self):
        self.media.pause()
        self.is_playing = False
        self.emit("state-changed", self.is_playing)

    def resume(self):
        self.media.play()
        self.is_playing = True
        self.emit("state-changed", self.is_playing)

    def seek(self, seconds):
        seconds = max(0.0, _finite(seconds))
        self.media.seek(seconds)
        self.position = seconds
        self.emit("position-changed", self.position, self.duration)

    def stop(self):
        # Drop any load still resolving so it cannot restart playback.
        self._play_request_id += 1
        self.media.unload()
        self.is_playing = False
        self.current_track = None
        self.position = 0.0
        self.duration = 0.0
        self.emit("track-changed", None)
        self.emit("state-changed", self.is_playing)
        self.emit("position-changed", self.position, self.duration)

    def refresh_position(self):
        if self.current_track is None:
            return False
        pos, dur = self.media.get_position()
        self.position = _finite(pos)
        self.duration = _finite(dur)
        self.emit("position-changed", self.position, self.duration)
        return True

    def handle_media_error(self, message):
        logger.error("Media error while playing %s: %s", getattr(self.current_track, "id", None), message)
        self.is_playing = False
        self._report(Exception(str(message)))
        self.emit("state-changed", self.is_playing)

    # ------------------------------------------------------------------

    def _elapsed(self):
        self.refresh_position()
        return self.position

    def _jump_to(self, idx):
        if not (0 <= idx < len(self.queue)):
            return
        self.queue.index = idx
        self.current_track = self.queue.current
        self.emit("track-changed", self.current_track)
        self._load_and_play(self.current_track)

    def _load_and_play(self, track):
        self._play_request_id += 1
        request_id = self._play_request_id
        self.position = 0.0
        self.duration = 0.0
        self.dispatcher.run_async(
            partial(self.resolve_audio_url, track.audio_path),
            on_done=partial(self._on_url_ready, request_id, track),
            on_error=partial(self._on_load_failed, request_id, track),
        )

    def _on_url_ready(self, request_id, track, url):
        if request_id != self._play_request_id:
            logger.debug("Dropping stale stream for %s", track.id)
            return
        try:
            self.media.load(url)
            self.media.play()
        except Exception as e:
            self._on_load_failed(request_id, track, e)
            return
        self.is_playing = True
        self.last_error = None
        self.emit("state-changed", self.is_playing)

    def _on_load_failed(self, request_id, track, exc):
        if request_id != self._play_request_id:
            return
        logger.error("Failed to load %r [%s]: %s", track.title, classify_exception(exc), exc)
        self.is_playing = False
        self._report(exc)
        self.emit("state-changed", self.is_playing)

    def _report(self, exc):
        kind = classify_exception(exc)
        self.last_error = (kind, user_message(kind, "playback"))
        self.emit("error", self.last_error)
