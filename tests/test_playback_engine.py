import math
import random

from conftest import FakeDispatcher, FakeMedia, Recorder, make_tracks
from models import RepeatMode
from playback_engine import PlaybackEngine, format_time


def _ids(tracks):
    return [t.id for t in tracks]


def test_play_without_shuffle_keeps_queue_and_index(engine, media):
    tracks = make_tracks(5)
    assert engine.play(tracks[2], tracks, 2) is True
    assert _ids(engine.tracks) == _ids(tracks)
    assert engine.current_index == 2
    assert engine.current_track is tracks[2]
    assert engine.is_playing is True
    assert ("load", "https://cdn.example/audio/s2.mp3") in media.calls
    assert media.names()[-1] == "play"


def test_play_with_shuffle_puts_track_first(engine):
    tracks = make_tracks(10)
    engine.toggle_shuffle()
    for i in range(10):
        engine.play(tracks[i], tracks, i)
        assert engine.tracks[0] is tracks[i]
        assert engine.current_index == 0
        assert sorted(_ids(engine.tracks)) == sorted(_ids(tracks))


def test_play_finds_index_when_missing(engine):
    tracks = make_tracks(4)
    engine.play(tracks[3], tracks)
    assert engine.current_index == 3


def test_play_track_outside_queue_is_rejected(engine, media):
    tracks = make_tracks(3)
    other = make_tracks(1, prefix="x")[0]
    assert engine.play(other, tracks, 0) is False
    assert engine.current_track is None
    assert media.calls == []


def test_toggle_shuffle_keeps_current_and_restores_order(engine):
    tracks = make_tracks(6)
    engine.play(tracks[3], tracks, 3)

    engine.toggle_shuffle()
    assert engine.current_track is tracks[3]
    assert engine.tracks[0] is tracks[3]
    assert engine.current_index == 0

    engine.toggle_shuffle()
    assert _ids(engine.tracks) == _ids(tracks)
    assert engine.current_index == 3
    assert engine.current_track is tracks[3]


def test_toggle_shuffle_without_track_only_flips_flag(engine):
    rec = Recorder(engine, "shuffle-changed", "queue-changed")
    assert engine.toggle_shuffle() is True
    assert rec.names() == ["shuffle-changed"]
    assert engine.tracks == []


def test_repeat_cycle_has_no_side_effects(engine, media):
    seen = [engine.toggle_repeat() for _ in range(3)]
    assert seen == [RepeatMode.ONE, RepeatMode.ALL, RepeatMode.OFF]
    assert media.calls == []


def test_next_wraps_around(engine):
    tracks = make_tracks(3)
    engine.play(tracks[2], tracks, 2)
    engine.next()
    assert engine.current_index == 0
    assert engine.current_track is tracks[0]


def test_shuffle_next_may_pick_current_track():
    tracks = make_tracks(3)
    engine = PlaybackEngine(FakeMedia(), lambda path: path, FakeDispatcher(), rng=random.Random(11))
    engine.toggle_shuffle()
    engine.play(tracks[0], tracks, 0)
    repeats = 0
    for _ in range(60):
        before = engine.current_index
        engine.next()
        if engine.current_index == before:
            repeats += 1
    assert repeats > 0


def test_previous_restarts_after_threshold(engine, media):
    tracks = make_tracks(4)
    engine.play(tracks[2], tracks, 2)
    media.position = (3.5, 200.0)
    engine.previous()
    assert engine.current_index == 2
    assert media.calls[-1] == ("seek", 0.0)
    assert engine.position == 0.0


def test_previous_before_threshold_wraps_to_last(engine, media):
    tracks = make_tracks(4)
    engine.play(tracks[0], tracks, 0)
    media.position = (2.9, 200.0)
    engine.previous()
    assert engine.current_index == 3
    assert engine.current_track is tracks[3]


def test_track_end_repeat_off_advances_then_stops(engine, media):
    tracks = make_tracks(2)
    engine.play(tracks[0], tracks, 0)
    engine.handle_track_ended()
    assert engine.current_index == 1
    assert engine.is_playing is True

    loads = media.names().count("load")
    engine.handle_track_ended()
    assert engine.current_index == 1
    assert engine.is_playing is False
    assert media.names().count("load") == loads


def test_track_end_repeat_one_restarts_same_track(engine, media):
    tracks = make_tracks(3)
    engine.play(tracks[1], tracks, 1)
    engine.toggle_repeat()
    engine.handle_track_ended()
    assert engine.current_index == 1
    assert media.calls[-2:] == [("seek", 0.0), ("play",)]
    assert engine.is_playing is True


def test_track_end_repeat_all_wraps(engine):
    tracks = make_tracks(3)
    engine.play(tracks[2], tracks, 2)
    engine.toggle_repeat()
    engine.toggle_repeat()
    engine.handle_track_ended()
    assert engine.current_index == 0


def test_stale_url_does_not_start_playback(media):
    dispatcher = FakeDispatcher(deferred=True)
    engine = PlaybackEngine(media, lambda path: f"url:{path}", dispatcher)
    tracks = make_tracks(3)
    engine.play(tracks[0], tracks, 0)
    engine.next()
    dispatcher.run_all()
    assert [c for c in media.calls if c[0] == "load"] == [("load", "url:audio/s1.mp3")]
    assert engine.current_track is tracks[1]


def test_stop_during_load_keeps_player_idle(media):
    dispatcher = FakeDispatcher(deferred=True)
    engine = PlaybackEngine(media, lambda path: path, dispatcher)
    tracks = make_tracks(2)
    engine.play(tracks[0], tracks, 0)
    engine.stop()
    dispatcher.run_all()
    assert engine.is_playing is False
    assert media.names() == ["unload"]


def test_media_load_failure_reports_error(engine, media):
    media.fail_load = True
    rec = Recorder(engine, "error")
    tracks = make_tracks(2)
    engine.play(tracks[0], tracks, 0)
    assert engine.is_playing is False
    assert engine.last_error is not None
    assert rec.names() == ["error"]


def test_url_resolution_failure_leaves_playing_false(media, dispatcher):
    def broken(path):
        raise ConnectionError("connection refused")

    engine = PlaybackEngine(media, broken, dispatcher)
    tracks = make_tracks(1)
    engine.play(tracks[0], tracks, 0)
    assert engine.is_playing is False
    assert engine.last_error[0] == "network"


def test_stop_clears_track_and_releases_media(engine, media):
    tracks = make_tracks(2)
    engine.play(tracks[0], tracks, 0)
    media.position = (12.0, 90.0)
    engine.refresh_position()
    engine.stop()
    assert engine.current_track is None
    assert engine.position == 0.0
    assert engine.duration == 0.0
    assert media.calls[-1] == ("unload",)


def test_toggle_play_pause(engine, media):
    tracks = make_tracks(1)
    engine.play(tracks[0], tracks, 0)
    engine.toggle_play_pause()
    assert engine.is_playing is False
    assert media.calls[-1] == ("pause",)
    engine.toggle_play_pause()
    assert engine.is_playing is True
    assert media.calls[-1] == ("play",)


def test_refresh_position_sanitizes_nan(engine, media):
    tracks = make_tracks(1)
    engine.play(tracks[0], tracks, 0)
    media.position = (float("nan"), float("inf"))
    assert engine.refresh_position() is True
    assert engine.position == 0.0
    assert engine.duration == 0.0


def test_refresh_position_without_track(engine):
    assert engine.refresh_position() is False


def test_set_track_liked_updates_current(engine):
    tracks = make_tracks(2)
    engine.play(tracks[1], tracks, 1)
    rec = Recorder(engine, "track-changed")
    assert engine.set_track_liked("s1", True) is True
    assert engine.current_track.liked is True
    assert rec.names() == ["track-changed"]


def test_format_time():
    assert format_time(0) == "0:00"
    assert format_time(65.9) == "1:05"
    assert format_time(3600) == "60:00"
    assert format_time(math.nan) == "0:00"
    assert format_time(math.inf) == "0:00"
    assert format_time(None) == "0:00"
