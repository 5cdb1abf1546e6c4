import random

import pytest

from app_errors import CatalogError
from browse_navigator import BrowseNavigator
from models import Playlist, SongPage, Track
from playback_engine import PlaybackEngine


def make_track(n, prefix="s", title=None, **kwargs):
    fields = {
        "artist": f"Artist {n % 3}",
        "album": f"Album {n % 2}",
        "year": 2000 + n,
        "cover_path": f"covers/{prefix}{n}.jpg",
    }
    fields.update(kwargs)
    return Track(f"{prefix}{n}", title or f"Song {n}", f"audio/{prefix}{n}.mp3", **fields)


def make_tracks(count, prefix="s", start=0):
    return [make_track(i, prefix=prefix) for i in range(start, start + count)]


class FakeDispatcher:
    """Runs work inline, or queues it when `deferred` so a test can choose
    when each completion lands. Timers only fire through `fire_timers`."""

    def __init__(self, deferred=False):
        self.deferred = deferred
        self.jobs = []
        self.timers = {}
        self._next_timer = 1

    def run_async(self, work, on_done=None, on_error=None):
        job = (work, on_done, on_error)
        if self.deferred:
            self.jobs.append(job)
        else:
            self._run(job)

    def _run(self, job):
        work, on_done, on_error = job
        try:
            result = work()
        except Exception as e:
            if on_error is not None:
                on_error(e)
            return
        if on_done is not None:
            on_done(result)

    def run_job(self, index=0):
        self._run(self.jobs.pop(index))

    def run_all(self):
        while self.jobs:
            self.run_job(0)

    def timeout_add(self, delay_ms, callback):
        timer_id = self._next_timer
        self._next_timer += 1
        self.timers[timer_id] = (delay_ms, callback)
        return timer_id

    def source_remove(self, timer_id):
        self.timers.pop(timer_id, None)

    def fire_timers(self):
        timers, self.timers = self.timers, {}
        for _timer_id, (_delay, callback) in sorted(timers.items()):
            callback()


class FakeMedia:
    def __init__(self):
        self.calls = []
        self.position = (0.0, 0.0)
        self.fail_load = False

    def load(self, uri):
        self.calls.append(("load", uri))
        if self.fail_load:
            raise RuntimeError("decoder refused stream")

    def play(self):
        self.calls.append(("play",))

    def pause(self):
        self.calls.append(("pause",))

    def seek(self, seconds):
        self.calls.append(("seek", seconds))

    def unload(self):
        self.calls.append(("unload",))

    def get_position(self):
        return self.position

    def names(self):
        return [c[0] for c in self.calls]


class FakeCatalog:
    """In-memory catalog. `pages[(kind, value)]` holds the SongPages a
    paginated query hands out; integer tokens index into that list."""

    def __init__(self):
        self.calls = []
        self.fail = set()
        self.random_pages = []
        self.pages = {}
        self.artists = []
        self.albums = []
        self.years = []
        self.genres = []
        self.sources_by_genre = {}
        self.genre_ids = {}
        self.playlists = []
        self.playlist_titles = {}
        self.titles_result = None
        self.catalog = []
        self.created = 0

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if name in self.fail:
            raise CatalogError(f"{name}: HTTP 503", kind="server")

    def called(self, name):
        return [c for c in self.calls if c[0] == name]

    def _page(self, key, token):
        pages = self.pages.get(key, [])
        index = token or 0
        if index >= len(pages):
            return SongPage([], None)
        return pages[index]

    def fetch_random_songs(self, limit=50):
        self._record("fetch_random_songs", limit)
        if not self.random_pages:
            return []
        return list(self.random_pages.pop(0))

    def fetch_songs_by_artist(self, artist, limit=50, token=None):
        self._record("fetch_songs_by_artist", artist, limit, token)
        return self._page(("artist", artist), token)

    def fetch_songs_by_album(self, album, limit=50, token=None):
        self._record("fetch_songs_by_album", album, limit, token)
        return self._page(("album", album), token)

    def fetch_songs_by_year(self, year, limit=50, token=None):
        self._record("fetch_songs_by_year", year, limit, token)
        return self._page(("year", year), token)

    def fetch_songs_by_genre(self, genre, limit=50, token=None):
        self._record("fetch_songs_by_genre", genre, limit, token)
        return self._page(("genre", genre), token)

    def fetch_songs_by_source(self, source, limit=50, token=None):
        self._record("fetch_songs_by_source", source, limit, token)
        return self._page(("source", source), token)

    def fetch_liked_songs(self, limit=50, token=None):
        self._record("fetch_liked_songs", limit, token)
        return self._page(("liked", None), token)

    def fetch_new_songs(self, limit=50, token=None):
        self._record("fetch_new_songs", limit, token)
        return self._page(("new", None), token)

    def fetch_songs_by_title(self, prefix, limit=50, token=None):
        self._record("fetch_songs_by_title", prefix, limit)
        p = prefix.lower()
        return SongPage([s for s in self.catalog if s.title.lower().startswith(p)][:limit], None)

    def fetch_songs_by_titles(self, titles):
        self._record("fetch_songs_by_titles", list(titles))
        if self.titles_result is not None:
            return list(self.titles_result)
        return [s for s in self.catalog if s.title in titles]

    def toggle_liked(self, song_id, liked):
        self._record("toggle_liked", song_id, liked)

    def fetch_artists_with_counts(self):
        self._record("fetch_artists_with_counts")
        return list(self.artists)

    def fetch_albums_with_counts(self):
        self._record("fetch_albums_with_counts")
        return list(self.albums)

    def fetch_years_with_counts(self):
        self._record("fetch_years_with_counts")
        return list(self.years)

    def fetch_genres(self):
        self._record("fetch_genres")
        return list(self.genres)

    def get_genre_id_by_name(self, name):
        self._record("get_genre_id_by_name", name)
        return self.genre_ids.get(name)

    def fetch_sources_by_genre_id(self, genre_id):
        self._record("fetch_sources_by_genre_id", genre_id)
        return list(self.sources_by_genre.get(genre_id, []))

    def fetch_playlists(self):
        self._record("fetch_playlists")
        return list(self.playlists)

    def fetch_playlist_titles(self, playlist_id):
        self._record("fetch_playlist_titles", playlist_id)
        return list(self.playlist_titles.get(playlist_id, []))

    def create_playlist(self, name):
        self._record("create_playlist", name)
        self.created += 1
        return Playlist(f"new-{self.created}", name)

    def delete_playlist(self, playlist_id):
        self._record("delete_playlist", playlist_id)

    def add_song_to_playlist(self, song_title, playlist_id, song_id=None):
        self._record("add_song_to_playlist", song_title, playlist_id, song_id)

    def remove_song_from_playlist(self, song_title, playlist_id, song_id=None):
        self._record("remove_song_from_playlist", song_title, playlist_id, song_id)

    def upload_cover(self, image_bytes, target):
        self._record("upload_cover", target.tag)
        return "CoverUploads/new.jpg"

    def get_audio_url(self, audio_path):
        self._record("get_audio_url", audio_path)
        return f"https://cdn.example/{audio_path}"

    def get_cover_url(self, cover_path):
        self._record("get_cover_url", cover_path)
        return f"https://cdn.example/{cover_path}"


class FakeCovers:
    def __init__(self):
        self.loads = []
        self.cancelled = []

    def load(self, kind, items, apply):
        self.loads.append((kind, [i.id for i in items], apply))
        return len(items)

    def cancel(self, kind=None, item_id=None):
        self.cancelled.append((kind, item_id))


class FakePreferences:
    def __init__(self, mode):
        self.mode = mode
        self.saved = []

    def get(self):
        return self.mode

    def set(self, mode):
        self.saved.append(mode)
        self.mode = mode


class Recorder:
    """Collects emitted signals from an Observable."""

    def __init__(self, source, *signals):
        self.events = []
        for name in signals:
            source.connect(name, lambda *args, _name=name: self.events.append((_name,) + args))

    def names(self):
        return [e[0] for e in self.events]


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def engine(media, catalog, dispatcher):
    return PlaybackEngine(media, catalog.get_audio_url, dispatcher, rng=random.Random(7))


@pytest.fixture
def covers():
    return FakeCovers()


@pytest.fixture
def navigator(catalog, dispatcher, engine, covers):
    return BrowseNavigator(catalog, dispatcher, engine=engine, covers=covers, page_size=5, wide_page_size=10)
