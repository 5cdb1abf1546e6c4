import logging
from functools import partial

from app_errors import CatalogError, classify_exception, user_message
from models import (
    PAGE_SIZE,
    WIDE_PAGE_SIZE,
    BrowseSnapshot,
    FilterKind,
    ScreenMode,
    SongPage,
    ViewMode,
)
from pagination import PaginationCursor
from signals import Observable

logger = logging.getLogger(__name__)

LIKED_LABEL = "LIKED"
NEW_LABEL = "NEW"

SONG_COVERS = "song"
FACET_COVERS = "facet"
PLAYLIST_COVERS = "playlist"


def order_by_titles(titles, songs):
    """Sort `songs` into the order their titles appear in `titles`.

    Batched membership lookups come back in store order, so playlist songs
    are re-sorted by the stored title sequence. Songs sharing a title stay
    together; unknown titles go last.
    """
    position = {}
    for i, title in enumerate(titles or []):
        position.setdefault(title, i)
    tail = len(position)
    return sorted(songs or [], key=lambda s: position.get(s.title, tail))


class BrowseNavigator(Observable):
    """
    Screen state for browsing the catalog.

    Every navigation-changing call pushes a snapshot of the current screen
    first, so `go_back()` can restore it exactly. Remote work goes through
    the dispatcher; completions from loads that were superseded by a newer
    navigation are dropped.
    """

    def __init__(
        self,
        backend,
        dispatcher,
        engine=None,
        covers=None,
        preferences=None,
        page_size=PAGE_SIZE,
        wide_page_size=WIDE_PAGE_SIZE,
    ):
        super().__init__()
        self.backend = backend
        self.dispatcher = dispatcher
        self.engine = engine
        self.covers = covers
        self.preferences = preferences
        self.page_size = page_size
        self.wide_page_size = max(wide_page_size, page_size)

        self.screen_mode = ScreenMode.RANDOM
        self.filter_kind = FilterKind.NONE
        self.filter_value = None
        self.browse_items = []
        self.songs = []
        self.playlists = []
        self.cached_browse_items = []
        self.cached_songs = []
        self.showing_genres_for_source = False
        self.playlist_id = None
        self.search_text = ""
        self.last_error = None
        self.view_mode = preferences.get() if preferences is not None else ViewMode.GRID_4

        self.stack = []
        self.cursor = PaginationCursor()
        self._page_limit = page_size
        self._load_generation = 0
        self._loads_in_flight = 0

    @property
    def is_loading(self):
        return self._loads_in_flight > 0

    @property
    def can_go_back(self):
        return bool(self.stack)

    @property
    def is_searching(self):
        return bool(self.search_text)

    # ------------------------------------------------------------------
    # navigation stack

    def push_navigation_state(self):
        snapshot = BrowseSnapshot(
            screen_mode=self.screen_mode,
            filter_kind=self.filter_kind,
            filter_value=self.filter_value,
            browse_items=tuple(self.browse_items),
            songs=tuple(self.songs),
            scroll_position=0.0,
            cached_browse_items=tuple(self.cached_browse_items),
            cached_songs=tuple(self.cached_songs),
            showing_genres_for_source=self.showing_genres_for_source,
            page_token=self.cursor.token,
            can_load_more=self.cursor.can_load_more,
            playlist_id=self.playlist_id,
            page_limit=self._page_limit,
        )
        self.stack.append(snapshot)
        logger.debug("Push %s/%s (depth=%s)", snapshot.screen_mode.value, snapshot.filter_kind.value, len(self.stack))
        return snapshot

    def pop_navigation_state(self):
        if not self.stack:
            return False
        snapshot = self.stack.pop()
        # Whatever was loading for the screen being left no longer applies.
        self._load_generation += 1
        self.screen_mode = snapshot.screen_mode
        self.filter_kind = snapshot.filter_kind
        self.filter_value = snapshot.filter_value
        self.browse_items = list(snapshot.browse_items)
        self.songs = list(snapshot.songs)
        self.cached_browse_items = list(snapshot.cached_browse_items)
        self.cached_songs = list(snapshot.cached_songs)
        self.showing_genres_for_source = snapshot.showing_genres_for_source
        self.playlist_id = snapshot.playlist_id
        self._page_limit = snapshot.page_limit
        self.search_text = ""
        self.cursor.reset(self.songs, token=snapshot.page_token, can_load_more=snapshot.can_load_more)
        logger.debug("Pop to %s/%s (depth=%s)", self.screen_mode.value, self.filter_kind.value, len(self.stack))

        self.emit("navigated")
        self._emit_screen()
        self.emit("songs-changed", self.songs)
        self.emit("browse-items-changed", self.browse_items)
        self._load_covers(SONG_COVERS, self.songs)
        self._load_covers(FACET_COVERS, self.browse_items)
        return True

    def go_back(self):
        return self.pop_navigation_state()

    def go_home(self):
        self.stack.clear()
        self._load_generation += 1
        self.screen_mode = ScreenMode.RANDOM
        self.filter_kind = FilterKind.NONE
        self.filter_value = None
        self.browse_items = []
        self.cached_browse_items = []
        self.showing_genres_for_source = False
        self.playlist_id = None
        self.search_text = ""
        self.emit("navigated")
        self._emit_screen()
        self.emit("browse-items-changed", self.browse_items)
        self.load_random_songs()

    def _begin_navigation(self, mode, kind=FilterKind.NONE, value=None):
        self.push_navigation_state()
        self.screen_mode = mode
        self.filter_kind = kind
        self.filter_value = value
        self.showing_genres_for_source = False
        self.playlist_id = None
        self.search_text = ""
        self.emit("navigated")
        self._emit_screen()

    def _emit_screen(self):
        self.emit("screen-changed", self.screen_mode, self.filter_kind, self.filter_value)

    # ------------------------------------------------------------------
    # loads

    def _set_loading(self, delta):
        was_loading = self.is_loading
        self._loads_in_flight = max(0, self._loads_in_flight + delta)
        if was_loading != self.is_loading:
            self.emit("loading-changed", self.is_loading)

    def _start_load(self, what, work, on_loaded, context="browse", pushed=False):
        self._load_generation += 1
        generation = self._load_generation
        self._set_loading(1)

        def done(result):
            self._set_loading(-1)
            if generation != self._load_generation:
                logger.debug("Dropping stale %s result", what)
                return
            on_loaded(result)

        def failed(exc):
            self._set_loading(-1)
            if generation != self._load_generation:
                logger.debug("Ignoring failure of superseded %s: %s", what, exc)
                return
            logger.error("Failed to load %s [%s]: %s", what, classify_exception(exc), exc)
            if pushed:
                self.pop_navigation_state()
            self._report(exc, context)

        self.dispatcher.run_async(work, on_done=done, on_error=failed)

    def _report(self, exc, context):
        kind = classify_exception(exc)
        self.last_error = (kind, user_message(kind, context))
        self.emit("error", self.last_error)

    def _set_songs(self, songs, token=None, can_load_more=True):
        if self.covers is not None:
            self.covers.cancel(SONG_COVERS)
        self.songs = list(songs)
        self.cached_songs = list(self.songs)
        self.cursor.reset(self.songs, token=token, can_load_more=can_load_more)
        self.emit("songs-changed", self.songs)
        self._load_covers(SONG_COVERS, self.songs)

    def _set_browse_items(self, items):
        if self.covers is not None:
            self.covers.cancel(FACET_COVERS)
        self.browse_items = list(items)
        self.cached_browse_items = list(self.browse_items)
        self.emit("browse-items-changed", self.browse_items)
        self._load_covers(FACET_COVERS, self.browse_items)

    def load_random_songs(self):
        self._page_limit = self.page_size
        self._start_load(
            "random songs",
            partial(self.backend.fetch_random_songs, self.page_size),
            self._set_songs,
        )

    def load_more_songs(self):
        if self.is_loading or not self.cursor.can_load_more:
            return False
        if self.search_text:
            logger.debug("Load more skipped while a search is shown")
            return False

        query = None
        if self.screen_mode == ScreenMode.FILTER_RESULTS:
            query = self._song_query(self.filter_kind, self.filter_value)
            if query is None or self.cursor.token is None:
                self.cursor.mark_exhausted()
                return False
            work = partial(query, self._page_limit, self.cursor.token)
        else:
            work = partial(self._random_page, self._page_limit)

        self.cursor.sync(self.songs)
        self._start_load("more songs", work, partial(self._append_page, query is not None))
        return True

    def _random_page(self, limit):
        return SongPage(self.backend.fetch_random_songs(limit), None)

    def _append_page(self, paged, page):
        fresh = self.cursor.take_unseen(page.songs)
        if not fresh:
            self.cursor.mark_exhausted()
            return
        if paged:
            self.cursor.advance(page.token)
            if page.token is None:
                self.cursor.mark_exhausted()
        self.songs.extend(fresh)
        self.cached_songs = list(self.songs)
        logger.info("Loaded %s more songs (total=%s)", len(fresh), len(self.songs))
        self.emit("songs-changed", self.songs)
        self._load_covers(SONG_COVERS, fresh)

    def load_browse_items(self, kind):
        self._begin_navigation(ScreenMode.PICK_FILTER, kind)
        self.showing_genres_for_source = kind == FilterKind.SOURCE
        self.browse_items = []
        self.emit("browse-items-changed", self.browse_items)

        fetchers = {
            FilterKind.ARTIST: self.backend.fetch_artists_with_counts,
            FilterKind.ALBUM: self.backend.fetch_albums_with_counts,
            FilterKind.YEAR: self.backend.fetch_years_with_counts,
            FilterKind.GENRE: self.backend.fetch_genres,
            # Sources are picked per genre: show genres first.
            FilterKind.SOURCE: self.backend.fetch_genres,
        }
        fetch = fetchers.get(kind)
        if fetch is None:
            self._load_generation += 1
            self._set_browse_items([])
            return
        self._start_load(f"{kind.value.lower()} facets", fetch, self._set_browse_items, pushed=True)

    def load_sources_by_genre(self, genre_name):
        self._begin_navigation(ScreenMode.PICK_FILTER, FilterKind.SOURCE, genre_name)
        self.browse_items = []
        self.emit("browse-items-changed", self.browse_items)
        self._start_load(
            f"sources of {genre_name!r}",
            partial(self._sources_for_genre, genre_name),
            self._set_browse_items,
            pushed=True,
        )

    def _sources_for_genre(self, genre_name):
        try:
            genre_id = self.backend.get_genre_id_by_name(genre_name)
        except CatalogError as e:
            logger.info("Genre lookup for %r failed, using the name: %s", genre_name, e)
            genre_id = None
        return self.backend.fetch_sources_by_genre_id(genre_id or genre_name)

    def select_browse_item(self, item):
        """Open a facet entry picked on the current pick-filter screen."""
        if self.showing_genres_for_source:
            self.load_sources_by_genre(item.key)
        else:
            self.load_filtered_songs(self.filter_kind, item.key)

    def _song_query(self, kind, value):
        b = self.backend
        if kind == FilterKind.YEAR:
            try:
                year = int(value)
            except (TypeError, ValueError):
                return None
            return partial(b.fetch_songs_by_year, year)
        by_value = {
            FilterKind.ARTIST: b.fetch_songs_by_artist,
            FilterKind.ALBUM: b.fetch_songs_by_album,
            FilterKind.GENRE: b.fetch_songs_by_genre,
            FilterKind.SOURCE: b.fetch_songs_by_source,
        }
        if kind in by_value:
            return partial(by_value[kind], value)
        if kind == FilterKind.LIKED:
            return b.fetch_liked_songs
        if kind == FilterKind.NEW:
            return b.fetch_new_songs
        return None

    def load_filtered_songs(self, kind, value, page_size=None):
        self._begin_navigation(ScreenMode.FILTER_RESULTS, kind, value)
        self._page_limit = page_size or self.page_size
        self.cursor.reset()
        self.songs = []
        self.emit("songs-changed", self.songs)

        query = self._song_query(kind, value)
        if query is None:
            logger.info("No song query for %s=%r", kind.value, value)
            self._load_generation += 1
            self._set_songs([], can_load_more=False)
            return

        def loaded(page):
            self._set_songs(page.songs, token=page.token, can_load_more=page.token is not None)

        self._start_load(
            f"{kind.value.lower()} songs",
            partial(query, self._page_limit, None),
            loaded,
            pushed=True,
        )

    def load_liked_songs(self):
        self.load_filtered_songs(FilterKind.LIKED, LIKED_LABEL, page_size=self.wide_page_size)

    def load_new_songs(self):
        self.load_filtered_songs(FilterKind.NEW, NEW_LABEL, page_size=self.wide_page_size)

    # ------------------------------------------------------------------
    # playlists

    def _set_playlists(self, playlists):
        if self.covers is not None:
            self.covers.cancel(PLAYLIST_COVERS)
        self.playlists = list(playlists)
        self.emit("playlists-changed", self.playlists)
        self._load_covers(PLAYLIST_COVERS, self.playlists)

    def load_playlists(self):
        self._begin_navigation(ScreenMode.PLAYLISTS)
        self._start_load("playlists", self.backend.fetch_playlists, self._set_playlists, context="playlist", pushed=True)

    def load_playlist_songs(self, playlist):
        self._begin_navigation(ScreenMode.FILTER_RESULTS, FilterKind.NONE, playlist.name)
        self.playlist_id = playlist.id
        self.cursor.reset(can_load_more=False)
        self.songs = []
        self.emit("songs-changed", self.songs)

        def work():
            titles = self.backend.fetch_playlist_titles(playlist.id)
            if not titles:
                return []
            return order_by_titles(titles, self.backend.fetch_songs_by_titles(titles))

        self._start_load(
            f"playlist {playlist.id}",
            work,
            partial(self._set_songs, can_load_more=False),
            context="playlist",
            pushed=True,
        )

    def _find_playlist(self, playlist_id):
        return next((p for p in self.playlists if p.id == playlist_id), None)

    def create_playlist(self, name):
        name = str(name or "").strip()
        if not name:
            logger.warning("Refusing to create a playlist without a name")
            return False

        def created(playlist):
            self.playlists.insert(0, playlist)
            self.emit("playlists-changed", self.playlists)

        self.dispatcher.run_async(
            partial(self.backend.create_playlist, name),
            on_done=created,
            on_error=partial(self._playlist_failed, f"create playlist {name!r}"),
        )
        return True

    def delete_playlist(self, playlist):
        def deleted(_result):
            self.playlists = [p for p in self.playlists if p.id != playlist.id]
            self.emit("playlists-changed", self.playlists)

        self.dispatcher.run_async(
            partial(self.backend.delete_playlist, playlist.id),
            on_done=deleted,
            on_error=partial(self._playlist_failed, f"delete playlist {playlist.id}"),
        )

    def add_song_to_playlist(self, track, playlist):
        def added(_result):
            target = self._find_playlist(playlist.id)
            if target is not None:
                target.song_count += 1
                self.emit("playlists-changed", self.playlists)

        self.dispatcher.run_async(
            partial(self.backend.add_song_to_playlist, track.title, playlist.id, song_id=track.id),
            on_done=added,
            on_error=partial(self._playlist_failed, f"add {track.id} to playlist {playlist.id}"),
        )

    def remove_song_from_playlist(self, track, playlist):
        def removed(_result):
            target = self._find_playlist(playlist.id)
            if target is not None:
                target.song_count = max(0, target.song_count - 1)
                self.emit("playlists-changed", self.playlists)
            if self.playlist_id == playlist.id:
                self.songs = [s for s in self.songs if s.id != track.id]
                self.cached_songs = [s for s in self.cached_songs if s.id != track.id]
                self.cursor.sync(self.songs)
                self.emit("songs-changed", self.songs)

        self.dispatcher.run_async(
            partial(self.backend.remove_song_from_playlist, track.title, playlist.id, song_id=track.id),
            on_done=removed,
            on_error=partial(self._playlist_failed, f"remove {track.id} from playlist {playlist.id}"),
        )

    def _playlist_failed(self, what, exc):
        logger.error("Failed to %s [%s]: %s", what, classify_exception(exc), exc)
        self._report(exc, "playlist")

    # ------------------------------------------------------------------
    # songs

    def play_song(self, track, queue=None):
        if self.engine is None:
            logger.warning("No playback engine attached")
            return False
        tracks = list(queue if queue is not None else self.songs)
        index = next((i for i, t in enumerate(tracks) if t.id == track.id), None)
        return self.engine.play(track, tracks, index)

    def _copies_of(self, track_id):
        lists = [self.songs, self.cached_songs]
        for snapshot in self.stack:
            lists.append(snapshot.songs)
            lists.append(snapshot.cached_songs)
        seen = set()
        for songs in lists:
            for song in songs:
                if song.id == track_id and id(song) not in seen:
                    seen.add(id(song))
                    yield song

    def toggle_like(self, track):
        liked = not track.liked
        track.liked = liked
        for song in self._copies_of(track.id):
            song.liked = liked
        if self.engine is not None:
            self.engine.set_track_liked(track.id, liked)
        self.emit("songs-changed", self.songs)

        def failed(exc):
            # The local flag is kept; the next load shows the stored value.
            logger.error("Failed to store like for %s [%s]: %s", track.id, classify_exception(exc), exc)
            self._report(exc, "like")

        self.dispatcher.run_async(
            partial(self.backend.toggle_liked, track.id, liked),
            on_done=lambda _result: logger.debug("Like stored for %s", track.id),
            on_error=failed,
        )
        return liked

    # ------------------------------------------------------------------
    # search support

    def show_songs(self, songs):
        """Replace the visible songs without touching the pre-search cache."""
        self.songs = list(songs)
        self.cursor.sync(self.songs)
        self.emit("songs-changed", self.songs)
        self._load_covers(SONG_COVERS, self.songs)

    def show_browse_items(self, items):
        self.browse_items = list(items)
        self.emit("browse-items-changed", self.browse_items)

    def restore_from_cache(self):
        if self.screen_mode == ScreenMode.PICK_FILTER:
            self.show_browse_items(self.cached_browse_items)
        else:
            self.show_songs(self.cached_songs)

    # ------------------------------------------------------------------
    # covers and display

    def _load_covers(self, kind, items):
        if self.covers is None or not items:
            return
        self.covers.load(kind, items, partial(self._apply_cover, kind))

    def _apply_cover(self, kind, item_id, image):
        if kind == SONG_COVERS:
            lists = [self.songs, self.cached_songs]
        elif kind == FACET_COVERS:
            lists = [self.browse_items, self.cached_browse_items]
        else:
            lists = [self.playlists]
        applied = False
        for items in lists:
            for item in items:
                if item.id == item_id:
                    item.cover_image = image
                    applied = True
        if applied:
            self.emit("cover-loaded", kind, item_id)

    def upload_cover(self, image_bytes, target):
        if target.tag == "playlist":
            kind, item_id = PLAYLIST_COVERS, target.playlist.id
        else:
            kind, item_id = FACET_COVERS, target.item.id

        def uploaded(storage_path):
            if kind == PLAYLIST_COVERS:
                items = [p for p in self.playlists if p.id == item_id]
            else:
                items = [i for i in self.browse_items + self.cached_browse_items if i == target.item]
            for item in items:
                item.cover_path = storage_path
                item.cover_image = None
            logger.info("Cover uploaded for %s %s: %s", kind, item_id, storage_path)
            if self.covers is not None:
                self.covers.cancel(kind, item_id)
            self._load_covers(kind, items[:1])

        def failed(exc):
            logger.error("Cover upload for %s %s failed [%s]: %s", kind, item_id, classify_exception(exc), exc)
            self._report(exc, "browse")

        self.dispatcher.run_async(
            partial(self.backend.upload_cover, image_bytes, target),
            on_done=uploaded,
            on_error=failed,
        )

    def set_view_mode(self, mode):
        mode = ViewMode(mode)
        if mode == self.view_mode:
            return
        self.view_mode = mode
        if self.preferences is not None:
            self.preferences.set(mode)
        self.emit("view-mode-changed", mode)
