from conftest import FakeDispatcher, make_track, make_tracks
from browse_navigator import BrowseNavigator
from models import CountItem, FilterKind, SongPage
from search_controller import SearchController, filter_items, filter_songs


def _ids(items):
    return [i.id for i in items]


def _setup(catalog, dispatcher=None):
    dispatcher = dispatcher or FakeDispatcher()
    nav = BrowseNavigator(catalog, dispatcher, page_size=5)
    search = SearchController(nav, catalog, dispatcher, delay_ms=500, page_size=5)
    return nav, search, dispatcher


def test_empty_query_restores_song_cache_immediately(catalog):
    nav, search, dispatcher = _setup(catalog)
    catalog.random_pages = [make_tracks(6)]
    nav.go_home()
    before = _ids(nav.songs)

    nav.show_songs(make_tracks(1, prefix="x"))
    search.set_query("")
    assert _ids(nav.songs) == before
    assert dispatcher.timers == {}


def test_search_then_clear_restores_identical_list(catalog):
    nav, search, dispatcher = _setup(catalog)
    catalog.random_pages = [make_tracks(6)]
    catalog.catalog = make_tracks(6)
    nav.go_home()
    before = _ids(nav.songs)

    search.set_query("Song 1")
    dispatcher.fire_timers()
    assert _ids(nav.songs) == ["s1"]

    search.set_query("")
    assert _ids(nav.songs) == before
    assert _ids(nav.cached_songs) == before


def test_query_is_debounced(catalog):
    nav, search, dispatcher = _setup(catalog)
    search.set_query("so")
    assert search.pending is True
    assert list(dispatcher.timers.values())[0][0] == 500
    assert catalog.called("fetch_songs_by_title") == []


def test_newer_query_cancels_pending_one(catalog):
    nav, search, dispatcher = _setup(catalog)
    catalog.catalog = [make_track(1, title="Alpha"), make_track(2, title="Beta")]
    search.set_query("al")
    search.set_query("be")
    assert len(dispatcher.timers) == 1
    dispatcher.fire_timers()
    assert catalog.called("fetch_songs_by_title") == [("fetch_songs_by_title", "be", 5)]
    assert _ids(nav.songs) == ["s2"]


def test_cancelled_timer_firing_late_is_a_no_op(catalog):
    nav, search, dispatcher = _setup(catalog)
    search.set_query("al")
    (_delay, stale_callback), = dispatcher.timers.values()
    search.set_query("")
    stale_callback()
    assert catalog.called("fetch_songs_by_title") == []


def test_pick_filter_search_filters_facets_locally(catalog):
    nav, search, dispatcher = _setup(catalog)
    catalog.artists = [CountItem("Miles Davis", 9, id="a1"), CountItem("Nina Simone", 4, id="a2")]
    nav.load_browse_items(FilterKind.ARTIST)
    search.set_query("SIM")
    dispatcher.fire_timers()
    assert _ids(nav.browse_items) == ["a2"]
    assert catalog.called("fetch_songs_by_title") == []

    search.set_query("")
    assert _ids(nav.browse_items) == ["a1", "a2"]


def test_filter_results_search_matches_title_or_artist(catalog):
    nav, search, dispatcher = _setup(catalog)
    songs = [
        make_track(1, title="Blue in Green", artist="Miles Davis"),
        make_track(2, title="Feeling Good", artist="Nina Simone"),
        make_track(3, title="So What", artist="Miles Davis"),
    ]
    catalog.pages[("genre", "Jazz")] = [SongPage(songs, None)]
    nav.load_filtered_songs(FilterKind.GENRE, "Jazz")

    search.set_query("miles")
    dispatcher.fire_timers()
    assert _ids(nav.songs) == ["s1", "s3"]

    search.set_query("good")
    dispatcher.fire_timers()
    assert _ids(nav.songs) == ["s2"]
    assert catalog.called("fetch_songs_by_title") == []


def test_liked_screen_search_is_local(catalog):
    nav, search, dispatcher = _setup(catalog)
    catalog.pages[("liked", None)] = [SongPage([make_track(1, title="Alpha", liked=True)], None)]
    nav.load_liked_songs()
    search.set_query("alp")
    dispatcher.fire_timers()
    assert _ids(nav.songs) == ["s1"]
    assert catalog.called("fetch_songs_by_title") == []


def test_navigation_cancels_pending_search(catalog):
    nav, search, dispatcher = _setup(catalog)
    catalog.artists = [CountItem("A", 3)]
    search.set_query("song")
    nav.load_browse_items(FilterKind.ARTIST)
    assert search.pending is False
    assert dispatcher.timers == {}


def test_late_remote_results_after_navigation_are_dropped(catalog):
    dispatcher = FakeDispatcher()
    nav, search, _ = _setup(catalog, dispatcher)
    catalog.catalog = make_tracks(3)
    search.set_query("song")
    dispatcher.deferred = True
    dispatcher.fire_timers()
    assert len(dispatcher.jobs) == 1

    nav.load_filtered_songs(FilterKind.NONE, "x")
    dispatcher.run_all()
    assert nav.songs == []


def test_remote_search_failure_is_reported(catalog):
    nav, search, dispatcher = _setup(catalog)
    catalog.random_pages = [make_tracks(2)]
    nav.go_home()
    catalog.fail = {"fetch_songs_by_title"}
    search.set_query("x")
    dispatcher.fire_timers()
    assert _ids(nav.songs) == ["s0", "s1"]
    assert search.last_error[0] == "server"


def test_filter_helpers():
    items = [CountItem("Rock", 1), CountItem("Hard rock", 2), CountItem("Jazz", 3)]
    assert [i.key for i in filter_items(items, "ROCK")] == ["Rock", "Hard rock"]
    songs = [make_track(1, title="x", artist="Rockers"), make_track(2, title="y", artist="")]
    assert _ids(filter_songs(songs, "rock")) == ["s1"]
