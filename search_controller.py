import logging
from functools import partial

from app_errors import classify_exception, user_message
from models import PAGE_SIZE, SEARCH_DELAY_MS, FilterKind, ScreenMode

logger = logging.getLogger(__name__)


def filter_items(items, query):
    q = query.lower()
    return [i for i in items if q in i.key.lower()]


def filter_songs(songs, query):
    q = query.lower()
    return [s for s in songs if q in (s.title or "").lower() or q in (s.artist or "").lower()]


class SearchController:
    """
    Debounced search over whatever the navigator currently shows.

    Each text change cancels the pending evaluation. An empty query restores
    the pre-search list at once; anything else is evaluated after `delay_ms`.
    `_search_request_id` makes a cancelled timer or a late remote answer a
    no-op.
    """

    def __init__(self, navigator, backend, dispatcher, delay_ms=SEARCH_DELAY_MS, page_size=PAGE_SIZE):
        self.navigator = navigator
        self.backend = backend
        self.dispatcher = dispatcher
        self.delay_ms = delay_ms
        self.page_size = page_size
        self.last_error = None
        self._search_timer_id = None
        self._search_request_id = 0
        navigator.connect("navigated", self.cancel)

    @property
    def pending(self):
        return self._search_timer_id is not None

    def cancel(self, *_args):
        self._search_request_id += 1
        if self._search_timer_id is not None:
            self.dispatcher.source_remove(self._search_timer_id)
            self._search_timer_id = None

    def set_query(self, text):
        self.cancel()
        query = str(text or "").strip()
        self.navigator.search_text = query
        if not query:
            self.navigator.restore_from_cache()
            return
        request_id = self._search_request_id
        self._search_timer_id = self.dispatcher.timeout_add(self.delay_ms, partial(self._evaluate, request_id, query))

    def _evaluate(self, request_id, query):
        if request_id != self._search_request_id:
            return False
        self._search_timer_id = None
        nav = self.navigator

        if nav.screen_mode == ScreenMode.PICK_FILTER:
            nav.show_browse_items(filter_items(nav.cached_browse_items, query))
        elif nav.filter_kind == FilterKind.LIKED or nav.screen_mode == ScreenMode.FILTER_RESULTS:
            nav.show_songs(filter_songs(nav.cached_songs, query))
        else:
            logger.info("Remote title search: %r", query)
            self.dispatcher.run_async(
                partial(self.backend.fetch_songs_by_title, query, self.page_size),
                on_done=partial(self._on_remote_results, request_id, query),
                on_error=partial(self._on_remote_error, request_id, query),
            )
        return False

    def _on_remote_results(self, request_id, query, page):
        if request_id != self._search_request_id:
            logger.debug("Dropping stale search results for %r", query)
            return
        self.last_error = None
        self.navigator.show_songs(page.songs)

    def _on_remote_error(self, request_id, query, exc):
        if request_id != self._search_request_id:
            return
        kind = classify_exception(exc)
        logger.error("Search for %r failed [%s]: %s", query, kind, exc)
        self.last_error = (kind, user_message(kind, "search"))
        self.navigator.emit("error", self.last_error)
