import logging

logger = logging.getLogger(__name__)


class PaginationCursor:
    """Incremental fetch state for the visible song list.

    `token` is whatever the catalog handed back with the last page and is
    only ever passed back to it. `seen_ids` mirrors the ids of the visible
    list so new pages can be de-duplicated against all of it.
    """

    def __init__(self):
        self.token = None
        self.can_load_more = True
        self.seen_ids = set()

    def reset(self, tracks=None, token=None, can_load_more=True):
        self.token = token
        self.can_load_more = bool(can_load_more)
        self.seen_ids = {t.id for t in (tracks or [])}

    def sync(self, tracks):
        """Re-read the visible list; it may have been replaced by a search."""
        self.seen_ids = {t.id for t in (tracks or [])}

    def take_unseen(self, page):
        fresh = []
        for track in page or []:
            if track.id in self.seen_ids:
                continue
            self.seen_ids.add(track.id)
            fresh.append(track)
        return fresh

    def advance(self, token):
        self.token = token

    def mark_exhausted(self):
        if self.can_load_more:
            logger.debug("Pagination exhausted (seen=%s)", len(self.seen_ids))
        self.can_load_more = False
