import logging
import os
from functools import partial

import utils

logger = logging.getLogger(__name__)


class _CoverJob:
    __slots__ = ("key", "cover_path", "cancelled")

    def __init__(self, key, cover_path):
        self.key = key
        self.cover_path = cover_path
        self.cancelled = False


class CoverLoader:
    """
    Best-effort cover fetching for list items.

    Jobs are keyed by (kind, item id). A finished job hands its image to
    `apply(item_id, image)`, which looks the item up by id in whatever list
    is current at that moment. Failures are dropped.
    """

    def __init__(self, backend, dispatcher, cache_dir=None, size=None):
        self.backend = backend
        self.dispatcher = dispatcher
        self.cache_dir = os.path.expanduser(cache_dir) if cache_dir else None
        self.size = size
        self._jobs = {}

    def load(self, kind, items, apply):
        started = 0
        for item in list(items or []):
            if not item.cover_path or item.cover_image is not None:
                continue
            key = (kind, item.id)
            if key in self._jobs:
                continue
            job = _CoverJob(key, item.cover_path)
            self._jobs[key] = job
            started += 1
            self.dispatcher.run_async(
                partial(self._fetch, job.cover_path),
                on_done=partial(self._finish, job, apply),
                on_error=partial(self._fail, job),
            )
        if started:
            logger.debug("Cover jobs started: kind=%s count=%s", kind, started)
        return started

    def cancel(self, kind=None, item_id=None):
        for key, job in list(self._jobs.items()):
            if kind is not None and key[0] != kind:
                continue
            if item_id is None or key[1] == item_id:
                job.cancelled = True
                del self._jobs[key]

    def pending(self, kind=None):
        return sum(1 for key in self._jobs if kind is None or key[0] == kind)

    def _fetch(self, cover_path):
        cache_file = utils.cover_cache_path(self.cache_dir, cover_path) if self.cache_dir else None
        if cache_file and os.path.exists(cache_file):
            with open(cache_file, "rb") as f:
                data = f.read()
        else:
            url = self.backend.get_cover_url(cover_path)
            data = utils.fetch_image_bytes(url, cache_file=cache_file)
        return utils.decode_image(data, self.size)

    def _release(self, job):
        if job.cancelled or self._jobs.get(job.key) is not job:
            return False
        del self._jobs[job.key]
        return True

    def _finish(self, job, apply, image):
        if self._release(job):
            apply(job.key[1], image)

    def _fail(self, job, exc):
        if self._release(job):
            logger.debug("Cover skipped for %s: %s", job.key, exc)
