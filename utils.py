import hashlib
import io
import logging
import os
import time

import requests
from PIL import Image

logger = logging.getLogger(__name__)

COVER_JPEG_QUALITY = 70


def _cached_files(cache_dir):
    files = []
    with os.scandir(cache_dir) as it:
        for entry in it:
            if not entry.is_file():
                continue
            try:
                st = entry.stat()
            except FileNotFoundError:
                continue
            files.append((st.st_mtime, st.st_size, entry.path))
    return files


def _drop(path):
    try:
        os.remove(path)
    except OSError as e:
        logger.debug("Could not drop cached cover %s: %s", path, e)
        return False
    return True


def prune_image_cache(cache_dir, max_bytes=200 * 1024 * 1024, max_age_days=30):
    """
    Drop covers older than `max_age_days`, then the oldest remaining ones
    until the cache fits in `max_bytes`. Returns how many files were removed.
    An unreadable cache directory is logged and left alone.
    """
    if not os.path.isdir(cache_dir):
        return 0
    try:
        files = _cached_files(cache_dir)
    except OSError as e:
        logger.warning("Skipping cover cache prune for %s: %s", cache_dir, e)
        return 0

    cutoff = time.time() - max_age_days * 24 * 60 * 60
    removed = 0
    fresh = []
    for mtime, size, path in files:
        if mtime >= cutoff:
            fresh.append((mtime, size, path))
        elif _drop(path):
            removed += 1

    total = sum(size for _, size, _ in fresh)
    for _, size, path in sorted(fresh):
        if total <= max_bytes:
            break
        if _drop(path):
            removed += 1
            total -= size
    return removed


def cover_cache_path(cache_dir, cover_path):
    """Covers are cached under the md5 of their storage path, not their URL:
    download URLs carry tokens that may change between sessions."""
    f_name = hashlib.md5(str(cover_path).encode()).hexdigest()
    return os.path.join(cache_dir, f_name)


def fetch_image_bytes(url, cache_file=None, session=None, timeout=10):
    if cache_file and os.path.exists(cache_file):
        with open(cache_file, "rb") as f:
            return f.read()

    getter = session.get if session is not None else requests.get
    r = getter(url, timeout=timeout)
    r.raise_for_status()
    data = r.content

    if cache_file:
        try:
            os.makedirs(os.path.dirname(cache_file), exist_ok=True)
            tmp = f"{cache_file}.tmp"
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, cache_file)
        except OSError as e:
            logger.debug("Could not cache image %s: %s", cache_file, e)
    return data


def decode_image(data, size=None):
    img = Image.open(io.BytesIO(data))
    img.load()
    if size:
        img.thumbnail((size, size))
    return img


def encode_jpeg(data, quality=COVER_JPEG_QUALITY):
    """Re-encode any image Pillow can read as an RGB JPEG for upload."""
    img = Image.open(io.BytesIO(data))
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    out = io.BytesIO()
    img.save(out, format="JPEG", quality=quality)
    return out.getvalue()


def safe_storage_name(name):
    return str(name or "").replace(" ", "_").replace("/", "_")
