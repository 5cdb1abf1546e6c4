import logging
import random
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import quote

import requests

import utils
from app_errors import CatalogError, classify_exception
from models import CountItem, FilterKind, Playlist, SongPage, Track

logger = logging.getLogger(__name__)

FIRESTORE_ROOT = "https://firestore.googleapis.com/v1"
STORAGE_ROOT = "https://firebasestorage.googleapis.com/v0"

SONGS = "songs"
ARTISTS = "artistas"
GENRES = "genres"
SOURCES = "sources"
PLAYLISTS = "playlists"

# Firestore caps IN filters at 10 values.
IN_BATCH_SIZE = 10

# Storage folder and collection a cover of each facet kind belongs to.
COVER_LOCATIONS = {
    FilterKind.ARTIST: ("CoverArtistas", ARTISTS),
    FilterKind.ALBUM: ("CoverAlbums", "albums"),
    FilterKind.YEAR: ("CoverAños", None),
    FilterKind.GENRE: ("CoverGenres", GENRES),
    FilterKind.SOURCE: ("CoverSources", SOURCES),
}
PLAYLIST_COVER_LOCATION = ("CoverPlaylists", PLAYLISTS)


class PageToken:
    """Continuation point: the last document of a page and the raw values of
    the fields the query was ordered by."""

    __slots__ = ("name", "values")

    def __init__(self, name, values):
        self.name = name
        self.values = list(values)

    def __repr__(self):
        return f"PageToken({self.name.rsplit('/', 1)[-1]!r})"


def encode_value(value):
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        stamp = value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        return {"timestampValue": stamp}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": {k: encode_value(v) for k, v in value.items()}}}
    return {"stringValue": str(value)}


def _parse_timestamp(raw):
    text = str(raw).replace("Z", "+00:00")
    head, sep, tail = text.partition(".")
    if sep:
        # Firestore sends up to nanoseconds; datetime takes microseconds.
        digits = ""
        rest = tail
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    return datetime.fromisoformat(text)


def decode_value(raw):
    if not isinstance(raw, dict):
        return None
    if "stringValue" in raw:
        return raw["stringValue"]
    if "booleanValue" in raw:
        return bool(raw["booleanValue"])
    if "integerValue" in raw:
        return int(raw["integerValue"])
    if "doubleValue" in raw:
        return float(raw["doubleValue"])
    if "timestampValue" in raw:
        return _parse_timestamp(raw["timestampValue"])
    if "arrayValue" in raw:
        return [decode_value(v) for v in (raw["arrayValue"] or {}).get("values", [])]
    if "mapValue" in raw:
        fields = (raw["mapValue"] or {}).get("fields", {})
        return {k: decode_value(v) for k, v in fields.items()}
    if "referenceValue" in raw:
        return raw["referenceValue"]
    return None


def decode_document(doc):
    fields = doc.get("fields") or {}
    name = doc.get("name", "")
    return {
        "id": name.rsplit("/", 1)[-1],
        "name": name,
        "data": {k: decode_value(v) for k, v in fields.items()},
        "raw": fields,
    }


def doc_to_track(doc):
    data = doc["data"]
    title = data.get("title")
    audio_path = data.get("audioPath")
    if not isinstance(title, str) or not isinstance(audio_path, str):
        return None
    year = data.get("year")
    if isinstance(year, bool) or not isinstance(year, int):
        year = 0
    created_at = data.get("createdAt")
    return Track(
        id=doc["id"],
        title=title,
        audio_path=audio_path,
        cover_path=data.get("coverPath") if isinstance(data.get("coverPath"), str) else None,
        artist=data.get("artist") if isinstance(data.get("artist"), str) else "",
        album=data.get("album") if isinstance(data.get("album"), str) else "",
        year=year,
        genre=data.get("genre") if isinstance(data.get("genre"), str) else "",
        source=data.get("source") if isinstance(data.get("source"), str) else "",
        liked=data.get("liked") is True,
        created_at=created_at if isinstance(created_at, datetime) else None,
    )


def _field_filter(field, op, value):
    return {"fieldFilter": {"field": {"fieldPath": field}, "op": op, "value": encode_value(value)}}


def _where(filters):
    if not filters:
        return None
    if len(filters) == 1:
        return filters[0]
    return {"compositeFilter": {"op": "AND", "filters": list(filters)}}


def _sort_by_count_then_key(items):
    return sorted(items, key=lambda i: (-i.count, i.key.lower()))


class CatalogBackend:
    def __init__(
        self,
        project_id,
        api_key="",
        storage_bucket="",
        timeout=15,
        min_facet_count=2,
        new_songs_days=7,
        session=None,
        rng=None,
    ):
        self.project_id = project_id
        self.api_key = api_key
        self.storage_bucket = storage_bucket or f"{project_id}.appspot.com"
        self.timeout = timeout
        self.min_facet_count = min_facet_count
        self.new_songs_days = new_songs_days
        self.session = session or requests.Session()
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # transport

    @property
    def documents_url(self):
        return f"{FIRESTORE_ROOT}/projects/{self.project_id}/databases/(default)/documents"

    def _params(self, extra=None):
        params = {}
        if self.api_key:
            params["key"] = self.api_key
        if extra:
            params.update(extra)
        return params

    def _is_retryable_error(self, exc):
        return classify_exception(exc) in ("server", "network")

    def _retry_api_call(self, fn, attempts=3, base_delay=0.35):
        for i in range(attempts):
            try:
                return fn()
            except CatalogError as e:
                if i >= attempts - 1 or not self._is_retryable_error(e):
                    raise
                delay = base_delay * (i + 1)
                logger.info("Retrying catalog call after transient error (%s). attempt=%s/%s", e, i + 1, attempts)
                time.sleep(delay)
        return None

    def _send(self, method, url, what, params=None, **kwargs):
        try:
            resp = self.session.request(
                method,
                url,
                params=self._params(params),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.Timeout as e:
            raise CatalogError(f"{what}: timed out ({e})", kind="network") from e
        except requests.ConnectionError as e:
            raise CatalogError(f"{what}: connection failed ({e})", kind="network") from e
        except requests.RequestException as e:
            raise CatalogError(f"{what}: {e}") from e

        if resp.status_code in (401, 403):
            raise CatalogError(f"{what}: HTTP {resp.status_code}", kind="auth")
        if resp.status_code == 404:
            raise CatalogError(f"{what}: HTTP 404", kind="not_found")
        if resp.status_code >= 500:
            raise CatalogError(f"{what}: HTTP {resp.status_code}", kind="server")
        if resp.status_code >= 400:
            raise CatalogError(f"{what}: HTTP {resp.status_code} {resp.text[:200]}", kind="unknown")
        return resp

    def _request_json(self, method, url, what, **kwargs):
        def call():
            resp = self._send(method, url, what, **kwargs)
            if not resp.content:
                return {}
            try:
                return resp.json()
            except ValueError as e:
                raise CatalogError(f"{what}: invalid JSON ({e})", kind="parse") from e

        return self._retry_api_call(call)

    # ------------------------------------------------------------------
    # firestore queries

    def _run_query(
        self,
        collection,
        filters=None,
        order_by=None,
        limit=None,
        start_after=None,
        start_at=None,
        end_at=None,
        select=None,
    ):
        """
        Run a structured query and return decoded documents plus the token
        for the page after them (None once the page came back short).

        `order_by` is a list of (field, "ASCENDING"|"DESCENDING"). Cursors
        always tie-break on the document name so paging never skips or
        repeats documents that share an order value.
        """
        order_by = list(order_by or [])
        query = {"from": [{"collectionId": collection}]}
        where = _where(filters)
        if where is not None:
            query["where"] = where
        if select is not None:
            query["select"] = {"fields": [{"fieldPath": f} for f in select]}

        if start_after is not None or limit is not None:
            direction = order_by[-1][1] if order_by else "ASCENDING"
            order_by = order_by + [("__name__", direction)]
        if order_by:
            query["orderBy"] = [
                {"field": {"fieldPath": f}, "direction": d} for f, d in order_by
            ]
        if start_after is not None:
            query["startAt"] = {
                "values": list(start_after.values) + [{"referenceValue": start_after.name}],
                "before": False,
            }
        elif start_at is not None:
            query["startAt"] = {"values": [encode_value(v) for v in start_at], "before": True}
        if end_at is not None:
            query["endAt"] = {"values": [encode_value(v) for v in end_at], "before": False}
        if limit is not None:
            query["limit"] = int(limit)

        rows = self._request_json(
            "POST",
            f"{self.documents_url}:runQuery",
            f"query {collection}",
            json={"structuredQuery": query},
        )
        docs = [decode_document(r["document"]) for r in (rows or []) if isinstance(r, dict) and r.get("document")]
        logger.debug("Query %s returned %s documents", collection, len(docs))

        token = None
        if docs and limit is not None and len(docs) >= limit:
            last = docs[-1]
            value_fields = [f for f, _ in order_by if f != "__name__"]
            token = PageToken(
                last["name"],
                [last["raw"].get(f, {"nullValue": None}) for f in value_fields],
            )
        return docs, token

    def _songs_page(self, docs, token):
        return SongPage([t for t in (doc_to_track(d) for d in docs) if t is not None], token)

    def _list_collection(self, collection, filters=None, select=None):
        docs, _ = self._run_query(collection, filters=filters, select=select)
        return docs

    # ------------------------------------------------------------------
    # songs

    def fetch_random_songs(self, limit=50):
        pivot = self.rng.random()
        docs, _ = self._run_query(
            SONGS,
            filters=[_field_filter("rand", "GREATER_THAN_OR_EQUAL", pivot)],
            order_by=[("rand", "ASCENDING")],
            limit=limit,
        )
        songs = self._songs_page(docs, None).songs

        if len(songs) < limit:
            remaining = limit - len(songs)
            more_docs, _ = self._run_query(
                SONGS,
                filters=[_field_filter("rand", "LESS_THAN", pivot)],
                order_by=[("rand", "DESCENDING")],
                limit=remaining,
            )
            songs.extend(self._songs_page(more_docs, None).songs)

        self.rng.shuffle(songs)
        logger.info("Random sample: pivot=%.4f songs=%s", pivot, len(songs))
        return songs

    def _fetch_songs_where(self, field, value, limit, token):
        docs, next_token = self._run_query(
            SONGS,
            filters=[_field_filter(field, "EQUAL", value)],
            limit=limit,
            start_after=token,
        )
        return self._songs_page(docs, next_token)

    def fetch_songs_by_artist(self, artist, limit=50, token=None):
        return self._fetch_songs_where("artist", artist, limit, token)

    def fetch_songs_by_album(self, album, limit=50, token=None):
        return self._fetch_songs_where("album", album, limit, token)

    def fetch_songs_by_year(self, year, limit=50, token=None):
        return self._fetch_songs_where("year", int(year), limit, token)

    def fetch_songs_by_genre(self, genre, limit=50, token=None):
        return self._fetch_songs_where("genre", genre, limit, token)

    def fetch_songs_by_source(self, source, limit=50, token=None):
        return self._fetch_songs_where("source", source, limit, token)

    def fetch_liked_songs(self, limit=50, token=None):
        return self._fetch_songs_where("liked", True, limit, token)

    def fetch_new_songs(self, limit=50, token=None, now=None):
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=self.new_songs_days)
        docs, next_token = self._run_query(
            SONGS,
            filters=[_field_filter("createdAt", "GREATER_THAN_OR_EQUAL", since)],
            order_by=[("createdAt", "DESCENDING")],
            limit=limit,
            start_after=token,
        )
        return self._songs_page(docs, next_token)

    def fetch_songs_by_title(self, title_prefix, limit=50, token=None):
        prefix = str(title_prefix or "").lower()
        docs, next_token = self._run_query(
            SONGS,
            order_by=[("titleMinusculas", "ASCENDING")],
            limit=limit,
            start_after=token,
            start_at=[prefix],
            end_at=[prefix + "\uf8ff"],
        )
        return self._songs_page(docs, next_token)

    def fetch_songs_by_titles(self, titles):
        """Songs whose title is in `titles`, in whatever order the store returns."""
        titles = [t for t in titles if isinstance(t, str)]
        songs = []
        for start in range(0, len(titles), IN_BATCH_SIZE):
            batch = titles[start:start + IN_BATCH_SIZE]
            docs = self._list_collection(SONGS, filters=[_field_filter("title", "IN", batch)])
            songs.extend(self._songs_page(docs, None).songs)
        return songs

    def toggle_liked(self, song_id, liked):
        self._request_json(
            "PATCH",
            f"{self.documents_url}/{SONGS}/{quote(song_id, safe='')}",
            f"like {song_id}",
            params={"updateMask.fieldPaths": "liked", "currentDocument.exists": "true"},
            json={"fields": {"liked": encode_value(bool(liked))}},
        )
        logger.info("Song %s liked=%s", song_id, liked)

    # ------------------------------------------------------------------
    # facets

    def _song_field_counts(self, field, with_cover=False):
        select = [field, "coverPath"] if with_cover else [field]
        counts = {}
        covers = {}
        for doc in self._list_collection(SONGS, select=select):
            value = doc["data"].get(field)
            if field == "year":
                if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                    continue
            elif not isinstance(value, str) or not value:
                continue
            counts[value] = counts.get(value, 0) + 1
            cover = doc["data"].get("coverPath")
            if with_cover and value not in covers and isinstance(cover, str) and cover:
                covers[value] = cover
        return counts, covers

    def _named_facets(self, collection, field, filters=None, min_count=0):
        docs = self._list_collection(collection, filters=filters)
        counts, _ = self._song_field_counts(field)
        items = []
        for doc in docs:
            name = doc["data"].get("name")
            if not isinstance(name, str) or not name:
                name = doc["id"]
            count = counts.get(name, 0)
            if count < min_count:
                continue
            cover = doc["data"].get("coverPath")
            items.append(CountItem(name, count, id=doc["id"], cover_path=cover if isinstance(cover, str) else None))
        return _sort_by_count_then_key(items)

    def fetch_artists_with_counts(self, min_count=None):
        if min_count is None:
            min_count = self.min_facet_count
        return self._named_facets(ARTISTS, "artist", min_count=min_count)

    def fetch_albums_with_counts(self, min_count=None):
        if min_count is None:
            min_count = self.min_facet_count
        counts, covers = self._song_field_counts("album", with_cover=True)
        items = [
            CountItem(album, count, cover_path=covers.get(album))
            for album, count in counts.items()
            if count >= min_count
        ]
        return _sort_by_count_then_key(items)

    def fetch_years_with_counts(self):
        counts, _ = self._song_field_counts("year")
        return [CountItem(str(year), counts[year]) for year in sorted(counts, reverse=True)]

    def fetch_genres(self):
        return self._named_facets(GENRES, "genre")

    def fetch_sources_by_genre_id(self, genre_id):
        return self._named_facets(SOURCES, "source", filters=[_field_filter("genreId", "EQUAL", genre_id)])

    def get_genre_id_by_name(self, genre_name):
        docs, _ = self._run_query(GENRES, filters=[_field_filter("name", "EQUAL", genre_name)], limit=1)
        return docs[0]["id"] if docs else None

    # ------------------------------------------------------------------
    # playlists

    def fetch_playlists(self):
        playlists = []
        for doc in self._list_collection(PLAYLISTS):
            name = doc["data"].get("name")
            if not isinstance(name, str):
                continue
            songs = doc["data"].get("songs")
            cover = doc["data"].get("coverPath")
            playlists.append(
                Playlist(
                    doc["id"],
                    name,
                    cover_path=cover if isinstance(cover, str) else None,
                    song_count=len(songs) if isinstance(songs, list) else 0,
                )
            )
        return sorted(playlists, key=lambda p: p.name.lower())

    def fetch_playlist_titles(self, playlist_id):
        """Stored song titles of a playlist in playlist order; [] if it is gone."""
        try:
            doc = self._request_json(
                "GET",
                f"{self.documents_url}/{PLAYLISTS}/{quote(playlist_id, safe='')}",
                f"playlist {playlist_id}",
            )
        except CatalogError as e:
            if e.kind == "not_found":
                return []
            raise
        titles = decode_document(doc or {})["data"].get("songs")
        if not isinstance(titles, list):
            return []
        return [t for t in titles if isinstance(t, str)]

    def _playlist_array_transform(self, playlist_id, op, fields):
        name = f"projects/{self.project_id}/databases/(default)/documents/{PLAYLISTS}/{playlist_id}"
        transforms = [
            {"fieldPath": field, op: {"values": [encode_value(v) for v in values]}}
            for field, values in fields.items()
        ]
        self._request_json(
            "POST",
            f"{self.documents_url}:commit",
            f"update playlist {playlist_id}",
            json={"writes": [{"transform": {"document": name, "fieldTransforms": transforms}}]},
        )

    def add_song_to_playlist(self, song_title, playlist_id, song_id=None):
        fields = {"songs": [song_title]}
        if song_id:
            fields["songsId"] = [song_id]
        self._playlist_array_transform(playlist_id, "appendMissingElements", fields)
        logger.info("Added %r to playlist %s", song_title, playlist_id)

    def remove_song_from_playlist(self, song_title, playlist_id, song_id=None):
        fields = {"songs": [song_title]}
        if song_id:
            fields["songsId"] = [song_id]
        self._playlist_array_transform(playlist_id, "removeAllFromArray", fields)
        logger.info("Removed %r from playlist %s", song_title, playlist_id)

    def create_playlist(self, name):
        doc = self._request_json(
            "POST",
            f"{self.documents_url}/{PLAYLISTS}",
            f"create playlist {name!r}",
            json={
                "fields": {
                    "name": encode_value(name),
                    "songs": encode_value([]),
                    "songsId": encode_value([]),
                    "coverPath": encode_value(""),
                }
            },
        )
        playlist_id = decode_document(doc or {})["id"]
        if not playlist_id:
            raise CatalogError(f"create playlist {name!r}: no document name in response", kind="parse")
        logger.info("Playlist created: id=%s name=%r", playlist_id, name)
        return Playlist(playlist_id, name)

    def delete_playlist(self, playlist_id):
        self._request_json(
            "DELETE",
            f"{self.documents_url}/{PLAYLISTS}/{quote(playlist_id, safe='')}",
            f"delete playlist {playlist_id}",
        )
        logger.info("Playlist deleted: id=%s", playlist_id)

    # ------------------------------------------------------------------
    # storage

    def _object_url(self, path):
        return f"{STORAGE_ROOT}/b/{self.storage_bucket}/o/{quote(path, safe='')}"

    def get_download_url(self, path):
        if str(path).startswith(("http://", "https://")):
            return path
        meta = self._request_json("GET", self._object_url(path), f"storage {path}")
        tokens = str((meta or {}).get("downloadTokens") or "").split(",")
        url = f"{self._object_url(path)}?alt=media"
        if tokens and tokens[0]:
            url = f"{url}&token={tokens[0]}"
        return url

    def get_audio_url(self, audio_path):
        return self.get_download_url(audio_path)

    def get_cover_url(self, cover_path):
        return self.get_download_url(cover_path)

    def _upload_object(self, path, data, content_type="image/jpeg"):
        self._request_json(
            "POST",
            f"{STORAGE_ROOT}/b/{self.storage_bucket}/o",
            f"upload {path}",
            params={"name": path, "uploadType": "media"},
            data=data,
            headers={"Content-Type": content_type},
        )

    def _set_cover_path(self, collection, doc_id, storage_path):
        self._request_json(
            "PATCH",
            f"{self.documents_url}/{collection}/{quote(doc_id, safe='')}",
            f"cover {collection}/{doc_id}",
            params={"updateMask.fieldPaths": "coverPath", "currentDocument.exists": "true"},
            json={"fields": {"coverPath": encode_value(storage_path)}},
        )

    def upload_cover(self, image_bytes, target, now=None):
        """
        Upload a cover for a FacetCover or PlaylistCover and point the owning
        document at it. Returns the storage path.
        """
        if target.tag == "playlist":
            folder, collection = PLAYLIST_COVER_LOCATION
            item_name = target.playlist.name
            doc_id = target.playlist.id
        elif target.tag == "facet":
            if target.kind not in COVER_LOCATIONS:
                raise CatalogError(f"no cover location for {target.kind}", kind="unknown")
            folder, collection = COVER_LOCATIONS[target.kind]
            item_name = target.item.key
            # Derived facets (albums, years) have no document id of their own.
            doc_id = None if target.item.id.startswith("key:") else target.item.id
        else:
            raise CatalogError(f"unknown cover target {target.tag!r}", kind="unknown")

        stamp = int((now or time.time()) * 1000)
        storage_path = f"{folder}/{utils.safe_storage_name(item_name)}_{stamp}.jpg"
        self._upload_object(storage_path, utils.encode_jpeg(image_bytes))

        if collection is None:
            return storage_path
        if doc_id is None:
            docs, _ = self._run_query(collection, filters=[_field_filter("name", "EQUAL", item_name)], limit=1)
            doc_id = docs[0]["id"] if docs else None
        if doc_id is not None:
            self._set_cover_path(collection, doc_id, storage_path)
        else:
            logger.info("No %s document named %r; cover uploaded without a reference", collection, item_name)
        return storage_path
