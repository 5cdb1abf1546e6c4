from collections import namedtuple
from enum import Enum


PAGE_SIZE = 50
WIDE_PAGE_SIZE = 100
SEARCH_DELAY_MS = 500
RESTART_THRESHOLD_SECONDS = 3.0
NO_TITLE = "Untitled"
UNKNOWN_ARTIST = "Unknown artist"


class ScreenMode(Enum):
    RANDOM = "RANDOM"
    PICK_FILTER = "PICK_FILTER"
    FILTER_RESULTS = "FILTER_RESULTS"
    PLAYLISTS = "PLAYLISTS"


class FilterKind(Enum):
    NONE = "NONE"
    ARTIST = "ARTIST"
    ALBUM = "ALBUM"
    YEAR = "YEAR"
    GENRE = "GENRE"
    SOURCE = "SOURCE"
    LIKED = "LIKED"
    NEW = "NEW"

    @property
    def display_name(self):
        return _FILTER_DISPLAY_NAMES[self]


_FILTER_DISPLAY_NAMES = {
    FilterKind.NONE: "All",
    FilterKind.ARTIST: "Artist",
    FilterKind.ALBUM: "Album",
    FilterKind.YEAR: "Year",
    FilterKind.GENRE: "Genre",
    FilterKind.SOURCE: "Source",
    FilterKind.LIKED: "Liked",
    FilterKind.NEW: "New",
}


class ViewMode(Enum):
    GRID_2 = "GRID_2"
    GRID_4 = "GRID_4"
    GRID_6 = "GRID_6"
    LIST = "LIST"

    @property
    def columns(self):
        return {"GRID_2": 2, "GRID_4": 4, "GRID_6": 6, "LIST": 1}[self.value]


class RepeatMode(Enum):
    OFF = "OFF"
    ONE = "ONE"
    ALL = "ALL"

    def next(self):
        order = [RepeatMode.OFF, RepeatMode.ONE, RepeatMode.ALL]
        return order[(order.index(self) + 1) % len(order)]


class Track:
    """A song document. Two tracks are the same track when their ids match."""

    def __init__(
        self,
        id,
        title,
        audio_path,
        cover_path=None,
        artist="",
        album="",
        year=0,
        genre="",
        source="",
        liked=False,
        created_at=None,
    ):
        self.id = str(id)
        self.title = title
        self.audio_path = audio_path
        self.cover_path = cover_path or None
        self.artist = artist or ""
        self.album = album or ""
        self.year = int(year or 0)
        self.genre = genre or ""
        self.source = source or ""
        self.liked = bool(liked)
        self.created_at = created_at
        self.cover_image = None

    @property
    def display_title(self):
        return self.title or NO_TITLE

    @property
    def display_artist(self):
        return self.artist or UNKNOWN_ARTIST

    def __eq__(self, other):
        if not isinstance(other, Track):
            return NotImplemented
        return self.id == other.id

    def __hash__(self):
        return hash(("track", self.id))

    def __repr__(self):
        return f"Track(id={self.id!r}, title={self.title!r})"


class CountItem:
    def __init__(self, key, count, id=None, cover_path=None):
        self.id = str(id) if id is not None else f"key:{key}"
        self.key = str(key)
        self.count = max(0, int(count or 0))
        self.cover_path = cover_path or None
        self.cover_image = None

    @property
    def label(self):
        return f"{self.key} ({self.count})"

    def __eq__(self, other):
        if not isinstance(other, CountItem):
            return NotImplemented
        return (self.id, self.key) == (other.id, other.key)

    def __hash__(self):
        return hash(("count_item", self.id, self.key))

    def __repr__(self):
        return f"CountItem(key={self.key!r}, count={self.count})"


class Playlist:
    def __init__(self, id, name, cover_path=None, song_count=0):
        self.id = str(id)
        self.name = name
        self.cover_path = cover_path or None
        self.song_count = int(song_count or 0)
        self.cover_image = None

    def __eq__(self, other):
        if not isinstance(other, Playlist):
            return NotImplemented
        return self.id == other.id

    def __hash__(self):
        return hash(("playlist", self.id))

    def __repr__(self):
        return f"Playlist(id={self.id!r}, name={self.name!r})"


class PlaybackQueue:
    """Tracks eligible for playback, the position in them, and the order to
    return to when shuffle is switched off."""

    def __init__(self, tracks=None, index=0, original=None):
        self.tracks = list(tracks or [])
        self.original = list(original if original is not None else self.tracks)
        self.index = index if self.tracks else 0

    def __len__(self):
        return len(self.tracks)

    @property
    def current(self):
        if 0 <= self.index < len(self.tracks):
            return self.tracks[self.index]
        return None

    def index_of(self, track, in_original=False):
        seq = self.original if in_original else self.tracks
        for i, t in enumerate(seq):
            if t.id == track.id:
                return i
        return -1


BrowseSnapshot = namedtuple(
    "BrowseSnapshot",
    [
        "screen_mode",
        "filter_kind",
        "filter_value",
        "browse_items",
        "songs",
        "scroll_position",
        "cached_browse_items",
        "cached_songs",
        "showing_genres_for_source",
        "page_token",
        "can_load_more",
        "playlist_id",
        "page_limit",
    ],
)

SongPage = namedtuple("SongPage", ["songs", "token"])


# Cover upload targets. A facet cover belongs to a CountItem of a given kind,
# a playlist cover to a Playlist. Consumers switch on `tag`.
class FacetCover(namedtuple("FacetCover", ["kind", "item"])):
    __slots__ = ()
    tag = "facet"


class PlaylistCover(namedtuple("PlaylistCover", ["playlist"])):
    __slots__ = ()
    tag = "playlist"
