import logging
import os
import sys

import gi
from gi.repository import GLib

from app_logging import setup_logging
from app_settings import (
    DEFAULT_SETTINGS_PATH,
    ViewModePreference,
    apply_env_overrides,
    load_settings,
)
from audio_player import AudioPlayer
from browse_navigator import BrowseNavigator
from catalog_backend import CatalogBackend
from covers import CoverLoader
from glib_dispatch import GLibDispatcher
from models import FilterKind, ScreenMode
from playback_engine import PlaybackEngine, format_time
from search_controller import SearchController
import utils

logger = logging.getLogger(__name__)

POSITION_POLL_MS = 500

FACET_COMMANDS = {
    "artists": FilterKind.ARTIST,
    "albums": FilterKind.ALBUM,
    "years": FilterKind.YEAR,
    "genres": FilterKind.GENRE,
    "sources": FilterKind.SOURCE,
}

HELP = (
    "commands: home | back | more | artists | albums | years | genres | sources | "
    "liked | new | playlists | open N | play N | like N | search TEXT | "
    "next | prev | pause | shuffle | repeat | stop | quit"
)


class CloudTunesApp:
    """Headless launcher: wires the core together on a GLib main loop and
    reads simple commands from stdin."""

    def __init__(self, settings_file=None, stored_settings=None):
        self.settings_file = settings_file or DEFAULT_SETTINGS_PATH
        if stored_settings is None:
            stored_settings = load_settings(self.settings_file)
        self.settings = apply_env_overrides(stored_settings)
        self.loop = GLib.MainLoop()
        self.dispatcher = GLibDispatcher()

        self.cache_dir = os.path.expanduser(self.settings["cover_cache_dir"])
        removed = utils.prune_image_cache(self.cache_dir)
        if removed:
            logger.info("Pruned %d cached covers", removed)

        self.backend = CatalogBackend(
            self.settings["project_id"],
            api_key=self.settings["api_key"],
            storage_bucket=self.settings["storage_bucket"],
            timeout=self.settings["request_timeout"],
            min_facet_count=self.settings["min_facet_count"],
            new_songs_days=self.settings["new_songs_days"],
        )
        self.player = AudioPlayer(
            on_eos_callback=self.on_track_ended,
            on_error_callback=self.on_media_error,
        )
        self.engine = PlaybackEngine(self.player, self.backend.get_audio_url, self.dispatcher)
        self.covers = CoverLoader(self.backend, self.dispatcher, cache_dir=self.cache_dir)
        self.navigator = BrowseNavigator(
            self.backend,
            self.dispatcher,
            engine=self.engine,
            covers=self.covers,
            preferences=ViewModePreference(self.settings_file, self.settings),
            page_size=self.settings["page_size"],
            wide_page_size=self.settings["wide_page_size"],
        )
        self.search = SearchController(
            self.navigator,
            self.backend,
            self.dispatcher,
            delay_ms=self.settings["search_delay_ms"],
            page_size=self.settings["page_size"],
        )

        self.engine.connect("track-changed", self.on_track_changed)
        self.engine.connect("error", self.on_error)
        self.navigator.connect("songs-changed", self.on_songs_changed)
        self.navigator.connect("browse-items-changed", self.on_browse_items_changed)
        self.navigator.connect("playlists-changed", self.on_playlists_changed)
        self.navigator.connect("error", self.on_error)

    def on_track_ended(self):
        self.engine.handle_track_ended()

    def on_media_error(self, message):
        self.engine.handle_media_error(message)

    def on_track_changed(self, track):
        if track is not None:
            print(f"> {track.display_title} - {track.display_artist}")

    def on_error(self, error):
        _kind, message = error
        print(f"! {message}")

    def on_songs_changed(self, songs):
        for i, s in enumerate(songs):
            mark = "*" if s.liked else " "
            print(f"{i:3d}{mark} {s.display_title} - {s.display_artist}")

    def on_browse_items_changed(self, items):
        for i, item in enumerate(items):
            print(f"{i:3d}  {item.label}")

    def on_playlists_changed(self, playlists):
        for i, p in enumerate(playlists):
            print(f"{i:3d}  {p.name} ({p.song_count})")

    def _poll_position(self):
        if self.engine.refresh_position() and self.engine.is_playing:
            logger.debug("Position %s / %s", format_time(self.engine.position), format_time(self.engine.duration))
        return True

    def _pick(self, items, arg):
        try:
            return items[int(arg)]
        except (ValueError, IndexError):
            print(f"! no entry {arg!r}")
            return None

    def handle_command(self, line):
        cmd, _, arg = line.strip().partition(" ")
        cmd = cmd.lower()
        nav = self.navigator
        if not cmd:
            return True
        if cmd == "quit":
            self.engine.stop()
            self.loop.quit()
            return False
        if cmd == "home":
            nav.go_home()
        elif cmd == "back":
            nav.go_back()
        elif cmd == "more":
            nav.load_more_songs()
        elif cmd in FACET_COMMANDS:
            nav.load_browse_items(FACET_COMMANDS[cmd])
        elif cmd == "liked":
            nav.load_liked_songs()
        elif cmd == "new":
            nav.load_new_songs()
        elif cmd == "playlists":
            nav.load_playlists()
        elif cmd == "open":
            if nav.playlists and nav.screen_mode == ScreenMode.PLAYLISTS:
                playlist = self._pick(nav.playlists, arg)
                if playlist is not None:
                    nav.load_playlist_songs(playlist)
            else:
                item = self._pick(nav.browse_items, arg)
                if item is not None:
                    nav.select_browse_item(item)
        elif cmd == "play":
            track = self._pick(nav.songs, arg)
            if track is not None:
                nav.play_song(track)
        elif cmd == "like":
            track = self._pick(nav.songs, arg)
            if track is not None:
                nav.toggle_like(track)
        elif cmd == "search":
            self.search.set_query(arg)
        elif cmd == "next":
            self.engine.next()
        elif cmd == "prev":
            self.engine.previous()
        elif cmd == "pause":
            self.engine.toggle_play_pause()
        elif cmd == "shuffle":
            print(f"shuffle: {self.engine.toggle_shuffle()}")
        elif cmd == "repeat":
            print(f"repeat: {self.engine.toggle_repeat().value}")
        elif cmd == "stop":
            self.engine.stop()
        else:
            print(HELP)
        return True

    def _on_stdin(self, _channel, _condition):
        line = sys.stdin.readline()
        if not line:
            self.loop.quit()
            return False
        return self.handle_command(line)

    def run(self):
        if not self.settings["project_id"]:
            logger.error("No catalog project configured; set project_id in %s or CLOUDTUNES_PROJECT_ID", self.settings_file)
            return 1
        GLib.timeout_add(POSITION_POLL_MS, self._poll_position)
        channel = GLib.IOChannel.unix_new(sys.stdin.fileno())
        GLib.io_add_watch(channel, GLib.PRIORITY_DEFAULT, GLib.IOCondition.IN | GLib.IOCondition.HUP, self._on_stdin)
        print(HELP)
        self.navigator.go_home()
        try:
            self.loop.run()
        except KeyboardInterrupt:
            logger.info("Interrupted")
        finally:
            self.player.cleanup()
        return 0


def main():
    settings = load_settings(DEFAULT_SETTINGS_PATH)
    setup_logging(settings.get("log_level", "INFO"))
    logger.info("PyGObject %s", ".".join(str(v) for v in gi.version_info))
    return CloudTunesApp(DEFAULT_SETTINGS_PATH, settings).run()


if __name__ == "__main__":
    sys.exit(main())
