import json
import logging
import os
from typing import Any

from models import PAGE_SIZE, SEARCH_DELAY_MS, WIDE_PAGE_SIZE, ViewMode

logger = logging.getLogger(__name__)

CURRENT_SETTINGS_VERSION = 1

DEFAULT_SETTINGS_PATH = os.path.expanduser("~/.config/cloudtunes/settings.json")

DEFAULT_SETTINGS = {
    "settings_version": CURRENT_SETTINGS_VERSION,
    "project_id": "",
    "api_key": "",
    "storage_bucket": "",
    "request_timeout": 15,
    "page_size": PAGE_SIZE,
    "wide_page_size": WIDE_PAGE_SIZE,
    "min_facet_count": 2,
    "new_songs_days": 7,
    "search_delay_ms": SEARCH_DELAY_MS,
    "cover_cache_dir": "~/.cache/cloudtunes/covers",
    "view_mode": ViewMode.GRID_4.value,
    "log_level": "INFO",
}

ENV_OVERRIDES = {
    "CLOUDTUNES_PROJECT_ID": "project_id",
    "CLOUDTUNES_API_KEY": "api_key",
    "CLOUDTUNES_BUCKET": "storage_bucket",
}

_VIEW_MODES = {m.value for m in ViewMode}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _as_str(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _as_int(value: Any, default: int, minimum: int | None = None, maximum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    if minimum is not None and value < minimum:
        return default
    if maximum is not None and value > maximum:
        return default
    return value


def _as_choice(value: Any, default: str, choices: set[str]) -> str:
    if isinstance(value, str) and value.strip().upper() in choices:
        return value.strip().upper()
    return default


def normalize_settings(raw: dict[str, Any] | None) -> dict[str, Any]:
    raw = raw or {}
    normalized = dict(DEFAULT_SETTINGS)
    normalized["project_id"] = _as_str(raw.get("project_id"), DEFAULT_SETTINGS["project_id"])
    normalized["api_key"] = _as_str(raw.get("api_key"), DEFAULT_SETTINGS["api_key"])
    normalized["storage_bucket"] = _as_str(raw.get("storage_bucket"), DEFAULT_SETTINGS["storage_bucket"])
    normalized["request_timeout"] = _as_int(raw.get("request_timeout"), DEFAULT_SETTINGS["request_timeout"], minimum=1, maximum=120)
    normalized["page_size"] = _as_int(raw.get("page_size"), DEFAULT_SETTINGS["page_size"], minimum=1, maximum=500)
    normalized["wide_page_size"] = _as_int(raw.get("wide_page_size"), DEFAULT_SETTINGS["wide_page_size"], minimum=1, maximum=1000)
    normalized["min_facet_count"] = _as_int(raw.get("min_facet_count"), DEFAULT_SETTINGS["min_facet_count"], minimum=0)
    normalized["new_songs_days"] = _as_int(raw.get("new_songs_days"), DEFAULT_SETTINGS["new_songs_days"], minimum=1, maximum=365)
    normalized["search_delay_ms"] = _as_int(raw.get("search_delay_ms"), DEFAULT_SETTINGS["search_delay_ms"], minimum=0, maximum=5000)
    normalized["cover_cache_dir"] = _as_str(raw.get("cover_cache_dir"), DEFAULT_SETTINGS["cover_cache_dir"])
    normalized["view_mode"] = _as_choice(raw.get("view_mode"), DEFAULT_SETTINGS["view_mode"], _VIEW_MODES)
    normalized["log_level"] = _as_choice(raw.get("log_level"), DEFAULT_SETTINGS["log_level"], _LOG_LEVELS)
    normalized["settings_version"] = CURRENT_SETTINGS_VERSION

    # The wide page (liked/new screens) is never smaller than a normal page.
    if normalized["wide_page_size"] < normalized["page_size"]:
        normalized["wide_page_size"] = normalized["page_size"]
    return normalized


def apply_env_overrides(settings: dict[str, Any]) -> dict[str, Any]:
    out = dict(settings)
    for env_name, key in ENV_OVERRIDES.items():
        raw = str(os.getenv(env_name, "") or "").strip()
        if raw:
            out[key] = raw
    return out


def load_settings(path: str) -> dict[str, Any]:
    if not os.path.exists(path):
        return dict(DEFAULT_SETTINGS)

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return dict(DEFAULT_SETTINGS)

    if not isinstance(data, dict):
        return dict(DEFAULT_SETTINGS)
    return normalize_settings(data)


def save_settings(path: str, settings: dict[str, Any]) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    data = normalize_settings(settings)
    temp_file = f"{path}.tmp"
    with open(temp_file, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(temp_file, path)


class ViewModePreference:
    """The one persisted display preference: read once, written on every change.

    Writes touch only `view_mode` in the stored file, so values that came
    from the environment never end up on disk.
    """

    def __init__(self, path: str, settings: dict[str, Any] | None = None):
        self.path = path
        self.settings = dict(settings) if settings is not None else load_settings(path)

    def get(self) -> ViewMode:
        return ViewMode(_as_choice(self.settings.get("view_mode"), DEFAULT_SETTINGS["view_mode"], _VIEW_MODES))

    def set(self, mode: ViewMode) -> None:
        self.settings["view_mode"] = mode.value
        stored = load_settings(self.path)
        stored["view_mode"] = mode.value
        try:
            save_settings(self.path, stored)
        except OSError as e:
            logger.warning("Failed to save view mode to %s: %s", self.path, e)
