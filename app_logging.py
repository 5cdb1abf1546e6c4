import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

ENV_PREFIX = "CLOUDTUNES_LOG_"
LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DEFAULT_ROTATE_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 3

# Chatty third-party loggers: one line per pooled connection / image plugin.
QUIET_LOGGERS = ("urllib3", "PIL")


def _env(name, default=""):
    return str(os.getenv(ENV_PREFIX + name) or default or "").strip()


def _positive_int(raw, default):
    try:
        val = int(raw)
    except (TypeError, ValueError):
        return default
    return val if val >= 1 else default


def _parse_level(level_name, default):
    level = getattr(logging, str(level_name).upper(), default)
    return level if isinstance(level, int) else default


def parse_module_levels(raw, default_level):
    """
    "catalog_backend=DEBUG,browse_navigator=INFO" -> {name: level}.
    Returns the parsed overrides and the entries that could not be read.
    """
    levels = {}
    rejected = []
    for item in (raw or "").split(","):
        entry = item.strip()
        if not entry:
            continue
        name, sep, level_name = entry.partition("=")
        name, level_name = name.strip(), level_name.strip()
        if not sep or not name or not level_name:
            rejected.append(entry)
            continue
        levels[name] = _parse_level(level_name, default_level)
    return levels, rejected


def _file_handler(log_file, level, formatter):
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path,
        maxBytes=_positive_int(_env("ROTATE_BYTES"), DEFAULT_ROTATE_BYTES),
        backupCount=_positive_int(_env("BACKUP_COUNT"), DEFAULT_BACKUP_COUNT),
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(default_level: str = "INFO") -> None:
    """
    Configure the root logger once for the whole app.

    `default_level` comes from the settings file; CLOUDTUNES_LOG_LEVEL wins.
    CLOUDTUNES_LOG_FILE adds a rotating file (CLOUDTUNES_LOG_ROTATE_BYTES,
    CLOUDTUNES_LOG_BACKUP_COUNT). CLOUDTUNES_LOG_MODULE_LEVELS sets per-module
    levels, e.g. "catalog_backend=DEBUG,playback_engine=INFO".
    """
    level = _parse_level(_env("LEVEL", default_level or "INFO"), logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%H:%M:%S")

    root = logging.getLogger()
    root.setLevel(level)
    # Repeated setup must not stack handlers.
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    log_file = _env("FILE")
    if log_file:
        root.addHandler(_file_handler(log_file, level, formatter))

    if level > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    overrides, rejected = parse_module_levels(_env("MODULE_LEVELS"), level)
    for entry in rejected:
        root.warning("Invalid module-level logging entry: %s", entry)
    for name, module_level in overrides.items():
        logging.getLogger(name).setLevel(module_level)
        root.info("Log level override: %s=%s", name, logging.getLevelName(module_level))
