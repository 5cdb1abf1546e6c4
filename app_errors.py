from __future__ import annotations


class CatalogError(Exception):
    """Raised by the catalog backend when a remote call fails."""

    def __init__(self, message: str, kind: str | None = None):
        super().__init__(message)
        self.kind = kind or classify_exception(Exception(message))


def classify_exception(exc: Exception) -> str:
    kind = getattr(exc, "kind", None)
    if isinstance(kind, str) and kind:
        return kind
    text = str(exc).lower()
    if any(k in text for k in ("401", "403", "unauthorized", "forbidden", "permission", "api key")):
        return "auth"
    if any(k in text for k in ("500", "502", "503", "504", "internal server error", "bad gateway", "service unavailable")):
        return "server"
    if any(k in text for k in ("timeout", "timed out", "connection", "network", "dns", "unreachable")):
        return "network"
    if any(k in text for k in ("404", "not found", "no such")):
        return "not_found"
    if any(k in text for k in ("json", "decode", "parse", "invalid")):
        return "parse"
    return "unknown"


def user_message(kind: str, context: str = "general") -> str:
    if context == "search":
        mapping = {
            "auth": "Search unavailable. Check the catalog credentials.",
            "server": "Search temporarily unavailable on server side. Please retry.",
            "network": "Search failed due to network issue. Please retry.",
            "not_found": "No matching results found.",
            "parse": "Search response format error. Please retry.",
            "unknown": "Search failed. Please retry.",
        }
        return mapping.get(kind, mapping["unknown"])

    if context == "playback":
        mapping = {
            "auth": "Playback unavailable. Check the storage credentials.",
            "server": "Storage service is busy. Please retry shortly.",
            "network": "Playback failed due to network issue.",
            "not_found": "Audio file is unavailable.",
            "unknown": "Playback failed. Please retry.",
        }
        return mapping.get(kind, mapping["unknown"])

    if context == "browse":
        mapping = {
            "auth": "Catalog unavailable. Check the catalog credentials.",
            "server": "Catalog is temporarily unavailable. Please retry.",
            "network": "Could not reach the catalog. Please retry.",
            "not_found": "Nothing found here.",
            "parse": "Catalog response format error. Please retry.",
            "unknown": "Loading failed. Please retry.",
        }
        return mapping.get(kind, mapping["unknown"])

    if context == "playlist":
        mapping = {
            "auth": "Playlist change rejected. Check the catalog credentials.",
            "network": "Playlist change failed due to network issue.",
            "not_found": "Playlist no longer exists.",
            "unknown": "Playlist change failed. Please retry.",
        }
        return mapping.get(kind, mapping["unknown"])

    if context == "like":
        mapping = {
            "network": "Like was not saved due to network issue.",
            "unknown": "Like was not saved. Please retry.",
        }
        return mapping.get(kind, mapping["unknown"])

    return "Operation failed. Please retry."
