"""Preference Codec and local preference snapshots.

Two representations of ViewPreferences:

    token      URL-safe opaque string: compact JSON → UTF-8 → base64url,
               padding stripped. Labels are Latvian, so the JSON keeps
               non-ASCII characters and the bytes carry them.
    snapshot   structured dict ``{"column_order": [...], "hidden_features": [...]}``
               kept in a namespaced local store.

Shareable links only carry the hidden set (query parameter ``hf``); the full
order travels server-side with the share record.

Decoding never raises on the render path: a malformed token degrades to
empty preferences.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .errors import DecodeError
from .models import ViewPreferences

logger = logging.getLogger("offer_matrix.prefs")

SHARE_QUERY_PARAM = "hf"
STORAGE_PREFIX = "offer_matrix:view_prefs"
_FORMAT_VERSION = 1


# ---------------------------------------------------------------------------
# Token codec
# ---------------------------------------------------------------------------


def _b64encode(payload: Any) -> str:
    raw = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(token: str) -> Any:
    token = token.strip()
    if not token:
        raise DecodeError("empty token")
    try:
        raw = base64.urlsafe_b64decode(token + "=" * (-len(token) % 4))
        return json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        # UnicodeDecodeError and JSONDecodeError are both ValueErrors
        raise DecodeError(f"malformed preference token: {e}") from e


def _string_list(value: Any, name: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise DecodeError(f"{name} must be a list of strings")
    return value


def encode(prefs: ViewPreferences) -> str:
    """Serialize preferences into an opaque URL-safe token."""
    return _b64encode(
        {"v": _FORMAT_VERSION, "o": list(prefs.order), "h": sorted(prefs.hidden)}
    )


def decode_strict(token: str) -> ViewPreferences:
    """Inverse of :func:`encode`. Raises DecodeError on any malformed input."""
    data = _b64decode(token)
    if not isinstance(data, dict):
        raise DecodeError("token payload is not an object")
    order = _string_list(data.get("o", []), "order")
    hidden = _string_list(data.get("h", []), "hidden")
    return ViewPreferences(order=order, hidden=frozenset(hidden))


def decode(token: str | None) -> ViewPreferences:
    """Lenient decode: malformed or missing tokens yield empty preferences."""
    if not token:
        return ViewPreferences()
    try:
        return decode_strict(token)
    except DecodeError as e:
        logger.debug("Ignoring preference token: %s", e)
        return ViewPreferences()


def encode_hidden(hidden: frozenset[str] | set[str] | list[str]) -> str:
    """Token carrying only the hidden-feature set (share URL parameter)."""
    return _b64encode(sorted(set(hidden)))


def decode_hidden(token: str | None) -> frozenset[str]:
    if not token:
        return frozenset()
    try:
        return frozenset(_string_list(_b64decode(token), "hidden"))
    except DecodeError as e:
        logger.debug("Ignoring hidden-features token: %s", e)
        return frozenset()


def share_query(prefs: ViewPreferences) -> dict[str, str]:
    """Query parameters for a shareable link (empty when nothing is hidden)."""
    return {SHARE_QUERY_PARAM: encode_hidden(prefs.hidden)} if prefs.hidden else {}


# ---------------------------------------------------------------------------
# Structured snapshots
# ---------------------------------------------------------------------------


def to_snapshot(prefs: ViewPreferences) -> dict[str, list[str]]:
    return {
        "column_order": list(prefs.order),
        "hidden_features": sorted(prefs.hidden),
    }


def from_snapshot(data: Any) -> ViewPreferences:
    """Parse a stored snapshot; anything unreadable becomes empty preferences."""
    if not isinstance(data, dict):
        return ViewPreferences()
    try:
        order = _string_list(data.get("column_order", []), "column_order")
        hidden = _string_list(data.get("hidden_features", []), "hidden_features")
    except DecodeError as e:
        logger.warning("Discarding malformed preference snapshot: %s", e)
        return ViewPreferences()
    return ViewPreferences(order=order, hidden=frozenset(hidden))


def storage_key(context_name: str) -> str:
    """Namespaced key scoped by a human-chosen company/context name."""
    slug = re.sub(r"\s+", "-", context_name.strip().lower()) or "default"
    return f"{STORAGE_PREFIX}:{slug}"


# ---------------------------------------------------------------------------
# Local stores
# ---------------------------------------------------------------------------


class PreferenceStore(ABC):
    """Persistence for local preference snapshots."""

    @abstractmethod
    def load(self, context_name: str) -> ViewPreferences:
        """Load preferences for a context (empty if none saved)."""
        ...

    @abstractmethod
    def save(self, context_name: str, prefs: ViewPreferences) -> None:
        """Persist preferences for a context."""
        ...

    @abstractmethod
    def clear(self, context_name: str) -> bool:
        """Forget a context. Returns True if something was removed."""
        ...


class InMemoryPreferenceStore(PreferenceStore):
    """Ephemeral store for dev/testing."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, list[str]]] = {}

    def load(self, context_name: str) -> ViewPreferences:
        return from_snapshot(self._data.get(storage_key(context_name)))

    def save(self, context_name: str, prefs: ViewPreferences) -> None:
        self._data[storage_key(context_name)] = to_snapshot(prefs)

    def clear(self, context_name: str) -> bool:
        return self._data.pop(storage_key(context_name), None) is not None


class FilePreferenceStore(PreferenceStore):
    """One JSON document holding every namespaced snapshot."""

    FILENAME = "view_prefs.json"

    def __init__(self, directory: str | Path) -> None:
        self._path = Path(directory) / self.FILENAME
        logger.info("FilePreferenceStore: using %s", self._path)

    def _read_all(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception("FilePreferenceStore: unreadable %s, starting empty", self._path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self._path)

    def load(self, context_name: str) -> ViewPreferences:
        return from_snapshot(self._read_all().get(storage_key(context_name)))

    def save(self, context_name: str, prefs: ViewPreferences) -> None:
        data = self._read_all()
        data[storage_key(context_name)] = to_snapshot(prefs)
        self._write_all(data)

    def clear(self, context_name: str) -> bool:
        data = self._read_all()
        if data.pop(storage_key(context_name), None) is None:
            return False
        self._write_all(data)
        return True


def create_preference_store(prefs_dir: str = "") -> PreferenceStore:
    """File-backed store when a directory is configured, in-memory otherwise."""
    if prefs_dir:
        return FilePreferenceStore(prefs_dir)
    logger.info("Using in-memory preference store (non-persistent)")
    return InMemoryPreferenceStore()
