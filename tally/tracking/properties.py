"""
Durable key-value maps.

Two scopes are used: a document scope shared by the whole dataset (team
sync dates) and a user scope bound to the invoking user (confirmed
attribution identity). Both persist to a single JSON file next to the
workbook when one is given.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from .errors import StateParseFault

logger = logging.getLogger(__name__)


class PropertyStore:
    """String-to-string map. Mutations are flushed through the owning file."""

    def __init__(self, values: Optional[dict[str, str]] = None, owner: Optional["PropertyFile"] = None):
        self._values: dict[str, str] = dict(values or {})
        self._owner = owner

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = str(value)
        self._flush()

    def delete(self, key: str) -> None:
        if self._values.pop(key, None) is not None:
            self._flush()

    def as_dict(self) -> dict[str, str]:
        return dict(self._values)

    def _flush(self) -> None:
        if self._owner is not None:
            self._owner.save()


class PropertyFile:
    """
    JSON-backed home for the document scope and every user scope.

    Layout: {"document": {...}, "users": {"<name>": {...}}}
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._document = PropertyStore(owner=self)
        self._users: dict[str, PropertyStore] = {}

    @classmethod
    def load(cls, path: Path) -> "PropertyFile":
        props = cls(path)
        if not props.path.exists():
            return props
        try:
            raw = json.loads(props.path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("top level is not an object")
        except ValueError as e:
            logger.warning("Unreadable property file %s: %s; starting from empty properties", path, e)
            return props
        props._document = PropertyStore(raw.get("document") or {}, owner=props)
        for name, values in (raw.get("users") or {}).items():
            props._users[name] = PropertyStore(values or {}, owner=props)
        return props

    def document(self) -> PropertyStore:
        return self._document

    def user(self, name: str) -> PropertyStore:
        if name not in self._users:
            self._users[name] = PropertyStore(owner=self)
        return self._users[name]

    def save(self) -> None:
        if self.path is None:
            return
        payload = {
            "document": self._document.as_dict(),
            "users": {name: store.as_dict() for name, store in self._users.items()},
        }
        self.path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


def load_json_map(store: PropertyStore, key: str) -> dict[str, Any]:
    """
    Parse a JSON-object property. Malformed state is reset to {} and logged,
    never propagated.
    """
    raw = store.get(key)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
        if not isinstance(value, dict):
            raise StateParseFault(reason=f"Property '{key}' is not a JSON object")
        return value
    except (ValueError, StateParseFault) as e:
        logger.error("ERROR parsing property '%s': %s; resetting to empty", key, getattr(e, "reason", e))
        return {}


def save_json_map(store: PropertyStore, key: str, value: dict[str, Any]) -> None:
    store.set(key, json.dumps(value, sort_keys=True))
