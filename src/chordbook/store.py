"""Device-local record store.

A flat key/value map persisted as one JSON document. Keys are namespaced by
entity type (``playbook:<id>``, ``song:<id>``) and every value is a separately
JSON-encoded record, so one unreadable record never takes the rest of the
store down with it.

Usage::

    store = LocalRecordStore.open(Path("~/.chordbook/records.json").expanduser())
    store.set("playbook:", "local_1700000000000", {"_id": "local_1700000000000", ...})
    store.list_all("playbook:")
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from .exceptions import LocalStoreCorruption, LocalStoreError

logger = logging.getLogger(__name__)


class LocalRecordStore:
    """Key/value cache of entity records. ``path=None`` keeps it in memory."""

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path is not None else None
        self._entries: dict[str, object] = {}

    @classmethod
    def open(cls, path: Path | str | None) -> "LocalRecordStore":
        store = cls(path)
        store.load()
        return store

    def load(self) -> None:
        """Read the backing file. A missing file is an empty store.

        Raises LocalStoreError if the file exists but cannot be read as a
        JSON object.
        """
        if self.path is None or not self.path.exists():
            self._entries = {}
            return
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise LocalStoreError(str(self.path), str(exc)) from exc
        try:
            entries = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            raise LocalStoreError(str(self.path), f"not a JSON document ({exc})") from exc
        if not isinstance(entries, dict):
            raise LocalStoreError(str(self.path), "top level is not a JSON object")
        self._entries = entries

    # --- Reads ---

    def get(self, prefix: str, entity_id) -> dict | None:
        key = _key(prefix, entity_id)
        raw = self._entries.get(key)
        if raw is None:
            return None
        try:
            return _decode(key, raw)
        except LocalStoreCorruption as exc:
            logger.warning("Ignoring %s", exc)
            return None

    def keys(self, prefix: str) -> list[str]:
        return [key for key in self._entries if key.startswith(prefix)]

    def list_all(self, prefix: str) -> list[dict]:
        """Every readable record under *prefix*; corrupt ones are skipped."""
        records = []
        for key in self.keys(prefix):
            try:
                records.append(_decode(key, self._entries[key]))
            except LocalStoreCorruption as exc:
                logger.warning("Skipping %s", exc)
        return records

    # --- Writes (each one flushes to disk) ---

    def set(self, prefix: str, entity_id, record: dict) -> None:
        entries = dict(self._entries)
        entries[_key(prefix, entity_id)] = json.dumps(record)
        self._commit(entries)

    def remove(self, prefix: str, entity_id) -> None:
        key = _key(prefix, entity_id)
        if key not in self._entries:
            return
        entries = dict(self._entries)
        del entries[key]
        self._commit(entries)

    def replace(self, prefix: str, old_id, new_id, record: dict) -> None:
        """Drop the entry under *old_id* and write *record* under *new_id* in one flush."""
        entries = dict(self._entries)
        entries.pop(_key(prefix, old_id), None)
        entries[_key(prefix, new_id)] = json.dumps(record)
        self._commit(entries)

    def clear(self, prefix: str) -> int:
        """Remove every entry under *prefix*; returns how many were removed."""
        entries = {key: value for key, value in self._entries.items() if not key.startswith(prefix)}
        removed = len(self._entries) - len(entries)
        if removed:
            self._commit(entries)
        return removed

    def _commit(self, entries: dict[str, object]) -> None:
        # Memory is only updated once the file write succeeded.
        if self.path is not None:
            self._write(entries)
        self._entries = entries

    def _write(self, entries: dict[str, object]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        except OSError as exc:
            raise LocalStoreError(str(self.path), str(exc)) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(entries, fh)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise LocalStoreError(str(self.path), str(exc)) from exc


def _key(prefix: str, entity_id) -> str:
    return f"{prefix}{entity_id}"


def _decode(key: str, raw: object) -> dict:
    if not isinstance(raw, str):
        raise LocalStoreCorruption(key, "value is not an encoded record")
    try:
        record = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LocalStoreCorruption(key, str(exc)) from exc
    if not isinstance(record, dict):
        raise LocalStoreCorruption(key, "record is not a JSON object")
    return record
