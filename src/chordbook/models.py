"""Playbooks, songs and chord charts, plus their JSON codecs.

Every entity has two JSON shapes:

* the *wire* shape exchanged with the playbook server (camelCase keys, the
  server id under ``_id``), and
* the *record* shape kept in the local store: the wire shape plus the
  local-only ``syncStatus`` and ``markedForDeletion`` fields.

Local-only fields never appear in the wire shape.
"""

import time
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum

from .chords import CHORD_INTERVALS, CHORD_QUALITIES, CHORD_ROOTS, KEY_OPTIONS

LOCAL_ID_PREFIX = "local_"

# Python attribute -> wire key, where they differ.
_WIRE_NAMES = {
    "owner_id": "userId",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}

# Attributes an update may not touch.
_PROTECTED = frozenset({"id", "sync_status", "marked_for_deletion", "created_at", "updated_at"})


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


@dataclass(frozen=True)
class LocalId:
    """Temporary id minted on the device for a record the server has not seen."""

    token: str

    def __str__(self) -> str:
        return f"{LOCAL_ID_PREFIX}{self.token}"


@dataclass(frozen=True)
class RemoteId:
    """Authoritative id assigned by the server."""

    value: str

    def __str__(self) -> str:
        return self.value


EntityId = LocalId | RemoteId


def parse_id(raw: str) -> EntityId:
    """Turn a stored or user-supplied id string back into an :data:`EntityId`."""
    if raw.startswith(LOCAL_ID_PREFIX):
        return LocalId(raw[len(LOCAL_ID_PREFIX):])
    return RemoteId(raw)


def as_id(value: "EntityId | str") -> EntityId:
    if isinstance(value, (LocalId, RemoteId)):
        return value
    return parse_id(str(value))


class LocalIdFactory:
    """Mint ``local_<millis>`` ids.

    Two ids minted within the same millisecond would collide, so the counter
    is bumped past the last value handed out.
    """

    def __init__(self, clock=time.time):
        self._clock = clock
        self._last = 0

    def __call__(self) -> LocalId:
        millis = int(self._clock() * 1000)
        if millis <= self._last:
            millis = self._last + 1
        self._last = millis
        return LocalId(str(millis))


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _node_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Chart structure
# ---------------------------------------------------------------------------


@dataclass
class Chord:
    """One chord symbol on a chart line, e.g. C min 7 over G."""

    root: str
    quality: str = "maj"
    interval: str = "none"
    timing: int | None = None  # beats
    bass: str | None = None  # slash chords

    def __post_init__(self):
        if self.root not in CHORD_ROOTS:
            raise ValueError(f"Unknown chord root: {self.root!r}")
        if self.quality not in CHORD_QUALITIES:
            raise ValueError(f"Unknown chord quality: {self.quality!r}")
        if self.interval not in CHORD_INTERVALS:
            raise ValueError(f"Unknown chord interval: {self.interval!r}")
        if self.bass is not None and self.bass not in CHORD_ROOTS:
            raise ValueError(f"Unknown bass note: {self.bass!r}")
        if self.timing is not None and (
            isinstance(self.timing, bool) or not isinstance(self.timing, int) or self.timing < 1
        ):
            raise ValueError(f"Chord timing must be a positive beat count, got {self.timing!r}")

    def to_wire(self) -> dict:
        data = {"root": self.root, "quality": self.quality, "interval": self.interval}
        if self.timing is not None:
            data["timing"] = self.timing
        if self.bass is not None:
            data["bass"] = self.bass
        return data

    @classmethod
    def from_wire(cls, data: dict) -> "Chord":
        return cls(
            root=data["root"],
            quality=data.get("quality", "maj"),
            interval=data.get("interval", "none"),
            timing=data.get("timing"),
            bass=data.get("bass"),
        )


@dataclass
class Line:
    """One notated line of a chart."""

    chords: list[Chord] = field(default_factory=list)
    id: str = field(default_factory=_node_id)

    def to_wire(self) -> dict:
        return {"_id": self.id, "chords": [chord.to_wire() for chord in self.chords]}

    @classmethod
    def from_wire(cls, data: dict) -> "Line":
        return cls(
            id=str(data.get("_id") or _node_id()),
            chords=[Chord.from_wire(chord) for chord in data.get("chords", [])],
        )


@dataclass
class Section:
    """A named part of a song (Verse, Chorus, ...)."""

    name: str
    lines: list[Line] = field(default_factory=list)
    id: str = field(default_factory=_node_id)

    def to_wire(self) -> dict:
        return {"_id": self.id, "name": self.name, "lines": [line.to_wire() for line in self.lines]}

    @classmethod
    def from_wire(cls, data: dict) -> "Section":
        return cls(
            id=str(data.get("_id") or _node_id()),
            name=data["name"],
            lines=[Line.from_wire(line) for line in data.get("lines", [])],
        )


# ---------------------------------------------------------------------------
# Synced entities
# ---------------------------------------------------------------------------


@dataclass(kw_only=True)
class Entity:
    """Fields shared by every record that is mirrored between device and server."""

    id: EntityId
    owner_id: str
    sync_status: SyncStatus = SyncStatus.PENDING
    marked_for_deletion: bool = False
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @property
    def is_local(self) -> bool:
        return isinstance(self.id, LocalId)

    def _encode_body(self, record: bool) -> dict:
        raise NotImplementedError

    @classmethod
    def _decode_body(cls, data: dict, record: bool) -> dict:
        raise NotImplementedError

    def to_wire(self, include_id: bool = True) -> dict:
        """Server body. ``_id`` is only ever a server id."""
        data = {}
        if include_id and isinstance(self.id, RemoteId):
            data["_id"] = self.id.value
        data["userId"] = self.owner_id
        data.update(self._encode_body(record=False))
        data["createdAt"] = self.created_at
        data["updatedAt"] = self.updated_at
        return data

    def to_record(self) -> dict:
        data = {"_id": str(self.id), "userId": self.owner_id}
        data.update(self._encode_body(record=True))
        data["createdAt"] = self.created_at
        data["updatedAt"] = self.updated_at
        data["syncStatus"] = self.sync_status.value
        data["markedForDeletion"] = self.marked_for_deletion
        return data

    @classmethod
    def from_wire(cls, data: dict):
        """Build an entity from a server body; server data is synced by definition."""
        return cls(
            id=RemoteId(str(data["_id"])),
            sync_status=SyncStatus.SYNCED,
            **_decode_common(data),
            **cls._decode_body(data, record=False),
        )

    @classmethod
    def from_record(cls, data: dict):
        return cls(
            id=parse_id(str(data["_id"])),
            sync_status=SyncStatus(data.get("syncStatus", SyncStatus.PENDING.value)),
            marked_for_deletion=bool(data.get("markedForDeletion", False)),
            **_decode_common(data),
            **cls._decode_body(data, record=True),
        )


def _decode_common(data: dict) -> dict:
    now = utc_now()
    return {
        "owner_id": str(data.get("userId") or ""),
        "created_at": data.get("createdAt") or now,
        "updated_at": data.get("updatedAt") or now,
    }


@dataclass(kw_only=True)
class Song(Entity):
    title: str
    key: str = "C"
    sections: list[Section] = field(default_factory=list)

    def __post_init__(self):
        if self.key not in KEY_OPTIONS:
            raise ValueError(f"Unknown song key: {self.key!r}")

    def _encode_body(self, record: bool) -> dict:
        return {
            "title": self.title,
            "key": self.key,
            "sections": [section.to_wire() for section in self.sections],
        }

    @classmethod
    def _decode_body(cls, data: dict, record: bool) -> dict:
        return {
            "title": data["title"],
            "key": data.get("key") or "C",
            "sections": [Section.from_wire(section) for section in data.get("sections", [])],
        }


# A playbook entry is either a bare song id or a full song embedded in place.
SongRef = LocalId | RemoteId | Song


def ref_id(ref: SongRef) -> EntityId:
    return ref.id if isinstance(ref, Song) else ref


@dataclass(kw_only=True)
class Playbook(Entity):
    name: str
    description: str | None = None
    songs: list[SongRef] = field(default_factory=list)

    def _encode_body(self, record: bool) -> dict:
        data = {"name": self.name}
        if self.description is not None:
            data["description"] = self.description
        data["songs"] = [_encode_ref(ref, record) for ref in self.songs]
        return data

    @classmethod
    def _decode_body(cls, data: dict, record: bool) -> dict:
        return {
            "name": data["name"],
            "description": data.get("description"),
            "songs": [_decode_ref(raw, record) for raw in data.get("songs", [])],
        }


def _encode_ref(ref: SongRef, record: bool):
    if isinstance(ref, Song):
        if record:
            return ref.to_record()
        # The server cannot hold a song it has no id for; send the local id
        # and let the sync service rewrite it once the song is created.
        if ref.is_local:
            return str(ref.id)
        return ref.to_wire()
    return str(ref)


def _decode_ref(raw, record: bool) -> SongRef:
    if isinstance(raw, dict):
        return Song.from_record(raw) if record else Song.from_wire(raw)
    return parse_id(str(raw))


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------


def check_changes(model: type[Entity], changes: dict) -> None:
    """Raise ValueError unless *changes* only names editable attributes of *model*."""
    protected = _PROTECTED.intersection(changes)
    if protected:
        raise ValueError(f"Cannot change {', '.join(sorted(protected))}")
    known = {f.name for f in fields(model)}
    unknown = set(changes) - known
    if unknown:
        raise ValueError(f"Unknown {model.__name__} fields: {', '.join(sorted(unknown))}")


def apply_changes(entity: Entity, changes: dict, now: str) -> Entity:
    """Shallow-merge *changes* into a copy of *entity* and mark it pending.

    Lists (``sections``, ``songs``) are replaced wholesale, never merged.
    """
    check_changes(type(entity), changes)
    return replace(entity, **changes, updated_at=now, sync_status=SyncStatus.PENDING)


def wire_patch(changes: dict) -> dict:
    """Encode an attribute-name keyed change set as a partial server body."""
    return {_WIRE_NAMES.get(name, name): _encode_value(value) for name, value in changes.items()}


def _encode_value(value):
    if isinstance(value, list):
        return [_encode_value(item) for item in value]
    if isinstance(value, Song):
        return _encode_ref(value, record=False)
    if isinstance(value, (Chord, Line, Section, Entity)):
        return value.to_wire()
    if isinstance(value, (LocalId, RemoteId)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value
