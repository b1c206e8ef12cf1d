from dataclasses import dataclass

from .exceptions import UnknownCollectionError
from .models import Entity, Playbook, Song


@dataclass(frozen=True)
class Collection:
    """One entity type: its local key prefix, its REST path and its model."""

    name: str
    prefix: str
    path: str
    model: type[Entity]


PLAYBOOKS = Collection(name="playbook", prefix="playbook:", path="/playbooks", model=Playbook)
SONGS = Collection(name="song", prefix="song:", path="/songs", model=Song)

# Replay order: playbooks first, then the songs they reference.
COLLECTIONS: list[Collection] = [
    PLAYBOOKS,
    SONGS,
]


def get_collection(name: str) -> Collection:
    """Return the collection called *name* (singular or plural).

    Raises UnknownCollectionError if nothing matches.
    """
    for collection in COLLECTIONS:
        if name.lower() in (collection.name, f"{collection.name}s"):
            return collection
    raise UnknownCollectionError(name)
