"""The local snapshot: the client's authoritative copy of a principal's records.

All mutation goes through Snapshot.apply(), which replaces the current
immutable VaultState with fn(state). The event loop is single-threaded, so
an apply() call is atomic with respect to every other producer.
"""

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Mapping

from records import Note, Photo, is_pending, merge_photo, newest_first

logger = logging.getLogger(__name__)


def _empty_mapping() -> Mapping:
    return MappingProxyType({})


@dataclass(frozen=True)
class VaultState:
    photos: Mapping[str, Photo] = field(default_factory=_empty_mapping)
    notes: Mapping[str, Note] = field(default_factory=_empty_mapping)
    deleted: frozenset[str] = frozenset()

    def sorted_photos(self) -> list[Photo]:
        return newest_first(list(self.photos.values()))

    def sorted_notes(self) -> list[Note]:
        return newest_first(list(self.notes.values()))

    def pending_ids(self) -> list[str]:
        return [p.id for p in self.photos.values() if is_pending(p)]

    def newest_created_at(self) -> str | None:
        photos = self.sorted_photos()
        return photos[0].created_at if photos else None


# ---------------------------------------------------------------------------
# State transitions (pure)
# ---------------------------------------------------------------------------


def with_photos_inserted(state: VaultState, photos: list[Photo]) -> VaultState:
    """Add photos whose id is new. Known and deleted ids are left alone."""
    fresh = {
        p.id: p
        for p in photos
        if p.id not in state.photos and p.id not in state.deleted
    }
    if not fresh:
        return state
    return replace(state, photos=MappingProxyType({**state.photos, **fresh}))


def with_photos_merged(state: VaultState, rows: list[dict]) -> VaultState:
    """Field-merge rows into photos already present. Unknown ids are ignored."""
    updated = {}
    for row in rows:
        current = updated.get(row.get("id")) or state.photos.get(row.get("id"))
        if current is None:
            continue
        updated[current.id] = merge_photo(current, row)
    if not updated:
        return state
    return replace(state, photos=MappingProxyType({**state.photos, **updated}))


def with_photo_replaced(state: VaultState, photo: Photo) -> VaultState:
    if photo.id not in state.photos:
        return state
    return replace(state, photos=MappingProxyType({**state.photos, photo.id: photo}))


def without_photo(state: VaultState, photo_id: str) -> VaultState:
    photos = {k: v for k, v in state.photos.items() if k != photo_id}
    return replace(
        state,
        photos=MappingProxyType(photos),
        deleted=state.deleted | {photo_id},
    )


def with_note(state: VaultState, note: Note) -> VaultState:
    if note.id in state.deleted:
        return state
    return replace(state, notes=MappingProxyType({**state.notes, note.id: note}))


def without_note(state: VaultState, note_id: str) -> VaultState:
    notes = {k: v for k, v in state.notes.items() if k != note_id}
    return replace(
        state,
        notes=MappingProxyType(notes),
        deleted=state.deleted | {note_id},
    )


# ---------------------------------------------------------------------------
# Container
# ---------------------------------------------------------------------------


Listener = Callable[[VaultState], None]


class Snapshot:
    def __init__(self, state: VaultState | None = None):
        self._state = state or VaultState()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> VaultState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def apply(self, fn: Callable[[VaultState], VaultState]) -> VaultState:
        new_state = fn(self._state)
        if new_state is self._state:
            return new_state
        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                logger.warning("Snapshot listener failed", exc_info=True)
        return new_state

    # -- named updates --

    def insert_photos(self, photos: list[Photo]) -> VaultState:
        return self.apply(lambda s: with_photos_inserted(s, photos))

    def merge_photos(self, rows: list[dict]) -> VaultState:
        return self.apply(lambda s: with_photos_merged(s, rows))

    def replace_photo(self, photo: Photo) -> VaultState:
        return self.apply(lambda s: with_photo_replaced(s, photo))

    def remove_photo(self, photo_id: str) -> VaultState:
        return self.apply(lambda s: without_photo(s, photo_id))

    def upsert_note(self, note: Note) -> VaultState:
        return self.apply(lambda s: with_note(s, note))

    def remove_note(self, note_id: str) -> VaultState:
        return self.apply(lambda s: without_note(s, note_id))

    def reset(self) -> VaultState:
        return self.apply(lambda s: VaultState())
