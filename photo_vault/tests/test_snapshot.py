import sys
from dataclasses import MISSING, fields
from pathlib import Path
from types import MappingProxyType

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from records import Note, Photo
from snapshot import (
    Snapshot,
    VaultState,
    with_note,
    with_photos_inserted,
    with_photos_merged,
    without_photo,
)


def _p(pid, day=1, **kw):
    return Photo(id=pid, created_at=f"2024-01-{day:02d}T00:00:00+00:00", **kw)


def test_insert_is_idempotent():
    state = with_photos_inserted(VaultState(), [_p("a", caption="first")])
    again = with_photos_inserted(state, [_p("a", caption="second")])
    assert again is state
    assert state.photos["a"].caption == "first"


def test_merge_ignores_unknown_ids():
    state = with_photos_inserted(VaultState(), [_p("a")])
    assert with_photos_merged(state, [{"id": "zzz", "caption": "x"}]) is state


def test_merge_applies_successive_rows_for_same_id():
    state = with_photos_inserted(VaultState(), [_p("a")])
    state = with_photos_merged(state, [{"id": "a", "caption": "sky"}, {"id": "a", "tags": ["blue"]}])
    assert state.photos["a"].caption == "sky"
    assert state.photos["a"].tags == ["blue"]


def test_deleted_photo_is_not_resurrected():
    state = with_photos_inserted(VaultState(), [_p("a")])
    state = without_photo(state, "a")
    state = with_photos_inserted(state, [_p("a")])
    assert "a" not in state.photos
    assert "a" in state.deleted


def test_deleted_note_is_not_resurrected():
    snap = Snapshot()
    snap.upsert_note(Note(id="n", body="hi"))
    snap.remove_note("n")
    snap.upsert_note(Note(id="n", body="hi"))
    assert "n" not in snap.state.notes


def test_upsert_note_replaces_body():
    state = with_note(VaultState(), Note(id="n", body="old"))
    state = with_note(state, Note(id="n", body="new"))
    assert state.notes["n"].body == "new"


def test_pending_ids_and_newest():
    state = with_photos_inserted(VaultState(), [_p("a", 1), _p("b", 5, caption="sky")])
    assert state.pending_ids() == ["a"]
    assert state.newest_created_at() == "2024-01-05T00:00:00+00:00"
    assert VaultState().newest_created_at() is None


def test_listeners_fire_only_on_change():
    snap = Snapshot()
    seen = []
    unsubscribe = snap.subscribe(seen.append)
    snap.insert_photos([_p("a")])
    snap.insert_photos([_p("a")])
    assert len(seen) == 1
    unsubscribe()
    snap.insert_photos([_p("b")])
    assert len(seen) == 1


def test_failing_listener_does_not_block_update():
    snap = Snapshot()

    def boom(state):
        raise RuntimeError("listener bug")

    snap.subscribe(boom)
    snap.insert_photos([_p("a")])
    assert "a" in snap.state.photos


def test_reset_clears_tombstones():
    snap = Snapshot()
    snap.insert_photos([_p("a")])
    snap.remove_photo("a")
    snap.reset()
    assert snap.state == VaultState()


def test_default_mappings_are_per_instance_and_read_only():
    defaults = {f.name: f for f in fields(VaultState)}
    assert defaults["photos"].default is MISSING
    assert defaults["notes"].default is MISSING

    state = VaultState()
    assert isinstance(state.photos, MappingProxyType)
    with pytest.raises(TypeError):
        state.photos["a"] = _p("a")
    assert state == VaultState()
