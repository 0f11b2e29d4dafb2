"""Pinned note ids, persisted as a JSON list. Only affects feed ordering."""

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class PinSet:
    def __init__(self, path: Path):
        self._path = path
        self._ids: list[str] = self._load()

    def _load(self) -> list[str]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Ignoring unreadable pin file %s", self._path)
            return []
        if not isinstance(data, list):
            return []
        return [str(i) for i in data]

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._ids))
        tmp.replace(self._path)

    @property
    def ids(self) -> set[str]:
        return set(self._ids)

    def __contains__(self, note_id: str) -> bool:
        return note_id in self._ids

    def toggle(self, note_id: str) -> bool:
        """Pin or unpin. Returns True if the note is now pinned."""
        if note_id in self._ids:
            self._ids.remove(note_id)
            pinned = False
        else:
            self._ids.append(note_id)
            pinned = True
        self._save()
        return pinned

    def discard(self, note_id: str) -> None:
        if note_id in self._ids:
            self._ids.remove(note_id)
            self._save()
