"""Client-side vault: snapshot, reconciliation, search and user actions.

One Vault serves one signed-in principal at a time. Signing in loads the
snapshot and starts reconciliation; signing out tears both down.
User actions raise VaultError with a message meant for the user; nothing
they raise reaches the reconciler or the matchers.
"""

import asyncio
import logging
import re
import time
from typing import Callable

from auth import Session
from client import VaultClient
from config import NOTES_TABLE, PHOTOS_TABLE, POLL_INTERVAL_SECONDS, SEMANTIC_DEBOUNCE_SECONDS
from errors import DependencyError, VaultError
from merge import build_feed, resolve_against
from pins import PinSet
from reconcile import Reconciler
from records import (
    FeedItem,
    Note,
    Photo,
    is_pending,
    merge_photo,
    note_from_row,
    photo_from_row,
    photo_to_dict,
)
from semantic import DebouncedSearch
from snapshot import Snapshot
from text_match import QueryMode, fuzzy_matches, match_notes, parse_query, substring_matches

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def storage_name(filename: str, now: float | None = None) -> str:
    """Unique blob path for an upload: '<ms>-<sanitized name>'."""
    millis = int((now if now is not None else time.time()) * 1000)
    safe = _UNSAFE_NAME.sub("-", filename.rsplit("/", 1)[-1]).strip("-.") or "upload"
    return f"{millis}-{safe}"


def normalize_tags(tags: list[str]) -> list[str]:
    seen: list[str] = []
    for tag in tags:
        value = tag.strip().lower()
        if value and value not in seen:
            seen.append(value)
    return seen


class Vault:
    def __init__(
        self,
        client: VaultClient,
        session: Session,
        pins: PinSet,
        snapshot: Snapshot | None = None,
        is_visible: Callable[[], bool] | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        debounce: float = SEMANTIC_DEBOUNCE_SECONDS,
    ):
        self._client = client
        self._session = session
        self._pins = pins
        self._is_visible = is_visible
        self._poll_interval = poll_interval
        self.snapshot = snapshot or Snapshot()
        self._reconciler: Reconciler | None = None
        self._sign_out_task: asyncio.Task | None = None
        self._semantic = DebouncedSearch(self._semantic_lookup, delay=debounce)
        self._query = parse_query("")
        self._unsubscribe = session.on_session_change(self._on_session_change)

    # -- lifecycle --

    async def _on_session_change(self, principal_id: str | None) -> None:
        await self._teardown()
        if principal_id is not None:
            await self._open()

    async def _open(self) -> None:
        self._reconciler = Reconciler(
            self.snapshot,
            self._client,
            interval=self._poll_interval,
            is_visible=self._is_visible,
            on_auth_lost=self._on_auth_lost,
        )
        await self._reconciler.load_initial()
        await self._reconciler.start()

    async def _teardown(self) -> None:
        self._semantic.clear()
        self._query = parse_query("")
        if self._reconciler is not None:
            await self._reconciler.stop()
            self._reconciler = None
        self.snapshot.reset()

    async def close(self) -> None:
        self._unsubscribe()
        if self._sign_out_task is not None:
            await asyncio.gather(self._sign_out_task, return_exceptions=True)
        await self._teardown()

    def _on_auth_lost(self) -> None:
        # Called from reconciler tasks that sign-out cancels.
        if self._session.get_session() is None:
            return
        if self._sign_out_task is not None and not self._sign_out_task.done():
            return
        logger.warning("Session expired; signing out")
        self._sign_out_task = asyncio.get_running_loop().create_task(
            self._session.sign_out(), name="sign-out-expired"
        )

    @property
    def reconciler(self) -> Reconciler | None:
        return self._reconciler

    # -- search --

    async def _semantic_lookup(self, query: str) -> list[Photo]:
        owner_id = self._session.require()
        rows = await self._client.semantic_search(query, owner_id)
        try:
            return [photo_from_row(r) for r in rows]
        except (TypeError, KeyError, AttributeError):
            logger.warning("Malformed semantic-search rows for %r", query, exc_info=True)
            return []

    def set_query(self, text: str) -> list[FeedItem]:
        """Change the search string. Must be called from the event loop.

        Text matching is immediate; a free-text query also schedules a
        debounced semantic search whose results show up in later results().
        """
        query = parse_query(text)
        if query == self._query:
            return self.results()
        self._query = query
        if query.wants_semantic and self._session.get_session() is not None:
            self._semantic.schedule(query.raw)
        else:
            self._semantic.clear()
        return self.results()

    async def settle(self) -> None:
        """Wait for the pending semantic search, if any."""
        await self._semantic.settle()

    def results(self) -> list[FeedItem]:
        state = self.snapshot.state
        query = self._query
        photos = state.sorted_photos()
        notes = state.sorted_notes()
        pinned = self._pins.ids

        if query.mode is QueryMode.NONE:
            return build_feed(query, photos, notes, pinned)
        if query.mode is QueryMode.NOTE:
            return build_feed(query, photos, notes, pinned, note_hits=match_notes(query.term, notes))

        semantic = None
        if query.wants_semantic and self._semantic.query == query.raw and self._semantic.results:
            semantic = resolve_against(self._semantic.results, dict(state.photos), set(state.deleted))
        fuzzy = fuzzy_matches(query.term, photos) if query.mode is QueryMode.FREE else []
        return build_feed(
            query,
            photos,
            notes,
            pinned,
            fuzzy=fuzzy,
            fallback=substring_matches(query, photos),
            semantic=semantic,
        )

    # -- photos --

    async def upload_photo(self, data: bytes, filename: str, content_type: str | None = None) -> Photo:
        """Upload -> insert row -> enrich -> add to snapshot.

        Enrichment failure keeps the photo; the pending poll picks up
        whatever the service manages to save later.
        """
        self._session.require()
        path = storage_name(filename)
        try:
            public_url = await self._client.upload(path, data, content_type)
        except DependencyError as exc:
            logger.warning("Upload error", exc_info=True)
            raise VaultError("Error uploading file") from exc

        try:
            row = await self._client.insert(
                PHOTOS_TABLE, {"image_url": public_url, "storage_path": path}
            )
        except DependencyError as exc:
            logger.warning("Insert error", exc_info=True)
            raise VaultError("Error saving photo record") from exc

        photo = photo_from_row(row)
        try:
            analysis = await self._client.analyze_image(public_url, photo.id)
        except DependencyError:
            logger.warning("analyze-image failed for %s; leaving it pending", photo.id, exc_info=True)
        else:
            photo = merge_photo(photo, analysis)

        self.snapshot.insert_photos([photo])
        self.snapshot.merge_photos([photo_to_dict(photo, include_embedding=True)])
        return self.snapshot.state.photos.get(photo.id, photo)

    async def delete_photo(self, photo_id: str) -> None:
        self._session.require()
        photo = self.snapshot.state.photos.get(photo_id)
        try:
            await self._client.delete(PHOTOS_TABLE, photo_id)
        except DependencyError as exc:
            if exc.status_code != 404:
                logger.warning("DB delete error", exc_info=True)
                raise VaultError("Error deleting from database") from exc
        self.snapshot.remove_photo(photo_id)

        if photo is not None and photo.storage_path:
            try:
                await self._client.remove_blobs([photo.storage_path])
            except DependencyError as exc:
                logger.warning("Storage delete error", exc_info=True)
                raise VaultError("Error deleting file from storage") from exc

    async def set_tags(self, photo_id: str, tags: list[str]) -> Photo:
        """Replace a photo's tags, then refresh its embedding (best effort)."""
        self._session.require()
        normalized = normalize_tags(tags)
        try:
            row = await self._client.update(PHOTOS_TABLE, photo_id, {"tags": normalized or None})
        except DependencyError as exc:
            logger.warning("Error updating tags", exc_info=True)
            raise VaultError("Error updating tags") from exc

        # Queued realtime rows predate the edit and would merge removed tags back.
        if self._reconciler is not None:
            await self._reconciler.drain()
        # A user edit replaces the photo outright; merge rules would keep removed tags.
        photo = photo_from_row(row)
        self.snapshot.replace_photo(photo)

        try:
            embedding = await self._client.reembed(photo_id)
        except DependencyError:
            logger.warning("Reembed error for %s", photo_id, exc_info=True)
        else:
            if embedding is not None:
                current = self.snapshot.state.photos.get(photo_id, photo)
                self.snapshot.merge_photos([{"id": current.id, "embedding": embedding}])
        return self.snapshot.state.photos.get(photo_id, photo)

    async def add_tag(self, photo_id: str, tag: str) -> Photo:
        photo = self._photo(photo_id)
        return await self.set_tags(photo_id, [*(photo.tags or []), tag])

    async def remove_tag(self, photo_id: str, tag: str) -> Photo:
        photo = self._photo(photo_id)
        return await self.set_tags(photo_id, [t for t in photo.tags or [] if t != tag])

    def _photo(self, photo_id: str) -> Photo:
        photo = self.snapshot.state.photos.get(photo_id)
        if photo is None:
            raise VaultError(f"No photo with id {photo_id}")
        return photo

    # -- notes --

    async def add_note(self, body: str) -> Note | None:
        self._session.require()
        text = body.strip()
        if not text:
            return None
        try:
            row = await self._client.insert(NOTES_TABLE, {"body": text})
        except DependencyError as exc:
            logger.warning("Error saving note", exc_info=True)
            raise VaultError("Error saving note") from exc
        note = note_from_row(row)
        self.snapshot.upsert_note(note)
        return note

    async def update_note(self, note_id: str, body: str) -> Note | None:
        self._session.require()
        text = body.strip()
        if not text:
            return None
        try:
            row = await self._client.update(NOTES_TABLE, note_id, {"body": text})
        except DependencyError as exc:
            logger.warning("Error updating note", exc_info=True)
            raise VaultError("Error updating note") from exc
        note = note_from_row(row)
        self.snapshot.upsert_note(note)
        return note

    async def delete_note(self, note_id: str) -> None:
        self._session.require()
        try:
            await self._client.delete(NOTES_TABLE, note_id)
        except DependencyError as exc:
            if exc.status_code != 404:
                logger.warning("Error deleting note", exc_info=True)
                raise VaultError("Error deleting note") from exc
        self.snapshot.remove_note(note_id)
        self._pins.discard(note_id)

    def toggle_pin(self, note_id: str) -> bool:
        if note_id not in self.snapshot.state.notes:
            raise VaultError(f"No note with id {note_id}")
        return self._pins.toggle(note_id)

    # -- status --

    def status(self) -> dict:
        state = self.snapshot.state
        return {
            "signed_in": self._session.get_session() is not None,
            "photos": len(state.photos),
            "pending": sum(1 for p in state.photos.values() if is_pending(p)),
            "notes": len(state.notes),
            "pinned": len(self._pins.ids & set(state.notes)),
            "reconciling": self._reconciler is not None and self._reconciler.running,
        }
