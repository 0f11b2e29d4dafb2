"""Keeps the local snapshot in step with the store.

Three producers feed one consumer through an asyncio.Queue:

    realtime push (insert/update)  --\
    new-records poll (every 4s)    ---+-->  queue  -->  consumer  -->  Snapshot.apply
    pending-enrichment poll (4s)   --/

Inserts are idempotent by id and updates are field merges, so the order in
which producers deliver does not matter.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from config import NEW_RECORDS_PAGE_SIZE, NOTES_TABLE, PHOTOS_TABLE, POLL_INTERVAL_SECONDS
from errors import AuthError, DependencyError
from records import note_from_row, photo_from_row
from snapshot import Snapshot, with_note, with_photos_inserted, with_photos_merged

logger = logging.getLogger(__name__)

RowCallback = Callable[[dict], None]
AuthLostCallback = Callable[[], None]


class Subscription(Protocol):
    async def close(self) -> None: ...


class RecordSource(Protocol):
    """The slice of the store the reconciler needs. Rows are owner-scoped."""

    async def select(
        self,
        table: str,
        ids: list[str] | None = None,
        created_after: str | None = None,
        limit: int | None = None,
    ) -> list[dict]: ...

    async def subscribe(
        self,
        table: str,
        on_insert: RowCallback,
        on_update: RowCallback,
        on_auth_lost: AuthLostCallback | None = None,
    ) -> Subscription: ...


@dataclass(frozen=True)
class Change:
    kind: str  # "insert" | "merge"
    rows: list[dict]
    source: str


class Reconciler:
    def __init__(
        self,
        snapshot: Snapshot,
        source: RecordSource,
        interval: float = POLL_INTERVAL_SECONDS,
        is_visible: Callable[[], bool] | None = None,
        page_size: int = NEW_RECORDS_PAGE_SIZE,
        on_auth_lost: AuthLostCallback | None = None,
    ):
        self._snapshot = snapshot
        self._source = source
        self._interval = interval
        self._is_visible = is_visible or (lambda: True)
        self._page_size = page_size
        self._on_auth_lost = on_auth_lost
        self._queue: asyncio.Queue[Change] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._subscription: Subscription | None = None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    # -- lifecycle --

    async def load_initial(self) -> None:
        """Bulk-load photos and notes. Failures leave the snapshot as it was."""
        try:
            photo_rows = await self._source.select(PHOTOS_TABLE)
        except DependencyError:
            logger.warning("Error loading photos", exc_info=True)
        else:
            self.apply(Change("insert", photo_rows, "initial"))
            logger.info("Loaded %d photos", len(photo_rows))

        try:
            note_rows = await self._source.select(NOTES_TABLE)
        except DependencyError:
            logger.warning("Error loading notes", exc_info=True)
        else:
            notes = [note_from_row(r) for r in note_rows]

            def add_notes(state):
                for note in notes:
                    state = with_note(state, note)
                return state

            self._snapshot.apply(add_notes)
            logger.info("Loaded %d notes", len(notes))

    async def start(self) -> None:
        if self._tasks:
            return
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._consume(), name="reconcile-consumer"),
            loop.create_task(self._every(self.poll_new_once), name="poll-new"),
            loop.create_task(self._every(self.poll_pending_once), name="poll-pending"),
        ]
        try:
            self._subscription = await self._source.subscribe(
                PHOTOS_TABLE,
                on_insert=self._on_insert,
                on_update=self._on_update,
                on_auth_lost=self._auth_lost,
            )
        except AuthError:
            self._auth_lost()
        except DependencyError:
            logger.warning("Realtime subscription failed; relying on polls", exc_info=True)

    async def stop(self) -> None:
        """Cancel polls and the consumer, close the realtime channel."""
        if self._subscription is not None:
            try:
                await self._subscription.close()
            except DependencyError:
                logger.debug("Error closing realtime subscription", exc_info=True)
            self._subscription = None
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # Anything still queued belongs to the torn-down scope.
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every submitted change has been applied."""
        await self._queue.join()

    # -- consumer --

    def submit(self, change: Change) -> None:
        if change.rows:
            self._queue.put_nowait(change)

    def apply(self, change: Change) -> None:
        """Single entry point through which every producer's rows land."""
        if change.kind == "insert":
            photos = [photo_from_row(r) for r in change.rows]
            before = len(self._snapshot.state.photos)
            state = self._snapshot.apply(lambda s: with_photos_inserted(s, photos))
            added = len(state.photos) - before
            if added:
                logger.info("Added %d photo(s) from %s", added, change.source)
        elif change.kind == "merge":
            self._snapshot.apply(lambda s: with_photos_merged(s, change.rows))
        else:
            raise ValueError(f"Unknown change kind: {change.kind}")

    async def _consume(self) -> None:
        while True:
            change = await self._queue.get()
            try:
                self.apply(change)
            except Exception:
                logger.warning("Failed to apply %s change from %s", change.kind, change.source, exc_info=True)
            finally:
                self._queue.task_done()

    # -- producers --

    def _auth_lost(self) -> None:
        """The store rejected the session. Polls keep ticking until stopped."""
        logger.warning("Store rejected the session")
        if self._on_auth_lost is not None:
            self._on_auth_lost()

    def _on_insert(self, row: dict) -> None:
        self.submit(Change("insert", [row], "realtime"))

    def _on_update(self, row: dict) -> None:
        self.submit(Change("merge", [row], "realtime"))

    async def poll_new_once(self) -> None:
        """Fetch photos created after the newest one held locally."""
        if not self._is_visible():
            return
        latest = self._snapshot.state.newest_created_at()
        rows = await self._source.select(
            PHOTOS_TABLE, created_after=latest, limit=self._page_size
        )
        known = self._snapshot.state.photos
        self.submit(Change("insert", [r for r in rows if r.get("id") not in known], "new-poll"))

    async def poll_pending_once(self) -> None:
        """Re-fetch every photo still awaiting enrichment and merge it."""
        pending = self._snapshot.state.pending_ids()
        if not pending:
            return
        rows = await self._source.select(PHOTOS_TABLE, ids=pending)
        self.submit(Change("merge", rows, "enrichment-poll"))

    async def _every(self, poll: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await poll()
            except AuthError:
                self._auth_lost()
            except DependencyError:
                logger.warning("%s failed; retrying next tick", poll.__name__, exc_info=True)
