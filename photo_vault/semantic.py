"""Embedding-based search: cosine ranking and the debounced client-side search."""

import asyncio
import logging
from typing import Awaitable, Callable

import numpy as np

from config import SEMANTIC_DEBOUNCE_SECONDS, SEMANTIC_MAX_RESULTS, SEMANTIC_MIN_SCORE
from errors import VaultError

logger = logging.getLogger(__name__)


def cosine_similarity(a, b) -> float:
    """Cosine of two vectors; 0.0 when either has zero magnitude.

    Vectors of different length are compared over their common prefix.
    """
    n = min(len(a), len(b))
    if n == 0:
        return 0.0
    va = np.asarray(a[:n], dtype=np.float64)
    vb = np.asarray(b[:n], dtype=np.float64)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def rank_by_embedding(
    query_vec: list[float],
    rows: list[dict],
    min_score: float = SEMANTIC_MIN_SCORE,
    max_results: int = SEMANTIC_MAX_RESULTS,
) -> list[tuple[dict, float]]:
    """Score rows carrying an "embedding" against query_vec.

    Rows without an embedding are skipped. Keeps scores >= min_score,
    best first, at most max_results.
    """
    scored = [
        (row, cosine_similarity(query_vec, row["embedding"]))
        for row in rows
        if isinstance(row.get("embedding"), list)
    ]
    kept = [(row, score) for row, score in scored if score >= min_score]
    kept.sort(key=lambda x: x[1], reverse=True)
    return kept[:max_results]


SearchFn = Callable[[str], Awaitable[list]]


class DebouncedSearch:
    """Runs search_fn for the latest query only, after a quiet period.

    Each schedule() bumps a generation counter and cancels the pending task.
    A result that arrives for an older generation is dropped.
    """

    def __init__(self, search_fn: SearchFn, delay: float = SEMANTIC_DEBOUNCE_SECONDS):
        self._search_fn = search_fn
        self._delay = delay
        self._generation = 0
        self._task: asyncio.Task | None = None
        self.query: str | None = None
        self.results: list | None = None

    @property
    def generation(self) -> int:
        return self._generation

    def schedule(self, query: str) -> None:
        self._invalidate()
        generation = self._generation
        self._task = asyncio.get_running_loop().create_task(
            self._run(query, generation), name=f"semantic-search-{generation}"
        )

    def clear(self) -> None:
        self._invalidate()

    async def settle(self) -> None:
        """Wait for the pending search (if any) to finish or be cancelled."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    def _invalidate(self) -> None:
        self._generation += 1
        self.query = None
        self.results = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self, query: str, generation: int) -> None:
        await asyncio.sleep(self._delay)
        try:
            results = await self._search_fn(query)
        except VaultError:
            logger.warning("Semantic search failed for %r", query, exc_info=True)
            results = None
        if generation != self._generation:
            logger.debug("Discarding stale semantic results for %r", query)
            return
        self.query = query
        self.results = results
