"""Merging matcher outputs into the feed shown to the user."""

from records import FeedItem, Note, Photo, created_ts, newest_first
from text_match import ParsedQuery, QueryMode


def dedupe(*lists: list[Photo]) -> list[Photo]:
    """Concatenate lists keeping the first occurrence of each id."""
    seen: set[str] = set()
    ordered: list[Photo] = []
    for photos in lists:
        for photo in photos:
            if photo.id in seen:
                continue
            seen.add(photo.id)
            ordered.append(photo)
    return ordered


def merge_photo_results(
    query: ParsedQuery,
    fuzzy: list[Photo],
    fallback: list[Photo],
    semantic: list[Photo] | None,
) -> list[Photo]:
    """Pick the candidate set by query mode, then order it by recency."""
    if query.mode is QueryMode.EXACT:
        return newest_first(fallback)
    if semantic:
        return newest_first(dedupe(semantic))
    if fuzzy:
        return newest_first(dedupe(fuzzy, fallback))
    return newest_first(fallback)


def sort_feed(items: list[FeedItem], pinned: set[str]) -> list[FeedItem]:
    """Pinned notes first, then newest first. Stable."""
    def key(item: FeedItem):
        is_pinned = item.kind == "note" and item.record.id in pinned
        return (0 if is_pinned else 1, -created_ts(item))

    return sorted(items, key=key)


def build_feed(
    query: ParsedQuery,
    photos: list[Photo],
    notes: list[Note],
    pinned: set[str],
    fuzzy: list[Photo] | None = None,
    fallback: list[Photo] | None = None,
    semantic: list[Photo] | None = None,
    note_hits: list[Note] | None = None,
) -> list[FeedItem]:
    if query.mode is QueryMode.NONE:
        items = [FeedItem.of(n) for n in notes] + [FeedItem.of(p) for p in photos]
        return sort_feed(items, pinned)

    if query.mode is QueryMode.NOTE:
        return sort_feed([FeedItem.of(n) for n in note_hits or []], pinned)

    merged = merge_photo_results(query, fuzzy or [], fallback or [], semantic)
    return [FeedItem.of(p) for p in merged]


def resolve_against(semantic: list[Photo], current: dict[str, Photo], deleted: set[str]) -> list[Photo]:
    """Swap server rows for the snapshot's copies and drop deleted ids."""
    return [current.get(p.id, p) for p in semantic if p.id not in deleted]
