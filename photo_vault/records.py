"""Photo and note records as held in the local snapshot."""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone

IMMUTABLE_FIELDS = {"id", "created_at"}


@dataclass(frozen=True)
class Photo:
    id: str
    image_url: str = ""
    created_at: str = ""
    owner_id: str | None = None
    storage_path: str | None = None
    source_url: str | None = None
    caption: str | None = None
    tags: list[str] | None = None
    colors: list[str] | None = None
    content_type: str | None = None
    domain_tags: list[str] | None = None
    has_people: bool | None = None
    people_count: int | None = None
    is_screenshot: bool | None = None
    vibe_tags: list[str] | None = None
    embedding: list[float] | None = field(default=None, repr=False)


@dataclass(frozen=True)
class Note:
    id: str
    body: str = ""
    created_at: str = ""
    owner_id: str | None = None


@dataclass(frozen=True)
class FeedItem:
    kind: str  # "photo" | "note"
    created_at: str
    record: Photo | Note

    @classmethod
    def of(cls, record: Photo | Note) -> "FeedItem":
        kind = "note" if isinstance(record, Note) else "photo"
        return cls(kind=kind, created_at=record.created_at, record=record)


PHOTO_FIELDS = tuple(f.name for f in fields(Photo))
NOTE_FIELDS = tuple(f.name for f in fields(Note))


def photo_from_row(row: dict) -> Photo:
    return Photo(**{k: v for k, v in row.items() if k in PHOTO_FIELDS})


def note_from_row(row: dict) -> Note:
    return Note(**{k: v for k, v in row.items() if k in NOTE_FIELDS})


def photo_to_dict(photo: Photo, include_embedding: bool = False) -> dict:
    data = {name: getattr(photo, name) for name in PHOTO_FIELDS}
    if not include_embedding:
        data.pop("embedding")
    return data


def _is_empty(value) -> bool:
    return value is None or value == "" or value == []


def merge_photo(photo: Photo, row: dict) -> Photo:
    """Overwrite fields of photo with the non-empty values in row.

    Missing, null, empty-string and empty-list values never erase what the
    photo already holds.
    """
    changes = {
        k: v
        for k, v in row.items()
        if k in PHOTO_FIELDS and k not in IMMUTABLE_FIELDS and not _is_empty(v)
    }
    if not changes:
        return photo
    return replace(photo, **changes)


def is_pending(photo: Photo) -> bool:
    """A photo awaits enrichment while it has neither caption nor tags."""
    has_caption = bool(photo.caption and photo.caption.strip())
    has_tags = bool(photo.tags)
    return not has_caption and not has_tags


def searchable_tokens(photo: Photo) -> list[str]:
    tokens = [
        photo.caption or "",
        *(photo.tags or []),
        *(photo.colors or []),
        photo.content_type or "",
        *(photo.domain_tags or []),
        *(photo.vibe_tags or []),
        "people" if photo.has_people else "",
        "screenshot" if photo.is_screenshot else "",
    ]
    return [t.lower() for t in tokens if t]


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


def parse_created_at(created_at: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    dt = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def created_ts(record: Photo | Note | FeedItem) -> float:
    if not record.created_at:
        return 0.0
    try:
        return parse_created_at(record.created_at).timestamp()
    except ValueError:
        return 0.0


def date_renderings(created_at: str) -> tuple[str, str]:
    """Short and long human renderings, e.g. ("Mar 5, 2024", "March 5, 2024")."""
    try:
        dt = parse_created_at(created_at)
    except ValueError:
        return "", ""
    return f"{dt:%b} {dt.day}, {dt.year}", f"{dt:%B} {dt.day}, {dt.year}"


def haystack(photo: Photo) -> str:
    short_date, long_date = date_renderings(photo.created_at)
    return " ".join([*searchable_tokens(photo), long_date, short_date]).lower()


def newest_first(records: list) -> list:
    """Stable sort by created_at, newest first."""
    return sorted(records, key=created_ts, reverse=True)
