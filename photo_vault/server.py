"""Thin MCP server for photo-vault.

Hosts one Vault for the principal behind PHOTO_VAULT_TOKEN and delegates
storage and captioning to the photo-vault service over HTTP.
"""

import json
import logging
import mimetypes
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from auth import Session
from client import VaultClient
from config import ACCESS_TOKEN, PINS_FILE
from errors import VaultError
from pins import PinSet
from records import FeedItem, Note, is_pending
from vault import Vault

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20

mcp = FastMCP("photo-vault")
client = VaultClient(autostart=True)
session = Session(client)
pins = PinSet(PINS_FILE)
vault = Vault(client, session, pins)


async def _signed_in() -> Vault:
    if session.get_session() is None:
        if not ACCESS_TOKEN:
            raise VaultError("Set PHOTO_VAULT_TOKEN to sign in.")
        await session.sign_in(ACCESS_TOKEN)
    return vault


def _item_summary(item: FeedItem) -> dict:
    record = item.record
    if isinstance(record, Note):
        return {
            "kind": "note",
            "id": record.id,
            "created_at": record.created_at,
            "body": record.body,
            "pinned": record.id in pins,
        }
    return {
        "kind": "photo",
        "id": record.id,
        "created_at": record.created_at,
        "image_url": record.image_url,
        "caption": record.caption or "",
        "tags": record.tags or [],
        "pending": is_pending(record),
    }


@mcp.tool()
async def search(query: str = "", limit: int = DEFAULT_LIMIT) -> str:
    """Search the vault's photos and notes.

    Query forms:
      note: <text>     only notes whose body contains <text>
      "exact phrase"   whole-word phrase match over captions, tags and dates
      anything else    fuzzy + substring + semantic (embedding) search

    An empty query returns the feed: pinned notes first, then newest first.

    Args:
        query: Search string.
        limit: Maximum number of items to return (default 20).
    """
    try:
        v = await _signed_in()
    except VaultError as exc:
        return str(exc)
    v.set_query(query)
    await v.settle()
    items = v.results()[:limit]
    if not items:
        return "Nothing matched."
    return json.dumps([_item_summary(i) for i in items], indent=2)


@mcp.tool()
async def upload_photo(path: str) -> str:
    """Upload an image file to the vault and caption it.

    Args:
        path: Absolute path to a JPEG, PNG, WebP or GIF file.
    """
    file = Path(path).expanduser()
    if not file.is_file():
        return f"No such file: {path}"
    try:
        v = await _signed_in()
        photo = await v.upload_photo(
            file.read_bytes(), file.name, mimetypes.guess_type(file.name)[0]
        )
    except VaultError as exc:
        return str(exc)
    state = "pending captioning" if is_pending(photo) else f"captioned: {photo.caption}"
    return f"Uploaded {photo.id} ({state})."


@mcp.tool()
async def delete_photo(photo_id: str) -> str:
    """Delete a photo and its stored file.

    Args:
        photo_id: Id of the photo, as returned by search.
    """
    try:
        v = await _signed_in()
        await v.delete_photo(photo_id)
    except VaultError as exc:
        return str(exc)
    return f"Deleted photo {photo_id}."


@mcp.tool()
async def add_tag(photo_id: str, tag: str) -> str:
    """Add a tag to a photo. Tags are lower-cased and re-embedded.

    Args:
        photo_id: Id of the photo.
        tag: Tag text.
    """
    try:
        v = await _signed_in()
        photo = await v.add_tag(photo_id, tag)
    except VaultError as exc:
        return str(exc)
    return f"Tags: {', '.join(photo.tags or []) or '(none)'}"


@mcp.tool()
async def remove_tag(photo_id: str, tag: str) -> str:
    """Remove a tag from a photo.

    Args:
        photo_id: Id of the photo.
        tag: The exact tag to remove.
    """
    try:
        v = await _signed_in()
        photo = await v.remove_tag(photo_id, tag)
    except VaultError as exc:
        return str(exc)
    return f"Tags: {', '.join(photo.tags or []) or '(none)'}"


@mcp.tool()
async def add_note(text: str) -> str:
    """Save a text note to the feed.

    Args:
        text: Note body.
    """
    try:
        v = await _signed_in()
        note = await v.add_note(text)
    except VaultError as exc:
        return str(exc)
    if note is None:
        return "Note is empty; nothing saved."
    return f"Saved note {note.id}."


@mcp.tool()
async def edit_note(note_id: str, text: str) -> str:
    """Replace a note's body.

    Args:
        note_id: Id of the note.
        text: New body.
    """
    try:
        v = await _signed_in()
        note = await v.update_note(note_id, text)
    except VaultError as exc:
        return str(exc)
    if note is None:
        return "Note is empty; nothing saved."
    return f"Updated note {note.id}."


@mcp.tool()
async def delete_note(note_id: str) -> str:
    """Delete a note (and unpin it).

    Args:
        note_id: Id of the note.
    """
    try:
        v = await _signed_in()
        await v.delete_note(note_id)
    except VaultError as exc:
        return str(exc)
    return f"Deleted note {note_id}."


@mcp.tool()
async def pin_note(note_id: str) -> str:
    """Toggle a note's pin. Pinned notes sort to the top of the feed.

    Args:
        note_id: Id of the note.
    """
    try:
        v = await _signed_in()
        pinned = v.toggle_pin(note_id)
    except VaultError as exc:
        return str(exc)
    return f"Note {note_id} {'pinned' if pinned else 'unpinned'}."


@mcp.tool()
async def vault_status() -> str:
    """Report counts of photos, pending captions, notes and pins."""
    try:
        v = await _signed_in()
    except VaultError as exc:
        return str(exc)
    s = v.status()
    lines = [
        f"Photos: {s['photos']} ({s['pending']} pending captioning)",
        f"Notes: {s['notes']} ({s['pinned']} pinned)",
        f"Reconciling: {'yes' if s['reconciling'] else 'no'}",
    ]
    return "\n".join(lines)


if __name__ == "__main__":
    mcp.run(transport="stdio")
