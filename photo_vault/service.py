"""HTTP service for photo-vault.

Owns the relational store, the blob store, the token registry and the
captioning backend. Vault clients talk to it over HTTP only.

    uv run python service.py

Every route except /health, /session and /save-remote-photo needs an
"Authorization: Bearer <token>" header; rows are scoped to the token's owner.
"""

import asyncio
import json
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass

import httpx
from openai import OpenAIError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.routing import Mount, Route
from starlette.staticfiles import StaticFiles

from auth import TokenRegistry
from blobs import FILES_ROUTE, BlobError, BlobStore, guess_extension
from captioning import Captioner, ImageAnalysis, describe, describe_row
from config import (
    BLOBS_DIR,
    DB_FILE,
    PHOTOS_TABLE,
    REMOTE_FETCH_TIMEOUT,
    SERVICE_HOST,
    SERVICE_PID_FILE,
    SERVICE_PORT,
    TOKENS_FILE,
)
from semantic import rank_by_embedding
from store import RecordStore

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}
SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@dataclass
class Services:
    store: RecordStore
    blobs: BlobStore
    tokens: TokenRegistry
    captioner: Captioner
    http: httpx.AsyncClient


def _services(request: Request) -> Services:
    return request.app.state.services


def _owner(request: Request) -> str | None:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return None
    return _services(request).tokens.owner_for_token(token)


_UNAUTHORIZED = PlainTextResponse("Not signed in", status_code=401)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _without_embedding(row: dict) -> dict:
    return {k: v for k, v in row.items() if k != "embedding"}


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------


async def enrich_photo(
    services: Services,
    photo_id: str,
    image_url: str,
    owner_id: str,
    caption_override: str | None = None,
) -> tuple[ImageAnalysis, dict | None]:
    """Caption, tag and embed a photo, then persist the fields.

    Captioning errors propagate. A failed embedding is logged and stored as
    null so the rest of the analysis still lands.
    """
    image_ref = await asyncio.to_thread(services.blobs.data_url, image_url)
    analysis = await asyncio.to_thread(services.captioner.analyze, image_ref)
    if caption_override:
        analysis.caption = caption_override

    try:
        analysis.embedding = await asyncio.to_thread(
            services.captioner.embed, describe(analysis)
        )
    except (OpenAIError, ValueError):
        logger.warning("Embedding failed for photo %s", photo_id, exc_info=True)

    row = await asyncio.to_thread(
        services.store.update, PHOTOS_TABLE, photo_id, analysis.to_fields(), owner_id
    )
    if row is None:
        logger.warning("Photo %s vanished before enrichment was saved", photo_id)
    return analysis, row


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"ok": True})


async def session(request: Request) -> Response:
    body = await _json_body(request)
    owner_id = _services(request).tokens.owner_for_token(body.get("token"))
    if owner_id is None:
        return PlainTextResponse("Invalid token", status_code=401)
    return JSONResponse({"owner_id": owner_id})


async def list_rows(request: Request) -> Response:
    owner_id = _owner(request)
    if owner_id is None:
        return _UNAUTHORIZED
    params = request.query_params
    ids = params["ids"].split(",") if "ids" in params else None
    try:
        limit = int(params["limit"]) if "limit" in params else None
        rows = await asyncio.to_thread(
            _services(request).store.select,
            request.path_params["table"],
            owner_id,
            ids,
            params.get("after") or None,
            limit,
        )
    except ValueError as exc:
        return PlainTextResponse(str(exc), status_code=400)
    return JSONResponse(rows)


async def insert_row(request: Request) -> Response:
    owner_id = _owner(request)
    if owner_id is None:
        return _UNAUTHORIZED
    body = await _json_body(request)
    body["owner_id"] = owner_id
    try:
        row = await asyncio.to_thread(
            _services(request).store.insert, request.path_params["table"], body
        )
    except ValueError as exc:
        return PlainTextResponse(str(exc), status_code=400)
    except Exception:
        logger.warning("Insert failed", exc_info=True)
        return PlainTextResponse("Error inserting row", status_code=500)
    return JSONResponse(row, status_code=201)


async def update_row(request: Request) -> Response:
    owner_id = _owner(request)
    if owner_id is None:
        return _UNAUTHORIZED
    body = await _json_body(request)
    try:
        row = await asyncio.to_thread(
            _services(request).store.update,
            request.path_params["table"],
            request.path_params["row_id"],
            body,
            owner_id,
        )
    except ValueError as exc:
        return PlainTextResponse(str(exc), status_code=400)
    if row is None:
        return PlainTextResponse("Not found", status_code=404)
    return JSONResponse(row)


async def delete_row(request: Request) -> Response:
    owner_id = _owner(request)
    if owner_id is None:
        return _UNAUTHORIZED
    try:
        deleted = await asyncio.to_thread(
            _services(request).store.delete,
            request.path_params["table"],
            request.path_params["row_id"],
            owner_id,
        )
    except ValueError as exc:
        return PlainTextResponse(str(exc), status_code=400)
    if not deleted:
        return PlainTextResponse("Not found", status_code=404)
    return JSONResponse({"ok": True})


async def changes(request: Request) -> Response:
    """SSE feed of inserts and updates to the caller's rows in one table."""
    owner_id = _owner(request)
    if owner_id is None:
        return _UNAUTHORIZED
    table = request.path_params["table"]
    store = _services(request).store
    queue: asyncio.Queue = asyncio.Queue()
    loop = asyncio.get_running_loop()

    def on_change(changed_table: str, event: str, row: dict) -> None:
        if changed_table == table and row.get("owner_id") == owner_id:
            loop.call_soon_threadsafe(queue.put_nowait, {"event": event, "row": row})

    remove = store.listen(on_change)

    async def generate():
        try:
            yield ": connected\n\n"
            while True:
                item = await queue.get()
                yield f"data: {json.dumps(item)}\n\n"
        finally:
            remove()

    return StreamingResponse(generate(), media_type="text/event-stream", headers=SSE_HEADERS)


async def upload(request: Request) -> Response:
    owner_id = _owner(request)
    if owner_id is None:
        return _UNAUTHORIZED
    path = request.headers.get("x-path", "").strip()
    if not path:
        return PlainTextResponse("Missing X-Path header", status_code=400)
    data = await request.body()
    blobs = _services(request).blobs
    try:
        await asyncio.to_thread(blobs.upload, path, data, request.headers.get("content-type"))
    except BlobError as exc:
        return PlainTextResponse(str(exc), status_code=400)
    return JSONResponse({"path": path, "public_url": blobs.public_url(path)}, status_code=201)


async def remove_blobs(request: Request) -> Response:
    if _owner(request) is None:
        return _UNAUTHORIZED
    body = await _json_body(request)
    try:
        removed = await asyncio.to_thread(_services(request).blobs.remove, body.get("paths") or [])
    except BlobError as exc:
        return PlainTextResponse(str(exc), status_code=400)
    return JSONResponse({"removed": removed})


async def analyze_image(request: Request) -> Response:
    owner_id = _owner(request)
    if owner_id is None:
        return _UNAUTHORIZED
    body = await _json_body(request)
    image_url, photo_id = body.get("imageUrl"), body.get("photoId")
    if not image_url or not photo_id:
        return PlainTextResponse("Missing imageUrl or photoId", status_code=400)

    try:
        analysis, _row = await enrich_photo(_services(request), photo_id, image_url, owner_id)
    except Exception:
        logger.warning("analyze-image failed for %s", photo_id, exc_info=True)
        return PlainTextResponse("Error analyzing image", status_code=500)
    return JSONResponse(analysis.to_fields())


async def reembed(request: Request) -> Response:
    owner_id = _owner(request)
    if owner_id is None:
        return _UNAUTHORIZED
    body = await _json_body(request)
    photo_id = body.get("photoId")
    if not photo_id:
        return PlainTextResponse("Missing photoId", status_code=400)

    services = _services(request)
    row = await asyncio.to_thread(services.store.get, PHOTOS_TABLE, photo_id, owner_id)
    if row is None:
        return PlainTextResponse("Photo not found", status_code=404)

    try:
        embedding = await asyncio.to_thread(services.captioner.embed, describe_row(row))
    except (OpenAIError, ValueError):
        logger.warning("reembed failed for %s", photo_id, exc_info=True)
        return PlainTextResponse("Embedding failed", status_code=500)

    updated = await asyncio.to_thread(
        services.store.update, PHOTOS_TABLE, photo_id, {"embedding": embedding}, owner_id
    )
    if updated is None:
        return PlainTextResponse("Failed to save embedding", status_code=500)
    return JSONResponse({"embedding": embedding})


async def semantic_search(request: Request) -> Response:
    caller = _owner(request)
    if caller is None:
        return _UNAUTHORIZED
    body = await _json_body(request)
    text = (body.get("query") or "").strip()
    owner_id = body.get("ownerId")
    if not text:
        return PlainTextResponse("Missing query", status_code=400)
    if not owner_id:
        return PlainTextResponse("Missing ownerId", status_code=400)
    if owner_id != caller:
        return PlainTextResponse("Forbidden", status_code=403)

    services = _services(request)
    try:
        query_vec = await asyncio.to_thread(services.captioner.embed, text)
    except (OpenAIError, ValueError):
        logger.warning("Query embedding failed", exc_info=True)
        return PlainTextResponse("Embedding failed", status_code=500)

    rows = await asyncio.to_thread(services.store.select, PHOTOS_TABLE, owner_id)
    ranked = rank_by_embedding(query_vec, rows)
    logger.info("semantic-search %r: %d of %d photos", text, len(ranked), len(rows))
    return JSONResponse({"photos": [_without_embedding(row) for row, _score in ranked]})


async def save_remote_options(request: Request) -> JSONResponse:
    return JSONResponse({}, headers=CORS_HEADERS)


async def save_remote_photo(request: Request) -> JSONResponse:
    """Save an image from a URL (browser extension entry point)."""
    services = _services(request)
    body = await _json_body(request)
    image_url = body.get("imageUrl")
    if not image_url or not isinstance(image_url, str):
        return JSONResponse({"error": "imageUrl is required"}, status_code=400, headers=CORS_HEADERS)

    owner_id = services.tokens.owner_for_token(body.get("token")) or _owner(request)
    claimed = body.get("ownerId")
    if owner_id is None or (isinstance(claimed, str) and claimed.strip() and claimed != owner_id):
        return JSONResponse(
            {"error": "ownerId or valid token is required"}, status_code=400, headers=CORS_HEADERS
        )

    try:
        remote = await services.http.get(image_url, follow_redirects=True)
    except httpx.HTTPError:
        logger.warning("Failed to fetch remote image %s", image_url, exc_info=True)
        remote = None
    if remote is None or remote.status_code >= 400:
        return JSONResponse({"error": "Failed to fetch remote image"}, status_code=400, headers=CORS_HEADERS)

    content_type = remote.headers.get("content-type", "")
    path = f"remote-{int(time.time() * 1000)}.{guess_extension(content_type)}"
    try:
        await asyncio.to_thread(services.blobs.upload, path, remote.content, content_type or "image/jpeg")
    except BlobError:
        logger.warning("Upload of %s failed", path, exc_info=True)
        return JSONResponse({"error": "Error uploading file to storage"}, status_code=500, headers=CORS_HEADERS)

    public_url = services.blobs.public_url(path)
    note = body.get("note") or None
    try:
        photo = await asyncio.to_thread(
            services.store.insert,
            PHOTOS_TABLE,
            {
                "image_url": public_url,
                "storage_path": path,
                "caption": note,
                "source_url": body.get("sourceUrl") or None,
                "owner_id": owner_id,
            },
        )
    except Exception:
        logger.warning("Insert of remote photo failed", exc_info=True)
        return JSONResponse({"error": "Error inserting photo row"}, status_code=500, headers=CORS_HEADERS)

    try:
        _analysis, enriched = await enrich_photo(services, photo["id"], public_url, owner_id, note)
        photo = enriched or photo
    except Exception:
        logger.warning("Enrichment of remote photo %s failed", photo["id"], exc_info=True)

    return JSONResponse({"success": True, "photo": _without_embedding(photo)}, headers=CORS_HEADERS)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(services: Services) -> Starlette:
    routes = [
        Route("/health", health, methods=["GET"]),
        Route("/session", session, methods=["POST"]),
        Route("/rows/{table}", list_rows, methods=["GET"]),
        Route("/rows/{table}", insert_row, methods=["POST"]),
        Route("/rows/{table}/{row_id}", update_row, methods=["PATCH"]),
        Route("/rows/{table}/{row_id}", delete_row, methods=["DELETE"]),
        Route("/changes/{table}", changes, methods=["GET"]),
        Route("/upload", upload, methods=["POST"]),
        Route("/remove-blobs", remove_blobs, methods=["POST"]),
        Route("/analyze-image", analyze_image, methods=["POST"]),
        Route("/reembed", reembed, methods=["POST"]),
        Route("/semantic-search", semantic_search, methods=["POST"]),
        Route("/save-remote-photo", save_remote_photo, methods=["POST"]),
        Route("/save-remote-photo", save_remote_options, methods=["OPTIONS"]),
        Mount(FILES_ROUTE, StaticFiles(directory=str(services.blobs.root)), name="files"),
    ]
    app = Starlette(routes=routes)
    app.state.services = services
    return app


def default_services() -> Services:
    return Services(
        store=RecordStore(DB_FILE),
        blobs=BlobStore(BLOBS_DIR),
        tokens=TokenRegistry.load(TOKENS_FILE),
        captioner=Captioner(),
        http=httpx.AsyncClient(timeout=REMOTE_FETCH_TIMEOUT),
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _write_pid() -> None:
    SERVICE_PID_FILE.parent.mkdir(parents=True, exist_ok=True)
    SERVICE_PID_FILE.write_text(str(os.getpid()))
    logger.info("PID file: %s", SERVICE_PID_FILE)


def _cleanup_pid(*_args) -> None:
    SERVICE_PID_FILE.unlink(missing_ok=True)


if __name__ == "__main__":
    import atexit

    import uvicorn

    _write_pid()
    atexit.register(_cleanup_pid)
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))

    services = default_services()
    logger.info("Loaded %d access token(s)", len(services.tokens))
    logger.info("Starting photo-vault service on %s:%d", SERVICE_HOST, SERVICE_PORT)
    uvicorn.run(create_app(services), host=SERVICE_HOST, port=SERVICE_PORT, log_level="warning")
