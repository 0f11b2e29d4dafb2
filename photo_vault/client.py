"""Async HTTP client for the photo-vault service.

Optionally auto-launches the service if it's not running. Every failure to
reach the service or a non-2xx reply becomes a DependencyError (AuthError
for 401), so callers only ever handle the vault's own error types.
"""

import asyncio
import json
import logging
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable

import httpx

from config import (
    REALTIME_RECONNECT_SECONDS,
    SERVICE_STARTUP_TIMEOUT,
    SERVICE_URL,
)
from errors import AuthError, DependencyError

logger = logging.getLogger(__name__)

RowCallback = Callable[[dict], None]
AuthLostCallback = Callable[[], None]


class RealtimeSubscription:
    """Background task reading the service's SSE change feed."""

    def __init__(
        self,
        client: "VaultClient",
        table: str,
        on_insert: RowCallback,
        on_update: RowCallback,
        on_auth_lost: AuthLostCallback | None = None,
    ):
        self._client = client
        self._table = table
        self._handlers = {"insert": on_insert, "update": on_update}
        self._on_auth_lost = on_auth_lost
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"realtime-{table}"
        )

    def dispatch(self, line: str) -> None:
        if not line.startswith("data:"):
            return
        try:
            message = json.loads(line[len("data:"):].strip())
        except json.JSONDecodeError:
            logger.warning("Bad realtime message: %.200s", line)
            return
        handler = self._handlers.get(message.get("event"))
        row = message.get("row")
        if handler is not None and isinstance(row, dict):
            handler(row)

    async def _run(self) -> None:
        while True:
            try:
                async with self._client.http.stream(
                    "GET",
                    f"/changes/{self._table}",
                    headers=self._client.auth_headers(),
                    timeout=httpx.Timeout(10.0, read=None),
                ) as resp:
                    if resp.status_code == 401:
                        logger.warning("Realtime feed rejected the session")
                        if self._on_auth_lost is not None:
                            self._on_auth_lost()
                        return
                    resp.raise_for_status()
                    logger.info("Realtime feed for %s connected", self._table)
                    async for line in resp.aiter_lines():
                        self.dispatch(line)
            except httpx.HTTPError:
                logger.warning("Realtime feed for %s dropped", self._table, exc_info=True)
            await asyncio.sleep(REALTIME_RECONNECT_SECONDS)

    async def close(self) -> None:
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)


class VaultClient:
    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        autostart: bool = False,
    ):
        self._base_url = base_url or SERVICE_URL
        self._token = token
        self._autostart = autostart
        self._checked = False
        self.http = httpx.AsyncClient(base_url=self._base_url, timeout=120, transport=transport)

    async def aclose(self) -> None:
        await self.http.aclose()

    def set_token(self, token: str | None) -> None:
        self._token = token

    def auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self._token}"} if self._token else {}

    # -- service lifecycle --

    async def _is_alive(self) -> bool:
        try:
            resp = await self.http.get("/health", timeout=2)
            return resp.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    async def _ensure_service(self) -> None:
        if not self._autostart or self._checked:
            return
        if await self._is_alive():
            self._checked = True
            return

        logger.info("Service not running, launching...")
        service_script = Path(__file__).resolve().parent / "service.py"
        subprocess.Popen(
            [sys.executable, str(service_script)],
            cwd=str(service_script.parent),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )

        deadline = time.time() + SERVICE_STARTUP_TIMEOUT
        while time.time() < deadline:
            await asyncio.sleep(0.5)
            if await self._is_alive():
                logger.info("Service is ready")
                self._checked = True
                return

        raise DependencyError(f"Service did not start within {SERVICE_STARTUP_TIMEOUT}s")

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        await self._ensure_service()
        headers = {**self.auth_headers(), **kwargs.pop("headers", {})}
        try:
            resp = await self.http.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise DependencyError(f"Could not reach the vault service ({exc.__class__.__name__})") from exc
        if resp.status_code == 401:
            raise AuthError("Your session has expired. Sign in again.")
        if resp.status_code >= 400:
            raise DependencyError(
                f"{method} {path} failed ({resp.status_code}): {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return resp

    def _json(self, resp: httpx.Response):
        try:
            return resp.json()
        except json.JSONDecodeError as exc:
            raise DependencyError(f"Malformed reply from {resp.request.url.path}") from exc

    # -- auth --

    async def sign_in(self, token: str) -> str:
        resp = await self._request("POST", "/session", json={"token": token})
        return self._json(resp)["owner_id"]

    # -- rows --

    async def select(
        self,
        table: str,
        ids: list[str] | None = None,
        created_after: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        if ids is not None and not ids:
            return []
        params = {}
        if ids is not None:
            params["ids"] = ",".join(ids)
        if created_after:
            params["after"] = created_after
        if limit is not None:
            params["limit"] = str(limit)
        return self._json(await self._request("GET", f"/rows/{table}", params=params))

    async def insert(self, table: str, row: dict) -> dict:
        return self._json(await self._request("POST", f"/rows/{table}", json=row))

    async def update(self, table: str, row_id: str, fields: dict) -> dict:
        return self._json(await self._request("PATCH", f"/rows/{table}/{row_id}", json=fields))

    async def delete(self, table: str, row_id: str) -> None:
        await self._request("DELETE", f"/rows/{table}/{row_id}")

    async def subscribe(
        self,
        table: str,
        on_insert: RowCallback,
        on_update: RowCallback,
        on_auth_lost: AuthLostCallback | None = None,
    ) -> RealtimeSubscription:
        await self._ensure_service()
        return RealtimeSubscription(self, table, on_insert, on_update, on_auth_lost)

    # -- blobs --

    async def upload(self, path: str, data: bytes, content_type: str | None = None) -> str:
        """Upload bytes and return their public URL."""
        headers = {"X-Path": path, "Content-Type": content_type or "application/octet-stream"}
        resp = await self._request("POST", "/upload", content=data, headers=headers)
        return self._json(resp)["public_url"]

    async def remove_blobs(self, paths: list[str]) -> None:
        await self._request("POST", "/remove-blobs", json={"paths": paths})

    # -- captioning / search --

    async def analyze_image(self, image_url: str, photo_id: str) -> dict:
        resp = await self._request(
            "POST", "/analyze-image", json={"imageUrl": image_url, "photoId": photo_id}
        )
        return self._json(resp)

    async def reembed(self, photo_id: str) -> list[float] | None:
        resp = await self._request("POST", "/reembed", json={"photoId": photo_id})
        return self._json(resp).get("embedding")

    async def semantic_search(self, query: str, owner_id: str) -> list[dict]:
        resp = await self._request(
            "POST", "/semantic-search", json={"query": query, "ownerId": owner_id}
        )
        return self._json(resp).get("photos") or []
