import asyncio
import sys
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from auth import TokenRegistry
from blobs import BlobStore
from captioning import ImageAnalysis
from client import RealtimeSubscription, VaultClient
from conftest import OWNER, TOKEN, png_bytes
from errors import AuthError, DependencyError
from service import Services, create_app


@pytest.fixture
def app(store, tmp_path):
    captioner = MagicMock()
    captioner.analyze.side_effect = lambda url: ImageAnalysis(caption="a red square", tags=["red"])
    captioner.embed.return_value = [1.0, 0.0]
    services = Services(
        store=store,
        blobs=BlobStore(tmp_path / "blobs", base_url="http://testserver"),
        tokens=TokenRegistry([{"token": TOKEN, "owner_id": OWNER}]),
        captioner=captioner,
        http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404))),
    )
    return create_app(services)


def _client(app, token=TOKEN) -> VaultClient:
    return VaultClient("http://testserver", token=token, transport=httpx.ASGITransport(app=app))


def test_sign_in(app):
    async def scenario():
        c = _client(app, token=None)
        owner = await c.sign_in(TOKEN)
        with pytest.raises(AuthError):
            await c.sign_in("wrong")
        await c.aclose()
        return owner

    assert asyncio.run(scenario()) == OWNER


def test_row_operations(app):
    async def scenario():
        c = _client(app)
        note = await c.insert("notes", {"body": "milk"})
        updated = await c.update("notes", note["id"], {"body": "oat milk"})
        listed = await c.select("notes")
        none = await c.select("notes", ids=[])
        await c.delete("notes", note["id"])
        with pytest.raises(DependencyError) as exc:
            await c.delete("notes", note["id"])
        await c.aclose()
        return updated, listed, none, exc.value

    updated, listed, none, missing = asyncio.run(scenario())
    assert updated["body"] == "oat milk"
    assert [n["id"] for n in listed] == [updated["id"]]
    assert none == []
    assert missing.status_code == 404


def test_select_passes_filters(app, store):
    rows = [store.insert("photos", {"image_url": str(i), "owner_id": OWNER}) for i in range(3)]

    async def scenario():
        c = _client(app)
        after = await c.select("photos", created_after=rows[0]["created_at"], limit=1)
        by_id = await c.select("photos", ids=[rows[0]["id"]])
        await c.aclose()
        return after, by_id

    after, by_id = asyncio.run(scenario())
    assert [r["id"] for r in after] == [rows[2]["id"]]
    assert [r["id"] for r in by_id] == [rows[0]["id"]]


def test_unauthorized_maps_to_auth_error(app):
    async def scenario():
        c = _client(app, token="expired")
        try:
            await c.select("photos")
        finally:
            await c.aclose()

    with pytest.raises(AuthError):
        asyncio.run(scenario())


def test_unreachable_service_maps_to_dependency_error():
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    async def scenario():
        c = VaultClient("http://testserver", token=TOKEN, transport=httpx.MockTransport(refuse))
        try:
            await c.select("photos")
        finally:
            await c.aclose()

    with pytest.raises(DependencyError):
        asyncio.run(scenario())


def test_upload_analyze_and_search(app, store):
    async def scenario():
        c = _client(app)
        url = await c.upload("1-a.png", png_bytes(), "image/png")
        row = await c.insert("photos", {"image_url": url, "storage_path": "1-a.png"})
        analysis = await c.analyze_image(url, row["id"])
        embedding = await c.reembed(row["id"])
        found = await c.semantic_search("red", OWNER)
        await c.remove_blobs(["1-a.png"])
        await c.aclose()
        return url, analysis, embedding, found

    url, analysis, embedding, found = asyncio.run(scenario())
    assert url == "http://testserver/files/1-a.png"
    assert analysis["caption"] == "a red square"
    assert embedding == [1.0, 0.0]
    assert [p["image_url"] for p in found] == [url]


class TestRealtimeDispatch:
    def _subscription(self, received):
        async def scenario():
            c = VaultClient(
                "http://testserver",
                token=TOKEN,
                transport=httpx.MockTransport(lambda r: httpx.Response(401)),
            )
            sub = RealtimeSubscription(
                c, "photos",
                on_insert=lambda row: received.append(("insert", row["id"])),
                on_update=lambda row: received.append(("update", row["id"])),
            )
            for line in [
                ": connected",
                'data: {"event": "insert", "row": {"id": "a"}}',
                'data: {"event": "update", "row": {"id": "a"}}',
                'data: {"event": "delete", "row": {"id": "a"}}',
                "data: not json",
                'data: {"event": "insert", "row": "a"}',
            ]:
                sub.dispatch(line)
            await sub.close()
            await c.aclose()

        asyncio.run(scenario())

    def test_dispatch(self):
        received = []
        self._subscription(received)
        assert received == [("insert", "a"), ("update", "a")]


def test_rejected_realtime_feed_reports_lost_session():
    lost = []

    async def scenario():
        c = VaultClient(
            "http://testserver",
            token="expired",
            transport=httpx.MockTransport(lambda r: httpx.Response(401)),
        )
        sub = await c.subscribe("photos", lambda row: None, lambda row: None, lambda: lost.append(True))
        await asyncio.wait_for(sub._task, timeout=2)
        await c.aclose()

    asyncio.run(scenario())
    assert lost == [True]
