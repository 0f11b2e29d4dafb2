import io
import sys
from pathlib import Path

import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from errors import AuthError, DependencyError
from store import RecordStore

OWNER = "owner-1"
TOKEN = "good-token"

DEFAULT_ANALYSIS = {
    "caption": "a cozy knit sweater",
    "tags": ["sweater", "knit"],
    "colors": ["cream"],
    "content_type": "fashion",
    "domain_tags": ["outfit"],
    "has_people": False,
    "people_count": 0,
    "is_screenshot": False,
    "vibe_tags": ["cozy"],
    "embedding": [0.1, 0.2, 0.3],
}


def png_bytes(color=(200, 30, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buf, "PNG")
    return buf.getvalue()


class FakeSubscription:
    def __init__(self, remove):
        self._remove = remove
        self.closed = False

    async def close(self):
        self._remove()
        self.closed = True


class FakeClient:
    """In-process stand-in for VaultClient over a real RecordStore.

    Names in `fail` make the matching method raise DependencyError; setting
    `expired` makes every call but sign_in raise AuthError.
    """

    def __init__(self, store: RecordStore, owner_id: str = OWNER):
        self.store = store
        self.owner_id = owner_id
        self.token = None
        self.blobs: dict[str, bytes] = {}
        self.analysis = dict(DEFAULT_ANALYSIS)
        self.semantic_rows: list[dict] = []
        self.fail: set[str] = set()
        self.expired = False
        self.calls: list[str] = []
        self.subscriptions: list[FakeSubscription] = []

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if self.expired and name != "sign_in":
            raise AuthError("Your session has expired. Sign in again.")
        if name in self.fail:
            raise DependencyError(f"{name} failed")

    def set_token(self, token):
        self.token = token

    async def sign_in(self, token):
        self._check("sign_in")
        if token != TOKEN:
            raise AuthError("Invalid token")
        return self.owner_id

    async def select(self, table, ids=None, created_after=None, limit=None):
        self._check("select")
        return self.store.select(table, self.owner_id, ids, created_after, limit)

    async def insert(self, table, row):
        self._check("insert")
        return self.store.insert(table, {**row, "owner_id": self.owner_id})

    async def update(self, table, row_id, fields):
        self._check("update")
        row = self.store.update(table, row_id, fields, self.owner_id)
        if row is None:
            raise DependencyError("Not found", status_code=404)
        return row

    async def delete(self, table, row_id):
        self._check("delete")
        if not self.store.delete(table, row_id, self.owner_id):
            raise DependencyError("Not found", status_code=404)

    async def subscribe(self, table, on_insert, on_update, on_auth_lost=None):
        self._check("subscribe")

        def listener(changed_table, event, row):
            if changed_table != table or row["owner_id"] != self.owner_id:
                return
            (on_insert if event == "insert" else on_update)(row)

        sub = FakeSubscription(self.store.listen(listener))
        self.subscriptions.append(sub)
        return sub

    async def upload(self, path, data, content_type=None):
        self._check("upload")
        self.blobs[path] = data
        return f"http://vault.test/files/{path}"

    async def remove_blobs(self, paths):
        self._check("remove_blobs")
        for path in paths:
            self.blobs.pop(path, None)

    async def analyze_image(self, image_url, photo_id):
        self._check("analyze_image")
        fields = dict(self.analysis)
        self.store.update("photos", photo_id, fields, self.owner_id)
        return fields

    async def reembed(self, photo_id):
        self._check("reembed")
        return [0.5, 0.5, 0.5]

    async def semantic_search(self, query, owner_id):
        self._check("semantic_search")
        return list(self.semantic_rows)


@pytest.fixture
def store(tmp_path):
    s = RecordStore(tmp_path / "vault.db")
    yield s
    s.close()


@pytest.fixture
def fake_client(store):
    return FakeClient(store)
