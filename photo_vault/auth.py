"""Access tokens and the client-side session.

The service resolves a bearer token to an owner id through TokenRegistry.
The client side holds the signed-in principal in a Session and tells
listeners when it changes.
"""

import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Protocol

from errors import AuthError

logger = logging.getLogger(__name__)


def _normalize(token: str) -> str:
    return token.strip().lower()


class TokenRegistry:
    """Token -> owner id allowlist loaded from a JSON file.

    File format: [{"token": "...", "owner_id": "..."}, ...]
    """

    def __init__(self, entries: list[dict] | None = None):
        self._owners: dict[str, str] = {}
        for entry in entries or []:
            self.add(entry["token"], entry["owner_id"])

    @classmethod
    def load(cls, path: Path) -> "TokenRegistry":
        if not path.exists():
            logger.warning("No token file at %s; every sign-in will fail", path)
            return cls()
        try:
            entries = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Could not read token file %s", path, exc_info=True)
            return cls()
        return cls(entries)

    def add(self, token: str, owner_id: str) -> None:
        if not token.strip() or not owner_id:
            raise ValueError("token and owner_id must be non-empty")
        self._owners[_normalize(token)] = owner_id

    def owner_for_token(self, token: str | None) -> str | None:
        if not token:
            return None
        return self._owners.get(_normalize(token))

    def __len__(self) -> int:
        return len(self._owners)


# ---------------------------------------------------------------------------
# Client-side session
# ---------------------------------------------------------------------------


class SignInBackend(Protocol):
    async def sign_in(self, token: str) -> str: ...

    def set_token(self, token: str | None) -> None: ...


SessionListener = Callable[[str | None], Awaitable[None] | None]


class Session:
    def __init__(self, backend: SignInBackend):
        self._backend = backend
        self._principal_id: str | None = None
        self._listeners: list[SessionListener] = []

    def get_session(self) -> str | None:
        return self._principal_id

    def require(self) -> str:
        if self._principal_id is None:
            raise AuthError("You must be signed in.")
        return self._principal_id

    def on_session_change(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def sign_in(self, token: str) -> str:
        principal_id = await self._backend.sign_in(token)
        self._backend.set_token(token)
        await self._set(principal_id)
        return principal_id

    async def sign_out(self) -> None:
        self._backend.set_token(None)
        await self._set(None)

    async def _set(self, principal_id: str | None) -> None:
        if principal_id == self._principal_id:
            return
        self._principal_id = principal_id
        logger.info("Session %s", "started" if principal_id else "ended")
        for listener in list(self._listeners):
            result = listener(principal_id)
            if result is not None:
                await result
