"""Error taxonomy shared by the vault client side and the service."""


class VaultError(Exception):
    """A user action failed. The message is safe to show to the user."""


class AuthError(VaultError):
    """The session is absent, expired, or the credentials were rejected."""


class DependencyError(VaultError):
    """The store, blob store, or captioning service failed or was unreachable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
