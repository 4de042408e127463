from typing import Optional


class AuthError(RuntimeError):
    """OAuth failure carrying a stable, user-safe code.

    ``str(err)`` is the code; ``detail`` holds the provider-side reason and is
    only meant for logs.
    """

    code = "auth_failed"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(self.code)
        self.detail = detail


class TokenExchangeError(AuthError):
    code = "token_exchange_failed"


class TokenRefreshError(AuthError):
    code = "token_refresh_failed"


class NeedsTokenRefresh(Exception):
    """The provider rejected the access token (HTTP 401)."""


class FetchError(RuntimeError):
    """Terminal failure listing events for one connection."""
