"""
OAuth token lifecycle for calendar connections.

Builds the consent URL, exchanges authorization codes for token pairs and
refreshes expired access tokens against the provider's token endpoint.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Tuple, Type

import httpx
from google_auth_oauthlib.flow import Flow

from calendar_sync.config import DEFAULT_HTTP_TIMEOUT_S, GoogleOAuthConfig
from calendar_sync.errors import AuthError, TokenExchangeError, TokenRefreshError
from calendar_sync.metrics import TOKEN_REFRESH_TOTAL
from study_planner.models import CalendarConnection

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _error_reason(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(payload, dict) and payload.get("error"):
        # Google returns {"error": "invalid_grant", "error_description": "..."}
        return f"HTTP {response.status_code}: {payload['error']}"
    return f"HTTP {response.status_code}"


class TokenManager:
    def __init__(
        self,
        config: GoogleOAuthConfig,
        http_client: httpx.AsyncClient,
        timeout_s: float = DEFAULT_HTTP_TIMEOUT_S,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self._http_client = http_client
        self._timeout_s = timeout_s
        self._now = now

    def authorization_url(self, state: Optional[str] = None) -> Tuple[str, str]:
        """Return the provider consent URL and the OAuth ``state`` it carries."""
        flow = Flow.from_client_config(
            {
                "web": {
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "auth_uri": self.config.auth_uri,
                    "token_uri": self.config.token_uri,
                }
            },
            scopes=self.config.scopes,
            redirect_uri=self.config.redirect_uri,
            autogenerate_code_verifier=False,
        )
        # prompt=consent makes Google issue a refresh token on every connect
        return flow.authorization_url(
            access_type="offline",
            include_granted_scopes="true",
            prompt="consent",
            state=state,
        )

    def is_expired(self, connection: CalendarConnection) -> bool:
        return self._now() >= connection.expires_at

    async def exchange_code(self, code: str, user_id: str) -> CalendarConnection:
        """One-shot exchange of an authorization code for a new connection."""
        payload = await self._post_token_endpoint(
            {
                "code": code,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "redirect_uri": self.config.redirect_uri,
                "grant_type": "authorization_code",
            },
            TokenExchangeError,
        )
        access_token, expires_at = self._access_token_from(payload, TokenExchangeError)

        connection = CalendarConnection(
            user_id=user_id,
            provider_type=self.config.provider_type,
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or None,
            expires_at=expires_at,
        )
        logger.info(
            f"Exchanged authorization code for user {user_id} "
            f"(refresh token issued: {connection.refresh_token is not None})"
        )
        return connection

    async def refresh(self, connection: CalendarConnection) -> CalendarConnection:
        if not connection.refresh_token:
            TOKEN_REFRESH_TOTAL.labels(result="failed").inc()
            raise TokenRefreshError("connection has no refresh token")

        try:
            payload = await self._post_token_endpoint(
                {
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "refresh_token": connection.refresh_token,
                    "grant_type": "refresh_token",
                },
                TokenRefreshError,
            )
            access_token, expires_at = self._access_token_from(
                payload, TokenRefreshError
            )
        except TokenRefreshError:
            TOKEN_REFRESH_TOTAL.labels(result="failed").inc()
            raise

        TOKEN_REFRESH_TOTAL.labels(result="refreshed").inc()
        update = {"access_token": access_token, "expires_at": expires_at}
        # Providers may rotate the refresh token; keep the old one otherwise.
        if payload.get("refresh_token"):
            update["refresh_token"] = payload["refresh_token"]
        return connection.model_copy(update=update)

    async def ensure_fresh(
        self, connection: CalendarConnection, force: bool = False
    ) -> Tuple[CalendarConnection, bool]:
        """
        Return ``(connection, refreshed)``.

        Refreshes when the access token has expired, or unconditionally with
        ``force=True`` (used after the provider answered 401). A fresh token is
        returned untouched.
        """
        if not force and not self.is_expired(connection):
            return connection, False

        logger.info(
            f"Refreshing access token for connection {connection.id} "
            f"({'forced' if force else 'expired'})"
        )
        return await self.refresh(connection), True

    async def _post_token_endpoint(
        self, form: dict, error_cls: Type[AuthError]
    ) -> dict[str, Any]:
        try:
            response = await self._http_client.post(
                self.config.token_uri,
                data=form,
                headers={"Accept": "application/json"},
                timeout=self._timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise error_cls(f"token endpoint timed out after {self._timeout_s}s") from exc
        except httpx.HTTPError as exc:
            raise error_cls(f"token endpoint request failed: {exc}") from exc

        if not response.is_success:
            reason = _error_reason(response)
            logger.warning(f"Token endpoint rejected {form['grant_type']}: {reason}")
            raise error_cls(reason)

        try:
            payload = response.json()
        except ValueError as exc:
            raise error_cls("token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise error_cls("token endpoint returned an unexpected payload")
        return payload

    def _access_token_from(
        self, payload: dict[str, Any], error_cls: Type[AuthError]
    ) -> Tuple[str, datetime]:
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise error_cls("token response is missing access_token")

        try:
            expires_in = int(payload.get("expires_in", 3600))
        except (TypeError, ValueError) as exc:
            raise error_cls("token response has an invalid expires_in") from exc

        return access_token.strip(), self._now() + timedelta(seconds=expires_in)
