import os
from dataclasses import dataclass, field
from typing import List

from study_planner.models import ProviderType

DEFAULT_HTTP_TIMEOUT_S = 10.0

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
]


@dataclass(frozen=True)
class GoogleOAuthConfig:
    """OAuth client settings and endpoints for the Google Calendar provider."""

    client_id: str
    client_secret: str
    redirect_uri: str = "http://localhost:8000/calendar/callback"
    auth_uri: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_uri: str = "https://oauth2.googleapis.com/token"
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    scopes: List[str] = field(default_factory=lambda: list(GOOGLE_SCOPES))
    provider_type: ProviderType = ProviderType.GOOGLE

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    @classmethod
    def from_env(cls) -> "GoogleOAuthConfig":
        return cls(
            client_id=os.getenv("GOOGLE_CLIENT_ID", "").strip(),
            client_secret=os.getenv("GOOGLE_CLIENT_SECRET", "").strip(),
            redirect_uri=os.getenv(
                "GOOGLE_REDIRECT_URI", "http://localhost:8000/calendar/callback"
            ),
        )


@dataclass(frozen=True)
class SyncSettings:
    http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S
    # 0 disables the periodic sync worker
    interval_s: float = 0.0
    window_days: int = 30

    @classmethod
    def from_env(cls) -> "SyncSettings":
        return cls(
            http_timeout_s=float(
                os.getenv("SYNC_HTTP_TIMEOUT_S", str(DEFAULT_HTTP_TIMEOUT_S))
            ),
            interval_s=float(os.getenv("SYNC_INTERVAL_S", "0")),
            window_days=int(os.getenv("SYNC_WINDOW_DAYS", "30")),
        )
