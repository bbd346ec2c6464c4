from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

DEFAULT_REFRESH_BUFFER_MS = 5 * 60 * 1000


class ProviderId(str, Enum):
    OPENAI_CODEX = "openai-codex"
    GOOGLE_ANTIGRAVITY = "google-antigravity"

    @property
    def store_key(self) -> str:
        return {
            ProviderId.OPENAI_CODEX: "openai",
            ProviderId.GOOGLE_ANTIGRAVITY: "google",
        }[self]


class CredentialState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PENDING_AUTHORIZATION = "pending_authorization"
    VALID = "valid"
    STALE = "stale"
    REFRESHING = "refreshing"


class OAuthProviderConfig(BaseModel):
    provider: ProviderId
    authorize_url: str
    token_url: str
    client_id: str
    client_secret: str | None = None
    scopes: list[str] = Field(default_factory=list)
    redirect_uri: str
    use_pkce: bool = True
    authorize_params: dict[str, str] = Field(default_factory=dict)


class TokenRecord(BaseModel):
    access_token: str
    refresh_token: str | None = None
    expires_at: int | None = None
    scope: str | None = None

    @classmethod
    def from_token_response(
        cls,
        payload: dict[str, Any],
        *,
        previous_refresh_token: str | None = None,
        now_ms: int | None = None,
    ) -> "TokenRecord":
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("token response is missing access_token")
        expires_at: int | None = None
        if payload.get("expires_in") is not None:
            issued_at = now_ms if now_ms is not None else current_time_ms()
            expires_at = issued_at + int(payload["expires_in"]) * 1000
        return cls(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expires_at=expires_at,
            scope=payload.get("scope"),
        )


@dataclass
class AuthorizationRequest:
    provider: ProviderId
    state: str
    code_verifier: str | None
    authorization_url: str


def current_time_ms() -> int:
    return int(time.time() * 1000)


def is_token_valid(
    record: TokenRecord,
    *,
    now_ms: int | None = None,
    buffer_ms: int = DEFAULT_REFRESH_BUFFER_MS,
) -> bool:
    if record.expires_at is None:
        return True
    now = now_ms if now_ms is not None else current_time_ms()
    return now < record.expires_at - buffer_ms
