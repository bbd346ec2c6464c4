from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import webbrowser
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from ..config import GatewaySettings
from ..errors import AuthenticationError, NoCredentialError, RefreshFailedError
from ..hooks.observability import EventLogger
from ..hooks.security import mask_secret
from .callback import LoopbackCallbackServer
from .models import (
    AuthorizationRequest,
    CredentialState,
    OAuthProviderConfig,
    ProviderId,
    TokenRecord,
    current_time_ms,
    is_token_valid,
)
from .token_store import EncryptedTokenStore

logger = logging.getLogger(__name__)

PROVIDER_OAUTH_DEFAULTS: dict[ProviderId, dict[str, Any]] = {
    ProviderId.OPENAI_CODEX: {
        "authorize_url": "https://auth.openai.com/oauth/authorize",
        "token_url": "https://auth.openai.com/oauth/token",
        "redirect_uri": "http://localhost:1455/auth/callback",
        "scopes": ["openid", "profile", "email", "offline_access", "model.request"],
        "use_pkce": True,
        "authorize_params": {
            "id_token_add_organizations": "true",
            "codex_cli_simplified_flow": "true",
            "originator": "codex_cli_rs",
        },
    },
    ProviderId.GOOGLE_ANTIGRAVITY: {
        "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "redirect_uri": "http://localhost:51121/oauth-callback",
        "scopes": [
            "https://www.googleapis.com/auth/cloud-platform",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
            "https://www.googleapis.com/auth/cclog",
            "https://www.googleapis.com/auth/experimentsandconfigs",
        ],
        "use_pkce": False,
        "authorize_params": {
            "access_type": "offline",
            "prompt": "consent",
        },
    },
}


def _random_state() -> str:
    return secrets.token_urlsafe(24)


def _generate_pkce_verifier() -> str:
    return secrets.token_urlsafe(64)


def _pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def build_provider_config(provider: ProviderId, settings: GatewaySettings) -> OAuthProviderConfig:
    defaults = PROVIDER_OAUTH_DEFAULTS[provider]
    if provider == ProviderId.OPENAI_CODEX:
        client_id, client_secret = settings.openai_client_id, None
    else:
        client_id, client_secret = settings.google_client_id, settings.google_client_secret
    return OAuthProviderConfig(
        provider=provider,
        client_id=client_id or "",
        client_secret=client_secret,
        **defaults,
    )


class CredentialManager:
    """
    OAuth credential lifecycle for one provider:
    - login(): loopback authorization flow, code exchange, persist
    - get_valid_token(): load, lazily refresh when stale, invalidate on refresh failure
    """

    def __init__(
        self,
        config: OAuthProviderConfig,
        store: EncryptedTokenStore,
        *,
        refresh_buffer_seconds: int = 300,
        http_timeout_seconds: float = 15.0,
        events: EventLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], int] = current_time_ms,
    ) -> None:
        self.config = config
        self.store = store
        self.refresh_buffer_ms = refresh_buffer_seconds * 1000
        self.http_timeout_seconds = http_timeout_seconds
        self.events = events or EventLogger()
        self.transport = transport
        self.clock = clock
        self._pending_authorization = False
        self._refreshing = 0

    @property
    def provider(self) -> ProviderId:
        return self.config.provider

    @property
    def store_key(self) -> str:
        return self.provider.store_key

    def state(self) -> CredentialState:
        if self._pending_authorization:
            return CredentialState.PENDING_AUTHORIZATION
        if self._refreshing:
            return CredentialState.REFRESHING
        record = self.store.load(self.store_key)
        if record is None:
            return CredentialState.UNAUTHENTICATED
        if self.is_valid(record):
            return CredentialState.VALID
        return CredentialState.STALE

    def is_valid(self, record: TokenRecord) -> bool:
        return is_token_valid(record, now_ms=self.clock(), buffer_ms=self.refresh_buffer_ms)

    def build_authorization_request(self) -> AuthorizationRequest:
        state = _random_state()
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": " ".join(self.config.scopes),
            "state": state,
        }
        code_verifier: str | None = None
        if self.config.use_pkce:
            code_verifier = _generate_pkce_verifier()
            params["code_challenge_method"] = "S256"
            params["code_challenge"] = _pkce_challenge(code_verifier)
        params.update(self.config.authorize_params)
        return AuthorizationRequest(
            provider=self.provider,
            state=state,
            code_verifier=code_verifier,
            authorization_url=f"{self.config.authorize_url}?{urlencode(params)}",
        )

    def login(
        self,
        *,
        open_browser: bool = True,
        wait_timeout: float | None = None,
        browser_opener: Callable[[str], bool] = webbrowser.open,
        announce: Callable[[str], None] = print,
    ) -> TokenRecord:
        if not self.config.client_id:
            raise AuthenticationError(f"client_id is not configured for provider={self.provider.value}")

        request = self.build_authorization_request()
        server = LoopbackCallbackServer(self.config.redirect_uri)
        self._pending_authorization = True
        self.events.on_credential(self.provider.value, "login_started")
        try:
            try:
                server.start()
            except OSError as exc:
                raise AuthenticationError(
                    f"could not listen on {self.config.redirect_uri} ({exc}); "
                    "another login may still be running"
                ) from exc
            announce(f"Authorization URL: {request.authorization_url}")
            if open_browser:
                if not browser_opener(request.authorization_url):
                    announce("Browser could not be opened automatically. Open the URL manually.")
            capture = server.wait(timeout=wait_timeout)
        finally:
            server.stop()
            self._pending_authorization = False

        if capture is None or capture.error or not capture.code:
            detail = "no authorization code received"
            if capture is not None and capture.error:
                detail = f"provider returned error={capture.error}"
            self.events.on_credential(self.provider.value, "login_cancelled", detail=detail)
            raise AuthenticationError(f"login cancelled for provider={self.provider.value}: {detail}")
        if capture.state != request.state:
            self.events.on_credential(self.provider.value, "login_cancelled", detail="state mismatch")
            raise AuthenticationError("state mismatch in OAuth callback")

        record = self.exchange_code(capture.code, request.code_verifier)
        self.events.on_credential(self.provider.value, "login_completed", expires_at=record.expires_at)
        return record

    def exchange_code(self, code: str, code_verifier: str | None = None) -> TokenRecord:
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
        }
        if code_verifier:
            payload["code_verifier"] = code_verifier
        if self.config.client_secret:
            payload["client_secret"] = self.config.client_secret

        try:
            response = httpx.post(
                self.config.token_url,
                data=payload,
                headers={"Accept": "application/json"},
                timeout=self.http_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise AuthenticationError(f"token exchange failed: {exc}") from exc
        if response.status_code >= 400:
            raise AuthenticationError(
                f"token exchange failed ({response.status_code}): {response.text[:300]}"
            )
        try:
            record = TokenRecord.from_token_response(response.json(), now_ms=self.clock())
        except ValueError as exc:
            raise AuthenticationError(f"token exchange returned an unusable response: {exc}") from exc
        self.store.save(self.store_key, record)
        return record

    async def get_valid_token(self) -> str:
        record = self.store.load(self.store_key)
        if record is None:
            raise NoCredentialError(self.provider.value)
        if self.is_valid(record):
            return record.access_token
        refreshed = await self.refresh(record)
        return refreshed.access_token

    async def refresh(self, record: TokenRecord) -> TokenRecord:
        self._refreshing += 1
        try:
            if not record.refresh_token:
                raise self._invalidate("no refresh token stored")
            payload = await self._request_refresh(record.refresh_token or "")
            try:
                refreshed = TokenRecord.from_token_response(
                    payload,
                    previous_refresh_token=record.refresh_token,
                    now_ms=self.clock(),
                )
            except ValueError as exc:
                raise self._invalidate(str(exc)) from exc
            self.store.save(self.store_key, refreshed)
        finally:
            self._refreshing -= 1
        self.events.on_credential(self.provider.value, "token_refreshed", expires_at=refreshed.expires_at)
        return refreshed

    async def _request_refresh(self, refresh_token: str) -> dict[str, Any]:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.config.client_id,
        }
        if self.config.client_secret:
            data["client_secret"] = self.config.client_secret
        timeout = httpx.Timeout(self.http_timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            try:
                response = await client.post(
                    self.config.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as exc:
                raise self._invalidate(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code >= 400:
            raise self._invalidate(f"HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise self._invalidate("non-JSON response") from exc
        if not isinstance(payload, dict):
            raise self._invalidate("unexpected response shape")
        return payload

    def _invalidate(self, detail: str) -> RefreshFailedError:
        self.store.delete(self.store_key)
        self.events.on_credential(self.provider.value, "refresh_failed", detail=detail)
        self.events.on_credential(self.provider.value, "credential_invalidated")
        logger.warning("credential invalidated provider=%s detail=%s", self.provider.value, detail)
        return RefreshFailedError(self.provider.value, detail)

    def describe(self) -> dict[str, Any]:
        record = self.store.load(self.store_key)
        return {
            "provider": self.provider.value,
            "state": self.state().value,
            "expires_at": record.expires_at if record else None,
            "has_refresh_token": bool(record and record.refresh_token),
            "access_token": mask_secret(record.access_token) if record else "",
        }


def build_credential_managers(
    settings: GatewaySettings,
    store: EncryptedTokenStore,
    *,
    events: EventLogger | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[ProviderId, CredentialManager]:
    return {
        provider: CredentialManager(
            build_provider_config(provider, settings),
            store,
            refresh_buffer_seconds=settings.refresh_buffer_seconds,
            http_timeout_seconds=settings.oauth_http_timeout_seconds,
            events=events,
            transport=transport,
        )
        for provider in ProviderId
    }
