from __future__ import annotations

import json
from typing import Any


class GatewayError(RuntimeError):
    error_type = "api_error"
    status_code = 500

    def to_payload(self) -> dict[str, Any]:
        return error_payload(self.error_type, str(self))


class ConfigurationError(GatewayError):
    error_type = "configuration_error"
    status_code = 500


class CredentialStoreError(GatewayError):
    error_type = "credential_store_error"
    status_code = 500


class AuthenticationError(GatewayError):
    error_type = "authentication_error"
    status_code = 401


class NoCredentialError(AuthenticationError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            f"no stored credential for provider={provider}; run `janus-gateway auth {_auth_command(provider)}`"
        )
        self.provider = provider


class RefreshFailedError(AuthenticationError):
    def __init__(self, provider: str, detail: str) -> None:
        super().__init__(
            f"token refresh failed for provider={provider} ({detail}); "
            f"re-authenticate with `janus-gateway auth {_auth_command(provider)}`"
        )
        self.provider = provider
        self.detail = detail


class TranspilerError(GatewayError):
    error_type = "invalid_request_error"
    status_code = 400


class UpstreamError(GatewayError):
    error_type = "api_error"

    def __init__(self, provider: str, status: int, body: str) -> None:
        super().__init__(f"{provider} request failed: HTTP {status} ({body[:300]})")
        self.provider = provider
        self.status = status
        self.body = body

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return self.status if 400 <= self.status < 600 else 502

    def to_payload(self) -> dict[str, Any]:
        try:
            parsed = json.loads(self.body)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and parsed.get("type") == "error" and isinstance(parsed.get("error"), dict):
            return parsed
        return super().to_payload()


class UpstreamTimeoutError(GatewayError):
    error_type = "timeout_error"
    status_code = 504

    def __init__(self, provider: str, timeout_seconds: float) -> None:
        super().__init__(f"{provider} request timed out after {timeout_seconds:g}s")
        self.provider = provider
        self.timeout_seconds = timeout_seconds


def error_payload(error_type: str, message: str) -> dict[str, Any]:
    return {"type": "error", "error": {"type": error_type, "message": message}}


def _auth_command(provider: str) -> str:
    return {"openai-codex": "codex", "google-antigravity": "antigravity"}.get(provider, provider)
