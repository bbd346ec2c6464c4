from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Mapping

from pydantic import BaseModel, Field, model_validator

from .errors import ConfigurationError

INSECURE_PLACEHOLDERS = frozenset(
    {
        "changeme",
        "change-me",
        "change_me",
        "default",
        "placeholder",
        "secret",
        "password",
        "your-encryption-key",
        "your_encryption_key",
        "your-salt",
        "your_salt",
    }
)


class GatewaySettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 4000
    log_level: str = "info"

    encryption_key: str | None = None
    salt: str | None = None
    token_dir: Path = Field(default_factory=lambda: _real_user_home() / ".janus")

    openai_client_id: str | None = None
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_project_id: str | None = None

    openai_api_url: str = "https://api.openai.com/v1"
    google_api_url: str = "https://cloudcode-pa.googleapis.com"
    anthropic_api_url: str = "https://api.anthropic.com"

    openai_timeout_seconds: float = 60.0
    google_timeout_seconds: float = 30.0
    anthropic_timeout_seconds: float = 30.0
    oauth_http_timeout_seconds: float = 15.0

    refresh_buffer_seconds: int = 300
    model_cache_ttl_seconds: int = 3600
    alias_provider: Literal["google", "openai", "none"] = "google"

    @model_validator(mode="after")
    def validate_ranges(self) -> "GatewaySettings":
        if not 0 < self.port < 65536:
            raise ValueError("port must be between 1 and 65535")
        for name in (
            "openai_timeout_seconds",
            "google_timeout_seconds",
            "anthropic_timeout_seconds",
            "oauth_http_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.refresh_buffer_seconds < 0:
            raise ValueError("refresh_buffer_seconds must be >= 0")
        if self.model_cache_ttl_seconds < 1:
            raise ValueError("model_cache_ttl_seconds must be >= 1")
        return self

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewaySettings":
        env = environ if environ is not None else os.environ

        def _text(*names: str) -> str | None:
            for name in names:
                value = env.get(name)
                if value is not None and value.strip():
                    return value.strip()
            return None

        values: dict[str, object] = {}
        mapping = {
            "host": ("JANUS_HOST",),
            "port": ("JANUS_PORT",),
            "log_level": ("JANUS_LOG_LEVEL",),
            "encryption_key": ("JANUS_ENCRYPTION_KEY",),
            "salt": ("JANUS_SALT",),
            "openai_client_id": ("JANUS_OPENAI_CLIENT_ID",),
            "google_client_id": ("JANUS_GOOGLE_CLIENT_ID", "ANTIGRAVITY_CLIENT_ID"),
            "google_client_secret": ("JANUS_GOOGLE_CLIENT_SECRET", "ANTIGRAVITY_CLIENT_SECRET"),
            "google_project_id": ("JANUS_GOOGLE_PROJECT_ID",),
            "openai_api_url": ("JANUS_OPENAI_API_URL",),
            "google_api_url": ("JANUS_GOOGLE_API_URL",),
            "anthropic_api_url": ("JANUS_ANTHROPIC_API_URL",),
            "openai_timeout_seconds": ("JANUS_OPENAI_TIMEOUT_SECONDS",),
            "google_timeout_seconds": ("JANUS_GOOGLE_TIMEOUT_SECONDS",),
            "anthropic_timeout_seconds": ("JANUS_ANTHROPIC_TIMEOUT_SECONDS",),
            "oauth_http_timeout_seconds": ("JANUS_OAUTH_HTTP_TIMEOUT_SECONDS",),
            "refresh_buffer_seconds": ("JANUS_REFRESH_BUFFER_SECONDS",),
            "model_cache_ttl_seconds": ("JANUS_MODEL_CACHE_TTL_SECONDS",),
            "alias_provider": ("JANUS_ALIAS_PROVIDER",),
        }
        for field_name, names in mapping.items():
            value = _text(*names)
            if value is not None:
                values[field_name] = value
        token_dir = _text("JANUS_TOKEN_DIR")
        if token_dir:
            values["token_dir"] = Path(token_dir).expanduser().resolve()
        try:
            return cls.model_validate(values)
        except ValueError as exc:
            raise ConfigurationError(f"invalid gateway configuration: {exc}") from exc

    def validate_security(self) -> None:
        problems: list[str] = []
        for env_name, value in (("JANUS_ENCRYPTION_KEY", self.encryption_key), ("JANUS_SALT", self.salt)):
            if not value:
                problems.append(f"{env_name} is not set")
            elif value.strip().lower() in INSECURE_PLACEHOLDERS:
                problems.append(f"{env_name} is left at an insecure placeholder value")
        if problems:
            raise ConfigurationError("; ".join(problems))

    def validate_provider(self, provider: str) -> None:
        if provider == "openai-codex":
            if not self.openai_client_id:
                raise ConfigurationError("JANUS_OPENAI_CLIENT_ID is required for OpenAI Codex login")
            return
        if provider == "google-antigravity":
            missing = []
            if not self.google_client_id:
                missing.append("JANUS_GOOGLE_CLIENT_ID")
            if not self.google_client_secret:
                missing.append("JANUS_GOOGLE_CLIENT_SECRET")
            if missing:
                raise ConfigurationError(
                    f"missing required env var(s) for Google Antigravity login: {', '.join(missing)}"
                )
            return
        raise ConfigurationError(f"unsupported provider: {provider}")

    def timeout_for(self, provider: str) -> float:
        return {
            "openai-codex": self.openai_timeout_seconds,
            "google-antigravity": self.google_timeout_seconds,
            "anthropic": self.anthropic_timeout_seconds,
        }[provider]


def _real_user_home() -> Path:
    if os.name == "nt":
        return Path.home()
    try:
        import pwd

        return Path(pwd.getpwuid(os.getuid()).pw_dir)
    except (ImportError, KeyError):
        return Path.home()
