from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from janus_gateway import __version__
from janus_gateway.api.schemas import HealthResponse, MessagesRequest, ModelListResponse, ModelRecord
from janus_gateway.auth import EncryptedTokenStore, ProviderId, build_credential_managers
from janus_gateway.config import GatewaySettings
from janus_gateway.errors import GatewayError, error_payload
from janus_gateway.hooks import EventLogger
from janus_gateway.providers import CanonicalCall, build_router
from janus_gateway.services import ModelRegistry

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 50 * 1024 * 1024
LOCAL_ORIGIN_REGEX = r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$"


def create_app(
    settings: GatewaySettings | None = None,
    *,
    events: EventLogger | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or GatewaySettings.from_env()
    settings.validate_security()

    events = events or EventLogger()
    store = EncryptedTokenStore(
        settings.token_dir,
        secret=settings.encryption_key or "",
        salt=settings.salt or "",
    )
    credentials = build_credential_managers(settings, store, events=events, transport=transport)
    router = build_router(settings, credentials, events=events, transport=transport)
    registry = ModelRegistry(
        openai_credentials=credentials[ProviderId.OPENAI_CODEX],
        anthropic_api_url=settings.anthropic_api_url,
        openai_api_url=settings.openai_api_url,
        ttl_seconds=settings.model_cache_ttl_seconds,
        transport=transport,
    )

    app = FastAPI(title="Janus Gateway", version=__version__)
    app.state.settings = settings
    app.state.events = events
    app.state.credentials = credentials
    app.state.router = router
    app.state.model_registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=LOCAL_ORIGIN_REGEX,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(GatewayError)
    async def handle_gateway_error(_: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request failed: %s", exc)
        else:
            logger.warning("request rejected: %s", exc)
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
            for error in exc.errors()
        )
        return JSONResponse(error_payload("invalid_request_error", details or "invalid request"), status_code=400)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error: %s", exc)
        return JSONResponse(error_payload("internal_error", "Internal server error"), status_code=500)

    @app.post("/v1/messages")
    async def create_message(payload: MessagesRequest, request: Request) -> Response:
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > MAX_BODY_BYTES:
            return JSONResponse(
                error_payload("request_too_large", "Request body exceeds the 50MB limit"),
                status_code=413,
            )
        adapter = router.select(payload.model)
        logger.info("routing model=%s adapter=%s", payload.model, adapter.name)
        call = CanonicalCall(
            body=payload.model_dump(exclude_unset=True),
            headers=dict(request.headers),
            is_disconnected=request.is_disconnected,
        )
        return await adapter.handle(call)

    @app.get("/v1/models", response_model=ModelListResponse)
    async def list_models(
        x_api_key: str | None = Header(default=None, alias="x-api-key"),
        anthropic_version: str | None = Header(default=None, alias="anthropic-version"),
    ) -> ModelListResponse:
        models = await registry.list_models(
            anthropic_api_key=x_api_key,
            anthropic_version=anthropic_version,
        )
        return ModelListResponse(data=[ModelRecord.model_validate(model) for model in models])

    # Static account stubs; Anthropic clients query these at startup.
    @app.get("/v1/users/me")
    async def current_user() -> dict[str, Any]:
        return {
            "id": "user_janus_local",
            "type": "user",
            "email": "janus-user@localhost",
            "name": "Janus Gateway User",
            "role": "user",
            "added_at": _utc_now(),
        }

    @app.get("/v1/organizations")
    async def organizations() -> list[dict[str, Any]]:
        now = _utc_now()
        return [
            {
                "id": "org_janus_local",
                "type": "organization",
                "name": "Janus Gateway Org",
                "created_at": now,
                "updated_at": now,
                "capabilities": ["claude_pro", "scale_tier_usage_api", "raw_output"],
                "active_flags": [],
                "api_key_role": None,
            }
        ]

    @app.get("/v1/plans")
    async def plans() -> dict[str, Any]:
        return {"type": "plan", "id": "plan_janus_local", "name": "Scale", "created_at": _utc_now()}

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(version=__version__)

    return app


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
