from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone
from typing import Callable

import uvicorn

from janus_gateway import __version__
from janus_gateway.api.app import create_app
from janus_gateway.auth import (
    CredentialManager,
    EncryptedTokenStore,
    ProviderId,
    build_credential_managers,
)
from janus_gateway.config import GatewaySettings
from janus_gateway.errors import GatewayError

logger = logging.getLogger(__name__)

AUTH_TARGETS: dict[str, ProviderId] = {
    "codex": ProviderId.OPENAI_CODEX,
    "antigravity": ProviderId.GOOGLE_ANTIGRAVITY,
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _credential_managers(settings: GatewaySettings) -> dict[ProviderId, CredentialManager]:
    store = EncryptedTokenStore(settings.token_dir, secret=settings.encryption_key or "", salt=settings.salt or "")
    return build_credential_managers(settings, store)


def _format_expiry(expires_at: int | None) -> str:
    if expires_at is None:
        return "never"
    return datetime.fromtimestamp(expires_at / 1000, tz=timezone.utc).isoformat()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="janus-gateway",
        description="Local Anthropic Messages API gateway for OpenAI Codex and Google Antigravity.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Run the gateway HTTP server.")
    start.add_argument("--host", default=None, help="Bind host (default: JANUS_HOST or 127.0.0.1).")
    start.add_argument("--port", type=int, default=None, help="Bind port (default: JANUS_PORT or 4000).")

    auth = subparsers.add_parser("auth", help="Run the OAuth login flow for a provider.")
    auth.add_argument("provider", choices=sorted(AUTH_TARGETS), help="Provider to authenticate.")
    auth.add_argument(
        "--no-browser",
        action="store_true",
        help="Do not auto-open browser. Print URL and wait for callback.",
    )
    auth.add_argument(
        "--timeout-seconds",
        type=float,
        default=None,
        help="Max seconds to wait for the browser callback (default: wait until it arrives).",
    )

    subparsers.add_parser("status", help="Show stored credential state per provider.")
    return parser


def _run_start(args: argparse.Namespace, settings: GatewaySettings) -> int:
    host = args.host or settings.host
    port = args.port or settings.port
    app = create_app(settings)
    print(f"Janus gateway listening on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
    return 0


def _run_auth(args: argparse.Namespace, settings: GatewaySettings) -> int:
    provider = AUTH_TARGETS[args.provider]
    settings.validate_security()
    settings.validate_provider(provider.value)
    manager = _credential_managers(settings)[provider]

    print(f"Starting {provider.value} login. Callback URI: {manager.config.redirect_uri}")
    record = manager.login(open_browser=not args.no_browser, wait_timeout=args.timeout_seconds)
    print(
        "Login complete: "
        f"provider={provider.value}, expires_at={_format_expiry(record.expires_at)}, "
        f"token_path={manager.store.path_for(manager.store_key)}"
    )
    return 0


def _run_status(_: argparse.Namespace, settings: GatewaySettings) -> int:
    settings.validate_security()
    for provider, manager in _credential_managers(settings).items():
        info = manager.describe()
        print(
            f"{provider.value}: state={info['state']} "
            f"expires_at={_format_expiry(info['expires_at'])} "
            f"refresh_token={'yes' if info['has_refresh_token'] else 'no'}"
            + (f" access_token={info['access_token']}" if info["access_token"] else "")
        )
    return 0


COMMANDS: dict[str, Callable[[argparse.Namespace, GatewaySettings], int]] = {
    "start": _run_start,
    "auth": _run_auth,
    "status": _run_status,
}


def run(argv: list[str] | None = None, settings: GatewaySettings | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        settings = settings or GatewaySettings.from_env()
        _configure_logging(settings.log_level)
        return COMMANDS[args.command](args, settings)
    except GatewayError as exc:
        print(f"error: {exc}")
        return 1


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
