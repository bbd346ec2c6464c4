from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from janus_gateway.auth.token_store import EncryptedTokenStore
from janus_gateway.config import GatewaySettings


@pytest.fixture
def settings(tmp_path: Path) -> GatewaySettings:
    return GatewaySettings.from_env(
        {
            "JANUS_ENCRYPTION_KEY": "test-encryption-key-0123456789",
            "JANUS_SALT": "test-salt-abcdef",
            "JANUS_TOKEN_DIR": str(tmp_path / "tokens"),
            "JANUS_OPENAI_CLIENT_ID": "openai-client",
            "JANUS_GOOGLE_CLIENT_ID": "google-client",
            "JANUS_GOOGLE_CLIENT_SECRET": "google-secret",
            "JANUS_GOOGLE_PROJECT_ID": "project-123",
        }
    )


@pytest.fixture
def token_store(settings: GatewaySettings) -> EncryptedTokenStore:
    return EncryptedTokenStore(
        settings.token_dir,
        secret=settings.encryption_key or "",
        salt=settings.salt or "",
    )
