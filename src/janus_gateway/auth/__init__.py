"""OAuth credential storage and lifecycle per upstream provider."""

from .lifecycle import CredentialManager, build_credential_managers, build_provider_config
from .models import CredentialState, OAuthProviderConfig, ProviderId, TokenRecord, is_token_valid
from .token_store import EncryptedTokenStore

__all__ = [
    "CredentialManager",
    "CredentialState",
    "EncryptedTokenStore",
    "OAuthProviderConfig",
    "ProviderId",
    "TokenRecord",
    "build_credential_managers",
    "build_provider_config",
    "is_token_valid",
]
