from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import ValidationError

from ..errors import ConfigurationError, CredentialStoreError
from .models import TokenRecord

logger = logging.getLogger(__name__)

IV_BYTES = 16
TAG_BYTES = 16
KEY_BYTES = 32
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


class EncryptedTokenStore:
    """Per-provider token records encrypted with AES-256-GCM under a scrypt-derived key."""

    def __init__(self, directory: str | Path, *, secret: str, salt: str) -> None:
        if not secret or not salt:
            raise ConfigurationError("token store requires both an encryption secret and a salt")
        self.directory = Path(directory).expanduser().resolve()
        self._cipher = AESGCM(derive_key(secret, salt))

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}-token.json"

    def save(self, key: str, record: TokenRecord) -> None:
        self._ensure_directory()
        plaintext = json.dumps(record.model_dump(mode="json", exclude_none=True), ensure_ascii=True)
        path = self.path_for(key)
        path.write_text(self._encrypt(plaintext.encode("utf-8")), encoding="utf-8")
        _chmod_private(path, 0o600)
        logger.debug("saved credential record key=%s path=%s", key, path)

    def load(self, key: str) -> TokenRecord | None:
        path = self.path_for(key)
        try:
            raw = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        plaintext = self._decrypt(raw, path)
        try:
            return TokenRecord.model_validate(json.loads(plaintext))
        except (ValueError, ValidationError) as exc:
            raise CredentialStoreError(f"credential file holds an invalid token record: {path}") from exc

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink()
        except FileNotFoundError:
            return
        logger.debug("deleted credential record key=%s", key)

    def _ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        _chmod_private(self.directory, 0o700)

    def _encrypt(self, plaintext: bytes) -> str:
        iv = os.urandom(IV_BYTES)
        sealed = self._cipher.encrypt(iv, plaintext, None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def _decrypt(self, raw: str, path: Path) -> str:
        parts = raw.split(":")
        if len(parts) != 3:
            raise CredentialStoreError(f"credential file is not in iv:tag:ciphertext format: {path}")
        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as exc:
            raise CredentialStoreError(f"credential file is not valid hex: {path}") from exc
        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise CredentialStoreError(f"credential file has a malformed iv or tag: {path}")
        try:
            plaintext = self._cipher.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CredentialStoreError(
                f"credential file failed authentication (corrupted, tampered, or wrong key): {path}"
            ) from exc
        return plaintext.decode("utf-8")


def derive_key(secret: str, salt: str) -> bytes:
    kdf = Scrypt(salt=salt.encode("utf-8"), length=KEY_BYTES, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(secret.encode("utf-8"))


def _chmod_private(path: Path, mode: int) -> None:
    try:
        path.chmod(mode)
    except OSError:
        pass
