"""Credential encryption using AES-256-GCM with an scrypt-derived key."""

import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from calsync.config import Settings
from calsync.errors import AuthenticationError, ConfigurationError, FormatError

logger = logging.getLogger(__name__)

KEY_SALT = b"calsync-calendar-salt"
IV_LENGTH = 16
TAG_LENGTH = 16


def derive_key(secret: str) -> bytes:
    """Derive a 32-byte key from the configured secret (N=2**14, r=8, p=1)."""
    kdf = Scrypt(salt=KEY_SALT, length=32, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


class CredentialVault:
    """Encrypt and decrypt stored secrets (OAuth tokens, CalDAV passwords).

    The envelope is ``hex(iv):hex(tag):hex(ciphertext)``. The key is derived once
    when the vault is built, so a missing secret fails at startup rather than on
    the first sync.
    """

    def __init__(self, settings: Settings) -> None:
        secret = settings.calendar_encryption_key.get_secret_value()
        if not secret:
            raise ConfigurationError("CALENDAR_ENCRYPTION_KEY is not set")
        self._aead = AESGCM(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        if plaintext == "":
            return ""
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, envelope: str) -> str:
        if envelope == "":
            return ""
        parts = envelope.split(":")
        if len(parts) != 3:
            raise FormatError("Invalid encrypted data format")
        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise FormatError("Invalid encrypted data format") from e
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise FormatError("Invalid encrypted data format")
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise AuthenticationError("Credential authentication tag mismatch") from e
        return plaintext.decode("utf-8")

    def encrypt_optional(self, plaintext: str | None) -> str | None:
        return None if plaintext is None else self.encrypt(plaintext)

    def decrypt_optional(self, envelope: str | None) -> str | None:
        return None if envelope is None else self.decrypt(envelope)


_vault: CredentialVault | None = None


def get_credential_vault(settings: Settings) -> CredentialVault:
    global _vault
    if _vault is None:
        _vault = CredentialVault(settings)
    return _vault
