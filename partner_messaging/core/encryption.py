"""
Credential vault

AES-256-GCM encryption for secrets stored at rest (partner tokens). Records
are kept as hex strings split into ciphertext, iv and auth tag so they map
directly onto database columns. A tampered or corrupted record always fails
with DecryptionError; it never decrypts to different plaintext.
"""
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from partner_messaging.core.exceptions import (
    ConfigurationError,
    DecryptionError,
    EncryptionError,
)

logger = logging.getLogger(__name__)

ASSOCIATED_DATA = b"partner-token"
KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


@dataclass(frozen=True)
class EncryptedSecret:
    """Hex-encoded AES-GCM output"""
    ciphertext: str
    iv: str
    auth_tag: str

    def to_dict(self) -> Dict[str, str]:
        return {"ciphertext": self.ciphertext, "iv": self.iv, "auth_tag": self.auth_tag}


class CredentialVault:
    """Authenticated symmetric encryption for secrets at rest."""

    def __init__(self, hex_key: Optional[str], associated_data: bytes = ASSOCIATED_DATA):
        if not hex_key:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not set")
        try:
            key = bytes.fromhex(hex_key)
        except ValueError:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEY must be hex encoded")
        if len(key) != KEY_BYTES:
            raise ConfigurationError(
                f"TOKEN_ENCRYPTION_KEY must decode to {KEY_BYTES} bytes, got {len(key)}"
            )
        self._aead = AESGCM(key)
        self._associated_data = associated_data

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        """
        Encrypt a secret.

        Args:
            plaintext: Secret to protect

        Returns:
            EncryptedSecret with hex ciphertext, iv and auth tag

        Raises:
            EncryptionError: If encryption fails
        """
        try:
            nonce = os.urandom(NONCE_BYTES)
            sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), self._associated_data)
        except Exception as e:
            logger.error(f"Secret encryption failed: {type(e).__name__}")
            raise EncryptionError(f"Failed to encrypt secret: {type(e).__name__}")

        return EncryptedSecret(
            ciphertext=sealed[:-TAG_BYTES].hex(),
            iv=nonce.hex(),
            auth_tag=sealed[-TAG_BYTES:].hex()
        )

    def decrypt(self, record: EncryptedSecret) -> str:
        """
        Decrypt and authenticate a stored secret.

        Args:
            record: Encrypted secret as produced by encrypt()

        Returns:
            The original plaintext

        Raises:
            DecryptionError: If the record was tampered with or is malformed
        """
        try:
            nonce = bytes.fromhex(record.iv)
            sealed = bytes.fromhex(record.ciphertext) + bytes.fromhex(record.auth_tag)
            plaintext = self._aead.decrypt(nonce, sealed, self._associated_data)
        except InvalidTag:
            raise DecryptionError("Authentication tag mismatch")
        except (ValueError, TypeError) as e:
            raise DecryptionError(f"Malformed encrypted record: {e}")

        return plaintext.decode("utf-8")

    def self_test(self) -> bool:
        """Boot-time sanity check that the configured key round-trips."""
        sample = "vault-self-test"
        return self.decrypt(self.encrypt(sample)) == sample
