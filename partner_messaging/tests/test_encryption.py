"""
Tests for the credential vault
"""
import pytest

from partner_messaging.core.encryption import CredentialVault, EncryptedSecret
from partner_messaging.core.exceptions import ConfigurationError, DecryptionError
from partner_messaging.tests.conftest import TEST_ENCRYPTION_KEY


def flip_first_hex_digit(value: str) -> str:
    return ("1" if value[0] == "0" else "0") + value[1:]


class TestCredentialVault:
    """AES-GCM encryption of stored secrets"""

    def test_round_trip(self, vault):
        record = vault.encrypt("partner-token-abc")

        assert record.ciphertext != "partner-token-abc"
        assert len(record.iv) == 24
        assert len(record.auth_tag) == 32
        assert vault.decrypt(record) == "partner-token-abc"

    def test_fresh_iv_per_encryption(self, vault):
        first = vault.encrypt("same-secret")
        second = vault.encrypt("same-secret")

        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext

    def test_tampered_ciphertext_is_rejected(self, vault):
        record = vault.encrypt("partner-token-abc")
        tampered = EncryptedSecret(flip_first_hex_digit(record.ciphertext), record.iv, record.auth_tag)

        with pytest.raises(DecryptionError):
            vault.decrypt(tampered)

    def test_tampered_auth_tag_is_rejected(self, vault):
        record = vault.encrypt("partner-token-abc")
        tampered = EncryptedSecret(record.ciphertext, record.iv, flip_first_hex_digit(record.auth_tag))

        with pytest.raises(DecryptionError):
            vault.decrypt(tampered)

    def test_malformed_record_is_rejected(self, vault):
        record = vault.encrypt("partner-token-abc")

        with pytest.raises(DecryptionError, match="Malformed"):
            vault.decrypt(EncryptedSecret(record.ciphertext, "not-hex", record.auth_tag))

    def test_other_key_cannot_decrypt(self, vault):
        record = vault.encrypt("partner-token-abc")
        other = CredentialVault("f" * 64)

        with pytest.raises(DecryptionError):
            other.decrypt(record)

    def test_to_dict(self, vault):
        record = vault.encrypt("x")
        assert set(record.to_dict()) == {"ciphertext", "iv", "auth_tag"}

    def test_self_test(self, vault):
        assert vault.self_test() is True


class TestVaultKeyValidation:
    """The vault refuses to start without a usable key"""

    @pytest.mark.parametrize("key", [None, ""])
    def test_missing_key(self, key):
        with pytest.raises(ConfigurationError, match="not set"):
            CredentialVault(key)

    def test_non_hex_key(self):
        with pytest.raises(ConfigurationError, match="hex"):
            CredentialVault("z" * 64)

    def test_wrong_length_key(self):
        with pytest.raises(ConfigurationError, match="32 bytes"):
            CredentialVault(TEST_ENCRYPTION_KEY[:32])
