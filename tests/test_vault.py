"""Unit tests for the secret vault."""

import pytest

from totpgate.service.errors import CryptoError, DecryptionError
from totpgate.service.vault import SecretVault


@pytest.fixture
def vault():
    return SecretVault("vault-key-for-tests-only")


class TestSecretVault:
    def test_round_trip(self, vault):
        for value in ("JBSWY3DPEHPK3PXP", "A1B2C3D4", "päss wörd ✓"):
            assert vault.decrypt(vault.encrypt(value)) == value

    def test_fresh_iv_per_encryption(self, vault):
        """The same plaintext never encrypts to the same ciphertext twice."""
        first = vault.encrypt("JBSWY3DPEHPK3PXP")
        second = vault.encrypt("JBSWY3DPEHPK3PXP")
        assert first != second
        assert "JBSWY3DPEHPK3PXP" not in first

    def test_empty_string_short_circuits(self, vault):
        assert vault.encrypt("") == ""
        assert vault.decrypt("") == ""

    def test_tampered_ciphertext_raises(self, vault):
        token = vault.encrypt("JBSWY3DPEHPK3PXP")
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")
        with pytest.raises(DecryptionError):
            vault.decrypt(tampered)

    def test_garbage_ciphertext_raises_crypto_error(self, vault):
        with pytest.raises(CryptoError):
            vault.decrypt("not-a-fernet-token")

    def test_wrong_key_cannot_decrypt(self, vault):
        other = SecretVault("some-other-key")
        with pytest.raises(DecryptionError):
            other.decrypt(vault.encrypt("JBSWY3DPEHPK3PXP"))

    def test_missing_key_material_rejected(self):
        with pytest.raises(ValueError):
            SecretVault("")
