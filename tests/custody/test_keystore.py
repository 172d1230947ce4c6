"""Tests for encrypted agent-key envelopes."""

from __future__ import annotations

import json
import logging

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from limit_order_agent.custody.keystore import (
    CURRENT_VERSION,
    LEGACY_STATIC_SALT,
    LEGACY_VERSION,
    EncryptedKey,
    KeyCipher,
    KeyDecryptionError,
    is_weak_passphrase,
)

PASSPHRASE = "correct horse battery staple, but much longer"
PRIVATE_KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


@pytest.fixture(scope="module")
def cipher() -> KeyCipher:
    return KeyCipher(PASSPHRASE)


def _legacy_encrypt(passphrase: str, plaintext: str, iv: bytes) -> bytes:
    """Encrypt the way version-1 records were written (static salt)."""
    key = Scrypt(salt=LEGACY_STATIC_SALT, length=32, n=2**14, r=8, p=1).derive(passphrase.encode())
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode()) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


class TestKeyCipher:
    def test_encrypt_decrypt(self, cipher: KeyCipher) -> None:
        envelope = cipher.encrypt(PRIVATE_KEY)

        assert envelope.version == CURRENT_VERSION
        assert len(envelope.salt) == 16
        assert len(envelope.iv) == 16
        assert PRIVATE_KEY.encode() not in envelope.ciphertext
        assert cipher.decrypt(envelope) == PRIVATE_KEY

    def test_fresh_salt_per_key(self, cipher: KeyCipher) -> None:
        first = cipher.encrypt(PRIVATE_KEY)
        second = cipher.encrypt(PRIVATE_KEY)
        assert first.salt != second.salt
        assert first.ciphertext != second.ciphertext

    def test_wrong_passphrase(self, cipher: KeyCipher) -> None:
        envelope = cipher.encrypt(PRIVATE_KEY)
        other = KeyCipher("a different but equally long passphrase!!")
        with pytest.raises(KeyDecryptionError):
            other.decrypt(envelope)

    def test_empty_passphrase_rejected(self) -> None:
        with pytest.raises(ValueError):
            KeyCipher("")

    def test_weak_passphrase_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="limit_order_agent.custody.keystore"):
            KeyCipher("nadfun-limit-order-default-key-32b")
        assert "weak" in caplog.text


def test_is_weak_passphrase() -> None:
    assert is_weak_passphrase("short") is True
    assert is_weak_passphrase("nadfun-limit-order-change-me-32b") is True
    assert is_weak_passphrase("x" * 32) is False


class TestEnvelopeFormat:
    def test_json_round_trip(self, cipher: KeyCipher) -> None:
        envelope = cipher.encrypt(PRIVATE_KEY)
        raw = envelope.to_json()

        payload = json.loads(raw)
        assert payload["version"] == CURRENT_VERSION
        assert EncryptedKey.from_json(raw) == envelope

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            json.dumps({"version": 2, "salt": "00", "iv": "00" * 16}),
            json.dumps({"version": 3, "salt": "00", "iv": "00" * 16, "ciphertext": "00"}),
            json.dumps({"version": 2, "salt": "00", "iv": "00" * 8, "ciphertext": "00"}),
            json.dumps({"version": 2, "salt": "zz", "iv": "00" * 16, "ciphertext": "00"}),
        ],
    )
    def test_malformed_envelopes(self, raw: str) -> None:
        with pytest.raises(KeyDecryptionError):
            EncryptedKey.from_json(raw)


class TestLegacyRecords:
    def test_three_part_record_is_current_version(self) -> None:
        envelope = EncryptedKey.from_legacy(f"{'11' * 16}:{'22' * 16}:{'33' * 32}")
        assert envelope.version == CURRENT_VERSION
        assert envelope.salt == bytes.fromhex("11" * 16)

    def test_two_part_record_uses_static_salt(self) -> None:
        iv = bytes(range(16))
        ciphertext = _legacy_encrypt(PASSPHRASE, PRIVATE_KEY, iv)

        envelope = EncryptedKey.from_legacy(f"{iv.hex()}:{ciphertext.hex()}")

        assert envelope.version == LEGACY_VERSION
        assert envelope.salt == LEGACY_STATIC_SALT
        assert KeyCipher(PASSPHRASE).decrypt(envelope) == PRIVATE_KEY

    @pytest.mark.parametrize("raw", ["deadbeef", "a:b:c:d", "zz:00"])
    def test_rejects_other_shapes(self, raw: str) -> None:
        with pytest.raises(KeyDecryptionError):
            EncryptedKey.from_legacy(raw)
