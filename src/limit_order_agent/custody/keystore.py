"""Encrypted agent-key envelopes.

Keys are encrypted with AES-256-CBC under a key derived from the
configured passphrase with scrypt (N=2**14, r=8, p=1). The stored form is
a versioned JSON envelope:

- version 2: random 16-byte salt per key (the only format written)
- version 1: records from the older colon-delimited ``iv:ciphertext``
  format, which used one static salt; accepted only after explicit
  conversion with :meth:`EncryptedKey.from_legacy`
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger(__name__)

CURRENT_VERSION = 2
LEGACY_VERSION = 1
LEGACY_STATIC_SALT = b"nadfun-salt"

SALT_BYTES = 16
IV_BYTES = 16
KEY_BYTES = 32
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1

MIN_PASSPHRASE_LENGTH = 32
WEAK_PASSPHRASES = frozenset(
    {
        "nadfun-limit-order-default-key-32b",
        "nadfun-limit-order-change-me-32b",
    }
)


class KeyDecryptionError(Exception):
    """Raised when an envelope cannot be parsed or decrypted."""


@dataclass(frozen=True)
class EncryptedKey:
    """Versioned ciphertext envelope for an agent private key."""

    version: int
    salt: bytes
    iv: bytes
    ciphertext: bytes

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "salt": self.salt.hex(),
                "iv": self.iv.hex(),
                "ciphertext": self.ciphertext.hex(),
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> EncryptedKey:
        """Parse a stored envelope.

        Raises:
            KeyDecryptionError: If the envelope is malformed or has an
                unknown version.
        """
        try:
            payload = json.loads(raw)
            version = int(payload["version"])
            salt = bytes.fromhex(payload["salt"])
            iv = bytes.fromhex(payload["iv"])
            ciphertext = bytes.fromhex(payload["ciphertext"])
        except (ValueError, KeyError, TypeError) as e:
            raise KeyDecryptionError(f"Malformed key envelope: {e}") from e
        if version not in (LEGACY_VERSION, CURRENT_VERSION):
            raise KeyDecryptionError(f"Unsupported key envelope version {version}")
        if len(iv) != IV_BYTES:
            raise KeyDecryptionError("Key envelope IV must be 16 bytes")
        return cls(version=version, salt=salt, iv=iv, ciphertext=ciphertext)

    @classmethod
    def from_legacy(cls, raw: str) -> EncryptedKey:
        """Convert a colon-delimited record into an envelope.

        ``salt:iv:ciphertext`` becomes version 2 and ``iv:ciphertext``
        becomes version 1 with the static legacy salt.
        """
        parts = raw.split(":")
        try:
            if len(parts) == 3:
                return cls(
                    version=CURRENT_VERSION,
                    salt=bytes.fromhex(parts[0]),
                    iv=bytes.fromhex(parts[1]),
                    ciphertext=bytes.fromhex(parts[2]),
                )
            if len(parts) == 2:
                return cls(
                    version=LEGACY_VERSION,
                    salt=LEGACY_STATIC_SALT,
                    iv=bytes.fromhex(parts[0]),
                    ciphertext=bytes.fromhex(parts[1]),
                )
        except ValueError as e:
            raise KeyDecryptionError(f"Malformed legacy key record: {e}") from e
        raise KeyDecryptionError(f"Legacy key record must have 2 or 3 parts, got {len(parts)}")


def is_weak_passphrase(passphrase: str) -> bool:
    return passphrase in WEAK_PASSPHRASES or len(passphrase) < MIN_PASSPHRASE_LENGTH


class KeyCipher:
    """Encrypts and decrypts agent keys with one passphrase."""

    def __init__(self, passphrase: str) -> None:
        if not passphrase:
            raise ValueError("Encryption passphrase must not be empty")
        if is_weak_passphrase(passphrase):
            logger.warning("Agent key encryption passphrase is weak; set a long random CUSTODY_ENCRYPTION_KEY")
        self._passphrase = passphrase.encode()

    def _derive(self, salt: bytes) -> bytes:
        kdf = Scrypt(salt=salt, length=KEY_BYTES, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
        return kdf.derive(self._passphrase)

    def encrypt(self, private_key: str) -> EncryptedKey:
        salt = os.urandom(SALT_BYTES)
        iv = os.urandom(IV_BYTES)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(private_key.encode()) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._derive(salt)), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return EncryptedKey(version=CURRENT_VERSION, salt=salt, iv=iv, ciphertext=ciphertext)

    def decrypt(self, envelope: EncryptedKey) -> str:
        """Recover the private key.

        Raises:
            KeyDecryptionError: On a wrong passphrase or corrupted data.
        """
        decryptor = Cipher(algorithms.AES(self._derive(envelope.salt)), modes.CBC(envelope.iv)).decryptor()
        try:
            padded = decryptor.update(envelope.ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode()
        except (ValueError, UnicodeDecodeError) as e:
            raise KeyDecryptionError("Agent key decryption failed") from e
