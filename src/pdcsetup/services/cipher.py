"""Symmetric encryption of stored connection strings."""

import base64
import binascii
import hashlib
import os
from enum import Enum
from functools import lru_cache
from typing import Optional

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from pdcsetup.constants import DEFAULT_CRYPTO_KEY
from pdcsetup.errors import CipherError


class CipherStrength(Enum):
    AES128 = 16
    AES192 = 24
    AES256 = 32


@lru_cache(maxsize=8)
def _derive_key(key: str, strength: CipherStrength) -> bytes:
    # Salt is bound to the key so the same key always yields the same material.
    salt = hashlib.sha256(f"pdcsetup:{key}".encode("utf-8")).digest()
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=strength.value,
        salt=salt,
        iterations=CredentialCipher.ITERATIONS,
    )
    return kdf.derive(key.encode("utf-8"))


class CredentialCipher:
    """AES-CBC with PKCS7 padding; output is base64(iv + ciphertext)."""

    IV_LENGTH = 16
    ITERATIONS = 100000

    def __init__(
        self,
        key: str = DEFAULT_CRYPTO_KEY,
        strength: CipherStrength = CipherStrength.AES256,
    ):
        self.key = key
        self.strength = strength

    def encrypt(
        self,
        plaintext: str,
        key: Optional[str] = None,
        strength: Optional[CipherStrength] = None,
    ) -> str:
        material = _derive_key(key or self.key, strength or self.strength)
        iv = os.urandom(self.IV_LENGTH)
        encryptor = Cipher(algorithms.AES(material), modes.CBC(iv)).encryptor()

        padder = padding.PKCS7(128).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encrypted = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(iv + encrypted).decode("ascii")

    def decrypt(
        self,
        ciphertext: str,
        key: Optional[str] = None,
        strength: Optional[CipherStrength] = None,
    ) -> str:
        material = _derive_key(key or self.key, strength or self.strength)
        try:
            raw = base64.b64decode(ciphertext.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise CipherError(f"Encrypted connection string is not valid base64: {exc}") from exc

        if len(raw) <= self.IV_LENGTH or (len(raw) - self.IV_LENGTH) % self.IV_LENGTH:
            raise CipherError("Encrypted connection string has an invalid length.")

        iv, encrypted = raw[: self.IV_LENGTH], raw[self.IV_LENGTH :]
        decryptor = Cipher(algorithms.AES(material), modes.CBC(iv)).decryptor()
        try:
            padded = decryptor.update(encrypted) + decryptor.finalize()
            unpadder = padding.PKCS7(128).unpadder()
            data = unpadder.update(padded) + unpadder.finalize()
            return data.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise CipherError(
                "Could not decrypt connection string. The key or strength does not match."
            ) from exc
