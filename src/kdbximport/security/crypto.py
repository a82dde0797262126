"""Cipher selection and low-level cryptographic helpers.

The outer KDBX 4 payload is encrypted with one of two ciphers:
- AES-256-CBC (KeePass default, PKCS7 padded by the caller)
- ChaCha20 (12-byte nonce, no padding)

Twofish is not supported.
"""

from __future__ import annotations

import hashlib
import hmac
from enum import Enum

from Cryptodome.Cipher import AES, ChaCha20, Salsa20

from kdbximport.exceptions import UnknownCipherError

# Inner random stream IDs
PROTECTED_STREAM_SALSA20 = 2
PROTECTED_STREAM_CHACHA20 = 3

SALSA20_STREAM_NONCE = b"\xE8\x30\x09\x4B\x97\x20\x5D\x2A"


class Cipher(Enum):
    """Outer payload ciphers, keyed by their KDBX UUID."""

    AES256_CBC = bytes.fromhex("31c1f2e6bf714350be5805216afc5aff")
    CHACHA20 = bytes.fromhex("d6038a2b8b6f4cb5a524339a31dbb59a")

    @property
    def key_size(self) -> int:
        return 32

    @property
    def iv_size(self) -> int:
        """Size of the encryption IV stored in the outer header."""
        return 16 if self is Cipher.AES256_CBC else 12

    @property
    def display_name(self) -> str:
        return "AES-256-CBC" if self is Cipher.AES256_CBC else "ChaCha20"

    @classmethod
    def from_uuid(cls, uuid_bytes: bytes) -> Cipher:
        """Look up a cipher by its KDBX UUID.

        Raises:
            UnknownCipherError: If the UUID doesn't match a supported cipher
        """
        for cipher in cls:
            if cipher.value == uuid_bytes:
                return cipher
        raise UnknownCipherError(uuid_bytes)


class CipherContext:
    """One-shot encryption or decryption of a whole payload."""

    def __init__(self, cipher: Cipher, key: bytes, iv: bytes) -> None:
        if len(key) != cipher.key_size:
            raise ValueError(f"{cipher.display_name} requires a {cipher.key_size}-byte key")
        if len(iv) != cipher.iv_size:
            raise ValueError(f"{cipher.display_name} requires a {cipher.iv_size}-byte IV")
        self._cipher = cipher
        self._key = key
        self._iv = iv

    def _new(self):  # type: ignore[no-untyped-def]
        if self._cipher is Cipher.AES256_CBC:
            return AES.new(self._key, AES.MODE_CBC, iv=self._iv)
        return ChaCha20.new(key=self._key, nonce=self._iv)

    def encrypt(self, plaintext: bytes) -> bytes:
        if self._cipher is Cipher.AES256_CBC and len(plaintext) % 16:
            raise ValueError("AES-CBC plaintext must be padded to 16 bytes")
        return self._new().encrypt(plaintext)

    def decrypt(self, ciphertext: bytes) -> bytes:
        if self._cipher is Cipher.AES256_CBC and len(ciphertext) % 16:
            raise ValueError("AES-CBC ciphertext length is not a multiple of 16")
        return self._new().decrypt(ciphertext)


class ProtectedStreamCipher:
    """Stream cipher for protected values inside the XML payload.

    Each value marked Protected="True" is XOR'd with the next bytes of one
    keystream, in document order, so reader and writer must walk the
    values in the same order.
    """

    def __init__(self, stream_id: int, stream_key: bytes) -> None:
        """Initialize the stream cipher.

        Args:
            stream_id: Cipher type (2=Salsa20, 3=ChaCha20)
            stream_key: Key material from the inner header
        """
        if stream_id == PROTECTED_STREAM_CHACHA20:
            # ChaCha20: SHA-512 of key, first 32 bytes = key, bytes 32-44 = nonce
            key_hash = hashlib.sha512(stream_key).digest()
            self._cipher = ChaCha20.new(key=key_hash[:32], nonce=key_hash[32:44])
        elif stream_id == PROTECTED_STREAM_SALSA20:
            # Salsa20: SHA-256 of key, fixed nonce
            self._cipher = Salsa20.new(
                key=hashlib.sha256(stream_key).digest(), nonce=SALSA20_STREAM_NONCE
            )
        else:
            raise ValueError(f"Unknown protected stream cipher ID: {stream_id}")

    def decrypt(self, ciphertext: bytes) -> bytes:
        return self._cipher.decrypt(ciphertext)

    def encrypt(self, plaintext: bytes) -> bytes:
        return self._cipher.encrypt(plaintext)


def compute_hmac_sha256(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, hashlib.sha256).digest()


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """Compare two byte strings without leaking where they differ."""
    return hmac.compare_digest(a, b)

