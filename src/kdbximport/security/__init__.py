"""Security-critical components for kdbximport.

This module contains all security-sensitive code including:
- Secure memory handling (SecureBytes)
- Key factors and composite key derivation
- Ciphers, HMAC and key derivation functions
- The challenge-response protocol for hardware tokens

All code in this module should be audited carefully.
"""

from .challenge_response import ChallengeResponseProvider
from .crypto import (
    PROTECTED_STREAM_CHACHA20,
    PROTECTED_STREAM_SALSA20,
    Cipher,
    CipherContext,
    ProtectedStreamCipher,
    compute_hmac_sha256,
    constant_time_compare,
)
from .kdf import (
    ARGON2_MIN_ITERATIONS,
    ARGON2_MIN_MEMORY_KIB,
    ARGON2_MIN_PARALLELISM,
    AesKdfConfig,
    Argon2Config,
    KdfType,
    derive_key_aes_kdf,
    derive_key_argon2,
)
from .keys import CompositeKey, KeySource, KeySourceKind, process_keyfile
from .memory import SecureBytes

__all__ = [
    # Memory
    "SecureBytes",
    # Keys
    "CompositeKey",
    "KeySource",
    "KeySourceKind",
    "process_keyfile",
    "ChallengeResponseProvider",
    # Crypto
    "PROTECTED_STREAM_CHACHA20",
    "PROTECTED_STREAM_SALSA20",
    "Cipher",
    "CipherContext",
    "ProtectedStreamCipher",
    "compute_hmac_sha256",
    "constant_time_compare",
    # KDF
    "ARGON2_MIN_ITERATIONS",
    "ARGON2_MIN_MEMORY_KIB",
    "ARGON2_MIN_PARALLELISM",
    "AesKdfConfig",
    "Argon2Config",
    "KdfType",
    "derive_key_aes_kdf",
    "derive_key_argon2",
]
