"""Key stretching for the composite key.

The outer header names the KDF and carries its parameters. Databases this
package creates always use Argon2 (Argon2id unless configured otherwise).
AES-KDF is understood so that files from older KeePass versions can be
opened; re-saving such a file keeps its KDF.

Argon2 minimums are enforced when writing and only warned about when
reading. Every derived key comes back as SecureBytes.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from enum import Enum

from argon2.low_level import Type as Argon2Type
from argon2.low_level import hash_secret_raw
from Cryptodome.Cipher import AES

from kdbximport.exceptions import KdfError

from .memory import SecureBytes


class KdfType(Enum):
    """KDF identifiers as stored in the header's variant dictionary."""

    ARGON2D = bytes.fromhex("ef636ddf8c29444b91f7a9a403e30a0c")
    ARGON2ID = bytes.fromhex("9e298b1956db4773b23dfc3ec6f0a1e6")
    AES_KDF = bytes.fromhex("c9d9f39a628a4460bf740d08c18a4fea")

    @classmethod
    def from_uuid(cls, uuid_bytes: bytes) -> KdfType:
        """Look up a KDF by its UUID.

        Raises:
            KdfError: If the UUID is not a known KDF
        """
        try:
            return cls(uuid_bytes)
        except ValueError:
            raise KdfError(f"Unknown KDF UUID: {uuid_bytes.hex()}") from None


ARGON2_MIN_MEMORY_KIB = 16 * 1024
ARGON2_MIN_ITERATIONS = 3
ARGON2_MIN_PARALLELISM = 1

# Argon2 version 1.3, the only one KeePass writes
ARGON2_VERSION = 0x13

_ARGON2_TYPES = {
    KdfType.ARGON2D: Argon2Type.D,
    KdfType.ARGON2ID: Argon2Type.ID,
}


@dataclass(frozen=True, slots=True)
class Argon2Config:
    """Argon2 parameters.

    Attributes:
        memory_kib: Memory cost in KiB
        iterations: Time cost
        parallelism: Number of lanes
        salt: Random salt, at least 16 bytes; doubles as the
            hardware-token challenge
        variant: KdfType.ARGON2ID or KdfType.ARGON2D
    """

    memory_kib: int
    iterations: int
    parallelism: int
    salt: bytes
    variant: KdfType = KdfType.ARGON2ID

    def __post_init__(self) -> None:
        if self.variant not in _ARGON2_TYPES:
            raise ValueError(f"Invalid Argon2 variant: {self.variant}")
        if len(self.salt) < 16:
            raise ValueError("Argon2 salt must be at least 16 bytes")

    def validate_security(self) -> None:
        """Reject parameters below the minimums.

        Raises:
            KdfError: Listing every parameter that is too low
        """
        checks = (
            ("Memory", self.memory_kib, ARGON2_MIN_MEMORY_KIB, " KiB"),
            ("Iterations", self.iterations, ARGON2_MIN_ITERATIONS, ""),
            ("Parallelism", self.parallelism, ARGON2_MIN_PARALLELISM, ""),
        )
        issues = [
            f"{name} {value}{unit} is below minimum {minimum}{unit}"
            for name, value, minimum, unit in checks
            if value < minimum
        ]
        if issues:
            raise KdfError("Weak Argon2 parameters: " + "; ".join(issues))

    @classmethod
    def standard(cls, salt: bytes | None = None) -> Argon2Config:
        """64 MiB, 3 iterations, 4 lanes."""
        return cls(
            memory_kib=64 * 1024,
            iterations=3,
            parallelism=4,
            salt=salt if salt is not None else os.urandom(32),
        )

    @classmethod
    def fast(cls, salt: bytes | None = None) -> Argon2Config:
        """Smallest parameters that still pass validate_security().

        Meant for tests and throwaway databases.
        """
        return cls(
            memory_kib=ARGON2_MIN_MEMORY_KIB,
            iterations=ARGON2_MIN_ITERATIONS,
            parallelism=2,
            salt=salt if salt is not None else os.urandom(32),
        )

    @classmethod
    def default(cls, salt: bytes | None = None) -> Argon2Config:
        return cls.standard(salt=salt)


@dataclass(frozen=True, slots=True)
class AesKdfConfig:
    """Legacy AES-KDF parameters, as found in older files.

    Attributes:
        rounds: Number of AES-ECB rounds
        salt: 32-byte AES key used for the rounds
    """

    rounds: int
    salt: bytes

    def __post_init__(self) -> None:
        if len(self.salt) != 32:
            raise ValueError("AES-KDF salt must be exactly 32 bytes")
        if self.rounds < 1:
            raise ValueError("AES-KDF rounds must be at least 1")


def derive_key_argon2(
    password: bytes,
    config: Argon2Config,
    *,
    enforce_minimums: bool = True,
) -> SecureBytes:
    """Stretch a composite key with Argon2.

    Args:
        password: 32-byte composite key
        config: Argon2 parameters
        enforce_minimums: Reject weak parameters instead of using them

    Raises:
        KdfError: If enforce_minimums is set and the parameters are weak
    """
    if enforce_minimums:
        config.validate_security()

    return SecureBytes(
        hash_secret_raw(
            secret=password,
            salt=config.salt,
            time_cost=config.iterations,
            memory_cost=config.memory_kib,
            parallelism=config.parallelism,
            hash_len=32,
            type=_ARGON2_TYPES[config.variant],
            version=ARGON2_VERSION,
        )
    )


def derive_key_aes_kdf(password: bytes, config: AesKdfConfig) -> SecureBytes:
    """Stretch a composite key with AES-KDF.

    Raises:
        KdfError: If the input is not 32 bytes
    """
    if len(password) != 32:
        raise KdfError("AES-KDF requires 32-byte input")

    ecb = AES.new(config.salt, AES.MODE_ECB)
    block = bytearray(password)
    for _ in range(config.rounds):
        block[:] = ecb.encrypt(bytes(block))

    try:
        return SecureBytes(hashlib.sha256(block).digest())
    finally:
        block[:] = bytes(len(block))
