"""Key factors and their reduction to one composite key.

A database key is built from independent factors: a password, a key file,
a hardware token. Each factor is a KeySource, a closed tagged variant:
a new factor kind is a KeySourceKind member plus a branch in
KeySource.raw_key and KeySource.digest.

The composite key is::

    SHA-256(digest(factor_1) || digest(factor_2) || ... || digest(factor_n))

with factors in insertion order. Per-factor digests follow KeePass:
- password: SHA-256 of the UTF-8 bytes
- key file: KeePass key-file reduction (XML v1/v2, raw 32-byte, 64-char hex,
  otherwise SHA-256 of the contents)
- challenge-response: SHA-256 of the token's response to the KDF salt

The result is what the KDF stretches; it is never logged or cached beyond
the SecureBytes returned to the caller.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as DefusedET

from kdbximport.exceptions import (
    CredentialError,
    EmptyKeyError,
    InvalidKeyFileError,
)

from .challenge_response import ChallengeResponseProvider
from .crypto import constant_time_compare
from .memory import SecureBytes


class KeySourceKind(Enum):
    """The closed set of factor kinds."""

    PASSWORD = "password"
    KEY_FILE = "key_file"
    CHALLENGE_RESPONSE = "challenge_response"


def process_keyfile(keyfile_data: bytes) -> bytes:
    """Reduce key file contents to a 32-byte key, the way KeePass does.

    Formats, tried in order:
    1. XML key file v1.0 (base64 key) or v2.0 (hex key with a 4-byte hash)
    2. exactly 32 bytes: used as-is
    3. exactly 64 hex characters: decoded
    4. anything else: SHA-256 of the contents

    Raises:
        InvalidKeyFileError: If a v2.0 XML key file fails its hash check
    """
    key = _parse_xml_keyfile(keyfile_data)
    if key is not None:
        return key

    if len(keyfile_data) == 32:
        return keyfile_data

    if len(keyfile_data) == 64:
        try:
            return bytes.fromhex(keyfile_data.decode("ascii"))
        except (ValueError, UnicodeDecodeError):
            pass  # Not hex

    return hashlib.sha256(keyfile_data).digest()


def _parse_xml_keyfile(keyfile_data: bytes) -> bytes | None:
    """Return the key from an XML key file, or None if it isn't one."""
    if not keyfile_data.lstrip().startswith(b"<"):
        return None
    try:
        tree = DefusedET.fromstring(keyfile_data)
    except (DefusedET.ParseError, DefusedXmlException):
        return None

    version_elem = tree.find("Meta/Version")
    data_elem = tree.find("Key/Data")
    if version_elem is None or data_elem is None:
        return None

    version = (version_elem.text or "").strip()
    text = "".join((data_elem.text or "").split())
    try:
        if version.startswith("1.0"):
            return base64.b64decode(text, validate=True)
        if version.startswith("2.0"):
            key_bytes = bytes.fromhex(text)
            if "Hash" in data_elem.attrib:
                expected = bytes.fromhex(data_elem.attrib["Hash"])
                computed = hashlib.sha256(key_bytes).digest()[:4]
                if not constant_time_compare(expected, computed):
                    raise InvalidKeyFileError("Keyfile hash verification failed")
            return key_bytes
    except (binascii.Error, ValueError) as e:
        raise InvalidKeyFileError(f"Malformed XML keyfile: {e}") from e
    raise InvalidKeyFileError(f"Unsupported XML keyfile version: {version}")


@dataclass(frozen=True, eq=False, slots=True)
class KeySource:
    """One key factor.

    Build instances with the classmethod constructors rather than directly.

    Attributes:
        kind: Which factor this is
        material: Password bytes or key file bytes (empty for tokens)
        provider: Challenge-response provider (tokens only)
    """

    kind: KeySourceKind
    material: bytes = b""
    provider: ChallengeResponseProvider | None = None

    @classmethod
    def password(cls, password: str) -> KeySource:
        return cls(KeySourceKind.PASSWORD, password.encode("utf-8"))

    @classmethod
    def key_file(cls, data: bytes) -> KeySource:
        return cls(KeySourceKind.KEY_FILE, bytes(data))

    @classmethod
    def key_file_path(cls, path: str | Path) -> KeySource:
        """Read a key file from disk.

        Raises:
            FileNotFoundError: If the key file doesn't exist
        """
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Keyfile not found: {path}")
        return cls.key_file(path.read_bytes())

    @classmethod
    def challenge_response(cls, provider: ChallengeResponseProvider) -> KeySource:
        if not isinstance(provider, ChallengeResponseProvider):
            raise TypeError("provider must implement challenge_response()")
        return cls(KeySourceKind.CHALLENGE_RESPONSE, provider=provider)

    @property
    def needs_challenge(self) -> bool:
        return self.kind is KeySourceKind.CHALLENGE_RESPONSE

    def raw_key(self, challenge: bytes | None = None) -> bytes:
        """Produce this factor's raw key bytes.

        Args:
            challenge: Challenge for hardware tokens; ignored otherwise

        Raises:
            CredentialError: If a token factor is asked without a challenge
        """
        if self.kind is KeySourceKind.PASSWORD:
            return self.material
        elif self.kind is KeySourceKind.KEY_FILE:
            return process_keyfile(self.material)
        elif self.kind is KeySourceKind.CHALLENGE_RESPONSE:
            if not challenge:
                raise CredentialError("Hardware key factor requires a challenge")
            assert self.provider is not None
            response = self.provider.challenge_response(challenge)
            try:
                return response.data
            finally:
                response.zeroize()
        raise ValueError(f"Unknown key source kind: {self.kind}")

    def digest(self, challenge: bytes | None = None) -> bytes:
        """Produce this factor's 32-byte contribution to the composite key."""
        raw = self.raw_key(challenge)
        if self.kind is KeySourceKind.KEY_FILE:
            # Already reduced to 32 bytes by process_keyfile()
            return raw
        return hashlib.sha256(raw).digest()

    def __repr__(self) -> str:
        return f"KeySource({self.kind.value})"


class CompositeKey:
    """Ordered collection of key factors.

    Order matters: the same factors added in a different order derive a
    different key.

    Example:
        >>> key = CompositeKey()
        >>> key.add_factor(KeySource.password("secret"))
        >>> key.add_factor(KeySource.key_file_path("vault.key"))
        >>> raw = key.derive_key()
    """

    def __init__(self, factors: list[KeySource] | None = None) -> None:
        self._factors: list[KeySource] = []
        for factor in factors or []:
            self.add_factor(factor)

    def add_factor(self, source: KeySource) -> CompositeKey:
        """Append a factor.

        Raises:
            TypeError: If source is not a KeySource
        """
        if not isinstance(source, KeySource):
            raise TypeError(f"Expected KeySource, got {type(source).__name__}")
        self._factors.append(source)
        return self

    def is_empty(self) -> bool:
        return not self._factors

    @property
    def needs_challenge(self) -> bool:
        """True if any factor is a hardware token."""
        return any(f.needs_challenge for f in self._factors)

    def derive_key(self, challenge: bytes | None = None) -> SecureBytes:
        """Reduce all factors to one 32-byte key.

        Args:
            challenge: KDF salt, needed only when a hardware token is present

        Returns:
            32-byte composite key wrapped in SecureBytes

        Raises:
            EmptyKeyError: If no factors were added
        """
        if self.is_empty():
            raise EmptyKeyError()

        digests = bytearray()
        try:
            for factor in self._factors:
                digests += factor.digest(challenge)
            return SecureBytes(hashlib.sha256(digests).digest())
        finally:
            for i in range(len(digests)):
                digests[i] = 0

    def __len__(self) -> int:
        return len(self._factors)

    def __iter__(self) -> Iterator[KeySource]:
        return iter(self._factors)

    def __repr__(self) -> str:
        kinds = ", ".join(f.kind.value for f in self._factors)
        return f"CompositeKey([{kinds}])"
