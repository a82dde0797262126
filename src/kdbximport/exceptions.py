"""Custom exception hierarchy for kdbximport.

Every failure in the import pipeline surfaces as one of these exceptions.
The command layer is the only place that turns them into an exit code and
a single line on stderr; everything below it raises.

Exception Hierarchy:
    KdbxError (base)
    ├── FormatError
    │   ├── InvalidSignatureError
    │   ├── UnsupportedVersionError
    │   └── CorruptedDataError
    ├── CryptoError
    │   ├── DecryptionError
    │   ├── AuthenticationError
    │   ├── KdfError
    │   └── UnknownCipherError
    ├── CredentialError
    │   ├── EmptyKeyError
    │   │   └── KeyNotSetError
    │   └── InvalidKeyFileError
    ├── DocumentImportError
    └── PersistenceError
        ├── PathError
        ├── AlreadyExistsError
        └── WriteError

Security Note:
    Exception messages never include key material. Credential errors stay
    generic so they don't reveal which factor was wrong.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


class KdbxError(Exception):
    """Base exception for all kdbximport errors."""


# --- Format Errors ---


class FormatError(KdbxError):
    """Error in KDBX file format or structure."""


class InvalidSignatureError(FormatError):
    """The file doesn't start with the KDBX magic bytes."""

    def __init__(self, message: str = "Not a KDBX file (bad signature)") -> None:
        super().__init__(message)


class UnsupportedVersionError(FormatError):
    """Unsupported KDBX version."""

    def __init__(self, version_major: int, version_minor: int) -> None:
        self.version_major = version_major
        self.version_minor = version_minor
        super().__init__(
            f"Unsupported KDBX version: {version_major}.{version_minor}"
        )


class CorruptedDataError(FormatError):
    """Database file is corrupted or truncated."""


# --- Crypto Errors ---


class CryptoError(KdbxError):
    """Error in cryptographic operations."""


class DecryptionError(CryptoError):
    """Failed to decrypt database content.

    The message is kept generic to avoid confirming which credential
    component is incorrect.
    """

    def __init__(self, message: str = "Decryption failed") -> None:
        super().__init__(message)


class AuthenticationError(CryptoError):
    """HMAC or integrity verification failed."""

    def __init__(
        self, message: str = "Authentication failed - wrong credentials or corrupted data"
    ) -> None:
        super().__init__(message)


class KdfError(CryptoError):
    """Bad KDF parameters or an unsupported KDF."""


class UnknownCipherError(CryptoError):
    """Unknown or unsupported cipher algorithm."""

    def __init__(self, cipher_uuid: bytes) -> None:
        self.cipher_uuid = cipher_uuid
        super().__init__(f"Unknown cipher: {cipher_uuid.hex()}")


# --- Credential Errors ---


class CredentialError(KdbxError):
    """Error with database credentials."""


class EmptyKeyError(CredentialError):
    """A composite key with no factors was used for key derivation."""

    def __init__(self, message: str = "No key factors present") -> None:
        super().__init__(message)


class KeyNotSetError(EmptyKeyError):
    """The database was asked to save before a key was set."""

    def __init__(self, message: str = "No key is set") -> None:
        super().__init__(message)


class InvalidKeyFileError(CredentialError):
    """The keyfile is malformed or failed hash verification."""

    def __init__(self, message: str = "Invalid keyfile") -> None:
        super().__init__(message)


# --- Import Errors ---


@dataclass(frozen=True, slots=True)
class SourceLocation:
    """Where in the source document an import failed.

    Syntax errors carry a line and column from the XML parser. Structural
    and reference errors carry the element path instead, since the tree
    no longer knows its line numbers.
    """

    line: int | None = None
    column: int | None = None
    path: str | None = None

    def __str__(self) -> str:
        parts = []
        if self.line is not None:
            parts.append(f"line {self.line}")
            if self.column is not None:
                parts.append(f"column {self.column}")
        if self.path:
            parts.append(self.path)
        return ", ".join(parts)


class DocumentImportError(KdbxError):
    """The source document is malformed or violates the KeePass XML schema.

    Attributes:
        message: What went wrong, without the location
        location: Where it went wrong, if known
    """

    def __init__(self, message: str, location: SourceLocation | None = None) -> None:
        self.message = message
        self.location = location
        if location is not None and str(location):
            super().__init__(f"{message} ({location})")
        else:
            super().__init__(message)


# --- Persistence Errors ---


class PersistenceError(KdbxError):
    """Error while writing the database to disk.

    Attributes:
        path: The target path of the failed save
    """

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        super().__init__(message)


class PathError(PersistenceError):
    """The target's parent directory is missing or not writable."""


class AlreadyExistsError(PersistenceError):
    """The target exists and overwriting was not requested."""

    def __init__(self, path: Path) -> None:
        super().__init__(f"File {path} already exists", path)


class WriteError(PersistenceError):
    """IO failure while writing, flushing or renaming the database file."""
