"""kdbximport - Turn KeePass XML exports into encrypted KDBX 4 databases.

The pipeline is: collect key factors into a CompositeKey, import the XML
export into a Database, save it. Saving is atomic: the target file either
keeps its old contents or holds the complete new database.

Example:
    from kdbximport import CompositeKey, Database, KeySource

    key = CompositeKey().add_factor(KeySource.password("secret"))
    db = Database()
    db.set_key(key)
    db.import_xml("export.xml")
    db.save("vault.kdbx")
"""

__version__ = "0.1.0"

from .database import Database, LifecycleState
from .exceptions import (
    AlreadyExistsError,
    AuthenticationError,
    CorruptedDataError,
    CredentialError,
    CryptoError,
    DecryptionError,
    DocumentImportError,
    EmptyKeyError,
    FormatError,
    InvalidKeyFileError,
    InvalidSignatureError,
    KdbxError,
    KdfError,
    KeyNotSetError,
    PathError,
    PersistenceError,
    SourceLocation,
    UnknownCipherError,
    UnsupportedVersionError,
    WriteError,
)
from .importer import XmlImporter
from .models import DatabaseSettings, Entry, EntryTree, Group, Times
from .security import (
    Argon2Config,
    Cipher,
    CompositeKey,
    KdfType,
    KeySource,
    KeySourceKind,
)

__all__ = [
    # Core classes
    "Argon2Config",
    "Cipher",
    "CompositeKey",
    "Database",
    "DatabaseSettings",
    "Entry",
    "EntryTree",
    "Group",
    "KdfType",
    "KeySource",
    "KeySourceKind",
    "LifecycleState",
    "Times",
    "XmlImporter",
    # Exceptions
    "KdbxError",
    "FormatError",
    "InvalidSignatureError",
    "UnsupportedVersionError",
    "CorruptedDataError",
    "CryptoError",
    "DecryptionError",
    "AuthenticationError",
    "KdfError",
    "UnknownCipherError",
    "CredentialError",
    "EmptyKeyError",
    "KeyNotSetError",
    "InvalidKeyFileError",
    "DocumentImportError",
    "SourceLocation",
    "PersistenceError",
    "PathError",
    "AlreadyExistsError",
    "WriteError",
]
