"""High-level Database API.

The Database owns the derived key, the current entry tree and where the
instance stands in its lifecycle:

    UNINITIALIZED --set_key--> KEYED --import_xml--> POPULATED --save--> PERSISTED

Importing is repeatable and replaces the tree; saving is repeatable. A
failed import or save is a self-loop: state, tree and dirty flag stay
exactly as they were.
"""

from __future__ import annotations

import base64
import logging
import os
import uuid as uuid_module
from collections.abc import Iterator
from enum import IntEnum
from pathlib import Path
from types import TracebackType
from typing import cast
from xml.etree.ElementTree import Element, SubElement, tostring

from .exceptions import CorruptedDataError, DocumentImportError, KeyNotSetError, PathError
from .importer import XmlImporter, encode_time, encode_uuid
from .models import DatabaseSettings, Entry, EntryTree, Group, Times
from .parsing import CompressionType, KdbxHeader
from .parsing.kdbx4 import InnerHeader, read_kdbx4, write_kdbx4
from .persistence import atomic_write, check_target
from .security import (
    PROTECTED_STREAM_CHACHA20,
    Argon2Config,
    Cipher,
    CompositeKey,
    ProtectedStreamCipher,
    SecureBytes,
)

logger = logging.getLogger(__name__)

# Size of the inner random stream key drawn for each save
INNER_STREAM_KEY_SIZE = 64


class LifecycleState(IntEnum):
    """How far a Database instance has progressed. Ordered."""

    UNINITIALIZED = 0
    KEYED = 1
    POPULATED = 2
    PERSISTED = 3


class Database:
    """An entry tree plus the key that encrypts it.

    Example usage:
        key = CompositeKey().add_factor(KeySource.password("secret"))

        db = Database()
        db.set_key(key)
        db.import_xml("export.xml")
        db.save("passwords.kdbx")

        # Reopen
        db = Database.open("passwords.kdbx", key)
        entries = db.find_entries(title="GitHub")
    """

    def __init__(
        self,
        tree: EntryTree | None = None,
        *,
        cipher: Cipher = Cipher.AES256_CBC,
        kdf_config: Argon2Config | None = None,
        compression: CompressionType = CompressionType.GZIP,
        header: KdbxHeader | None = None,
    ) -> None:
        """Create an empty, unkeyed database.

        Args:
            tree: Initial entry tree (an empty one if None)
            cipher: Outer payload cipher for saves
            kdf_config: Argon2 parameters for saves (standard preset if None)
            compression: Payload compression for saves
            header: Header of an opened file; overrides the three above
        """
        self._tree = tree or EntryTree.empty()
        self._header = header or KdbxHeader.create(
            cipher=cipher, kdf_config=kdf_config, compression=compression
        )
        self._key: SecureBytes | None = None
        self._state = LifecycleState.UNINITIALIZED
        self._populated = False
        self._dirty = False
        self._filepath: Path | None = None

    def __enter__(self) -> Database:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit context manager, zeroizing the key."""
        self.zeroize_key()

    def zeroize_key(self) -> None:
        """Overwrite and drop the stored key.

        The instance keeps its tree and state, but a later save fails
        with KeyNotSetError until set_key is called again.
        """
        if self._key is not None:
            self._key.zeroize()
            self._key = None

    # --- State ---

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def dirty(self) -> bool:
        """True when the tree has changes not yet saved."""
        return self._dirty

    @property
    def has_key(self) -> bool:
        return self._key is not None

    @property
    def tree(self) -> EntryTree:
        return self._tree

    @property
    def root_group(self) -> Group:
        return self._tree.root_group

    @property
    def settings(self) -> DatabaseSettings:
        return self._tree.settings

    @property
    def binaries(self) -> dict[int, bytes]:
        return self._tree.binaries

    @property
    def header(self) -> KdbxHeader:
        return self._header

    @property
    def filepath(self) -> Path | None:
        """Where the database was last opened from or saved to."""
        return self._filepath

    # --- Keying ---

    def set_key(self, composite_key: CompositeKey) -> None:
        """Derive and store the encryption key.

        A hardware-token factor is challenged with the database's KDF salt.
        Calling this again replaces the key; the state never moves back.

        Args:
            composite_key: The key factors

        Raises:
            EmptyKeyError: If the composite key has no factors
        """
        derived = composite_key.derive_key(challenge=self._header.kdf_salt)

        if self._key is not None:
            self._key.zeroize()
            if self._state >= LifecycleState.POPULATED:
                self._dirty = True
        self._key = derived

        if self._state is LifecycleState.UNINITIALIZED:
            self._state = LifecycleState.POPULATED if self._populated else LifecycleState.KEYED
        logger.debug("Key set with %d factor(s), state %s", len(composite_key), self._state.name)

    # --- Importing ---

    def import_xml(self, path: str | Path) -> None:
        """Replace the entry tree with the contents of a KeePass XML export.

        The new tree is built on the side and swapped in only when the
        whole document imported cleanly.

        Args:
            path: XML export to read

        Raises:
            DocumentImportError: If the file can't be read or is invalid;
                the current tree and state are unchanged
        """
        tree = XmlImporter().import_file(path)

        self._tree = tree
        self._populated = True
        self._dirty = True
        if self._state >= LifecycleState.KEYED:
            self._state = LifecycleState.POPULATED
        logger.info("Imported %s", path)

    # --- Opening databases ---

    @classmethod
    def open(cls, filepath: str | Path, composite_key: CompositeKey) -> Database:
        """Open an existing KDBX 4 database.

        Args:
            filepath: Path to the .kdbx file
            composite_key: Key factors the file was saved with

        Returns:
            Database instance in the PERSISTED state

        Raises:
            FileNotFoundError: If the file doesn't exist
            KdbxError: If the file is not a valid database or the key is wrong
        """
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"Database file not found: {filepath}")

        db = cls.open_bytes(filepath.read_bytes(), composite_key)
        db._filepath = filepath
        return db

    @classmethod
    def open_bytes(cls, data: bytes, composite_key: CompositeKey) -> Database:
        """Open a KDBX 4 database held in memory.

        Args:
            data: KDBX file contents
            composite_key: Key factors the file was saved with

        Returns:
            Database instance in the PERSISTED state
        """
        payload = read_kdbx4(data, composite_key)

        try:
            tree = XmlImporter(payload.inner_header).import_bytes(payload.xml_data)
        except DocumentImportError as e:
            payload.composite_key.zeroize()
            raise CorruptedDataError(f"Invalid database content: {e}") from e

        db = cls(tree, header=payload.header)
        db._key = payload.composite_key
        db._populated = True
        db._state = LifecycleState.PERSISTED
        return db

    # --- Saving databases ---

    def save(
        self,
        path: str | Path | None = None,
        *,
        overwrite: bool = False,
        backup: bool = False,
    ) -> None:
        """Encrypt the database and write it atomically.

        Args:
            path: Target file; None saves back to ``filepath`` in place
                (which implies overwrite)
            overwrite: Whether an existing target may be replaced
            backup: Keep the replaced file as ``<stem>.old<suffix>``

        Raises:
            KeyNotSetError: If no key has been set
            AlreadyExistsError: If the target exists and overwrite is False
            PathError: If the target directory is unusable
            WriteError: If an IO step fails; the target is unchanged
        """
        if self._key is None:
            raise KeyNotSetError()

        if path is None:
            if self._filepath is None:
                raise PathError("No path given and the database has no file path")
            path = self._filepath
            overwrite = True

        target = check_target(path, overwrite=overwrite)
        data = self.to_bytes()
        atomic_write(target, data, overwrite=overwrite, backup=backup)

        self._filepath = target
        self._state = LifecycleState.PERSISTED
        self._dirty = False

    def to_bytes(self) -> bytes:
        """Serialize the database to KDBX 4.

        A fresh master seed, IV and inner stream key are drawn every time;
        the KDF salt is kept so the stored key stays valid.

        Raises:
            KeyNotSetError: If no key has been set
        """
        if self._key is None:
            raise KeyNotSetError()

        self._header.renew_seeds()
        refs = {ref: index for index, ref in enumerate(sorted(self._tree.binaries))}
        inner_header = InnerHeader(
            random_stream_id=PROTECTED_STREAM_CHACHA20,
            random_stream_key=os.urandom(INNER_STREAM_KEY_SIZE),
            binaries={
                refs[ref]: (True, self._tree.binaries[ref]) for ref in sorted(self._tree.binaries)
            },
        )

        xml_data = self._build_xml(inner_header, refs)
        return write_kdbx4(
            header=self._header,
            inner_header=inner_header,
            xml_data=xml_data,
            composite_key=self._key.data,
        )

    # --- Search operations ---

    def find_entries(
        self,
        title: str | None = None,
        username: str | None = None,
        uuid: uuid_module.UUID | None = None,
        recursive: bool = True,
    ) -> list[Entry]:
        """Find entries matching criteria.

        Args:
            title: Match entries with this title
            username: Match entries with this username
            uuid: Match the entry with this UUID
            recursive: Search in subgroups

        Returns:
            List of matching entries
        """
        entries = self._tree.root_group.find_entries(
            title=title, username=username, recursive=recursive
        )
        if uuid is not None:
            entries = [entry for entry in entries if entry.uuid == uuid]
        return entries

    def find_groups(
        self,
        name: str | None = None,
        uuid: uuid_module.UUID | None = None,
        recursive: bool = True,
    ) -> list[Group]:
        groups = self._tree.root_group.find_groups(name=name, recursive=recursive)
        if uuid is not None:
            groups = [group for group in groups if group.uuid == uuid]
        return groups

    def iter_entries(self, recursive: bool = True) -> Iterator[Entry]:
        yield from self._tree.root_group.iter_entries(recursive=recursive)

    def iter_groups(self, recursive: bool = True) -> Iterator[Group]:
        yield from self._tree.root_group.iter_groups(recursive=recursive)

    def get_binary(self, ref: int) -> bytes | None:
        return self._tree.binaries.get(ref)

    def get_attachment(self, entry: Entry, name: str) -> bytes | None:
        """Get an attachment from an entry by filename."""
        for binary_ref in entry.binaries:
            if binary_ref.key == name:
                return self._tree.binaries.get(binary_ref.ref)
        return None

    # --- XML building ---

    def _build_xml(self, inner_header: InnerHeader, refs: dict[int, int]) -> bytes:
        """Build the KDBX XML payload from the tree.

        Args:
            inner_header: Supplies the stream key for protected values
            refs: Maps tree binary refs to inner-header positions
        """
        root = Element("KeePassFile")

        meta = SubElement(root, "Meta")
        self._build_meta(meta)

        root_elem = SubElement(root, "Root")
        self._build_group(root_elem, self._tree.root_group, refs)

        if self._tree.deleted_objects:
            deleted_elem = SubElement(root_elem, "DeletedObjects")
            for deleted_uuid, deletion_time in self._tree.deleted_objects:
                obj = SubElement(deleted_elem, "DeletedObject")
                SubElement(obj, "UUID").text = encode_uuid(deleted_uuid)
                SubElement(obj, "DeletionTime").text = encode_time(deletion_time)

        self._encrypt_protected_values(root, inner_header)

        return cast(bytes, tostring(root, encoding="utf-8", xml_declaration=True))

    def _encrypt_protected_values(self, root: Element, inner_header: InnerHeader) -> None:
        """Encrypt all protected values in the XML tree in document order."""
        cipher = ProtectedStreamCipher(
            inner_header.random_stream_id,
            inner_header.random_stream_key,
        )
        for elem in root.iter("Value"):
            if elem.get("Protected") == "True":
                ciphertext = cipher.encrypt((elem.text or "").encode("utf-8"))
                elem.text = base64.b64encode(ciphertext).decode("ascii")

    def _build_meta(self, meta: Element) -> None:
        s = self._tree.settings

        SubElement(meta, "Generator").text = s.generator
        SubElement(meta, "DatabaseName").text = s.database_name
        if s.database_description:
            SubElement(meta, "DatabaseDescription").text = s.database_description
        if s.default_username:
            SubElement(meta, "DefaultUserName").text = s.default_username
        if s.color:
            SubElement(meta, "Color").text = s.color

        SubElement(meta, "MaintenanceHistoryDays").text = str(s.maintenance_history_days)
        SubElement(meta, "MasterKeyChangeRec").text = str(s.master_key_change_rec)
        SubElement(meta, "MasterKeyChangeForce").text = str(s.master_key_change_force)

        mp = SubElement(meta, "MemoryProtection")
        for field_name, is_protected in s.memory_protection.items():
            SubElement(mp, f"Protect{field_name}").text = str(is_protected)

        SubElement(meta, "RecycleBinEnabled").text = str(s.recycle_bin_enabled)
        SubElement(meta, "RecycleBinUUID").text = encode_uuid(
            s.recycle_bin_uuid or uuid_module.UUID(int=0)
        )

        SubElement(meta, "HistoryMaxItems").text = str(s.history_max_items)
        SubElement(meta, "HistoryMaxSize").text = str(s.history_max_size)

    def _build_group(self, parent: Element, group: Group, refs: dict[int, int]) -> None:
        elem = SubElement(parent, "Group")

        SubElement(elem, "UUID").text = encode_uuid(group.uuid)
        SubElement(elem, "Name").text = group.name or ""
        if group.notes:
            SubElement(elem, "Notes").text = group.notes
        SubElement(elem, "IconID").text = group.icon_id

        self._build_times(elem, group.times)

        SubElement(elem, "IsExpanded").text = str(group.is_expanded)
        if group.default_autotype_sequence:
            SubElement(elem, "DefaultAutoTypeSequence").text = group.default_autotype_sequence
        if group.enable_autotype is not None:
            SubElement(elem, "EnableAutoType").text = str(group.enable_autotype)
        if group.enable_searching is not None:
            SubElement(elem, "EnableSearching").text = str(group.enable_searching)
        SubElement(elem, "LastTopVisibleEntry").text = encode_uuid(
            group.last_top_visible_entry or uuid_module.UUID(int=0)
        )

        for entry in group.entries:
            self._build_entry(elem, entry, refs)

        for subgroup in group.subgroups:
            self._build_group(elem, subgroup, refs)

    def _build_entry(self, parent: Element, entry: Entry, refs: dict[int, int]) -> None:
        elem = SubElement(parent, "Entry")

        SubElement(elem, "UUID").text = encode_uuid(entry.uuid)
        SubElement(elem, "IconID").text = entry.icon_id
        if entry.foreground_color:
            SubElement(elem, "ForegroundColor").text = entry.foreground_color
        if entry.background_color:
            SubElement(elem, "BackgroundColor").text = entry.background_color
        if entry.override_url:
            SubElement(elem, "OverrideURL").text = entry.override_url
        if entry.tags:
            SubElement(elem, "Tags").text = ";".join(entry.tags)

        self._build_times(elem, entry.times)

        policy = self._tree.settings.memory_protection
        for key, string_field in entry.strings.items():
            string_elem = SubElement(elem, "String")
            SubElement(string_elem, "Key").text = key
            value_elem = SubElement(string_elem, "Value")
            value_elem.text = string_field.value or ""
            if string_field.protected or policy.get(key, False):
                value_elem.set("Protected", "True")

        for binary_ref in entry.binaries:
            if binary_ref.ref not in refs:
                raise CorruptedDataError(
                    f"Attachment {binary_ref.key!r} references missing binary {binary_ref.ref}"
                )
            binary_elem = SubElement(elem, "Binary")
            SubElement(binary_elem, "Key").text = binary_ref.key
            SubElement(binary_elem, "Value").set("Ref", str(refs[binary_ref.ref]))

        at = entry.autotype
        at_elem = SubElement(elem, "AutoType")
        SubElement(at_elem, "Enabled").text = str(at.enabled)
        SubElement(at_elem, "DataTransferObfuscation").text = str(at.obfuscation)
        if at.sequence:
            SubElement(at_elem, "DefaultSequence").text = at.sequence
        for window, keystrokes in at.associations:
            assoc = SubElement(at_elem, "Association")
            SubElement(assoc, "Window").text = window
            SubElement(assoc, "KeystrokeSequence").text = keystrokes

        if entry.history:
            history_elem = SubElement(elem, "History")
            for hist_entry in entry.history:
                self._build_entry(history_elem, hist_entry, refs)

    def _build_times(self, parent: Element, times: Times) -> None:
        elem = SubElement(parent, "Times")

        SubElement(elem, "CreationTime").text = encode_time(times.creation_time)
        SubElement(elem, "LastModificationTime").text = encode_time(times.last_modification_time)
        SubElement(elem, "LastAccessTime").text = encode_time(times.last_access_time)
        SubElement(elem, "ExpiryTime").text = encode_time(times.expiry_time or times.creation_time)
        SubElement(elem, "Expires").text = str(times.expires)
        SubElement(elem, "UsageCount").text = str(times.usage_count)
        if times.location_changed:
            SubElement(elem, "LocationChanged").text = encode_time(times.location_changed)

    def __str__(self) -> str:
        entry_count = sum(1 for _ in self.iter_entries())
        group_count = sum(1 for _ in self.iter_groups())
        name = self._tree.settings.database_name
        return (
            f'Database: "{name}" ({entry_count} entries, {group_count} groups, '
            f"{self._state.name.lower()})"
        )
