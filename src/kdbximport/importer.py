"""Import KeePass XML into an entry tree.

The importer reads two flavours of the same KeePassFile document:
- a plain XML export, where sensitive values are cleartext and marked
  ``ProtectInMemory="True"`` and attachments live in ``Meta/Binaries``;
- the decrypted payload of a KDBX 4 file, where sensitive values are
  ``Protected="True"`` ciphertext under the inner random stream and
  attachments come from the inner header.

Parsing is fail-fast. The first structural or referential problem raises
DocumentImportError with a location: line and column for XML syntax
errors, the element path (``/KeePassFile/Root/Group/Entry[2]/UUID``) for
everything found after parsing. A tree is only returned once the whole
document has been read and every reference resolved, so callers never
see a partial result.
"""

from __future__ import annotations

import base64
import gzip
import logging
import struct
import uuid as uuid_module
import zlib
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import NoReturn
from xml.etree.ElementTree import Element
from xml.parsers import expat

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as DefusedET

from .exceptions import DocumentImportError, SourceLocation
from .models import (
    AutoType,
    BinaryRef,
    DatabaseSettings,
    Entry,
    EntryTree,
    Group,
    StringField,
    Times,
)
from .parsing import InnerHeader
from .security import ProtectedStreamCipher

logger = logging.getLogger(__name__)

# KDBX4 time format (ISO 8601, compatible with KeePassXC)
KDBX4_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Binary KDBX4 timestamps count seconds from this epoch
KDBX_EPOCH = datetime(1, 1, 1, tzinfo=UTC)

MEMORY_PROTECTION_FIELDS = ("Title", "UserName", "Password", "URL", "Notes")


def _fail(message: str, path: str) -> NoReturn:
    raise DocumentImportError(message, SourceLocation(path=path))


def _child_paths(elem: Element, tag: str, path: str) -> list[tuple[Element, str]]:
    """Children with a given tag, each with its indexed element path."""
    children = elem.findall(tag)
    if len(children) == 1:
        return [(children[0], f"{path}/{tag}")]
    return [(child, f"{path}/{tag}[{i}]") for i, child in enumerate(children, start=1)]


# --- Scalar decoding ---


def decode_uuid(text: str | None, path: str) -> uuid_module.UUID:
    try:
        raw = base64.b64decode((text or "").strip(), validate=True)
    except ValueError:
        _fail("Invalid UUID: not base64", path)
    if len(raw) != 16:
        _fail(f"Invalid UUID: expected 16 bytes, got {len(raw)}", path)
    return uuid_module.UUID(bytes=raw)


def encode_uuid(value: uuid_module.UUID) -> str:
    return base64.b64encode(value.bytes).decode("ascii")


def decode_bool(text: str | None, path: str) -> bool:
    value = (text or "").strip().lower()
    if value in ("true", "1"):
        return True
    if value in ("false", "0"):
        return False
    _fail(f"Invalid boolean value: {text!r}", path)


def decode_optional_bool(text: str | None, path: str) -> bool | None:
    """Tri-state flag: "null" (or empty) means inherit from the parent."""
    if not text or text.strip().lower() == "null":
        return None
    return decode_bool(text, path)


def decode_int(text: str | None, path: str) -> int:
    try:
        return int((text or "").strip())
    except ValueError:
        _fail(f"Invalid integer value: {text!r}", path)


def decode_time(text: str | None, path: str) -> datetime:
    """Decode a KDBX timestamp.

    KDBX4 payloads store base64 of an int64 second count since 0001-01-01;
    XML exports use ISO 8601.
    """
    value = (text or "").strip()
    # Base64 strings don't contain - or : which are present in ISO dates
    if value and "-" not in value and ":" not in value:
        try:
            binary = base64.b64decode(value, validate=True)
            if len(binary) == 8:
                (seconds,) = struct.unpack("<q", binary)
                return KDBX_EPOCH + timedelta(seconds=seconds)
        except (ValueError, OverflowError):
            pass
    try:
        return datetime.strptime(value, KDBX4_TIME_FORMAT).replace(tzinfo=UTC)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        _fail(f"Invalid timestamp: {text!r}", path)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    try:
        return parsed.astimezone(UTC)
    except OverflowError:
        _fail(f"Timestamp out of range in UTC: {text!r}", path)


def encode_time(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime(KDBX4_TIME_FORMAT)


class XmlImporter:
    """Turns a KeePassFile XML document into an EntryTree.

    An importer instance holds per-document state (seen UUIDs, the
    protected-value keystream), so use one instance per document.

    Example:
        >>> tree = XmlImporter().import_file("export.xml")
        >>> [e.title for e in tree.iter_entries()]
    """

    def __init__(self, inner_header: InnerHeader | None = None) -> None:
        """Create an importer.

        Args:
            inner_header: Inner header of a KDBX 4 file whose payload is
                being parsed; None for plain XML exports
        """
        self._inner_header = inner_header
        self._unprotected: set[int] = set()
        self._binaries: dict[int, bytes] = {}
        self._binary_refs: list[tuple[int, str]] = []
        self._group_uuids: set[uuid_module.UUID] = set()
        self._entry_uuids: set[uuid_module.UUID] = set()

    def import_file(self, path: str | Path) -> EntryTree:
        """Read and import an XML file.

        Raises:
            DocumentImportError: If the file can't be read or is invalid
        """
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise DocumentImportError(f"Unable to read {path}: {e.strerror or e}") from e
        return self.import_bytes(data)

    def import_bytes(self, data: bytes) -> EntryTree:
        """Import an XML document held in memory.

        Raises:
            DocumentImportError: On the first syntax, structure or
                reference problem
        """
        try:
            root = DefusedET.fromstring(data)
        except DefusedET.ParseError as e:
            line, column = getattr(e, "position", (None, None))
            reason = expat.ErrorString(e.code) if getattr(e, "code", None) else str(e)
            raise DocumentImportError(
                f"Malformed XML: {reason}",
                SourceLocation(line=line, column=column + 1 if column is not None else None),
            ) from e
        except DefusedXmlException as e:
            raise DocumentImportError(f"Forbidden XML construct: {e}") from e

        tree = self._parse_document(root)
        logger.debug(
            "Imported %d groups, %d entries, %d attachments",
            sum(1 for _ in tree.iter_groups()) + 1,
            sum(1 for _ in tree.iter_entries()),
            len(tree.binaries),
        )
        return tree

    # --- Document structure ---

    def _parse_document(self, root: Element) -> EntryTree:
        path = f"/{root.tag}"
        if root.tag != "KeePassFile":
            _fail(f"Unexpected root element <{root.tag}>, expected <KeePassFile>", path)

        if self._inner_header is not None:
            self._unprotect_values(root, self._inner_header, path)
            self._binaries = {
                idx: data for idx, (_protected, data) in self._inner_header.binaries.items()
            }

        meta_elem = root.find("Meta")
        settings = DatabaseSettings()
        if meta_elem is not None:
            settings = self._parse_meta(meta_elem, f"{path}/Meta")

        root_elem = root.find("Root")
        if root_elem is None:
            _fail("Missing <Root> element", path)
        group_elem = root_elem.find("Group")
        if group_elem is None:
            _fail("Missing root <Group> element", f"{path}/Root")

        root_group = self._parse_group(group_elem, f"{path}/Root/Group")
        root_group._is_root = True

        deleted = self._parse_deleted_objects(
            root_elem.find("DeletedObjects"), f"{path}/Root/DeletedObjects"
        )

        # References are checked last: Meta/Binaries may legally follow entries
        for ref, ref_path in self._binary_refs:
            if ref not in self._binaries:
                _fail(f"Attachment reference {ref} has no matching binary", ref_path)

        return EntryTree(
            root_group=root_group,
            settings=settings,
            binaries=dict(self._binaries),
            deleted_objects=deleted,
        )

    def _parse_meta(self, meta: Element, path: str) -> DatabaseSettings:
        settings = DatabaseSettings()

        def text(tag: str) -> str | None:
            elem = meta.find(tag)
            return elem.text if elem is not None else None

        if (name := text("DatabaseName")) is not None:
            settings.database_name = name
        if desc := text("DatabaseDescription"):
            settings.database_description = desc
        if username := text("DefaultUserName"):
            settings.default_username = username
        if gen := text("Generator"):
            settings.generator = gen
        if color := text("Color"):
            settings.color = color

        int_fields = {
            "MaintenanceHistoryDays": "maintenance_history_days",
            "MasterKeyChangeRec": "master_key_change_rec",
            "MasterKeyChangeForce": "master_key_change_force",
            "HistoryMaxItems": "history_max_items",
            "HistoryMaxSize": "history_max_size",
        }
        for tag, attr in int_fields.items():
            if value := text(tag):
                setattr(settings, attr, decode_int(value, f"{path}/{tag}"))

        mp_elem = meta.find("MemoryProtection")
        if mp_elem is not None:
            for field_name in MEMORY_PROTECTION_FIELDS:
                elem = mp_elem.find(f"Protect{field_name}")
                if elem is not None:
                    settings.memory_protection[field_name] = decode_bool(
                        elem.text, f"{path}/MemoryProtection/Protect{field_name}"
                    )

        if rb := text("RecycleBinEnabled"):
            settings.recycle_bin_enabled = decode_bool(rb, f"{path}/RecycleBinEnabled")
        if rb_uuid := text("RecycleBinUUID"):
            parsed = decode_uuid(rb_uuid, f"{path}/RecycleBinUUID")
            settings.recycle_bin_uuid = parsed if parsed.int else None

        binaries_elem = meta.find("Binaries")
        if binaries_elem is not None:
            for elem, binary_path in _child_paths(binaries_elem, "Binary", f"{path}/Binaries"):
                self._parse_meta_binary(elem, binary_path)

        return settings

    def _parse_meta_binary(self, elem: Element, path: str) -> None:
        """Parse a KDBX3-style attachment from Meta/Binaries."""
        if "ID" not in elem.attrib:
            _fail("Binary without ID attribute", path)
        ref = decode_int(elem.get("ID"), path)
        if ref in self._binaries:
            _fail(f"Duplicate binary ID {ref}", path)
        try:
            data = base64.b64decode((elem.text or "").strip(), validate=True)
            if elem.get("Compressed", "").lower() == "true":
                data = gzip.decompress(data)
        except (ValueError, OSError, EOFError, zlib.error) as e:
            _fail(f"Invalid binary data: {e}", path)
        self._binaries[ref] = data

    def _parse_deleted_objects(
        self, elem: Element | None, path: str
    ) -> list[tuple[uuid_module.UUID, datetime]]:
        if elem is None:
            return []
        deleted = []
        for obj, obj_path in _child_paths(elem, "DeletedObject", path):
            uuid_elem = obj.find("UUID")
            time_elem = obj.find("DeletionTime")
            if uuid_elem is None or time_elem is None:
                _fail("DeletedObject requires UUID and DeletionTime", obj_path)
            deleted.append(
                (
                    decode_uuid(uuid_elem.text, f"{obj_path}/UUID"),
                    decode_time(time_elem.text, f"{obj_path}/DeletionTime"),
                )
            )
        return deleted

    # --- Groups and entries ---

    def _parse_uuid_field(self, elem: Element, path: str) -> uuid_module.UUID:
        uuid_elem = elem.find("UUID")
        if uuid_elem is None or not (uuid_elem.text or "").strip():
            # Older exports may omit it; mint one like KeePass does
            return uuid_module.uuid4()
        return decode_uuid(uuid_elem.text, f"{path}/UUID")

    def _parse_group(self, elem: Element, path: str) -> Group:
        group = Group(uuid=self._parse_uuid_field(elem, path))
        if group.uuid in self._group_uuids:
            _fail(f"Duplicate group UUID {group.uuid}", f"{path}/UUID")
        self._group_uuids.add(group.uuid)

        name_elem = elem.find("Name")
        if name_elem is not None:
            group.name = name_elem.text or ""
        notes_elem = elem.find("Notes")
        if notes_elem is not None:
            group.notes = notes_elem.text
        icon_elem = elem.find("IconID")
        if icon_elem is not None and icon_elem.text:
            group.icon_id = str(decode_int(icon_elem.text, f"{path}/IconID"))

        group.times = self._parse_times(elem.find("Times"), f"{path}/Times")

        expanded_elem = elem.find("IsExpanded")
        if expanded_elem is not None and expanded_elem.text:
            group.is_expanded = decode_bool(expanded_elem.text, f"{path}/IsExpanded")
        seq_elem = elem.find("DefaultAutoTypeSequence")
        if seq_elem is not None and seq_elem.text:
            group.default_autotype_sequence = seq_elem.text
        at_elem = elem.find("EnableAutoType")
        if at_elem is not None:
            group.enable_autotype = decode_optional_bool(at_elem.text, f"{path}/EnableAutoType")
        search_elem = elem.find("EnableSearching")
        if search_elem is not None:
            group.enable_searching = decode_optional_bool(
                search_elem.text, f"{path}/EnableSearching"
            )
        top_elem = elem.find("LastTopVisibleEntry")
        if top_elem is not None and top_elem.text:
            top = decode_uuid(top_elem.text, f"{path}/LastTopVisibleEntry")
            group.last_top_visible_entry = top if top.int else None

        for entry_elem, entry_path in _child_paths(elem, "Entry", path):
            group.add_entry(self._parse_entry(entry_elem, entry_path))

        for sub_elem, sub_path in _child_paths(elem, "Group", path):
            group.add_subgroup(self._parse_group(sub_elem, sub_path))

        return group

    def _parse_entry(self, elem: Element, path: str, history_of: Entry | None = None) -> Entry:
        entry = Entry(uuid=self._parse_uuid_field(elem, path))
        if history_of is not None:
            if entry.uuid != history_of.uuid:
                _fail("History entry UUID differs from its parent entry", f"{path}/UUID")
        else:
            if entry.uuid in self._entry_uuids:
                _fail(f"Duplicate entry UUID {entry.uuid}", f"{path}/UUID")
            self._entry_uuids.add(entry.uuid)

        icon_elem = elem.find("IconID")
        if icon_elem is not None and icon_elem.text:
            entry.icon_id = str(decode_int(icon_elem.text, f"{path}/IconID"))
        for tag, attr in (
            ("ForegroundColor", "foreground_color"),
            ("BackgroundColor", "background_color"),
            ("OverrideURL", "override_url"),
        ):
            sub = elem.find(tag)
            if sub is not None and sub.text:
                setattr(entry, attr, sub.text)

        tags_elem = elem.find("Tags")
        if tags_elem is not None and tags_elem.text:
            tag_text = tags_elem.text.replace(",", ";")
            entry.tags = [t.strip() for t in tag_text.split(";") if t.strip()]

        entry.times = self._parse_times(elem.find("Times"), f"{path}/Times")

        for string_elem, string_path in _child_paths(elem, "String", path):
            string_field = self._parse_string(string_elem, string_path)
            if string_field.key in entry.strings:
                _fail(f"Duplicate string field {string_field.key!r}", string_path)
            entry.strings[string_field.key] = string_field

        for binary_elem, binary_path in _child_paths(elem, "Binary", path):
            entry.binaries.append(self._parse_binary_ref(binary_elem, binary_path))

        at_elem = elem.find("AutoType")
        if at_elem is not None:
            entry.autotype = self._parse_autotype(at_elem, f"{path}/AutoType")

        history_elem = elem.find("History")
        if history_elem is not None:
            if history_of is not None:
                _fail("History entries cannot have their own history", f"{path}/History")
            for hist_elem, hist_path in _child_paths(history_elem, "Entry", f"{path}/History"):
                entry.history.append(self._parse_entry(hist_elem, hist_path, history_of=entry))

        return entry

    def _parse_string(self, elem: Element, path: str) -> StringField:
        key_elem = elem.find("Key")
        if key_elem is None or not key_elem.text:
            _fail("String field without a key", path)
        value_elem = elem.find("Value")
        if value_elem is None:
            return StringField(key=key_elem.text)

        value = value_elem.text
        protected = False
        if value_elem.get("Protected", "").lower() == "true":
            protected = True
            if id(value_elem) not in self._unprotected:
                _fail(
                    "Protected value cannot be read without the inner stream key",
                    f"{path}/Value",
                )
        elif value_elem.get("ProtectInMemory", "").lower() == "true":
            protected = True
        return StringField(key=key_elem.text, value=value, protected=protected)

    def _unprotect_values(self, root: Element, inner_header: InnerHeader, path: str) -> None:
        """Decrypt every Protected="True" value in place.

        The inner stream is a single keystream consumed in document order,
        empty values included, so this runs over the whole tree before
        any structural parsing.
        """
        try:
            stream = ProtectedStreamCipher(
                inner_header.random_stream_id,
                inner_header.random_stream_key,
            )
        except ValueError as e:
            raise DocumentImportError(str(e)) from e
        for index, elem in enumerate(root.iter("Value"), start=1):
            if elem.get("Protected", "").lower() != "true":
                continue
            try:
                ciphertext = base64.b64decode((elem.text or "").strip(), validate=True)
                elem.text = stream.decrypt(ciphertext).decode("utf-8")
            except ValueError:
                _fail("Protected value could not be decrypted", f"{path}//Value[{index}]")
            self._unprotected.add(id(elem))

    def _parse_binary_ref(self, elem: Element, path: str) -> BinaryRef:
        key_elem = elem.find("Key")
        value_elem = elem.find("Value")
        if key_elem is None or not key_elem.text or value_elem is None:
            _fail("Attachment requires Key and Value", path)

        ref_text = value_elem.get("Ref")
        if ref_text is not None:
            ref = decode_int(ref_text, f"{path}/Value")
            self._binary_refs.append((ref, f"{path}/Value"))
            return BinaryRef(key=key_elem.text, ref=ref)

        # Inline attachment data (KeePass 2.x entries without a pool)
        try:
            data = base64.b64decode((value_elem.text or "").strip(), validate=True)
        except ValueError:
            _fail("Invalid inline attachment data", f"{path}/Value")
        ref = max(self._binaries.keys(), default=-1) + 1
        self._binaries[ref] = data
        return BinaryRef(key=key_elem.text, ref=ref)

    def _parse_autotype(self, elem: Element, path: str) -> AutoType:
        autotype = AutoType()
        enabled_elem = elem.find("Enabled")
        if enabled_elem is not None and enabled_elem.text:
            autotype.enabled = decode_bool(enabled_elem.text, f"{path}/Enabled")
        obf_elem = elem.find("DataTransferObfuscation")
        if obf_elem is not None and obf_elem.text:
            autotype.obfuscation = decode_int(obf_elem.text, f"{path}/DataTransferObfuscation")
        seq_elem = elem.find("DefaultSequence")
        if seq_elem is not None and seq_elem.text:
            autotype.sequence = seq_elem.text
        for assoc, _assoc_path in _child_paths(elem, "Association", path):
            window = assoc.find("Window")
            keystrokes = assoc.find("KeystrokeSequence")
            autotype.associations.append(
                (
                    (window.text or "") if window is not None else "",
                    (keystrokes.text or "") if keystrokes is not None else "",
                )
            )
        return autotype

    def _parse_times(self, elem: Element | None, path: str) -> Times:
        times = Times.create_new()
        if elem is None:
            return times

        for tag, attr in (
            ("CreationTime", "creation_time"),
            ("LastModificationTime", "last_modification_time"),
            ("LastAccessTime", "last_access_time"),
            ("ExpiryTime", "expiry_time"),
            ("LocationChanged", "location_changed"),
        ):
            sub = elem.find(tag)
            if sub is not None and sub.text:
                setattr(times, attr, decode_time(sub.text, f"{path}/{tag}"))

        expires_elem = elem.find("Expires")
        if expires_elem is not None and expires_elem.text:
            times.expires = decode_bool(expires_elem.text, f"{path}/Expires")
        usage_elem = elem.find("UsageCount")
        if usage_elem is not None and usage_elem.text:
            times.usage_count = decode_int(usage_elem.text, f"{path}/UsageCount")

        return times