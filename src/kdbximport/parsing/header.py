"""KDBX 4 outer header.

Layout (all integers little-endian)::

    u32 signature 1   0x9AA2D903
    u32 signature 2   0xB54BFB67
    u16 minor version
    u16 major version
    fields: u8 type, u32 length, data ... terminated by END

The KDF parameters field is a VariantDictionary: a u16 version followed by
typed key/value items and a zero type byte.
"""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field
from enum import IntEnum

from kdbximport.exceptions import (
    CorruptedDataError,
    InvalidSignatureError,
    KdfError,
    UnsupportedVersionError,
)
from kdbximport.security import AesKdfConfig, Argon2Config, Cipher, KdfType
from kdbximport.security.kdf import ARGON2_VERSION

KDBX_MAGIC = struct.pack("<I", 0x9AA2D903)
KDBX4_MAGIC = KDBX_MAGIC + struct.pack("<I", 0xB54BFB67)

VARIANT_DICT_VERSION = 0x0100
HEADER_END_MARKER = b"\r\n\r\n"


class KdbxVersion(IntEnum):
    KDBX3 = 3
    KDBX4 = 4


class CompressionType(IntEnum):
    NONE = 0
    GZIP = 1


class HeaderFieldType(IntEnum):
    END = 0
    CIPHER_ID = 2
    COMPRESSION_FLAGS = 3
    MASTER_SEED = 4
    ENCRYPTION_IV = 7
    KDF_PARAMETERS = 11
    PUBLIC_CUSTOM_DATA = 12


class InnerHeaderFieldType(IntEnum):
    END = 0
    INNER_RANDOM_STREAM_ID = 1
    INNER_RANDOM_STREAM_KEY = 2
    BINARY = 3


class VariantType(IntEnum):
    UINT32 = 0x04
    UINT64 = 0x05
    BOOL = 0x08
    INT32 = 0x0C
    INT64 = 0x0D
    STRING = 0x18
    BYTES = 0x42


_VARIANT_FORMATS = {
    VariantType.UINT32: "<I",
    VariantType.UINT64: "<Q",
    VariantType.INT32: "<i",
    VariantType.INT64: "<q",
}

VariantValue = int | bool | str | bytes


def parse_variant_dict(data: bytes) -> dict[str, tuple[VariantType, VariantValue]]:
    """Parse a VariantDictionary into ``{key: (type, value)}``.

    Raises:
        CorruptedDataError: If the dictionary is truncated or malformed
    """
    if len(data) < 2:
        raise CorruptedDataError("Truncated KDF parameters")
    (version,) = struct.unpack_from("<H", data, 0)
    if version >> 8 != VARIANT_DICT_VERSION >> 8:
        raise CorruptedDataError(f"Unsupported KDF parameter format: {version:#06x}")

    items: dict[str, tuple[VariantType, VariantValue]] = {}
    offset = 2
    try:
        while True:
            item_type = data[offset]
            offset += 1
            if item_type == 0:
                return items

            (key_len,) = struct.unpack_from("<i", data, offset)
            offset += 4
            key = data[offset : offset + key_len].decode("utf-8")
            offset += key_len
            (value_len,) = struct.unpack_from("<i", data, offset)
            offset += 4
            raw = data[offset : offset + value_len]
            if len(raw) != value_len:
                raise CorruptedDataError("Truncated KDF parameter value")
            offset += value_len

            vtype = VariantType(item_type)
            value: VariantValue
            if vtype in _VARIANT_FORMATS:
                (value,) = struct.unpack(_VARIANT_FORMATS[vtype], raw)
            elif vtype is VariantType.BOOL:
                value = raw != b"\x00"
            elif vtype is VariantType.STRING:
                value = raw.decode("utf-8")
            else:
                value = raw
            items[key] = (vtype, value)
    except (IndexError, struct.error, UnicodeDecodeError, ValueError) as e:
        raise CorruptedDataError(f"Malformed KDF parameters: {e}") from e


def build_variant_dict(items: dict[str, tuple[VariantType, VariantValue]]) -> bytes:
    """Serialize ``{key: (type, value)}`` into a VariantDictionary."""
    parts = [struct.pack("<H", VARIANT_DICT_VERSION)]
    for key, (vtype, value) in items.items():
        if vtype in _VARIANT_FORMATS:
            raw = struct.pack(_VARIANT_FORMATS[vtype], value)
        elif vtype is VariantType.BOOL:
            raw = b"\x01" if value else b"\x00"
        elif vtype is VariantType.STRING:
            raw = str(value).encode("utf-8")
        else:
            raw = bytes(value)  # type: ignore[arg-type]
        key_bytes = key.encode("utf-8")
        parts.append(struct.pack("<Bi", vtype, len(key_bytes)))
        parts.append(key_bytes)
        parts.append(struct.pack("<i", len(raw)))
        parts.append(raw)
    parts.append(b"\x00")
    return b"".join(parts)


def _int_param(item: tuple[VariantType, VariantValue]) -> int:
    vtype, value = item
    if not isinstance(value, int) or isinstance(value, bool):
        raise CorruptedDataError(f"KDF parameter has type {vtype.name}, expected an integer")
    return value


def _bytes_param(item: tuple[VariantType, VariantValue]) -> bytes:
    vtype, value = item
    if not isinstance(value, bytes):
        raise CorruptedDataError(f"KDF parameter has type {vtype.name}, expected bytes")
    return value


@dataclass(slots=True)
class KdbxHeader:
    """Parsed KDBX 4 outer header.

    Attributes:
        version: Major format version
        cipher: Outer payload cipher
        compression: Payload compression
        master_seed: 32 random bytes mixed into the final keys
        encryption_iv: IV/nonce for the outer cipher
        kdf_type: Key derivation function
        kdf_salt: KDF salt (also the hardware-token challenge)
        argon2_memory_kib: Argon2 memory cost
        argon2_iterations: Argon2 time cost
        argon2_parallelism: Argon2 lanes
        aes_kdf_rounds: AES-KDF rounds (read-only support)
        minor_version: Minor format version
        raw_header: Exact header bytes as read, covered by hash and HMAC
    """

    version: KdbxVersion
    cipher: Cipher
    compression: CompressionType
    master_seed: bytes
    encryption_iv: bytes
    kdf_type: KdfType
    kdf_salt: bytes
    argon2_memory_kib: int | None = None
    argon2_iterations: int | None = None
    argon2_parallelism: int | None = None
    aes_kdf_rounds: int | None = None
    minor_version: int = 0
    raw_header: bytes = field(default=b"", repr=False)

    @classmethod
    def create(
        cls,
        cipher: Cipher = Cipher.AES256_CBC,
        kdf_config: Argon2Config | None = None,
        compression: CompressionType = CompressionType.GZIP,
    ) -> KdbxHeader:
        """Build a header for a new database with fresh random seeds."""
        config = kdf_config or Argon2Config.default()
        return cls(
            version=KdbxVersion.KDBX4,
            cipher=cipher,
            compression=compression,
            master_seed=os.urandom(32),
            encryption_iv=os.urandom(cipher.iv_size),
            kdf_type=config.variant,
            kdf_salt=config.salt,
            argon2_memory_kib=config.memory_kib,
            argon2_iterations=config.iterations,
            argon2_parallelism=config.parallelism,
        )

    def kdf_config(self) -> Argon2Config | AesKdfConfig:
        """Build the KDF configuration this header describes.

        Raises:
            KdfError: If parameters are missing or out of range
        """
        if self.kdf_type is KdfType.AES_KDF:
            if self.aes_kdf_rounds is None:
                raise KdfError("Missing AES-KDF rounds in header")
        elif (
            self.argon2_memory_kib is None
            or self.argon2_iterations is None
            or self.argon2_parallelism is None
        ):
            raise KdfError("Missing Argon2 parameters in header")
        try:
            if self.kdf_type is KdfType.AES_KDF:
                return AesKdfConfig(rounds=self.aes_kdf_rounds, salt=self.kdf_salt)
            return Argon2Config(
                memory_kib=self.argon2_memory_kib,
                iterations=self.argon2_iterations,
                parallelism=self.argon2_parallelism,
                salt=self.kdf_salt,
                variant=self.kdf_type,
            )
        except ValueError as e:
            raise KdfError(str(e)) from e

    def renew_seeds(self) -> None:
        """Draw a new master seed and IV; the KDF salt is kept."""
        self.master_seed = os.urandom(32)
        self.encryption_iv = os.urandom(self.cipher.iv_size)

    # --- Parsing ---

    @classmethod
    def parse(cls, data: bytes) -> tuple[KdbxHeader, int]:
        """Parse the outer header.

        Returns:
            The header and the offset of the first byte after it

        Raises:
            InvalidSignatureError: If the magic bytes don't match
            UnsupportedVersionError: If this isn't a KDBX 4.x file
            CorruptedDataError: If fields are truncated or missing
        """
        if len(data) < 12 or data[:8] != KDBX4_MAGIC:
            raise InvalidSignatureError()
        minor, major = struct.unpack_from("<HH", data, 8)
        if major != KdbxVersion.KDBX4:
            raise UnsupportedVersionError(major, minor)

        offset = 12
        fields: dict[int, bytes] = {}
        while True:
            if offset + 5 > len(data):
                raise CorruptedDataError("Truncated header")
            field_type = data[offset]
            (field_len,) = struct.unpack_from("<I", data, offset + 1)
            offset += 5
            if offset + field_len > len(data):
                raise CorruptedDataError("Truncated header field")
            fields[field_type] = data[offset : offset + field_len]
            offset += field_len
            if field_type == HeaderFieldType.END:
                break

        for required in (
            HeaderFieldType.CIPHER_ID,
            HeaderFieldType.MASTER_SEED,
            HeaderFieldType.ENCRYPTION_IV,
            HeaderFieldType.KDF_PARAMETERS,
        ):
            if required not in fields:
                raise CorruptedDataError(f"Missing header field: {required.name}")

        cipher = Cipher.from_uuid(fields[HeaderFieldType.CIPHER_ID])
        compression = CompressionType.NONE
        if HeaderFieldType.COMPRESSION_FLAGS in fields:
            try:
                (flags,) = struct.unpack("<I", fields[HeaderFieldType.COMPRESSION_FLAGS])
                compression = CompressionType(flags)
            except (struct.error, ValueError) as e:
                raise CorruptedDataError(f"Invalid compression flags: {e}") from e

        master_seed = fields[HeaderFieldType.MASTER_SEED]
        if len(master_seed) != 32:
            raise CorruptedDataError("Master seed must be 32 bytes")
        iv = fields[HeaderFieldType.ENCRYPTION_IV]
        if len(iv) != cipher.iv_size:
            raise CorruptedDataError("Encryption IV has wrong length for cipher")

        kdf = parse_variant_dict(fields[HeaderFieldType.KDF_PARAMETERS])
        if "$UUID" not in kdf or "S" not in kdf:
            raise CorruptedDataError("KDF parameters lack UUID or salt")
        kdf_type = KdfType.from_uuid(_bytes_param(kdf["$UUID"]))

        header = cls(
            version=KdbxVersion.KDBX4,
            minor_version=minor,
            cipher=cipher,
            compression=compression,
            master_seed=master_seed,
            encryption_iv=iv,
            kdf_type=kdf_type,
            kdf_salt=_bytes_param(kdf["S"]),
            raw_header=data[:offset],
        )
        try:
            if kdf_type is KdfType.AES_KDF:
                header.aes_kdf_rounds = _int_param(kdf.get("R", (VariantType.UINT64, 0)))
            else:
                header.argon2_memory_kib = _int_param(kdf["M"]) // 1024
                header.argon2_iterations = _int_param(kdf["I"])
                header.argon2_parallelism = _int_param(kdf["P"])
        except KeyError as e:
            raise CorruptedDataError(f"Missing KDF parameter {e}") from e
        return header, offset

    # --- Building ---

    def _kdf_parameters(self) -> bytes:
        items: dict[str, tuple[VariantType, VariantValue]] = {
            "$UUID": (VariantType.BYTES, self.kdf_type.value),
        }
        if self.kdf_type is KdfType.AES_KDF:
            items["R"] = (VariantType.UINT64, self.aes_kdf_rounds or 0)
            items["S"] = (VariantType.BYTES, self.kdf_salt)
        else:
            config = self.kdf_config()
            assert isinstance(config, Argon2Config)
            items["S"] = (VariantType.BYTES, config.salt)
            items["P"] = (VariantType.UINT32, config.parallelism)
            items["M"] = (VariantType.UINT64, config.memory_kib * 1024)
            items["I"] = (VariantType.UINT64, config.iterations)
            items["V"] = (VariantType.UINT32, ARGON2_VERSION)
        return build_variant_dict(items)

    def to_bytes(self) -> bytes:
        """Serialize the header, including the END field."""
        if self.version != KdbxVersion.KDBX4:
            raise UnsupportedVersionError(int(self.version), self.minor_version)

        parts = [KDBX4_MAGIC, struct.pack("<HH", self.minor_version, KdbxVersion.KDBX4)]

        def add_field(field_type: HeaderFieldType, data: bytes) -> None:
            parts.append(struct.pack("<BI", field_type, len(data)))
            parts.append(data)

        add_field(HeaderFieldType.CIPHER_ID, self.cipher.value)
        add_field(HeaderFieldType.COMPRESSION_FLAGS, struct.pack("<I", self.compression))
        add_field(HeaderFieldType.MASTER_SEED, self.master_seed)
        add_field(HeaderFieldType.ENCRYPTION_IV, self.encryption_iv)
        add_field(HeaderFieldType.KDF_PARAMETERS, self._kdf_parameters())
        add_field(HeaderFieldType.END, HEADER_END_MARKER)

        return b"".join(parts)
