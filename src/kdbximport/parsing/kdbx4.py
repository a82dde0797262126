"""KDBX 4 payload encryption and decryption.

File layout after the outer header:

    SHA-256(header) | HMAC-SHA256(header) | HMAC block stream

The block stream carries the encrypted payload in blocks of
``HMAC(32) | length(u32) | data``, terminated by an empty block. Once
decrypted (and unpadded, and decompressed) the payload is the inner
header followed by the XML document.

Keys:
- transformed key = KDF(composite key) with the header's KDF parameters
- cipher key = SHA-256(master seed | transformed key)
- HMAC base key = SHA-512(master seed | transformed key | 0x01)
- block i key = SHA-512(u64 i | HMAC base key); the header uses i = 2**64-1
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import struct
import warnings
import zlib
from collections.abc import Iterator
from dataclasses import dataclass

from kdbximport.exceptions import (
    AuthenticationError,
    CorruptedDataError,
    DecryptionError,
    KdfError,
)
from kdbximport.security import (
    AesKdfConfig,
    CipherContext,
    CompositeKey,
    SecureBytes,
    compute_hmac_sha256,
    constant_time_compare,
    derive_key_aes_kdf,
    derive_key_argon2,
)

from .header import CompressionType, InnerHeaderFieldType, KdbxHeader

logger = logging.getLogger(__name__)

MAX_BINARY_SIZE = 512 * 1024 * 1024

HEADER_HMAC_INDEX = 0xFFFFFFFFFFFFFFFF

BLOCK_SIZE = 1024 * 1024

AES_BLOCK = 16


@dataclass(slots=True)
class InnerHeader:
    """Decrypted inner header.

    Attributes:
        random_stream_id: Cipher of the protected-value stream (2 or 3)
        random_stream_key: Key of that stream
        binaries: Attachment pool, index -> (protected flag, data)
    """

    random_stream_id: int
    random_stream_key: bytes
    binaries: dict[int, tuple[bool, bytes]]


@dataclass(slots=True)
class DecryptedPayload:
    """Result of decrypting a KDBX4 file.

    Attributes:
        header: Parsed outer header
        inner_header: Parsed inner header
        xml_data: Decrypted, decompressed XML
        composite_key: The composite key the file opened with
    """

    header: KdbxHeader
    inner_header: InnerHeader
    xml_data: bytes
    composite_key: SecureBytes


def transform_key(
    header: KdbxHeader, composite_key: bytes, *, enforce_minimums: bool
) -> SecureBytes:
    """Stretch the composite key with the KDF named in the header."""
    config = header.kdf_config()
    if isinstance(config, AesKdfConfig):
        return derive_key_aes_kdf(composite_key, config)

    if not enforce_minimums:
        try:
            config.validate_security()
        except KdfError as e:
            warnings.warn(
                f"Database has weak KDF parameters: {e}. "
                "Consider re-saving with stronger settings.",
                UserWarning,
                stacklevel=4,
            )
    return derive_key_argon2(composite_key, config, enforce_minimums=enforce_minimums)


def derive_payload_keys(transformed_key: bytes, master_seed: bytes) -> tuple[bytes, bytes]:
    """Return (HMAC base key, cipher key)."""
    seeded = master_seed + transformed_key
    return hashlib.sha512(seeded + b"\x01").digest(), hashlib.sha256(seeded).digest()


def block_hmac_key(hmac_key: bytes, block_index: int) -> bytes:
    return hashlib.sha512(struct.pack("<Q", block_index) + hmac_key).digest()


def _block_hmac(hmac_key: bytes, block_index: int, block_data: bytes) -> bytes:
    message = struct.pack("<QI", block_index, len(block_data)) + block_data
    return compute_hmac_sha256(block_hmac_key(hmac_key, block_index), message)


def _hmac_block_stream(data: bytes, hmac_key: bytes) -> bytes:
    chunks = [data[i : i + BLOCK_SIZE] for i in range(0, len(data), BLOCK_SIZE)]
    chunks.append(b"")
    return b"".join(
        _block_hmac(hmac_key, index, chunk) + struct.pack("<I", len(chunk)) + chunk
        for index, chunk in enumerate(chunks)
    )


class Kdbx4Reader:
    """Reads one KDBX4 file held in memory."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0

    def decrypt(self, key: CompositeKey) -> DecryptedPayload:
        """Verify and decrypt the file.

        Args:
            key: Composite key; hardware factors are challenged with the
                header's KDF salt

        Raises:
            FormatError: If the file structure is invalid
            AuthenticationError: If the key is wrong or the header was altered
            DecryptionError: If the payload doesn't decrypt cleanly
        """
        header, self._offset = KdbxHeader.parse(self._data)
        stored_hash = self._take(32)
        stored_hmac = self._take(32)

        if not constant_time_compare(hashlib.sha256(header.raw_header).digest(), stored_hash):
            raise CorruptedDataError("Header hash mismatch - file may be corrupted")

        composite = key.derive_key(challenge=header.kdf_salt)
        transformed = transform_key(header, composite.data, enforce_minimums=False)
        hmac_key, cipher_key = derive_payload_keys(transformed.data, header.master_seed)
        transformed.zeroize()

        header_key = block_hmac_key(hmac_key, HEADER_HMAC_INDEX)
        if not constant_time_compare(
            compute_hmac_sha256(header_key, header.raw_header), stored_hmac
        ):
            composite.zeroize()
            raise AuthenticationError()

        payload = self._read_blocks(hmac_key)
        try:
            payload = CipherContext(header.cipher, cipher_key, header.encryption_iv).decrypt(
                payload
            )
        except ValueError as e:
            raise DecryptionError() from e

        if header.cipher.iv_size == AES_BLOCK:
            payload = _unpad(payload)
        if header.compression == CompressionType.GZIP:
            try:
                payload = gzip.decompress(payload)
            except (OSError, EOFError, zlib.error) as e:
                raise CorruptedDataError("Payload decompression failed") from e

        inner_header, xml_start = _parse_inner_header(payload)
        logger.debug(
            "Decrypted payload: %d bytes of XML, %d binaries",
            len(payload) - xml_start,
            len(inner_header.binaries),
        )
        return DecryptedPayload(
            header=header,
            inner_header=inner_header,
            xml_data=payload[xml_start:],
            composite_key=composite,
        )

    def _take(self, n: int) -> bytes:
        end = self._offset + n
        if end > len(self._data):
            raise CorruptedDataError(f"Unexpected end of file at offset {self._offset}")
        chunk = self._data[self._offset : end]
        self._offset = end
        return chunk

    def _read_blocks(self, hmac_key: bytes) -> bytes:
        blocks = []
        for index in range(2**32):
            stored = self._take(32)
            (length,) = struct.unpack("<I", self._take(4))
            chunk = self._take(length)
            if not constant_time_compare(_block_hmac(hmac_key, index, chunk), stored):
                raise CorruptedDataError(f"HMAC verification failed for block {index}")
            if not length:
                break
            blocks.append(chunk)
        return b"".join(blocks)


class Kdbx4Writer:
    """Builds a KDBX4 file from a header, inner header and XML."""

    def encrypt(
        self,
        header: KdbxHeader,
        inner_header: InnerHeader,
        xml_data: bytes,
        composite_key: bytes,
    ) -> bytes:
        """Encrypt the payload and assemble the file.

        Args:
            header: Outer header; its raw_header is refreshed
            inner_header: Stream cipher settings and attachment pool
            xml_data: Serialized XML document
            composite_key: 32-byte composite key

        Raises:
            KdfError: If the header's Argon2 parameters are weak
        """
        transformed = transform_key(header, composite_key, enforce_minimums=True)
        hmac_key, cipher_key = derive_payload_keys(transformed.data, header.master_seed)
        transformed.zeroize()

        payload = _build_inner_header(inner_header) + xml_data
        if header.compression == CompressionType.GZIP:
            payload = gzip.compress(payload, compresslevel=6)
        if header.cipher.iv_size == AES_BLOCK:
            payload = _pad(payload)
        payload = CipherContext(header.cipher, cipher_key, header.encryption_iv).encrypt(payload)

        header_bytes = header.to_bytes()
        header.raw_header = header_bytes
        header_key = block_hmac_key(hmac_key, HEADER_HMAC_INDEX)
        return b"".join(
            (
                header_bytes,
                hashlib.sha256(header_bytes).digest(),
                compute_hmac_sha256(header_key, header_bytes),
                _hmac_block_stream(payload, hmac_key),
            )
        )


def _unpad(data: bytes) -> bytes:
    """Strip PKCS7 padding from an HMAC-verified plaintext."""
    pad = data[-1] if data else 0
    if not 0 < pad <= AES_BLOCK or data[-pad:] != bytes([pad]) * pad:
        raise DecryptionError("Decryption failed - invalid payload")
    return data[:-pad]


def _pad(data: bytes) -> bytes:
    pad = AES_BLOCK - len(data) % AES_BLOCK
    return data + bytes([pad]) * pad


def _iter_fields(data: bytes) -> Iterator[tuple[int, bytes, int]]:
    """Yield (type, value, end offset) for each u8-type/u32-length field."""
    offset = 0
    while True:
        if offset + 5 > len(data):
            raise CorruptedDataError("Truncated inner header")
        field_type, length = struct.unpack_from("<BI", data, offset)
        start = offset + 5
        offset = start + length
        if offset > len(data):
            raise CorruptedDataError("Truncated inner header field")
        yield field_type, data[start:offset], offset


def _parse_inner_header(data: bytes) -> tuple[InnerHeader, int]:
    """Parse the inner header; returns it and the offset where XML starts."""
    inner = InnerHeader(random_stream_id=0, random_stream_key=b"", binaries={})

    for field_type, value, end in _iter_fields(data):
        if field_type == InnerHeaderFieldType.END:
            return inner, end
        if field_type == InnerHeaderFieldType.INNER_RANDOM_STREAM_ID:
            (inner.random_stream_id,) = struct.unpack("<I", value)
        elif field_type == InnerHeaderFieldType.INNER_RANDOM_STREAM_KEY:
            inner.random_stream_key = value
        elif field_type == InnerHeaderFieldType.BINARY:
            if not value:
                raise CorruptedDataError("Empty binary field in inner header")
            if len(value) - 1 > MAX_BINARY_SIZE:
                raise CorruptedDataError(
                    f"Binary attachment too large: {len(value) - 1} bytes "
                    f"(max {MAX_BINARY_SIZE} bytes)"
                )
            # Leading byte: protection flag
            inner.binaries[len(inner.binaries)] = (value[0] != 0, value[1:])

    raise AssertionError("unreachable")


def _build_inner_header(inner: InnerHeader) -> bytes:
    fields = [
        (InnerHeaderFieldType.INNER_RANDOM_STREAM_ID, struct.pack("<I", inner.random_stream_id)),
        (InnerHeaderFieldType.INNER_RANDOM_STREAM_KEY, inner.random_stream_key),
    ]
    fields.extend(
        (InnerHeaderFieldType.BINARY, bytes([protected]) + data)
        for _index, (protected, data) in sorted(inner.binaries.items())
    )
    fields.append((InnerHeaderFieldType.END, b""))
    return b"".join(struct.pack("<BI", t, len(value)) + value for t, value in fields)


def read_kdbx4(data: bytes, key: CompositeKey) -> DecryptedPayload:
    """Verify and decrypt a KDBX4 file."""
    return Kdbx4Reader(data).decrypt(key)


def write_kdbx4(
    header: KdbxHeader,
    inner_header: InnerHeader,
    xml_data: bytes,
    composite_key: bytes,
) -> bytes:
    """Encrypt and assemble a KDBX4 file."""
    return Kdbx4Writer().encrypt(
        header=header,
        inner_header=inner_header,
        xml_data=xml_data,
        composite_key=composite_key,
    )
