"""Zeroizable byte buffers for key material.

Python gives no hard guarantees about memory: immutable ``bytes`` may be
copied or interned anywhere. SecureBytes keeps its contents in a mutable
``bytearray`` so the one copy it owns can be overwritten on demand, and
refuses to show its contents in ``repr``.
"""

from __future__ import annotations

import hmac
from types import TracebackType


class SecureBytes:
    """Mutable byte buffer that can be explicitly zeroized.

    Example:
        >>> with SecureBytes(b"secret-key") as key:
        ...     use(key.data)
        # key is zeroized here
    """

    __slots__ = ("_buffer", "_zeroized")

    def __init__(self, data: bytes | bytearray) -> None:
        self._buffer = bytearray(data)
        self._zeroized = False

    @property
    def data(self) -> bytes:
        """Get an immutable copy of the contents.

        Raises:
            ValueError: If the buffer was already zeroized
        """
        if self._zeroized:
            raise ValueError("SecureBytes has been zeroized")
        return bytes(self._buffer)

    @property
    def is_zeroized(self) -> bool:
        return self._zeroized

    def zeroize(self) -> None:
        """Overwrite the buffer with zeros and mark it unusable."""
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._zeroized = True

    def __len__(self) -> int:
        return len(self._buffer)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecureBytes):
            return hmac.compare_digest(self._buffer, other._buffer)
        return NotImplemented

    def __hash__(self) -> int:
        # Mutable and secret: not usable as a dict key
        raise TypeError("SecureBytes is unhashable")

    def __enter__(self) -> SecureBytes:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.zeroize()

    def __del__(self) -> None:
        if getattr(self, "_buffer", None) is not None:
            self.zeroize()

    def __repr__(self) -> str:
        state = "zeroized" if self._zeroized else f"{len(self._buffer)} bytes"
        return f"SecureBytes(<{state}>)"
