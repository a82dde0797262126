"""Timestamps shared by entries and groups."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime


def _now() -> datetime:
    # KDBX stores whole seconds
    return datetime.now(UTC).replace(microsecond=0)


@dataclass
class Times:
    """KDBX Times block.

    Attributes:
        creation_time: When the item was created
        last_modification_time: When it was last changed
        last_access_time: When it was last read
        expiry_time: When it expires (only meaningful if expires is set)
        expires: Whether the expiry time applies
        usage_count: How often the item was used
        location_changed: When it last moved to another group
    """

    creation_time: datetime = field(default_factory=_now)
    last_modification_time: datetime = field(default_factory=_now)
    last_access_time: datetime = field(default_factory=_now)
    expiry_time: datetime | None = None
    expires: bool = False
    usage_count: int = 0
    location_changed: datetime | None = None

    @classmethod
    def create_new(
        cls, expires: bool = False, expiry_time: datetime | None = None
    ) -> Times:
        now = _now()
        return cls(
            creation_time=now,
            last_modification_time=now,
            last_access_time=now,
            expiry_time=expiry_time,
            expires=expires,
            location_changed=now,
        )

    @property
    def expired(self) -> bool:
        if not self.expires or self.expiry_time is None:
            return False
        return self.expiry_time <= datetime.now(UTC)

