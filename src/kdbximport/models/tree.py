"""The entry tree as a whole: root group, database metadata, attachments."""

from __future__ import annotations

import uuid as uuid_module
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime

from .entry import Entry
from .group import Group


@dataclass
class DatabaseSettings:
    """Database metadata from the Meta section.

    Attributes:
        generator: Generator application name
        database_name: Name of the database
        database_description: Description of the database
        default_username: Default username for new entries
        maintenance_history_days: Days to keep deleted items
        color: Database color (hex)
        master_key_change_rec: Days until master key change recommended
        master_key_change_force: Days until master key change forced
        memory_protection: Which standard fields to protect
        recycle_bin_enabled: Whether recycle bin is enabled
        recycle_bin_uuid: UUID of recycle bin group
        history_max_items: Max history entries per entry
        history_max_size: Max history size in bytes
    """

    generator: str = "kdbximport"
    database_name: str = "Database"
    database_description: str = ""
    default_username: str = ""
    maintenance_history_days: int = 365
    color: str | None = None
    master_key_change_rec: int = -1
    master_key_change_force: int = -1
    memory_protection: dict[str, bool] = field(
        default_factory=lambda: {
            "Title": False,
            "UserName": False,
            "Password": True,
            "URL": False,
            "Notes": False,
        }
    )
    recycle_bin_enabled: bool = True
    recycle_bin_uuid: uuid_module.UUID | None = None
    history_max_items: int = 10
    history_max_size: int = 6 * 1024 * 1024  # 6 MiB


@dataclass
class EntryTree:
    """Everything an import produces and a save consumes.

    The pipeline treats this as opaque: the importer builds it, the
    database holds it and hands it to the XML writer unchanged.

    Attributes:
        root_group: Root of the group hierarchy
        settings: Database metadata
        binaries: Attachment pool, reference id -> data
        deleted_objects: Tombstones (uuid, deletion time) for sync
    """

    root_group: Group
    settings: DatabaseSettings = field(default_factory=DatabaseSettings)
    binaries: dict[int, bytes] = field(default_factory=dict)
    deleted_objects: list[tuple[uuid_module.UUID, datetime]] = field(default_factory=list)

    @classmethod
    def empty(cls, name: str = "Root") -> EntryTree:
        return cls(
            root_group=Group.create_root(name), settings=DatabaseSettings(database_name=name)
        )

    def iter_entries(self) -> Iterator[Entry]:
        return self.root_group.iter_entries(recursive=True)

    def iter_groups(self) -> Iterator[Group]:
        return self.root_group.iter_groups(recursive=True)
