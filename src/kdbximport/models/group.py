"""Group model: the folders of the entry tree."""

from __future__ import annotations

import uuid as uuid_module
from collections.abc import Iterator
from dataclasses import dataclass, field

from .entry import Entry
from .times import Times


@dataclass(eq=False)
class Group:
    """A group (folder) holding entries and subgroups.

    Attributes:
        uuid: Unique identifier for the group
        name: Display name of the group
        notes: Optional notes/description
        times: Timestamps
        icon_id: Icon ID for display
        is_expanded: Whether group is expanded in UI
        default_autotype_sequence: Default AutoType sequence for entries
        enable_autotype: AutoType switch, None to inherit from parent
        enable_searching: Search switch, None to inherit from parent
        last_top_visible_entry: UUID of last visible entry (UI state)
        entries: Entries in this group
        subgroups: Child groups
    """

    uuid: uuid_module.UUID = field(default_factory=uuid_module.uuid4)
    name: str | None = None
    notes: str | None = None
    times: Times = field(default_factory=Times.create_new)
    icon_id: str = "48"  # Default folder icon
    is_expanded: bool = True
    default_autotype_sequence: str | None = None
    enable_autotype: bool | None = None
    enable_searching: bool | None = None
    last_top_visible_entry: uuid_module.UUID | None = None
    entries: list[Entry] = field(default_factory=list)
    subgroups: list[Group] = field(default_factory=list)

    _parent: Group | None = field(default=None, repr=False)
    _is_root: bool = field(default=False, repr=False)

    @classmethod
    def create_root(cls, name: str = "Root") -> Group:
        return cls(name=name, _is_root=True)

    @property
    def parent(self) -> Group | None:
        return self._parent

    @property
    def is_root_group(self) -> bool:
        return self._is_root

    def ancestors(self) -> Iterator[Group]:
        """Yield the parent, its parent, and so on up to the root."""
        current = self._parent
        while current is not None:
            yield current
            current = current._parent

    @property
    def path(self) -> list[str]:
        """Group names below the root, ending with this group's name."""
        if self._is_root:
            return []
        chain = [self, *(g for g in self.ancestors() if not g.is_root_group)]
        return [group.name or "" for group in reversed(chain)]

    def add_entry(self, entry: Entry) -> Entry:
        entry._parent = self
        self.entries.append(entry)
        return entry

    def add_subgroup(self, group: Group) -> Group:
        group._parent = self
        self.subgroups.append(group)
        return group

    def create_entry(self, **fields: str | list[str] | None) -> Entry:
        """Create an entry via Entry.create() and add it here."""
        return self.add_entry(Entry.create(**fields))  # type: ignore[arg-type]

    def iter_groups(self, recursive: bool = True) -> Iterator[Group]:
        """Yield subgroups depth-first, pre-order; this group is not included."""
        for subgroup in self.subgroups:
            yield subgroup
            if recursive:
                yield from subgroup.iter_groups()

    def iter_entries(self, recursive: bool = True) -> Iterator[Entry]:
        """Yield this group's entries, then those of each subgroup in turn."""
        groups = [self, *self.iter_groups()] if recursive else [self]
        for group in groups:
            yield from group.entries

    def find_entries(
        self,
        title: str | None = None,
        username: str | None = None,
        recursive: bool = True,
    ) -> list[Entry]:
        """Entries whose title and username match exactly; None matches all."""
        return [
            entry
            for entry in self.iter_entries(recursive=recursive)
            if title in (None, entry.title) and username in (None, entry.username)
        ]

    def find_groups(self, name: str | None = None, recursive: bool = True) -> list[Group]:
        return [g for g in self.iter_groups(recursive=recursive) if name in (None, g.name)]
