"""Entry model for imported records."""

from __future__ import annotations

import uuid as uuid_module
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .times import Times

if TYPE_CHECKING:
    from .group import Group


# Standard string fields every KeePass entry carries
STANDARD_KEYS = ("Title", "UserName", "Password", "URL", "Notes")


@dataclass
class StringField:
    """A string field in an entry.

    Attributes:
        key: Field name (e.g., "Title", "UserName", "Password")
        value: Field value
        protected: Whether the field is memory-protected
    """

    key: str
    value: str | None = None
    protected: bool = False


@dataclass
class AutoType:
    """AutoType settings carried through import unchanged."""

    enabled: bool = True
    sequence: str | None = None
    obfuscation: int = 0
    associations: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class BinaryRef:
    """Reference from an entry to an attachment in the database pool.

    Attributes:
        key: Filename of the attachment
        ref: Reference ID into the database's binaries
    """

    key: str
    ref: int


@dataclass(eq=False)
class Entry:
    """A record in the entry tree.

    Standard fields are exposed as properties; everything else lives in
    ``strings`` keyed by field name.
    """

    uuid: uuid_module.UUID = field(default_factory=uuid_module.uuid4)
    times: Times = field(default_factory=Times.create_new)
    icon_id: str = "0"
    tags: list[str] = field(default_factory=list)
    strings: dict[str, StringField] = field(default_factory=dict)
    binaries: list[BinaryRef] = field(default_factory=list)
    autotype: AutoType = field(default_factory=AutoType)
    history: list[Entry] = field(default_factory=list)
    foreground_color: str | None = None
    background_color: str | None = None
    override_url: str | None = None

    _parent: Group | None = field(default=None, repr=False)

    def _get(self, key: str) -> str | None:
        string_field = self.strings.get(key)
        return string_field.value if string_field else None

    def _set(self, key: str, value: str | None) -> None:
        if key in self.strings:
            self.strings[key].value = value
        else:
            self.strings[key] = StringField(key, value, protected=key == "Password")

    @property
    def title(self) -> str | None:
        return self._get("Title")

    @title.setter
    def title(self, value: str | None) -> None:
        self._set("Title", value)

    @property
    def username(self) -> str | None:
        return self._get("UserName")

    @username.setter
    def username(self, value: str | None) -> None:
        self._set("UserName", value)

    @property
    def password(self) -> str | None:
        return self._get("Password")

    @password.setter
    def password(self, value: str | None) -> None:
        self._set("Password", value)

    @property
    def url(self) -> str | None:
        return self._get("URL")

    @url.setter
    def url(self, value: str | None) -> None:
        self._set("URL", value)

    @property
    def notes(self) -> str | None:
        return self._get("Notes")

    @notes.setter
    def notes(self, value: str | None) -> None:
        self._set("Notes", value)

    @property
    def custom_properties(self) -> dict[str, str | None]:
        """Non-standard string fields as a plain dictionary."""
        return {k: v.value for k, v in self.strings.items() if k not in STANDARD_KEYS}

    @property
    def parent(self) -> Group | None:
        return self._parent

    def __str__(self) -> str:
        return f'Entry: "{self.title}" ({self.username})'

    @classmethod
    def create(
        cls,
        title: str | None = None,
        username: str | None = None,
        password: str | None = None,
        url: str | None = None,
        notes: str | None = None,
        tags: list[str] | None = None,
    ) -> Entry:
        entry = cls(tags=tags or [])
        for key, value in zip(STANDARD_KEYS, (title, username, password, url, notes)):
            entry._set(key, value)
        return entry
