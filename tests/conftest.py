"""Shared fixtures: sample XML exports and cheap key material."""

from __future__ import annotations

import base64
import gzip
import uuid
from collections.abc import Callable
from pathlib import Path

import pytest

from kdbximport import Argon2Config, CompositeKey, Database, KeySource

TEST_PASSWORD = "correct horse battery staple"
ATTACHMENT_DATA = b"attachment payload\n" * 4

ROOT_UUID = uuid.UUID("11111111-1111-1111-1111-111111111111")
EMAIL_UUID = uuid.UUID("22222222-2222-2222-2222-222222222222")
GITHUB_UUID = uuid.UUID("33333333-3333-3333-3333-333333333333")
GMAIL_UUID = uuid.UUID("44444444-4444-4444-4444-444444444444")


def b64(value: uuid.UUID | bytes) -> str:
    raw = value.bytes if isinstance(value, uuid.UUID) else value
    return base64.b64encode(raw).decode("ascii")


def times_xml(created: str = "2024-03-01T12:00:00Z") -> str:
    return (
        "<Times>"
        f"<CreationTime>{created}</CreationTime>"
        f"<LastModificationTime>{created}</LastModificationTime>"
        f"<LastAccessTime>{created}</LastAccessTime>"
        "<ExpiryTime>2030-01-01T00:00:00Z</ExpiryTime>"
        "<Expires>False</Expires>"
        "<UsageCount>3</UsageCount>"
        "</Times>"
    )


def string_xml(key: str, value: str, protect: bool = False) -> str:
    attr = ' ProtectInMemory="True"' if protect else ""
    return f"<String><Key>{key}</Key><Value{attr}>{value}</Value></String>"


def github_entry_xml() -> str:
    return (
        "<Entry>"
        f"<UUID>{b64(GITHUB_UUID)}</UUID>"
        "<IconID>1</IconID>"
        "<Tags>work;code</Tags>"
        + times_xml()
        + string_xml("Title", "GitHub")
        + string_xml("UserName", "octocat")
        + string_xml("Password", "hunter2", protect=True)
        + string_xml("URL", "https://github.com")
        + string_xml("Recovery Code", "abcd-efgh", protect=True)
        + "<Binary><Key>notes.txt</Key><Value Ref=\"0\"/></Binary>"
        "<AutoType><Enabled>True</Enabled><DataTransferObfuscation>0</DataTransferObfuscation>"
        "<Association><Window>GitHub*</Window>"
        "<KeystrokeSequence>{USERNAME}{ENTER}</KeystrokeSequence></Association>"
        "</AutoType>"
        "<History><Entry>"
        f"<UUID>{b64(GITHUB_UUID)}</UUID>"
        + times_xml("2023-01-01T00:00:00Z")
        + string_xml("Title", "GitHub (old)")
        + string_xml("Password", "hunter1", protect=True)
        + "</Entry></History>"
        "</Entry>"
    )


def gmail_entry_xml() -> str:
    return (
        "<Entry>"
        f"<UUID>{b64(GMAIL_UUID)}</UUID>"
        + times_xml()
        + string_xml("Title", "Gmail")
        + string_xml("UserName", "someone@example.com")
        + string_xml("Password", "p&amp;ssw&lt;rd", protect=True)
        + string_xml("Notes", "line one\nline two")
        + "</Entry>"
    )


def export_xml(
    *,
    root_entries: str | None = None,
    subgroups: str | None = None,
    binaries: str | None = None,
    meta_extra: str = "",
) -> str:
    """A KeePass 2.x style XML export; every part can be swapped out."""
    if root_entries is None:
        root_entries = github_entry_xml()
    if subgroups is None:
        subgroups = (
            "<Group>"
            f"<UUID>{b64(EMAIL_UUID)}</UUID><Name>Email</Name>"
            + times_xml()
            + gmail_entry_xml()
            + "</Group>"
        )
    if binaries is None:
        payload = b64(gzip.compress(ATTACHMENT_DATA))
        binaries = f'<Binary ID="0" Compressed="True">{payload}</Binary>'

    return (
        '<?xml version="1.0" encoding="utf-8" standalone="yes"?>\n'
        "<KeePassFile>\n"
        "<Meta>"
        "<Generator>KeePass</Generator>"
        "<DatabaseName>Exported</DatabaseName>"
        "<DatabaseDescription>From KeePass</DatabaseDescription>"
        "<MemoryProtection>"
        "<ProtectTitle>False</ProtectTitle><ProtectUserName>False</ProtectUserName>"
        "<ProtectPassword>True</ProtectPassword><ProtectURL>False</ProtectURL>"
        "<ProtectNotes>False</ProtectNotes>"
        "</MemoryProtection>"
        f"<Binaries>{binaries}</Binaries>"
        f"{meta_extra}"
        "</Meta>\n"
        "<Root>"
        "<Group>"
        f"<UUID>{b64(ROOT_UUID)}</UUID><Name>Root</Name>"
        + times_xml()
        + root_entries
        + subgroups
        + "</Group>"
        "<DeletedObjects><DeletedObject>"
        f"<UUID>{b64(uuid.UUID(int=99))}</UUID>"
        "<DeletionTime>2024-02-01T00:00:00Z</DeletionTime>"
        "</DeletedObject></DeletedObjects>"
        "</Root>\n"
        "</KeePassFile>\n"
    )


@pytest.fixture
def make_export(tmp_path: Path) -> Callable[..., Path]:
    """Write an XML export to disk; accepts the same overrides as export_xml."""
    counter = iter(range(1000))

    def _make(text: str | None = None, **overrides: str) -> Path:
        path = tmp_path / f"export{next(counter)}.xml"
        path.write_text(text if text is not None else export_xml(**overrides), encoding="utf-8")
        return path

    return _make


@pytest.fixture
def export_path(make_export: Callable[..., Path]) -> Path:
    return make_export()


@pytest.fixture
def fast_kdf() -> Argon2Config:
    return Argon2Config.fast()


@pytest.fixture
def password_key() -> CompositeKey:
    return CompositeKey().add_factor(KeySource.password(TEST_PASSWORD))


@pytest.fixture
def keyed_db(fast_kdf: Argon2Config, password_key: CompositeKey) -> Database:
    db = Database(kdf_config=fast_kdf)
    db.set_key(password_key)
    return db
