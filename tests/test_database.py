"""Tests for the Database lifecycle, import and atomic save."""

import hashlib
import os
import uuid
from collections.abc import Callable
from pathlib import Path

import pytest
from conftest import ATTACHMENT_DATA, GITHUB_UUID, TEST_PASSWORD

from kdbximport import (
    AlreadyExistsError,
    Argon2Config,
    AuthenticationError,
    Cipher,
    CompositeKey,
    CorruptedDataError,
    Database,
    DocumentImportError,
    EmptyKeyError,
    KeyNotSetError,
    KeySource,
    LifecycleState,
    PathError,
    WriteError,
)
from kdbximport.persistence import backup_path
from kdbximport.testing import MockYubiKey


def file_hash(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


class TestLifecycle:
    """Tests for lifecycle transitions."""

    def test_new_database_is_uninitialized(self) -> None:
        """Test a fresh instance has no key and no changes."""
        db = Database()
        assert db.state is LifecycleState.UNINITIALIZED
        assert not db.dirty
        assert not db.has_key
        assert db.filepath is None

    def test_full_pipeline(self, keyed_db: Database, export_path: Path, tmp_path: Path) -> None:
        """Test set_key -> import -> save walks through every state."""
        assert keyed_db.state is LifecycleState.KEYED
        assert not keyed_db.dirty

        keyed_db.import_xml(export_path)
        assert keyed_db.state is LifecycleState.POPULATED
        assert keyed_db.dirty

        target = tmp_path / "vault.kdbx"
        keyed_db.save(target)
        assert keyed_db.state is LifecycleState.PERSISTED
        assert not keyed_db.dirty
        assert keyed_db.filepath == target

    def test_states_are_ordered(self) -> None:
        """Test lifecycle states compare by progress."""
        assert (
            LifecycleState.UNINITIALIZED
            < LifecycleState.KEYED
            < LifecycleState.POPULATED
            < LifecycleState.PERSISTED
        )

    def test_import_before_key(
        self, fast_kdf: Argon2Config, password_key: CompositeKey, export_path: Path
    ) -> None:
        """Test importing first keeps the state until a key arrives."""
        db = Database(kdf_config=fast_kdf)
        db.import_xml(export_path)
        assert db.state is LifecycleState.UNINITIALIZED
        assert db.find_entries(title="GitHub")

        db.set_key(password_key)
        assert db.state is LifecycleState.POPULATED

    def test_empty_key_leaves_state(self) -> None:
        """Test set_key with no factors fails without side effects."""
        db = Database()
        with pytest.raises(EmptyKeyError):
            db.set_key(CompositeKey())
        assert db.state is LifecycleState.UNINITIALIZED
        assert not db.has_key

    def test_rekey_never_regresses(
        self, keyed_db: Database, export_path: Path, tmp_path: Path
    ) -> None:
        """Test changing the key keeps the state and marks changes."""
        keyed_db.import_xml(export_path)
        keyed_db.save(tmp_path / "vault.kdbx")

        keyed_db.set_key(CompositeKey([KeySource.password("new password")]))
        assert keyed_db.state is LifecycleState.PERSISTED
        assert keyed_db.dirty

    def test_import_after_save_repopulates(
        self, keyed_db: Database, export_path: Path, tmp_path: Path
    ) -> None:
        """Test a new import replaces the tree of a saved database."""
        keyed_db.import_xml(export_path)
        keyed_db.save(tmp_path / "vault.kdbx")
        keyed_db.import_xml(export_path)
        assert keyed_db.state is LifecycleState.POPULATED
        assert keyed_db.dirty


class TestImportFailure:
    """Tests that a failed import changes nothing."""

    def test_failed_import_keeps_tree_and_state(
        self, keyed_db: Database, export_path: Path, make_export: Callable[..., Path]
    ) -> None:
        """Test a malformed document leaves the previous import in place."""
        keyed_db.import_xml(export_path)
        tree_before = keyed_db.tree

        with pytest.raises(DocumentImportError) as exc_info:
            keyed_db.import_xml(make_export("<KeePassFile><Root>"))
        assert str(exc_info.value)

        assert keyed_db.tree is tree_before
        assert keyed_db.state is LifecycleState.POPULATED
        assert keyed_db.find_entries(title="GitHub")

    def test_failed_first_import(self, keyed_db: Database, tmp_path: Path) -> None:
        """Test a failed first import leaves the database keyed and clean."""
        with pytest.raises(DocumentImportError):
            keyed_db.import_xml(tmp_path / "missing.xml")
        assert keyed_db.state is LifecycleState.KEYED
        assert not keyed_db.dirty
        assert list(keyed_db.iter_entries()) == []


class TestSaveAndReopen:
    """Tests that a saved database decrypts to the imported tree."""

    @pytest.fixture
    def reopened(self, keyed_db: Database, export_path: Path, tmp_path: Path) -> Database:
        keyed_db.import_xml(export_path)
        target = tmp_path / "vault.kdbx"
        keyed_db.save(target)
        return Database.open(target, CompositeKey([KeySource.password(TEST_PASSWORD)]))

    def test_reopened_state(self, reopened: Database, tmp_path: Path) -> None:
        """Test an opened database is persisted and clean."""
        assert reopened.state is LifecycleState.PERSISTED
        assert not reopened.dirty
        assert reopened.has_key
        assert reopened.filepath == tmp_path / "vault.kdbx"

    def test_entries_survive(self, reopened: Database) -> None:
        """Test entries, fields and hierarchy round-trip."""
        github = reopened.find_entries(title="GitHub")[0]
        assert github.uuid == GITHUB_UUID
        assert github.username == "octocat"
        assert github.password == "hunter2"
        assert github.custom_properties == {"Recovery Code": "abcd-efgh"}
        assert github.tags == ["work", "code"]
        assert github.autotype.associations == [("GitHub*", "{USERNAME}{ENTER}")]

        gmail = reopened.find_entries(title="Gmail")[0]
        assert gmail.password == "p&ssw<rd"
        assert gmail.notes == "line one\nline two"
        assert gmail.parent is not None
        assert gmail.parent.name == "Email"

    def test_protection_flags_survive(self, reopened: Database) -> None:
        """Test protected fields are stored stream-encrypted and read back as such."""
        github = reopened.find_entries(title="GitHub")[0]
        assert github.strings["Password"].protected
        assert github.strings["Recovery Code"].protected
        assert not github.strings["UserName"].protected

    def test_history_survives(self, reopened: Database) -> None:
        """Test history entries and their protected values."""
        github = reopened.find_entries(title="GitHub")[0]
        assert [h.title for h in github.history] == ["GitHub (old)"]
        assert github.history[0].password == "hunter1"

    def test_attachments_survive(self, reopened: Database) -> None:
        """Test attachments move to the inner header and resolve."""
        github = reopened.find_entries(title="GitHub")[0]
        assert reopened.get_attachment(github, "notes.txt") == ATTACHMENT_DATA
        assert reopened.get_attachment(github, "missing.txt") is None

    def test_metadata_survives(self, reopened: Database) -> None:
        """Test settings and tombstones round-trip."""
        assert reopened.settings.database_name == "Exported"
        assert reopened.settings.database_description == "From KeePass"
        assert reopened.tree.deleted_objects[0][0] == uuid.UUID(int=99)

    def test_wrong_password(self, keyed_db: Database, export_path: Path, tmp_path: Path) -> None:
        """Test a different key fails authentication."""
        keyed_db.import_xml(export_path)
        keyed_db.save(tmp_path / "vault.kdbx")
        with pytest.raises(AuthenticationError):
            Database.open(tmp_path / "vault.kdbx", CompositeKey([KeySource.password("wrong")]))

    def test_open_missing_file(self, tmp_path: Path) -> None:
        """Test opening a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            Database.open(tmp_path / "nope.kdbx", CompositeKey([KeySource.password("x")]))

    def test_fresh_seeds_each_serialization(self, keyed_db: Database, export_path: Path) -> None:
        """Test two serializations differ but both decrypt."""
        keyed_db.import_xml(export_path)
        first = keyed_db.to_bytes()
        second = keyed_db.to_bytes()
        assert first != second

        key = CompositeKey([KeySource.password(TEST_PASSWORD)])
        for data in (first, second):
            assert Database.open_bytes(data, key).find_entries(title="GitHub")

    def test_chacha20_cipher(
        self, fast_kdf: Argon2Config, password_key: CompositeKey, export_path: Path
    ) -> None:
        """Test saving with the ChaCha20 outer cipher."""
        db = Database(cipher=Cipher.CHACHA20, kdf_config=fast_kdf)
        db.set_key(password_key)
        db.import_xml(export_path)

        reopened = Database.open_bytes(db.to_bytes(), password_key)
        assert reopened.header.cipher is Cipher.CHACHA20
        assert reopened.find_entries(title="Gmail")

    def test_password_and_key_file(
        self, fast_kdf: Argon2Config, export_path: Path, tmp_path: Path
    ) -> None:
        """Test a two-factor key opens only with both factors in order."""
        key_path = tmp_path / "vault.key"
        key_path.write_bytes(os.urandom(64))
        key = CompositeKey([KeySource.password("pw"), KeySource.key_file_path(key_path)])

        db = Database(kdf_config=fast_kdf)
        db.set_key(key)
        db.import_xml(export_path)
        data = db.to_bytes()

        assert Database.open_bytes(data, key).find_entries(title="GitHub")
        with pytest.raises(AuthenticationError):
            Database.open_bytes(data, CompositeKey([KeySource.password("pw")]))

    def test_hardware_token_challenged_with_salt(
        self, fast_kdf: Argon2Config, export_path: Path
    ) -> None:
        """Test a token factor answers the KDF salt and reopens the file."""
        token = MockYubiKey.with_test_secret()
        key = CompositeKey([KeySource.password("pw"), KeySource.challenge_response(token)])

        db = Database(kdf_config=fast_kdf)
        db.set_key(key)
        assert token.challenges == [db.header.kdf_salt]

        db.import_xml(export_path)
        reopened = Database.open_bytes(db.to_bytes(), key)
        assert reopened.find_entries(title="GitHub")

        other = CompositeKey(
            [KeySource.password("pw"), KeySource.challenge_response(MockYubiKey.with_zero_secret())]
        )
        with pytest.raises(AuthenticationError):
            Database.open_bytes(db.to_bytes(), other)


class TestSavePreconditions:
    """Tests for the checks that run before anything is written."""

    def test_save_without_key(self, export_path: Path, tmp_path: Path) -> None:
        """Test saving an unkeyed database raises KeyNotSetError."""
        db = Database()
        db.import_xml(export_path)
        target = tmp_path / "vault.kdbx"

        with pytest.raises(KeyNotSetError, match="No key is set"):
            db.save(target)
        assert not target.exists()
        assert list(tmp_path.iterdir()) == [export_path]

    def test_refuses_to_overwrite(self, keyed_db: Database, tmp_path: Path) -> None:
        """Test an existing target is left byte-for-byte unchanged."""
        target = tmp_path / "vault.kdbx"
        target.write_bytes(b"precious existing data")
        before = file_hash(target)

        with pytest.raises(AlreadyExistsError, match="already exists"):
            keyed_db.save(target)

        assert file_hash(target) == before
        assert keyed_db.state is LifecycleState.KEYED

    def test_missing_parent_directory(self, keyed_db: Database, tmp_path: Path) -> None:
        """Test a missing parent directory raises PathError."""
        with pytest.raises(PathError, match="does not exist"):
            keyed_db.save(tmp_path / "no" / "such" / "vault.kdbx")

    def test_target_is_directory(self, keyed_db: Database, tmp_path: Path) -> None:
        """Test a directory target raises PathError."""
        with pytest.raises(PathError, match="is a directory"):
            keyed_db.save(tmp_path, overwrite=True)

    @pytest.mark.skipif(
        not hasattr(os, "geteuid") or os.geteuid() == 0,
        reason="needs POSIX permissions enforced for this user",
    )
    def test_unwritable_directory(self, keyed_db: Database, tmp_path: Path) -> None:
        """Test a read-only directory raises PathError."""
        locked = tmp_path / "locked"
        locked.mkdir()
        locked.chmod(0o500)
        try:
            with pytest.raises(PathError, match="not writable"):
                keyed_db.save(locked / "vault.kdbx")
        finally:
            locked.chmod(0o700)

    def test_save_in_place_needs_filepath(self, keyed_db: Database) -> None:
        """Test save() without a path needs a previous path."""
        with pytest.raises(PathError, match="no file path"):
            keyed_db.save()


class TestSaveOverwriteAndBackup:
    """Tests for overwrite and backup behaviour."""

    def test_overwrite(self, keyed_db: Database, export_path: Path, tmp_path: Path) -> None:
        """Test overwrite=True replaces the target."""
        target = tmp_path / "vault.kdbx"
        target.write_bytes(b"old")
        keyed_db.import_xml(export_path)

        keyed_db.save(target, overwrite=True)

        reopened = Database.open(target, CompositeKey([KeySource.password(TEST_PASSWORD)]))
        assert reopened.find_entries(title="GitHub")
        assert not backup_path(target).exists()

    def test_backup_keeps_previous_version(
        self, keyed_db: Database, export_path: Path, tmp_path: Path
    ) -> None:
        """Test backup=True copies the old file to <stem>.old<suffix>."""
        target = tmp_path / "vault.kdbx"
        target.write_bytes(b"previous version")
        keyed_db.import_xml(export_path)

        keyed_db.save(target, overwrite=True, backup=True)

        assert backup_path(target) == tmp_path / "vault.old.kdbx"
        assert backup_path(target).read_bytes() == b"previous version"
        assert target.read_bytes() != b"previous version"

    def test_save_in_place(self, keyed_db: Database, export_path: Path, tmp_path: Path) -> None:
        """Test save() with no path rewrites the last file."""
        target = tmp_path / "vault.kdbx"
        keyed_db.import_xml(export_path)
        keyed_db.save(target)
        before = file_hash(target)

        keyed_db.root_group.create_entry(title="Added later")
        keyed_db.save()

        assert file_hash(target) != before
        reopened = Database.open(target, CompositeKey([KeySource.password(TEST_PASSWORD)]))
        assert reopened.find_entries(title="Added later")


class TestSaveInterrupted:
    """Tests that a failure before the rename leaves the target untouched."""

    def test_rename_failure(
        self,
        keyed_db: Database,
        export_path: Path,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a failing rename keeps the old file and removes the temp file."""
        target = tmp_path / "vault.kdbx"
        target.write_bytes(b"original contents")
        before = file_hash(target)
        keyed_db.import_xml(export_path)

        def fail_replace(src: object, dst: object) -> None:
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(os, "replace", fail_replace)

        with pytest.raises(WriteError, match="No space left"):
            keyed_db.save(target, overwrite=True)

        assert file_hash(target) == before
        names = sorted(p.name for p in tmp_path.iterdir())
        assert names == sorted([export_path.name, "vault.kdbx"])
        assert keyed_db.state is LifecycleState.POPULATED
        assert keyed_db.dirty

    def test_fsync_failure_with_new_target(
        self,
        keyed_db: Database,
        export_path: Path,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a failing flush to disk leaves no target behind."""
        keyed_db.import_xml(export_path)

        def fail_fsync(fd: int) -> None:
            raise OSError(5, "Input/output error")

        monkeypatch.setattr(os, "fsync", fail_fsync)
        target = tmp_path / "vault.kdbx"

        with pytest.raises(WriteError):
            keyed_db.save(target)

        assert not target.exists()
        assert list(tmp_path.iterdir()) == [export_path]

    def test_interrupt_removes_temp_file(
        self,
        keyed_db: Database,
        export_path: Path,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test Ctrl-C before the rename leaves no temporary file."""
        keyed_db.import_xml(export_path)

        def interrupt(src: object, dst: object) -> None:
            raise KeyboardInterrupt

        monkeypatch.setattr(os, "replace", interrupt)
        target = tmp_path / "vault.kdbx"

        with pytest.raises(KeyboardInterrupt):
            keyed_db.save(target)

        assert not target.exists()
        assert list(tmp_path.iterdir()) == [export_path]


class TestDatabaseMisc:
    """Tests for accessors and cleanup."""

    def test_context_manager_zeroizes_key(
        self, fast_kdf: Argon2Config, password_key: CompositeKey, tmp_path: Path
    ) -> None:
        """Test leaving the with-block drops the key."""
        with Database(kdf_config=fast_kdf) as db:
            db.set_key(password_key)
            assert db.has_key
            stored = db._key

        assert not db.has_key
        assert stored is not None and stored.is_zeroized
        with pytest.raises(KeyNotSetError):
            db.save(tmp_path / "vault.kdbx")

    def test_str(self, keyed_db: Database, export_path: Path) -> None:
        """Test the summary line."""
        keyed_db.import_xml(export_path)
        assert str(keyed_db) == 'Database: "Exported" (2 entries, 1 groups, populated)'

    def test_find_by_uuid(self, keyed_db: Database, export_path: Path) -> None:
        """Test filtering entries by UUID."""
        keyed_db.import_xml(export_path)
        assert [e.title for e in keyed_db.find_entries(uuid=GITHUB_UUID)] == ["GitHub"]
        assert keyed_db.find_groups(name="Email")[0].name == "Email"

    def test_get_binary(self, keyed_db: Database, export_path: Path) -> None:
        """Test attachments can be fetched from the pool by reference."""
        keyed_db.import_xml(export_path)
        ref = keyed_db.find_entries(title="GitHub")[0].binaries[0].ref
        assert keyed_db.get_binary(ref) == ATTACHMENT_DATA
        assert keyed_db.get_binary(ref + 1) is None


COMPRESSION_FIELD = b"\x03\x04\x00\x00\x00"


class TestCorruptedHeader:
    """Tests that damaged outer headers raise CorruptedDataError."""

    @pytest.fixture
    def saved(self, keyed_db: Database, export_path: Path) -> bytes:
        keyed_db.import_xml(export_path)
        return keyed_db.to_bytes()

    def test_unknown_compression_flag(self, saved: bytes, password_key: CompositeKey) -> None:
        """Test a compression flag outside the known values."""
        data = bytearray(saved)
        data[data.index(COMPRESSION_FIELD, 12) + len(COMPRESSION_FIELD)] = 7
        with pytest.raises(CorruptedDataError, match="compression"):
            Database.open_bytes(bytes(data), password_key)

    def test_short_compression_field(self, saved: bytes, password_key: CompositeKey) -> None:
        """Test a compression field that isn't four bytes long."""
        start = saved.index(COMPRESSION_FIELD, 12)
        data = saved[:start] + b"\x03\x03\x00\x00\x00\x01\x00\x00" + saved[start + 9 :]
        with pytest.raises(CorruptedDataError, match="compression"):
            Database.open_bytes(data, password_key)

    def test_kdf_parameter_with_wrong_type(
        self, saved: bytes, password_key: CompositeKey
    ) -> None:
        """Test an Argon2 iteration count stored as a byte string."""
        iterations = b"\x05\x01\x00\x00\x00I\x08\x00\x00\x00"
        assert iterations in saved
        data = saved.replace(iterations, b"\x42" + iterations[1:], 1)
        with pytest.raises(CorruptedDataError, match="expected an integer"):
            Database.open_bytes(data, password_key)
