"""Tests for cipher configuration on save."""

from pathlib import Path

import pytest

from kdbximport import (
    Argon2Config,
    Cipher,
    CompositeKey,
    Database,
    UnknownCipherError,
)


def imported_db(cipher: Cipher, key: CompositeKey, source: Path) -> Database:
    db = Database(cipher=cipher, kdf_config=Argon2Config.fast())
    db.set_key(key)
    db.import_xml(source)
    return db


class TestCipherConfigOnSave:
    """Tests for using the cipher parameter when writing databases."""

    @pytest.mark.parametrize("cipher", list(Cipher))
    def test_round_trip(
        self, cipher: Cipher, password_key: CompositeKey, export_path: Path
    ) -> None:
        """Test each outer cipher writes a file that reads back."""
        data = imported_db(cipher, password_key, export_path).to_bytes()

        db2 = Database.open_bytes(data, password_key)
        assert db2.header.cipher is cipher
        assert len(db2.header.encryption_iv) == cipher.iv_size
        entry = db2.find_entries(title="GitHub")[0]
        assert entry.username == "octocat"
        assert entry.password == "hunter2"

    def test_change_cipher_preserves_data(
        self, password_key: CompositeKey, export_path: Path
    ) -> None:
        """Test that the cipher choice doesn't change the content."""
        aes = Database.open_bytes(
            imported_db(Cipher.AES256_CBC, password_key, export_path).to_bytes(), password_key
        )
        chacha = Database.open_bytes(
            imported_db(Cipher.CHACHA20, password_key, export_path).to_bytes(), password_key
        )

        def summary(db: Database) -> list[tuple[str | None, str | None, str | None]]:
            return sorted((e.title, e.username, e.password) for e in db.iter_entries())

        assert summary(aes) == summary(chacha)


class TestCipherEnum:
    """Tests for Cipher enum properties."""

    def test_aes256_properties(self) -> None:
        """Test AES-256-CBC cipher properties."""
        cipher = Cipher.AES256_CBC
        assert cipher.key_size == 32
        assert cipher.iv_size == 16
        assert cipher.display_name == "AES-256-CBC"
        assert len(cipher.value) == 16  # UUID

    def test_chacha20_properties(self) -> None:
        """Test ChaCha20 cipher properties."""
        cipher = Cipher.CHACHA20
        assert cipher.key_size == 32
        assert cipher.iv_size == 12
        assert cipher.display_name == "ChaCha20"
        assert len(cipher.value) == 16  # UUID

    def test_from_uuid(self) -> None:
        """Test cipher lookup by UUID."""
        for cipher in Cipher:
            assert Cipher.from_uuid(cipher.value) == cipher

    def test_from_unknown_uuid(self) -> None:
        """Test an unsupported cipher UUID raises UnknownCipherError."""
        twofish = bytes.fromhex("ad68f29f576f4bb9a36ad47af965346c")
        with pytest.raises(UnknownCipherError) as exc_info:
            Cipher.from_uuid(twofish)
        assert exc_info.value.cipher_uuid == twofish

    def test_file_with_unknown_cipher(self, keyed_db: Database, password_key) -> None:
        """Test opening a file whose header names an unknown cipher."""
        data = keyed_db.to_bytes().replace(Cipher.AES256_CBC.value, b"\x00" * 16, 1)
        with pytest.raises(UnknownCipherError):
            Database.open_bytes(data, password_key)
