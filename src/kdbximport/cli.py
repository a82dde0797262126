"""Command-line interface for kdbximport.

Provides subcommands:
  import - Create a new encrypted database from a KeePass XML export

Exit codes:
    0 - Success
    1 - Any failure (one line on stderr says which)
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from . import __version__
from .database import Database
from .exceptions import CredentialError, DocumentImportError, KdbxError
from .security import Argon2Config, CompositeKey, KeySource

PASSWORD_PROMPT = "Enter password to encrypt database (optional): "

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


@dataclass(frozen=True, slots=True)
class ImportArguments:
    """Parsed arguments of the import command.

    Attributes:
        source: XML export to read
        target: Database file to create; must not exist
        key_file: Optional key file factor (programmatic use only)
    """

    source: Path
    target: Path
    key_file: Path | None = None


def _read_line(echo: bool) -> str:
    """Read one line from the terminal; EOF counts as empty."""
    try:
        if echo:
            return input()
        return getpass.getpass(prompt="")
    except EOFError:
        return ""


def create_from_import(
    args: ImportArguments,
    *,
    read_line: Callable[[bool], str] = _read_line,
    out: TextIO | None = None,
    err: TextIO | None = None,
    kdf_config: Argon2Config | None = None,
) -> int:
    """Run the import pipeline: key, import, save.

    Args:
        args: Source and target paths
        read_line: Reads one terminal line; called with echo=False
        out: Stream for the prompt and the success line (stdout if None)
        err: Stream for the failure line (stderr if None)
        kdf_config: Argon2 parameters for the new file (standard if None)

    Returns:
        Process exit code
    """
    out = out or sys.stdout
    err = err or sys.stderr

    if args.target.exists():
        print(f"File {args.target} already exists.", file=err)
        return EXIT_FAILURE

    out.write(PASSWORD_PROMPT)
    out.flush()
    password = read_line(echo=False)

    key = CompositeKey()
    if password:
        key.add_factor(KeySource.password(password))
    if args.key_file is not None:
        try:
            key.add_factor(KeySource.key_file_path(args.key_file))
        except (OSError, CredentialError) as e:
            print(f"Unable to load key file {args.key_file}: {e}", file=err)
            return EXIT_FAILURE

    if key.is_empty():
        print("No key is set. Aborting database creation.", file=err)
        return EXIT_FAILURE

    with Database(kdf_config=kdf_config) as database:
        database.set_key(key)

        try:
            database.import_xml(args.source)
        except DocumentImportError as e:
            print(f"Unable to import XML database: {e}", file=err)
            return EXIT_FAILURE

        try:
            database.save(args.target, overwrite=False)
        except KdbxError as e:
            print(f"Failed to save the database: {e}.", file=err)
            return EXIT_FAILURE

    print("Successfully imported database.", file=out)
    return EXIT_SUCCESS


def import_into_existing(database: Database, source: str | Path, err: TextIO | None = None) -> int:
    """Import an XML export into an already keyed database without saving.

    Returns:
        Process exit code
    """
    try:
        database.import_xml(source)
    except DocumentImportError as e:
        print(f"Unable to import XML database export {e}", file=err or sys.stderr)
        return EXIT_FAILURE
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# Subcommand handlers
# ---------------------------------------------------------------------------


def cmd_import(args: argparse.Namespace) -> int:
    """Handle the 'import' subcommand."""
    return create_from_import(ImportArguments(source=Path(args.source), target=Path(args.target)))


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="kdbx-import",
        description="Create KDBX 4 databases from KeePass XML exports",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_import = sub.add_parser(
        "import", help="Import an XML export into a new encrypted database"
    )
    p_import.add_argument("source", help="Path to the KeePass XML export")
    p_import.add_argument("target", help="Path of the .kdbx file to create")
    p_import.set_defaults(func=cmd_import)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)
