"""Data models for the entry tree.

This module provides typed Python classes for the imported records:
groups, entries and their timestamps.
"""

from .entry import AutoType, BinaryRef, Entry, StringField
from .group import Group
from .times import Times
from .tree import DatabaseSettings, EntryTree

__all__ = [
    "AutoType",
    "BinaryRef",
    "DatabaseSettings",
    "Entry",
    "EntryTree",
    "Group",
    "StringField",
    "Times",
]
