"""
Core value types for the content repository.

This module defines:
- ContentKind: which of the three stored forms a hash has
- ContentReference: one consumer's dependency on a content hash
- LocalContent: one entry of the on-disk inventory
- CleanupResult: outcome of a garbage collection pass
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from contentrepo.hashing import is_hex_hash, to_hex

MARKED_CONTENT = "marked-contents"
DELETED_CONTENT = "deleted-contents"


class ContentKind(str, Enum):
    """Stored form of a content item."""

    LEAF = "leaf"
    EMPTY_DIRECTORY = "empty-directory"
    DIRECTORY = "directory"

    @property
    def is_directory(self) -> bool:
        return self is not ContentKind.LEAF


@dataclass(frozen=True)
class ContentReference:
    """A named dependency edge from a logical consumer to a content hash.

    Equality is by (context_path, hex_hash). The hash may be given as raw
    digest bytes or hex; it is normalized to lower-case hex.
    """

    context_path: str
    hex_hash: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "hex_hash", to_hex(self.hex_hash))

    @classmethod
    def of(cls, context_path: str, content_hash: bytes | str) -> ContentReference:
        """Create a reference from a context path and a hash in either form."""
        return cls(context_path=context_path, hex_hash=to_hex(content_hash))

    @property
    def hash(self) -> bytes:
        """Raw digest bytes of the referenced content."""
        return bytes.fromhex(self.hex_hash)


@dataclass(frozen=True)
class LocalContent:
    """An entry found on disk by walking the shard structure.

    ``hex_hash`` is the prefix and suffix directory names joined; it is not a
    valid hash for stray entries (e.g. files dropped in by other tools).
    """

    path: Path
    hex_hash: str

    @property
    def is_valid_hash(self) -> bool:
        return is_hex_hash(self.hex_hash)


@dataclass
class CleanupResult:
    """Content reported by one obsolete-content cleanup pass."""

    marked: set[str] = field(default_factory=set)
    deleted: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            MARKED_CONTENT: sorted(self.marked),
            DELETED_CONTENT: sorted(self.deleted),
        }
