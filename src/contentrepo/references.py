"""
Reference tracking.

Keeps, per content hash, the set of references that depend on it. When the
last reference to a hash is released the content becomes eligible for
physical removal.
"""

from __future__ import annotations

import threading
from typing import Iterator

from contentrepo.types import ContentReference


class ReferenceTracker:
    """In-memory multimap from hex hash to the references holding it.

    All access goes through one reentrant lock. Callers that need a
    "last reference released -> delete content" decision to be atomic against
    concurrent additions hold ``lock`` across both steps.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._references: dict[str, set[ContentReference]] = {}

    def add(self, reference: ContentReference) -> bool:
        """Track a reference.

        Returns:
            True if the reference was not tracked before.
        """
        with self.lock:
            references = self._references.setdefault(reference.hex_hash, set())
            if reference in references:
                return False
            references.add(reference)
            return True

    def release(self, reference: ContentReference) -> bool:
        """Stop tracking a reference.

        Returns:
            True if no reference to the hash remains, including when the hash
            was never tracked at all.
        """
        with self.lock:
            references = self._references.get(reference.hex_hash)
            if references is None:
                return True
            references.discard(reference)
            if references:
                return False
            del self._references[reference.hex_hash]
            return True

    def is_referenced(self, hex_hash: str) -> bool:
        with self.lock:
            return hex_hash in self._references

    def references(self, hex_hash: str) -> frozenset[ContentReference]:
        """Snapshot of the references held on a hash."""
        with self.lock:
            return frozenset(self._references.get(hex_hash, ()))

    def hashes(self) -> set[str]:
        """Snapshot of all referenced hashes."""
        with self.lock:
            return set(self._references)

    def __contains__(self, reference: object) -> bool:
        if not isinstance(reference, ContentReference):
            return False
        with self.lock:
            return reference in self._references.get(reference.hex_hash, ())

    def __len__(self) -> int:
        with self.lock:
            return sum(len(references) for references in self._references.values())

    def __iter__(self) -> Iterator[ContentReference]:
        with self.lock:
            snapshot = [ref for refs in self._references.values() for ref in refs]
        return iter(snapshot)
