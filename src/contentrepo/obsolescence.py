"""
Obsolete content collection.

Content on disk that nothing references is first marked, and only deleted by
a later pass once it has stayed unreferenced for the grace period. This keeps
content alive across a reference being briefly dropped and re-added, e.g. a
redeploy of identical bytes.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable

from contentrepo.config import DEFAULT_OBSOLESCENCE_TIMEOUT_MS
from contentrepo.layout import list_local_contents
from contentrepo.logging import get_logger
from contentrepo.references import ReferenceTracker
from contentrepo.types import CleanupResult, LocalContent

logger = get_logger(__name__)

Clock = Callable[[], float]


def current_time_millis() -> float:
    """Wall clock time in milliseconds."""
    return time.time() * 1000.0


class ObsoleteContentCollector:
    """Two-phase mark/sweep over the on-disk inventory.

    Not safe to run concurrently with itself; a single scheduler is expected
    to invoke ``clean``.
    """

    def __init__(
        self,
        repo_root: Path,
        obsolescence_timeout_ms: int = DEFAULT_OBSOLESCENCE_TIMEOUT_MS,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the collector.

        Args:
            repo_root: Repository root to inventory.
            obsolescence_timeout_ms: Grace period before deletion.
            clock: Time source in milliseconds (defaults to wall clock).
        """
        self.repo_root = repo_root
        self.obsolescence_timeout_ms = obsolescence_timeout_ms
        self._clock = clock or current_time_millis
        self._obsolete: dict[str, float] = {}

    @property
    def obsolete_contents(self) -> dict[str, float]:
        """Snapshot of first-seen-unreferenced timestamps by identifier."""
        return dict(self._obsolete)

    def clean(
        self,
        references: ReferenceTracker,
        remove: Callable[[LocalContent], None],
    ) -> CleanupResult:
        """Run one collection pass.

        Args:
            references: Tracker deciding what is still referenced.
            remove: Physically deletes one unreferenced entry.

        Returns:
            The identifiers marked and deleted by this pass.
        """
        result = CleanupResult()
        seen: set[str] = set()
        with references.lock:
            for local in list_local_contents(self.repo_root):
                if not local.path.exists():
                    # Removed earlier in this pass along with its parent
                    continue
                identifier = local.hex_hash
                seen.add(identifier)
                if references.is_referenced(identifier):
                    self._obsolete.pop(identifier, None)
                elif self._mark_as_obsolete(local, remove):
                    result.deleted.add(identifier)
                else:
                    result.marked.add(identifier)

            # Records for content removed by other means
            for identifier in set(self._obsolete) - seen:
                del self._obsolete[identifier]

        if result.marked or result.deleted:
            logger.info(
                "Obsolete content cleanup finished",
                marked=len(result.marked),
                deleted=len(result.deleted),
            )
        return result

    def _mark_as_obsolete(self, local: LocalContent, remove: Callable[[LocalContent], None]) -> bool:
        """Mark an entry, or delete it if its grace period has passed.

        Returns:
            True if the entry was deleted.
        """
        now = self._clock()
        first_seen = self._obsolete.get(local.hex_hash)
        if first_seen is None:
            self._obsolete[local.hex_hash] = now
            return False
        if first_seen + self.obsolescence_timeout_ms >= now:
            return False

        try:
            remove(local)
        except Exception as e:
            logger.error(
                "Cannot delete obsolete content",
                identifier=local.hex_hash,
                path=str(local.path),
                error=str(e),
                exc_info=True,
            )
            return False
        del self._obsolete[local.hex_hash]
        logger.info("Obsolete content cleaned", identifier=local.hex_hash, path=str(local.path))
        return True
