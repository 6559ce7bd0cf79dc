"""
Content repository facade.

The public entry point for storing deployment content. Content is stored once
per hash; references taken by consumers keep it alive and the obsolete
content cleanup reclaims whatever is left unreferenced.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import BinaryIO, ContextManager

from contentrepo import children_index
from contentrepo.config import DEFAULT_OBSOLESCENCE_TIMEOUT_MS, Settings, get_settings
from contentrepo.exceptions import (
    ConfigurationError,
    ContentNotFoundError,
    ExplodedContentError,
    InvalidHashError,
)
from contentrepo.hashing import DEFAULT_BUFFER_SIZE, to_hex
from contentrepo.item import ContentItem, child_context_path
from contentrepo.layout import CHILDREN, CONTENT, content_file, list_local_contents, remove_stray
from contentrepo.logging import get_logger, log_context
from contentrepo.obsolescence import Clock, ObsoleteContentCollector
from contentrepo.references import ReferenceTracker
from contentrepo.types import CleanupResult, ContentKind, ContentReference, LocalContent

logger = get_logger(__name__)


def _prepare_root(repo_root: Path) -> Path:
    if repo_root.exists():
        if not repo_root.is_dir():
            raise ConfigurationError(
                "Repository root is not a directory", context={"path": str(repo_root)}
            )
        if not os.access(repo_root, os.W_OK):
            raise ConfigurationError(
                "Repository root is not writable", context={"path": str(repo_root)}
            )
    else:
        try:
            repo_root.mkdir(parents=True)
        except OSError as e:
            raise ConfigurationError(
                "Cannot create repository root",
                context={"path": str(repo_root), "error": str(e)},
            ) from e
    return repo_root


def _as_reference(reference: ContentReference | str, content_hash: bytes | str | None) -> ContentReference:
    if isinstance(reference, ContentReference):
        return reference
    if content_hash is None:
        raise InvalidHashError("A content hash is required", context={"context_path": reference})
    return ContentReference.of(reference, content_hash)


class ContentRepository:
    """Content-addressable store for deployment content.

    Every operation runs on the caller's thread. The reference tracker lock
    serializes reference changes with the removals they trigger; everything
    else relies on atomic renames inside the repository root.
    """

    def __init__(
        self,
        repo_root: str | Path,
        obsolescence_timeout_ms: int = DEFAULT_OBSOLESCENCE_TIMEOUT_MS,
        clock: Clock | None = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        defer_removal: bool = False,
    ) -> None:
        """Initialize the repository.

        Args:
            repo_root: Root directory. Created if missing.
            obsolescence_timeout_ms: Grace period before unreferenced
                content is deleted.
            clock: Time source in milliseconds, for the cleanup grace period.
            buffer_size: Chunk size used when streaming content.
            defer_removal: Leave content whose last reference was removed
                on disk for the obsolete content cleanup instead of deleting
                it immediately.

        Raises:
            ConfigurationError: If the root is not a writable directory and
                cannot be created.
        """
        self.repo_root = _prepare_root(Path(repo_root).absolute())
        self.buffer_size = buffer_size
        self.defer_removal = defer_removal
        self.references = ReferenceTracker()
        self._collector = ObsoleteContentCollector(self.repo_root, obsolescence_timeout_ms, clock)
        logger.debug("Content repository started", repo_root=str(self.repo_root))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ContentRepository:
        """Create a repository from application settings."""
        settings = settings or get_settings()
        return cls(
            settings.REPO_ROOT,
            obsolescence_timeout_ms=settings.OBSOLESCENCE_TIMEOUT_MS,
            buffer_size=settings.BUFFER_SIZE,
            defer_removal=settings.DEFER_REMOVAL,
        )

    @property
    def obsolescence_timeout_ms(self) -> int:
        return self._collector.obsolescence_timeout_ms

    def _context(self, operation: str) -> ContextManager[None]:
        return log_context(repo_root=str(self.repo_root), operation=operation)

    def add_content(self, stream: BinaryIO) -> str:
        """Store the bytes read from ``stream``.

        No reference is taken; callers add one with add_content_reference().

        Args:
            stream: Binary stream, read once until EOF. Not closed.

        Returns:
            Hex hash of the content.
        """
        with self._context("add_content"):
            with ContentItem.stage(self, stream) as item:
                item.persist(item.compute_hash())
                return item.hex_hash

    def add_content_reference(
        self,
        reference: ContentReference | str,
        content_hash: bytes | str | None = None,
    ) -> None:
        """Track a consumer's reference to content.

        Accepts a ContentReference or a context path plus hash. When the
        content is a stored directory, the references each directory holds on
        its children are registered too where missing, so a tree referenced
        after a restart is protected as a whole.
        """
        ref = _as_reference(reference, content_hash)
        with self.references.lock:
            self.references.add(ref)
            self._register_children(ref.hex_hash)

    def _register_children(self, hex_hash: str) -> None:
        pending = [hex_hash]
        visited: set[str] = set()
        while pending:
            current = pending.pop()
            if current in visited:
                continue
            visited.add(current)
            index_file = content_file(self.repo_root, current, CHILDREN)
            if not index_file.is_file():
                continue
            try:
                entries = children_index.read_entries(index_file)
            except (OSError, ValueError) as e:
                logger.error("Cannot read children index", hash=current, error=str(e))
                continue
            for name, child_hex, _ in entries:
                try:
                    child_ref = ContentReference(child_context_path(current, name), child_hex)
                except InvalidHashError as e:
                    logger.warning("Invalid child hash in index", hash=current, name=name, error=str(e))
                    continue
                self.references.add(child_ref)
                pending.append(child_ref.hex_hash)

    def remove_content(
        self,
        reference: ContentReference | str,
        content_hash: bytes | str | None = None,
    ) -> None:
        """Drop a consumer's reference; remove the content if it was the last.

        With ``defer_removal`` the content stays on disk and the obsolete
        content cleanup deletes it once the grace period has passed.
        """
        ref = _as_reference(reference, content_hash)
        with self._context("remove_content"), self.references.lock:
            if not self.references.release(ref):
                logger.debug(
                    "Content still referenced",
                    hash=ref.hex_hash,
                    remaining=len(self.references.references(ref.hex_hash)),
                )
                return
            if self.defer_removal:
                logger.debug("Content left for obsolete content cleanup", hash=ref.hex_hash)
                return
            self._remove_unreferenced(ref.hex_hash, ref.context_path)

    def _remove_unreferenced(self, hex_hash: str, context_path: str) -> None:
        item = ContentItem.persisted(self, hex_hash)
        if item.exists():
            item.remove(context_path)

    def has_content(self, content_hash: bytes | str) -> bool:
        """Check whether content is stored under a hash."""
        return ContentItem.persisted(self, content_hash).exists()

    def sync_content(self, reference: ContentReference) -> bool:
        """Check that the content of a reference is available locally."""
        return self.has_content(reference.hex_hash)

    def content_kind(self, content_hash: bytes | str) -> ContentKind:
        """Stored form of a hash.

        Raises:
            ContentNotFoundError: If nothing is stored under the hash.
        """
        return ContentItem.persisted(self, content_hash).kind()

    def get_content(self, content_hash: bytes | str) -> Path:
        """Path of a stored leaf blob.

        Raises:
            ContentNotFoundError: If no leaf is stored under the hash.
        """
        hex_hash = to_hex(content_hash)
        path = content_file(self.repo_root, hex_hash, CONTENT)
        if not path.is_file():
            raise ContentNotFoundError("No content stored for hash", context={"hash": hex_hash})
        return path

    def open_content(self, content_hash: bytes | str) -> BinaryIO:
        """Open the canonical byte stream of any stored item.

        For a leaf these are its raw bytes.

        Raises:
            ContentNotFoundError: If nothing is stored under the hash.
        """
        item = ContentItem.persisted(self, content_hash)
        item.kind()
        return item.open_stream()

    def explode_content(self, content_hash: bytes | str) -> str:
        """Explode an archive into a directory tree.

        The caller must take its own reference on the returned hash.

        Returns:
            Hex hash of the exploded directory.

        Raises:
            ContentNotFoundError: If nothing is stored under the hash.
            ExplodedContentError: If the content is not an archive.
        """
        with self._context("explode_content"):
            item = ContentItem.persisted(self, content_hash)
            return item.explode().hex_hash

    def copy_exploded_content(self, content_hash: bytes | str, target: str | Path) -> None:
        """Copy an exploded directory tree to ``target``.

        Raises:
            ContentNotFoundError: If nothing is stored under the hash.
            ExplodedContentError: If the content is not a directory.
        """
        with self._context("copy_exploded_content"):
            item = ContentItem.persisted(self, content_hash)
            if not any(kind.is_directory for kind in item.stored_kinds()):
                raise ExplodedContentError(
                    "Content is not exploded", context={"hash": item.hex_hash}
                )
            item.copy(Path(target))

    def clean_obsolete_content(self) -> CleanupResult:
        """Mark unreferenced content, deleting what stayed unreferenced past the grace period."""
        with self._context("clean_obsolete_content"):
            return self._collector.clean(self.references, self._remove_local)

    def _remove_local(self, local: LocalContent) -> None:
        if local.is_valid_hash and ContentItem.persisted(self, local.hex_hash).exists():
            self._remove_unreferenced(local.hex_hash, str(local.path))
        else:
            remove_stray(self.repo_root, local.path)

    def list_local_contents(self) -> list[LocalContent]:
        """Inventory of everything stored under the repository root."""
        return list_local_contents(self.repo_root)
