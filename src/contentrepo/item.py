"""
Content items: the unit of storage in the repository.

A ContentItem is one of:
- a leaf blob,
- an empty directory,
- a directory of named children, each itself a ContentItem.

Items are either persisted (addressed by their hash under the repository
root) or unpersisted: a leaf staged into a temp file while its digest is
computed, or a directory synthesized in memory while exploding an archive.
Unpersisted items own their temp files until persist() or close().

The hash of a directory is the digest of its canonical stream: for each child
in name order, the UTF-8 name followed by the child's own canonical stream.
Trees are walked with explicit stacks so deeply nested archives cannot hit
the interpreter's recursion limit.
"""

from __future__ import annotations

import io
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Iterable, Iterator, Union

from contentrepo import children_index
from contentrepo.exceptions import (
    ContentIOError,
    ContentNotFoundError,
    ExplodedContentError,
    InvalidHashError,
    InvalidStateError,
)
from contentrepo.hashing import hash_chunks, hash_stream, iter_chunks, to_hex
from contentrepo.layout import (
    CHILDREN,
    CONTENT,
    EMPTY_DIR,
    MARKERS,
    content_file,
    create_temp_file,
    move_temp_to_permanent,
    remove_content_file,
    safe_delete,
    shard_dir,
)
from contentrepo.logging import get_logger
from contentrepo.types import ContentKind, ContentReference

if TYPE_CHECKING:
    from contentrepo.repository import ContentRepository

logger = get_logger(__name__)

_StackEntry = Union[bytes, "ContentItem"]

_MARKER_BY_KIND = {
    ContentKind.LEAF: CONTENT,
    ContentKind.DIRECTORY: CHILDREN,
    ContentKind.EMPTY_DIRECTORY: EMPTY_DIR,
}

# Form copied out when a hash holds more than one
_ROOT_COPY_ORDER = (ContentKind.DIRECTORY, ContentKind.EMPTY_DIRECTORY, ContentKind.LEAF)
_CHILD_COPY_ORDER = (ContentKind.DIRECTORY, ContentKind.LEAF, ContentKind.EMPTY_DIRECTORY)


def canonical_order(names: Iterable[str]) -> list[str]:
    """Sort child names the way the canonical stream orders them.

    Names compare by UTF-16 code units so hashes agree with repositories
    written by other implementations.
    """
    return sorted(names, key=lambda name: name.encode("utf-16-be", "surrogatepass"))


def child_context_path(parent_hex: str, name: str) -> str:
    """Context path of the reference a directory holds on one of its children."""
    return f"{parent_hex}/{name}"


def _is_safe_name(name: str) -> bool:
    return bool(name) and name not in (".", "..") and "/" not in name and "\\" not in name


class _ChunkReader(io.RawIOBase):
    """Raw binary stream over an iterator of byte chunks."""

    def __init__(self, chunks: Iterator[bytes]) -> None:
        self._chunks = chunks
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[no-untyped-def]
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size

    def close(self) -> None:
        # Closes any leaf file the generator still holds open
        close_chunks = getattr(self._chunks, "close", None)
        if close_chunks is not None:
            close_chunks()
        super().close()


class ContentItem:
    """A piece of content controlled by the repository.

    Use the constructors rather than ``__init__``:
    - ``ContentItem.persisted(repository, hash)`` for stored content
    - ``ContentItem.stage(repository, stream)`` for a new leaf
    - ``ContentItem.directory(repository)`` for a synthesized directory
    """

    def __init__(
        self,
        repository: ContentRepository,
        hex_hash: str | None = None,
        staged_file: Path | None = None,
        staged_hash: bytes | None = None,
        children: dict[str, ContentItem] | None = None,
    ) -> None:
        self._repository = repository
        self._root = repository.repo_root
        self._hex_hash = hex_hash
        self._staged_file = staged_file
        self._children = children
        self._pending_hash: bytes | None = staged_hash
        self._form: ContentKind | None = None
        self._closed = False

    @classmethod
    def persisted(cls, repository: ContentRepository, content_hash: bytes | str) -> ContentItem:
        """Address content already stored under ``content_hash``."""
        return cls(repository, hex_hash=to_hex(content_hash))

    @classmethod
    def stage(cls, repository: ContentRepository, source: BinaryIO) -> ContentItem:
        """Copy a stream into a temp file, computing its digest on the way.

        Raises:
            ContentIOError: If the stream cannot be staged.
        """
        try:
            tmp_file = create_temp_file(repository.repo_root)
        except OSError as e:
            raise ContentIOError(
                "Cannot create staging file",
                context={"root": str(repository.repo_root), "error": str(e)},
            ) from e
        try:
            with tmp_file.open("wb") as out:
                staged_hash = hash_stream(source, repository.buffer_size, sink=out.write)
        except OSError as e:
            safe_delete(tmp_file)
            raise ContentIOError(
                "Cannot stage content", context={"path": str(tmp_file), "error": str(e)}
            ) from e
        except BaseException:
            safe_delete(tmp_file)
            raise
        return cls(repository, staged_file=tmp_file, staged_hash=staged_hash)

    @classmethod
    def directory(cls, repository: ContentRepository) -> ContentItem:
        """Create an empty unpersisted directory."""
        return cls(repository, children={})

    def __enter__(self) -> ContentItem:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        state = self._hex_hash or ("staged" if self._staged_file else "directory")
        return f"ContentItem({state})"

    @property
    def has_hash(self) -> bool:
        return self._hex_hash is not None

    @property
    def hex_hash(self) -> str:
        """Hex hash of persisted content.

        Raises:
            InvalidStateError: If the item has not been persisted.
        """
        if self._hex_hash is None:
            raise InvalidStateError("Content hash is not known yet", context={"item": repr(self)})
        return self._hex_hash

    @property
    def hash(self) -> bytes:
        return bytes.fromhex(self.hex_hash)

    @property
    def children(self) -> dict[str, ContentItem]:
        """Children of an unpersisted directory."""
        if self._children is None:
            raise InvalidStateError("Item is not an unpersisted directory", context={"item": repr(self)})
        return self._children

    def add_child(self, name: str, child: ContentItem) -> None:
        """Attach a child to an unpersisted directory, replacing any previous one.

        Raises:
            InvalidStateError: If the name is empty or contains a slash.
        """
        if not name or "/" in name:
            raise InvalidStateError("Invalid child name", context={"name": name})
        previous = self.children.get(name)
        if previous is not None and previous is not child:
            previous.close()
        self.children[name] = child

    def exists(self) -> bool:
        """Check whether any stored form is present for this item's hash."""
        hash_dir = shard_dir(self._root, self.hex_hash)
        return any((hash_dir / marker).exists() for marker in MARKERS)

    def stored_kinds(self) -> list[ContentKind]:
        """Forms stored under this item's hash, leaf first.

        A zero-length file and an empty directory share a hash, so both can
        be stored side by side.

        Raises:
            ContentNotFoundError: If nothing is stored under the hash.
        """
        hash_dir = shard_dir(self._root, self.hex_hash)
        stored = [kind for kind, marker in _MARKER_BY_KIND.items() if (hash_dir / marker).exists()]
        if not stored:
            raise ContentNotFoundError("No content stored for hash", context={"hash": self.hex_hash})
        return stored

    def kind(self) -> ContentKind:
        """Determine the stored (or staged) form of this item.

        An item persisted by this instance reports the form it was stored
        as. Otherwise a leaf wins over the directory forms.

        Raises:
            ContentNotFoundError: If a persisted item has nothing on disk.
        """
        if self._children is not None:
            return ContentKind.DIRECTORY if self._children else ContentKind.EMPTY_DIRECTORY
        if self._staged_file is not None:
            return ContentKind.LEAF
        if self._form is not None:
            return self._form
        return self.stored_kinds()[0]

    def _pick_kind(self, preference: tuple[ContentKind, ...]) -> ContentKind:
        stored = self.stored_kinds()
        return next(kind for kind in preference if kind in stored)

    def read_children(self) -> dict[str, str]:
        """Read the children index of a persisted directory (name -> hex hash)."""
        return {name: child_hex for name, child_hex, _ in self._read_entries(self.hex_hash)}

    def _read_entries(self, hex_hash: str) -> list[tuple[str, str, bool]]:
        return children_index.read_entries(content_file(self._root, hex_hash, CHILDREN))

    def _ordered_children(self) -> list[tuple[str, ContentItem]]:
        if self._children is not None:
            return [(name, self._children[name]) for name in canonical_order(self._children)]
        kind = self.kind()
        if kind is not ContentKind.DIRECTORY:
            return []
        stored = self.read_children()
        return [
            (name, ContentItem.persisted(self._repository, stored[name]))
            for name in canonical_order(stored)
        ]

    def _leaf_path(self) -> Path:
        if self._staged_file is not None:
            return self._staged_file
        return content_file(self._root, self.hex_hash, CONTENT)

    def _iter_leaf(self) -> Iterator[bytes]:
        with self._leaf_path().open("rb") as stream:
            yield from iter_chunks(stream, self._repository.buffer_size)

    def iter_bytes(self) -> Iterator[bytes]:
        """Yield the canonical byte stream of this item.

        Each call starts a fresh pass, so the stream can be re-read.
        """
        if self._closed:
            raise InvalidStateError("Item has been closed", context={"item": repr(self)})
        stack: list[_StackEntry] = [self]
        while stack:
            entry = stack.pop()
            if isinstance(entry, bytes):
                yield entry
            elif entry.kind() is ContentKind.LEAF:
                yield from entry._iter_leaf()
            else:
                for name, child in reversed(entry._ordered_children()):
                    stack.append(child)
                    stack.append(name.encode("utf-8"))

    def open_stream(self) -> BinaryIO:
        """Open the canonical stream as a buffered binary file object."""
        return io.BufferedReader(_ChunkReader(self.iter_bytes()), self._repository.buffer_size)  # type: ignore[return-value]

    def _unpersisted_postorder(self) -> list[ContentItem]:
        preorder: list[ContentItem] = []
        stack: list[ContentItem] = [self]
        while stack:
            item = stack.pop()
            if item.has_hash:
                continue
            preorder.append(item)
            if item._children:
                stack.extend(item._children.values())
        return list(reversed(preorder))

    def _require_pending_hash(self) -> bytes:
        if self._pending_hash is None:
            raise InvalidStateError("Content hash has not been computed", context={"item": repr(self)})
        return self._pending_hash

    def compute_hash(self) -> bytes:
        """Compute the digest of an unpersisted item.

        Every child is hashed to completion before its parent's canonical
        stream is hashed.
        """
        if self.has_hash:
            return self.hash
        for item in self._unpersisted_postorder():
            if item._pending_hash is None:
                item._pending_hash = hash_chunks(item.iter_bytes())
        return self._require_pending_hash()

    def persist(self, content_hash: bytes | str, context_path: str = "") -> None:
        """Store this item under its final hash.

        Content already stored in the same form under the hash is kept and
        the staged data is discarded. Directories persist their children
        first and take one reference on each child. The reference tracker
        lock is held throughout, so a concurrent removal cannot delete a
        child between its dedup check and the new reference on it.

        Raises:
            InvalidStateError: If the item already has a hash or was closed.
        """
        if self.has_hash:
            raise InvalidStateError("Content has already been persisted", context={"hash": self._hex_hash})
        if self._closed:
            raise InvalidStateError("Item has been closed", context={"item": repr(self)})

        hex_hash = to_hex(content_hash)
        with self._repository.references.lock:
            if self._children:
                self.compute_hash()
                for item in self._unpersisted_postorder():
                    if item is not self:
                        item._materialize(item._require_pending_hash().hex(), context_path)
            self._materialize(hex_hash, context_path)

    def _materialize(self, hex_hash: str, context_path: str) -> None:
        form = self.kind()
        persisted_path = content_file(self._root, hex_hash, _MARKER_BY_KIND[form])
        if persisted_path.exists():
            self._release_staged()
            logger.debug(
                "Content was already present in repository",
                path=str(persisted_path),
                context_path=context_path,
            )
        else:
            shard_dir(self._root, hex_hash, validate=True)
            if form is ContentKind.LEAF:
                move_temp_to_permanent(self._leaf_path(), persisted_path)
                self._staged_file = None
            elif form is ContentKind.EMPTY_DIRECTORY:
                try:
                    persisted_path.touch(exist_ok=True)
                except OSError as e:
                    raise ContentIOError(
                        "Cannot create empty directory marker",
                        context={"path": str(persisted_path), "error": str(e)},
                    ) from e
            else:
                self._write_children_index(hex_hash, persisted_path)
            logger.info("Content added", path=str(persisted_path), context_path=context_path)

        self._hex_hash = hex_hash
        self._form = form
        self._children = None

    def _write_children_index(self, hex_hash: str, index_file: Path) -> None:
        children = self.children
        entries = {
            children_index.entry_key(name, child.kind() is ContentKind.EMPTY_DIRECTORY): child.hex_hash
            for name, child in children.items()
        }
        try:
            tmp_file = create_temp_file(self._root)
        except OSError as e:
            raise ContentIOError(
                "Cannot create staging file", context={"root": str(self._root), "error": str(e)}
            ) from e
        try:
            children_index.write(tmp_file, entries)
        except OSError as e:
            safe_delete(tmp_file)
            raise ContentIOError(
                "Cannot write children index",
                context={"path": str(index_file), "error": str(e)},
            ) from e
        move_temp_to_permanent(tmp_file, index_file)
        for name, child in children.items():
            self._repository.references.add(
                ContentReference(child_context_path(hex_hash, name), child.hex_hash)
            )

    def _release_staged(self) -> None:
        stack: list[ContentItem] = [self]
        while stack:
            item = stack.pop()
            safe_delete(item._staged_file)
            item._staged_file = None
            if item._children:
                stack.extend(item._children.values())

    def close(self) -> None:
        """Release staged temp files. Persisted content is untouched."""
        if self._closed:
            return
        self._release_staged()
        if not self.has_hash:
            self._closed = True

    def explode(self, context_path: str = "") -> ContentItem:
        """Explode a persisted archive leaf into a persisted directory tree.

        Returns:
            The persisted root directory item.

        Raises:
            ContentNotFoundError: If nothing is stored for this hash.
            ExplodedContentError: If the content is not an archive leaf.
        """
        from contentrepo.explode import build_tree

        if ContentKind.LEAF not in self.stored_kinds():
            raise ExplodedContentError(
                "Content is already a directory", context={"hash": self.hex_hash}
            )

        archive = content_file(self._root, self.hex_hash, CONTENT)
        with build_tree(self._repository, archive) as root_item:
            root_hash = root_item.compute_hash()
            root_item.persist(root_hash, context_path)
        logger.info("Content exploded", source=self.hex_hash, exploded=root_item.hex_hash)
        return root_item

    def copy(self, target: Path) -> None:
        """Materialize this persisted item at an ordinary filesystem path.

        Where a hash holds both a leaf and a directory form, the directory
        form is copied unless the parent's index records the child as a
        plain name for an empty file.

        Raises:
            ContentNotFoundError: If content in the tree is missing.
            ContentIOError: If writing the target fails.
        """
        stack: list[tuple[ContentItem, Path, ContentKind]] = [
            (self, Path(target), self._pick_kind(_ROOT_COPY_ORDER))
        ]
        try:
            while stack:
                item, to, kind = stack.pop()
                if kind is ContentKind.LEAF:
                    to.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copyfile(item._leaf_path(), to)
                    continue
                to.mkdir(parents=True, exist_ok=True)
                if kind is ContentKind.EMPTY_DIRECTORY:
                    continue
                for name, child_hex, empty_directory in item._read_entries(item.hex_hash):
                    if not _is_safe_name(name):
                        logger.warning("Skipping unsafe child name", name=name, parent=item.hex_hash)
                        continue
                    child = ContentItem.persisted(self._repository, child_hex)
                    child_kind = (
                        ContentKind.EMPTY_DIRECTORY
                        if empty_directory
                        else child._pick_kind(_CHILD_COPY_ORDER)
                    )
                    stack.append((child, to / name, child_kind))
        except OSError as e:
            raise ContentIOError(
                "Cannot copy content", context={"hash": self.hex_hash, "target": str(target), "error": str(e)}
            ) from e

    def remove(self, context_path: str = "") -> bool:
        """Physically remove this item.

        Children are released first and removed only when their last
        reference goes. Every form stored under a hash goes with it. The
        caller must hold the reference tracker lock.

        Returns:
            True if nothing is left stored under this item's hash.
        """
        references = self._repository.references
        stack: list[tuple[str, bool]] = [(self.hex_hash, False)]
        removed = False
        while stack:
            hex_hash, expanded = stack.pop()
            hash_dir = shard_dir(self._root, hex_hash)
            if not expanded and (hash_dir / CHILDREN).exists():
                try:
                    stored = {name: child_hex for name, child_hex, _ in self._read_entries(hex_hash)}
                except (OSError, ValueError) as e:
                    logger.error("Cannot read children index", hash=hex_hash, error=str(e))
                    continue
                stack.append((hex_hash, True))
                for name in canonical_order(stored):
                    try:
                        child_ref = ContentReference(child_context_path(hex_hash, name), stored[name])
                    except InvalidHashError as e:
                        logger.warning("Invalid child hash in index", hash=hex_hash, name=name, error=str(e))
                        continue
                    if references.release(child_ref):
                        stack.append((child_ref.hex_hash, False))
                continue

            gone = True
            for marker in MARKERS:
                if (hash_dir / marker).exists():
                    gone = remove_content_file(self._root, hex_hash, marker) and gone
            if hex_hash == self.hex_hash:
                removed = gone

        logger.debug("Content removal finished", hash=self.hex_hash, context_path=context_path)
        return removed
