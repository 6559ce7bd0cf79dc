"""
On-disk layout of the content repository.

Every stored hash lives in a two-level fan-out directory::

    <root>/<hash[0:2]>/<hash[2:]>/content     leaf blob
    <root>/<hash[0:2]>/<hash[2:]>/empty-dir   marker for an empty directory
    <root>/<hash[0:2]>/<hash[2:]>/children    index of a directory's children

This module resolves those paths, moves staged files into place atomically and
removes content while pruning the shard directories it leaves empty.
"""

from __future__ import annotations

import atexit
import os
import shutil
import tempfile
import threading
from pathlib import Path

from contentrepo.exceptions import ContentIOError, FilesystemError
from contentrepo.logging import get_logger
from contentrepo.types import LocalContent

logger = get_logger(__name__)

CONTENT = "content"
CHILDREN = "children"
EMPTY_DIR = "empty-dir"

MARKERS = (CONTENT, CHILDREN, EMPTY_DIR)

PREFIX_LENGTH = 2
TEMP_PREFIX = CONTENT
TEMP_SUFFIX = ".tmp"
MOVE_PREFIX = "tmp-"

_deferred_lock = threading.Lock()
_deferred_deletes: set[Path] = set()


def _delete_deferred() -> None:
    with _deferred_lock:
        pending = list(_deferred_deletes)
        _deferred_deletes.clear()
    for path in pending:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            pass


atexit.register(_delete_deferred)


def shard_dir(root: Path, hex_hash: str, validate: bool = False) -> Path:
    """Resolve the directory holding the content for ``hex_hash``.

    Args:
        root: Repository root.
        hex_hash: Lower-case hex hash.
        validate: Create missing directories and check existing ones.

    Returns:
        ``root/<prefix>/<suffix>``.

    Raises:
        FilesystemError: If validating and a path segment is not a writable
            directory or cannot be created.
    """
    base = root / hex_hash[:PREFIX_LENGTH]
    hash_dir = base / hex_hash[PREFIX_LENGTH:]
    if validate:
        _validate_dir(base)
        _validate_dir(hash_dir)
    return hash_dir


def content_file(root: Path, hex_hash: str, marker: str = CONTENT, validate: bool = False) -> Path:
    """Resolve one of the marker files of ``hex_hash``."""
    return shard_dir(root, hex_hash, validate) / marker


def _validate_dir(path: Path) -> None:
    if not path.exists():
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(
                "Cannot create directory", context={"path": str(path), "error": str(e)}
            ) from e
    elif not path.is_dir():
        raise FilesystemError("Not a directory", context={"path": str(path)})
    elif not os.access(path, os.W_OK):
        raise FilesystemError("Directory is not writable", context={"path": str(path)})


def create_temp_file(root: Path, prefix: str = TEMP_PREFIX) -> Path:
    """Create an empty staging file inside ``root`` with a unique name.

    Staging in the repository root keeps the final move on the same
    filesystem.
    """
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=TEMP_SUFFIX, dir=root)
    os.close(fd)
    return Path(name)


def safe_delete(path: Path | None) -> None:
    """Delete a file, logging instead of raising on failure.

    Files that cannot be deleted now are retried at interpreter exit.
    """
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Cannot delete temp file", path=str(path), error=str(e))
        with _deferred_lock:
            _deferred_deletes.add(path)


def move_temp_to_permanent(tmp_file: Path, permanent_file: Path) -> None:
    """Move a staged file to its final location.

    A rename is tried first. If it fails (e.g. the staged file is on another
    device) the file is copied to a private temp file next to the destination
    and renamed from there, and as a last resort copied directly. Only output
    written by this call is removed on failure, and the staged files are
    always cleaned up.

    Raises:
        ContentIOError: If the content could not be written.
    """
    local_tmp: Path | None = None
    writing_permanent = False
    try:
        try:
            os.replace(tmp_file, permanent_file)
            return
        except OSError as e:
            logger.debug(
                "Rename failed, copying instead",
                source=str(tmp_file),
                target=str(permanent_file),
                error=str(e),
            )

        try:
            local_tmp = create_temp_file(permanent_file.parent, prefix=MOVE_PREFIX)
            shutil.copyfile(tmp_file, local_tmp)
            try:
                os.replace(local_tmp, permanent_file)
            except OSError:
                writing_permanent = True
                shutil.copyfile(local_tmp, permanent_file)
        except OSError as e:
            if writing_permanent:
                try:
                    permanent_file.unlink(missing_ok=True)
                except OSError as cleanup_error:
                    logger.warning(
                        "Cannot delete partial content",
                        path=str(permanent_file),
                        error=str(cleanup_error),
                    )
            raise ContentIOError(
                "Cannot move content into place",
                context={"path": str(permanent_file), "error": str(e)},
            ) from e
    finally:
        safe_delete(tmp_file)
        safe_delete(local_tmp)


def remove_content_file(root: Path, hex_hash: str, marker: str) -> bool:
    """Delete a marker file and prune the shard directories left empty.

    Returns:
        True if the marker file is gone (deleted now or never present).
    """
    file = content_file(root, hex_hash, marker)
    try:
        file.unlink()
        logger.info("Content removed", path=str(file))
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error("Cannot delete content", path=str(file), error=str(e))

    if file.exists():
        return False

    prune_empty_dirs(root, file.parent)
    return True


def prune_empty_dirs(root: Path, hash_dir: Path) -> None:
    """Remove ``hash_dir`` and its prefix directory if they are empty."""
    for directory in (hash_dir, hash_dir.parent):
        if directory == root or not directory.is_dir():
            continue
        try:
            directory.rmdir()
        except OSError:
            # Not empty; stray siblings keep it alive
            return


def remove_stray(root: Path, path: Path) -> None:
    """Delete an entry that is not repository content."""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
        logger.info("Stray content removed", path=str(path))
    except OSError as e:
        logger.error("Cannot delete content", path=str(path), error=str(e))
        return
    parent = path.parent
    if parent != root:
        prune_empty_dirs(root, parent)


def list_local_contents(root: Path) -> list[LocalContent]:
    """Walk the shard structure and list everything found on disk.

    Only directories directly under the root are shard prefixes; staging files
    at the root level are ignored. An empty prefix directory is listed by its
    own name.
    """
    contents: list[LocalContent] = []
    try:
        prefixes = sorted(root.iterdir())
    except OSError as e:
        logger.error("Cannot list local contents", root=str(root), error=str(e))
        return contents

    for prefix in prefixes:
        if not prefix.is_dir():
            continue
        try:
            suffixes = sorted(prefix.iterdir())
        except OSError as e:
            logger.error("Cannot list local contents", root=str(prefix), error=str(e))
            continue
        if not suffixes:
            contents.append(LocalContent(path=prefix, hex_hash=prefix.name))
            continue
        for suffix in suffixes:
            contents.append(LocalContent(path=suffix, hex_hash=prefix.name + suffix.name))
    return contents
