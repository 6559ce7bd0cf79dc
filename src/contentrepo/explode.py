"""
Archive exploding.

Turns a zip archive (jar, war, ear, ...) into an unpersisted directory tree of
ContentItems mirroring the archive paths. Each file entry is staged into the
repository root as it is read; directory hashes are computed later from the
tree's canonical stream.
"""

from __future__ import annotations

import zipfile
from pathlib import Path
from typing import TYPE_CHECKING

from contentrepo.exceptions import ExplodedContentError
from contentrepo.item import ContentItem
from contentrepo.logging import get_logger

if TYPE_CHECKING:
    from contentrepo.repository import ContentRepository

logger = get_logger(__name__)

CURRENT_DIR = "."
PARENT_DIR = ".."


def tokenize(entry_name: str) -> list[str] | None:
    """Split an archive entry name into path segments.

    Returns:
        The non-empty segments, or None if any segment refers to the current
        or parent directory.
    """
    tokens = [token for token in entry_name.split("/") if token]
    if any(token in (CURRENT_DIR, PARENT_DIR) for token in tokens):
        return None
    return tokens


def _forget_subtree(created: dict[tuple[str, ...], ContentItem], prefix: tuple[str, ...]) -> None:
    for key in [key for key in created if key[: len(prefix)] == prefix]:
        del created[key]


def build_tree(repository: ContentRepository, archive: Path) -> ContentItem:
    """Read an archive into an unpersisted directory tree.

    Args:
        repository: Repository whose root receives the staged entries.
        archive: Path of the archive file.

    Returns:
        The unpersisted root directory. The caller owns it and must close it.

    Raises:
        ExplodedContentError: If the file is not a readable zip archive.
    """
    try:
        zip_file = zipfile.ZipFile(archive)
    except zipfile.BadZipFile as e:
        raise ExplodedContentError(
            "Content is not an archive", context={"path": str(archive), "reason": str(e)}
        ) from e

    root = ContentItem.directory(repository)
    created: dict[tuple[str, ...], ContentItem] = {(): root}
    try:
        with zip_file:
            for info in zip_file.infolist():
                tokens = tokenize(info.filename)
                if tokens is None:
                    logger.debug("Skipping archive entry", entry=info.filename)
                    continue
                if not tokens:
                    continue

                for i, token in enumerate(tokens):
                    last = i == len(tokens) - 1
                    current = tuple(tokens[: i + 1])
                    if (not last or info.is_dir()) and current not in created:
                        dir_item = ContentItem.directory(repository)
                        created[current[:-1]].add_child(token, dir_item)
                        created[current] = dir_item

                if info.is_dir():
                    continue

                path = tuple(tokens)
                if path in created:
                    # A file replaces a directory of the same name
                    _forget_subtree(created, path)
                with zip_file.open(info) as source:
                    leaf = ContentItem.stage(repository, source)
                created[path[:-1]].add_child(path[-1], leaf)
    except zipfile.BadZipFile as e:
        root.close()
        raise ExplodedContentError(
            "Archive is corrupt", context={"path": str(archive), "reason": str(e)}
        ) from e
    except BaseException:
        root.close()
        raise

    return root
