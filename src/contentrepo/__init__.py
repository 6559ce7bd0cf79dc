"""
Content-addressable deployment content repository.

Stores immutable artifacts keyed by their SHA-1 hash, explodes archives into
hashed directory trees and reclaims unreferenced content.
"""

from __future__ import annotations

__version__ = "0.1.0"

from contentrepo.repository import ContentRepository
from contentrepo.types import CleanupResult, ContentKind, ContentReference

__all__ = [
    "CleanupResult",
    "ContentKind",
    "ContentReference",
    "ContentRepository",
    "__version__",
]
