"""
Tests for the reference tracker and ContentReference.
"""

from __future__ import annotations

import hashlib
import threading

import pytest

from contentrepo.exceptions import InvalidHashError
from contentrepo.references import ReferenceTracker
from contentrepo.types import CleanupResult, ContentReference

HEX = hashlib.sha1(b"content").hexdigest()


class TestContentReference:
    """Test the reference value type."""

    def test_equality_by_path_and_hash(self) -> None:
        """Test references compare by context path and hash."""
        assert ContentReference("deploy-1", HEX) == ContentReference("deploy-1", HEX.upper())
        assert ContentReference("deploy-1", HEX) != ContentReference("deploy-2", HEX)
        assert len({ContentReference("a", HEX), ContentReference("a", HEX)}) == 1

    def test_of_accepts_raw_digest(self) -> None:
        """Test a raw digest is normalized to hex."""
        ref = ContentReference.of("deploy-1", hashlib.sha1(b"content").digest())
        assert ref.hex_hash == HEX
        assert ref.hash == hashlib.sha1(b"content").digest()

    def test_invalid_hash_rejected(self) -> None:
        """Test a malformed hash raises InvalidHashError."""
        with pytest.raises(InvalidHashError):
            ContentReference("deploy-1", "not-a-hash")


class TestReferenceTracker:
    """Test reference multimap semantics."""

    def test_add_and_release(self) -> None:
        """Test the last release reports the hash unreferenced."""
        tracker = ReferenceTracker()
        first = ContentReference("deploy-1", HEX)
        second = ContentReference("deploy-2", HEX)

        assert tracker.add(first)
        assert tracker.add(second)
        assert not tracker.add(first)
        assert len(tracker) == 2

        assert not tracker.release(first)
        assert tracker.is_referenced(HEX)
        assert tracker.release(second)
        assert not tracker.is_referenced(HEX)
        assert HEX not in tracker.hashes()

    def test_release_unknown_reference(self) -> None:
        """Test releasing an untracked reference of a referenced hash keeps it."""
        tracker = ReferenceTracker()
        tracker.add(ContentReference("deploy-1", HEX))

        assert not tracker.release(ContentReference("deploy-2", HEX))
        assert tracker.is_referenced(HEX)

    def test_release_untracked_hash(self) -> None:
        """Test releasing a hash that was never tracked reports it unreferenced."""
        assert ReferenceTracker().release(ContentReference("deploy-1", HEX))

    def test_snapshots(self) -> None:
        """Test snapshot accessors do not expose internal state."""
        tracker = ReferenceTracker()
        ref = ContentReference("deploy-1", HEX)
        tracker.add(ref)

        assert tracker.references(HEX) == frozenset({ref})
        assert list(tracker) == [ref]
        assert ref in tracker
        assert "deploy-1" not in tracker

    def test_concurrent_adds_and_releases(self) -> None:
        """Test balanced concurrent updates leave nothing referenced."""
        tracker = ReferenceTracker()
        barrier = threading.Barrier(8)

        def worker(index: int) -> None:
            barrier.wait()
            for i in range(200):
                ref = ContentReference(f"worker-{index}-{i}", HEX)
                tracker.add(ref)
                tracker.release(ref)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(tracker) == 0
        assert not tracker.is_referenced(HEX)


class TestCleanupResult:
    """Test cleanup result serialization."""

    def test_to_dict(self) -> None:
        """Test identifiers are reported under their result keys."""
        result = CleanupResult(marked={"b", "a"}, deleted={"c"})
        assert result.to_dict() == {"marked-contents": ["a", "b"], "deleted-contents": ["c"]}
