"""
Tests for content hashing.
"""

from __future__ import annotations

import hashlib
import io

import pytest

from contentrepo.exceptions import InvalidHashError
from contentrepo.hashing import (
    HEX_LENGTH,
    from_hex,
    hash_chunks,
    hash_stream,
    is_hex_hash,
    iter_chunks,
    to_hex,
)

EMPTY_SHA1 = "da39a3ee5e6b4b0d3255bfef95601890afd80709"
ABC_SHA1 = "a9993e364706816aba3e25717850c26c9cd0d89d"


class TestHashStream:
    """Test stream hashing."""

    def test_known_digests(self) -> None:
        """Test SHA-1 of well known inputs."""
        assert hash_stream(io.BytesIO(b"")).hex() == EMPTY_SHA1
        assert hash_stream(io.BytesIO(b"abc")).hex() == ABC_SHA1

    def test_small_buffer_matches_whole_input(self) -> None:
        """Test that chunking does not change the digest."""
        data = bytes(range(256)) * 97
        assert hash_stream(io.BytesIO(data), buffer_size=7) == hashlib.sha1(data).digest()

    def test_stream_read_once(self) -> None:
        """Test the stream is consumed to EOF."""
        stream = io.BytesIO(b"payload")
        hash_stream(stream)
        assert stream.read() == b""

    def test_sink_receives_every_chunk(self) -> None:
        """Test the sink sees the stream in order while it is hashed."""
        data = b"0123456789" * 5
        copy = io.BytesIO()

        digest = hash_stream(io.BytesIO(data), buffer_size=8, sink=copy.write)

        assert digest == hashlib.sha1(data).digest()
        assert copy.getvalue() == data

    def test_iter_chunks_respects_buffer_size(self) -> None:
        """Test chunks are at most buffer_size bytes and cover the stream."""
        chunks = list(iter_chunks(io.BytesIO(b"abcdefghij"), buffer_size=4))
        assert chunks == [b"abcd", b"efgh", b"ij"]
        assert list(iter_chunks(io.BytesIO(b""))) == []

    def test_hash_chunks_equals_concatenation(self) -> None:
        """Test hashing chunks equals hashing their concatenation."""
        assert hash_chunks([b"a.txt", b"A", b"dir"]) == hashlib.sha1(b"a.txtAdir").digest()


class TestHexConversion:
    """Test hash normalization."""

    def test_bytes_to_hex(self) -> None:
        """Test raw digest bytes become lower-case hex."""
        assert to_hex(bytes.fromhex(ABC_SHA1)) == ABC_SHA1
        assert len(to_hex(hashlib.sha1(b"x").digest())) == HEX_LENGTH

    def test_upper_case_hex_is_normalized(self) -> None:
        """Test upper-case hex is accepted."""
        assert to_hex(ABC_SHA1.upper()) == ABC_SHA1

    def test_from_hex(self) -> None:
        """Test hex converts back to bytes."""
        assert from_hex(ABC_SHA1) == hashlib.sha1(b"abc").digest()

    @pytest.mark.parametrize("value", ["", "abc", "z" * 40, ABC_SHA1 + "00"])
    def test_invalid_hex_rejected(self, value: str) -> None:
        """Test malformed hex strings raise InvalidHashError."""
        with pytest.raises(InvalidHashError):
            to_hex(value)

    def test_wrong_digest_length_rejected(self) -> None:
        """Test digests of the wrong size raise InvalidHashError."""
        with pytest.raises(InvalidHashError):
            to_hex(b"\x00" * 19)

    def test_invalid_hash_is_value_error(self) -> None:
        """Test InvalidHashError can be caught as ValueError."""
        with pytest.raises(ValueError):
            to_hex(123)  # type: ignore[arg-type]

    def test_is_hex_hash(self) -> None:
        """Test hex hash detection."""
        assert is_hex_hash(ABC_SHA1)
        assert not is_hex_hash(ABC_SHA1.upper())
        assert not is_hex_hash(".DS_Store")
