"""
Content hashing.

Content is identified by the SHA-1 digest of its canonical bytes. Streams are
consumed in fixed-size chunks so inputs of any size can be hashed without
buffering them whole.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any, BinaryIO, Callable, Iterable, Iterator

from contentrepo.exceptions import InvalidHashError

DIGEST_ALGORITHM = "sha1"
DIGEST_SIZE = 20
HEX_LENGTH = DIGEST_SIZE * 2
DEFAULT_BUFFER_SIZE = 8192

_HEX_RE = re.compile(r"[0-9a-f]{40}")


def new_digest() -> Any:
    """Create a fresh digest object."""
    return hashlib.new(DIGEST_ALGORITHM)


def iter_chunks(stream: BinaryIO, buffer_size: int = DEFAULT_BUFFER_SIZE) -> Iterator[bytes]:
    """Read a binary stream in chunks of at most ``buffer_size`` bytes until EOF."""
    while True:
        chunk = stream.read(buffer_size)
        if not chunk:
            return
        yield chunk


def hash_stream(
    stream: BinaryIO,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
    sink: Callable[[bytes], object] | None = None,
) -> bytes:
    """Hash a binary stream, reading it once until EOF.

    Args:
        stream: Readable binary stream. It is not closed.
        buffer_size: Read chunk size.
        sink: Called with every chunk after it is hashed, e.g. the write
            method of a file receiving a copy of the stream.

    Returns:
        Raw digest bytes.
    """
    digest = new_digest()
    for chunk in iter_chunks(stream, buffer_size):
        digest.update(chunk)
        if sink is not None:
            sink(chunk)
    return digest.digest()


def hash_chunks(chunks: Iterable[bytes]) -> bytes:
    """Hash a sequence of byte chunks."""
    digest = new_digest()
    for chunk in chunks:
        digest.update(chunk)
    return digest.digest()


def is_hex_hash(value: str) -> bool:
    """Check whether ``value`` is a lower-case hex rendering of a digest."""
    return bool(_HEX_RE.fullmatch(value))


def to_hex(value: bytes | str) -> str:
    """Normalize a hash given as raw digest bytes or hex to lower-case hex.

    Raises:
        InvalidHashError: If the value is not a digest of the expected size.
    """
    if isinstance(value, (bytes, bytearray)):
        if len(value) != DIGEST_SIZE:
            raise InvalidHashError(
                "Hash has the wrong length",
                context={"length": len(value), "expected": DIGEST_SIZE},
            )
        return bytes(value).hex()
    if isinstance(value, str):
        normalized = value.strip().lower()
        if not is_hex_hash(normalized):
            raise InvalidHashError("Not a hex content hash", context={"value": value})
        return normalized
    raise InvalidHashError("Unsupported hash type", context={"type": type(value).__name__})


def from_hex(value: str) -> bytes:
    """Convert a hex hash to raw digest bytes."""
    return bytes.fromhex(to_hex(value))
