"""
Children index codec.

A directory's ``children`` file maps each child name to the child's hex hash
using the ``java.util.Properties`` text format, so repositories written by
other implementations stay readable::

    #Mon Oct 19 10:15:02 UTC 2026
    a.txt=2aae6c35c94fcfb415dbe95f408b9ce91ee846ed
    my\\ dir=0c9a5e9e2a7ef5c3c8b8e0a9a9c9e0c1e4a4c6f1

An empty directory child is recorded with a trailing slash on its name
(``empty/=da39...``). A zero-length file hashes the same as an empty
directory, and the slash keeps the two apart when the tree is copied out.
Entry order carries no meaning.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

ENCODING = "latin-1"

EMPTY_DIRECTORY_SUFFIX = "/"

_ESCAPES = {
    "\t": "\\t",
    "\n": "\\n",
    "\r": "\\r",
    "\f": "\\f",
    "=": "\\=",
    ":": "\\:",
    "#": "\\#",
    "!": "\\!",
    "\\": "\\\\",
}

_UNESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}

_WHITESPACE = " \t\f"


def _utf16_units(text: str) -> list[int]:
    data = text.encode("utf-16-le", "surrogatepass")
    return [int.from_bytes(data[i:i + 2], "little") for i in range(0, len(data), 2)]


def escape(text: str, escape_space: bool) -> str:
    """Escape a key or value for the properties format."""
    out: list[str] = []
    for index, char in enumerate(text):
        if char == " ":
            out.append("\\ " if index == 0 or escape_space else " ")
        elif char in _ESCAPES:
            out.append(_ESCAPES[char])
        elif ord(char) < 0x20 or ord(char) > 0x7E:
            out.extend(f"\\u{unit:04X}" for unit in _utf16_units(char))
        else:
            out.append(char)
    return "".join(out)


def _unescape(text: str) -> str:
    units: list[str] = []
    i = 0
    while i < len(text):
        char = text[i]
        i += 1
        if char != "\\" or i >= len(text):
            units.append(char)
            continue
        char = text[i]
        i += 1
        if char == "u":
            code = text[i:i + 4]
            if len(code) != 4:
                raise ValueError(f"Malformed \\uxxxx encoding: {text!r}")
            units.append(chr(int(code, 16)))
            i += 4
        else:
            units.append(_UNESCAPES.get(char, char))
    # Recombine surrogate pairs produced by \\u escapes
    return "".join(units).encode("utf-16-le", "surrogatepass").decode("utf-16-le")


def _logical_lines(content: str) -> list[str]:
    lines: list[str] = []
    pending = ""
    for raw in content.splitlines():
        line = raw.lstrip(_WHITESPACE)
        if not pending and (not line or line[0] in "#!"):
            continue
        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2 == 1:
            pending += line[:-1]
            continue
        lines.append(pending + line)
        pending = ""
    if pending:
        lines.append(pending)
    return lines


def _split_entry(line: str) -> tuple[str, str]:
    i = 0
    escaped = False
    while i < len(line):
        char = line[i]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char in "=:" or char in _WHITESPACE:
            break
        i += 1
    key = line[:i]
    rest = line[i:].lstrip(_WHITESPACE)
    if rest[:1] in ("=", ":"):
        rest = rest[1:].lstrip(_WHITESPACE)
    return _unescape(key), _unescape(rest)


def dumps(children: Mapping[str, str], timestamp: datetime | None = None) -> str:
    """Render a children mapping.

    Args:
        children: Child name -> child hex hash.
        timestamp: Time written in the header comment (defaults to now).
    """
    stamp = (timestamp or datetime.now(timezone.utc)).strftime("%a %b %d %H:%M:%S %Z %Y")
    lines = [f"#{stamp}"]
    for name in sorted(children):
        lines.append(f"{escape(name, True)}={escape(children[name], False)}")
    return "\n".join(lines) + "\n"


def loads(content: str) -> dict[str, str]:
    """Parse a children index."""
    return dict(_split_entry(line) for line in _logical_lines(content))


def write(path: Path, children: Mapping[str, str]) -> None:
    """Write a children index file."""
    path.write_bytes(dumps(children).encode(ENCODING))


def read(path: Path) -> dict[str, str]:
    """Read a children index file."""
    return loads(path.read_bytes().decode(ENCODING))


def entry_key(name: str, empty_directory: bool = False) -> str:
    """Index key of a child."""
    return name + EMPTY_DIRECTORY_SUFFIX if empty_directory else name


def split_key(key: str) -> tuple[str, bool]:
    """Split an index key into the child name and its empty directory flag."""
    if key.endswith(EMPTY_DIRECTORY_SUFFIX):
        return key[: -len(EMPTY_DIRECTORY_SUFFIX)], True
    return key, False


def read_entries(path: Path) -> list[tuple[str, str, bool]]:
    """Read a children index as ``(name, hex hash, is empty directory)`` entries."""
    entries = []
    for key, child_hex in read(path).items():
        name, empty_directory = split_key(key)
        entries.append((name, child_hex, empty_directory))
    return entries
