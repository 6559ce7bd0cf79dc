"""
Tests for the command line interface.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Callable

import orjson
import pytest
from typer.testing import CliRunner, Result

from contentrepo import __version__
from contentrepo.cli.main import app

from conftest import ZipEntries

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep log output out of command output."""
    monkeypatch.setenv("LOG_LEVEL", "WARNING")


@pytest.fixture
def cli_root(temp_dir: Path) -> Path:
    return temp_dir / "cli-content"


def invoke(*args: str) -> Result:
    return runner.invoke(app, list(args))


class TestCommands:
    """Tests for CLI commands."""

    def test_version(self) -> None:
        """Test the version command."""
        result = invoke("version")
        assert result.exit_code == 0
        assert f"contentrepo {__version__}" in result.stdout

    def test_config(self, cli_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the config command lists settings."""
        monkeypatch.setenv("REPO_ROOT", str(cli_root))
        result = invoke("config")
        assert result.exit_code == 0
        assert "OBSOLESCENCE_TIMEOUT_MS" in result.stdout

    def test_add_has_cat(self, cli_root: Path, temp_dir: Path) -> None:
        """Test storing a file, checking it and reading it back."""
        source = temp_dir / "artifact.bin"
        source.write_bytes(b"\x00binary\xffpayload")
        expected = hashlib.sha1(source.read_bytes()).hexdigest()

        added = invoke("add", str(source), "--root", str(cli_root))
        assert added.exit_code == 0
        assert added.stdout.strip() == expected

        has = invoke("has", expected, "--root", str(cli_root))
        assert has.exit_code == 0
        assert "present" in has.stdout

        cat = invoke("cat", expected, "--root", str(cli_root))
        assert cat.exit_code == 0
        assert cat.stdout_bytes == source.read_bytes()

    def test_has_missing(self, cli_root: Path) -> None:
        """Test a missing hash exits non-zero."""
        result = invoke("has", "a9993e364706816aba3e25717850c26c9cd0d89d", "--root", str(cli_root))
        assert result.exit_code == 1
        assert "absent" in result.stdout

    def test_explode_and_copy(
        self,
        cli_root: Path,
        temp_dir: Path,
        make_zip: Callable[[ZipEntries], bytes],
    ) -> None:
        """Test exploding an archive and copying the tree out."""
        archive = temp_dir / "app.war"
        archive.write_bytes(make_zip([("index.html", b"<html/>"), ("WEB-INF/web.xml", b"<web/>")]))
        archive_hash = invoke("add", str(archive), "--root", str(cli_root)).stdout.strip()

        exploded = invoke("explode", archive_hash, "--root", str(cli_root))
        assert exploded.exit_code == 0
        tree_hash = exploded.stdout.strip()
        assert tree_hash == hashlib.sha1(b"WEB-INFweb.xml<web/>index.html<html/>").hexdigest()

        target = temp_dir / "deployed"
        copied = invoke("copy", tree_hash, str(target), "--root", str(cli_root))
        assert copied.exit_code == 0
        assert (target / "index.html").read_bytes() == b"<html/>"
        assert (target / "WEB-INF" / "web.xml").read_bytes() == b"<web/>"

    def test_explode_rejects_plain_file(self, cli_root: Path, temp_dir: Path) -> None:
        """Test exploding content that is not an archive fails cleanly."""
        source = temp_dir / "notes.txt"
        source.write_bytes(b"not a zip")
        content_hash = invoke("add", str(source), "--root", str(cli_root)).stdout.strip()

        result = invoke("explode", content_hash, "--root", str(cli_root))
        assert result.exit_code == 1

    def test_inventory_json(self, cli_root: Path, temp_dir: Path) -> None:
        """Test the JSON inventory lists stored content with its kind."""
        source = temp_dir / "artifact.bin"
        source.write_bytes(b"abc")
        invoke("add", str(source), "--root", str(cli_root))
        (cli_root / "zz").mkdir()

        result = invoke("inventory", "--root", str(cli_root), "--json")
        assert result.exit_code == 0

        rows = {row["hash"]: row["kind"] for row in orjson.loads(result.stdout)}
        assert rows == {"a9993e364706816aba3e25717850c26c9cd0d89d": "leaf", "zz": "stray"}
