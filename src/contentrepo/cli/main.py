"""
CLI for the content repository.

Commands:
    contentrepo add FILE - Store a file and print its hash
    contentrepo has HASH - Check whether content is stored
    contentrepo cat HASH - Write stored content to stdout
    contentrepo explode HASH - Explode an archive, print the new hash
    contentrepo copy HASH TARGET - Copy exploded content to a directory
    contentrepo inventory - List content found on disk
    contentrepo config - Show current configuration
    contentrepo version - Print version
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Annotated, Optional

import orjson
import typer
from rich.console import Console
from rich.table import Table

from contentrepo import __version__
from contentrepo.config import Settings, clear_settings_cache, get_settings
from contentrepo.exceptions import ContentRepoError
from contentrepo.hashing import iter_chunks
from contentrepo.logging import setup_logging
from contentrepo.repository import ContentRepository
from contentrepo.types import LocalContent

app = typer.Typer(
    name="contentrepo",
    help="Content-addressable repository for deployment content",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except ValueError:
        return None


def _fail(message: str) -> typer.Exit:
    error_console.print(f"[red]Error:[/red] {message}", markup=True, highlight=False)
    return typer.Exit(1)


def _open_repository(root: Optional[Path]) -> ContentRepository:
    settings = _get_settings_safe()
    if settings is None:
        raise _fail("Configuration is invalid. Run 'contentrepo config' to see what's wrong.")
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    if root is not None:
        settings = settings.model_copy(update={"REPO_ROOT": root})
    try:
        return ContentRepository.from_settings(settings)
    except ContentRepoError as e:
        raise _fail(str(e)) from e


def _kind_label(repository: ContentRepository, local: LocalContent) -> str:
    if not local.is_valid_hash or not repository.has_content(local.hex_hash):
        return "stray"
    return repository.content_kind(local.hex_hash).value


RootOption = Annotated[
    Optional[Path],
    typer.Option("--root", "-r", help="Repository root (overrides REPO_ROOT)"),
]


@app.command()
def add(
    file: Annotated[Path, typer.Argument(help="File to store", exists=True, dir_okay=False)],
    root: RootOption = None,
) -> None:
    """Store a file and print its content hash."""
    repository = _open_repository(root)
    try:
        with file.open("rb") as stream:
            content_hash = repository.add_content(stream)
    except ContentRepoError as e:
        raise _fail(str(e)) from e
    console.print(content_hash)


@app.command()
def has(
    content_hash: Annotated[str, typer.Argument(help="Content hash (hex)")],
    root: RootOption = None,
) -> None:
    """Check whether content is stored. Exits 1 if it is not."""
    repository = _open_repository(root)
    try:
        present = repository.has_content(content_hash)
    except ContentRepoError as e:
        raise _fail(str(e)) from e
    console.print("present" if present else "absent")
    if not present:
        raise typer.Exit(1)


@app.command()
def cat(
    content_hash: Annotated[str, typer.Argument(help="Content hash (hex)")],
    root: RootOption = None,
) -> None:
    """Write the canonical bytes of stored content to stdout."""
    repository = _open_repository(root)
    try:
        with repository.open_content(content_hash) as stream:
            out = sys.stdout.buffer
            for chunk in iter_chunks(stream, repository.buffer_size):
                out.write(chunk)
            out.flush()
    except ContentRepoError as e:
        raise _fail(str(e)) from e


@app.command()
def explode(
    content_hash: Annotated[str, typer.Argument(help="Hash of an archive")],
    root: RootOption = None,
) -> None:
    """Explode an archive and print the hash of the resulting directory."""
    repository = _open_repository(root)
    try:
        exploded = repository.explode_content(content_hash)
    except ContentRepoError as e:
        raise _fail(str(e)) from e
    console.print(exploded)


@app.command()
def copy(
    content_hash: Annotated[str, typer.Argument(help="Hash of exploded content")],
    target: Annotated[Path, typer.Argument(help="Directory to create")],
    root: RootOption = None,
) -> None:
    """Copy exploded content to a directory."""
    repository = _open_repository(root)
    try:
        repository.copy_exploded_content(content_hash, target)
    except ContentRepoError as e:
        raise _fail(str(e)) from e
    console.print(f"[green]Copied[/green] {content_hash} to {target}")


@app.command()
def inventory(
    root: RootOption = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print JSON instead of a table"),
    ] = False,
) -> None:
    """List content found on disk."""
    repository = _open_repository(root)
    rows = [
        {"hash": local.hex_hash, "kind": _kind_label(repository, local), "path": str(local.path)}
        for local in repository.list_local_contents()
    ]

    if as_json:
        sys.stdout.write(orjson.dumps(rows, option=orjson.OPT_INDENT_2).decode("utf-8") + "\n")
        return

    table = Table(title=f"Content in {repository.repo_root}")
    table.add_column("Hash", style="cyan")
    table.add_column("Kind")
    for row in rows:
        table.add_row(row["hash"], row["kind"])
    console.print(table)


@app.command()
def config() -> None:
    """Show current configuration."""
    settings = _get_settings_safe()
    if settings is None:
        raise _fail("Configuration is invalid. Check your environment and .env file.")

    table = Table(title="Content Repository Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in settings.redacted_display().items():
        table.add_row(key, "[dim]not set[/dim]" if value is None else str(value))
    console.print(table)


@app.command()
def version() -> None:
    """Print version."""
    console.print(f"contentrepo {__version__}")


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    main()
