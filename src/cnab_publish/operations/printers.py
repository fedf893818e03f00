"""
Human-readable output formatting.

Centralizes all CLI output so commands stay thin: progress lines go through
typer.echo, summaries are rendered with rich.
"""
from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from ..errors import PublishError
from ..publisher import PublishResult
from ..storage.registry_http import ManifestDescriptor

_console = Console(soft_wrap=True)


class EchoProgress:
    """Progress sink that writes each line to stdout."""

    def write(self, line: str) -> None:
        typer.echo(line)


def print_publish_summary(result: PublishResult, verbose: bool = False) -> None:
    """
    Print publish summary.

    Args:
        result: Result of a successful publish
        verbose: Also list relocated images
    """
    _console.print(f"[bold]Bundle:[/] {result.tag}")
    _console.print(f"[bold]Digest:[/] [dim]{result.digest}[/]")
    _console.print(f"[bold]Invocation image:[/] {result.invocation_image}")

    if not verbose:
        return

    relocation = result.relocation
    if not relocation.copied and not relocation.present:
        _console.print("[dim]No images to relocate[/]")
        return

    table = Table(title="Images")
    table.add_column("Image", style="cyan")
    table.add_column("Status", style="yellow")
    for name in relocation.copied:
        table.add_row(name, "copied")
    for name in relocation.present:
        table.add_row(name, "already present")
    _console.print(table)


def print_inspect(image: str, descriptor: ManifestDescriptor) -> None:
    """Print the remote identity of an image."""
    typer.echo(f"Image: {image}")
    typer.echo(f"Digest: {descriptor.digest}")
    typer.echo(f"Media type: {descriptor.media_type or 'unknown'}")
    typer.echo(f"Size: {_format_bytes(descriptor.size)}")


def print_error(exc: BaseException) -> None:
    """Print an error to stderr; ``str`` of a PublishError already names its stage."""
    if isinstance(exc, PublishError):
        typer.echo(f"Error: {exc}", err=True)
    else:
        typer.echo(f"Error: {type(exc).__name__}: {exc}", err=True)


def _format_bytes(size_bytes: int) -> str:
    """
    Format byte count as human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "1.5 MB", "42 KB")
    """
    if size_bytes == 0:
        return "0 B"
    elif size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"
