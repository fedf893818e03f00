"""
cnab-publish CLI

Implements 2 CLI verbs with Operations facade integration:
- publish: Push the invocation image, relocate bundle images and push the bundle
- inspect: Show the remote digest of an image
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer

from .cli_context import CLIContext
from .operations import Operations, OpsConfig, run_and_exit
from .operations.printers import print_inspect, print_publish_summary

app = typer.Typer(name="cnab-publish", help="Publish CNAB bundles to OCI registries")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _create_operations(context: CLIContext, config: OpsConfig) -> Operations:
    """Build the facade for one command; tests replace this to inject fakes."""
    return Operations(
        config,
        settings=context.settings,
        credentials=context.credentials,
        cancel=context.cancel,
    )


@app.command()
def publish(
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Path to the bundle manifest (default: porter.yaml)"),
    bundle_file: Optional[str] = typer.Option(None, "--bundle-file", help="Path to the built bundle.json"),
    insecure: bool = typer.Option(False, "--insecure", help="Allow plain HTTP to the bundle tag's registry"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Per-request registry timeout in seconds"),
    verbose: bool = typer.Option(False, "--verbose", help="Show detailed output and debug logs"),
) -> None:
    """Publish a bundle to the registry named by its tag."""

    def _publish() -> None:
        _configure_logging(verbose)
        context = CLIContext.from_env()
        config = OpsConfig(insecure=insecure, timeout_s=timeout, bundle_file=bundle_file, verbose=verbose)
        ops = _create_operations(context, config)

        with context.interruptible():
            result = ops.publish(file)

        print_publish_summary(result, verbose=verbose)

    run_and_exit(_publish)


@app.command()
def inspect(
    image: str = typer.Argument(..., help="Image reference to look up"),
    insecure: bool = typer.Option(False, "--insecure", help="Allow plain HTTP to the image's registry"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Per-request registry timeout in seconds"),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logs"),
) -> None:
    """Show the remote digest, media type and size of an image."""

    def _inspect() -> None:
        _configure_logging(verbose)
        context = CLIContext.from_env()
        ops = _create_operations(context, OpsConfig(insecure=insecure, timeout_s=timeout, verbose=verbose))

        with context.interruptible():
            descriptor = ops.inspect(image)

        print_inspect(image, descriptor)

    run_and_exit(_inspect)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
