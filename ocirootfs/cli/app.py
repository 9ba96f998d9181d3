"""Main Typer application.

Entry point: ``ocirootfs`` (configured via pyproject.toml console_scripts).

Commands: build, inspect.
"""

from __future__ import annotations

import logging
import platform
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ocirootfs.cli.log_setup import setup_logging
from ocirootfs.cli.progress_display import DownloadProgress
from ocirootfs.config import RootfsSettings
from ocirootfs.core.coordinator import RootfsBuild
from ocirootfs.core.credentials import CredentialSelector
from ocirootfs.core.errors import RootfsError
from ocirootfs.core.registry import HttpRegistryClient
from ocirootfs.core.resolver import ManifestResolver
from ocirootfs.models.build import BuildOptionsBuilder
from ocirootfs.models.reference import ImageReference

app = typer.Typer(
    name="ocirootfs",
    help="Build bootable ext4 root filesystem images from OCI container images.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)

# platform.machine() values mapped to OCI architecture names.
_ARCH_ALIASES: dict[str, str] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
    "i386": "386",
    "i686": "386",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}


def host_platform() -> tuple[str, str]:
    """The running host's OS and architecture, in OCI naming."""
    machine = platform.machine().lower()
    return platform.system().lower(), _ARCH_ALIASES.get(machine, machine)


def parse_file_mappings(values: list[str]) -> list[tuple[str, str]]:
    """Split ``SRC=DEST`` arguments into (src, dest) pairs."""
    mappings = []
    for value in values:
        src, sep, dest = value.partition("=")
        if not sep or not src:
            raise typer.BadParameter(f"{value!r} is not in SRC=DEST form", param_hint="--file")
        mappings.append((src, dest))
    return mappings


def _fail(exc: Exception) -> NoReturn:
    err_console.print(f"[bold red]Error:[/bold red] {escape(str(exc))}")
    raise typer.Exit(code=1)


@app.command(name="build", help="Build an ext4 rootfs image from an OCI image reference.")
def build_cmd(
    reference: str = typer.Argument(..., metavar="OCI-REF", help="OCI image reference."),
    target_os: str = typer.Option(None, "--os", help="Target OS (default: host OS)."),
    target_arch: str = typer.Option(
        None, "--arch", help="Target architecture (default: host architecture)."
    ),
    output_dir: Path = typer.Option(
        None, "--output", "-o", help="Directory the image is written to."
    ),
    image_name: str = typer.Option(None, "--name", help="Image file name."),
    image_size: str = typer.Option(
        None, "--size", help="Initial filesystem size before shrinking, e.g. 150M."
    ),
    files: list[str] | None = typer.Option(
        None, "--file", "-f", metavar="SRC=DEST", help="Add a local file to the rootfs."
    ),
    timeout: float = typer.Option(None, "--timeout", help="Overall build deadline in seconds."),
    keep_staging: bool = typer.Option(
        False, "--keep-staging", help="Keep the staging directory for inspection."
    ),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase verbosity."),
) -> None:
    """Resolve, download and extract an image, overlay files, write rootfs.ext4."""
    level = setup_logging(verbose)
    mappings = parse_file_mappings(files or [])
    host_os, host_arch = host_platform()
    settings = RootfsSettings()

    builder = (
        BuildOptionsBuilder(settings)
        .with_os_arch(target_os or host_os, target_arch or host_arch)
        .with_logger(logging.getLogger("ocirootfs.rootfs"))
        .with_image(image_name, image_size)
        .with_keep_staging(keep_staging)
    )
    if output_dir is not None:
        builder.with_output_dir(output_dir)
    if timeout is not None:
        builder.with_timeout(timeout)

    progress = DownloadProgress(err_console, enabled=level <= logging.INFO)
    builder.with_progress(progress)

    try:
        options = builder.build()
        with progress, RootfsBuild(reference, options, settings=settings) as rootfs:
            image = rootfs.run(mappings)
            manifest = rootfs.manifest
    except RootfsError as exc:
        progress.stop()
        _fail(exc)

    if level <= logging.INFO:
        err_console.print(
            Panel(
                "\n".join([
                    "[bold green]Root filesystem created![/bold green]",
                    "",
                    f"[bold]Reference:[/bold] {reference}",
                    f"[bold]Platform:[/bold]  {options.target_os}/{options.target_arch}",
                    f"[bold]Manifest:[/bold]  {manifest.digest}",
                    f"[bold]Layers:[/bold]    {len(manifest.layers)}",
                    f"[bold]Files:[/bold]     {len(mappings)}",
                ]),
                title="[bold]ocirootfs[/bold]",
                border_style="green",
                padding=(1, 2),
            )
        )

    # Print the image path plainly for scripting
    console.print(str(image), soft_wrap=True, highlight=False)


@app.command(name="inspect", help="Resolve an image reference and list its layers.")
def inspect_cmd(
    reference: str = typer.Argument(..., metavar="OCI-REF", help="OCI image reference."),
    target_os: str = typer.Option(None, "--os", help="Target OS (default: host OS)."),
    target_arch: str = typer.Option(
        None, "--arch", help="Target architecture (default: host architecture)."
    ),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase verbosity."),
) -> None:
    """Show which manifest and layers a build would use, without downloading."""
    setup_logging(verbose)
    host_os, host_arch = host_platform()
    settings = RootfsSettings()

    try:
        ref = ImageReference.parse(reference)
        client = HttpRegistryClient(
            ref,
            credentials=CredentialSelector.from_settings(settings),
            settings=settings,
        )
        manifest = ManifestResolver(client).resolve(
            ref, target_os or host_os, target_arch or host_arch
        )
    except RootfsError as exc:
        _fail(exc)

    table = Table(title=f"{reference}")
    table.add_column("#", justify="right")
    table.add_column("Digest", style="cyan")
    table.add_column("Size", justify="right", style="green")
    table.add_column("Media Type")
    for position, layer in enumerate(manifest.layers, start=1):
        table.add_row(str(position), layer.digest, f"{layer.size:,}", layer.media_type)

    console.print(f"[bold]Manifest:[/bold] {manifest.digest}")
    if manifest.platform is not None:
        console.print(f"[bold]Platform:[/bold] {manifest.platform}")
    console.print(table)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
