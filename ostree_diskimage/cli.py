"""Thin CLI wrapper for ostree_diskimage.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from ostree_diskimage import __version__
from ostree_diskimage.config import Settings, get_settings, print_settings_json
from ostree_diskimage.errors import DiskImageError

app = typer.Typer(
    name="diskimage",
    help="OSTree disk image builder - extend builds with bootable disk images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def configure_logging(settings: Settings) -> None:
    """Send log records to stderr through rich at the configured level."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def fail(error: DiskImageError) -> typer.Exit:
    """Print a single diagnostic naming the failing stage.

    Returns:
        The exit exception to raise.
    """
    err_console.print(f"[red]{error.stage}: {error}[/red]")
    return typer.Exit(code=1)


def print_json(data: object) -> None:
    """Print JSON without rich markup or line wrapping."""
    console.print(json.dumps(data, indent=2), markup=False, soft_wrap=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ostree-diskimage version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """OSTree disk image builder - extend builds with bootable disk images."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), markup=False, soft_wrap=True)
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Working directory:   {settings.workdir}")
        console.print(f"  Builds directory:    {settings.resolved_builds_dir()}")
        console.print(f"  Config directory:    {settings.resolved_config_dir()}")
        console.print(f"  Temp directory:      {settings.resolved_tmp_dir()}")
        console.print(f"  Primary repository:  {settings.resolved_primary_repo()}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")
        console.print()
        console.print("[bold]Tools:[/bold]")
        console.print(f"  ostree:              {settings.ostree_bin}")
        console.print(f"  qemu-img:            {settings.qemu_img_bin}")
        console.print(f"  Size estimator:      {settings.estimator_command}")
        console.print(f"  Sandbox:             {' '.join(settings.sandbox_command)}")
        console.print(f"  Disk script:         {settings.disk_script}")
        console.print()
        console.print("[bold]Sizing:[/bold]")
        console.print(f"  Overhead percent:    {settings.size_overhead_percent}")
        console.print(f"  Non-root partitions: {settings.nonroot_partition_mb} MiB")


@app.command()
def build(
    image_type: Annotated[
        str,
        typer.Argument(help="Image type to build (metal, dasd or qemu)"),
    ],
    build_id: Annotated[
        str | None,
        typer.Option("--build", "-b", help="Build ID (default: latest)"),
    ] = None,
    arch: Annotated[
        str | None,
        typer.Option("--arch", "-a", help="Build architecture (default: host)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Add a disk image to an existing build."""
    from ostree_diskimage.builds.service import extend_build
    from ostree_diskimage.types import ImageType

    try:
        parsed_type = ImageType(image_type)
    except ValueError:
        valid = ", ".join(t.value for t in ImageType)
        err_console.print(f"[red]Invalid image type: {image_type}[/red]")
        err_console.print(f"Valid values: {valid}")
        raise typer.Exit(code=1) from None

    settings = get_settings()
    configure_logging(settings)

    try:
        result = extend_build(parsed_type, build=build_id, arch=arch, settings=settings)
    except DiskImageError as e:
        raise fail(e) from None

    if json_output:
        output = {
            "build_id": result.build_id,
            "arch": result.arch,
            "image_type": result.image_type.value,
            "path": str(result.image_path),
            "sha256": result.entry.sha256,
            "size": result.entry.size,
            "already_built": result.already_built,
        }
        print_json(output)
    elif result.already_built:
        console.print(
            f"[yellow]{result.image_type.value} image already built: "
            f"{result.image_path}[/yellow]"
        )
    else:
        console.print(f"[green]Built {result.image_type.value} image[/green]")
        console.print(f"  Path:   {result.image_path}")
        console.print(f"  SHA256: {result.entry.sha256}")
        console.print(f"  Size:   {result.entry.size}")


builds_app = typer.Typer(help="Inspect builds")
app.add_typer(builds_app, name="builds")


@builds_app.command("list")
def builds_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List builds, newest first."""
    from ostree_diskimage.builds.store import BuildStore

    settings = get_settings()
    store = BuildStore(settings.resolved_builds_dir())
    try:
        builds = store.list_builds()
    except DiskImageError as e:
        raise fail(e) from None

    if not builds:
        if json_output:
            print_json([])
        else:
            console.print("[yellow]No builds found[/yellow]")
        return

    if json_output:
        output = [{"id": b.build_id, "arches": b.arches} for b in builds]
        print_json(output)
    else:
        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        for b in builds:
            arches = ", ".join(b.arches) if b.arches else "N/A"
            console.print(f"  {b.build_id} ({arches})")


@builds_app.command("show")
def builds_show(
    build_id: Annotated[
        str | None,
        typer.Argument(help="Build ID (default: latest)"),
    ] = None,
    arch: Annotated[
        str | None,
        typer.Option("--arch", "-a", help="Build architecture (default: host)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the metadata record of a build."""
    from ostree_diskimage.builds.service import default_arch
    from ostree_diskimage.builds.store import BuildStore

    settings = get_settings()
    store = BuildStore(settings.resolved_builds_dir())
    try:
        resolved_id = store.resolve_build_id(build_id)
        meta = store.load_meta(store.build_dir(resolved_id, arch or default_arch()))
    except DiskImageError as e:
        raise fail(e) from None

    if json_output:
        print_json(meta.to_json_dict())
        return

    console.print(f"[bold]Build {meta.buildid}[/bold]")
    console.print(f"  Name:    {meta.name}")
    console.print(f"  Version: {meta.ostree_version}")
    console.print(f"  Commit:  {meta.ostree_commit}")
    if meta.ref:
        console.print(f"  Ref:     {meta.ref}")
    console.print("  Images:")
    for key, entry in sorted(meta.images.items()):
        if entry is None:
            continue
        console.print(f"    {key}: {entry.path} ({entry.size} bytes)")
