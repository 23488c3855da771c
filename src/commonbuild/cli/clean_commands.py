"""Clean command — remove build output."""

from __future__ import annotations

import shutil
from pathlib import Path

import click

from commonbuild.cli.main import config_options, console, resolve_config


@click.command()
@config_options
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt")
def clean(root_dir: str, compiler: str | None, opt: int | None, debug: bool | None, build_dir: str | None, yes: bool):
    """Remove all build output for one build variant.

    ROOT_DIR defaults to the current directory. Deletes the variant's
    build directory, including its result caches, so the next build is
    a full one. Use --yes to skip the confirmation prompt.
    """
    config = resolve_config(compiler=compiler, opt=opt, debug=debug, build_dir=build_dir)
    build_path = config.actual_build_dir(Path(root_dir).resolve())

    if not build_path.exists():
        console.print("[dim]Nothing to clean — build directory does not exist.[/dim]")
        return

    if not yes:
        console.print(f"This will delete [bold]{build_path}[/bold] and all its contents.")
        if not click.confirm("Continue?"):
            console.print("[dim]Aborted.[/dim]")
            return

    shutil.rmtree(build_path)
    console.print(f"[green]Cleaned:[/green] {build_path}")
