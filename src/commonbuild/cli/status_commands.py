"""Graph and status commands."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich import box
from rich.table import Table

from commonbuild.cli.main import config_options, console, get_status_style, resolve_config


def _load_or_exit(root: Path, build_dir: Path):
    from commonbuild.build.runner import load_previous_caches

    if not build_dir.exists():
        console.print(
            "[red]No build directory found.[/red] Run [bold]commonbuild build[/bold] first."
        )
        sys.exit(1)
    caches = load_previous_caches(build_dir)
    if caches["library"] is None:
        console.print(f"[red]No build results in[/red] {build_dir}")
        sys.exit(1)
    return caches


@click.command()
@config_options
def graph(root_dir: str, compiler: str | None, opt: int | None, debug: bool | None, build_dir: str | None):
    """Show the dependency graph of the last build with per-package status.

    ROOT_DIR defaults to the current directory.
    """
    from commonbuild.build.graph import render_build_graph
    from commonbuild.build.resources import scan_packages
    from commonbuild.core.errors import ValidationError

    config = resolve_config(compiler=compiler, opt=opt, debug=debug, build_dir=build_dir)
    root = Path(root_dir).resolve()
    caches = _load_or_exit(root, config.actual_build_dir(root))

    try:
        scan = scan_packages(root)
    except ValidationError as e:
        console.print(f"[red]Invalid project:[/red] {e}")
        sys.exit(1)

    if scan.root_name not in caches["library"]:
        console.print(f"[red]{scan.root_name} has not been built.[/red]")
        sys.exit(1)

    console.print(render_build_graph(caches["library"], scan.resources, scan.root_name), markup=False)


@click.command()
@config_options
def status(root_dir: str, compiler: str | None, opt: int | None, debug: bool | None, build_dir: str | None):
    """Show per-package results of the last build."""
    from commonbuild.build.graph import classify

    config = resolve_config(compiler=compiler, opt=opt, debug=debug, build_dir=build_dir)
    root = Path(root_dir).resolve()
    actual_build_dir = config.actual_build_dir(root)
    caches = _load_or_exit(root, actual_build_dir)
    library = caches["library"]

    table = Table(title=f"Build Status (build {library.current_build_id})", box=box.ROUNDED)
    table.add_column("Package", style="bold")
    table.add_column("Status", no_wrap=True)
    table.add_column("Outcome")
    table.add_column("Attempted", justify="right")
    table.add_column("Succeeded", justify="right")
    table.add_column("Changed", justify="right")
    table.add_column("Blocked by")

    for name in sorted(library.results):
        result = library.results[name]
        state = classify(library, name).value
        style = get_status_style(state)
        table.add_row(
            name,
            f"[{style}]{state}[/{style}]",
            result.outcome.value if result.outcome is not None else "-",
            str(result.last_attempted_build_id),
            str(result.last_successful_build_id),
            str(result.last_build_id_effecting_project),
            ", ".join(result.errored_subpackages),
        )

    console.print(table)

    link = caches["link"]
    if link is not None and link.results:
        for name, result in link.results.items():
            outcome = result.outcome.value if result.outcome is not None else "never linked"
            console.print(
                f"[bold]Executable {name}:[/bold] {outcome} "
                f"[dim](last linked in build {result.last_successful_build_id})[/dim]"
            )
    console.print(f"[dim]Build directory: {actual_build_dir}[/dim]")
