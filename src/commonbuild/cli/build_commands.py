"""Build command — commonbuild build."""

from __future__ import annotations

import sys
import time
from pathlib import Path

import click
from rich import box
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from commonbuild.cli.main import config_options, console, get_status_style, resolve_config
from commonbuild.cli.progress import BuildProgress
from commonbuild.core.errors import CommonBuildError


@click.command()
@config_options
@click.option("--yacc/--no-yacc", default=None, help="Run ocamlyacc/ocamllex on grammar files first")
@click.option("--js/--no-js", "js_compile", default=None, help="Also produce a JavaScript executable")
@click.option("--concurrency", "-j", default=None, type=int, help="Max simultaneous toolchain steps (default 4)")
@click.option("--timeout", "step_timeout", default=None, type=float, help="Seconds allowed per toolchain step")
@click.option("--verbose", "-v", count=True, help="Verbosity level: -v per-package, -vv toolchain commands")
@click.option("--silent", is_flag=True, default=False, help="Only print the final status")
def build(
    root_dir: str,
    compiler: str | None,
    opt: int | None,
    debug: bool | None,
    build_dir: str | None,
    yacc: bool | None,
    js_compile: bool | None,
    concurrency: int | None,
    step_timeout: float | None,
    verbose: int,
    silent: bool,
):
    """Incrementally build the package in ROOT_DIR (default: current directory).

    Only packages whose sources, manifest or build options changed, and
    their dependents, are rebuilt. The executable is relinked only when
    something it contains changed.
    """
    from commonbuild.build.diagnostics import format_diagnostics
    from commonbuild.build.runner import run as run_build
    from commonbuild.core.logging import BuildLogger, Verbosity

    config = resolve_config(
        compiler=compiler,
        opt=opt,
        debug=debug,
        build_dir=build_dir,
        yacc=yacc,
        js_compile=js_compile,
        concurrency=concurrency,
        step_timeout=step_timeout,
        verbosity=verbose,
        silent=silent,
    )
    root = Path(root_dir).resolve()
    actual_build_dir = config.actual_build_dir(root)

    if not silent:
        console.print(
            Panel(
                f"[bold]Root:[/bold] {root}\n"
                f"[bold]Build:[/bold] {actual_build_dir}\n"
                f"[bold]Compiler:[/bold] {config.compiler}"
                f"{' (debug)' if config.debug else ''}{' + js' if config.js_compile else ''}\n"
                f"[bold]Concurrency:[/bold] {config.concurrency}",
                title="[bold cyan]commonbuild[/bold cyan]",
                border_style="cyan",
            )
        )

    start_time = time.time()
    progress = BuildProgress()
    logger = BuildLogger(
        verbosity=Verbosity(min(verbose, Verbosity.DEBUG)),
        build_dir=actual_build_dir,
        silent=silent,
        progress=progress,
        console=console,
    )
    try:
        with Live(progress, console=console, refresh_per_second=4, transient=silent):
            result = run_build(root, config, logger=logger)
    except CommonBuildError as e:
        console.print(f"\n[red]Build failed:[/red] {e}")
        sys.exit(1)
    elapsed = time.time() - start_time

    if result.diagnostics:
        console.print()
        console.print(format_diagnostics(result.diagnostics), markup=False, style="red")

    if not silent and result.graph_text:
        console.print()
        console.print(result.graph_text, markup=False)

    if not silent and result.caches:
        table = Table(title="Build Summary", box=box.ROUNDED)
        table.add_column("Status", style="bold", no_wrap=True)
        table.add_column("Packages", justify="right")
        table.add_column("Names")
        for status, names in (
            ("rebuilt", result.rebuilt),
            ("unchanged", result.unchanged),
            ("failed", result.failed),
            ("blocked", result.blocked),
        ):
            style = get_status_style(status)
            table.add_row(f"[{style}]{status}[/{style}]", str(len(names)), ", ".join(names))
        console.print(table)

        if result.linked:
            console.print(f"[bold]Linked:[/bold] {result.root_name} ({', '.join(result.link_reasons)})")
        elif result.success:
            console.print(f"[dim]Skipped relinking {result.root_name}: nothing changed.[/dim]")
        console.print(f"[bold]Build id:[/bold] {result.build_id}  [bold]Time:[/bold] {elapsed:.1f}s")

    if not result.success:
        console.print("[red bold]Build failure:[/red bold] fix errors and try again")
        sys.exit(1)
    console.print("[green bold]Build complete.[/green bold]")
