"""commonbuild CLI — main entry point and shared utilities."""

from __future__ import annotations

import sys

import click
from rich.console import Console

from commonbuild.core.config import VALID_COMPILERS, BuildConfig
from commonbuild.core.errors import ConfigError

console = Console()

# Color per package status
STATUS_STYLES = {
    "rebuilt": "green",
    "unchanged": "dim",
    "failed": "red",
    "blocked": "yellow",
}


def get_status_style(status: str) -> str:
    """Return Rich style string for a package status."""
    return STATUS_STYLES.get(status, "white")


def config_options(fn):
    """Shared options that select which build variant (and cache directory) to use."""
    options = [
        click.argument("root_dir", required=False, default=".", type=click.Path(file_okay=False)),
        click.option("--compiler", type=click.Choice(VALID_COMPILERS), default=None, help="byte or native"),
        click.option("--opt", type=int, default=None, help="Optimization level"),
        click.option("--debug/--no-debug", default=None, help="Build for debugging"),
        click.option("--build-dir", default=None, help="Build directory prefix (default _build)"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def resolve_config(**values) -> BuildConfig:
    """BuildConfig from CLI values (None = not given), env vars and defaults.

    Exits with status 1 on an invalid combination.
    """
    config = BuildConfig.from_dict({k: v for k, v in values.items() if v is not None})
    try:
        config.validate()
    except ConfigError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)
    return config


@click.group()
def main():
    """commonbuild — incremental builds for multi-package projects."""
    pass


def cli():
    """Entrypoint that loads .env before running the CLI."""
    from dotenv import load_dotenv

    load_dotenv()
    main()


# Import subcommand modules to register commands
from commonbuild.cli.build_commands import build  # noqa: E402
from commonbuild.cli.clean_commands import clean  # noqa: E402
from commonbuild.cli.status_commands import graph, status  # noqa: E402

# Register commands
main.add_command(build)
main.add_command(graph)
main.add_command(status)
main.add_command(clean)
