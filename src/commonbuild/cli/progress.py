"""Live progress display for builds."""

from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any

from rich.console import Console, ConsoleOptions, RenderResult
from rich.text import Text


@dataclass
class _PackageState:
    name: str
    status: str = "pending"  # pending, running, done, cached, failed
    start_time: float = 0.0
    elapsed: float = 0.0


class BuildProgress:
    """Thread-safe live progress tracker for builds.

    Implements Rich's console protocol for rendering with Live.
    Updated from worker threads via the BuildLogger callbacks.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._category = ""
        self._category_total = 0
        self._category_start = 0.0
        self._packages: dict[str, _PackageState] = {}
        self._order: list[str] = []
        self._completed: list[dict[str, Any]] = []

    def _state(self, name: str) -> _PackageState:
        if name not in self._packages:
            self._packages[name] = _PackageState(name)
            self._order.append(name)
        return self._packages[name]

    def category_start(self, name: str, package_count: int) -> None:
        with self._lock:
            self._category = name
            self._category_total = package_count
            self._category_start = time.time()
            self._packages.clear()
            self._order.clear()

    def category_finish(self, name: str, rebuilt: int, cached: int) -> None:
        with self._lock:
            failed = sum(1 for p in self._packages.values() if p.status == "failed")
            self._completed.append({
                "name": name,
                "rebuilt": rebuilt,
                "cached": cached,
                "failed": failed,
                "elapsed": time.time() - self._category_start,
            })
            self._category = ""
            self._packages.clear()
            self._order.clear()

    def package_start(self, name: str) -> None:
        with self._lock:
            state = self._state(name)
            state.status = "running"
            state.start_time = time.time()

    def package_finish(self, name: str, elapsed: float = 0.0) -> None:
        with self._lock:
            state = self._state(name)
            state.status = "done"
            state.elapsed = elapsed or (time.time() - state.start_time)

    def package_cached(self, name: str) -> None:
        with self._lock:
            self._state(name).status = "cached"

    def package_failed(self, name: str) -> None:
        with self._lock:
            self._state(name).status = "failed"

    def __rich_console__(
        self, console: Console, options: ConsoleOptions
    ) -> RenderResult:
        with self._lock:
            for cat in self._completed:
                mark = "[red]✗[/red]" if cat["failed"] else "[green]✓[/green]"
                yield Text.from_markup(
                    f"  {mark} [bold]{cat['name']}[/bold]  "
                    f"{cat['rebuilt']} rebuilt, {cat['cached']} unchanged  "
                    f"[dim]{cat['elapsed']:.1f}s[/dim]"
                )

            if not self._category:
                return

            now = time.time()
            finished = sum(
                1 for p in self._packages.values() if p.status in ("done", "cached", "failed")
            )
            running = sum(1 for p in self._packages.values() if p.status == "running")
            parts = [f"  [bold]{self._category}[/bold]  {finished}/{self._category_total}"]
            if running:
                parts.append(f"  [yellow]⟳ {running} in flight[/yellow]")
            parts.append(f"  [dim]{now - self._category_start:.1f}s[/dim]")
            yield Text.from_markup("".join(parts))

            for name in self._order:
                pkg = self._packages[name]
                if pkg.status == "done":
                    yield Text.from_markup(f"    [green]✓[/green] {name}  [dim]{pkg.elapsed:.1f}s[/dim]")
                elif pkg.status == "cached":
                    yield Text.from_markup(f"    [cyan]=[/cyan] {name}  [dim]unchanged[/dim]")
                elif pkg.status == "failed":
                    yield Text.from_markup(f"    [red]✗[/red] {name}")
                elif pkg.status == "running":
                    yield Text.from_markup(
                        f"    [yellow]⟳[/yellow] {name}  [yellow]{now - pkg.start_time:.1f}s[/yellow]"
                    )
