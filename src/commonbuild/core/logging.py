"""Structured logging and verbosity levels for commonbuild runs."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any

from rich.console import Console


class Verbosity(IntEnum):
    """Verbosity levels for console output."""

    DEFAULT = 0   # Summary and build graph only
    VERBOSE = 1   # + per-category progress, per-package status
    DEBUG = 2     # + toolchain commands, timing


@dataclass
class CategoryLog:
    """Per-category build statistics (preprocess, library, link)."""

    name: str
    rebuilt: list[str] = field(default_factory=list)
    cached: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    time_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "rebuilt": list(self.rebuilt),
            "cached": list(self.cached),
            "failed": list(self.failed),
            "blocked": list(self.blocked),
            "time_seconds": self.time_seconds,
        }


@dataclass
class RunLog:
    """Structured log of a complete orchestrator run.

    The dict format is::

        {
            "run_id": "20260101T120000Z",
            "build_id": 23,
            "categories": {
                "library": {
                    "rebuilt": ["A", "B"],
                    "cached": ["C"],
                    "failed": [],
                    "blocked": [],
                    "time_seconds": 1.2,
                },
                ...
            },
            "linked": true,
            "success": true,
            "total_time": 1.5,
        }
    """

    run_id: str = ""
    build_id: int = 0
    categories: dict[str, CategoryLog] = field(default_factory=dict)
    linked: bool = False
    success: bool = False
    total_time: float = 0.0

    def get_or_create_category(self, name: str) -> CategoryLog:
        if name not in self.categories:
            self.categories[name] = CategoryLog(name=name)
        return self.categories[name]

    @property
    def total_rebuilt(self) -> int:
        return sum(len(c.rebuilt) for c in self.categories.values())

    @property
    def total_cached(self) -> int:
        return sum(len(c.cached) for c in self.categories.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "build_id": self.build_id,
            "categories": {name: cat.to_dict() for name, cat in self.categories.items()},
            "linked": self.linked,
            "success": self.success,
            "total_time": self.total_time,
        }


class BuildLogger:
    """Structured logger for commonbuild runs.

    Writes a JSONL event file to ``<build dir>/logs/`` and optionally emits
    console output via Rich based on verbosity level. Package events arrive
    from worker threads, so every mutation happens under a lock.

    ``progress`` is any object with ``category_start``/``package_start``/
    ``package_finish``/``package_cached``/``package_failed``/``category_finish``
    methods (the CLI's live display); it is fed the same events.
    """

    def __init__(
        self,
        verbosity: Verbosity = Verbosity.DEFAULT,
        build_dir: Path | None = None,
        *,
        silent: bool = False,
        progress: Any = None,
        console: Console | None = None,
    ):
        self.verbosity = Verbosity(verbosity)
        self.build_dir = build_dir
        self.silent = silent
        self.progress = progress
        self.console = console or Console()
        self.run_log = RunLog(
            run_id=datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ"),
        )
        self._lock = threading.Lock()
        self._log_file = None
        self._log_path: Path | None = None
        self._category_start: dict[str, float] = {}
        self._package_start: dict[tuple[str, str], float] = {}

        if build_dir is not None:
            logs_dir = build_dir / "logs"
            logs_dir.mkdir(parents=True, exist_ok=True)
            self._log_path = logs_dir / f"{self.run_log.run_id}.jsonl"
            self._log_file = open(self._log_path, "a")

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def _write_event(self, event: dict[str, Any]) -> None:
        """Write a JSON event to the JSONL log file. Caller holds the lock."""
        if self._log_file is not None:
            event["timestamp"] = datetime.now(timezone.utc).isoformat()
            self._log_file.write(json.dumps(event) + "\n")
            self._log_file.flush()

    def _console_print(self, message: str, min_verbosity: Verbosity) -> None:
        if not self.silent and self.verbosity >= min_verbosity:
            self.console.print(message)

    def _notify(self, method: str, *args: Any) -> None:
        if self.progress is not None:
            getattr(self.progress, method)(*args)

    # -- Run lifecycle --

    def run_start(self, root_name: str, build_id: int, package_count: int) -> None:
        with self._lock:
            self.run_log.build_id = build_id
            self._write_event({
                "event": "run_start",
                "root": root_name,
                "build_id": build_id,
                "package_count": package_count,
            })
        self._console_print(
            f"[bold]Build {build_id}[/bold] of {root_name} ({package_count} packages)",
            Verbosity.VERBOSE,
        )

    def run_finish(self, total_time: float, success: bool, linked: bool) -> None:
        with self._lock:
            self.run_log.total_time = total_time
            self.run_log.success = success
            self.run_log.linked = linked
            self._write_event({
                "event": "run_finish",
                "total_time": round(total_time, 3),
                "success": success,
                "linked": linked,
                "rebuilt": self.run_log.total_rebuilt,
                "cached": self.run_log.total_cached,
            })
            if self._log_file is not None:
                self._log_file.close()
                self._log_file = None

    # -- Category events --

    def category_start(self, category: str, package_count: int) -> None:
        with self._lock:
            self._category_start[category] = time.time()
            self.run_log.get_or_create_category(category)
            self._write_event({
                "event": "category_start",
                "category": category,
                "package_count": package_count,
            })
        self._notify("category_start", category, package_count)
        self._console_print(f"  [bold]Building category:[/bold] {category}", Verbosity.VERBOSE)

    def category_finish(self, category: str) -> None:
        with self._lock:
            elapsed = time.time() - self._category_start.pop(category, time.time())
            cat = self.run_log.get_or_create_category(category)
            cat.time_seconds = elapsed
            self._write_event({
                "event": "category_finish",
                "category": category,
                "rebuilt": len(cat.rebuilt),
                "cached": len(cat.cached),
                "failed": len(cat.failed),
                "blocked": len(cat.blocked),
                "time_seconds": round(elapsed, 3),
            })
            rebuilt, cached = len(cat.rebuilt), len(cat.cached)
        self._notify("category_finish", category, rebuilt, cached)
        self._console_print(
            f"    {category}: {rebuilt} rebuilt, {cached} unchanged ({elapsed:.1f}s)",
            Verbosity.VERBOSE,
        )

    # -- Package events --

    def package_start(self, category: str, name: str) -> None:
        with self._lock:
            self._package_start[(category, name)] = time.time()
            self._write_event({"event": "package_start", "category": category, "package": name})
        self._notify("package_start", name)
        self._console_print(f"      [dim]building {name}[/dim]", Verbosity.DEBUG)

    def package_built(self, category: str, name: str) -> None:
        """The package's builder ran and changed something."""
        with self._lock:
            elapsed = time.time() - self._package_start.pop((category, name), time.time())
            self.run_log.get_or_create_category(category).rebuilt.append(name)
            self._write_event({
                "event": "package_built",
                "category": category,
                "package": name,
                "time_seconds": round(elapsed, 3),
            })
        self._notify("package_finish", name, elapsed)
        self._console_print(f"      [green]+[/green] {name}", Verbosity.VERBOSE)

    def package_cached(self, category: str, name: str) -> None:
        """The package was checked and nothing needed rebuilding."""
        with self._lock:
            self._package_start.pop((category, name), None)
            self.run_log.get_or_create_category(category).cached.append(name)
            self._write_event({"event": "package_cached", "category": category, "package": name})
        self._notify("package_cached", name)
        self._console_print(f"      [cyan]=[/cyan] {name} (unchanged)", Verbosity.VERBOSE)

    def package_failed(self, category: str, name: str, error: str) -> None:
        with self._lock:
            self._package_start.pop((category, name), None)
            self.run_log.get_or_create_category(category).failed.append(name)
            self._write_event({
                "event": "package_failed",
                "category": category,
                "package": name,
                "error": error,
            })
        self._notify("package_failed", name)
        self._console_print(f"      [red]x[/red] {name}", Verbosity.VERBOSE)
        self._console_print(f"        [dim]{error}[/dim]", Verbosity.DEBUG)

    def package_blocked(self, category: str, name: str, errored: list[str]) -> None:
        with self._lock:
            self.run_log.get_or_create_category(category).blocked.append(name)
            self._write_event({
                "event": "package_blocked",
                "category": category,
                "package": name,
                "errored_subpackages": list(errored),
            })
        self._notify("package_failed", name)
        self._console_print(
            f"      [yellow]-[/yellow] {name} (blocked by {', '.join(errored)})",
            Verbosity.VERBOSE,
        )

    def toolchain_command(self, name: str, command: str) -> None:
        with self._lock:
            self._write_event({"event": "toolchain_command", "package": name, "command": command})
        self._console_print(f"        [dim]$ {command}[/dim]", Verbosity.DEBUG)

    # -- Link events --

    def link_start(self, root_name: str, reasons: list[str]) -> float:
        """Returns start time for pairing with link_finish."""
        with self._lock:
            self._write_event({"event": "link_start", "root": root_name, "reasons": list(reasons)})
        self._console_print(
            f"  [bold]Linking[/bold] {root_name} ({', '.join(reasons)})", Verbosity.VERBOSE
        )
        return time.time()

    def link_finish(self, root_name: str, start_time: float, success: bool) -> None:
        elapsed = time.time() - start_time
        with self._lock:
            self._write_event({
                "event": "link_finish",
                "root": root_name,
                "success": success,
                "time_seconds": round(elapsed, 3),
            })
        self._console_print(
            f"    link {'ok' if success else 'failed'} ({elapsed:.1f}s)", Verbosity.VERBOSE
        )

    def close(self) -> None:
        """Close the log file if open."""
        with self._lock:
            if self._log_file is not None:
                self._log_file.close()
                self._log_file = None
