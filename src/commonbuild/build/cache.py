"""Versioned result cache — per-category build records keyed by build id."""

from __future__ import annotations

import json
import threading
from concurrent.futures import Future
from pathlib import Path

from commonbuild.core.config import BuildConfig
from commonbuild.core.errors import StructuralError, atomic_write
from commonbuild.core.models import NEVER, Outcome, PackageName, PackageResource, VersionedResult

# Build id of the (virtual) cache that precedes the very first run.
INITIAL_BUILD_ID = 22

CATEGORIES = ("preprocess", "library", "link")

CACHE_FILENAMES = {
    "preprocess": "preprocess-results.json",
    "library": "library-results.json",
    "link": "link-results.json",
}


class ResultsCache:
    """All VersionedResults of one build category for one run.

    ``results`` only ever grows during a run, and each package is written at
    most once. ``in_flight`` maps a package to the future its builder will
    resolve; both maps are only touched under ``lock``.
    """

    def __init__(
        self,
        current_build_id: int = INITIAL_BUILD_ID,
        build_config: BuildConfig | None = None,
        results: dict[PackageName, VersionedResult] | None = None,
    ):
        self.current_build_id = current_build_id
        self.build_config = build_config
        self.results: dict[PackageName, VersionedResult] = dict(results or {})
        self.in_flight: dict[PackageName, Future] = {}
        self.lock = threading.RLock()

    @classmethod
    def next_run(cls, previous: ResultsCache | None, config: BuildConfig) -> ResultsCache:
        """An empty cache for the run after ``previous``."""
        previous_id = previous.current_build_id if previous is not None else INITIAL_BUILD_ID
        return cls(current_build_id=previous_id + 1, build_config=config)

    def get(self, name: PackageName) -> VersionedResult | None:
        with self.lock:
            return self.results.get(name)

    def __contains__(self, name: object) -> bool:
        with self.lock:
            return name in self.results

    def __len__(self) -> int:
        with self.lock:
            return len(self.results)

    def attempted_this_run(self, name: PackageName) -> bool:
        result = self.get(name)
        return result is not None and result.last_attempted_build_id == self.current_build_id

    def publish(self, name: PackageName, result: VersionedResult) -> None:
        """Record ``result`` for ``name`` and clear its in-flight entry."""
        _check_ordering(name, result, self.current_build_id)
        with self.lock:
            existing = self.results.get(name)
            if existing is not None and existing.last_attempted_build_id == self.current_build_id:
                raise StructuralError(f"Package {name} was built twice in build {self.current_build_id}")
            self.results[name] = result
            self.in_flight.pop(name, None)

    def carry_over(self, name: PackageName, previous: ResultsCache | None) -> None:
        """Keep the previous run's record for a package this run did not attempt."""
        if previous is None:
            return
        result = previous.get(name)
        with self.lock:
            if result is not None and name not in self.results:
                self.results[name] = result

    def carry_over_all(self, previous: ResultsCache | None) -> None:
        """Keep every previous record for a category that was not walked this run."""
        if previous is None:
            return
        with previous.lock:
            names = list(previous.results)
        for name in names:
            self.carry_over(name, previous)

    def to_dict(self) -> dict:
        with self.lock:
            return {
                "current_build_id": self.current_build_id,
                "build_config": self.build_config.to_dict() if self.build_config else None,
                "results": {name: r.to_dict() for name, r in sorted(self.results.items())},
            }

    @classmethod
    def from_dict(cls, data: dict) -> ResultsCache:
        """Rebuild a persisted cache. In-flight state is never restored."""
        return cls(
            current_build_id=data.get("current_build_id", INITIAL_BUILD_ID),
            build_config=BuildConfig.from_stored(data.get("build_config")),
            results={
                name: VersionedResult.from_dict(entry)
                for name, entry in (data.get("results") or {}).items()
            },
        )


def _check_ordering(name: PackageName, result: VersionedResult, current_build_id: int) -> None:
    ids = (
        result.last_build_id_effecting_project,
        result.last_successful_build_id,
        result.last_attempted_build_id,
    )
    if not (ids[0] <= ids[1] <= ids[2] <= current_build_id):
        raise StructuralError(
            f"Build ids out of order for {name}: effecting_project={ids[0]} "
            f"successful={ids[1]} attempted={ids[2]} current={current_build_id}"
        )
    if result.last_build_id_effecting_dependents > current_build_id:
        raise StructuralError(f"Build id from the future for {name}")


def most_recent(
    name: PackageName, cache: ResultsCache, previous: ResultsCache | None
) -> VersionedResult:
    """This run's result if present, else the previous run's, else a never-built record."""
    result = cache.get(name)
    if result is None and previous is not None:
        result = previous.get(name)
    return result if result is not None else VersionedResult()


def load_cache(path: Path) -> ResultsCache | None:
    """Load a persisted cache. Returns None if none was written yet."""
    path = Path(path)
    if not path.exists():
        return None
    return ResultsCache.from_dict(json.loads(path.read_text()))


def save_cache(cache: ResultsCache, path: Path) -> None:
    atomic_write(Path(path), json.dumps(cache.to_dict(), indent=2))


def cache_path(build_dir: Path, category: str) -> Path:
    return Path(build_dir) / CACHE_FILENAMES[category]


def transitive_closure(resources: dict[PackageName, PackageResource], root: PackageName) -> list[PackageName]:
    """Every package reachable from ``root``, dependencies before dependents."""
    order: list[PackageName] = []
    visited: set[PackageName] = set()

    def visit(name: PackageName) -> None:
        if name in visited:
            return
        visited.add(name)
        resource = resources.get(name)
        if resource is None:
            raise StructuralError(f"No resource entry for package {name}")
        for child in resource.subpackage_names:
            visit(child)
        order.append(name)

    visit(root)
    return order


def linked_config(
    previous_link: VersionedResult | None, previous_link_cache: ResultsCache | None
) -> BuildConfig | None:
    """Build config of the last successful link, falling back to the link cache's own."""
    if previous_link is not None and previous_link.outcome is Outcome.SUCCESS:
        stored = previous_link.computed_data.get("build_config")
        if stored:
            return BuildConfig.from_stored(stored)
    return previous_link_cache.build_config if previous_link_cache is not None else None


def needs_relink(
    library_cache: ResultsCache,
    previous_link_cache: ResultsCache | None,
    resources: dict[PackageName, PackageResource],
    root: PackageName,
) -> tuple[bool, list[str]]:
    """Decide whether the root executable must be relinked this run.

    Returns (relink, reasons). Never relinks when the root package itself did
    not succeed in this run.
    """
    root_result = library_cache.get(root)
    if root_result is None or root_result.last_successful_build_id != library_cache.current_build_id:
        return (False, [])

    reasons = []
    changed = [
        name
        for name in transitive_closure(resources, root)
        if (r := library_cache.get(name)) is not None
        and r.last_build_id_effecting_project == library_cache.current_build_id
    ]
    if changed:
        reasons.append("rebuilt: " + ", ".join(changed))

    previous_link = previous_link_cache.get(root) if previous_link_cache is not None else None
    config = library_cache.build_config
    previous_config = linked_config(previous_link, previous_link_cache)
    if config is not None and config.might_change_compilation(previous_config):
        reasons.append("build config changed")
    if (
        config is not None
        and config.js_compile
        and not (previous_config is not None and previous_config.js_compile)
    ):
        reasons.append("js output enabled")

    if previous_link_cache is not None:
        if previous_link is None or previous_link.last_successful_build_id == NEVER:
            reasons.append("never linked")
        elif previous_link.outcome is not None and previous_link.outcome.failed:
            reasons.append("previous link failed")

    return (bool(reasons), reasons)
