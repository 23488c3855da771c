"""Dirty detection — decide what about a package changed since its last good build."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from commonbuild.core.config import BuildConfig
from commonbuild.core.models import PackageName, PackageResource

if TYPE_CHECKING:
    from commonbuild.build.cache import ResultsCache


@dataclass
class ChangeReport:
    """Classification of how a package differs from its last successful snapshot."""

    files_changed: bool = False
    mtimes_changed: bool = False
    config_changed: bool = False
    reasons: list[str] = field(default_factory=list)

    @property
    def locally_dirty(self) -> bool:
        return self.files_changed or self.mtimes_changed or self.config_changed

    @property
    def needs_full_recompile(self) -> bool:
        """A new, removed or reordered file, or a config change, recompiles everything."""
        return self.files_changed or self.config_changed


def detect_changes(
    current: PackageResource,
    last_good: PackageResource | None,
    config: BuildConfig,
    previous_config: BuildConfig | None,
) -> ChangeReport:
    """Compare ``current`` against the last successfully built snapshot.

    Pure: looks only at its arguments. Operational config (concurrency,
    verbosity, timeouts) never marks a package dirty.
    """
    if last_good is None:
        return ChangeReport(
            files_changed=True,
            mtimes_changed=True,
            config_changed=True,
            reasons=["never built"],
        )

    report = ChangeReport()

    if list(current.source_files) != list(last_good.source_files):
        report.files_changed = True
        report.reasons.append("file set changed")

    if list(current.source_file_mtimes) != list(last_good.source_file_mtimes):
        report.mtimes_changed = True
        if not report.files_changed:
            touched = [
                path
                for path, now, before in zip(
                    current.source_files, current.source_file_mtimes, last_good.source_file_mtimes
                )
                if now != before
            ]
            report.reasons.append(
                "modified: " + ", ".join(os.path.basename(p) for p in touched)
            )

    if not current.config_digest.matches(last_good.config_digest):
        report.config_changed = True
        report.reasons.extend(current.config_digest.explain_diff(last_good.config_digest))

    if config.might_change_compilation(previous_config):
        report.config_changed = True
        report.reasons.append("build config changed")

    return report


def dependency_triggered_rebuild(
    subpackage_names: list[PackageName], cache: ResultsCache
) -> bool:
    """True iff a direct dependency changed in a way its dependents must see this run.

    Every subpackage must already have a result in ``cache``: the walker only
    asks after all children are terminal.
    """
    for name in subpackage_names:
        result = cache.get(name)
        if result is not None and result.last_build_id_effecting_dependents == cache.current_build_id:
            return True
    return False


def files_needing_recompilation(
    ordering: list[str],
    current: PackageResource,
    last_good: PackageResource | None,
) -> list[str]:
    """Files of ``ordering`` that must be recompiled after a pure mtime change.

    ``ordering`` is the externally supplied topological order of source
    files. Everything from the first new or touched file onwards is returned,
    since later files may depend on it. When no such file exists the whole
    ordering is returned.
    """
    if last_good is None:
        return list(ordering)

    previous_mtimes = dict(zip(last_good.source_files, last_good.source_file_mtimes))
    current_mtimes = dict(zip(current.source_files, current.source_file_mtimes))

    for index, path in enumerate(ordering):
        if path not in previous_mtimes:
            return list(ordering[index:])
        if path not in current_mtimes:
            raise ValueError(f"Dependency ordering names unknown source {path}")
        if previous_mtimes[path] != current_mtimes[path]:
            return list(ordering[index:])
    return list(ordering)


def new_or_changed_files(
    extension: str,
    current: PackageResource,
    previous: PackageResource | None,
) -> list[str]:
    """Files with ``extension`` that are new, or whose mtime increased, since ``previous``."""
    previous_mtimes = (
        dict(zip(previous.source_files, previous.source_file_mtimes)) if previous else {}
    )
    changed = []
    for path, mtime in zip(current.source_files, current.source_file_mtimes):
        if os.path.splitext(path)[1] != extension:
            continue
        before = previous_mtimes.get(path)
        if before is None or before < mtime:
            changed.append(path)
    return changed
