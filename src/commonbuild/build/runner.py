"""Build runner — scan packages, walk each category, relink, persist."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from commonbuild.build.builders import BuildRequest, get_builder
from commonbuild.build.cache import (
    CATEGORIES,
    ResultsCache,
    cache_path,
    load_cache,
    most_recent,
    needs_relink,
    save_cache,
)
from commonbuild.build.diagnostics import Diagnostic, diagnostics_for_cache
from commonbuild.build.dirty import ChangeReport
from commonbuild.build.graph import PackageStatus, packages_by_status, render_build_graph
from commonbuild.build.resources import scan_packages
from commonbuild.build.toolchain import TemplateToolchain, Toolchain
from commonbuild.build.walker import Walker, response_for_toolchain_error
from commonbuild.core.config import BuildConfig
from commonbuild.core.errors import ToolchainError, ValidationError, atomic_write
from commonbuild.core.logging import BuildLogger, Verbosity
from commonbuild.core.models import Outcome, PackageName, PackageResource, StepResult

PACKAGE_DIAGNOSTICS = "package-diagnostics.json"
COMPILE_DIAGNOSTICS = "compile-diagnostics.json"
LINK_DIAGNOSTICS = "link-diagnostics.json"


@dataclass
class RunResult:
    """Summary of one orchestrator run."""

    success: bool = False
    linked: bool = False
    root_name: PackageName = ""
    build_id: int = 0
    build_dir: Path | None = None
    graph_text: str = ""
    diagnostics: list[Diagnostic] = field(default_factory=list)
    caches: dict[str, ResultsCache] = field(default_factory=dict)
    link_reasons: list[str] = field(default_factory=list)
    rebuilt: list[PackageName] = field(default_factory=list)
    unchanged: list[PackageName] = field(default_factory=list)
    failed: list[PackageName] = field(default_factory=list)
    blocked: list[PackageName] = field(default_factory=list)
    total_time: float = 0.0
    run_log: dict = field(default_factory=dict)


def load_previous_caches(build_dir: Path) -> dict[str, ResultsCache | None]:
    return {category: load_cache(cache_path(build_dir, category)) for category in CATEGORIES}


def _write_diagnostics(path: Path, diagnostics: list[Diagnostic]) -> None:
    atomic_write(path, json.dumps([d.to_dict() for d in diagnostics], indent=2))


def _walk_category(
    category: str,
    root: PackageName,
    cache: ResultsCache,
    previous: ResultsCache | None,
    resources: dict[PackageName, PackageResource],
    toolchain: Toolchain,
    config: BuildConfig,
    build_dir: Path,
    logger: BuildLogger,
) -> bool:
    """Walk one category from ``root``. True if the root succeeded this run."""
    builder = get_builder(category, toolchain, config, build_dir, logger)
    walker = Walker(
        cache,
        previous,
        resources,
        builder,
        config.concurrency,
        category=category,
        logger=logger,
    )
    logger.category_start(category, len(resources))
    try:
        walker.walk(root)
    finally:
        logger.category_finish(category)
    root_result = cache.get(root)
    return root_result is not None and root_result.outcome is Outcome.SUCCESS


def _link(
    root: PackageName,
    resources: dict[PackageName, PackageResource],
    library_cache: ResultsCache,
    link_cache: ResultsCache,
    previous_link: ResultsCache | None,
    reasons: list[str],
    toolchain: Toolchain,
    config: BuildConfig,
    build_dir: Path,
    logger: BuildLogger,
) -> bool:
    builder = get_builder("link", toolchain, config, build_dir, logger)
    prior = most_recent(root, link_cache, previous_link)
    request = BuildRequest(
        name=root,
        resource=resources[root],
        previous_resource=prior.last_successful_resource,
        previous_result=prior,
        changes=ChangeReport(reasons=list(reasons)),
        dependency_triggered=True,
        cache=library_cache,
    )

    start = logger.link_start(root, reasons)
    try:
        response = builder.build(request)
    except ToolchainError as exc:
        response = response_for_toolchain_error(exc)

    if response.failed:
        versioned = prior.carried_forward(
            link_cache.current_build_id,
            Outcome.NODE_FAIL,
            build_result=response.build_result,
            computed_data=response.computed_data,
        )
    else:
        versioned = prior.succeeded_at(
            link_cache.current_build_id,
            resources[root],
            effects_project=True,
            effects_dependents=False,
            dependency_result=StepResult(),
            build_result=response.build_result,
            computed_data=response.computed_data,
        )
    link_cache.publish(root, versioned)
    logger.link_finish(root, start, not response.failed)
    return not response.failed


def run(
    root_dir: str | Path,
    config: BuildConfig | None = None,
    *,
    toolchain: Toolchain | None = None,
    logger: BuildLogger | None = None,
    progress: Any = None,
) -> RunResult:
    """Run one incremental build of the package rooted at ``root_dir``.

    Args:
        root_dir: Directory holding the root package.json.
        config: Build options; defaults to ``BuildConfig()``.
        toolchain: Command generator; defaults to ``TemplateToolchain()``.
        logger: Structured logger; one is created under the build dir if omitted.
        progress: Live display fed by the logger (CLI only).

    Returns:
        RunResult. ``success`` is True iff every reachable package and the
        link (when needed) succeeded. Caches are persisted either way.
    """
    start_time = time.time()
    config = config or BuildConfig()
    config.validate()
    root_dir = Path(root_dir).resolve()
    build_dir = config.actual_build_dir(root_dir)
    build_dir.mkdir(parents=True, exist_ok=True)
    toolchain = toolchain or TemplateToolchain()
    result = RunResult(build_dir=build_dir)

    if logger is None:
        logger = BuildLogger(
            verbosity=Verbosity(min(config.verbosity, Verbosity.DEBUG)),
            build_dir=build_dir,
            silent=config.silent,
            progress=progress,
        )

    try:
        scan = scan_packages(root_dir)
    except ValidationError:
        logger.close()
        raise
    root = scan.root_name
    result.root_name = root
    if not scan.ok:
        _write_diagnostics(build_dir / PACKAGE_DIAGNOSTICS, scan.diagnostics)
        result.diagnostics = scan.diagnostics
        result.total_time = time.time() - start_time
        logger.run_finish(result.total_time, success=False, linked=False)
        result.run_log = logger.run_log.to_dict()
        return result

    previous = load_previous_caches(build_dir)
    caches = {category: ResultsCache.next_run(previous[category], config) for category in CATEGORIES}
    result.caches = caches
    result.build_id = caches["library"].current_build_id
    resources = scan.resources
    logger.run_start(root, result.build_id, len(resources))

    try:
        proceed = True
        if config.yacc:
            proceed = _walk_category(
                "preprocess", root, caches["preprocess"], previous["preprocess"],
                resources, toolchain, config, build_dir, logger,
            )
            if proceed:
                # generated sources land in src/, pick them up
                scan = scan_packages(root_dir)
                if not scan.ok:
                    _write_diagnostics(build_dir / PACKAGE_DIAGNOSTICS, scan.diagnostics)
                    result.diagnostics.extend(scan.diagnostics)
                    proceed = False
                resources = scan.resources
        else:
            for name in resources:
                caches["preprocess"].carry_over(name, previous["preprocess"])

        root_ok = False
        if proceed:
            root_ok = _walk_category(
                "library", root, caches["library"], previous["library"],
                resources, toolchain, config, build_dir, logger,
            )
        else:
            caches["library"].carry_over_all(previous["library"])

        relink, reasons = (
            needs_relink(caches["library"], previous["link"], resources, root)
            if root_ok else (False, [])
        )
        result.link_reasons = reasons
        if relink:
            result.linked = _link(
                root, resources, caches["library"], caches["link"], previous["link"],
                reasons, toolchain, config, build_dir, logger,
            )
        else:
            caches["link"].carry_over(root, previous["link"])

        result.success = root_ok and (result.linked or not relink)
    except Exception:
        # a fatal error keeps the previous run's caches on disk untouched
        logger.close()
        raise

    for category, cache in caches.items():
        save_cache(cache, cache_path(build_dir, category))

    compile_diagnostics = diagnostics_for_cache(caches["library"]) + diagnostics_for_cache(
        caches["preprocess"]
    )
    link_diagnostics = diagnostics_for_cache(caches["link"])
    _write_diagnostics(build_dir / COMPILE_DIAGNOSTICS, compile_diagnostics)
    _write_diagnostics(build_dir / LINK_DIAGNOSTICS, link_diagnostics)
    result.diagnostics.extend(compile_diagnostics + link_diagnostics)

    grouped = packages_by_status(caches["library"])
    result.rebuilt = grouped[PackageStatus.REBUILT]
    result.unchanged = grouped[PackageStatus.UNCHANGED]
    result.failed = grouped[PackageStatus.FAILED]
    result.blocked = grouped[PackageStatus.BLOCKED]
    if root in caches["library"]:
        result.graph_text = render_build_graph(caches["library"], resources, root)

    result.total_time = time.time() - start_time
    logger.run_finish(result.total_time, success=result.success, linked=result.linked)
    result.run_log = logger.run_log.to_dict()
    return result
