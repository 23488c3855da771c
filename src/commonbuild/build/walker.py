"""Dependency-graph walker — visit every package once per run, bottom-up, in parallel."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from commonbuild.build.builders import BaseBuilder, BuildRequest, BuildResponse
from commonbuild.build.cache import ResultsCache, most_recent
from commonbuild.build.dirty import dependency_triggered_rebuild, detect_changes
from commonbuild.core.config import BuildConfig
from commonbuild.core.errors import DependencyStepError, StructuralError, ToolchainError
from commonbuild.core.logging import BuildLogger
from commonbuild.core.models import (
    Outcome,
    PackageName,
    PackageResource,
    StepResult,
    VersionedResult,
)


class Walker:
    """Walks the dependency tree of one build category, filling ``cache``.

    Every package gets exactly one VersionedResult in ``cache`` per run.
    Scheduling happens on the calling thread; a package's builder is only
    submitted to the pool once all of its subpackages are terminal, so
    workers never block on each other and at most ``concurrency`` builder
    calls run at once. Concurrent requests for the same package share one
    Future through ``cache.in_flight``.
    """

    def __init__(
        self,
        cache: ResultsCache,
        previous: ResultsCache | None,
        resources: dict[PackageName, PackageResource],
        builder: BaseBuilder,
        concurrency: int = 4,
        *,
        category: str = "library",
        logger: BuildLogger | None = None,
    ):
        self.cache = cache
        self.previous = previous
        self.resources = resources
        self.builder = builder
        self.concurrency = max(1, concurrency)
        self.category = category
        self.logger = logger
        self._pool: ThreadPoolExecutor | None = None

    def walk(self, name: PackageName) -> None:
        """Bring ``name`` and everything it depends on up to date in ``cache``.

        Per-package toolchain failures are recorded as outcomes. Anything
        else (a cycle, a missing package, a bug in a builder) propagates.
        """
        try:
            with ThreadPoolExecutor(
                max_workers=self.concurrency, thread_name_prefix=f"commonbuild-{self.category}"
            ) as pool:
                self._pool = pool
                self._schedule(name, ()).result()
        finally:
            # after shutdown: nothing is running, stragglers were never submitted
            self._abandon_in_flight()
            self._pool = None

    # -- scheduling --

    def _schedule(self, name: PackageName, path: tuple[PackageName, ...]) -> Future:
        if name in path:
            cycle = " -> ".join(path[path.index(name):] + (name,))
            raise StructuralError(f"Circular dependency: {cycle}")

        with self.cache.lock:
            existing = self.cache.get(name)
            if existing is not None and existing.last_attempted_build_id == self.cache.current_build_id:
                done: Future = Future()
                done.set_result(existing)
                return done
            pending = self.cache.in_flight.get(name)
            if pending is not None:
                return pending
            resource = self.resources.get(name)
            if resource is None:
                raise StructuralError(f"No resource entry for package {name}")
            future: Future = Future()
            self.cache.in_flight[name] = future

        child_futures = [
            self._schedule(child, path + (name,)) for child in resource.subpackage_names
        ]
        _when_all(child_futures, lambda error: self._children_done(name, future, error))
        return future

    def _children_done(self, name: PackageName, future: Future, error: BaseException | None) -> None:
        if error is not None:
            self._fail(name, future, error)
            return
        try:
            self._pool.submit(self._resolve, name, future)
        except RuntimeError as exc:
            # pool already shut down after a fatal error elsewhere
            self._fail(name, future, exc)

    def _resolve(self, name: PackageName, future: Future) -> None:
        try:
            result = self._visit(name)
            self.cache.publish(name, result)
        except Exception as exc:
            self._fail(name, future, exc)
            return
        future.set_result(result)

    def _fail(self, name: PackageName, future: Future, error: BaseException) -> None:
        with self.cache.lock:
            self.cache.in_flight.pop(name, None)
        if not future.done():
            future.set_exception(error)

    def _abandon_in_flight(self) -> None:
        with self.cache.lock:
            abandoned = list(self.cache.in_flight.values())
            self.cache.in_flight.clear()
        for future in abandoned:
            future.cancel()

    # -- one package --

    def _visit(self, name: PackageName) -> VersionedResult:
        resource = self.resources[name]
        build_id = self.cache.current_build_id
        prior = most_recent(name, self.cache, self.previous)

        errored = [
            child
            for child in resource.subpackage_names
            if (child_result := self.cache.get(child)) is None
            or child_result.outcome is None
            or child_result.outcome.failed
        ]
        if errored:
            if self.logger is not None:
                self.logger.package_blocked(self.category, name, errored)
            return prior.carried_forward(build_id, Outcome.SUBNODE_FAIL, errored_subpackages=errored)

        config = self.cache.build_config or BuildConfig()
        previous_config = self.previous.build_config if self.previous is not None else None
        request = BuildRequest(
            name=name,
            resource=resource,
            previous_resource=prior.last_successful_resource,
            previous_result=prior,
            changes=detect_changes(resource, prior.last_successful_resource, config, previous_config),
            dependency_triggered=dependency_triggered_rebuild(resource.subpackage_names, self.cache),
            cache=self.cache,
        )

        if self.logger is not None:
            self.logger.package_start(self.category, name)
        try:
            response = self.builder.build(request)
        except ToolchainError as exc:
            response = response_for_toolchain_error(exc)

        if response.failed:
            if self.logger is not None:
                step = response.dependency_result if response.dependency_result.failed else response.build_result
                self.logger.package_failed(self.category, name, step.error or "")
            return prior.carried_forward(
                build_id,
                Outcome.NODE_FAIL,
                dependency_result=response.dependency_result,
                build_result=response.build_result,
                computed_data=response.computed_data,
            )

        if self.logger is not None:
            if response.effects_project or response.effects_dependents:
                self.logger.package_built(self.category, name)
            else:
                self.logger.package_cached(self.category, name)
        return prior.succeeded_at(
            build_id,
            resource,
            effects_project=response.effects_project,
            effects_dependents=response.effects_dependents,
            dependency_result=response.dependency_result,
            build_result=response.build_result,
            computed_data=response.computed_data,
        )


def response_for_toolchain_error(exc: ToolchainError) -> BuildResponse:
    step = StepResult(commands=list(exc.commands), error=exc.stderr or str(exc))
    if isinstance(exc, DependencyStepError):
        return BuildResponse(dependency_result=step, effects_project=True, effects_dependents=True)
    return BuildResponse(build_result=step, effects_project=True, effects_dependents=True)


def _when_all(futures: list[Future], callback: Callable[[BaseException | None], None]) -> None:
    """Call ``callback`` once every future is done, with the first error seen (or None)."""
    if not futures:
        callback(None)
        return

    lock = threading.Lock()
    state = {"remaining": len(futures), "error": None}

    def on_done(f: Future) -> None:
        error = None
        if f.cancelled():
            error = StructuralError("dependency build was abandoned")
        elif f.exception() is not None:
            error = f.exception()
        with lock:
            if error is not None and state["error"] is None:
                state["error"] = error
            state["remaining"] -= 1
            finished = state["remaining"] == 0
        if finished:
            callback(state["error"])

    for f in futures:
        f.add_done_callback(on_done)
