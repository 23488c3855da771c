"""Tests for the dependency-graph walker."""

from __future__ import annotations

import threading
import time
from collections import Counter

import pytest

from commonbuild.build.builders import BaseBuilder, BuildResponse
from commonbuild.build.cache import ResultsCache
from commonbuild.build.walker import Walker
from commonbuild.core.config import BuildConfig
from commonbuild.core.errors import BuildStepError, DependencyStepError, StructuralError
from commonbuild.core.logging import BuildLogger
from commonbuild.core.models import Outcome, PackageResource, StepResult

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class RecordingBuilder(BaseBuilder):
    """In-process builder that records calls and can be told to fail.

    ``barrier`` packages wait for each other, which only completes when the
    walker really runs them side by side.
    """

    def __init__(self, delay: float = 0.0, failing=(), raising=None, barrier=None, barrier_names=()):
        super().__init__(toolchain=None, config=BuildConfig(), build_dir=".")
        self.delay = delay
        self.failing = set(failing)
        self.raising = raising or {}
        self.barrier = barrier
        self.barrier_names = set(barrier_names)
        self.calls: Counter[str] = Counter()
        self.started: dict[str, float] = {}
        self.finished: dict[str, float] = {}
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def build(self, request):
        name = request.name
        with self._lock:
            self.calls[name] += 1
            self.started[name] = time.monotonic()
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if name in self.barrier_names:
                self.barrier.wait()
            if self.delay:
                time.sleep(self.delay)
            if name in self.raising:
                raise self.raising[name]
            if name in self.failing:
                return BuildResponse(
                    build_result=StepResult(commands=["cc"], error=f"{name} failed"),
                    effects_project=True,
                    effects_dependents=True,
                )
            return BuildResponse(
                dependency_result=StepResult(output=""),
                build_result=StepResult(output=""),
                effects_project=True,
                effects_dependents=True,
            )
        finally:
            with self._lock:
                self.active -= 1
                self.finished[name] = time.monotonic()


def _resources(graph: dict[str, list[str]]) -> dict[str, PackageResource]:
    return {
        name: PackageResource(package_name=name, real_path=f"/p/{name}", subpackage_names=deps)
        for name, deps in graph.items()
    }


DIAMOND = {"A": [], "B": ["A"], "C": ["A"], "R": ["B", "C"]}


def _walk(graph, builder, concurrency=4, previous=None, logger=None):
    cache = ResultsCache.next_run(previous, BuildConfig(concurrency=concurrency))
    walker = Walker(cache, previous, _resources(graph), builder, concurrency, logger=logger)
    walker.walk(next(reversed(graph)))
    return cache


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestWalk:
    def test_every_package_gets_one_result(self):
        builder = RecordingBuilder()
        cache = _walk(DIAMOND, builder)
        assert sorted(cache.results) == ["A", "B", "C", "R"]
        assert all(r.outcome is Outcome.SUCCESS for r in cache.results.values())
        assert all(r.last_attempted_build_id == cache.current_build_id for r in cache.results.values())

    def test_shared_dependency_built_once(self):
        """A is reached through both B and C but is built once."""
        builder = RecordingBuilder(delay=0.02)
        _walk(DIAMOND, builder)
        assert builder.calls == Counter({"A": 1, "B": 1, "C": 1, "R": 1})

    def test_many_dependents_one_build(self):
        graph = {"Base": []}
        graph.update({f"Lib{i}": ["Base"] for i in range(12)})
        graph["Root"] = [f"Lib{i}" for i in range(12)]
        builder = RecordingBuilder(delay=0.01)
        _walk(graph, builder, concurrency=6)
        assert builder.calls["Base"] == 1
        assert all(count == 1 for count in builder.calls.values())

    def test_dependencies_finish_before_dependents_start(self):
        builder = RecordingBuilder(delay=0.01)
        _walk(DIAMOND, builder)
        for name, deps in DIAMOND.items():
            for dep in deps:
                assert builder.finished[dep] <= builder.started[name]

    def test_results_published_dependencies_first(self):
        cache = _walk(DIAMOND, RecordingBuilder())
        order = list(cache.results)
        assert order[0] == "A"
        assert order[-1] == "R"

    def test_build_ids_ordered(self):
        cache = _walk(DIAMOND, RecordingBuilder(failing={"C"}))
        for result in cache.results.values():
            assert (
                result.last_build_id_effecting_project
                <= result.last_successful_build_id
                <= result.last_attempted_build_id
            )


class TestConcurrency:
    def test_bounded_by_limit(self):
        graph = {f"Leaf{i}": [] for i in range(10)}
        graph["Root"] = [f"Leaf{i}" for i in range(10)]
        builder = RecordingBuilder(delay=0.03)
        _walk(graph, builder, concurrency=2)
        assert builder.max_active <= 2

    def test_serial_with_limit_one(self):
        builder = RecordingBuilder(delay=0.01)
        _walk(DIAMOND, builder, concurrency=1)
        assert builder.max_active == 1

    def test_siblings_run_in_parallel(self):
        """B and C only get past the barrier if they run at the same time."""
        barrier = threading.Barrier(2, timeout=10)
        builder = RecordingBuilder(barrier=barrier, barrier_names={"B", "C"})
        cache = _walk(DIAMOND, builder, concurrency=4)
        assert cache.get("R").outcome is Outcome.SUCCESS
        assert builder.max_active >= 2


class TestFailures:
    def test_failure_blocks_dependents(self):
        builder = RecordingBuilder(failing={"A"})
        cache = _walk(DIAMOND, builder)
        assert cache.get("A").outcome is Outcome.NODE_FAIL
        assert cache.get("B").outcome is Outcome.SUBNODE_FAIL
        assert cache.get("B").errored_subpackages == ["A"]
        assert cache.get("C").outcome is Outcome.SUBNODE_FAIL
        assert cache.get("R").outcome is Outcome.SUBNODE_FAIL
        assert cache.get("R").errored_subpackages == ["B", "C"]

    def test_blocked_builders_never_invoked(self):
        builder = RecordingBuilder(failing={"A"})
        _walk(DIAMOND, builder)
        assert builder.calls == Counter({"A": 1})

    def test_sibling_failure_does_not_block_unrelated(self):
        graph = {"A": [], "X": [], "B": ["A"], "Y": ["X"], "R": ["B", "Y"]}
        builder = RecordingBuilder(failing={"A"})
        cache = _walk(graph, builder)
        assert cache.get("Y").outcome is Outcome.SUCCESS
        assert cache.get("R").errored_subpackages == ["B"]

    def test_failed_attempt_keeps_last_good(self):
        first = _walk(DIAMOND, RecordingBuilder())
        second = _walk(DIAMOND, RecordingBuilder(failing={"A"}), previous=first)
        for name in ("A", "B", "C", "R"):
            result = second.get(name)
            assert result.last_attempted_build_id == second.current_build_id
            assert result.last_successful_build_id == first.current_build_id
            assert result.last_successful_resource == first.get(name).last_successful_resource

    def test_toolchain_error_becomes_node_fail(self):
        builder = RecordingBuilder(raising={"A": BuildStepError("no compiler", commands=["cc"], stderr="cc: not found")})
        cache = _walk(DIAMOND, builder)
        result = cache.get("A")
        assert result.outcome is Outcome.NODE_FAIL
        assert result.build_result.error == "cc: not found"
        assert result.build_result.commands == ["cc"]
        assert cache.get("R").outcome is Outcome.SUBNODE_FAIL

    def test_dependency_step_error_recorded_on_dependency_result(self):
        builder = RecordingBuilder(raising={"A": DependencyStepError("bad deps")})
        cache = _walk(DIAMOND, builder)
        assert cache.get("A").dependency_result.error == "bad deps"

    def test_unexpected_exception_is_fatal(self):
        builder = RecordingBuilder(raising={"C": RuntimeError("bug in builder")})
        with pytest.raises(RuntimeError, match="bug in builder"):
            _walk(DIAMOND, builder)

    def test_in_flight_cleared_after_fatal_error(self):
        builder = RecordingBuilder(raising={"A": RuntimeError("bug")})
        cache = ResultsCache.next_run(None, BuildConfig())
        walker = Walker(cache, None, _resources(DIAMOND), builder)
        with pytest.raises(RuntimeError):
            walker.walk("R")
        assert cache.in_flight == {}


class TestStructure:
    def test_cycle_detected(self):
        graph = {"A": ["C"], "B": ["A"], "C": ["B"]}
        cache = ResultsCache.next_run(None, BuildConfig())
        walker = Walker(cache, None, _resources(graph), RecordingBuilder())
        with pytest.raises(StructuralError, match="[Cc]ircular"):
            walker.walk("C")
        assert cache.in_flight == {}

    def test_missing_package(self):
        graph = {"R": ["Ghost"]}
        cache = ResultsCache.next_run(None, BuildConfig())
        walker = Walker(cache, None, _resources(graph), RecordingBuilder())
        with pytest.raises(StructuralError, match="Ghost"):
            walker.walk("R")

    def test_second_walk_reuses_results(self):
        """Walking another root in the same run does not rebuild shared packages."""
        graph = {"A": [], "B": ["A"], "C": ["A"]}
        builder = RecordingBuilder()
        cache = ResultsCache.next_run(None, BuildConfig())
        walker = Walker(cache, None, _resources(graph), builder)
        walker.walk("B")
        walker.walk("C")
        assert builder.calls["A"] == 1


class TestLogging:
    def test_events_reach_logger(self):
        logger = BuildLogger(silent=True)
        _walk(DIAMOND, RecordingBuilder(failing={"B"}), logger=logger)
        category = logger.run_log.categories["library"]
        assert sorted(category.rebuilt) == ["A", "C"]
        assert category.failed == ["B"]
        assert category.blocked == ["R"]
