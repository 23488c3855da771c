"""Tests for the build graph reporter."""

from __future__ import annotations

from commonbuild.build.cache import ResultsCache
from commonbuild.build.graph import (
    COLLAPSED,
    LEGEND,
    PackageStatus,
    classify,
    packages_by_status,
    render_build_graph,
)
from commonbuild.core.models import Outcome, PackageResource, VersionedResult

BUILD = 30


def _resources(graph):
    return {
        name: PackageResource(package_name=name, real_path=f"/p/{name}", subpackage_names=deps)
        for name, deps in graph.items()
    }


def _cache(states: dict[str, str]) -> ResultsCache:
    cache = ResultsCache(current_build_id=BUILD)
    for name, state in states.items():
        if state == "rebuilt":
            result = VersionedResult(BUILD, BUILD, None, BUILD, BUILD, Outcome.SUCCESS)
        elif state == "unchanged":
            result = VersionedResult(BUILD, BUILD, None, 25, 25, Outcome.SUCCESS)
        elif state == "failed":
            result = VersionedResult(BUILD, 25, None, 25, 25, Outcome.NODE_FAIL)
        elif state == "blocked":
            result = VersionedResult(BUILD, 25, None, 25, 25, Outcome.SUBNODE_FAIL)
        else:
            result = VersionedResult(25, 25, None, 25, 25, Outcome.SUCCESS)
        cache.results[name] = result
    return cache


DIAMOND = {"A": [], "B": ["A"], "C": ["A"], "R": ["B", "C"]}


class TestClassify:
    def test_each_state(self):
        cache = _cache(
            {"A": "rebuilt", "B": "unchanged", "C": "failed", "R": "blocked", "Old": "previous-run"}
        )
        assert classify(cache, "A") is PackageStatus.REBUILT
        assert classify(cache, "B") is PackageStatus.UNCHANGED
        assert classify(cache, "C") is PackageStatus.FAILED
        assert classify(cache, "R") is PackageStatus.BLOCKED
        assert classify(cache, "Old") is PackageStatus.UNCHANGED
        assert classify(cache, "Missing") is PackageStatus.UNCHANGED

    def test_grouping_is_exhaustive(self):
        cache = _cache({"A": "rebuilt", "B": "unchanged", "C": "failed", "R": "blocked"})
        grouped = packages_by_status(cache)
        assert grouped[PackageStatus.REBUILT] == ["A"]
        assert grouped[PackageStatus.UNCHANGED] == ["B"]
        assert grouped[PackageStatus.FAILED] == ["C"]
        assert grouped[PackageStatus.BLOCKED] == ["R"]


class TestRender:
    def test_header_and_legend(self):
        text = render_build_graph(_cache({n: "rebuilt" for n in DIAMOND}), _resources(DIAMOND), "R")
        assert text.startswith("Build Graph:")
        assert "Executable(R ☑)" in text
        assert text.rstrip().endswith(LEGEND)

    def test_markers(self):
        cache = _cache({"A": "failed", "B": "blocked", "C": "blocked", "R": "blocked"})
        text = render_build_graph(cache, _resources(DIAMOND), "R")
        assert "A ☒" in text
        assert "B ☐" in text
        assert "C ☐" in text

    def test_unchanged_has_no_marker(self):
        cache = _cache({"A": "unchanged", "B": "rebuilt", "C": "unchanged", "R": "rebuilt"})
        lines = render_build_graph(cache, _resources(DIAMOND), "R").splitlines()
        assert any(line.rstrip().endswith(" C") for line in lines)

    def test_unchanged_diamond_collapses(self):
        """A shared unchanged package is expanded once, then collapsed."""
        cache = _cache({n: "unchanged" for n in DIAMOND})
        text = render_build_graph(cache, _resources(DIAMOND), "R")
        body = text.split(LEGEND)[0]
        assert body.count(" A") == 1
        assert COLLAPSED in body

    def test_rebuilt_shared_package_repeated(self):
        cache = _cache({"A": "rebuilt", "B": "rebuilt", "C": "rebuilt", "R": "rebuilt"})
        body = render_build_graph(cache, _resources(DIAMOND), "R").split(LEGEND)[0]
        assert body.count("A ☑") == 2
        assert COLLAPSED not in body
