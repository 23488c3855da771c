"""Unit tests for commonbuild structured logging."""

from __future__ import annotations

import io
import json

from rich.console import Console

from commonbuild.core.logging import BuildLogger, CategoryLog, RunLog, Verbosity


class RecordingProgress:
    """Stand-in for the CLI's live display."""

    def __init__(self):
        self.events = []

    def __getattr__(self, method):
        return lambda *args: self.events.append((method, *args))


def _read_events(logger: BuildLogger) -> list[dict]:
    return [json.loads(line) for line in logger.log_path.read_text().splitlines()]


class TestCategoryLog:
    def test_creation_defaults(self):
        cat = CategoryLog(name="library")
        assert cat.rebuilt == []
        assert cat.cached == []
        assert cat.time_seconds == 0.0

    def test_to_dict(self):
        cat = CategoryLog(name="library", rebuilt=["A"], cached=["B"], failed=["C"], blocked=["R"])
        d = cat.to_dict()
        assert d["rebuilt"] == ["A"]
        assert d["blocked"] == ["R"]


class TestRunLog:
    def test_get_or_create_category(self):
        log = RunLog(run_id="test")
        first = log.get_or_create_category("library")
        first.rebuilt.append("A")
        assert log.get_or_create_category("library") is first

    def test_totals(self):
        log = RunLog(run_id="test")
        log.get_or_create_category("preprocess").rebuilt.append("A")
        log.get_or_create_category("library").rebuilt.extend(["A", "B"])
        log.get_or_create_category("library").cached.append("C")
        assert log.total_rebuilt == 3
        assert log.total_cached == 1

    def test_to_dict(self):
        log = RunLog(run_id="20260101T120000Z", build_id=23)
        log.get_or_create_category("library").rebuilt.append("A")
        d = log.to_dict()
        assert d["build_id"] == 23
        assert d["categories"]["library"]["rebuilt"] == ["A"]


class TestBuildLogger:
    def test_no_build_dir(self):
        """Logger works without a build_dir (no file logging)."""
        logger = BuildLogger(verbosity=Verbosity.DEFAULT)
        assert logger.log_path is None
        logger.run_start("R", 23, 4)
        logger.close()

    def test_jsonl_events(self, tmp_path):
        logger = BuildLogger(build_dir=tmp_path, silent=True)
        logger.run_start("R", 23, 2)
        logger.category_start("library", 2)
        logger.package_start("library", "A")
        logger.package_built("library", "A")
        logger.package_cached("library", "B")
        logger.category_finish("library")
        logger.run_finish(1.5, success=True, linked=False)

        events = _read_events(logger)
        assert [e["event"] for e in events] == [
            "run_start",
            "category_start",
            "package_start",
            "package_built",
            "package_cached",
            "category_finish",
            "run_finish",
        ]
        assert all("timestamp" in e for e in events)
        assert events[0]["build_id"] == 23
        assert events[5]["rebuilt"] == 1
        assert events[5]["cached"] == 1
        assert events[-1]["success"] is True

    def test_failures_recorded(self, tmp_path):
        logger = BuildLogger(build_dir=tmp_path, silent=True)
        logger.package_failed("library", "A", "Error: boom")
        logger.package_blocked("library", "B", ["A"])
        logger.close()
        cat = logger.run_log.categories["library"]
        assert cat.failed == ["A"]
        assert cat.blocked == ["B"]
        events = _read_events(logger)
        assert events[0]["error"] == "Error: boom"
        assert events[1]["errored_subpackages"] == ["A"]

    def test_link_events(self, tmp_path):
        logger = BuildLogger(build_dir=tmp_path, silent=True)
        start = logger.link_start("R", ["rebuilt: A"])
        logger.link_finish("R", start, True)
        logger.close()
        events = _read_events(logger)
        assert events[0]["reasons"] == ["rebuilt: A"]
        assert events[1]["success"] is True

    def test_progress_notified(self):
        progress = RecordingProgress()
        logger = BuildLogger(silent=True, progress=progress)
        logger.category_start("library", 3)
        logger.package_start("library", "A")
        logger.package_built("library", "A")
        logger.package_cached("library", "B")
        logger.package_blocked("library", "C", ["A"])
        logger.category_finish("library")
        methods = [event[0] for event in progress.events]
        assert methods == [
            "category_start",
            "package_start",
            "package_finish",
            "package_cached",
            "package_failed",
            "category_finish",
        ]
        assert progress.events[-1] == ("category_finish", "library", 1, 1)

    def test_console_respects_verbosity(self):
        buffer = io.StringIO()
        quiet = BuildLogger(verbosity=Verbosity.DEFAULT, console=Console(file=buffer))
        quiet.package_built("library", "A")
        assert buffer.getvalue() == ""

        loud = BuildLogger(verbosity=Verbosity.DEBUG, console=Console(file=buffer))
        loud.toolchain_command("A", "ocamlc -c a.ml")
        assert "ocamlc -c a.ml" in buffer.getvalue()

    def test_silent_suppresses_console(self):
        buffer = io.StringIO()
        logger = BuildLogger(verbosity=Verbosity.DEBUG, silent=True, console=Console(file=buffer))
        logger.package_built("library", "A")
        assert buffer.getvalue() == ""
