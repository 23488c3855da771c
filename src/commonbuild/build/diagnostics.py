"""Diagnostics — structured errors extracted from toolchain stderr and package checks."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from commonbuild.build.cache import ResultsCache

PROVIDER_NAME = "commonbuild"

# File "/abs/path/foo.ml", line 12, characters 4-9:
FILE_REGEX = re.compile(r'(/[^\s]*\.(\w*))",\s*line\s*(\d*)(,\s*characters*\s*(\d*)-(\d*))?([\s\S]*)')


@dataclass
class Diagnostic:
    """One problem report, attached to a file or to the whole project."""

    text: str
    scope: str = "file"  # "file" or "project"
    file_path: str | None = None
    range: tuple[tuple[int, int], tuple[int, int]] | None = None
    kind: str = "UNKNOWN"
    details: dict = field(default_factory=dict)
    original_stderr: str | None = None
    commands: list[str] = field(default_factory=list)
    severity: str = "ERROR"

    def location(self) -> str:
        if self.file_path is None:
            return "<project>"
        if self.range is None:
            return self.file_path
        (line, start), (_, end) = self.range
        return f"{self.file_path}:{line} characters {start}-{end}"

    def to_dict(self) -> dict:
        data = {
            "scope": self.scope,
            "providerName": PROVIDER_NAME,
            "type": self.severity,
            "text": self.text,
            "kind": self.kind,
            "details": self.details,
        }
        if self.file_path is not None:
            data["filePath"] = self.file_path
        if self.range is not None:
            data["range"] = [list(self.range[0]), list(self.range[1])]
        if self.original_stderr is not None:
            data["originalStdErr"] = self.original_stderr
            data["originatingCommands"] = list(self.commands)
        return data


def file_diagnostic(path: str, text: str) -> Diagnostic:
    """A package-structure problem pinned to the top of ``path``."""
    return Diagnostic(text=text, file_path=str(path), range=((1, 0), (1, 0)), kind="Package.Invalid")


# -- extractors: each returns details or None --


def _unbound_record_field(content: str) -> dict | None:
    match = re.search(r"Error: Unbound record field (\w*)", content)
    return {"field_name": match.group(1)} if match else None


def _record_field_error(content: str) -> dict | None:
    match = re.search(
        r"This record expression is expected to have type([\s\S]*)The field\s*(\w*)"
        r"[\s\S]*does not belong to type\s*([\s\S]*)(Hint:[\s\S]*)",
        content,
    )
    if not match:
        return None
    return {
        "record_type": match.group(1).strip(),
        "field_name": match.group(2),
        "belong_to_type": match.group(3).strip(),
        "hint": match.group(4).strip(),
    }


def _inconsistent_assumptions(content: str) -> dict | None:
    match = re.search(
        r"Error: The files\s*(\S*)\s*and\s*(\S*)\s*make inconsistent assumptions over interface\s*(\S*)",
        content,
    )
    if not match:
        return None
    return {
        "conflict_one": match.group(1),
        "conflict_two": match.group(2),
        "module_name": match.group(3),
    }


def _incompatible_type(content: str) -> dict | None:
    match = re.search(
        r"Error: This expression has type([\s\S]*?)but an expression was expected of type([\s\S]*)",
        content,
    )
    if not match:
        return None
    expected = match.group(2)
    conflicts = [
        {"inferred": inferred.strip(), "expected": wanted.strip()}
        for inferred, wanted in re.findall(
            r"\bType\s+([\s\S]+?)\s+is not compatible with type\s+([^\n]+)", expected
        )
    ]
    elaboration = re.search(r"\n\s*Type\b", expected)
    if elaboration:
        expected = expected[: elaboration.start()]
    return {"inferred": match.group(1).strip(), "expected": expected.strip(), "conflicts": conflicts}


def _catch_all(content: str) -> dict | None:
    match = re.search(r"Error: ([\s\S]*)", content)
    return {"msg": match.group(1).strip()} if match else None


# Tried in order; the catch-all must stay last.
EXTRACTORS: list[tuple[str, Callable[[str], dict | None]]] = [
    ("TypeErrors.UnboundRecordField", _unbound_record_field),
    ("TypeErrors.RecordFieldError", _record_field_error),
    ("BuildErrors.InconsistentAssumptions", _inconsistent_assumptions),
    ("TypeErrors.IncompatibleType", _incompatible_type),
    ("General.CatchAll", _catch_all),
]


def extract_from_stderr(commands: list[str], stderr: str) -> list[Diagnostic]:
    """Classify one failed step's stderr into diagnostics.

    Output without a ``File "...", line N`` header yields a single
    project-scoped diagnostic.
    """
    header = FILE_REGEX.search(stderr)
    if header is None:
        return [
            Diagnostic(
                text=stderr,
                scope="project",
                original_stderr=stderr,
                commands=list(commands),
            )
        ]

    line = int(header.group(3) or 0)
    start = int(header.group(5)) if header.group(5) else 0
    end = int(header.group(6)) if header.group(6) else 0
    kind, details = "UNKNOWN", {}
    for candidate, extract in EXTRACTORS:
        found = extract(stderr)
        if found is not None:
            kind, details = candidate, found
            break

    return [
        Diagnostic(
            text=stderr,
            file_path=header.group(1),
            range=((line, start), (line, end)),
            kind=kind,
            details=details,
            original_stderr=stderr,
            commands=list(commands),
        )
    ]


def diagnostics_for_cache(cache: ResultsCache) -> list[Diagnostic]:
    """Diagnostics for every failed dependency or build step in ``cache``."""
    found: list[Diagnostic] = []
    with cache.lock:
        results = list(cache.results.items())
    for _name, result in results:
        if result.last_attempted_build_id != cache.current_build_id:
            continue
        for step in (result.dependency_result, result.build_result):
            if step.error:
                found.extend(extract_from_stderr(step.commands, step.error))
    return found


def format_diagnostics(diagnostics: list[Diagnostic]) -> str:
    """Default plain-text rendering, one block per diagnostic."""
    blocks = []
    for diag in diagnostics:
        blocks.append(f"[{diag.severity}] {diag.location()}\n{diag.text.rstrip()}")
    return "\n\n".join(blocks)
