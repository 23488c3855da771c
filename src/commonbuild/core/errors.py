"""commonbuild error types and utilities."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write(path: Path, content: str) -> None:
    """Write content to a file atomically using temp file + rename.

    Readers of ``path`` see either the old contents or the new contents,
    never a partially written cache file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        os.write(fd, content.encode())
        os.fsync(fd)
        os.close(fd)
        os.replace(tmp, str(path))
    except BaseException:
        os.close(fd)
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class CommonBuildError(Exception):
    """Base exception for commonbuild."""

    pass


class ValidationError(CommonBuildError):
    """A package manifest or the package layout is invalid.

    Raised before scheduling; the run is aborted without touching any cache.
    """

    def __init__(self, message: str, diagnostics: list | None = None):
        super().__init__(message)
        self.diagnostics = diagnostics or []


class StructuralError(CommonBuildError):
    """The dependency graph itself is broken (cycle, missing package entry).

    Always fatal to the whole run.
    """

    pass


class ToolchainError(CommonBuildError):
    """An external toolchain step could not be run or reported failure.

    Captured by the walker into a NODE_FAIL outcome, never retried.
    """

    def __init__(self, message: str, commands: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.commands = commands or []
        self.stderr = stderr


class DependencyStepError(ToolchainError):
    """The dependency-discovery step of a package build failed."""

    pass


class BuildStepError(ToolchainError):
    """The compile/link step of a package build failed."""

    pass


class ConfigError(CommonBuildError):
    """Invalid combination of build options."""

    pass
