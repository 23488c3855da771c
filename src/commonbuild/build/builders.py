"""Package builders and registry — one builder per build category."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from commonbuild.build.dirty import (
    ChangeReport,
    files_needing_recompilation,
    new_or_changed_files,
)
from commonbuild.build.toolchain import Toolchain, run_script
from commonbuild.core.config import BuildConfig
from commonbuild.core.models import PackageName, PackageResource, StepResult, VersionedResult

if TYPE_CHECKING:
    from commonbuild.build.cache import ResultsCache
    from commonbuild.core.logging import BuildLogger


@dataclass
class BuildRequest:
    """Everything a builder may look at when asked to build one package."""

    name: PackageName
    resource: PackageResource
    previous_resource: PackageResource | None  # last successful snapshot
    previous_result: VersionedResult
    changes: ChangeReport
    dependency_triggered: bool
    cache: ResultsCache


@dataclass
class BuildResponse:
    """What a builder hands back to the walker."""

    dependency_result: StepResult = field(default_factory=StepResult)
    build_result: StepResult = field(default_factory=StepResult)
    computed_data: dict = field(default_factory=dict)
    effects_project: bool = False
    effects_dependents: bool = False

    @property
    def failed(self) -> bool:
        return self.dependency_result.failed or self.build_result.failed


class BaseBuilder(ABC):
    """Abstract base class for all builders."""

    def __init__(
        self,
        toolchain: Toolchain,
        config: BuildConfig,
        build_dir: Path,
        logger: BuildLogger | None = None,
    ):
        self.toolchain = toolchain
        self.config = config
        self.build_dir = Path(build_dir)
        self.logger = logger

    @abstractmethod
    def build(self, request: BuildRequest) -> BuildResponse:
        """Bring one package up to date. Toolchain failures go in the step results."""
        ...

    def run(self, name: PackageName, lines: list[str], cwd: str | Path) -> StepResult:
        if self.logger is not None:
            for line in lines:
                self.logger.toolchain_command(name, line)
        return run_script(lines, cwd, timeout=self.config.step_timeout)


# Builder registry
_BUILDERS: dict[str, type[BaseBuilder]] = {}


def register_builder(name: str):
    """Decorator to register a builder class for a build category."""

    def wrapper(cls):
        _BUILDERS[name] = cls
        return cls

    return wrapper


def get_builder(
    name: str,
    toolchain: Toolchain,
    config: BuildConfig,
    build_dir: Path,
    logger: BuildLogger | None = None,
) -> BaseBuilder:
    """Get an instantiated builder by category name."""
    if name not in _BUILDERS:
        raise ValueError(f"Unknown builder: {name}. Available: {list(_BUILDERS.keys())}")
    return _BUILDERS[name](toolchain, config, build_dir, logger)


@register_builder("library")
class LibraryBuilder(BaseBuilder):
    """Dirty-detecting library builder.

    Three paths, cheapest last:

    1. Something in the package changed, or there is no usable dependency
       ordering from last time: rerun dependency analysis, then compile.
    2. Only a dependency changed (or the last compile failed): reuse the
       previous ordering and recompile.
    3. Nothing changed: hand back the previous results untouched.
    """

    def build(self, request: BuildRequest) -> BuildResponse:
        previous = request.previous_result
        needs_dependency_step = (
            request.changes.locally_dirty or not previous.dependency_result.succeeded
        )

        if needs_dependency_step:
            dependency_result = self.run(
                request.name,
                self.toolchain.dependency_script(request.resource, self.config),
                request.resource.real_path,
            )
            if dependency_result.failed:
                return BuildResponse(
                    dependency_result=dependency_result,
                    effects_project=True,
                    effects_dependents=True,
                )
            return self._compile(request, dependency_result)

        if request.dependency_triggered or previous.build_result.failed:
            return self._compile(request, previous.dependency_result)

        return BuildResponse(
            dependency_result=previous.dependency_result,
            build_result=previous.build_result,
            computed_data=previous.computed_data,
        )

    def _compile(self, request: BuildRequest, dependency_result: StepResult) -> BuildResponse:
        resource = request.resource
        ordering = self.toolchain.parse_dependency_output(resource, dependency_result.output or "")
        if request.changes.needs_full_recompile:
            files = list(ordering)
        else:
            files = files_needing_recompilation(ordering, resource, request.previous_resource)

        build_result = self.run(
            request.name,
            self.toolchain.compile_script(resource, files, self.config, self.build_dir),
            resource.real_path,
        )
        return BuildResponse(
            dependency_result=dependency_result,
            build_result=build_result,
            computed_data={"ordering": ordering, "recompiled": files},
            effects_project=True,
            effects_dependents=True,
        )


@register_builder("preprocess")
class PreprocessBuilder(BaseBuilder):
    """Runs the parser and lexer generators over new or touched grammar files.

    Generated sources land beside the grammars, so the driver rescans the
    tree after this category finishes.
    """

    def build(self, request: BuildRequest) -> BuildResponse:
        resource = request.resource
        yacc_files = new_or_changed_files(".mly", resource, request.previous_resource)
        lex_files = new_or_changed_files(".mll", resource, request.previous_resource)
        lines = self.toolchain.preprocess_script(resource, yacc_files, lex_files, self.config)
        if not lines:
            return BuildResponse(build_result=StepResult(output=""))

        build_result = self.run(request.name, lines, resource.real_path)
        return BuildResponse(
            build_result=build_result,
            computed_data={"generated_from": yacc_files + lex_files},
            effects_project=True,
            effects_dependents=True,
        )


@register_builder("link")
class LinkBuilder(BaseBuilder):
    """Links the root executable. Driven directly by the runner, not walked."""

    def build(self, request: BuildRequest) -> BuildResponse:
        """Link every package in ``request.cache`` (the library cache) into one executable.

        Library results are published dependencies-first, so the cache's own
        order is a valid link order.
        """
        root = request.resource
        with request.cache.lock:
            orderings = {
                name: list(result.computed_data.get("ordering", []))
                for name, result in request.cache.results.items()
            }
        lines = self.toolchain.link_script(root, orderings, self.config, self.build_dir)
        build_result = self.run(root.package_name, lines, root.real_path)
        executable = self.toolchain.executable_path(root, self.build_dir)
        computed_data = {"executable": str(executable), "build_config": self.config.compilation_snapshot()}
        if self.config.js_compile:
            computed_data["js_executable"] = f"{executable}.js"
        return BuildResponse(
            build_result=build_result,
            computed_data=computed_data,
            effects_project=True,
        )
