"""Toolchain layer — turn package snapshots into command scripts and run them."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path

from commonbuild.core.config import BuildConfig
from commonbuild.core.errors import BuildStepError, DependencyStepError
from commonbuild.core.models import PackageName, PackageResource, StepResult

COMPILER_PROGRAMS = {"byte": "ocamlc", "native": "ocamlopt"}

DEFAULT_DEPENDENCY_COMMAND = "ocamldep -sort {sources}"
DEFAULT_COMPILE_COMMAND = "{compiler} {debug} {opt} {includes} {flags} -c -o {object} {file}"
DEFAULT_LINK_COMMAND = "{compiler} {debug} {flags} -o {output} {objects}"
DEFAULT_JS_COMMAND = "js_of_ocaml {js_opt} --source-map {output} -o {output}.js"
YACC_COMMAND = "ocamlyacc {file}"
LEX_COMMAND = "ocamllex {file}"

COMPILED_EXTENSIONS = (".ml", ".mli")


def run_script(lines: list[str], cwd: str | Path, timeout: float | None = None) -> StepResult:
    """Run shell command lines in order, stopping at the first failure.

    A line fails when it exits non-zero or writes to stderr. ``timeout`` bounds
    the whole script; expiry is reported as a failed step, not raised.
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    output: list[str] = []
    for line in lines:
        remaining = None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return StepResult(
                    commands=list(lines),
                    error=f"timed out after {timeout}s before: {line}",
                )
        try:
            proc = subprocess.run(
                line,
                shell=True,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                timeout=remaining,
            )
        except subprocess.TimeoutExpired:
            return StepResult(commands=list(lines), error=f"timed out after {timeout}s: {line}")
        except OSError as exc:
            return StepResult(commands=list(lines), error=f"could not run {line}: {exc}")

        output.append(proc.stdout)
        if proc.returncode != 0 or proc.stderr.strip():
            error = proc.stderr or f"command exited with status {proc.returncode}: {line}"
            return StepResult(commands=list(lines), error=error)
    return StepResult(commands=list(lines), output="".join(output))


class Toolchain(ABC):
    """Produces the command scripts for each build step of a package.

    Implementations only generate commands and interpret dependency output;
    running them is the job of :func:`run_script`.
    """

    name: str = "toolchain"

    @abstractmethod
    def dependency_script(self, resource: PackageResource, config: BuildConfig) -> list[str]:
        """Commands whose stdout lists the package's sources in dependency order."""
        ...

    @abstractmethod
    def parse_dependency_output(self, resource: PackageResource, output: str) -> list[str]:
        """Turn dependency-step stdout into an ordered list of absolute source paths."""
        ...

    @abstractmethod
    def compile_script(
        self,
        resource: PackageResource,
        files: list[str],
        config: BuildConfig,
        build_dir: Path,
    ) -> list[str]:
        ...

    @abstractmethod
    def preprocess_script(
        self,
        resource: PackageResource,
        yacc_files: list[str],
        lex_files: list[str],
        config: BuildConfig,
    ) -> list[str]:
        ...

    @abstractmethod
    def link_script(
        self,
        root: PackageResource,
        orderings: dict[PackageName, list[str]],
        config: BuildConfig,
        build_dir: Path,
    ) -> list[str]:
        ...

    def executable_path(self, root: PackageResource, build_dir: Path) -> Path:
        return Path(build_dir) / root.package_name / "app.out"


def output_dir(build_dir: Path, package: PackageName) -> Path:
    """Where a package's compiled objects and interfaces go."""
    return Path(build_dir) / package


def object_path(build_dir: Path, package: PackageName, source: str, config: BuildConfig) -> Path:
    """Compiled artifact for one source: ``.cmi`` for interfaces, else ``.cmo``/``.cmx``."""
    stem, ext = os.path.splitext(os.path.basename(source))
    if ext == ".mli":
        suffix = ".cmi"
    else:
        suffix = ".cmx" if config.compiler == "native" else ".cmo"
    return output_dir(build_dir, package) / f"{stem}{suffix}"


def opt_flags(config: BuildConfig) -> str:
    """Compiler flags for the optimization level. Only ocamlopt at level 3 or above gets any."""
    if config.compiler == "native" and config.opt >= 3:
        return "-unsafe -inline 200"
    return ""


def js_opt_flags(config: BuildConfig) -> str:
    flags = []
    if config.opt != 1:
        flags.append(f"--opt {config.opt}")
    if config.opt != 3:
        flags.append("--no-inline")
    return " ".join(flags)


class TemplateToolchain(Toolchain):
    """Expands ``str.format`` command templates from each package's manifest.

    Manifest keys ``dependencyCommand``, ``compileCommand`` and
    ``linkCommand`` override the defaults. Available placeholders:

    - dependency: ``{sources}``, ``{package}``, ``{path}``
    - compile (expanded once per source file): ``{compiler}``, ``{file}``,
      ``{object}``, ``{output_dir}``, ``{includes}``, ``{debug}``,
      ``{opt}``, ``{package}``, ``{path}``, ``{flags}``
    - link: ``{compiler}``, ``{objects}``, ``{output}``, ``{debug}``,
      ``{opt}``, ``{package}``, ``{flags}``

    Compiled objects land in ``<build dir>/<package>/``; ``{includes}`` adds
    ``-I`` for that directory and for each direct dependency's. Path
    placeholders are shell-quoted.
    """

    name = "template"

    def _expand(self, template: str, error_cls, resource: PackageResource, **values) -> str:
        try:
            return template.format(**values).strip()
        except (KeyError, IndexError, ValueError) as exc:
            raise error_cls(
                f"Bad command template for {resource.package_name}: {template!r} ({exc})",
                commands=[template],
            ) from exc

    @staticmethod
    def _quote_all(paths) -> str:
        return " ".join(shlex.quote(str(p)) for p in paths)

    def dependency_script(self, resource: PackageResource, config: BuildConfig) -> list[str]:
        sources = [p for p in resource.source_files if p.endswith(COMPILED_EXTENSIONS)]
        template = resource.manifest.get("dependencyCommand", DEFAULT_DEPENDENCY_COMMAND)
        return [
            self._expand(
                template,
                DependencyStepError,
                resource,
                sources=self._quote_all(sources),
                package=resource.package_name,
                path=shlex.quote(resource.real_path),
            )
        ]

    def parse_dependency_output(self, resource: PackageResource, output: str) -> list[str]:
        known = set(resource.source_files)
        ordering = []
        for token in output.split():
            path = token if os.path.isabs(token) else os.path.join(resource.real_path, token)
            path = os.path.normpath(path)
            if path not in known:
                raise DependencyStepError(
                    f"Dependency step for {resource.package_name} named unknown source {token}",
                    stderr=output,
                )
            if path not in ordering:
                ordering.append(path)
        return ordering

    def _common(self, resource: PackageResource, config: BuildConfig) -> dict:
        return {
            "compiler": COMPILER_PROGRAMS[config.compiler],
            "debug": "-g" if config.debug else "",
            "opt": opt_flags(config),
            "package": resource.package_name,
            "flags": " ".join(resource.manifest.get("compileFlags", [])),
        }

    def compile_script(
        self,
        resource: PackageResource,
        files: list[str],
        config: BuildConfig,
        build_dir: Path,
    ) -> list[str]:
        own_dir = output_dir(build_dir, resource.package_name)
        include_dirs = [own_dir] + [output_dir(build_dir, sub) for sub in resource.subpackage_names]
        includes = " ".join(f"-I {shlex.quote(str(d))}" for d in include_dirs)
        template = resource.manifest.get("compileCommand", DEFAULT_COMPILE_COMMAND)
        common = self._common(resource, config)
        lines = [f"mkdir -p {shlex.quote(str(own_dir))}"]
        for source in files:
            lines.append(
                self._expand(
                    template,
                    BuildStepError,
                    resource,
                    file=shlex.quote(source),
                    object=shlex.quote(str(object_path(build_dir, resource.package_name, source, config))),
                    output_dir=shlex.quote(str(own_dir)),
                    includes=includes,
                    path=shlex.quote(resource.real_path),
                    **common,
                )
            )
        return lines

    def preprocess_script(
        self,
        resource: PackageResource,
        yacc_files: list[str],
        lex_files: list[str],
        config: BuildConfig,
    ) -> list[str]:
        lines = [YACC_COMMAND.format(file=shlex.quote(f)) for f in yacc_files]
        lines.extend(LEX_COMMAND.format(file=shlex.quote(f)) for f in lex_files)
        return lines

    def link_script(
        self,
        root: PackageResource,
        orderings: dict[PackageName, list[str]],
        config: BuildConfig,
        build_dir: Path,
    ) -> list[str]:
        objects = [
            object_path(build_dir, name, source, config)
            for name, ordering in orderings.items()
            for source in ordering
            if source.endswith(".ml")
        ]
        output = self.executable_path(root, build_dir)
        template = root.manifest.get("linkCommand", DEFAULT_LINK_COMMAND)
        values = dict(self._common(root, config))
        values["flags"] = " ".join(root.manifest.get("linkFlags", []))
        lines = [
            f"mkdir -p {shlex.quote(str(output.parent))}",
            self._expand(
                template,
                BuildStepError,
                root,
                objects=self._quote_all(objects),
                output=shlex.quote(str(output)),
                **values,
            ),
        ]
        if config.js_compile:
            lines.append(
                DEFAULT_JS_COMMAND.format(js_opt=js_opt_flags(config), output=shlex.quote(str(output)))
            )
        return lines
