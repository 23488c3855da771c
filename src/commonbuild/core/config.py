"""Build configuration resolution — CLI > env > defaults."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from commonbuild.core.errors import ConfigError

VALID_COMPILERS = ("byte", "native")

# Fields whose change can alter compiled output. Everything else
# (concurrency, verbosity, timeouts) is operational only.
COMPILATION_FIELDS = ("compiler", "opt", "debug", "yacc", "js_compile")


@dataclass
class BuildConfig:
    """Process-wide build options for one orchestrator run.

    Config precedence: explicit dict values > env vars > class defaults.

    Environment variables:
    - COMMONBUILD_COMPILER: "byte" or "native"
    - COMMONBUILD_OPT: optimization level
    - COMMONBUILD_CONCURRENCY: max simultaneous toolchain invocations
    - COMMONBUILD_BUILD_DIR: build directory prefix
    """

    compiler: str = "byte"
    opt: int = 1
    debug: bool = False
    yacc: bool = False
    js_compile: bool = False
    concurrency: int = 4
    build_dir: str = "_build"
    verbosity: int = 0
    silent: bool = False
    step_timeout: float | None = None  # seconds per toolchain step; None = wait forever

    @classmethod
    def from_dict(cls, data: dict) -> BuildConfig:
        """Create a BuildConfig from a dict, applying env var overrides."""
        config = cls()

        env_compiler = os.environ.get("COMMONBUILD_COMPILER")
        if env_compiler:
            config.compiler = env_compiler
        env_opt = os.environ.get("COMMONBUILD_OPT")
        if env_opt:
            config.opt = int(env_opt)
        env_concurrency = os.environ.get("COMMONBUILD_CONCURRENCY")
        if env_concurrency:
            config.concurrency = int(env_concurrency)
        env_build_dir = os.environ.get("COMMONBUILD_BUILD_DIR")
        if env_build_dir:
            config.build_dir = env_build_dir

        known = {f.name for f in fields(cls)}
        for key, value in data.items():
            if key in known and value is not None:
                setattr(config, key, value)

        return config

    @classmethod
    def from_stored(cls, data: dict | None) -> BuildConfig | None:
        """Rebuild a config persisted by a previous run. Env vars are ignored."""
        if not data:
            return None
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)

    def validate(self) -> None:
        """Reject option combinations the toolchain cannot honour."""
        if self.compiler not in VALID_COMPILERS:
            raise ConfigError(
                f"Must supply either compiler=byte or compiler=native, got {self.compiler!r}"
            )
        if self.js_compile and not self.debug:
            raise ConfigError("Building for JS also requires building for debug (--debug --js)")
        if self.js_compile and self.compiler != "byte":
            raise ConfigError("Building for JS requires compiler=byte")
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be at least 1, got {self.concurrency}")

    def compilation_snapshot(self) -> dict:
        """The subset of fields that can change compiled output."""
        return {name: getattr(self, name) for name in COMPILATION_FIELDS}

    def might_change_compilation(self, previous: BuildConfig | None) -> bool:
        """True when switching from ``previous`` could change any artifact."""
        if previous is None:
            return True
        return self.compilation_snapshot() != previous.compilation_snapshot()

    def uniqueness_suffix(self) -> str:
        return f"_{self.compiler}" + ("_debug" if self.debug else "")

    def actual_build_dir(self, root: str | Path) -> Path:
        """Per-compiler build directory, e.g. ``<root>/_build_byte_debug``."""
        return Path(root) / f"{self.build_dir}{self.uniqueness_suffix()}"
