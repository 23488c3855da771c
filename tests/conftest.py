"""Shared test fixtures for commonbuild."""

from __future__ import annotations

import os

import pytest

from commonbuild.core.config import BuildConfig
from tests.helpers.project import FakeToolchain, add_dependency, make_package


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep COMMONBUILD_* variables from the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith("COMMONBUILD_"):
            monkeypatch.delenv(key)


@pytest.fixture
def toolchain():
    return FakeToolchain()


@pytest.fixture
def config():
    return BuildConfig(concurrency=4)


@pytest.fixture
def diamond(tmp_path):
    """A (no deps); B and C depend on A; root R depends on B and C.

    Packages live side by side under ``pkgs/`` and are wired together with
    node_modules symlinks, so A is one directory shared by B and C.
    """
    pkgs = tmp_path / "pkgs"
    a = make_package(pkgs / "A", "A", files={"base.ml": "let x = 1\n", "util.ml": "let y = Base.x\n"})
    b = make_package(pkgs / "B", "B", files={"b_impl.ml": "let b = Util.y\n"})
    c = make_package(pkgs / "C", "C", files={"c_impl.ml": "let c = Util.y\n"})
    r = make_package(pkgs / "R", "R", files={"main.ml": "let () = print_int (B_impl.b + C_impl.c)\n"})
    add_dependency(b, a)
    add_dependency(c, a)
    add_dependency(r, b)
    add_dependency(r, c)
    return {"A": a, "B": b, "C": c, "R": r}
