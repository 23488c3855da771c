"""commonbuild - incremental builds for trees of packages.

Usage:
    from commonbuild import BuildConfig, run

    result = run("path/to/app", BuildConfig(compiler="byte", concurrency=8))
    print(result.graph_text)
    if not result.success:
        for diagnostic in result.diagnostics:
            print(diagnostic.location(), diagnostic.text)
"""

from commonbuild.build.cache import ResultsCache, needs_relink
from commonbuild.build.diagnostics import Diagnostic
from commonbuild.build.runner import RunResult, run
from commonbuild.build.toolchain import TemplateToolchain, Toolchain
from commonbuild.build.walker import Walker
from commonbuild.core.config import BuildConfig
from commonbuild.core.models import Outcome, PackageResource, VersionedResult

__all__ = [
    "BuildConfig",
    "Diagnostic",
    "Outcome",
    "PackageResource",
    "ResultsCache",
    "RunResult",
    "TemplateToolchain",
    "Toolchain",
    "VersionedResult",
    "Walker",
    "needs_relink",
    "run",
]

__version__ = "0.1.0"
