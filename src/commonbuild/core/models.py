"""Core data models for commonbuild."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from commonbuild.build.fingerprint import ManifestDigest, digest_manifest

PackageName = str

# Build id meaning "never happened". Real build ids start above it.
NEVER = -1


class Outcome(str, Enum):
    """Terminal classification of one package for one run."""

    SUCCESS = "Success"
    SUBNODE_FAIL = "SubnodeFail"  # a dependency failed; never attempted
    NODE_FAIL = "NodeFail"  # this package's own toolchain step failed

    @property
    def failed(self) -> bool:
        return self is not Outcome.SUCCESS


@dataclass
class PackageResource:
    """Snapshot of one package on disk, rebuilt from scratch every run."""

    package_name: PackageName
    real_path: str
    source_files: list[str] = field(default_factory=list)
    source_file_mtimes: list[int] = field(default_factory=list)  # ns, parallel to source_files
    subpackage_names: list[PackageName] = field(default_factory=list)
    config_digest: ManifestDigest = field(default_factory=lambda: digest_manifest({}))
    directories: list[str] = field(default_factory=list)
    manifest: dict = field(default_factory=dict)  # the package's CommonML section

    def to_dict(self) -> dict:
        return {
            "package_name": self.package_name,
            "real_path": self.real_path,
            "source_files": list(self.source_files),
            "source_file_mtimes": list(self.source_file_mtimes),
            "subpackage_names": list(self.subpackage_names),
            "config_digest": self.config_digest.to_dict(),
            "directories": list(self.directories),
            "manifest": self.manifest,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> PackageResource | None:
        if not data:
            return None
        return cls(
            package_name=data["package_name"],
            real_path=data["real_path"],
            source_files=list(data.get("source_files", [])),
            source_file_mtimes=list(data.get("source_file_mtimes", [])),
            subpackage_names=list(data.get("subpackage_names", [])),
            config_digest=(
                ManifestDigest.from_dict(data.get("config_digest"))
                or digest_manifest(data.get("manifest"))
            ),
            directories=list(data.get("directories", [])),
            manifest=data.get("manifest", {}),
        )


@dataclass
class StepResult:
    """Outcome of one external toolchain step (dependency analysis or build)."""

    commands: list[str] = field(default_factory=list)
    output: str | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.output is not None

    def to_dict(self) -> dict:
        return {"commands": list(self.commands), "output": self.output, "error": self.error}

    @classmethod
    def from_dict(cls, data: dict | None) -> StepResult:
        if not data:
            return cls()
        return cls(
            commands=list(data.get("commands") or []),
            output=data.get("output"),
            error=data.get("error"),
        )


@dataclass
class VersionedResult:
    """Per-package build record, persisted between runs.

    The four build ids always satisfy::

        last_build_id_effecting_project <= last_successful_build_id <= last_attempted_build_id

    Typical shapes after build N:

    - checked, nothing to do:      attempted=N, successful=N, effecting_project<N
    - rebuilt, relink needed:      attempted=N, successful=N, effecting_project=N
    - rebuilt, dependents rebuild: effecting_dependents=N as well
    - tried and failed:            attempted=N, successful<N, effecting fields untouched
    """

    last_attempted_build_id: int = NEVER
    last_successful_build_id: int = NEVER
    last_successful_resource: PackageResource | None = None
    last_build_id_effecting_project: int = NEVER
    last_build_id_effecting_dependents: int = NEVER
    outcome: Outcome | None = None
    errored_subpackages: list[PackageName] = field(default_factory=list)
    dependency_result: StepResult = field(default_factory=StepResult)
    build_result: StepResult = field(default_factory=StepResult)
    computed_data: dict = field(default_factory=dict)

    def carried_forward(
        self,
        build_id: int,
        outcome: Outcome,
        *,
        errored_subpackages: list[PackageName] | None = None,
        dependency_result: StepResult | None = None,
        build_result: StepResult | None = None,
        computed_data: dict | None = None,
    ) -> VersionedResult:
        """A failed attempt at ``build_id``: only last_attempted advances."""
        return VersionedResult(
            last_attempted_build_id=build_id,
            last_successful_build_id=self.last_successful_build_id,
            last_successful_resource=self.last_successful_resource,
            last_build_id_effecting_project=self.last_build_id_effecting_project,
            last_build_id_effecting_dependents=self.last_build_id_effecting_dependents,
            outcome=outcome,
            errored_subpackages=list(errored_subpackages or []),
            dependency_result=dependency_result or StepResult(),
            build_result=build_result or StepResult(),
            computed_data=computed_data or {},
        )

    def succeeded_at(
        self,
        build_id: int,
        resource: PackageResource,
        *,
        effects_project: bool,
        effects_dependents: bool,
        dependency_result: StepResult,
        build_result: StepResult,
        computed_data: dict | None = None,
    ) -> VersionedResult:
        """A successful attempt at ``build_id``."""
        return VersionedResult(
            last_attempted_build_id=build_id,
            last_successful_build_id=build_id,
            last_successful_resource=resource,
            last_build_id_effecting_project=(
                build_id if effects_project else self.last_build_id_effecting_project
            ),
            last_build_id_effecting_dependents=(
                build_id if effects_dependents else self.last_build_id_effecting_dependents
            ),
            outcome=Outcome.SUCCESS,
            errored_subpackages=[],
            dependency_result=dependency_result,
            build_result=build_result,
            computed_data=computed_data or {},
        )

    def to_dict(self) -> dict:
        return {
            "last_attempted_build_id": self.last_attempted_build_id,
            "last_successful_build_id": self.last_successful_build_id,
            "last_successful_resource": (
                self.last_successful_resource.to_dict() if self.last_successful_resource else None
            ),
            "last_build_id_effecting_project": self.last_build_id_effecting_project,
            "last_build_id_effecting_dependents": self.last_build_id_effecting_dependents,
            "outcome": self.outcome.value if self.outcome else None,
            "errored_subpackages": list(self.errored_subpackages),
            "dependency_result": self.dependency_result.to_dict(),
            "build_result": self.build_result.to_dict(),
            "computed_data": self.computed_data,
        }

    @classmethod
    def from_dict(cls, data: dict) -> VersionedResult:
        outcome = data.get("outcome")
        return cls(
            last_attempted_build_id=data.get("last_attempted_build_id", NEVER),
            last_successful_build_id=data.get("last_successful_build_id", NEVER),
            last_successful_resource=PackageResource.from_dict(data.get("last_successful_resource")),
            last_build_id_effecting_project=data.get("last_build_id_effecting_project", NEVER),
            last_build_id_effecting_dependents=data.get("last_build_id_effecting_dependents", NEVER),
            outcome=Outcome(outcome) if outcome else None,
            errored_subpackages=list(data.get("errored_subpackages", [])),
            dependency_result=StepResult.from_dict(data.get("dependency_result")),
            build_result=StepResult.from_dict(data.get("build_result")),
            computed_data=data.get("computed_data") or {},
        )
