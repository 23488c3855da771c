"""Tests for VersionedResult, StepResult and PackageResource."""

from __future__ import annotations

from commonbuild.build.fingerprint import digest_manifest
from commonbuild.core.models import (
    NEVER,
    Outcome,
    PackageResource,
    StepResult,
    VersionedResult,
)


def _resource(name="A", files=("/p/src/a.ml",), mtimes=(1,)):
    return PackageResource(
        package_name=name,
        real_path="/p",
        source_files=list(files),
        source_file_mtimes=list(mtimes),
        config_digest=digest_manifest({"exports": ["Api"]}),
        manifest={"exports": ["Api"]},
    )


class TestOutcome:
    def test_failed(self):
        assert Outcome.SUCCESS.failed is False
        assert Outcome.NODE_FAIL.failed is True
        assert Outcome.SUBNODE_FAIL.failed is True

    def test_wire_values(self):
        assert Outcome("SubnodeFail") is Outcome.SUBNODE_FAIL


class TestStepResult:
    def test_empty_step_neither_failed_nor_succeeded(self):
        step = StepResult()
        assert not step.failed
        assert not step.succeeded

    def test_empty_output_is_success(self):
        assert StepResult(output="").succeeded

    def test_error_is_failure(self):
        step = StepResult(commands=["ocamlc"], output="partial", error="boom")
        assert step.failed
        assert not step.succeeded


class TestVersionedResult:
    def test_fresh_record_never_built(self):
        result = VersionedResult()
        assert result.last_attempted_build_id == NEVER
        assert result.last_successful_resource is None
        assert result.outcome is None

    def test_succeeded_at_advances_ids(self):
        resource = _resource()
        result = VersionedResult().succeeded_at(
            23,
            resource,
            effects_project=True,
            effects_dependents=False,
            dependency_result=StepResult(output=""),
            build_result=StepResult(output=""),
        )
        assert result.outcome is Outcome.SUCCESS
        assert result.last_attempted_build_id == 23
        assert result.last_successful_build_id == 23
        assert result.last_build_id_effecting_project == 23
        assert result.last_build_id_effecting_dependents == NEVER
        assert result.last_successful_resource is resource

    def test_succeeded_without_effects_keeps_effecting_ids(self):
        first = VersionedResult().succeeded_at(
            23, _resource(), effects_project=True, effects_dependents=True,
            dependency_result=StepResult(output=""), build_result=StepResult(output=""),
        )
        second = first.succeeded_at(
            24, _resource(), effects_project=False, effects_dependents=False,
            dependency_result=first.dependency_result, build_result=first.build_result,
        )
        assert second.last_successful_build_id == 24
        assert second.last_build_id_effecting_project == 23
        assert second.last_build_id_effecting_dependents == 23

    def test_carried_forward_keeps_last_good(self):
        """A failed attempt never clobbers the last successful snapshot."""
        resource = _resource()
        good = VersionedResult().succeeded_at(
            23, resource, effects_project=True, effects_dependents=True,
            dependency_result=StepResult(output=""), build_result=StepResult(output=""),
        )
        failed = good.carried_forward(24, Outcome.SUBNODE_FAIL, errored_subpackages=["B"])
        assert failed.last_attempted_build_id == 24
        assert failed.last_successful_build_id == 23
        assert failed.last_successful_resource is resource
        assert failed.last_build_id_effecting_project == 23
        assert failed.errored_subpackages == ["B"]
        assert failed.outcome is Outcome.SUBNODE_FAIL

    def test_persisted_form(self):
        resource = _resource(mtimes=(1_700_000_000_123_456_789,))
        result = VersionedResult().succeeded_at(
            30, resource, effects_project=True, effects_dependents=True,
            dependency_result=StepResult(commands=["dep"], output="a.ml\n"),
            build_result=StepResult(commands=["cc"], output=""),
            computed_data={"ordering": ["/p/src/a.ml"]},
        )
        data = result.to_dict()
        assert data["outcome"] == "Success"
        assert data["last_successful_resource"]["source_file_mtimes"] == [1_700_000_000_123_456_789]

        restored = VersionedResult.from_dict(data)
        assert restored == result

    def test_from_dict_tolerates_missing_fields(self):
        restored = VersionedResult.from_dict({"last_attempted_build_id": 40})
        assert restored.last_attempted_build_id == 40
        assert restored.last_successful_build_id == NEVER
        assert restored.last_successful_resource is None


class TestPackageResource:
    def test_from_dict_empty(self):
        assert PackageResource.from_dict(None) is None
        assert PackageResource.from_dict({}) is None

    def test_missing_digest_recomputed_from_manifest(self):
        data = _resource().to_dict()
        del data["config_digest"]
        restored = PackageResource.from_dict(data)
        assert restored.config_digest.matches(digest_manifest({"exports": ["Api"]}))
