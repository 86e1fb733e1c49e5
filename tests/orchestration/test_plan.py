"""Tests for plan loading and validation."""

import pytest

from vigil.core.errors import ConfigError
from vigil.execution.steps import CallableStep, CommandStep
from vigil.orchestration.plan import PlanSpec

PLAN_YAML = """
name: nightly-migration
description: Move the archive
steps:
  - name: export
    command: "python export.py --all"
    timeout_seconds: 60
    artifacts: [out/export.csv]
    env: {REGION: eu}
  - name: transform
    callable: "step_fixtures:produce"
"""


class TestLoad:
    def test_from_yaml(self):
        plan = PlanSpec.from_yaml(PLAN_YAML)
        assert plan.name == "nightly-migration"
        assert [s.name for s in plan.steps] == ["export", "transform"]
        assert plan.steps[1].callable_ref == "step_fixtures:produce"

    def test_from_yaml_file(self, tmp_path):
        path = tmp_path / "plan.yaml"
        path.write_text(PLAN_YAML)
        assert len(PlanSpec.from_yaml_file(path).steps) == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read plan file") as exc_info:
            PlanSpec.from_yaml_file(tmp_path / "nope.yaml")
        assert exc_info.value.context.path.endswith("nope.yaml")

    def test_bad_yaml(self):
        with pytest.raises(ConfigError, match="not valid YAML"):
            PlanSpec.from_yaml("steps: [unclosed")

    def test_not_utf8(self, tmp_path):
        path = tmp_path / "plan.yaml"
        path.write_bytes(b"name: \xff\n")
        with pytest.raises(ConfigError, match="Cannot read plan file"):
            PlanSpec.from_yaml_file(path)


class TestValidation:
    @pytest.mark.parametrize(
        "step",
        [
            {"name": "both", "command": "true", "callable": "m:f"},
            {"name": "neither"},
        ],
    )
    def test_exactly_one_action(self, step):
        with pytest.raises(ConfigError, match="exactly one"):
            PlanSpec.from_dict({"name": "p", "steps": [step]})

    def test_callable_needs_colon(self):
        with pytest.raises(ConfigError, match="module:qualname"):
            PlanSpec.from_dict({"name": "p", "steps": [{"name": "s", "callable": "m.f"}]})

    def test_duplicate_names(self):
        steps = [{"name": "a", "command": "true"}, {"name": "a", "command": "false"}]
        with pytest.raises(ConfigError, match="Duplicate step name: a"):
            PlanSpec.from_dict({"name": "p", "steps": steps})

    def test_empty_steps(self):
        with pytest.raises(ConfigError):
            PlanSpec.from_dict({"name": "p", "steps": []})

    def test_unknown_keys_rejected(self):
        with pytest.raises(ConfigError):
            PlanSpec.from_dict({"name": "p", "steps": [{"name": "s", "command": "true", "retries": 3}]})

    def test_non_positive_timeout(self):
        with pytest.raises(ConfigError):
            PlanSpec.from_dict({"name": "p", "steps": [{"name": "s", "command": "true", "timeout_seconds": 0}]})


class TestToSteps:
    def test_builds_step_objects(self):
        export, transform = PlanSpec.from_yaml(PLAN_YAML).to_steps(default_timeout=900)
        assert isinstance(export, CommandStep)
        assert export.argv == ["python", "export.py", "--all"]
        assert export.timeout_seconds == 60
        assert export.artifacts == ["out/export.csv"]
        assert export.env == {"REGION": "eu"}
        assert isinstance(transform, CallableStep)
        assert transform.timeout_seconds == 900

    def test_no_default_timeout(self):
        steps = PlanSpec.from_yaml(PLAN_YAML).to_steps()
        assert steps[1].timeout_seconds is None
