"""Pydantic models for the confirmed execution plan (YAML).

The plan is produced by a human planning phase the supervisor does not take
part in; vigil only validates it and turns each entry into a step.

Usage::

    from vigil.orchestration.plan import PlanSpec

    plan = PlanSpec.from_yaml_file("plan.yaml")
    steps = plan.to_steps(default_timeout=3600)

Example YAML::

    name: nightly-migration
    description: Move the archive to the new bucket
    steps:
      - name: export
        command: "python export.py --all"
        timeout_seconds: 3600
        artifacts: [out/export.csv]
      - name: transform
        callable: "mypkg.jobs:transform"
        timeout_seconds: 1800

Tags:
    vigil, orchestration, yaml, plan

Doc-Types:
    api-reference
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from vigil.core.errors import ConfigError
from vigil.execution.steps import CallableStep, CommandStep, Step


class StepSpec(BaseModel):
    """One plan step: exactly one of ``command`` or ``callable``."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1, description="Unique step name")
    command: str | list[str] | None = Field(default=None, description="Subprocess command")
    callable_ref: str | None = Field(
        default=None, alias="callable", description="Python callable as 'module:qualname'"
    )
    timeout_seconds: float | None = Field(default=None, gt=0)
    artifacts: list[str] = Field(default_factory=list, description="Paths the step must produce")
    cwd: str | None = None
    env: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _exactly_one_action(self) -> StepSpec:
        if (self.command is None) == (self.callable_ref is None):
            raise ValueError(f"Step '{self.name}' must set exactly one of 'command' or 'callable'")
        return self

    @field_validator("callable_ref")
    @classmethod
    def _ref_has_colon(cls, v: str | None) -> str | None:
        if v is not None and ":" not in v:
            raise ValueError(f"Callable ref must be 'module:qualname', got {v!r}")
        return v

    def to_step(self, default_timeout: float | None = None) -> Step:
        timeout = self.timeout_seconds or default_timeout
        if self.command is not None:
            return CommandStep(
                self.name,
                self.command,
                timeout_seconds=timeout,
                artifacts=self.artifacts,
                cwd=Path(self.cwd) if self.cwd else None,
                env=self.env or None,
            )
        return CallableStep(
            self.name,
            self.callable_ref,
            timeout_seconds=timeout,
            artifacts=self.artifacts,
        )


class PlanSpec(BaseModel):
    """A confirmed execution plan."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    description: str = ""
    steps: list[StepSpec] = Field(..., min_length=1)

    @field_validator("steps")
    @classmethod
    def _unique_names(cls, steps: list[StepSpec]) -> list[StepSpec]:
        seen: set[str] = set()
        for step in steps:
            if step.name in seen:
                raise ValueError(f"Duplicate step name: {step.name}")
            seen.add(step.name)
        return steps

    def to_steps(self, default_timeout: float | None = None) -> list[Step]:
        return [s.to_step(default_timeout) for s in self.steps]

    @classmethod
    def from_dict(cls, data: Any, *, source: str = "<plan>") -> PlanSpec:
        try:
            return cls.model_validate(data)
        except pydantic.ValidationError as e:
            raise ConfigError(f"Invalid plan {source}: {e}", cause=e).with_context(path=source) from e

    @classmethod
    def from_yaml(cls, content: str, *, source: str = "<string>") -> PlanSpec:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Plan {source} is not valid YAML: {e}", cause=e).with_context(
                path=source
            ) from e
        return cls.from_dict(data, source=source)

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> PlanSpec:
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Cannot read plan file: {e}", cause=e).with_context(path=str(path)) from e
        return cls.from_yaml(content, source=str(path))
