"""
PHASEFORGE Plan Store

The resumable on-disk plan (`phases.yaml`) and its execution record.
The planning step writes the plan fields; a run fills in the result
fields as it executes. This module is the only code that touches the
plan file on disk.

Layout under the state directory:

    features/<slug>/phases.yaml
    features/<slug>/specs/design.md
    features/<slug>/specs/verification.md
"""

from __future__ import annotations

import os
import tempfile
from enum import Enum
from pathlib import Path

import yaml
from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from phaseforge.errors import FeatureNotFoundError, InvalidSpecError

PLAN_FILENAME = "phases.yaml"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class _PlanModel(BaseModel):
    # camelCase on disk, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"


class PhaseResult(_PlanModel):
    status: StepStatus = StepStatus.PENDING
    turns: int = Field(default=0, ge=0)
    commit: str | None = None  # absent when the phase produced no changes


class Phase(_PlanModel):
    name: str
    description: str = ""
    tasks: list[str] = Field(default_factory=list)
    result: PhaseResult | None = None

    @property
    def is_completed(self) -> bool:
        return self.result is not None and self.result.status == StepStatus.COMPLETED


class VerificationPlan(_PlanModel):
    criteria: list[str] = Field(default_factory=list)
    test_commands: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.criteria and not self.test_commands


class ReviewResult(_PlanModel):
    turns: int = 0
    issues_found: int = 0
    issues_fixed: int = 0


class VerificationResult(_PlanModel):
    turns: int = 0
    passed: bool = True


class ExecutionRecord(_PlanModel):
    status: StepStatus
    total_turns: int = 0
    review: ReviewResult = Field(default_factory=ReviewResult)
    verification: VerificationResult = Field(default_factory=VerificationResult)
    pr: str | None = None


class Plan(_PlanModel):
    """One feature's phases, verification plan and (once run) execution record."""
    feature: str
    phases: list[Phase] = Field(default_factory=list)
    verification_plan: VerificationPlan = Field(
        default_factory=VerificationPlan,
        validation_alias=AliasChoices("verificationPlan", "verification", "verification_plan"),
        serialization_alias="verificationPlan",
    )
    execution: ExecutionRecord | None = None

    def completed_phases(self) -> list[dict]:
        """Summaries of completed phases, used as resume context."""
        summaries = []
        for i, phase in enumerate(self.phases):
            if not phase.is_completed:
                continue
            summaries.append({
                "index": i + 1,
                "name": phase.name,
                "commit": phase.result.commit or "unknown",
            })
        return summaries

    def to_yaml(self) -> str:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)

    @classmethod
    def from_yaml(cls, text: str) -> "Plan":
        data = yaml.safe_load(text)
        if not isinstance(data, dict):
            raise ValueError("expected a mapping at the top level")
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class PlanStore:
    """Load and save plans under `<state_dir>/features/<slug>/`."""

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir

    def feature_dir(self, slug: str) -> Path:
        return self.state_dir / "features" / slug

    def plan_path(self, slug: str) -> Path:
        return self.feature_dir(slug) / PLAN_FILENAME

    def list_features(self) -> list[str]:
        features_dir = self.state_dir / "features"
        if not features_dir.is_dir():
            return []
        return sorted(p.parent.name for p in features_dir.glob(f"*/{PLAN_FILENAME}"))

    def load(self, slug: str) -> Plan:
        path = self.plan_path(slug)
        if not path.exists():
            raise FeatureNotFoundError(slug)

        try:
            return Plan.from_yaml(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, ValidationError, ValueError) as e:
            raise InvalidSpecError(f"{path}: {e}") from e

    def save(self, slug: str, plan: Plan) -> None:
        """Write the whole plan. Last writer wins."""
        feature_dir = self.feature_dir(slug)
        feature_dir.mkdir(parents=True, exist_ok=True)
        path = feature_dir / PLAN_FILENAME

        fd, tmp_name = tempfile.mkstemp(prefix=".phases-", suffix=".yaml", dir=feature_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(plan.to_yaml())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"[STORE] Saved plan: {path}")

    def load_supporting_document(self, slug: str, name: str) -> str:
        """Read `specs/<name>.md` for a feature."""
        path = self.feature_dir(slug) / "specs" / f"{name}.md"
        if not path.exists():
            raise FeatureNotFoundError(f"{name} spec not found for {slug}")
        return path.read_text(encoding="utf-8")
