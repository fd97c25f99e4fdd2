from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StepKind(str, Enum):
    """Pipeline steps. Declaration order is execution order."""

    CLONE = "clone"
    BRANCH = "branch"
    PATCH = "patch"
    COMMIT = "commit"
    PUSH = "push"
    CREATE_PR = "create_pr"


STEP_ORDER: Tuple[StepKind, ...] = tuple(StepKind)


class StepStatus(str, Enum):
    NOT_STARTED = "not_started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: StepStatus = StepStatus.NOT_STARTED
    reason: Optional[str] = None
    # Free-form result of a successful step, e.g. the pull request URL.
    detail: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def not_started(cls) -> StepOutcome:
        return cls()

    @classmethod
    def succeeded(cls, detail: Optional[str] = None) -> StepOutcome:
        return cls(status=StepStatus.SUCCEEDED, detail=detail)

    @classmethod
    def failed(cls, reason: str) -> StepOutcome:
        return cls(status=StepStatus.FAILED, reason=reason)

    @property
    def is_succeeded(self) -> bool:
        return self.status is StepStatus.SUCCEEDED

    @property
    def is_failed(self) -> bool:
        return self.status is StepStatus.FAILED


class RunMetadata(BaseModel):
    """Invocation parameters that must not change while a repository is in progress."""

    model_config = ConfigDict(frozen=True)

    branch: str
    change_source: str
    commit_message: str
    pr_title: str
    pr_body: str

    def differences(self, other: RunMetadata) -> Dict[str, Tuple[str, str]]:
        """Return `{field: (self_value, other_value)}` for every field that differs."""
        diffs: Dict[str, Tuple[str, str]] = {}
        for name in type(self).model_fields:
            mine = getattr(self, name)
            theirs = getattr(other, name)
            if mine != theirs:
                diffs[name] = (mine, theirs)
        return diffs


def ordering_violation(steps: Dict[StepKind, StepOutcome]) -> Optional[str]:
    """Describe why `steps` breaks the prefix ordering, or return None.

    Succeeded steps must form a prefix of STEP_ORDER; the first step after that
    prefix may be failed or not started, and every later step must be not started.
    """
    first_open: Optional[StepKind] = None
    for kind in STEP_ORDER:
        outcome = steps.get(kind) or StepOutcome()
        if first_open is None:
            if not outcome.is_succeeded:
                first_open = kind
            continue
        if outcome.status is not StepStatus.NOT_STARTED:
            return (
                f"step {kind.value} is {outcome.status.value} "
                f"but {first_open.value} has not succeeded"
            )
    return None


class RepositoryState(BaseModel):
    metadata: Optional[RunMetadata] = None
    steps: Dict[StepKind, StepOutcome] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _complete_and_check(self) -> RepositoryState:
        self.steps = {kind: self.steps.get(kind) or StepOutcome() for kind in STEP_ORDER}
        problem = ordering_violation(self.steps)
        if problem:
            raise ValueError(problem)
        return self

    def outcome(self, step: StepKind) -> StepOutcome:
        return self.steps.get(step) or StepOutcome()

    def record(self, step: StepKind, outcome: StepOutcome) -> None:
        updated = dict(self.steps)
        updated[step] = outcome
        problem = ordering_violation(updated)
        if problem:
            raise ValueError(f"refusing to record {step.value}={outcome.status.value}: {problem}")
        self.steps = updated

    def next_step(self) -> Optional[StepKind]:
        for kind in STEP_ORDER:
            if not self.steps[kind].is_succeeded:
                return kind
        return None

    def last_succeeded(self) -> Optional[StepKind]:
        done = [kind for kind in STEP_ORDER if self.steps[kind].is_succeeded]
        return done[-1] if done else None

    def failed_step(self) -> Optional[StepKind]:
        for kind in STEP_ORDER:
            if self.steps[kind].is_failed:
                return kind
        return None

    def reached(self, step: StepKind) -> bool:
        """True if `step` and everything before it has succeeded."""
        return self.steps[step].is_succeeded

    def is_untouched(self) -> bool:
        return all(o.status is StepStatus.NOT_STARTED for o in self.steps.values())


class RunState(BaseModel):
    version: int = 1
    metadata: Optional[RunMetadata] = None
    repositories: Dict[str, RepositoryState] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def _supported_version(cls, value: int) -> int:
        if value != 1:
            raise ValueError(f"unsupported state file version {value}")
        return value
