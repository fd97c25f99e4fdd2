from typing import Dict

from batchpatch.state import StepKind

from .base import StepExecutor
from .branch import CreateBranch
from .clone import CloneRepo
from .commit import CommitChanges
from .patch import ApplyPatch
from .pull_request import CreatePullRequest
from .push import PushBranch


def default_executors() -> Dict[StepKind, StepExecutor]:
    return {
        StepKind.CLONE: CloneRepo(),
        StepKind.BRANCH: CreateBranch(),
        StepKind.PATCH: ApplyPatch(),
        StepKind.COMMIT: CommitChanges(),
        StepKind.PUSH: PushBranch(),
        StepKind.CREATE_PR: CreatePullRequest(),
    }


__all__ = [
    "ApplyPatch",
    "CloneRepo",
    "CommitChanges",
    "CreateBranch",
    "CreatePullRequest",
    "PushBranch",
    "StepExecutor",
    "default_executors",
]
