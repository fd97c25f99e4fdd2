from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional, Tuple

from pydantic_graph import BaseNode, End, Graph, GraphRunContext

from batchpatch.config import RunConfig
from batchpatch.errors import ConfigurationDrift, StepFailure
from batchpatch.state import STEP_ORDER, RepositoryState, StepKind, StepOutcome
from batchpatch.state_store import StateStore
from batchpatch.steps.base import StepExecutor
from batchpatch.targets import RepositoryTarget

logger = logging.getLogger(__name__)


class RepositoryStatus(str, Enum):
    COMPLETE = "complete"
    # Terminal state of a no-push run: committed locally, nothing pushed.
    COMMITTED = "committed"
    FAILED = "failed"
    DRIFT = "drift"


@dataclass(frozen=True)
class RepositoryResult:
    target: RepositoryTarget
    status: RepositoryStatus
    executed: Tuple[StepKind, ...] = ()
    failed_step: Optional[StepKind] = None
    reason: Optional[str] = None
    pr_url: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (RepositoryStatus.COMPLETE, RepositoryStatus.COMMITTED)

    @property
    def skipped(self) -> bool:
        """Already at its terminal state before this run; nothing was executed."""
        return self.ok and not self.executed


@dataclass
class PipelineRun:
    target: RepositoryTarget
    executed: List[StepKind] = field(default_factory=list)


@dataclass
class PipelineDeps:
    store: StateStore
    executors: Mapping[StepKind, StepExecutor]
    config: RunConfig


def final_step(config: RunConfig) -> StepKind:
    return StepKind.COMMIT if config.no_push else StepKind.CREATE_PR


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, StepFailure):
        return exc.reason
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _finished(run: PipelineRun, repo_state: RepositoryState) -> RepositoryResult:
    complete = repo_state.reached(StepKind.CREATE_PR)
    return RepositoryResult(
        target=run.target,
        status=RepositoryStatus.COMPLETE if complete else RepositoryStatus.COMMITTED,
        executed=tuple(run.executed),
        pr_url=repo_state.outcome(StepKind.CREATE_PR).detail if complete else None,
    )


@dataclass
class CheckDrift(BaseNode[PipelineRun, PipelineDeps, RepositoryResult]):
    """Refuse to continue a repository that was started with different parameters."""

    async def run(
        self, ctx: GraphRunContext[PipelineRun, PipelineDeps]
    ) -> RunStep | End[RepositoryResult]:
        deps = ctx.deps
        target = ctx.state.target
        repo_state = deps.store.repository_state(target)

        if repo_state.reached(final_step(deps.config)):
            logger.info("%s: already done; nothing to run", target)
            return End(_finished(ctx.state, repo_state))

        current = deps.config.metadata()
        if repo_state.metadata is None:
            deps.store.capture_metadata(target, current)
        else:
            differences = repo_state.metadata.differences(current)
            if differences:
                drift = ConfigurationDrift(target.slug, differences)
                logger.error("%s", drift)
                return End(
                    RepositoryResult(
                        target=target,
                        status=RepositoryStatus.DRIFT,
                        reason=str(drift),
                    )
                )
        return RunStep(step=STEP_ORDER[0])


@dataclass
class RunStep(BaseNode[PipelineRun, PipelineDeps, RepositoryResult]):
    step: StepKind

    async def run(
        self, ctx: GraphRunContext[PipelineRun, PipelineDeps]
    ) -> RunStep | End[RepositoryResult]:
        deps = ctx.deps
        target = ctx.state.target
        outcome = deps.store.outcome_of(target, self.step)

        if outcome.is_succeeded:
            logger.debug("%s: %s already succeeded; skipping", target, self.step.value)
        else:
            logger.info(
                "%s: running %s%s",
                target,
                self.step.value,
                " (retrying after failure)" if outcome.is_failed else "",
            )
            ctx.state.executed.append(self.step)
            executor = deps.executors[self.step]
            try:
                detail = await asyncio.to_thread(executor.execute, target, deps.config)
            except Exception as exc:
                reason = _failure_reason(exc)
                deps.store.record_outcome(target, self.step, StepOutcome.failed(reason))
                logger.warning("%s: %s failed: %s", target, self.step.value, reason)
                return End(
                    RepositoryResult(
                        target=target,
                        status=RepositoryStatus.FAILED,
                        executed=tuple(ctx.state.executed),
                        failed_step=self.step,
                        reason=reason,
                    )
                )
            deps.store.record_outcome(target, self.step, StepOutcome.succeeded(detail))

        if self.step is final_step(deps.config):
            return End(_finished(ctx.state, deps.store.repository_state(target)))
        return RunStep(step=STEP_ORDER[STEP_ORDER.index(self.step) + 1])


pipeline_graph = Graph(nodes=[CheckDrift, RunStep], name="batchpatch_pipeline")


class PipelineEngine:
    """Drives one repository at a time through the fixed step order."""

    def __init__(
        self, store: StateStore, executors: Mapping[StepKind, StepExecutor]
    ) -> None:
        missing = [kind.value for kind in STEP_ORDER if kind not in executors]
        if missing:
            raise ValueError(f"no executor for step(s): {', '.join(missing)}")
        self.store = store
        self.executors = executors

    async def run_repository(
        self, target: RepositoryTarget, config: RunConfig
    ) -> RepositoryResult:
        deps = PipelineDeps(store=self.store, executors=self.executors, config=config)
        result = await pipeline_graph.run(
            CheckDrift(), state=PipelineRun(target=target), deps=deps
        )
        return result.output
