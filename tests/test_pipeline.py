from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest

from batchpatch.config import DiffFile, RunConfig
from batchpatch.errors import StepFailure
from batchpatch.pipeline import PipelineEngine, RepositoryStatus
from batchpatch.state import (
    STEP_ORDER,
    RepositoryState,
    RunMetadata,
    RunState,
    StepKind,
    StepOutcome,
    StepStatus,
    ordering_violation,
)
from batchpatch.state_store import FileStateStore, MemoryStateStore
from batchpatch.targets import RepositoryTarget
from batchpatch.workflow import run_workflow

Call = Tuple[str, StepKind]


class RecordingExecutor:
    def __init__(
        self,
        step: StepKind,
        calls: List[Call],
        failing: Set[str],
        error: Callable[[str], Exception],
    ) -> None:
        self.step = step
        self.calls = calls
        self.failing = failing
        self.error = error

    def execute(self, target: RepositoryTarget, config: RunConfig) -> Optional[str]:
        self.calls.append((target.slug, self.step))
        if target.slug in self.failing:
            raise self.error(f"{self.step.value} broke for {target.slug}")
        if self.step is StepKind.CREATE_PR:
            return f"https://github.com/{target.slug}/pull/1"
        return None


class Harness:
    """Fake executors whose failures can be switched per step and repository."""

    def __init__(self) -> None:
        self.calls: List[Call] = []
        self.failing: Dict[StepKind, Set[str]] = {kind: set() for kind in STEP_ORDER}
        self.error: Callable[[str], Exception] = StepFailure
        self.executors = {
            kind: RecordingExecutor(kind, self.calls, self.failing[kind], self._raise)
            for kind in STEP_ORDER
        }

    def _raise(self, message: str) -> Exception:
        return self.error(message)

    def fail(self, step: StepKind, slug: str) -> None:
        self.failing[step].add(slug)

    def heal(self, step: StepKind, slug: str) -> None:
        self.failing[step].discard(slug)

    def steps_for(self, slug: str) -> List[StepKind]:
        return [step for s, step in self.calls if s == slug]


def _config(tmp_path: Path, **overrides) -> RunConfig:
    values = dict(
        branch="batchpatch/cve-fix",
        change_source=DiffFile(Path("/patches/cve.diff")),
        working_dir=tmp_path / "work",
        commit_message="Fix CVE",
    )
    values.update(overrides)
    return RunConfig(**values)


def _targets(*slugs: str) -> List[RepositoryTarget]:
    return [RepositoryTarget.parse(s) for s in slugs]


def _run(targets, store, config, harness: Harness, jobs: int = 1):
    return asyncio.run(
        run_workflow(targets, store, config, executors=harness.executors, jobs=jobs)
    )


def _statuses(store, slug: str) -> List[StepStatus]:
    repo = store.repository_state(RepositoryTarget.parse(slug))
    return [repo.outcome(kind).status for kind in STEP_ORDER]


S = StepStatus.SUCCEEDED
F = StepStatus.FAILED
N = StepStatus.NOT_STARTED


def test_all_steps_succeed(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()

    report = _run(_targets("org/a"), store, _config(tmp_path), harness)

    assert _statuses(store, "org/a") == [S] * 6
    assert harness.steps_for("org/a") == list(STEP_ORDER)
    assert report.exit_code == 0
    assert report.results[0].status is RepositoryStatus.COMPLETE
    assert report.results[0].pr_url == "https://github.com/org/a/pull/1"


def test_second_run_executes_nothing(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()
    config = _config(tmp_path)
    _run(_targets("org/a", "org/b"), store, config, harness)
    harness.calls.clear()

    report = _run(_targets("org/a", "org/b"), store, config, harness)

    assert harness.calls == []
    assert report.exit_code == 0
    assert len(report.skipped) == 2


def test_patch_failure_then_resume(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()
    config = _config(tmp_path)
    harness.fail(StepKind.PATCH, "org/a")

    report = _run(_targets("org/a"), store, config, harness)

    assert _statuses(store, "org/a") == [S, S, F, N, N, N]
    assert report.exit_code == 1
    result = report.results[0]
    assert result.status is RepositoryStatus.FAILED
    assert result.failed_step is StepKind.PATCH
    assert result.reason == "patch broke for org/a"

    harness.calls.clear()
    harness.heal(StepKind.PATCH, "org/a")
    report = _run(_targets("org/a"), store, config, harness)

    assert harness.steps_for("org/a") == [
        StepKind.PATCH,
        StepKind.COMMIT,
        StepKind.PUSH,
        StepKind.CREATE_PR,
    ]
    assert _statuses(store, "org/a") == [S] * 6
    assert report.exit_code == 0


def test_repeated_failure_retries_same_step_only(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()
    config = _config(tmp_path)
    harness.fail(StepKind.PUSH, "org/a")
    _run(_targets("org/a"), store, config, harness)
    harness.calls.clear()

    _run(_targets("org/a"), store, config, harness)

    assert harness.steps_for("org/a") == [StepKind.PUSH]
    assert _statuses(store, "org/a") == [S, S, S, S, F, N]


def test_failure_is_isolated_per_repository(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()
    harness.fail(StepKind.CLONE, "org/a")

    report = _run(_targets("org/a", "org/b", "org/c"), store, _config(tmp_path), harness)

    assert _statuses(store, "org/a") == [F, N, N, N, N, N]
    assert _statuses(store, "org/b") == [S] * 6
    assert _statuses(store, "org/c") == [S] * 6
    assert [r.status for r in report.results] == [
        RepositoryStatus.FAILED,
        RepositoryStatus.COMPLETE,
        RepositoryStatus.COMPLETE,
    ]
    assert report.exit_code == 1


def test_unexpected_exception_is_recorded_as_failure(tmp_path: Path) -> None:
    harness = Harness()
    harness.error = TimeoutError
    harness.fail(StepKind.CREATE_PR, "org/a")
    store = MemoryStateStore()

    report = _run(_targets("org/a", "org/b"), store, _config(tmp_path), harness)

    outcome = store.outcome_of(RepositoryTarget.parse("org/a"), StepKind.CREATE_PR)
    assert outcome.is_failed
    assert outcome.reason == "TimeoutError: create_pr broke for org/a"
    assert report.results[1].ok


def test_no_push_stops_after_commit(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()

    report = _run(_targets("org/a"), store, _config(tmp_path, no_push=True), harness)

    assert _statuses(store, "org/a") == [S, S, S, S, N, N]
    assert report.exit_code == 0
    assert report.results[0].status is RepositoryStatus.COMMITTED

    harness.calls.clear()
    report = _run(_targets("org/a"), store, _config(tmp_path, no_push=True), harness)
    assert harness.calls == []
    assert _statuses(store, "org/a") == [S, S, S, S, N, N]

    report = _run(_targets("org/a"), store, _config(tmp_path), harness)
    assert harness.steps_for("org/a") == [StepKind.PUSH, StepKind.CREATE_PR]
    assert report.results[0].status is RepositoryStatus.COMPLETE


def test_changed_branch_is_configuration_drift(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()
    harness.fail(StepKind.PATCH, "org/a")
    _run(_targets("org/a"), store, _config(tmp_path), harness)
    harness.calls.clear()
    harness.heal(StepKind.PATCH, "org/a")

    report = _run(
        _targets("org/a", "org/b"), store, _config(tmp_path, branch="other-branch"), harness
    )

    drift, other = report.results
    assert drift.status is RepositoryStatus.DRIFT
    assert "branch" in (drift.reason or "")
    assert harness.steps_for("org/a") == []
    assert _statuses(store, "org/a") == [S, S, F, N, N, N]
    assert other.status is RepositoryStatus.COMPLETE
    assert report.exit_code == 1


def test_changed_change_source_is_configuration_drift(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()
    harness.fail(StepKind.COMMIT, "org/a")
    _run(_targets("org/a"), store, _config(tmp_path), harness)

    report = _run(
        _targets("org/a"),
        store,
        _config(tmp_path, change_source=DiffFile(Path("/patches/other.diff"))),
        harness,
    )

    assert report.results[0].status is RepositoryStatus.DRIFT
    assert "change_source" in (report.results[0].reason or "")


def test_changed_pull_request_text_is_configuration_drift(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()
    harness.fail(StepKind.CREATE_PR, "org/a")
    _run(_targets("org/a"), store, _config(tmp_path), harness)
    harness.calls.clear()
    harness.heal(StepKind.CREATE_PR, "org/a")

    report = _run(
        _targets("org/a"), store, _config(tmp_path, pr_title="Different title"), harness
    )

    assert report.results[0].status is RepositoryStatus.DRIFT
    assert "pr_title" in (report.results[0].reason or "")
    assert harness.calls == []
    assert _statuses(store, "org/a") == [S, S, S, S, S, F]


def test_completed_repository_is_not_checked_for_drift(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()
    _run(_targets("org/a"), store, _config(tmp_path), harness)
    harness.calls.clear()

    report = _run(_targets("org/a"), store, _config(tmp_path, branch="next"), harness)

    assert harness.calls == []
    assert report.results[0].status is RepositoryStatus.COMPLETE


def test_metadata_is_captured_on_first_run(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()
    config = _config(tmp_path)

    _run(_targets("org/a"), store, config, harness)

    state = store.snapshot()
    assert state.metadata == config.metadata()
    assert state.repositories["org/a"].metadata == RunMetadata(
        branch="batchpatch/cve-fix",
        change_source="diff:/patches/cve.diff",
        commit_message="Fix CVE",
        pr_title="(chore): Batchpatch operations",
        pr_body="Batchpatch applied some operations, please see the commit list for details",
    )


def test_every_transition_is_persisted(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()

    _run(_targets("org/a"), store, _config(tmp_path), harness)

    # One write for the metadata snapshot, one per step.
    assert store.persist_count == 7


def test_file_store_survives_restart_mid_run(tmp_path: Path) -> None:
    harness = Harness()
    state_file = tmp_path / "state.json"
    harness.fail(StepKind.COMMIT, "org/a")
    _run(_targets("org/a"), FileStateStore.load(state_file), _config(tmp_path), harness)

    reloaded = FileStateStore.load(state_file)
    assert _statuses(reloaded, "org/a") == [S, S, S, F, N, N]

    harness.calls.clear()
    harness.heal(StepKind.COMMIT, "org/a")
    _run(_targets("org/a"), reloaded, _config(tmp_path), harness)
    assert harness.steps_for("org/a") == [StepKind.COMMIT, StepKind.PUSH, StepKind.CREATE_PR]
    assert _statuses(FileStateStore.load(state_file), "org/a") == [S] * 6


def test_orphaned_state_entries_are_left_alone(tmp_path: Path) -> None:
    gone = RepositoryState()
    gone.record(StepKind.CLONE, StepOutcome.failed("network down"))
    store = MemoryStateStore(RunState(repositories={"org/gone": gone}))
    harness = Harness()

    report = _run(_targets("org/a"), store, _config(tmp_path), harness)

    assert [r.target.slug for r in report.results] == ["org/a"]
    assert harness.steps_for("org/gone") == []
    assert _statuses(store, "org/gone") == [F, N, N, N, N, N]


def test_parallel_run_matches_sequential_outcomes(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()
    slugs = [f"org/repo{i}" for i in range(8)]
    harness.fail(StepKind.BRANCH, "org/repo3")
    harness.fail(StepKind.PUSH, "org/repo5")

    report = _run(_targets(*slugs), store, _config(tmp_path), harness, jobs=4)

    assert [r.target.slug for r in report.results] == slugs
    for slug in slugs:
        steps = harness.steps_for(slug)
        assert steps == list(STEP_ORDER[: len(steps)])
    assert _statuses(store, "org/repo3") == [S, F, N, N, N, N]
    assert _statuses(store, "org/repo5") == [S, S, S, S, F, N]
    assert len(report.succeeded) == 6


def test_succeeded_steps_always_form_a_prefix(tmp_path: Path) -> None:
    harness = Harness()
    store = MemoryStateStore()
    slugs = ["org/a", "org/b", "org/c"]
    plan = [
        (StepKind.CLONE, "org/a"),
        (StepKind.COMMIT, "org/b"),
        (StepKind.CREATE_PR, "org/c"),
    ]
    for step, slug in plan:
        harness.fail(step, slug)
    for attempt in range(3):
        _run(_targets(*slugs), store, _config(tmp_path), harness)
        for repo in store.snapshot().repositories.values():
            assert ordering_violation(repo.steps) is None
        step, slug = plan[attempt]
        harness.heal(step, slug)

    _run(_targets(*slugs), store, _config(tmp_path), harness)
    for slug in slugs:
        assert _statuses(store, slug) == [S] * 6


def test_engine_requires_an_executor_per_step() -> None:
    harness = Harness()
    executors = dict(harness.executors)
    del executors[StepKind.PUSH]

    with pytest.raises(ValueError, match="push"):
        PipelineEngine(MemoryStateStore(), executors)
