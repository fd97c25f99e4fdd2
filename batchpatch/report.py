from __future__ import annotations

from dataclasses import dataclass
from typing import List

from batchpatch.pipeline import RepositoryResult, RepositoryStatus
from batchpatch.state import RunState, StepKind


@dataclass(frozen=True)
class RunReport:
    results: List[RepositoryResult]

    def with_status(self, status: RepositoryStatus) -> List[RepositoryResult]:
        return [r for r in self.results if r.status is status]

    @property
    def succeeded(self) -> List[RepositoryResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[RepositoryResult]:
        return [r for r in self.results if not r.ok]

    @property
    def skipped(self) -> List[RepositoryResult]:
        return [r for r in self.results if r.skipped]

    @property
    def exit_code(self) -> int:
        return 0 if all(r.ok for r in self.results) else 1

    def summary_lines(self) -> List[str]:
        lines = [
            f"{len(self.results)} repositories: "
            f"{len(self.with_status(RepositoryStatus.COMPLETE))} complete, "
            f"{len(self.with_status(RepositoryStatus.COMMITTED))} committed (no push), "
            f"{len(self.with_status(RepositoryStatus.FAILED))} failed, "
            f"{len(self.with_status(RepositoryStatus.DRIFT))} configuration drift; "
            f"{len(self.skipped)} skipped as already done"
        ]
        for result in self.results:
            if result.status is RepositoryStatus.COMPLETE:
                lines.append(f"  OK      {result.target}  {result.pr_url or ''}".rstrip())
            elif result.status is RepositoryStatus.COMMITTED:
                lines.append(f"  OK      {result.target}  committed; push skipped")
            elif result.status is RepositoryStatus.FAILED:
                step = result.failed_step.value if result.failed_step else "?"
                lines.append(f"  FAILED  {result.target}  at {step}: {result.reason}")
            else:
                lines.append(f"  DRIFT   {result.target}  {result.reason}")
        return lines


def describe_state(state: RunState) -> List[str]:
    """Summarize a state file: complete, partially complete, or not started."""
    lines: List[str] = []
    if state.metadata is not None:
        lines.append(
            f"branch={state.metadata.branch} change={state.metadata.change_source} "
            f"message={state.metadata.commit_message!r}"
        )
    complete = partial = untouched = 0
    for slug in sorted(state.repositories):
        repo = state.repositories[slug]
        if repo.reached(StepKind.CREATE_PR):
            complete += 1
            url = repo.outcome(StepKind.CREATE_PR).detail or ""
            lines.append(f"  complete     {slug}  {url}".rstrip())
        elif repo.is_untouched():
            untouched += 1
            lines.append(f"  not started  {slug}")
        else:
            partial += 1
            last = repo.last_succeeded()
            failed = repo.failed_step()
            text = f"  partial      {slug}  done through {last.value if last else 'nothing'}"
            if failed is not None:
                text += f"; {failed.value} failed: {repo.outcome(failed).reason}"
            lines.append(text)
    lines.insert(
        0,
        f"{len(state.repositories)} repositories: {complete} complete, "
        f"{partial} partially complete, {untouched} not started",
    )
    return lines
