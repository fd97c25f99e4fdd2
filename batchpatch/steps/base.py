from __future__ import annotations

from typing import Optional, Protocol

from batchpatch.config import RunConfig
from batchpatch.targets import RepositoryTarget


class StepExecutor(Protocol):
    """
    Performs one pipeline step for one repository.

    `execute` returns an optional detail string on success (recorded with the
    outcome) and raises on failure. Executors never read or write run state.
    """

    def execute(self, target: RepositoryTarget, config: RunConfig) -> Optional[str]: ...
