import asyncio
import logging
from typing import List, Mapping, Optional, Sequence

from .config import RunConfig
from .logging_config import ensure_logging_configured
from .pipeline import PipelineEngine, RepositoryResult
from .report import RunReport
from .state import StepKind
from .state_store import StateStore
from .steps import StepExecutor, default_executors
from .targets import RepositoryTarget

logger = logging.getLogger(__name__)


async def run_workflow(
    targets: Sequence[RepositoryTarget],
    store: StateStore,
    config: RunConfig,
    executors: Optional[Mapping[StepKind, StepExecutor]] = None,
    jobs: int = 1,
) -> RunReport:
    """Run every target through the pipeline once and report the outcome.

    Repositories are independent: a failure in one never stops the others.
    With `jobs > 1` up to that many repositories are processed concurrently.
    """
    ensure_logging_configured()
    orphaned = store.orphaned(targets)
    if orphaned:
        logger.warning(
            "Ignoring %d repositories in the state file that are not in the list: %s",
            len(orphaned),
            ", ".join(orphaned),
        )

    engine = PipelineEngine(store, executors or default_executors())
    logger.info(
        "Processing %d repositories on branch %s with %s%s",
        len(targets),
        config.branch,
        config.change_source,
        " (no push)" if config.no_push else "",
    )

    if jobs <= 1:
        results: List[RepositoryResult] = []
        for target in targets:
            results.append(await engine.run_repository(target, config))
        return RunReport(results=results)

    semaphore = asyncio.Semaphore(jobs)

    async def _bounded(target: RepositoryTarget) -> RepositoryResult:
        async with semaphore:
            return await engine.run_repository(target, config)

    results = list(await asyncio.gather(*(_bounded(t) for t in targets)))
    return RunReport(results=results)
