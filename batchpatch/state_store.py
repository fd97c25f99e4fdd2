from __future__ import annotations

import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Iterable, List, Optional

from pydantic import ValidationError

from batchpatch.errors import CorruptState, InputError
from batchpatch.state import (
    RepositoryState,
    RunMetadata,
    RunState,
    StepKind,
    StepOutcome,
)
from batchpatch.targets import RepositoryTarget

logger = logging.getLogger(__name__)


def write_text_atomic(path: Path, content: str) -> None:
    """Replace `path` with `content` so readers see either the old or the new file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        delete=False,
        prefix=f".{path.name}.",
        suffix=".tmp",
    ) as f:
        tmp_name = f.name
        try:
            f.write(content)
            if not content.endswith("\n"):
                f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        except BaseException:
            f.close()
            os.unlink(tmp_name)
            raise
    os.replace(tmp_name, path)


class StateStore(ABC):
    """Outcome bookkeeping for a run.

    Every mutation is persisted before the mutating call returns, and mutations
    are serialized so repositories can be processed from several threads.
    """

    def __init__(self, state: Optional[RunState] = None) -> None:
        self._state = state if state is not None else RunState()
        self._lock = threading.Lock()

    @abstractmethod
    def _persist(self) -> None:
        raise NotImplementedError

    def snapshot(self) -> RunState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def repository_state(self, target: RepositoryTarget) -> RepositoryState:
        with self._lock:
            existing = self._state.repositories.get(target.slug)
            if existing is None:
                return RepositoryState()
            return existing.model_copy(deep=True)

    def outcome_of(self, target: RepositoryTarget, step: StepKind) -> StepOutcome:
        with self._lock:
            existing = self._state.repositories.get(target.slug)
            if existing is None:
                return StepOutcome.not_started()
            return existing.outcome(step)

    def metadata_of(self, target: RepositoryTarget) -> Optional[RunMetadata]:
        with self._lock:
            existing = self._state.repositories.get(target.slug)
            return existing.metadata if existing is not None else None

    def capture_metadata(self, target: RepositoryTarget, metadata: RunMetadata) -> None:
        """Snapshot the invocation parameters for `target` unless one is already recorded."""
        with self._lock:
            repo = self._state.repositories.setdefault(target.slug, RepositoryState())
            previous = (repo.metadata, self._state.metadata)
            if repo.metadata is None:
                repo.metadata = metadata
            if self._state.metadata is None:
                self._state.metadata = metadata
            if (repo.metadata, self._state.metadata) == previous:
                return
            try:
                self._persist()
            except BaseException:
                repo.metadata, self._state.metadata = previous
                raise

    def record_outcome(
        self, target: RepositoryTarget, step: StepKind, outcome: StepOutcome
    ) -> None:
        if outcome.updated_at is None:
            outcome = outcome.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        with self._lock:
            repo = self._state.repositories.setdefault(target.slug, RepositoryState())
            previous = repo.steps
            repo.record(step, outcome)
            try:
                self._persist()
            except BaseException:
                repo.steps = previous
                raise
        logger.debug("Recorded %s %s=%s", target, step.value, outcome.status.value)

    def orphaned(self, targets: Iterable[RepositoryTarget]) -> List[str]:
        """Repositories present in the state but not in `targets`."""
        wanted = {t.slug for t in targets}
        with self._lock:
            return sorted(slug for slug in self._state.repositories if slug not in wanted)


class MemoryStateStore(StateStore):
    """Keeps state in memory only; counts persists so tests can assert on them."""

    def __init__(self, state: Optional[RunState] = None) -> None:
        super().__init__(state)
        self.persist_count = 0

    def _persist(self) -> None:
        self.persist_count += 1


class StateFileLockedError(InputError):
    pass


class StateFileLock:
    """Exclusive advisory lock on `<state file>.lock` for the duration of a run."""

    def __init__(self, state_path: Path) -> None:
        self.lock_path = state_path.with_name(state_path.name + ".lock")
        self._handle: Optional[IO[str]] = None

    def acquire(self) -> None:
        import fcntl

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.lock_path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.close()
            raise StateFileLockedError(
                f"State file is in use by another batchpatch run (lock: {self.lock_path})"
            ) from exc
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        if self._handle is None:
            return
        self._handle.close()
        self._handle = None

    def __enter__(self) -> StateFileLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class FileStateStore(StateStore):
    def __init__(self, path: Path, state: Optional[RunState] = None) -> None:
        super().__init__(state)
        self.path = path

    @classmethod
    def load(cls, path: Path) -> FileStateStore:
        if not path.exists():
            logger.info("No state file at %s; starting a new run", path)
            return cls(path, RunState())
        try:
            text = path.read_text(encoding="utf-8")
            state = RunState.model_validate_json(text)
        except (OSError, UnicodeDecodeError, ValidationError) as exc:
            raise CorruptState(f"State file {path} cannot be used: {exc}") from exc
        logger.info(
            "Loaded state for %d repositories from %s", len(state.repositories), path
        )
        return cls(path, state)

    def _persist(self) -> None:
        write_text_atomic(self.path, self._state.model_dump_json(indent=2))
