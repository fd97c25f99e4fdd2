from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

from dulwich import porcelain
from dulwich.config import StackedConfig
from dulwich.errors import NotGitRepository
from dulwich.repo import Repo

from batchpatch.errors import StepFailure

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_NAME = "batchpatch"
DEFAULT_IDENTITY_EMAIL = "batchpatch@users.noreply.github.com"


def open_checkout(path: Path) -> Repo:
    if not (path / ".git").exists():
        raise StepFailure(f"no git checkout at {path}")
    try:
        return Repo(str(path))
    except NotGitRepository as exc:
        raise StepFailure(f"invalid git checkout at {path}: {exc}") from exc


def origin_url(repo: Repo) -> str:
    cfg = repo.get_config()
    try:
        url_bytes = cfg.get((b"remote", b"origin"), b"url")
    except KeyError as exc:
        raise StepFailure("checkout has no origin remote") from exc
    return url_bytes.decode()


def head_sha(repo: Repo) -> bytes:
    try:
        return repo.head()
    except KeyError as exc:
        raise StepFailure("checkout has no commits") from exc


def _config_value(
    cfg: StackedConfig, section: tuple[bytes, ...], name: bytes
) -> Optional[str]:
    try:
        value = cfg.get(section, name)
    except KeyError:
        return None
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


def commit_identity(repo: Repo) -> str:
    cfg = repo.get_config_stack()
    name = os.environ.get("GIT_AUTHOR_NAME") or _config_value(cfg, (b"user",), b"name")
    email = os.environ.get("GIT_AUTHOR_EMAIL") or _config_value(
        cfg, (b"user",), b"email"
    )
    return f"{name or DEFAULT_IDENTITY_NAME} <{email or DEFAULT_IDENTITY_EMAIL}>"


def changed_paths(repo: Repo) -> List[bytes]:
    """Tree paths that differ between HEAD, the index and the working tree."""
    status = porcelain.status(repo)
    paths: set[bytes] = set()
    for group in status.staged.values():
        paths.update(group)
    paths.update(status.unstaged)
    paths.update(os.fsencode(p) if isinstance(p, str) else p for p in status.untracked)
    return sorted(paths)


def stage_all(repo: Repo) -> None:
    """Stage additions, modifications and deletions in the working tree."""
    status = porcelain.status(repo)
    root = Path(repo.path)
    removed: List[bytes] = []
    to_add: List[str] = []
    for tree_path in status.unstaged:
        full = root / os.fsdecode(tree_path)
        if os.path.lexists(full):
            to_add.append(str(full))
        else:
            removed.append(tree_path)
    for untracked in status.untracked:
        to_add.append(str(root / os.fsdecode(untracked)))

    if removed:
        index = repo.open_index()
        for tree_path in removed:
            if tree_path in index:
                del index[tree_path]
        index.write()
    if to_add:
        porcelain.add(repo.path, paths=to_add)


def index_has_changes_vs_head(repo: Repo) -> bool:
    """Return True if the index differs from HEAD (i.e., there is something to commit)."""
    head_commit = repo[repo.head()]
    index = repo.open_index()
    return any(index.changes_from_tree(repo.object_store, head_commit.tree))


def commits_ahead_of_origin(repo: Repo) -> int:
    """Count commits reachable from HEAD but from no origin/* tracking ref."""
    remote_shas = set(repo.refs.as_dict(b"refs/remotes/origin").values())
    return sum(
        1 for _ in repo.get_walker(include=[head_sha(repo)], exclude=list(remote_shas))
    )
