from __future__ import annotations

import io
import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from dulwich import porcelain
from dulwich.errors import NotGitRepository
from dulwich.repo import Repo

from batchpatch.config import CloneMode, RunConfig
from batchpatch.errors import StepFailure
from batchpatch.git_urls import (
    is_ssh_url,
    redact,
    same_remote,
    strip_auth_from_url,
    token_auth_github_url,
)
from batchpatch.repo_workspace import head_sha, origin_url
from batchpatch.targets import RepositoryTarget

logger = logging.getLogger(__name__)


def clone_url_for(target: RepositoryTarget, config: RunConfig) -> str:
    url = target.clone_url(config.mode)
    if config.mode is CloneMode.HTTPS and config.github_token:
        return token_auth_github_url(url, config.github_token) or url
    return url


def transport_kwargs(url: str, config: RunConfig) -> Dict[str, Any]:
    """Extra arguments for dulwich's transport: the SSH key when one is configured."""
    if config.ssh_key_path and is_ssh_url(url):
        return {"key_filename": str(config.ssh_key_path)}
    return {}


def _is_inside(path: Path, root: Path) -> bool:
    return path != root and path.is_relative_to(root)


def _reuse_problem(checkout: Path, url: str) -> Optional[str]:
    """Return why an existing checkout cannot be reused, or None if it can."""
    try:
        repo = Repo(str(checkout))
    except NotGitRepository as exc:
        return f"not a git repository: {exc}"
    try:
        # An interrupted clone leaves a repository without a resolvable HEAD.
        if head_sha(repo) not in repo.object_store:
            return "HEAD commit is missing"
        origin = strip_auth_from_url(origin_url(repo))
    except StepFailure as exc:
        return exc.reason
    finally:
        repo.close()
    if same_remote(origin, url):
        return None
    return f"origin {origin} is not {strip_auth_from_url(url)}"


class CloneRepo:
    def __init__(
        self, url_for: Callable[[RepositoryTarget, RunConfig], str] = clone_url_for
    ) -> None:
        self._url_for = url_for

    def execute(self, target: RepositoryTarget, config: RunConfig) -> Optional[str]:
        checkout = config.checkout_path(target)
        root = config.working_dir.resolve()
        if not _is_inside(checkout.resolve(), root):
            raise StepFailure(f"checkout path {checkout} is outside the working directory {root}")

        url = self._url_for(target, config)
        if (checkout / ".git").exists():
            problem = _reuse_problem(checkout, url)
            if problem is None:
                logger.info("[clone] reusing existing checkout at %s", checkout)
                return str(checkout)
            logger.warning(
                "[clone] existing checkout at %s cannot be reused; recloning: %s",
                checkout,
                problem,
            )
        if checkout.exists():
            logger.info("[clone] removing leftover directory %s", checkout)
            shutil.rmtree(checkout)
        checkout.parent.mkdir(parents=True, exist_ok=True)

        logger.info("[clone] %s -> %s", strip_auth_from_url(url), checkout)
        err = io.BytesIO()
        try:
            porcelain.clone(
                url,
                str(checkout),
                checkout=True,
                errstream=err,
                **transport_kwargs(url, config),
            )
        except Exception as exc:
            shutil.rmtree(checkout, ignore_errors=True)
            raise StepFailure(
                redact(f"clone of {strip_auth_from_url(url)} failed: {exc}", config.github_token)
            ) from exc
        return str(checkout)
