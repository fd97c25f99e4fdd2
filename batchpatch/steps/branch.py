from __future__ import annotations

import logging
from typing import Optional

from dulwich import porcelain

from batchpatch.config import RunConfig
from batchpatch.repo_workspace import head_sha, open_checkout
from batchpatch.targets import RepositoryTarget

logger = logging.getLogger(__name__)


class CreateBranch:
    """Create the run's branch at the checkout's HEAD and switch to it."""

    def execute(self, target: RepositoryTarget, config: RunConfig) -> Optional[str]:
        repo = open_checkout(config.checkout_path(target))
        try:
            branch_ref = f"refs/heads/{config.branch}".encode()
            if branch_ref in repo.refs:
                logger.info("[branch] reusing existing local branch %s in %s", config.branch, target)
            else:
                base = head_sha(repo)
                logger.info(
                    "[branch] creating %s in %s from %s", config.branch, target, base.decode()[:8]
                )
                porcelain.branch_create(repo, config.branch.encode(), base)
            repo.refs.set_symbolic_ref(b"HEAD", branch_ref)
            porcelain.reset(repo, "hard", repo.refs[branch_ref])
        finally:
            repo.close()
        return config.branch
