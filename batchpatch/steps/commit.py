from __future__ import annotations

import logging
from typing import Optional

from dulwich import porcelain

from batchpatch.config import RunConfig
from batchpatch.errors import StepFailure
from batchpatch.repo_workspace import (
    commit_identity,
    commits_ahead_of_origin,
    index_has_changes_vs_head,
    open_checkout,
    stage_all,
)
from batchpatch.targets import RepositoryTarget

logger = logging.getLogger(__name__)


class CommitChanges:
    def execute(self, target: RepositoryTarget, config: RunConfig) -> Optional[str]:
        repo = open_checkout(config.checkout_path(target))
        try:
            stage_all(repo)
            if not index_has_changes_vs_head(repo):
                ahead = commits_ahead_of_origin(repo)
                if ahead:
                    # The commit was made by an earlier run that stopped before recording it.
                    logger.info(
                        "[commit] nothing staged in %s but branch is %d commit(s) ahead of origin",
                        target,
                        ahead,
                    )
                    return repo.head().decode()
                raise StepFailure("no changes to commit; the patch left the checkout unchanged")

            identity = commit_identity(repo).encode()
            sha = porcelain.commit(
                repo,
                message=config.commit_message.encode("utf-8"),
                author=identity,
                committer=identity,
            )
        finally:
            repo.close()
        logger.info("[commit] committed %s in %s", sha.decode()[:8], target)
        return sha.decode()
