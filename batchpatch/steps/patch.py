from __future__ import annotations

import logging
import subprocess
from typing import Optional

from dulwich import porcelain

from batchpatch.config import RunConfig
from batchpatch.errors import StepFailure
from batchpatch.repo_workspace import changed_paths, open_checkout
from batchpatch.targets import RepositoryTarget

logger = logging.getLogger(__name__)

# Keep recorded failure reasons readable.
MAX_REASON_CHARS = 2000


def _tail(text: str, limit: int = MAX_REASON_CHARS) -> str:
    return text if len(text) <= limit else "..." + text[-limit:]


class ApplyPatch:
    """
    Apply the run's change source inside the checkout.

    Tracked files are reset to the branch head and untracked files removed first,
    so a retry after a partial application starts from a clean tree.
    """

    def execute(self, target: RepositoryTarget, config: RunConfig) -> Optional[str]:
        checkout = config.checkout_path(target)
        source = config.change_source
        repo = open_checkout(checkout)
        try:
            porcelain.reset(repo, "hard", b"HEAD")
            porcelain.clean(repo, repo.path)

            logger.info("[patch] applying %s to %s", source, target)
            try:
                completed = subprocess.run(
                    source.command(),
                    cwd=checkout,
                    stdin=subprocess.DEVNULL,
                    capture_output=True,
                    text=True,
                    check=False,
                    timeout=config.script_timeout,
                )
            except subprocess.TimeoutExpired as exc:
                raise StepFailure(f"{source} timed out after {exc.timeout}s") from exc
            except OSError as exc:
                raise StepFailure(f"could not run {source}: {exc}") from exc

            output = "\n".join(
                part.strip() for part in (completed.stdout, completed.stderr) if part and part.strip()
            )
            if completed.returncode != 0:
                logger.warning(
                    "[patch] %s did not apply to %s (exit %s)", source, target, completed.returncode
                )
                raise StepFailure(
                    _tail(f"{source} exited with status {completed.returncode}: {output}")
                )
            if output:
                logger.debug("[patch] output for %s:\n%s", target, output)

            changed = len(changed_paths(repo))
        finally:
            repo.close()
        logger.info("[patch] patched %s; %d files were updated", target, changed)
        return f"{changed} files changed"
