from __future__ import annotations

import io
import logging
import re
from typing import Optional

from dulwich import porcelain

from batchpatch.config import CloneMode, RunConfig
from batchpatch.errors import StepFailure
from batchpatch.git_urls import redact, strip_auth_from_url, token_auth_github_url
from batchpatch.repo_workspace import open_checkout, origin_url
from batchpatch.steps.clone import transport_kwargs
from batchpatch.targets import RepositoryTarget

logger = logging.getLogger(__name__)

# dulwich reports per-ref rejections on errstream instead of raising.
_REF_REJECTED_RE = re.compile(r"^Push of ref (\S+) failed: (.*)$", re.MULTILINE)


class PushBranch:
    def execute(self, target: RepositoryTarget, config: RunConfig) -> Optional[str]:
        repo = open_checkout(config.checkout_path(target))
        try:
            origin = strip_auth_from_url(origin_url(repo))
            push_url = origin
            if config.mode is CloneMode.HTTPS and config.github_token:
                push_url = token_auth_github_url(origin, config.github_token) or origin

            branch_ref = f"refs/heads/{config.branch}"
            if branch_ref.encode() not in repo.refs:
                raise StepFailure(f"local branch {config.branch} does not exist")

            refspec = f"{branch_ref}:{branch_ref}"
            # Avoid logging tokens; log the sanitized origin only.
            logger.info("[push] pushing %s of %s to %s", refspec, target, origin)
            out = io.BytesIO()
            err = io.BytesIO()
            try:
                porcelain.push(
                    repo,
                    push_url,
                    refspecs=[refspec],
                    outstream=out,
                    errstream=err,
                    **transport_kwargs(push_url, config),
                )
            except Exception as exc:
                raise StepFailure(
                    redact(f"push to {origin} failed: {exc}", config.github_token)
                ) from exc
        finally:
            repo.close()

        messages = err.getvalue().decode("utf-8", errors="replace")
        rejected = _REF_REJECTED_RE.findall(messages)
        if rejected:
            detail = "; ".join(f"{ref}: {why.strip()}" for ref, why in rejected)
            raise StepFailure(
                redact(f"push to {origin} rejected {detail}", config.github_token)
            )
        return config.branch
