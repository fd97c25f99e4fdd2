from __future__ import annotations

import logging
from typing import Optional

from github import Auth, Github
from github.GithubException import GithubException
from github.PullRequest import PullRequest
from github.Repository import Repository

from batchpatch.config import RunConfig
from batchpatch.errors import StepFailure
from batchpatch.targets import RepositoryTarget

logger = logging.getLogger(__name__)


def _get_remote_repo(slug: str, token: str) -> Repository:
    gh = Github(auth=Auth.Token(token))
    return gh.get_repo(slug)


def _find_existing_pr(
    remote_repo: Repository, owner: str, branch: str, base_branch: str
) -> Optional[PullRequest]:
    """Return an open PR for the given branch/base combination if present."""
    head = f"{owner}:{branch}"
    for pr in remote_repo.get_pulls(state="open", head=head, base=base_branch):
        return pr
    return None


class CreatePullRequest:
    """Open a pull request from the run's branch into the default branch."""

    def execute(self, target: RepositoryTarget, config: RunConfig) -> Optional[str]:
        if not config.github_token:
            raise StepFailure("no GitHub access token configured; cannot create a pull request")

        try:
            remote_repo = _get_remote_repo(target.slug, config.github_token)
            base_branch = remote_repo.default_branch or "main"

            existing = _find_existing_pr(remote_repo, target.owner, config.branch, base_branch)
            if existing is not None:
                logger.info(
                    "[pr] found existing PR for %s branch %s -> %s",
                    target,
                    config.branch,
                    existing.html_url,
                )
                return existing.html_url

            logger.info(
                "[pr] creating PR for %s head=%s base=%s", target, config.branch, base_branch
            )
            pr = remote_repo.create_pull(
                title=config.pr_title,
                body=config.pr_body,
                head=config.branch,
                base=base_branch,
                maintainer_can_modify=True,
            )
        except GithubException as exc:
            message = exc.data.get("message") if isinstance(exc.data, dict) else exc.data
            raise StepFailure(f"GitHub API error {exc.status}: {message}") from exc

        logger.info("[pr] created %s", pr.html_url)
        return pr.html_url
