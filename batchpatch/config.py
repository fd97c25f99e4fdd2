from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from batchpatch.errors import InputError
from batchpatch.state import RunMetadata
from batchpatch.targets import RepositoryTarget

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_MESSAGE = "(chore): Batchpatch operations"
DEFAULT_PR_TITLE = "(chore): Batchpatch operations"
DEFAULT_PR_BODY = (
    "Batchpatch applied some operations, please see the commit list for details"
)


class CloneMode(str, Enum):
    SSH = "ssh"
    HTTPS = "https"


class AppConfig(BaseModel):
    """Contents of the JSON config file."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    github_access_token: Optional[str] = Field(default=None, alias="githubAccessToken")
    git_ssh_key_path: Optional[str] = Field(default=None, alias="gitSshKeyPath")


def load_app_config(path: Path, environ: Mapping[str, str] = os.environ) -> AppConfig:
    """Load the config file; a `GITHUB_TOKEN` environment variable overrides its token."""
    if not path.is_file():
        raise InputError(f"Config file not found: {path}")
    try:
        config = AppConfig.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as exc:
        raise InputError(f"Config file {path} is not valid: {exc}") from exc

    env_token = environ.get("GITHUB_TOKEN")
    if env_token:
        config = config.model_copy(update={"github_access_token": env_token})
    if not config.github_access_token:
        logger.warning("No GitHub access token configured; pull requests cannot be created")
    return config


@dataclass(frozen=True)
class DiffFile:
    """A unified diff applied with `patch -p1`."""

    path: Path

    @property
    def identity(self) -> str:
        return f"diff:{self.path}"

    def command(self) -> List[str]:
        return ["patch", "-t", "--forward", "-p1", "-i", str(self.path)]

    def __str__(self) -> str:
        return f"diff {self.path}"


@dataclass(frozen=True)
class PatchScript:
    """An executable run with the checkout as working directory."""

    path: Path

    @property
    def identity(self) -> str:
        return f"script:{self.path}"

    def command(self) -> List[str]:
        return [str(self.path)]

    def __str__(self) -> str:
        return f"script {self.path}"


ChangeSource = Union[DiffFile, PatchScript]


def change_source_from_args(
    patch_file: Optional[str], patch_script: Optional[str]
) -> ChangeSource:
    if bool(patch_file) == bool(patch_script):
        raise InputError("Exactly one of --patch-file or --patch-script is required")
    if patch_file:
        path = Path(patch_file).expanduser().resolve()
        if not path.is_file():
            raise InputError(f"Patch file not found: {path}")
        return DiffFile(path)
    path = Path(patch_script).expanduser().resolve()
    if not path.is_file():
        raise InputError(f"Patch script not found: {path}")
    if not os.access(path, os.X_OK):
        raise InputError(f"Patch script is not executable: {path}")
    return PatchScript(path)


@dataclass(frozen=True)
class RunConfig:
    branch: str
    change_source: ChangeSource
    working_dir: Path
    commit_message: str = DEFAULT_COMMIT_MESSAGE
    mode: CloneMode = CloneMode.SSH
    github_token: Optional[str] = None
    ssh_key_path: Optional[Path] = None
    pr_title: str = DEFAULT_PR_TITLE
    pr_body: str = DEFAULT_PR_BODY
    no_push: bool = False
    # Seconds; None waits for the change source indefinitely.
    script_timeout: Optional[float] = None

    def checkout_path(self, target: RepositoryTarget) -> Path:
        return self.working_dir / target.owner / target.name

    def metadata(self) -> RunMetadata:
        return RunMetadata(
            branch=self.branch,
            change_source=self.change_source.identity,
            commit_message=self.commit_message,
            pr_title=self.pr_title,
            pr_body=self.pr_body,
        )
