from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List

from batchpatch.errors import InputError
from batchpatch.git_urls import https_clone_url, ssh_clone_url

logger = logging.getLogger(__name__)

_URL_RE = re.compile(r"^https?://(?:www\.)?github\.com/([\w.-]+)/([\w.-]+?)(?:\.git)?/?$")
_SLUG_RE = re.compile(r"^([\w.-]+)/([\w.-]+)$")


@dataclass(frozen=True, order=True)
class RepositoryTarget:
    owner: str
    name: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        return self.slug

    def clone_url(self, mode: str) -> str:
        if mode == "https":
            return https_clone_url(self.slug)
        return ssh_clone_url(self.slug)

    @classmethod
    def parse(cls, text: str) -> RepositoryTarget:
        """Parse `owner/name` or a github.com HTTPS URL."""
        value = text.strip()
        match = _URL_RE.match(value) or _SLUG_RE.match(value)
        if not match:
            raise ValueError(f"not a repository reference: {text!r}")
        owner, name = match.group(1), match.group(2)
        # Parts become checkout directories, so dot-names would escape the working dir.
        for part in (owner, name):
            if part.startswith("."):
                raise ValueError(
                    f"not a repository reference: {text!r} ({part!r} is not a valid name)"
                )
        return cls(owner=owner, name=name)


def parse_repo_lines(lines: Iterable[str], *, source: str = "<input>") -> List[RepositoryTarget]:
    """Parse repository list lines.

    Blank lines and lines starting with `#` are ignored. Every malformed line is
    reported before failing, and a repository listed twice is an error.
    """
    targets: List[RepositoryTarget] = []
    problems: List[str] = []
    first_seen: dict[RepositoryTarget, int] = {}
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            target = RepositoryTarget.parse(line)
        except ValueError as exc:
            problems.append(f"{source}:{lineno}: {exc}")
            continue
        if target in first_seen:
            problems.append(
                f"{source}:{lineno}: duplicate entry {target} (first listed on line {first_seen[target]})"
            )
            continue
        first_seen[target] = lineno
        targets.append(target)

    if problems:
        for problem in problems:
            logger.error("%s", problem)
        raise InputError(
            f"Repository list {source} has {len(problems)} invalid line(s):\n"
            + "\n".join(problems)
        )
    return targets


def read_repo_list(path: Path) -> List[RepositoryTarget]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise InputError(f"Cannot read repository list {path}: {exc}") from exc
    targets = parse_repo_lines(text.splitlines(), source=str(path))
    logger.info("Loaded %d repositories from %s", len(targets), path)
    return targets
