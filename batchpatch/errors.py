from __future__ import annotations


class BatchpatchError(Exception):
    """Base class for errors raised by batchpatch."""


class InputError(BatchpatchError):
    """Invalid invocation: bad repository list, flags or config file."""


class CorruptState(BatchpatchError):
    """The state file exists but cannot be trusted."""


class ConfigurationDrift(BatchpatchError):
    def __init__(self, repository: str, differences: dict[str, tuple[str, str]]):
        self.repository = repository
        self.differences = differences
        detail = ", ".join(
            f"{key}: recorded {old!r}, now {new!r}"
            for key, (old, new) in sorted(differences.items())
        )
        super().__init__(f"{repository}: configuration drift ({detail})")


class StepFailure(BatchpatchError):
    """An executor could not complete its step."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)
