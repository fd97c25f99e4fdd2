from __future__ import annotations

import logging
import os

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def configure_logging(level: str | int | None = None, *, force: bool = False) -> None:
    """Install a single stream handler on the root logger.

    `level` falls back to the `BATCHPATCH_LOG_LEVEL` environment variable, then INFO.
    """
    global _configured
    if _configured and not force:
        return
    resolved = level or os.environ.get("BATCHPATCH_LOG_LEVEL") or "INFO"
    if isinstance(resolved, str):
        resolved = resolved.upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT, force=force)
    # dulwich and urllib3 are chatty at INFO.
    logging.getLogger("dulwich").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    _configured = True


def ensure_logging_configured() -> None:
    if not logging.getLogger().handlers:
        configure_logging()
