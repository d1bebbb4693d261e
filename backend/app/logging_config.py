from __future__ import annotations

import logging

from app.config.settings import settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str | int | None = None) -> None:
    """Configure root logging for workers and scripts."""

    resolved = level if level is not None else settings.log_level
    if isinstance(resolved, str):
        resolved = logging.getLevelName(resolved.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(resolved)

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(console)

    # Quiet noisy libraries.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("rq.worker").setLevel(logging.WARNING)
