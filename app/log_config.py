"""Process-wide logging setup."""

import logging

from app.config import settings

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    """Install a single stream handler on the root logger (idempotent)."""
    global _configured
    if _configured:
        return
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=_FORMAT,
    )
    # httpx logs every request at INFO; the poll loop would flood the log
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
