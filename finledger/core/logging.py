from __future__ import annotations

import logging

from finledger.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure root logging once per process; later calls only adjust the level.
    global _configured
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if not _configured:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
        # Keep HTTP client chatter out of the ledger logs.
        logging.getLogger("httpx").setLevel(logging.WARNING)
        _configured = True
    logging.getLogger().setLevel(level)
