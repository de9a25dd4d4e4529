"""
Process-wide logging setup.

Every module logs through ``logging.getLogger(__name__)`` with pipe-delimited
key=value messages ("Ingest start | doc=%s file=%s"). This module only decides
level and format; it is called once by the Celery worker (after_setup_logger)
or by whatever host process embeds the ingestion service.
"""

from __future__ import annotations

import logging

from rag_ingestion.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Third-party loggers that are noisy at INFO
_QUIET_LOGGERS = ("botocore", "aiobotocore", "urllib3", "httpx", "openai")


def configure_logging(level: str | int | None = None) -> None:
    resolved = level or (logging.DEBUG if settings.debug else settings.log_level.upper())
    logging.basicConfig(level=resolved, format=LOG_FORMAT)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
