"""Logging configuration for the application"""
import logging
from typing import Optional

from app.core.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Auth failures, webhook outcomes and request lines
AUDIT_LOGGERS = ("security", "billing", "api_access")

QUIET_LOGGERS = ("stripe", "urllib3", "urllib3.connectionpool", "sqlalchemy.engine", "multipart")


def setup_logging(level: Optional[str] = None):
    """Configure root logging once at startup.

    Audit loggers stay at INFO or lower whatever LOG_LEVEL says.
    """
    level_name = (level or settings.LOG_LEVEL).upper()
    root_level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=root_level, format=LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S', force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    for name in AUDIT_LOGGERS:
        logging.getLogger(name).setLevel(min(root_level, logging.INFO))
