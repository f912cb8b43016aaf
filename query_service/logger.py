"""
Shared logger for the query service.

Every module logs through the single ``logger`` object exported here so the
level and format are configured in exactly one place.
"""

import logging
import sys

from config import LOG_LEVEL

LOGGER_NAME = "query_service"

logger = logging.getLogger(LOGGER_NAME)

if not logger.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(module)s] %(message)s")
    )
    logger.addHandler(_handler)
    logger.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    logger.propagate = False
