"""Root logger setup shared by the API process and Celery workers."""

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Ensure the root logger has a handler and the desired level.

    Uvicorn configures handlers before importing our code, Celery and scripts
    usually do not.
    """
    if level is None:
        from product_importer.core.config import get_settings

        level = get_settings().log_level
    resolved_level = level.upper()
    root_logger = logging.getLogger()

    if not root_logger.handlers:
        logging.basicConfig(
            level=resolved_level,
            format=LOG_FORMAT,
            handlers=[logging.StreamHandler(sys.stdout)],
        )
    else:
        root_logger.setLevel(resolved_level)

    logging.captureWarnings(True)
    return logging.getLogger("product_importer")
