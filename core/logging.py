"""
Logging configuration
"""

import logging
import sys
from core.config import settings

# Keys the engine passes through ``extra=`` when a log line concerns a record
CONTEXT_KEYS = ("organization_id", "file_id", "run_id")


class ETLContextFilter(logging.Filter):
    """Render file/run identifiers passed via ``extra`` into a single field"""

    def filter(self, record: logging.LogRecord) -> bool:
        parts = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_KEYS
            if getattr(record, key, None)
        ]
        record.etl_context = f" [{' '.join(parts)}]" if parts else ""
        return True


def setup_logging(level: str = None):
    """Configure application logging"""

    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ETLContextFilter())

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s |%(etl_context)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[handler],
        force=True,
    )

    # Set SQLAlchemy and scheduler logging to WARNING to reduce noise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level_name} level")
