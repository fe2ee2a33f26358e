import logging
import sys
from pythonjsonlogger import jsonlogger

from order_worker.core.config import settings


def setup_logging(level: str | None = None) -> None:
    logger = logging.getLogger()
    logger.setLevel(level or settings.log_level)

    if any(isinstance(existing.formatter, jsonlogger.JsonFormatter) for existing in logger.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s",
        rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"}
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
