import logging
import os

from visualgen.core.config import LOG_DIR, LOG_TO_FILE

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger("visualgen-backend")


def setup_file_logging() -> None:
    if not LOG_TO_FILE:
        return
    root = logging.getLogger()
    log_path = os.path.join(LOG_DIR, "backend.log")
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == log_path:
            return
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    logger.info(f"file logging enabled at {log_path}")
