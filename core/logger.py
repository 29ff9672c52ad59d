import logging
import os
from config.settings import LOG_FILE, LOG_LEVEL

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)

logging.basicConfig(
    filename=str(LOG_FILE),
    level=logging.getLevelName(LOG_LEVEL),
    format="%(asctime)s [%(levelname)s] %(message)s",
)

logger = logging.getLogger("vmbridge")


def log_event(message: str, level: int = logging.INFO) -> None:
    """
    Write a single line event to the main vmbridge.log file.

    Expected outcomes (a VM that does not exist, a lookup with no results)
    are written at TRACE so they only show up when tracing.
    """
    logger.log(level, message)
