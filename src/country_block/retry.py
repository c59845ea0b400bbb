import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


def retry_until(
    attempt: Callable[[], bool],
    attempts: int,
    delay: float,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> bool:
    """Call ``attempt`` until it returns True, at most ``attempts`` times.

    Sleeps ``delay`` seconds between attempts, never after the last one.
    Returns False when every attempt reported failure; the caller decides
    which typed error that becomes.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for n in range(1, attempts + 1):
        if attempt():
            if n > 1:
                logger.info(f"{label} succeeded on attempt {n}/{attempts}")
            return True
        if n < attempts:
            logger.warning(f"{label} not settled (attempt {n}/{attempts}), retrying in {delay}s")
            sleep(delay)

    logger.error(f"{label} failed after {attempts} attempts")
    return False
