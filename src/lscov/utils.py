import contextlib
import time
from typing import Generator

from loguru import logger


@contextlib.contextmanager
def stopwatch(label: str = "unlabeled block") -> Generator[None, None, None]:
    """Context manager for measuring runtime. Logs at debug level."""
    start_time = time.time()
    yield
    logger.debug("{} took {:.4f} seconds", label, time.time() - start_time)
