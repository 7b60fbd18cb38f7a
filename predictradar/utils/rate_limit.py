"""
Request pacing for external quote providers.

Unauthenticated providers are loosely rate limited, so requests are issued
strictly one after another with a minimum interval between them. The pacing
state lives on a RequestPacer instance owned by whoever issues the requests.
"""

import time
from typing import Callable, Optional

from loguru import logger


class RequestPacer:
    """
    Enforces a minimum interval between consecutive requests.

    The clock and sleep functions are injectable so that tests can run a
    full cycle without waiting.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize pacer.

        Args:
            min_interval: Minimum seconds between two requests
            clock: Monotonic clock returning seconds
            sleep: Function used to wait
        """
        if min_interval < 0:
            raise ValueError("min_interval must be non-negative")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_request: Optional[float] = None
        self.total_waited = 0.0

    def wait(self) -> float:
        """
        Block until the next request may be issued and mark it as issued.

        Returns:
            Seconds spent waiting
        """
        waited = 0.0
        if self._last_request is not None:
            elapsed = self._clock() - self._last_request
            remaining = self.min_interval - elapsed
            if remaining > 0:
                logger.debug(f"Pacing: waiting {remaining:.2f}s before next request")
                self._sleep(remaining)
                waited = remaining
        self.total_waited += waited
        self._last_request = self._clock()
        return waited

    def reset(self) -> None:
        """Forget the last request time."""
        self._last_request = None
        self.total_waited = 0.0
