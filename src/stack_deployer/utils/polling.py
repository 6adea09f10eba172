"""Poll-sleep-retry primitive shared by readiness, rollout and health checks."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from ..errors import DeployerError

logger = logging.getLogger(__name__)


class ConditionTimeout(Exception):
    """Raised by :func:`await_condition` when the probe never succeeded."""

    def __init__(self, describe: str, elapsed: float, last_error: Optional[BaseException] = None) -> None:
        self.describe = describe
        self.elapsed = elapsed
        self.last_error = last_error
        super().__init__(f"Timed out after {elapsed:.0f}s waiting for {describe}")


def await_condition(
    probe: Callable[[], bool],
    *,
    interval: float,
    timeout: float,
    describe: str = "condition",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> float:
    """Block until ``probe()`` returns true or ``timeout`` seconds have elapsed.

    The probe is called at least once. A ``DeployerError`` or ``ValueError`` raised
    by the probe counts as a failed attempt; the last one is attached to the timeout.

    Returns:
        Seconds elapsed until the probe succeeded.

    Raises:
        ConditionTimeout: the probe did not succeed within ``timeout``.
    """
    if interval <= 0:
        raise ValueError("interval must be positive")

    start = clock()
    last_error: Optional[BaseException] = None
    while True:
        try:
            if probe():
                return clock() - start
            last_error = None
        except (DeployerError, ValueError) as exc:
            logger.debug("Probe for %s raised: %s", describe, exc)
            last_error = exc

        elapsed = clock() - start
        if elapsed >= timeout:
            raise ConditionTimeout(describe, elapsed, last_error)
        sleep(min(interval, timeout - elapsed))
