from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..core.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """Attempt count plus a linear delay between attempts.

    ``delay_for(n)`` is the wait after the n-th failed attempt (0-based).
    """

    attempts: int = 3
    base_delay: float = 1.0
    step: float = 1.5
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.base_delay + self.step * attempt)

    def wait(self, attempt: int) -> None:
        delay = self.delay_for(attempt)
        if delay > 0:
            logger.debug("Backing off %.1fs after attempt %d", delay, attempt + 1)
            self.sleep(delay)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "BackoffPolicy":
        settings = settings or get_settings()
        return cls(
            attempts=max(1, settings.retry_attempts),
            base_delay=settings.retry_base_delay_seconds,
            step=settings.retry_step_seconds,
        )


NO_WAIT = BackoffPolicy(base_delay=0.0, step=0.0)
