from __future__ import annotations

import logging
import time
from typing import Callable

from icsync.models import ThrottleConfig


logger = logging.getLogger(__name__)


class MutationThrottle:
    """Pauses between store mutations to stay under the calendar's burst limits."""

    def __init__(self, config: ThrottleConfig, sleep: Callable[[float], None] = time.sleep) -> None:
        self.config = config
        self._sleep = sleep
        self.mutation_count = 0

    def after_mutation(self) -> None:
        self.mutation_count += 1
        if self.config.pause_seconds:
            self._sleep(self.config.pause_seconds)
        if self.mutation_count % self.config.burst_every == 0:
            logger.info("Throttle pause at %d mutations", self.mutation_count)
            if self.config.burst_pause_seconds:
                self._sleep(self.config.burst_pause_seconds)

    def after_error(self) -> None:
        logger.info("Sleeping %.0fs after error before continuing", self.config.error_pause_seconds)
        if self.config.error_pause_seconds:
            self._sleep(self.config.error_pause_seconds)
