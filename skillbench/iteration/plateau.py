# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Plateau detection for the iteration loop."""
import logging
from typing import Optional

from skillbench.iteration.strategy import MAX_PLATEAU_LEVEL

logger = logging.getLogger(__name__)


class PlateauTracker:
    """Counts consecutive sub-threshold rounds and maps them to an escape level.

    A round is sub-threshold when it has no winner, or when its winner beat
    the previous best-ever by less than ``threshold``. Every
    ``rounds_before_escape`` consecutive sub-threshold rounds raise the level
    by one (capped at 3). A round at or above the threshold resets both.
    A winner with no previous best-ever to compare against also resets.
    """

    def __init__(self, threshold: float = 1.0, rounds_before_escape: int = 2,
                 counter: int = 0, level: int = 0) -> None:
        self.threshold = threshold
        self.rounds_before_escape = max(1, rounds_before_escape)
        self.counter = counter
        self.level = level

    def observe(self, score_delta: Optional[float], has_winner: bool) -> int:
        """Feed one round's outcome; returns the level for the next round."""
        if has_winner and (score_delta is None or score_delta >= self.threshold):
            if self.counter or self.level:
                logger.info("Plateau cleared (delta=%s)", score_delta)
            self.counter = 0
            self.level = 0
            return self.level

        self.counter += 1
        if self.counter % self.rounds_before_escape == 0 and self.level < MAX_PLATEAU_LEVEL:
            self.level += 1
            logger.info(
                "Plateau level -> %d after %d sub-threshold round(s)", self.level, self.counter,
            )
        return self.level
