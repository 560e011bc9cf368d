"""In-flight flags serializing order placement."""

from typing import Optional

import structlog

log = structlog.get_logger()


class InFlightFlag:
    """Marks an order placement as in progress.

    The start time is recorded so a flag left behind by a hung call can be
    force-cleared once it is older than ``max_age`` seconds.
    """

    def __init__(self, name: str, max_age: float = 30.0):
        self.name = name
        self.max_age = max_age
        self._started_at: Optional[float] = None

    @property
    def active(self) -> bool:
        return self._started_at is not None

    @property
    def started_at(self) -> Optional[float]:
        return self._started_at

    def start(self, now: float) -> None:
        self._started_at = now

    def clear(self) -> None:
        self._started_at = None

    def age(self, now: float) -> float:
        if self._started_at is None:
            return 0.0
        return now - self._started_at

    def clear_if_stale(self, now: float) -> bool:
        """Force-clear the flag if it outlived ``max_age``. Returns True if cleared."""
        if self._started_at is None or self.age(now) <= self.max_age:
            return False
        log.error(
            "In-flight flag stuck, force clearing",
            flag=self.name,
            age_seconds=round(self.age(now), 1),
            max_age=self.max_age,
        )
        self._started_at = None
        return True
