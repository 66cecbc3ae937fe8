"""
Cancellable fixed-interval polling.

Stands in for a push subscription the indexer does not offer. Each tick is a
fresh request whose result overwrites the previous projection. A result is
delivered only if no newer tick was started and the scheduler was not
cancelled while the request was in flight.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Generic, Optional, Protocol, TypeVar

from geoguess.errors import GuessrError
from geoguess.metrics import Metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

GAME_POLL_INTERVAL = 5.0
LOBBY_POLL_INTERVAL = 10.0


class Clock(Protocol):
    def now(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock in epoch seconds, comparable with ledger end_time."""

    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class PollScheduler(Generic[T]):
    """
    Periodic fetch -> on_result loop.

    Transient failures (GuessrError.transient) in either step are logged,
    counted and retried on the next tick. Fatal GuessrErrors propagate to the
    caller of tick()/run().

    Usage:
        poller = PollScheduler(lambda: index.get_game(7), projection.observe, 5.0)
        poller.run()          # until poller.cancel()
    """

    def __init__(
        self,
        fetch: Callable[[], T],
        on_result: Callable[[T], None],
        interval: float,
        *,
        clock: Optional[Clock] = None,
        metrics: Optional[Metrics] = None,
        name: str = "poll",
    ):
        if interval <= 0:
            raise ValueError("poll interval must be positive")
        self._fetch = fetch
        self._on_result = on_result
        self.interval = interval
        self.clock = clock or SystemClock()
        self.metrics = metrics or Metrics()
        self.name = name
        self._generation = 0
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop polling. In-flight results are discarded."""
        if not self._cancelled:
            logger.debug(f"{self.name}: cancelled")
        self._cancelled = True
        self._generation += 1

    def invalidate(self) -> None:
        """Supersede the in-flight poll without stopping the schedule."""
        self._generation += 1

    def tick(self) -> bool:
        """
        Run one poll.

        Returns:
            True if the result was delivered to on_result
        """
        if self._cancelled:
            return False
        self._generation += 1
        generation = self._generation

        try:
            result = self._fetch()
        except GuessrError as e:
            if not e.transient:
                raise
            self.metrics.inc("poll_errors_total")
            logger.warning(f"{self.name}: poll failed, retrying next tick: {e.user_message()}")
            return False

        if self._cancelled or generation != self._generation:
            self.metrics.inc("polls_discarded_total")
            logger.debug(f"{self.name}: discarding superseded poll result")
            return False

        try:
            self._on_result(result)
        except GuessrError as e:
            if not e.transient:
                raise
            self.metrics.inc("poll_errors_total")
            logger.warning(f"{self.name}: handler failed, retrying next tick: {e.user_message()}")
            return False
        return True

    def run(self, max_ticks: Optional[int] = None) -> int:
        """Tick every `interval` seconds until cancelled. Returns ticks run."""
        ticks = 0
        while not self._cancelled:
            self.tick()
            ticks += 1
            if self._cancelled or (max_ticks is not None and ticks >= max_ticks):
                break
            self.clock.sleep(self.interval)
        return ticks
