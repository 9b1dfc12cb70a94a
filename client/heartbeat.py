"""Cooperative single-threaded heartbeat scheduler."""
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Heartbeat:
    """
    Calls a task at a variable rate.

    The task may pause the heartbeat while it works and start it again
    afterwards; changes to `rate` take effect at the next `synchronize()`.
    """

    def __init__(
        self,
        task: Callable[[], None],
        rate: float,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the heartbeat.

        Args:
            task: Function called on every beat
            rate: Seconds between beats
            sleep: Sleep function (default: time.sleep)
            clock: Monotonic clock (default: time.monotonic)
        """
        self.task = task
        self.rate = rate
        self.sleep = sleep
        self.clock = clock
        self.paused = True
        self.beats = 0
        self._next_beat: Optional[float] = None

    def start(self) -> None:
        self.paused = False
        if self._next_beat is None:
            self._next_beat = self.clock()

    def pause(self) -> None:
        self.paused = True

    def synchronize(self) -> None:
        """Schedule the next beat `rate` seconds from now."""
        self._next_beat = self.clock() + self.rate

    def force_call(self) -> None:
        """Run the task immediately, outside the schedule."""
        self._beat()

    def _beat(self) -> None:
        self.beats += 1
        self.task()

    def run(self, until: Callable[[], bool], max_beats: Optional[int] = None) -> int:
        """
        Beat until `until()` is true or `max_beats` beats have run.

        Returns:
            Number of beats run by this call
        """
        self.start()
        ran = 0
        while not until():
            if max_beats is not None and ran >= max_beats:
                break

            if self.paused:
                # Nothing else can resume us in a single thread
                logger.debug("Heartbeat paused; resuming")
                self.start()

            wait = self._next_beat - self.clock() if self._next_beat is not None else 0
            if wait > 0:
                self.sleep(wait)

            self._next_beat = self.clock() + self.rate
            self._beat()
            ran += 1
        return ran
