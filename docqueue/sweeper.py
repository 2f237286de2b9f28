"""
Host-side periodic timeout sweep.

The queue never runs timers of its own; this loop is one way for an
application to call Queue.apply_timeout on a schedule.
"""

import logging
import signal
import threading
from typing import Optional

from .models import StoreError
from .queue import Queue

logger = logging.getLogger(__name__)

_stop = threading.Event()


def setup_signal_handlers(stop: threading.Event = _stop):
    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping sweeper", signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # Not the main thread; the caller owns the stop event.
            logger.debug("Cannot install handler for signal %s outside the main thread", sig)


def run_sweeper(queue: Queue, interval: float, timeout: Optional[float] = None,
                stop: threading.Event = _stop, max_runs: Optional[int] = None) -> int:
    """
    Call apply_timeout every `interval` seconds until `stop` is set (or
    max_runs sweeps have run). Store failures are logged and the next
    sweep tries again. Returns the total number of reservations released.
    """
    released = 0
    runs = 0
    while not stop.is_set():
        try:
            released += queue.apply_timeout(timeout)
        except StoreError as e:
            logger.warning("Timeout sweep failed: %s", e)
        runs += 1
        if max_runs is not None and runs >= max_runs:
            break
        stop.wait(interval)

    logger.info("Sweeper stopped after %d run(s); released %d task(s)", runs, released)
    return released
