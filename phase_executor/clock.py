"""Time source for polling loops.

Polling code takes a Clock instead of calling ``time.sleep`` directly so
tests can drive it with a fake that records sleeps and returns instantly.
"""

from __future__ import annotations

import time


class Clock:
    """Wall clock backed by the ``time`` module."""

    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


SYSTEM_CLOCK = Clock()
