"""
Monotonic millisecond tick source.

Ticks are unsigned 32-bit values that wrap around (about every 49.7 days);
always measure intervals with elapsed_ms(), never by subtracting directly.
"""

import time

TICK_BITS = 32
TICK_MASK = (1 << TICK_BITS) - 1


def elapsed_ms(start: int, now: int) -> int:
    """Milliseconds between two tick readings, correct across one wraparound."""
    return (now - start) & TICK_MASK


class TickCounter:
    """Millisecond tick counter anchored at creation time."""

    def __init__(self):
        self._origin = time.monotonic()

    def current_ms(self) -> int:
        return int((time.monotonic() - self._origin) * 1000) & TICK_MASK

    def __repr__(self):
        return f"TickCounter(now={self.current_ms()}ms)"
