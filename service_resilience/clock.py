"""Wall-clock helpers.  Persisted timestamps are epoch milliseconds."""

import time
from typing import Callable

# Zero-argument callable returning epoch milliseconds.  Injected everywhere
# time is read so tests can drive it deterministically.
Clock = Callable[[], int]


def now_ms() -> int:
    # Wall clock, not time.monotonic(): the value is compared against
    # timestamps written by a previous process, and monotonic clocks
    # are only meaningful within one process.
    return int(time.time() * 1000)
