"""Console progress reporting with elapsed time."""

from __future__ import annotations

import sys
import time
from typing import Iterable, Optional, TextIO


def format_vec(vec: Iterable[float]) -> str:
    """Render a three component vector as ``(x,y,z)``."""
    x, y, z = vec
    return f"({x:g},{y:g},{z:g})"


class ProgressLog:
    """Prints a percentage line whenever progress advances by more than ``min_change``."""

    def __init__(
        self,
        prefix: str = "",
        target: int = 100,
        min_change: int = 0,
        stream: Optional[TextIO] = None,
    ) -> None:
        self.prefix = prefix
        self.target = target
        self.min_change = min_change
        self._stream = stream
        self.last_complete = 0
        self.last_perc = 0
        self._start = time.perf_counter()

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def incr_target(self, incr: int) -> None:
        self.target += incr

    def update(self, complete: Optional[int] = None) -> None:
        """Record progress; without an argument, advance by one step."""
        if complete is None:
            complete = self.last_complete + 1
        perc = 100 * complete // self.target
        if perc - self.last_perc > self.min_change:
            elapsed = int((time.perf_counter() - self._start) * 1000) / 1000.0
            print(
                f"[{perc}] {self.prefix} - Time elapsed {elapsed:g}",
                file=self.stream,
            )
            self.last_perc = perc
        self.last_complete = complete

    def close(self) -> None:
        self.stream.flush()

    def __enter__(self) -> "ProgressLog":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()