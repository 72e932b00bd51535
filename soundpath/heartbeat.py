from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class LoopStats:
    runs: int = 0
    failures: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"runs": self.runs, "failures": self.failures}


class IntervalLoop:
    """Runs a callable on a fixed interval in a daemon thread until stopped."""

    def __init__(self, *, name: str, interval_s: float, fn: Callable[[], Any]) -> None:
        self.name = name
        self.interval_s = max(0.01, float(interval_s))
        self.fn = fn
        self.stats = LoopStats()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        self.stats.runs += 1
        try:
            self.fn()
        except Exception:
            self.stats.failures += 1
            logger.exception("%s iteration failed", self.name)
            return False
        return True

    def wait(self, timeout: float) -> bool:
        return self._stop.wait(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info("%s started interval_s=%s", self.name, self.interval_s)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("%s stopped", self.name)
