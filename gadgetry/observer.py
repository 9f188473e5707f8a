"""
Windowed telemetry for a running search.

The Observer runs as its own thread and is fed scored candidates over a
channel. It keeps the most recent ones in a fixed-size ring buffer and reports
rolling statistics every time the buffer index wraps around. Nothing it does
feeds back into selection.
"""

from __future__ import annotations

import json
import logging
import queue
import sys
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psutil

from gadgetry.execution import PipelineError

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass(frozen=True)
class WindowReport:
    observations: int
    window_size: int
    mean_fitness: float
    best_fitness: float
    worst_fitness: float


class Window:
    """Ring buffer of the last `window_size` scored candidates."""

    def __init__(self, window_size: int):
        if window_size < 1:
            raise ValueError("Window size must be at least 1")
        self.window_size = window_size
        self.frame: list[Any] = [None] * window_size
        self.i = 0
        self.observations = 0

    def insert(self, candidate: Any) -> WindowReport | None:
        """Store a candidate; return a report whenever the index wraps to zero."""
        self.frame[self.i] = candidate
        self.i = (self.i + 1) % self.window_size
        self.observations += 1
        if self.i == 0:
            return self.report()
        return None

    def report(self) -> WindowReport:
        fitnesses = [float(c.fitness) for c in self.frame if c is not None]
        if not fitnesses:
            raise ValueError("Cannot report on an empty window")
        return WindowReport(
            observations=self.observations,
            window_size=len(fitnesses),
            mean_fitness=sum(fitnesses) / len(fitnesses),
            best_fitness=min(fitnesses),
            worst_fitness=max(fitnesses),
        )


class Observer:
    """Telemetry actor: `observe()` sends, a background thread aggregates."""

    def __init__(self, window_size: int, telemetry_log: Path | None = None):
        self.window_size = window_size
        self.telemetry_log = telemetry_log
        self.reports: list[WindowReport] = []
        self.error: Exception | None = None
        self._channel: queue.Queue = queue.Queue()
        self._stopped = False
        # Built here so a bad window size fails in the caller, not in the thread.
        self._window = Window(window_size)
        self._thread = threading.Thread(target=self._run, name="observer", daemon=True)
        self._thread.start()

    @classmethod
    def spawn(cls, config: Any) -> Observer:
        return cls(config.observer.window_size, getattr(config.observer, "telemetry_log", None))

    def __enter__(self) -> Observer:
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def _run(self) -> None:
        while True:
            candidate = self._channel.get()
            if candidate is _STOP:
                return
            try:
                report = self._window.insert(candidate)
            except Exception as e:
                self.error = e
                logger.error(f"[!] Observer stopped: {e}")
                return
            if report is not None:
                self._publish(report)

    def _publish(self, report: WindowReport) -> None:
        self.reports.append(report)
        logger.info(
            f"[+] Average fitness over the last {report.window_size}: "
            f"{report.mean_fitness:.4f} (best {report.best_fitness:.4f})"
        )
        if self.telemetry_log is not None:
            self._log_datapoint(report)

    def _log_datapoint(self, report: WindowReport) -> None:
        """Append the report, plus process resource usage, to the telemetry log."""
        datapoint: dict[str, Any] = asdict(report)
        datapoint["timestamp"] = datetime.now(timezone.utc).isoformat()
        datapoint["process_rss_mb"] = round(psutil.Process().memory_info().rss / (1024 * 1024), 2)
        try:
            datapoint["system_load_1min"] = psutil.getloadavg()[0]
        except (OSError, AttributeError):
            datapoint["system_load_1min"] = None
        try:
            with open(self.telemetry_log, "a", encoding="utf-8") as f:
                f.write(json.dumps(datapoint) + "\n")
        except IOError as e:
            print(f"[!] Warning: Could not write to telemetry log file: {e}", file=sys.stderr)

    def observe(self, candidate: Any) -> None:
        """Hand a scored candidate to the observer thread."""
        if candidate.fitness is None:
            raise ValueError("Only scored candidates can be observed")
        if self._stopped or not self._thread.is_alive():
            raise PipelineError("Observer is not running") from self.error
        self._channel.put(candidate)

    def stop(self) -> None:
        """Flush pending observations and stop the thread."""
        if self._stopped:
            return
        self._stopped = True
        self._channel.put(_STOP)
        self._thread.join()
