"""
Adverse-event log for a running search.

Faulting batches, tournaments drawn from too small a population and a dead
worker pipeline are appended as one JSON object per line. Counters are kept in
memory whether or not a log file is configured. Recording an event never
raises: a search must not stop because its own bookkeeping failed.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# A batch where at least this fraction of runs faulted is worth a warning.
FAULT_RATE_WARNING_THRESHOLD = 0.5


class HealthMonitor:
    """Count adverse search events and, optionally, append them to a JSONL file."""

    def __init__(self, log_path: Path | None) -> None:
        """
        Args:
            log_path: Where to append events, or None to only count them.
        """
        self.log_path = log_path
        self.counters: dict[str, int] = {}

    def _write_event(self, category: str, event: str, **fields: Any) -> None:
        key = f"{category}.{event}"
        self.counters[key] = self.counters.get(key, 0) + 1
        if self.log_path is None:
            return

        line = json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "cat": category,
                "event": event,
                **fields,
            },
            default=str,
        )
        try:
            with open(self.log_path, "a", encoding="utf-8") as log:
                log.write(line + "\n")
        except OSError:
            pass  # The counter above still records it.

    # --- execution ---------------------------------------------------------

    def record_cpu_faults(self, faults: int, batch_size: int) -> None:
        """Record the faulted runs of one batch; mostly-faulting batches get a second event."""
        self._write_event("execution", "cpu_faults", faults=faults, batch_size=batch_size)
        if batch_size and faults / batch_size >= FAULT_RATE_WARNING_THRESHOLD:
            self._write_event(
                "execution", "high_fault_rate", faults=faults, batch_size=batch_size
            )

    def record_pipeline_failure(self, error: str) -> None:
        self._write_event("execution", "pipeline_failure", error=error)

    # --- population --------------------------------------------------------

    def record_degraded_tournament(self, generation: int, requested: int, drawn: int) -> None:
        """A tournament drew fewer combatants than `tournament_size`."""
        self._write_event(
            "population",
            "degraded_tournament",
            generation=generation,
            requested=requested,
            drawn=drawn,
        )

    def get_summary(self) -> dict[str, int]:
        """Event counts keyed by "category.event"."""
        return dict(self.counters)
