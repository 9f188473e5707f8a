"""
Candidate execution for gadgetry.

This module provides the Hatchery ("the workers") which handles:
- A fixed pool of long-lived worker threads, each owning one emulator instance
- One ordered request channel and one ordered response channel
- Running each candidate once per input register state and collating the runs
- Capturing CPU faults per run without disturbing the rest of the batch

The emulator itself is an external collaborator: anything with a
`run(candidate, log)` method that drives the CPU and reports what happened
through the ExecutionLog callbacks, raising CpuFault when the CPU faults.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Protocol

from gadgetry.profiler import AggregateProfile, ExecutionLog
from gadgetry.registers import Register
from gadgetry.types import CpuFault

logger = logging.getLogger(__name__)

# How often a waiting caller checks that some worker is still alive.
POLL_INTERVAL = 0.05

_SHUTDOWN = object()


class PipelineError(RuntimeError):
    """The worker pipeline failed; the in-flight call has no result."""


@dataclass(frozen=True)
class MemoryLayout:
    """Sizes of the loaded image's executable and writable memory, in bytes."""

    executable_bytes: int
    writable_bytes: int


class Emulator(Protocol):
    def run(self, candidate: Any, log: ExecutionLog) -> None:
        """Execute a candidate, recording its trace into `log`.

        Raise CpuFault if the CPU faults; the run is still kept.
        """


class Hatchery:
    """
    Execute candidates on a fixed pool of worker threads.

    `execute()` and `execute_batch()` block until every requested candidate has
    a profile. Completion order inside a batch is arbitrary; results are matched
    back to candidates by their position in the request.
    """

    def __init__(
        self,
        emulator_factory: Callable[[], Emulator],
        inputs: Iterable[Mapping[Register, int]] | None = None,
        output_registers: Iterable[Register] = (),
        num_workers: int = 4,
    ):
        """
        Initialize the Hatchery and start its workers.

        Args:
            emulator_factory: Called once per worker to build its own emulator.
            inputs: Initial register states; each candidate runs once per state.
            output_registers: Registers to snapshot at the end of every run.
            num_workers: Size of the worker pool.
        """
        if num_workers < 1:
            raise ValueError("Hatchery needs at least one worker")
        self.emulator_factory = emulator_factory
        self.inputs = [dict(i) for i in inputs] if inputs is not None else [{}]
        if not self.inputs:
            raise ValueError("Hatchery needs at least one input state")
        self.output_registers = tuple(output_registers)

        self._requests: queue.Queue = queue.Queue()
        self._responses: queue.Queue = queue.Queue()
        # One batch in flight at a time keeps responses unambiguous.
        self._batch_lock = threading.Lock()
        self._closed = False
        self.runs_executed = 0
        self.faults_captured = 0

        self._workers = [
            threading.Thread(target=self._worker_loop, name=f"hatchery-{i}", daemon=True)
            for i in range(num_workers)
        ]
        for worker in self._workers:
            worker.start()

    def __enter__(self) -> Hatchery:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _worker_loop(self) -> None:
        try:
            emulator = self.emulator_factory()
        except Exception as e:
            logger.error(f"[!] Hatchery worker could not build its emulator: {e}")
            return

        while True:
            request = self._requests.get()
            if request is _SHUTDOWN:
                return
            ticket, candidate = request
            try:
                profile = self._execute_one(emulator, candidate)
            except Exception as e:
                self._responses.put((ticket, None, e))
            else:
                self._responses.put((ticket, profile, None))

    def _execute_one(self, emulator: Emulator, candidate: Any) -> AggregateProfile:
        runs = []
        for inputs in self.inputs:
            log = ExecutionLog(self.output_registers, inputs)
            start = time.perf_counter()
            try:
                emulator.run(candidate, log)
            except CpuFault as fault:
                logger.debug(f"  [~] CPU fault during run: {fault}")
                log.record_fault(fault)
            log.record_duration(time.perf_counter() - start)
            runs.append(log.freeze())
        return AggregateProfile.collate(runs)

    # ------------------------------------------------------------------
    # Caller side
    # ------------------------------------------------------------------

    def _await_response(self) -> tuple[int, AggregateProfile | None, Exception | None]:
        while True:
            try:
                return self._responses.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if not any(worker.is_alive() for worker in self._workers):
                    self._closed = True
                    raise PipelineError("Every hatchery worker has stopped") from None

    def execute(self, candidate: Any) -> tuple[Any, AggregateProfile]:
        return self.execute_batch([candidate])[0]

    def execute_batch(self, candidates: Iterable[Any]) -> list[tuple[Any, AggregateProfile]]:
        """Run a batch and return (candidate, profile) pairs in request order."""
        candidates = list(candidates)
        if not candidates:
            return []

        with self._batch_lock:
            if self._closed:
                raise PipelineError("Hatchery is closed")
            for ticket, candidate in enumerate(candidates):
                self._requests.put((ticket, candidate))

            profiles: list[AggregateProfile | None] = [None] * len(candidates)
            failure = None
            # Collect every response, even after a failure, so none leak into the next batch.
            for _ in candidates:
                ticket, profile, error = self._await_response()
                if error is not None:
                    failure = failure or error
                else:
                    profiles[ticket] = profile

        if failure is not None:
            raise PipelineError(f"Hatchery worker failed: {failure}") from failure

        for profile in profiles:
            self.runs_executed += len(profile)
            self.faults_captured += profile.crash_count()
        return list(zip(candidates, profiles))

    def close(self) -> None:
        """Stop every worker and wait for them to exit."""
        if self._closed and not any(w.is_alive() for w in self._workers):
            return
        self._closed = True
        for _ in self._workers:
            self._requests.put(_SHUTDOWN)
        for worker in self._workers:
            worker.join()
