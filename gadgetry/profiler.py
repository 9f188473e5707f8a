#!/usr/bin/env python3
"""
Execution telemetry for single runs and for whole batches of runs.

An ExecutionLog is handed to the emulator for one run and filled in by its
callbacks, possibly from a thread other than the one that created it. Each kind
of record goes into its own append-only queue, so callbacks never contend on a
shared lock. Once the run has finished the log is frozen exactly once into an
immutable RunProfile.

An AggregateProfile holds any number of runs as parallel, index-aligned lists:
`paths[i]`, `cpu_errors[i]`, `emulation_times[i]`, `registers[i]`,
`gadgets_executed[i]` and `write_logs[i]` all describe run `i`. Runs are only
ever appended, in order, by `collate()` and `absorb()`.

Run this module as a script to inspect a saved profile.
"""

from __future__ import annotations

import argparse
import json
import os
import queue
import secrets
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Iterable, Iterator, Mapping

from gadgetry.registers import Register, get_architecture
from gadgetry.types import (
    AggregateProfileRecord,
    Block,
    CpuFault,
    MemoryWriteEvent,
)

MICROS_PER_SECOND = 1_000_000


def _drain(q: queue.SimpleQueue) -> list:
    """Pop everything from a queue in FIFO order."""
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


class ExecutionLog:
    """Per-run, concurrently appended trace of one emulation.

    The record_* methods are safe to call from emulation hooks on any thread.
    `freeze()` must only be called by the owner once the run is over; the log is
    consumed by it and rejects any further writes.
    """

    def __init__(
        self,
        output_registers: Iterable[Register] = (),
        inputs: Mapping[Register, int] | None = None,
    ):
        self.output_registers = tuple(output_registers)
        self.inputs = dict(inputs or {})
        self._blocks: queue.SimpleQueue[Block] = queue.SimpleQueue()
        self._gadgets: queue.SimpleQueue[int] = queue.SimpleQueue()
        self._writes: queue.SimpleQueue[MemoryWriteEvent] = queue.SimpleQueue()
        self._registers: dict[Register, int] = {}
        self._cpu_error: CpuFault | None = None
        self._duration = 0.0
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_open(self) -> None:
        if self._frozen:
            raise RuntimeError("ExecutionLog has already been frozen")

    def record_block(self, block: Block) -> None:
        self._check_open()
        self._blocks.put(block)

    def record_gadget(self, address: int) -> None:
        self._check_open()
        self._gadgets.put(address)

    def record_write(self, event: MemoryWriteEvent) -> None:
        self._check_open()
        self._writes.put(event)

    def record_registers(self, registers: Mapping[Register, int]) -> None:
        self._check_open()
        self._registers.update(registers)

    def read_registers(self, reader: Callable[[Register], int]) -> None:
        """Snapshot every output register through an emulator's register reader."""
        self.record_registers({reg: reader(reg) for reg in self.output_registers})

    def record_fault(self, fault: CpuFault) -> None:
        self._check_open()
        self._cpu_error = fault

    def record_duration(self, seconds: float) -> None:
        self._check_open()
        self._duration = seconds

    def freeze(self) -> RunProfile:
        """Drain every collection once and return the immutable RunProfile."""
        self._check_open()
        self._frozen = True
        profile = RunProfile(
            path=tuple(_drain(self._blocks)),
            gadgets_executed=frozenset(_drain(self._gadgets)),
            write_log=tuple(_drain(self._writes)),
            registers=MappingProxyType(dict(self._registers)),
            cpu_error=self._cpu_error,
            duration=self._duration,
        )
        self._registers = {}
        return profile


@dataclass(frozen=True)
class RunProfile:
    """Frozen telemetry of one candidate's single execution."""

    path: tuple[Block, ...] = ()
    gadgets_executed: frozenset[int] = frozenset()
    write_log: tuple[MemoryWriteEvent, ...] = ()
    registers: Mapping[Register, int] = field(default_factory=lambda: MappingProxyType({}))
    cpu_error: CpuFault | None = None
    duration: float = 0.0


@dataclass
class AggregateProfile:
    """Index-aligned telemetry of many runs."""

    paths: list[list[Block]] = field(default_factory=list)
    cpu_errors: list[CpuFault | None] = field(default_factory=list)
    emulation_times: list[float] = field(default_factory=list)
    registers: list[dict[Register, int]] = field(default_factory=list)
    gadgets_executed: list[set[int]] = field(default_factory=list)
    write_logs: list[list[MemoryWriteEvent]] = field(default_factory=list)
    executable: bool = True

    def __post_init__(self):
        lengths = {
            len(self.paths),
            len(self.cpu_errors),
            len(self.emulation_times),
            len(self.registers),
            len(self.gadgets_executed),
            len(self.write_logs),
        }
        if len(lengths) != 1:
            raise ValueError(f"Per-run fields of an AggregateProfile differ in length: {lengths}")

    def __len__(self) -> int:
        return len(self.paths)

    # ------------------------------------------------------------------
    # Construction and merging
    # ------------------------------------------------------------------

    @classmethod
    def collate(cls, runs: Iterable[RunProfile]) -> AggregateProfile:
        """Build an aggregate from raw runs in one pass, keeping their order."""
        profile = cls()
        for run in runs:
            profile.paths.append(list(run.path))
            profile.cpu_errors.append(run.cpu_error)
            profile.emulation_times.append(run.duration)
            profile.registers.append(dict(run.registers))
            profile.gadgets_executed.append(set(run.gadgets_executed))
            profile.write_logs.append(list(run.write_log))
        return profile

    @classmethod
    def from_run(cls, run: RunProfile) -> AggregateProfile:
        return cls.collate([run])

    def absorb(self, other: AggregateProfile) -> None:
        """Append another aggregate's runs after ours, field by field.

        Not internally locked: callers sharing an aggregate across threads must
        serialize their calls.
        """
        self.paths.extend(list(p) for p in other.paths)
        self.cpu_errors.extend(other.cpu_errors)
        self.emulation_times.extend(other.emulation_times)
        self.registers.extend(dict(r) for r in other.registers)
        self.gadgets_executed.extend(set(g) for g in other.gadgets_executed)
        self.write_logs.extend(list(w) for w in other.write_logs)
        self.executable = self.executable and other.executable

    def copy(self) -> AggregateProfile:
        clone = AggregateProfile(executable=self.executable)
        clone.absorb(self)
        return clone

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def path_iter(self) -> Iterator[list[Block]]:
        return iter(self.paths)

    def avg_emulation_time(self) -> float:
        """Mean emulation time in seconds."""
        if not self.emulation_times:
            raise ValueError("Cannot average emulation times over zero runs")
        return sum(self.emulation_times) / len(self.emulation_times)

    def avg_emulation_micros(self) -> float:
        return self.avg_emulation_time() * MICROS_PER_SECOND

    def visited_addresses(self) -> set[int]:
        """Every byte address covered by any executed block in any run."""
        visited = set()
        for path in self.paths:
            for block in path:
                visited.update(block.addresses())
        return visited

    def addresses_written_to(self) -> set[int]:
        written = set()
        for log in self.write_logs:
            for event in log:
                written.update(event.addresses())
        return written

    def mem_write_ratio(self, total_writable_bytes: int) -> float:
        """Fraction of the writable memory that was written by any run."""
        if total_writable_bytes <= 0:
            raise ValueError("total_writable_bytes must be positive")
        ratio = len(self.addresses_written_to()) / total_writable_bytes
        if ratio > 1.0:
            raise ValueError(
                f"More bytes written than are writable ({ratio:.3f} of {total_writable_bytes})"
            )
        return ratio

    def was_this_written(self, word: int) -> list[MemoryWriteEvent]:
        """Every write event, across all runs, whose value equals `word`."""
        return [event for log in self.write_logs for event in log if event.value == word]

    def was_this_executed(self, address: int) -> bool:
        return any(address in gadgets for gadgets in self.gadgets_executed)

    def gadgets_union(self) -> set[int]:
        union = set()
        for gadgets in self.gadgets_executed:
            union |= gadgets
        return union

    def crash_count(self) -> int:
        return sum(1 for error in self.cpu_errors if error is not None)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> AggregateProfileRecord:
        arch = ""
        for regs in self.registers:
            for reg in regs:
                arch = reg.arch.name
                break
            if arch:
                break
        return {
            "paths": [[{"entry": b.entry, "size": b.size} for b in path] for path in self.paths],
            "cpu_errors": [e.to_record() if e is not None else None for e in self.cpu_errors],
            "emulation_times": list(self.emulation_times),
            "registers": [{reg.name: value for reg, value in regs.items()} for regs in self.registers],
            "gadgets_executed": [sorted(g) for g in self.gadgets_executed],
            "write_logs": [
                [
                    {
                        "program_counter": e.program_counter,
                        "address": e.address,
                        "byte_count": e.byte_count,
                        "value": e.value,
                    }
                    for e in log
                ]
                for log in self.write_logs
            ],
            "executable": self.executable,
            "arch": arch,
        }

    @classmethod
    def from_dict(cls, record: AggregateProfileRecord) -> AggregateProfile:
        arch = get_architecture(record["arch"]) if record.get("arch") else None
        registers = []
        for regs in record["registers"]:
            if regs and arch is None:
                raise ValueError("Serialized profile has registers but no architecture")
            registers.append({arch.register(name): value for name, value in regs.items()})
        return cls(
            paths=[[Block(**b) for b in path] for path in record["paths"]],
            cpu_errors=[
                CpuFault.from_record(e) if e is not None else None for e in record["cpu_errors"]
            ],
            emulation_times=[float(t) for t in record["emulation_times"]],
            registers=registers,
            gadgets_executed=[set(g) for g in record["gadgets_executed"]],
            write_logs=[[MemoryWriteEvent(**e) for e in log] for log in record["write_logs"]],
            executable=record["executable"],
        )


def save_profile(profile: AggregateProfile, path: Path) -> None:
    """Save a profile as JSON, atomically replacing any previous file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.tmp.{secrets.token_hex(4)}")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(profile.to_dict(), f)
        os.replace(tmp_path, path)
    except OSError:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def load_profile(path: Path) -> AggregateProfile | None:
    """Load a saved profile, or return None if it is missing or unreadable."""
    if not path.is_file():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return AggregateProfile.from_dict(json.load(f))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError, OSError) as e:
        print(f"Warning: Could not load profile {path}: {e}", file=sys.stderr)
        return None


def summarize(profile: AggregateProfile, total_writable_bytes: int | None = None) -> dict:
    """Headline numbers for a profile, as printed by the inspector."""
    summary = {
        "runs": len(profile),
        "executable": profile.executable,
        "crashes": profile.crash_count(),
        "blocks_executed": sum(len(p) for p in profile.paths),
        "addresses_visited": len(profile.visited_addresses()),
        "gadgets_executed": len(profile.gadgets_union()),
        "bytes_written": len(profile.addresses_written_to()),
    }
    if len(profile):
        summary["avg_emulation_micros"] = round(profile.avg_emulation_micros(), 2)
    if total_writable_bytes:
        summary["mem_write_ratio"] = profile.mem_write_ratio(total_writable_bytes)
    return summary


def main() -> None:
    """Print a summary of a saved profile, or convert it to pretty JSON."""
    parser = argparse.ArgumentParser(description="Inspect a saved gadgetry execution profile.")
    parser.add_argument("profile", type=Path, help="Path to a saved profile JSON file.")
    parser.add_argument(
        "--writable-bytes",
        type=int,
        default=None,
        help="Size of the writable memory, to report the memory write ratio.",
    )
    parser.add_argument(
        "--dump",
        type=Path,
        default=None,
        help="Write the full profile as indented JSON to this path.",
    )
    args = parser.parse_args()

    profile = load_profile(args.profile)
    if profile is None:
        print(f"Error: No readable profile at {args.profile}", file=sys.stderr)
        sys.exit(1)

    print(json.dumps(summarize(profile, args.writable_bytes), indent=2))

    if args.dump:
        with open(args.dump, "w", encoding="utf-8") as f:
            json.dump(profile.to_dict(), f, indent=2)
        print(f"Profile saved as JSON to {args.dump}")


if __name__ == "__main__":
    main()
