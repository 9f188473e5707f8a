"""Shared type definitions for gadgetry.

The frozen dataclasses (Block, MemoryWriteEvent) are the immutable trace records
appended to an ExecutionLog by emulation callbacks. The TypedDicts describe the
serialized form of profiles, so that saved profiles stay plain JSON-compatible
dicts that can be loaded without importing the profiler.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypedDict


@dataclass(frozen=True, order=True)
class Block:
    """A contiguous run of executed instructions."""

    entry: int
    size: int

    @property
    def end(self) -> int:
        return self.entry + self.size

    def addresses(self) -> range:
        """Every byte address covered by the block."""
        return range(self.entry, self.end)

    def __repr__(self) -> str:
        return f"[BLOCK 0x{self.entry:08x} - 0x{self.end:08x}]"


@dataclass(frozen=True, order=True)
class MemoryWriteEvent:
    """One memory write observed during a run."""

    program_counter: int
    address: int
    byte_count: int
    value: int

    def addresses(self) -> range:
        return range(self.address, self.address + self.byte_count)


# ---------------------------------------------------------------------------
# Serialized schema
# ---------------------------------------------------------------------------


class BlockRecord(TypedDict):
    entry: int
    size: int


class WriteRecord(TypedDict):
    program_counter: int
    address: int
    byte_count: int
    value: int


class FaultRecord(TypedDict, total=False):
    """A captured CPU fault. `address` is absent when the emulator gave none."""

    code: str
    address: int


class AggregateProfileRecord(TypedDict):
    """Field-by-field serialized form of an AggregateProfile.

    Every list has one element per contained run, index-aligned. Registers are
    keyed by register name; emulation times are in seconds, unrounded.
    """

    paths: list[list[BlockRecord]]
    cpu_errors: list[FaultRecord | None]
    emulation_times: list[float]
    registers: list[dict[str, int]]
    gadgets_executed: list[list[int]]
    write_logs: list[list[WriteRecord]]
    executable: bool
    arch: str


class CpuFault(Exception):
    """A CPU fault raised by an emulator while running one candidate.

    Faults are per-run and recoverable: the worker pool stores them on the run's
    ExecutionLog and scoring treats them as data.
    """

    def __init__(self, code: str, address: int | None = None):
        self.code = code
        self.address = address
        if address is None:
            super().__init__(code)
        else:
            super().__init__(f"{code} at 0x{address:x}")

    def __eq__(self, other):
        if not isinstance(other, CpuFault):
            return NotImplemented
        return (self.code, self.address) == (other.code, other.address)

    def __hash__(self):
        return hash((self.code, self.address))

    def __reduce__(self):
        return (CpuFault, (self.code, self.address))

    def to_record(self) -> FaultRecord:
        record: FaultRecord = {"code": self.code}
        if self.address is not None:
            record["address"] = self.address
        return record

    @classmethod
    def from_record(cls, record: FaultRecord) -> CpuFault:
        return cls(record["code"], record.get("address"))
