"""
Architecture-parametrized register keys.

A Register is only constructible for a name its Architecture knows, so register
maps can be keyed by Register everywhere without per-architecture code. This
module also parses register patterns from configuration and scores final
register snapshots against them.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Mapping

from gadgetry.distance import hamming_bits


@dataclass(frozen=True)
class Architecture:
    """Describes the register file and word layout of a CPU architecture."""

    name: str
    word_size: int
    endian: str
    registers: tuple[str, ...] = field(repr=False)

    @property
    def word_bits(self) -> int:
        return self.word_size * 8

    @property
    def word_mask(self) -> int:
        return (1 << self.word_bits) - 1

    def register(self, name: str) -> Register:
        """Return the Register called `name` (case-insensitive)."""
        return Register(self, name.lower())

    def pack_word(self, word: int) -> bytes:
        return (word & self.word_mask).to_bytes(self.word_size, self.endian)


ARCHITECTURES: dict[str, Architecture] = {
    "x86_64": Architecture(
        name="x86_64",
        word_size=8,
        endian="little",
        registers=(
            "rax", "rbx", "rcx", "rdx", "rsi", "rdi", "rbp", "rsp",
            "r8", "r9", "r10", "r11", "r12", "r13", "r14", "r15", "rip", "eflags",
        ),
    ),
    "x86": Architecture(
        name="x86",
        word_size=4,
        endian="little",
        registers=("eax", "ebx", "ecx", "edx", "esi", "edi", "ebp", "esp", "eip", "eflags"),
    ),
    "arm": Architecture(
        name="arm",
        word_size=4,
        endian="little",
        registers=tuple(f"r{i}" for i in range(13)) + ("sp", "lr", "pc", "cpsr"),
    ),
    "mips": Architecture(
        name="mips",
        word_size=4,
        endian="big",
        registers=tuple(f"r{i}" for i in range(32)) + ("pc", "hi", "lo"),
    ),
}


def get_architecture(name: str) -> Architecture:
    try:
        return ARCHITECTURES[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown architecture {name!r}; expected one of {sorted(ARCHITECTURES)}"
        ) from None


@dataclass(frozen=True)
class Register:
    """A semantic register role, valid only for its own architecture."""

    arch: Architecture
    name: str

    def __post_init__(self):
        if self.name not in self.arch.registers:
            raise ValueError(f"{self.name!r} is not a register of {self.arch.name}")

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"Register({self.arch.name}:{self.name})"


RegisterState = Mapping[Register, int]


def parse_registers(names: list[str], arch: Architecture) -> list[Register]:
    """Parse register names, dropping duplicates but keeping first-seen order."""
    registers: list[Register] = []
    for name in names:
        reg = arch.register(name)
        if reg not in registers:
            registers.append(reg)
    return registers


def parse_register_pattern(
    pattern: Mapping[str, int | str], arch: Architecture
) -> dict[Register, int]:
    """Turn a {name: value} mapping into a register pattern.

    Values may be ints or numeric strings ("0xdeadbeef", "42").
    """
    parsed = {}
    for name, value in pattern.items():
        if isinstance(value, str):
            value = int(value, 0)
        parsed[arch.register(name)] = value & arch.word_mask
    return parsed


def random_register_state(
    registers: list[Register], rng: random.Random | None = None
) -> dict[Register, int]:
    """Draw one random word for each register, e.g. to build an input state."""
    rng = rng or random.Random()
    return {reg: rng.getrandbits(reg.arch.word_bits) for reg in registers}


def pattern_distance(pattern: Mapping[Register, int], state: RegisterState) -> int:
    """
    Sum of bit differences between the pattern and a final register snapshot.

    A pattern register missing from the snapshot counts as a whole word of error.
    """
    distance = 0
    for reg, target in pattern.items():
        if reg not in state:
            distance += reg.arch.word_bits
        else:
            distance += hamming_bits(state[reg], target)
    return distance
