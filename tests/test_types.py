"""Tests for the shared trace records."""

import pickle
import unittest

from gadgetry.types import Block, CpuFault, MemoryWriteEvent


class TestBlock(unittest.TestCase):
    def test_addresses_and_end(self):
        block = Block(0x401000, 3)
        self.assertEqual(block.end, 0x401003)
        self.assertEqual(list(block.addresses()), [0x401000, 0x401001, 0x401002])
        self.assertEqual(repr(block), "[BLOCK 0x00401000 - 0x00401003]")

    def test_blocks_are_hashable_and_ordered(self):
        self.assertEqual(len({Block(1, 2), Block(1, 2)}), 1)
        self.assertLess(Block(1, 2), Block(2, 1))

    def test_write_event_addresses(self):
        event = MemoryWriteEvent(program_counter=0x10, address=0x2000, byte_count=2, value=0xFFFF)
        self.assertEqual(list(event.addresses()), [0x2000, 0x2001])


class TestCpuFault(unittest.TestCase):
    def test_equality_by_code_and_address(self):
        self.assertEqual(CpuFault("READ_UNMAPPED", 4), CpuFault("READ_UNMAPPED", 4))
        self.assertNotEqual(CpuFault("READ_UNMAPPED", 4), CpuFault("READ_UNMAPPED"))

    def test_message(self):
        self.assertEqual(str(CpuFault("FETCH_PROT", 0xBEEF)), "FETCH_PROT at 0xbeef")
        self.assertEqual(str(CpuFault("INSN_INVALID")), "INSN_INVALID")

    def test_record_omits_missing_address(self):
        self.assertEqual(CpuFault("INSN_INVALID").to_record(), {"code": "INSN_INVALID"})
        fault = CpuFault.from_record({"code": "WRITE_PROT", "address": 8})
        self.assertEqual(fault, CpuFault("WRITE_PROT", 8))

    def test_pickles(self):
        fault = CpuFault("WRITE_PROT", 8)
        self.assertEqual(pickle.loads(pickle.dumps(fault)), fault)


if __name__ == "__main__":
    unittest.main()
