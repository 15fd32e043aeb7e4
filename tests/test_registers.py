"""
Tests for the register map.
"""

import unittest

from vdc32 import registers
from vdc32.errors import RangeError


class TestRegisters(unittest.TestCase):
    def test_addresses(self):
        self.assertEqual(registers.DEVICE_ADDRESS, 0x8000)
        self.assertEqual(registers.DROP_STATUS, 0x8005)
        self.assertEqual(registers.AC_ON_SIGNAL, 0x800A)
        self.assertEqual(registers.VOLTAGE_START, 0x8010)
        self.assertEqual(registers.DROP_THRESHOLD, 0x8050)
        self.assertEqual(registers.BOARD_NAME, 0x8800)
        self.assertEqual(registers.SERIAL_NUMBER, 0x8820)

    def test_channel_address(self):
        self.assertEqual(registers.channel_address(registers.VOLTAGE_START, 1), 0x8010)
        self.assertEqual(registers.channel_address(registers.VOLTAGE_START, 32), 0x802F)
        self.assertEqual(registers.channel_address(registers.DROP_THRESHOLD, 2), 0x8051)

    def test_channel_out_of_range(self):
        for channel in [0, 33, -1]:
            with self.assertRaises(RangeError):
                registers.channel_address(registers.VOLTAGE_START, channel)

    def test_lookup(self):
        self.assertEqual(registers.lookup(0x8000), ('SYS_ADDRESS', 0))
        self.assertEqual(registers.lookup(0x8006), ('SYS_DROPMASK', 1))
        self.assertEqual(registers.lookup(0x802F), ('CH_VOLTAGE', 31))
        self.assertEqual(registers.lookup(0x883E), ('ID_SERIAL', 30))
        self.assertEqual(registers.lookup(0x883F), (None, None))
        self.assertEqual(registers.lookup(0x0000), (None, None))

    def test_writable_registers_are_defined(self):
        for regname in registers.WRITABLE:
            self.assertIn(regname, registers.REGISTERS)


if __name__ == '__main__':
    unittest.main()
