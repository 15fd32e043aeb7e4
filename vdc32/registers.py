"""
Register definitions for the 32-channel DC voltage monitoring board, protocol version 'GJVdc-32'.

All registers are holding registers, read with function 0x03 and written with function 0x10. Addresses are the
raw 16-bit values sent in the packet - there is no 40001-style offset.

REGISTERS is a dictionary with register name as key, and a tuple of (register_address, number_of_registers,
description, scaling_function) as value, in the same form used by the device classes to decode a block of
register values. A scaling_function of None means the raw integer is used as-is.
"""

from vdc32 import conversion   # Conversion functions between register values and actual voltages/baud rates/text
from vdc32.errors import RangeError

PROTOCOL_VERSION = 'GJVdc-32'

# Basic configuration and status registers, one register each unless noted
DEVICE_ADDRESS = 0x8000       # Modbus address, 1-128
VERSION = 0x8001              # Firmware version * 10, eg 10 means 1.0
BAUD_RATE = 0x8002            # Baud rate code, 0=9600, 1=19200, 2=38400, 3=57600
IO_DIRECTION = 0x8003         # Bitmap, 1 means output, 0 means input
IO_VALUE = 0x8004
DROP_STATUS = 0x8005          # Two registers, high word first - bit N is set if channel N+1 has dropped
SET_TEMPERATURE = 0x8007      # deg C
CURRENT_TEMPERATURE = 0x8008  # deg C
FAN_CURRENT = 0x8009          # mA, eg 1000 means 1A
AC_ON_SIGNAL = 0x800A         # 1 if the AC-on signal is asserted

# Per-channel blocks, one register per channel, channel 1 first
VOLTAGE_START = 0x8010        # Channel voltages, 0x8010-0x802F
DROP_TIME = 0x8030            # Seconds each channel has been in the dropped state, 0-65535
DROP_THRESHOLD = 0x8050       # Drop threshold voltage, 1000 means 10V

# Raw data used for factory calibration
CALIBRATION_DATA1 = 0x80C0
CALIBRATION_DATA2 = 0x80E0

# Identification text, UTF-16, one character per register
BOARD_NAME = 0x8800           # 32 registers (64 bytes)
SERIAL_NUMBER = 0x8820        # 31 registers (62 bytes), all 0xFFFF until programmed at the factory

# Bootloader command addresses - the firmware upload protocol is not implemented
BOOTLOADER_ENTER = 0xBBBB
BOOTLOADER_DATA = 0xBBBC

CHANNEL_COUNT = 32
DROP_STATUS_COUNT = 2
CALIBRATION_COUNT = 32
BOARD_NAME_COUNT = 32
SERIAL_NUMBER_COUNT = 31

MIN_DEVICE_ADDRESS = 1
MAX_DEVICE_ADDRESS = 128

REGISTERS = {
             'SYS_ADDRESS':   (DEVICE_ADDRESS, 1, 'Modbus station address', None),
             'SYS_VERSION':   (VERSION, 1, 'Firmware version * 10', conversion.scale_version),
             'SYS_BAUDRATE':  (BAUD_RATE, 1, 'Baud rate code', conversion.scale_baudrate),
             'SYS_IODIR':     (IO_DIRECTION, 1, 'IO direction bitmap (1=output)', None),
             'SYS_IOVAL':     (IO_VALUE, 1, 'IO value bitmap', None),
             'SYS_DROPMASK':  (DROP_STATUS, DROP_STATUS_COUNT, 'Channel drop bitmap, high word first', None),
             'SYS_SETTEMP':   (SET_TEMPERATURE, 1, 'Set temperature', None),
             'SYS_TEMP':      (CURRENT_TEMPERATURE, 1, 'Current temperature', None),
             'SYS_FANCURR':   (FAN_CURRENT, 1, 'Fan current in mA', None),
             'SYS_ACON':      (AC_ON_SIGNAL, 1, 'AC-on signal asserted', None),
             'CH_VOLTAGE':    (VOLTAGE_START, CHANNEL_COUNT, 'Channel 1-32 voltages', conversion.scale_voltage),
             'CH_DROPTIME':   (DROP_TIME, CHANNEL_COUNT, 'Channel 1-32 drop duration in seconds', None),
             'CH_DROPTH':     (DROP_THRESHOLD, CHANNEL_COUNT, 'Channel 1-32 drop thresholds', conversion.scale_threshold),
             'CAL_DATA1':     (CALIBRATION_DATA1, CALIBRATION_COUNT, 'Calibration raw data 1', None),
             'CAL_DATA2':     (CALIBRATION_DATA2, CALIBRATION_COUNT, 'Calibration raw data 2', None),
             'ID_BOARDNAME':  (BOARD_NAME, BOARD_NAME_COUNT, 'Board name (UTF-16)', None),
             'ID_SERIAL':     (SERIAL_NUMBER, SERIAL_NUMBER_COUNT, 'Serial number (UTF-16)', None),
}

# Registers that the board accepts writes to. Everything else in REGISTERS is read-only.
WRITABLE = ['SYS_ADDRESS', 'SYS_BAUDRATE', 'SYS_IODIR', 'SYS_IOVAL', 'SYS_SETTEMP', 'CH_DROPTH']


def channel_address(block_start, channel):
    """
    Return the register address for one channel in a 32-register per-channel block.

    :param block_start: First address of the block, eg VOLTAGE_START
    :param channel: Channel number, 1-32
    :return: Register address
    """
    if not (1 <= channel <= CHANNEL_COUNT):
        raise RangeError('Channel number %s must be in the range 1-%d' % (channel, CHANNEL_COUNT))
    return block_start + channel - 1


def lookup(address):
    """
    Find the register table entry containing the given address.

    :param address: Register address, 0-65535
    :return: A tuple of (register_name, offset_into_block), or (None, None) if the address isn't defined.
    """
    for regname, (regnum, numreg, regdesc, scalefunc) in REGISTERS.items():
        if regnum <= address < regnum + numreg:
            return regname, address - regnum
    return None, None
