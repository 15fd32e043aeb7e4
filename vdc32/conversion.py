"""
Scaling functions that convert raw register values into real values, and back again.

Each scale_* function takes a raw register value (0-65535) and returns the physical value, or if reverse=True,
takes a physical value and returns the raw register value to write.
"""

import logging

from vdc32.errors import RangeError, UnsupportedValueError

logger = logging.getLogger('vdc32.conversion')

HIGH_RANGE_OFFSET = 0x8000   # Raw values above this are in 10mV steps, offset by 0x8000
LOW_RANGE_MAX = 32.768       # Voltages up to this are sent in 1mV steps

# Baud rate code (register contents) as key, baud rate as value
BAUDRATE_CODES = {0:9600,
                  1:19200,
                  2:38400,
                  3:57600}
SUPPORTED_BAUDRATES = sorted(BAUDRATE_CODES.values())
DEFAULT_BAUDRATE = 57600     # Returned for any unrecognised baud rate code

UNSET_WORD = 0xFFFF          # Identification registers hold this until they are programmed at the factory


def _check_raw(raw, what):
    if not (0 <= raw <= 0xFFFF):
        raise RangeError('%s of %s is outside the range of a 16-bit register' % (what, raw))
    return raw


def scale_voltage(value, reverse=False):
    """
    Convert a raw channel voltage register to Volts (if reverse=False), or convert a value in Volts to raw
    (if reverse=True).

    Raw values above 0x8000 are (raw - 0x8000) in hundredths of a Volt, covering up to 327.67V. Raw values up to
    and including 0x8000 are in thousandths of a Volt, covering 0-32.768V.

    :param value: raw register contents as a value from 0-65535, or a voltage in Volts
    :param reverse: Boolean, True to perform physical->raw conversion instead of raw->physical
    :return: output_value in Volts, or raw register value
    """
    if reverse:
        if value < 0:
            raise RangeError('Negative voltage %s can not be encoded' % value)
        if value > LOW_RANGE_MAX:
            return _check_raw(int(round(value * 100)) + HIGH_RANGE_OFFSET, 'Voltage %sV, encoded value' % value)
        else:
            return int(round(value * 1000))
    else:
        if value > HIGH_RANGE_OFFSET:
            return (value - HIGH_RANGE_OFFSET) / 100.0
        else:
            return value / 1000.0


def scale_threshold(value, reverse=False):
    """
    Convert a raw drop threshold register to Volts (if reverse=False), or convert a threshold in Volts to raw (if
    reverse=True). Raw values are hundredths of a volt, so 1000 means 10V.

    This is NOT the same scale as a channel voltage register.

    :param value: raw register contents as a value from 0-65535, or a threshold voltage in Volts
    :param reverse: Boolean, True to perform physical->raw conversion instead of raw->physical
    :return: output_value in Volts, or raw register value
    """
    if reverse:
        if value < 0:
            raise RangeError('Negative threshold %s can not be encoded' % value)
        return _check_raw(int(round(value * 100)), 'Threshold %sV, encoded value' % value)
    else:
        return value / 100.0


def scale_baudrate(value, reverse=False):
    """
    Convert a baud rate code register to the baud rate (if reverse=False), or convert a baud rate to the code to
    write (if reverse=True).

    An unrecognised code read from the device is returned as the highest supported rate (57600), rather than raising
    an exception, but trying to encode an unsupported baud rate raises UnsupportedValueError.

    :param value: raw register contents (baud rate code), or a baud rate
    :param reverse: Boolean, True to perform physical->raw conversion instead of raw->physical
    :return: baud rate, or baud rate code
    """
    if reverse:
        for code, baudrate in BAUDRATE_CODES.items():
            if baudrate == value:
                return code
        raise UnsupportedValueError('Unsupported baud rate %s, must be one of %s' % (value, SUPPORTED_BAUDRATES))
    else:
        if value not in BAUDRATE_CODES:
            logger.warning('Unknown baud rate code %s, assuming %d' % (value, DEFAULT_BAUDRATE))
        return BAUDRATE_CODES.get(value, DEFAULT_BAUDRATE)


def scale_version(value, reverse=False):
    """
    Convert the raw firmware version register (version * 10) to a version number, eg 10 -> 1.0.

    :param value: raw register contents, or a version number
    :param reverse: Boolean, True to perform physical->raw conversion instead of raw->physical
    :return: version as a float, or raw register value
    """
    if reverse:
        return _check_raw(int(round(value * 10)), 'Version %s, encoded value' % value)
    else:
        return value / 10.0


def registers_to_uint32(valuelist):
    """
    Combine two register values, high word first, into one 32 bit integer.

    :param valuelist: A list of two integers, each 0-65535
    :return: An integer, 0-4294967295
    """
    high, low = valuelist
    return (high << 16) | low


def uint32_to_registers(value):
    """
    Split a 32 bit integer into two register values, high word first.

    :param value: An integer, 0-4294967295
    :return: A list of two integers, each 0-65535
    """
    return [(value >> 16) & 0xFFFF, value & 0xFFFF]


def is_unset(valuelist):
    """
    Return True if every register in the list still holds the factory default 0xFFFF (never programmed).

    :param valuelist: A list of integers, each 0-65535
    :return: Boolean
    """
    return bool(valuelist) and all(v == UNSET_WORD for v in valuelist)


def registers_to_string(valuelist):
    """
    Convert a block of identification registers to a string.

    Each register holds two bytes, high byte first. The byte sequence is decoded as UTF-16 (big-endian, so
    each register is one UTF-16 code unit), up to the first pair of zero bytes at an even offset. Note that the
    Windows debug tool supplied with the board decodes these registers as little-endian UTF-16 instead, so plain
    ASCII text shows up there as CJK characters. If the bytes aren't valid UTF-16 (eg, an unpaired surrogate),
    they are decoded as UTF-8 instead, with a warning.

    Note that an unprogrammed block (all 0xFFFF) decodes to a string of U+FFFF characters - use is_unset() to
    check for that first.

    :param valuelist: A list of integers, each 0-65535
    :return: A string, with any trailing NUL characters removed
    """
    data = b''.join(bytes(divmod(v, 256)) for v in valuelist)
    length = len(data)
    for i in range(0, len(data) - 1, 2):
        if data[i] == 0 and data[i + 1] == 0:
            length = i
            break

    try:
        text = data[:length].decode('utf-16-be')
    except UnicodeDecodeError:
        logger.warning('Invalid UTF-16 text in registers, decoding as UTF-8: %s' % data[:length].hex())
        text = data[:length].decode('utf-8', errors='replace')
    return text.rstrip('\0')


def string_to_registers(text, numreg):
    """
    Convert a string to a block of 'numreg' identification registers, one UTF-16 code unit per register, padded
    with zeroes.

    :param text: Text to encode
    :param numreg: Number of registers in the block
    :return: A list of 'numreg' integers, each 0-65535
    """
    data = text.encode('utf-16-be')
    if len(data) > numreg * 2:
        raise RangeError('Text "%s" is too long for %d registers' % (text, numreg))
    data += bytes(numreg * 2 - len(data))
    return [data[i] * 256 + data[i + 1] for i in range(0, len(data), 2)]
