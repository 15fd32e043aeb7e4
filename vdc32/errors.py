"""
Exceptions raised by the transport layer and the device classes.

Communications failures are all subclasses of ModbusError (an IOError), so existing code that catches IOError
around a register read still works. Bad arguments are subclasses of ValueError, raised before any I/O is done.
"""


class ModbusError(IOError):
    """Base class for any failed Modbus transaction."""


class PortClosedError(ModbusError, ConnectionError):
    """The serial port (or other byte stream) isn't open."""


class FramingError(ModbusError):
    """The reply had an invalid CRC."""


class ProtocolMismatchError(ModbusError):
    """The reply came from the wrong unit, had the wrong function code, or the wrong payload length."""


class DeviceExceptionError(ModbusError):
    """
    The device sent a Modbus exception reply. The exception code byte is in .code, and the function code that
    was refused is in .function.
    """
    def __init__(self, message, code=None, function=None):
        ModbusError.__init__(self, message)
        self.code = code
        self.function = function


class ReplyTimeoutError(ModbusError, TimeoutError):
    """The expected number of reply bytes didn't arrive before the polling retries ran out."""


class RangeError(ValueError):
    """A channel number, device address, baud rate or register value is outside the supported range."""


class UnsupportedValueError(ValueError):
    """A physical value can't be encoded - eg, a baud rate the device doesn't support."""
