#!/usr/bin/env python

"""Classes to handle communications with a GJVdc-32 voltage monitoring board using Modbus-RTU over a serial port
   (or any other byte stream that behaves like a pyserial serial.Serial() object).

   All code in this file implements the modbus specification for reading holding registers (function 0x03) and
   writing multiple registers (function 0x10) as a bus master. Only one request is ever outstanding - every public
   method holds the connection lock for the whole of the request/reply exchange.

   Failed transactions raise one of the exceptions in vdc32.errors. Nothing is resent automatically - the only retry
   loop here is the poll for reply bytes that have already been sent by the device, so the caller decides whether
   to repeat the whole transaction.
"""

import logging
import threading
import time

import serial

from vdc32 import crc
from vdc32.errors import (DeviceExceptionError, FramingError, ModbusError, PortClosedError, ProtocolMismatchError,
                          RangeError, ReplyTimeoutError)

TIMEOUT = 1.0         # Read and write timeout for the serial port, in seconds
FRAME_DELAY = 0.05    # Time in seconds to wait after sending a packet before reading the reply (modbus silent interval)
POLL_RETRIES = 10     # Number of times to poll for reply bytes that haven't arrived yet, before giving up
POLL_INTERVAL = 0.01  # Time in seconds between polls for reply bytes
BAUDRATE = 57600      # Default serial port speed
SUPPORTED_BAUDRATES = [9600, 19200, 38400, 57600]

READ_HOLDING_REGISTERS = 0x03
WRITE_MULTIPLE_REGISTERS = 0x10
EXCEPTION_FLAG = 0x80

MAX_READ_COUNT = 125    # Modbus limit on registers per read
MAX_WRITE_COUNT = 123   # Modbus limit on registers per write

# Modbus exception codes, as key, and a description as value
EXCEPTION_CODES = {1:'Illegal function',
                   2:'Illegal data address',
                   3:'Illegal data value',
                   4:'Slave device failure',
                   5:'Acknowledge',
                   6:'Slave device busy'}

# Transaction states. A connection is always in STATE_IDLE between calls.
STATE_IDLE = 0
STATE_SENDING = 1
STATE_AWAITING = 2
STATE_VALIDATING = 3
STATE_CODES = {0:'IDLE',
               1:'SENDING',
               2:'AWAITING',
               3:'VALIDATING'}


class Connection(object):
    """
    Class to handle Modbus communications with a single board, via a physical serial port, or via any already-open
    byte stream object with the same interface as serial.Serial() (write(), read(), in_waiting,
    reset_input_buffer(), reset_output_buffer(), is_open and close()).

    An instance of this class is thread-safe - it can be shared between threads, and an internal lock means that
    only one transaction is ever in progress. Callers that need several transactions to happen back-to-back (eg, a
    complete device status read) can hold .lock themselves, as it's re-entrant.

    The connection can be used as a context manager, which closes the port on exit, whether or not there was an
    exception.

    It has public methods for acting as a Modbus master, and reading/writing registers on remote devices:
        read_holding_registers()
        write_multiple_registers()
    """
    def __init__(self, devicename=None, baudrate=BAUDRATE, parity=serial.PARITY_NONE, stopbits=serial.STOPBITS_ONE,
                 bytesize=serial.EIGHTBITS, timeout=TIMEOUT, frame_delay=FRAME_DELAY, poll_retries=POLL_RETRIES,
                 poll_interval=POLL_INTERVAL, stream=None, logger=None):
        """
        Create a new instance, using either a physical serial port, or an existing stream object.

        :param devicename: Device name of serial port, eg '/dev/ttyUSB0' or 'COM5'
        :param baudrate: Connection speed for serial port connection, one of 9600, 19200, 38400 or 57600
        :param parity: Parity for the serial port, one of serial.PARITY_NONE, PARITY_EVEN or PARITY_ODD
        :param stopbits: Number of stop bits for the serial port (1 or 2)
        :param bytesize: Number of data bits for the serial port - always 8 for Modbus-RTU
        :param timeout: Read and write timeout for the serial port, in seconds
        :param frame_delay: Time in seconds to wait between sending a request and reading the reply
        :param poll_retries: How many times to poll for missing reply bytes before giving up
        :param poll_interval: Time in seconds between polls for reply bytes
        :param stream: An already open byte stream to use instead of opening 'devicename'
        :param logger: A logging.Logger instance to use, or None to use the "vdc32.transport" logger
        """
        if baudrate not in SUPPORTED_BAUDRATES:
            raise RangeError('Baud rate %s not supported, must be one of %s' % (baudrate, SUPPORTED_BAUDRATES))

        self.lock = threading.RLock()
        self.ser = None   # serial.Serial() object, or other byte stream, or None if closed
        self.devicename = devicename  # Device name of serial port, eg '/dev/ttyS0'
        self.baudrate = baudrate  # Connection speed for serial port connection
        self.parity = parity
        self.stopbits = stopbits
        self.bytesize = bytesize
        self.timeout = timeout
        self.frame_delay = frame_delay
        self.poll_retries = poll_retries
        self.poll_interval = poll_interval
        self.state = STATE_IDLE   # One of the STATE_* globals
        if logger is None:
            self.logger = logging.getLogger('vdc32.transport')
        else:
            self.logger = logger

        if stream is not None:
            self.ser = stream
        else:
            self._open()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __str__(self):
        return '<Connection %s at %d baud, %s>' % (self.devicename, self.baudrate,
                                                   {True:'open', False:'closed'}[self.is_open])

    def __repr__(self):
        return str(self)

    @property
    def is_open(self):
        return (self.ser is not None) and bool(self.ser.is_open)

    def _open(self):
        """
        Opens a serial.Serial connection to self.devicename, closing any existing connection first.

        Raises PortClosedError if the port can't be opened.
        """
        with self.lock:
            if self.devicename is None:
                raise PortClosedError("No devicename given, can't open serial port")
            self.close()
            try:
                # Open serial port for the specified device and speed
                self.ser = serial.Serial(self.devicename,
                                         baudrate=self.baudrate,
                                         bytesize=self.bytesize,
                                         parity=self.parity,
                                         stopbits=self.stopbits,
                                         timeout=self.timeout,
                                         write_timeout=self.timeout)
            except serial.SerialException as e:
                self.ser = None
                self.logger.error('Error opening serial port %s: %s' % (self.devicename, e))
                raise PortClosedError('Error opening serial port %s: %s' % (self.devicename, e))
            self.logger.info('Opened %s at %d baud' % (self.devicename, self.baudrate))

    def reopen(self, baudrate=None):
        """
        Close and re-open the serial port, optionally at a new speed (eg, after writing a new baud rate to the board).

        :param baudrate: New connection speed, or None to keep the current speed
        """
        with self.lock:
            if baudrate is not None:
                if baudrate not in SUPPORTED_BAUDRATES:
                    raise RangeError('Baud rate %s not supported, must be one of %s' % (baudrate, SUPPORTED_BAUDRATES))
                self.baudrate = baudrate
            self._open()

    def close(self):
        """
        Close the port, ignoring any errors (it might already be closed, or dead).
        """
        with self.lock:
            if self.ser is not None:
                try:
                    self.ser.close()
                except (serial.SerialException, OSError):
                    self.logger.debug('Ignoring error closing %s' % self.devicename)
                self.ser = None

    def _set_state(self, state):
        self.state = state
        self.logger.debug('Transaction state %s' % STATE_CODES[state])

    def _write(self, data):
        """
        Discard any stale data in both directions, then send the given data to the remote device.

        :param data: A bytes() object containing the data to write
        :return: None
        """
        self.ser.reset_input_buffer()
        self.ser.reset_output_buffer()
        self.ser.write(data)
        self.logger.debug('Write "%s"' % data.hex(' '))

    def _read_reply(self, function_code, nbytes):
        """
        Collect a reply of 'nbytes' bytes, polling for bytes that haven't arrived yet at most self.poll_retries times.

        If the function code byte in the reply has the exception flag set, then only 5 bytes are expected (address,
        function, exception code and CRC), and we stop there.

        :param function_code: Function code of the request, used to spot an exception reply
        :param nbytes: Length of a normal reply, including the CRC
        :return: A bytes() object containing the reply
        """
        reply = b''
        expected = nbytes
        retries = self.poll_retries
        while (len(reply) < expected) and (retries > 0):
            waiting = self.ser.in_waiting
            if waiting:
                reply += self.ser.read(min(waiting, expected - len(reply)))
                if (len(reply) >= 2) and (reply[1] == (function_code | EXCEPTION_FLAG)):
                    expected = 5
            else:
                time.sleep(self.poll_interval)
                retries -= 1

        self.logger.debug('Read "%s"' % reply.hex(' '))
        if len(reply) < expected:
            self.logger.warning('Timeout - expected %d bytes in reply, got %d: %s' % (expected, len(reply), reply.hex(' ')))
            raise ReplyTimeoutError('Timeout - expected %d bytes in reply, got %d' % (expected, len(reply)))
        return reply[:expected]

    def _validate(self, reply, modbus_address, function_code):
        """
        Check the CRC, unit address and function code in a reply, and raise the appropriate exception if there's a
        problem.

        :param reply: A bytes() object containing the complete reply, including CRC
        :param modbus_address: MODBUS station number the request was sent to
        :param function_code: Function code of the request
        :return: None
        """
        if not crc.verify(reply):
            self.logger.error('CRC error in reply: %s' % reply.hex(' '))
            raise FramingError('CRC error in reply: %s' % reply.hex(' '))

        if reply[0] != modbus_address:
            self.logger.error('Sent to station %d, but station %d responded' % (modbus_address, reply[0]))
            raise ProtocolMismatchError('Sent to station %d, but station %d responded' % (modbus_address, reply[0]))

        if reply[1] == (function_code | EXCEPTION_FLAG):
            excode = reply[2]
            desc = EXCEPTION_CODES.get(excode, 'Unknown exception')
            self.logger.error('Exception 0x%02X%02X: %s' % (reply[1], excode, desc))
            raise DeviceExceptionError('Exception 0x%02X%02X: %s' % (reply[1], excode, desc),
                                       code=excode,
                                       function=function_code)

        if reply[1] != function_code:
            self.logger.error('Sent function 0x%02X, but reply has function 0x%02X' % (function_code, reply[1]))
            raise ProtocolMismatchError('Sent function 0x%02X, but reply has function 0x%02X' % (function_code, reply[1]))

    def _transact(self, message, function_code, reply_length):
        """
        Add the CRC to the message (a list of bytes) and send it, then wait for, collect and validate the reply.

        The connection lock is held throughout, and the connection is always returned to STATE_IDLE, whether or
        not the transaction succeeded.

        :param message: A list of integers, each in the range 0-255, without the CRC
        :param function_code: Function code of the request
        :param reply_length: Length of a normal reply, including the CRC
        :return: A bytes() object containing the validated reply, including the CRC
        """
        with self.lock:
            if not self.is_open:
                self.logger.error('Serial port not open')
                raise PortClosedError('Serial port not open')
            try:
                self._set_state(STATE_SENDING)
                self._write(crc.append_crc(message))
                time.sleep(self.frame_delay)
                self._set_state(STATE_AWAITING)
                reply = self._read_reply(function_code, reply_length)
                self._set_state(STATE_VALIDATING)
                self._validate(reply, message[0], function_code)
                return reply
            except ModbusError:
                raise
            except serial.SerialTimeoutException as e:
                self.logger.error('Serial port timeout on %s: %s' % (self.devicename, e))
                raise ReplyTimeoutError('Serial port timeout on %s: %s' % (self.devicename, e)) from e
            except (serial.SerialException, OSError) as e:
                self.logger.error('Serial port error on %s: %s' % (self.devicename, e))
                raise PortClosedError('Serial port error on %s: %s' % (self.devicename, e)) from e
            finally:
                self._set_state(STATE_IDLE)

    def read_holding_registers(self, modbus_address, regnum, numreg=1):
        """
        Given a starting register address and the number of registers to read, return the raw register contents.

        This function will always either return a list of register values from a validated packet, or raise an
        exception:
            PortClosedError if the port isn't open, or the port itself fails (eg, a USB adapter is unplugged)
            ReplyTimeoutError if the full reply didn't arrive in time, or the packet couldn't be written in time
            FramingError if the reply CRC was bad
            ProtocolMismatchError if the reply came from the wrong station, had the wrong function code, or the wrong
                                  byte count
            DeviceExceptionError if the device sent an exception reply

        :param modbus_address: MODBUS station number, 1-128
        :param regnum: Register address to start reading from, 0-65535
        :param numreg: Number of registers to read (default 1)
        :return: A list of register values, each an integer 0-65535
        """
        if not (1 <= numreg <= MAX_READ_COUNT):
            raise RangeError('Number of registers to read (%s) must be 1-%d' % (numreg, MAX_READ_COUNT))

        packet = [modbus_address, READ_HOLDING_REGISTERS] + NtoBytes(regnum, 2) + NtoBytes(numreg, 2)
        reply = self._transact(packet, READ_HOLDING_REGISTERS, 5 + numreg * 2)

        if reply[2] != numreg * 2:
            self.logger.error('Reply byte count %d, expected %d' % (reply[2], numreg * 2))
            raise ProtocolMismatchError('Reply byte count %d, expected %d' % (reply[2], numreg * 2))

        blist = reply[3:-2]
        return [blist[i] * 256 + blist[i + 1] for i in range(0, numreg * 2, 2)]

    def write_multiple_registers(self, modbus_address, regnum, valuelist):
        """
        Given a starting register address and a list of register values, write the data to the given registers in the
        given modbus station.

        Returns True if the device acknowledged the write, otherwise raises one of the exceptions listed for
        read_holding_registers().

        :param modbus_address: MODBUS station number, 1-128
        :param regnum: Register address to start writing to, 0-65535
        :param valuelist: A list of register values to write, each an integer 0-65535
        :return: True for success
        """
        rlen = len(valuelist)
        if not (1 <= rlen <= MAX_WRITE_COUNT):
            raise RangeError('Number of registers to write (%d) must be 1-%d' % (rlen, MAX_WRITE_COUNT))
        data = []
        for value in valuelist:
            if not (0 <= value <= 0xFFFF):
                raise RangeError('Register value %s outside the range 0-65535' % value)
            data += NtoBytes(value, 2)

        packet = [modbus_address, WRITE_MULTIPLE_REGISTERS] + NtoBytes(regnum, 2) + NtoBytes(rlen, 2) + NtoBytes(rlen * 2, 1) + data
        self._transact(packet, WRITE_MULTIPLE_REGISTERS, 8)
        return True


class ModbusDevice(object):
    """
    Generic parent class for all modbus slaves that we can communicate with.
    """
    def __init__(self, conn=None, modbus_address=None, logger=None):
        self.conn = conn
        self.modbus_address = modbus_address
        if logger is None:
            self.logger = logging.getLogger('vdc32.%s:%s' % (self.__class__.__name__, modbus_address))
        else:
            self.logger = logger


###################################
# Utility functions
#

def NtoBytes(value, nbytes=2):
    """
    Given an integer value 'value' and a word length 'nbytes',
    convert 'value' into a list of integers from 0-255,  with MSB first
    and LSB last.

    :param value: An integer small enough to fit into the given word length
    :param nbytes: The word length to return
    :return: a list of integers, each in the range 0-255
    """
    if nbytes not in [1, 2, 4]:
        raise ValueError('Word length must be 1, 2 or 4 bytes, not %s' % nbytes)
    if not (0 <= value < 256 ** nbytes):
        raise RangeError('Value %s does not fit in %d bytes' % (value, nbytes))
    return list(value.to_bytes(nbytes, 'big'))


def bytestoN(valuelist):
    """
    Given a list of integers in network order (MSB first), convert to an integer.

    :param valuelist: A list of integers, each 0-255
    :return: An integer
    """
    return int.from_bytes(bytes(valuelist), 'big')
