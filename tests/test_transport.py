"""
Tests for the Modbus-RTU transaction engine, using a simulated board connected via an in-memory stream.
"""

import threading
import time
import unittest
from unittest.mock import call, patch

import serial

from simulate import sim_dcboard
from vdc32 import conversion
from vdc32 import crc
from vdc32 import transport
from vdc32.errors import (DeviceExceptionError, FramingError, ModbusError, PortClosedError, ProtocolMismatchError,
                          RangeError, ReplyTimeoutError)


def make_connection(modbus_address=1):
    board = sim_dcboard.SimDCBoard(modbus_address=modbus_address)
    stream = sim_dcboard.SimStream(board)
    conn = transport.Connection(stream=stream, frame_delay=0, poll_interval=0)
    return conn, stream, board


class TestRequestFrames(unittest.TestCase):
    """The bytes sent for each request"""

    def setUp(self):
        self.conn, self.stream, self.board = make_connection()

    def test_read_frame(self):
        self.conn.read_holding_registers(1, 0x8010, 32)
        self.assertEqual(self.stream.written, [crc.append_crc([0x01, 0x03, 0x80, 0x10, 0x00, 0x20])])

    def test_write_frame(self):
        self.conn.write_multiple_registers(1, 0x8050, [1000, 1200])
        expected = crc.append_crc([0x01, 0x10, 0x80, 0x50, 0x00, 0x02, 0x04, 0x03, 0xE8, 0x04, 0xB0])
        self.assertEqual(self.stream.written, [expected])

    def test_read_values(self):
        self.board.voltages[0] = 5.0
        self.board.voltages[1] = 48.0
        self.assertEqual(self.conn.read_holding_registers(1, 0x8010, 3), [5000, 0x8000 + 4800, 12000])

    def test_read_two_voltages(self):
        self.board.voltages[0] = 1.0
        self.board.voltages[1] = 0.2
        values = self.conn.read_holding_registers(1, 0x8010, 2)
        self.assertEqual(self.stream.written, [crc.append_crc([0x01, 0x03, 0x80, 0x10, 0x00, 0x02])])
        self.assertEqual(values, [0x03E8, 0x00C8])
        self.assertEqual([conversion.scale_voltage(v) for v in values], [1.0, 0.2])

    def test_write_result(self):
        self.assertTrue(self.conn.write_multiple_registers(1, 0x8050, [1000, 1200]))
        self.assertAlmostEqual(self.board.thresholds[0], 10.0)
        self.assertAlmostEqual(self.board.thresholds[1], 12.0)

    def test_bad_register_counts(self):
        for numreg in [0, 126]:
            with self.assertRaises(RangeError):
                self.conn.read_holding_registers(1, 0x8010, numreg)
        with self.assertRaises(RangeError):
            self.conn.write_multiple_registers(1, 0x8050, [])
        with self.assertRaises(RangeError):
            self.conn.write_multiple_registers(1, 0x8050, [0] * 124)
        with self.assertRaises(RangeError):
            self.conn.write_multiple_registers(1, 0x8050, [0x10000])
        self.assertEqual(self.stream.written, [])


class TestReplyValidation(unittest.TestCase):
    """Every way a reply can be rejected"""

    def setUp(self):
        self.conn, self.stream, self.board = make_connection()

    def test_bad_crc(self):
        self.stream.corrupt_crc = True
        with self.assertRaises(FramingError):
            self.conn.read_holding_registers(1, 0x8010, 32)

    def test_wrong_station(self):
        self.stream.wrong_address = 2
        with self.assertRaises(ProtocolMismatchError):
            self.conn.read_holding_registers(1, 0x8010, 1)

    def test_wrong_function(self):
        self.stream.wrong_function = 0x04
        with self.assertRaises(ProtocolMismatchError):
            self.conn.read_holding_registers(1, 0x8010, 1)
        with self.assertRaises(ProtocolMismatchError):
            self.conn.write_multiple_registers(1, 0x8050, [1000])

    def test_wrong_byte_count(self):
        self.stream.byte_count = 4
        with self.assertRaises(ProtocolMismatchError):
            self.conn.read_holding_registers(1, 0x8010, 1)

    def test_truncated_reply(self):
        self.stream.truncate = 1
        with self.assertRaises(ReplyTimeoutError):
            self.conn.read_holding_registers(1, 0x8010, 32)

    def test_no_reply(self):
        self.stream.silent = True
        with self.assertRaises(ReplyTimeoutError) as cm:
            self.conn.read_holding_registers(1, 0x8010, 1)
        self.assertIsInstance(cm.exception, TimeoutError)
        self.assertIsInstance(cm.exception, ModbusError)

    def test_wrong_unit_gets_no_reply(self):
        with self.assertRaises(ReplyTimeoutError):
            self.conn.read_holding_registers(2, 0x8010, 1)

    def test_exception_reply(self):
        """An exception reply is recognised without waiting for a full length reply"""
        self.stream.exception_code = 0x04
        with self.assertRaises(DeviceExceptionError) as cm:
            self.conn.read_holding_registers(1, 0x8010, 32)
        self.assertEqual(cm.exception.code, 0x04)
        self.assertEqual(cm.exception.function, 0x03)

    def test_exception_reply_to_write(self):
        self.stream.exception_code = 0x03
        with self.assertRaises(DeviceExceptionError) as cm:
            self.conn.write_multiple_registers(1, 0x8050, [1000])
        self.assertEqual(cm.exception.code, 0x03)
        self.assertEqual(cm.exception.function, 0x10)

    def test_exception_reply_bad_crc(self):
        self.stream.exception_code = 0x02
        self.stream.corrupt_crc = True
        with self.assertRaises(FramingError):
            self.conn.read_holding_registers(1, 0x8010, 1)

    def test_undefined_register(self):
        with self.assertRaises(DeviceExceptionError) as cm:
            self.conn.read_holding_registers(1, 0x9000, 1)
        self.assertEqual(cm.exception.code, 0x02)

    def test_read_only_register(self):
        with self.assertRaises(DeviceExceptionError) as cm:
            self.conn.write_multiple_registers(1, 0x8010, [1000])
        self.assertEqual(cm.exception.code, 0x02)

    def test_stale_bytes_discarded(self):
        self.stream.stale = b'\x01\x03\x02\x00'
        self.assertEqual(self.conn.read_holding_registers(1, 0x8000, 1), [1])

    def test_state_idle_after_transactions(self):
        self.conn.read_holding_registers(1, 0x8000, 1)
        self.assertEqual(self.conn.state, transport.STATE_IDLE)
        self.stream.corrupt_crc = True
        with self.assertRaises(FramingError):
            self.conn.read_holding_registers(1, 0x8000, 1)
        self.assertEqual(self.conn.state, transport.STATE_IDLE)
        self.stream.silent = True
        with self.assertRaises(ReplyTimeoutError):
            self.conn.read_holding_registers(1, 0x8000, 1)
        self.assertEqual(self.conn.state, transport.STATE_IDLE)


class OverlapCheckingStream(sim_dcboard.SimStream):
    """Counts the number of times a packet is written before the reply to the previous one has been read"""
    def __init__(self, board):
        sim_dcboard.SimStream.__init__(self, board)
        self.pending = False
        self.overlaps = 0

    def write(self, data):
        if self.pending:
            self.overlaps += 1
        self.pending = True
        time.sleep(0.001)
        return sim_dcboard.SimStream.write(self, data)

    def read(self, nbytes=1):
        data = sim_dcboard.SimStream.read(self, nbytes)
        if not self.inbuf:
            self.pending = False
        return data


class UnpluggedStream(sim_dcboard.SimStream):
    """Raises 'error' from write() once 'fail_after' packets have been written, like a port that has gone away"""
    def __init__(self, board, fail_after, error):
        sim_dcboard.SimStream.__init__(self, board)
        self.fail_after = fail_after
        self.error = error

    def write(self, data):
        if len(self.written) >= self.fail_after:
            raise self.error
        return sim_dcboard.SimStream.write(self, data)


class TestPortFailures(unittest.TestCase):
    """Errors from the serial port itself are raised as ModbusError subclasses"""

    def make_connection(self, error):
        stream = UnpluggedStream(sim_dcboard.SimDCBoard(modbus_address=1), fail_after=1, error=error)
        return transport.Connection(stream=stream, frame_delay=0, poll_interval=0)

    def test_write_timeout(self):
        conn = self.make_connection(serial.SerialTimeoutException('Write timeout'))
        self.assertEqual(conn.read_holding_registers(1, 0x8010, 1), [12000])
        with self.assertRaises(ReplyTimeoutError) as cm:
            conn.read_holding_registers(1, 0x8010, 1)
        self.assertIsInstance(cm.exception.__cause__, serial.SerialTimeoutException)
        self.assertEqual(conn.state, transport.STATE_IDLE)

    def test_port_gone(self):
        conn = self.make_connection(serial.SerialException('device reports readiness to read but returned no data'))
        conn.read_holding_registers(1, 0x8010, 1)
        with self.assertRaises(PortClosedError):
            conn.write_multiple_registers(1, 0x8050, [1000])
        self.assertEqual(conn.state, transport.STATE_IDLE)

    def test_os_error(self):
        conn = self.make_connection(OSError(5, 'Input/output error'))
        conn.read_holding_registers(1, 0x8010, 1)
        with self.assertRaises(PortClosedError) as cm:
            conn.read_holding_registers(1, 0x8010, 1)
        self.assertIsInstance(cm.exception, ModbusError)


class TestTiming(unittest.TestCase):
    """Frame delay and reply polling, with the default timing constants"""

    @patch('vdc32.transport.time.sleep')
    def test_frame_delay_then_poll_budget(self, mock_sleep):
        stream = sim_dcboard.SimStream(sim_dcboard.SimDCBoard(modbus_address=1))
        stream.silent = True
        conn = transport.Connection(stream=stream)
        packets_sent = []
        mock_sleep.side_effect = lambda t: packets_sent.append(len(stream.written))
        with self.assertRaises(ReplyTimeoutError):
            conn.read_holding_registers(1, 0x8010, 32)
        self.assertEqual(mock_sleep.call_args_list, [call(0.05)] + [call(0.01)] * 10)
        self.assertEqual(packets_sent, [1] * 11)

    @patch('vdc32.transport.time.sleep')
    def test_no_polling_when_reply_waiting(self, mock_sleep):
        stream = sim_dcboard.SimStream(sim_dcboard.SimDCBoard(modbus_address=1))
        conn = transport.Connection(stream=stream)
        conn.read_holding_registers(1, 0x8010, 32)
        self.assertEqual(mock_sleep.call_args_list, [call(0.05)])


class TestConcurrency(unittest.TestCase):
    def test_transactions_never_interleave(self):
        board = sim_dcboard.SimDCBoard(modbus_address=1)
        for i in range(32):
            board.voltages[i] = i + 1.0
        stream = OverlapCheckingStream(board)
        conn = transport.Connection(stream=stream, frame_delay=0, poll_interval=0)
        errors = []

        def reader(channel):
            for i in range(20):
                try:
                    values = conn.read_holding_registers(1, 0x8010 + channel - 1, 1)
                    if values != [channel * 1000]:
                        errors.append(values)
                except ModbusError as e:
                    errors.append(e)

        threads = [threading.Thread(target=reader, args=(c,)) for c in [1, 5, 9, 13]]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(errors, [])
        self.assertEqual(stream.overlaps, 0)
        self.assertEqual(len(stream.written), 80)


class TestConnection(unittest.TestCase):
    """Opening and closing the port"""

    @patch('serial.Serial')
    def test_open_serial_port(self, mock_serial):
        conn = transport.Connection(devicename='/dev/ttyTEST', baudrate=19200)
        mock_serial.assert_called_once_with('/dev/ttyTEST',
                                            baudrate=19200,
                                            bytesize=serial.EIGHTBITS,
                                            parity=serial.PARITY_NONE,
                                            stopbits=serial.STOPBITS_ONE,
                                            timeout=transport.TIMEOUT,
                                            write_timeout=transport.TIMEOUT)
        self.assertIs(conn.ser, mock_serial.return_value)

    @patch('serial.Serial', side_effect=serial.SerialException('could not open port'))
    def test_open_failure(self, mock_serial):
        with self.assertRaises(PortClosedError) as cm:
            transport.Connection(devicename='/dev/ttyTEST')
        self.assertIsInstance(cm.exception, ConnectionError)

    @patch('serial.Serial')
    def test_reopen_new_baudrate(self, mock_serial):
        conn = transport.Connection(devicename='/dev/ttyTEST')
        conn.reopen(baudrate=9600)
        self.assertEqual(conn.baudrate, 9600)
        self.assertEqual(mock_serial.call_count, 2)
        self.assertEqual(mock_serial.call_args[1]['baudrate'], 9600)
        with self.assertRaises(RangeError):
            conn.reopen(baudrate=115200)

    def test_no_device(self):
        with self.assertRaises(PortClosedError):
            transport.Connection()

    def test_unsupported_baudrate(self):
        with self.assertRaises(RangeError):
            transport.Connection(devicename='/dev/ttyTEST', baudrate=4800)

    def test_closed_port(self):
        conn, stream, board = make_connection()
        conn.close()
        with self.assertRaises(PortClosedError):
            conn.read_holding_registers(1, 0x8000, 1)
        self.assertFalse(stream.is_open)
        self.assertEqual(stream.written, [])

    def test_context_manager(self):
        conn, stream, board = make_connection()
        with conn:
            self.assertTrue(conn.is_open)
        self.assertFalse(conn.is_open)
        self.assertFalse(stream.is_open)


class TestUtilities(unittest.TestCase):
    def test_NtoBytes(self):
        self.assertEqual(transport.NtoBytes(0x8010, 2), [0x80, 0x10])
        self.assertEqual(transport.NtoBytes(64, 1), [64])
        with self.assertRaises(RangeError):
            transport.NtoBytes(256, 1)
        with self.assertRaises(ValueError):
            transport.NtoBytes(1, 3)

    def test_bytestoN(self):
        self.assertEqual(transport.bytestoN([0x80, 0x10]), 0x8010)
        self.assertEqual(transport.bytestoN(b'\x00\x20'), 32)

    def test_device_logger_name(self):
        device = transport.ModbusDevice(conn=None, modbus_address=7)
        self.assertEqual(device.logger.name, 'vdc32.ModbusDevice:7')


if __name__ == '__main__':
    unittest.main()
