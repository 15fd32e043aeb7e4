#!/usr/bin/env python

"""
Simulates a 32-channel DC voltage monitoring board, acting as a Modbus slave and responding to 0x03 and 0x10 Modbus
commands to read and write registers. Used for testing the vdc32 code, either in-process via SimStream (which looks
like a serial port to transport.Connection), or on a real serial port via SimDCBoard.listen_loop().
"""

import logging
import time

from vdc32 import conversion
from vdc32 import crc
from vdc32 import registers
from vdc32 import transport

BOARD_NAME = 'GJ_Vdc32_V1.0'

STATUS_STRING = """\
Simulated board at address: %(modbus_address)s:
    Board name: %(board_name)s
    Serial number: %(serial_number)s
    Firmware version: %(firmware_version)s
    Baud rate: %(baudrate)s
    IO direction: 0x%(io_direction)04X
    IO value: 0x%(io_value)04X
    Set temperature: %(set_temperature)s deg C
    Current temperature: %(current_temperature)s deg C
    Fan current: %(fan_current)s mA
    AC on: %(ac_on)s
"""


class SimDCBoard(object):
    """
    An instance of this class simulates a single board, acting as a Modbus slave and responding to 0x03 and 0x10
    Modbus commands to read and write registers.

    The board state is held in instance attributes, in physical units, and converted to register values (using the
    same conversion functions as the master code) every time a packet is processed.

    A channel is flagged as dropped when its voltage is below its drop threshold.
    """
    def __init__(self, modbus_address=1, logger=None):
        self.modbus_address = modbus_address
        self.firmware_version = 1.0
        self.baudrate = 57600
        self.io_direction = 0
        self.io_value = 0
        self.set_temperature = 40
        self.current_temperature = 25
        self.fan_current = 1000      # mA
        self.ac_on = True
        self.board_name = BOARD_NAME   # None means never programmed
        self.serial_number = None    # None means never programmed - all registers read as 0xFFFF
        self.voltages = [12.0] * registers.CHANNEL_COUNT          # Volts
        self.thresholds = [10.0] * registers.CHANNEL_COUNT        # Volts
        self.drop_durations = [0] * registers.CHANNEL_COUNT       # Seconds
        self.calibration1 = list(range(registers.CALIBRATION_COUNT))
        self.calibration2 = list(range(registers.CALIBRATION_COUNT, 2 * registers.CALIBRATION_COUNT))
        self.wants_exit = False
        if logger is None:
            self.logger = logging.getLogger('SIM:%d' % modbus_address)
        else:
            self.logger = logger

    def __str__(self):
        return STATUS_STRING % self.__dict__

    def __repr__(self):
        return str(self)

    @property
    def drop_mask(self):
        mask = 0
        for i in range(registers.CHANNEL_COUNT):
            if self.voltages[i] < self.thresholds[i]:
                mask |= (1 << i)
        return mask

    def registers(self):
        """
        Convert the local instance data to a dictionary of register contents.

        :return: A dictionary with register address as key, and register contents (0-65535) as value
        """
        slave_registers = {registers.DEVICE_ADDRESS: self.modbus_address,
                           registers.VERSION: conversion.scale_version(self.firmware_version, reverse=True),
                           registers.BAUD_RATE: conversion.scale_baudrate(self.baudrate, reverse=True),
                           registers.IO_DIRECTION: self.io_direction,
                           registers.IO_VALUE: self.io_value,
                           registers.SET_TEMPERATURE: self.set_temperature,
                           registers.CURRENT_TEMPERATURE: self.current_temperature,
                           registers.FAN_CURRENT: self.fan_current,
                           registers.AC_ON_SIGNAL: int(self.ac_on)}
        (slave_registers[registers.DROP_STATUS],
         slave_registers[registers.DROP_STATUS + 1]) = conversion.uint32_to_registers(self.drop_mask)

        for i in range(registers.CHANNEL_COUNT):
            slave_registers[registers.VOLTAGE_START + i] = conversion.scale_voltage(self.voltages[i], reverse=True)
            slave_registers[registers.DROP_TIME + i] = self.drop_durations[i]
            slave_registers[registers.DROP_THRESHOLD + i] = conversion.scale_threshold(self.thresholds[i], reverse=True)

        for i in range(registers.CALIBRATION_COUNT):
            slave_registers[registers.CALIBRATION_DATA1 + i] = self.calibration1[i]
            slave_registers[registers.CALIBRATION_DATA2 + i] = self.calibration2[i]

        if self.board_name is None:
            namelist = [conversion.UNSET_WORD] * registers.BOARD_NAME_COUNT
        else:
            namelist = conversion.string_to_registers(self.board_name, registers.BOARD_NAME_COUNT)
        if self.serial_number is None:
            snlist = [conversion.UNSET_WORD] * registers.SERIAL_NUMBER_COUNT
        else:
            snlist = conversion.string_to_registers(self.serial_number, registers.SERIAL_NUMBER_COUNT)
        for i in range(registers.BOARD_NAME_COUNT):
            slave_registers[registers.BOARD_NAME + i] = namelist[i]
        for i in range(registers.SERIAL_NUMBER_COUNT):
            slave_registers[registers.SERIAL_NUMBER + i] = snlist[i]

        return slave_registers

    def _exception(self, function_code, excode):
        self.logger.error('Returning exception 0x%02X%02X' % (function_code | transport.EXCEPTION_FLAG, excode))
        return crc.append_crc([self.modbus_address, function_code | transport.EXCEPTION_FLAG, excode])

    def process_packet(self, frame):
        """
        Handle one incoming packet from the bus master, and return the reply packet.

        Packets with a bad CRC, or addressed to a different station, are ignored (None is returned). Reads or writes
        of undefined registers return an 'Illegal Data Address' exception, writes to read-only registers return
        'Illegal Data Address', and bad register counts or register values return 'Illegal Data Value'.

        :param frame: A bytes() object containing the complete packet, including CRC
        :return: A bytes() object containing the complete reply packet, including CRC, or None if there's no reply
        """
        if (len(frame) < 8) or (not crc.verify(frame)):
            self.logger.warning('Packet fragment or bad CRC received: %s' % frame.hex(' '))
            return None

        if frame[0] != self.modbus_address:
            self.logger.info('Packet received by %d, but it was addressed to station %d' % (self.modbus_address, frame[0]))
            return None

        function_code = frame[1]
        regnum = transport.bytestoN(frame[2:4])
        numreg = transport.bytestoN(frame[4:6])
        slave_registers = self.registers()

        if function_code == transport.READ_HOLDING_REGISTERS:   # Reading one or more registers
            if not (1 <= numreg <= transport.MAX_READ_COUNT):
                return self._exception(function_code, 0x03)   # 0x03 is 'Illegal Data Value'
            replylist = [self.modbus_address, function_code, numreg * 2]
            for r in range(regnum, regnum + numreg):
                if r not in slave_registers:
                    self.logger.error('Bad read register: 0x%04X' % r)
                    return self._exception(function_code, 0x02)   # 0x02 is 'Illegal Data Address'
                replylist += transport.NtoBytes(slave_registers[r], 2)
            return crc.append_crc(replylist)

        elif function_code == transport.WRITE_MULTIPLE_REGISTERS:   # Writing multiple registers
            bytelist = frame[7:-2]
            if ((not (1 <= numreg <= transport.MAX_WRITE_COUNT)) or (frame[6] != numreg * 2)
                    or (len(bytelist) != numreg * 2)):
                return self._exception(function_code, 0x03)
            written = {}
            for i in range(numreg):
                regname, offset = registers.lookup(regnum + i)
                if regname not in registers.WRITABLE:
                    self.logger.error('Writing register 0x%04X not allowed' % (regnum + i))
                    return self._exception(function_code, 0x02)
                written[regnum + i] = transport.bytestoN(bytelist[i * 2:i * 2 + 2])

            reply = crc.append_crc([self.modbus_address, function_code] + list(frame[2:6]))
            if not self.handle_register_writes(written):
                return self._exception(function_code, 0x03)
            return reply

        else:
            self.logger.error('Received modbus packet for function %d - not supported.' % function_code)
            return self._exception(function_code, 0x01)

    def handle_register_writes(self, written):
        """
        Check the new register values, and if they are all valid, update the local instance attributes.

        :param written: A dictionary with register address as key, and the newly written value as value
        :return: True if the values were applied, False if any of them were invalid (and nothing was changed)
        """
        for regnum, value in written.items():
            if (regnum == registers.DEVICE_ADDRESS) and not (registers.MIN_DEVICE_ADDRESS <= value <= registers.MAX_DEVICE_ADDRESS):
                return False
            if (regnum == registers.BAUD_RATE) and (value not in conversion.BAUDRATE_CODES):
                return False

        for regnum, value in written.items():
            regname, offset = registers.lookup(regnum)
            if regname == 'SYS_ADDRESS':
                self.modbus_address = value   # Takes effect after the reply is sent
            elif regname == 'SYS_BAUDRATE':
                self.baudrate = conversion.scale_baudrate(value)
            elif regname == 'SYS_IODIR':
                self.io_direction = value
            elif regname == 'SYS_IOVAL':
                self.io_value = value
            elif regname == 'SYS_SETTEMP':
                self.set_temperature = value
            elif regname == 'CH_DROPTH':
                self.thresholds[offset] = conversion.scale_threshold(value)
            self.logger.info('Register %s[%d] set to %d' % (regname, offset, value))
        return True

    def listen_loop(self, ser, maxtime=1.0):
        """
        Listen on a serial port (an open serial.Serial() instance) forever, or until self.wants_exit is set, and reply
        to any valid packets addressed to this board.

        A packet is taken to be complete when it has a valid CRC, or discarded when no more bytes arrive for
        'maxtime' seconds.

        :param ser: An open serial.Serial() instance, or anything with the same read/write/in_waiting interface
        :param maxtime: Time in seconds to wait for the rest of a packet fragment before discarding it
        :return: None
        """
        self.logger.info('Started listen_loop() for simulated board at address %d' % self.modbus_address)
        packet = b''
        last_byte_time = time.time()
        while not self.wants_exit:
            waiting = ser.in_waiting
            if waiting:
                packet += ser.read(waiting)
                last_byte_time = time.time()
            elif packet and (time.time() - last_byte_time > maxtime):
                self.logger.warning('Discarding packet fragment: %s' % packet.hex(' '))
                packet = b''
            else:
                time.sleep(0.001)
                continue

            if (len(packet) >= 8) and crc.verify(packet):
                reply = self.process_packet(packet)
                packet = b''
                if reply is not None:
                    ser.write(reply)

        self.logger.info('Ending listen_loop() for simulated board')


class SimStream(object):
    """
    An in-memory byte stream with the same interface as serial.Serial(), connected to a SimDCBoard instance. Every
    packet written is passed to the board, and the reply is queued to be read.

    Attributes that can be set to simulate communications faults in the next and all following replies:
    silent: If True, the board never replies
    corrupt_crc: If True, the last byte of the reply is inverted
    wrong_address: If not None, the reply comes from this station address (with a valid CRC)
    wrong_function: If not None, the reply has this function code (with a valid CRC)
    byte_count: If not None, the byte count in a read reply is replaced with this value (with a valid CRC)
    exception_code: If not None, the board sends an exception reply with this code instead of the normal reply
    truncate: Number of bytes to drop from the end of the reply
    stale: Bytes that are already waiting to be read before the next packet is sent

    written: A list of all of the packets written, as bytes() objects
    """
    def __init__(self, board):
        self.board = board
        self.is_open = True
        self.inbuf = b''
        self.stale = b''
        self.written = []
        self.silent = False
        self.corrupt_crc = False
        self.wrong_address = None
        self.wrong_function = None
        self.byte_count = None
        self.exception_code = None
        self.truncate = 0

    @property
    def in_waiting(self):
        return len(self.stale) + len(self.inbuf)

    def reset_input_buffer(self):
        self.stale = b''
        self.inbuf = b''

    def reset_output_buffer(self):
        pass

    def close(self):
        self.is_open = False

    def read(self, nbytes=1):
        data = self.stale + self.inbuf
        self.stale = b''
        self.inbuf = data[nbytes:]
        return data[:nbytes]

    def write(self, data):
        data = bytes(data)
        self.written.append(data)
        if self.silent:
            return len(data)

        if self.exception_code is not None:
            reply = crc.append_crc([data[0], data[1] | transport.EXCEPTION_FLAG, self.exception_code])
        else:
            reply = self.board.process_packet(data)
        if reply is None:
            return len(data)

        message = list(reply[:-2])
        if self.wrong_address is not None:
            message[0] = self.wrong_address
        if self.wrong_function is not None:
            message[1] = self.wrong_function
        if (self.byte_count is not None) and (message[1] == transport.READ_HOLDING_REGISTERS):
            message[2] = self.byte_count
        reply = crc.append_crc(message)

        if self.corrupt_crc:
            reply = reply[:-1] + bytes([reply[-1] ^ 0xFF])
        if self.truncate:
            reply = reply[:-self.truncate]
        self.inbuf += reply
        return len(data)
