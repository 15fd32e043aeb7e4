#!/usr/bin/env python

"""Classes to query and configure a GJVdc-32 32-channel DC voltage monitoring board.

   Every method maps one device-level operation onto one or more Modbus transactions on a transport.Connection,
   and applies the scaling functions in vdc32.conversion to turn the raw register values into real values.
   Arguments are checked before any I/O is done, and any transport failure is raised to the caller.
"""

import time

from vdc32 import conversion   # Conversion functions between register values and actual voltages/baud rates/text
from vdc32 import registers    # Register addresses
from vdc32 import transport    # Modbus API
from vdc32.errors import ModbusError, RangeError

STATUS_STRING = """\
Board at address: %(modbus_address)s as of %(status_age)d seconds ago:
    Online: %(online)s
    Board name: %(board_name)s
    Serial number: %(serial_number)s
    Firmware version: %(version)s
    Baud rate: %(baudrate)s
    IO direction: 0x%(io_direction)04X
    IO value: 0x%(io_value)04X
    Set temperature: %(set_temperature)s deg C
    Current temperature: %(current_temperature)s deg C
    Fan current: %(fan_current_amps)5.3f A
    AC on: %(ac_on)s
    Dropped channels: %(dropped_string)s
"""


class VoltageReading(object):
    """
    One voltage measurement from a single channel on the board. A new instance is created for every read - the
    attributes are not changed after creation.

    Attributes are:
    channel: Channel number (1-32)
    raw_value: Raw contents of the channel voltage register (0-65535)
    voltage: Channel voltage in Volts (float)
    modbus_address: Modbus address of the board the channel is on (1-128)
    read_timestamp: Unix epoch at the time the channel voltage was read (float)
    dropped: True if the channel is flagged as dropped (below its threshold), or None if not read
    drop_duration: Time in seconds the channel has been dropped, or None if not read
    drop_threshold: Drop threshold for this channel in Volts, or None if not read
    """
    def __init__(self, channel, raw_value, modbus_address, read_timestamp,
                 dropped=None, drop_duration=None, drop_threshold=None):
        self.channel = channel
        self.raw_value = raw_value
        self.voltage = conversion.scale_voltage(raw_value)
        self.modbus_address = modbus_address
        self.read_timestamp = read_timestamp
        self.dropped = dropped
        self.drop_duration = drop_duration
        self.drop_threshold = drop_threshold

    def __str__(self):
        if self.dropped is None:
            dropstring = ''
        elif self.dropped:
            dropstring = ' DROPPED for %ss (threshold %4.2f V)' % (self.drop_duration, self.drop_threshold)
        else:
            dropstring = ' OK (threshold %4.2f V)' % self.drop_threshold
        return 'CH%02d: %7.3f V (raw 0x%04X)%s' % (self.channel, self.voltage, self.raw_value, dropstring)

    def __repr__(self):
        return str(self)


class DeviceSnapshot(object):
    """
    The complete configuration and status of a board, read in a single sequence of transactions by
    DCBoard.read_device_snapshot(). If any of those transactions fail, the snapshot is marked offline and none of
    the other values are set.

    Attributes are:
    modbus_address: Modbus address read back from the board's address register
    firmware_version: Firmware version number (float, eg 1.0)
    baudrate: Serial port speed configured on the board
    board_name: Board name string, or None if it hasn't been programmed (all registers 0xFFFF)
    serial_number: Serial number string, or None if it hasn't been programmed (all registers 0xFFFF)
    io_direction: IO direction bitmap, bit=1 means output
    io_value: IO value bitmap
    drop_mask: 32 bit integer, bit N is set if channel N+1 has dropped
    set_temperature: Set temperature (deg C)
    current_temperature: Current temperature (deg C)
    fan_current: Fan current in mA
    ac_on: True if the AC-on signal is asserted
    readtime: Unix timestamp for the start of the read sequence
    online: True if every value was read successfully
    """
    def __init__(self, modbus_address=None, firmware_version=None, baudrate=None, board_name=None,
                 serial_number=None, io_direction=0, io_value=0, drop_mask=0, set_temperature=None,
                 current_temperature=None, fan_current=0, ac_on=False, readtime=None, online=False):
        self.modbus_address = modbus_address
        self.firmware_version = firmware_version
        self.baudrate = baudrate
        self.board_name = board_name
        self.serial_number = serial_number
        self.io_direction = io_direction
        self.io_value = io_value
        self.drop_mask = drop_mask
        self.set_temperature = set_temperature
        self.current_temperature = current_temperature
        self.fan_current = fan_current
        self.ac_on = ac_on
        self.readtime = readtime
        self.online = online

    def __str__(self):
        tmpdict = self.__dict__.copy()
        if self.readtime is None:
            tmpdict['status_age'] = 0
        else:
            tmpdict['status_age'] = time.time() - self.readtime
        tmpdict['version'] = self.version
        tmpdict['fan_current_amps'] = self.fan_current_amps
        dropped = self.dropped_channels()
        if dropped:
            tmpdict['dropped_string'] = '%d (%s)' % (len(dropped), ','.join([str(c) for c in dropped]))
        else:
            tmpdict['dropped_string'] = 'None'
        return STATUS_STRING % tmpdict

    def __repr__(self):
        return str(self)

    @property
    def version(self):
        """Firmware version as a string, eg '1.0'."""
        if self.firmware_version is None:
            return '--'
        return '%.1f' % self.firmware_version

    @property
    def fan_current_amps(self):
        return self.fan_current / 1000.0

    @property
    def dropped_channel_count(self):
        return bin(self.drop_mask).count('1')

    def is_channel_dropped(self, channel):
        """
        Return True if the given channel is flagged as dropped in the drop bitmap.

        :param channel: Channel number, 1-32
        :return: Boolean
        """
        if not (1 <= channel <= registers.CHANNEL_COUNT):
            raise RangeError('Channel number %s must be in the range 1-%d' % (channel, registers.CHANNEL_COUNT))
        return bool(self.drop_mask & (1 << (channel - 1)))

    def dropped_channels(self):
        """
        :return: A list of the channel numbers (1-32) that are flagged as dropped.
        """
        return [c for c in range(1, registers.CHANNEL_COUNT + 1) if self.is_channel_dropped(c)]


class DCBoard(transport.ModbusDevice):
    """
    DCBoard class, an instance of which represents one physical 32-channel voltage monitoring board, connected via a
    serial port.

    Attributes are:
    conn: An instance of transport.Connection() for the serial port the board is on
    modbus_address: Modbus address used for all requests to this board (1-128)
    snapshot: DeviceSnapshot from the last call to read_device_snapshot(), or None
    """

    def __init__(self, conn=None, modbus_address=1, logger=None):
        """
        Instantiate an instance of DCBoard() using a connection object, and the modbus address for that physical board.

        This initialisation function doesn't communicate with the board, it just sets up the data structures.

        :param conn: An instance of transport.Connection()
        :param modbus_address: The modbus station address (1-128) for this board
        """
        check_address(modbus_address)
        transport.ModbusDevice.__init__(self, conn=conn, modbus_address=modbus_address, logger=logger)
        self.snapshot = None

    def __str__(self):
        if self.snapshot is None:
            return 'Board at address %d, never read.' % self.modbus_address
        return str(self.snapshot)

    def __repr__(self):
        return str(self)

    def set_modbus_address(self, modbus_address):
        """
        Change the modbus address used for all subsequent requests. Doesn't communicate with the board.

        :param modbus_address: New modbus station address, 1-128
        """
        check_address(modbus_address)
        if self.conn is None:
            self.modbus_address = modbus_address
            return
        with self.conn.lock:
            self.modbus_address = modbus_address

    def _read_register(self, regname):
        """
        Read all of the registers for one entry in registers.REGISTERS.

        :param regname: Register name, eg 'SYS_VERSION'
        :return: A list of raw register values
        """
        regnum, numreg, regdesc, scalefunc = registers.REGISTERS[regname]
        return self.conn.read_holding_registers(self.modbus_address, regnum, numreg)

    def _write_register(self, regnum, value, desc):
        result = self.conn.write_multiple_registers(self.modbus_address, regnum, [value])
        self.logger.info('Wrote %s=%s to board %d' % (desc, value, self.modbus_address))
        return result

    def read_all_voltages(self):
        """
        Read all 32 channel voltages in one transaction.

        :return: A list of 32 VoltageReading instances, channel 1 first, all with the same read timestamp.
        """
        valuelist = self._read_register('CH_VOLTAGE')
        read_timestamp = time.time()
        return [VoltageReading(channel=i + 1,
                               raw_value=valuelist[i],
                               modbus_address=self.modbus_address,
                               read_timestamp=read_timestamp) for i in range(registers.CHANNEL_COUNT)]

    def read_single_voltage(self, channel):
        """
        Read the voltage on one channel.

        :param channel: Channel number, 1-32
        :return: A VoltageReading instance
        """
        regnum = registers.channel_address(registers.VOLTAGE_START, channel)
        valuelist = self.conn.read_holding_registers(self.modbus_address, regnum, 1)
        return VoltageReading(channel=channel,
                              raw_value=valuelist[0],
                              modbus_address=self.modbus_address,
                              read_timestamp=time.time())

    def read_drop_mask(self):
        """
        :return: The 32 bit channel drop bitmap, bit N set if channel N+1 has dropped.
        """
        return conversion.registers_to_uint32(self._read_register('SYS_DROPMASK'))

    def read_drop_durations(self):
        """
        :return: A list of 32 integers, the time in seconds each channel has been dropped, channel 1 first.
        """
        return self._read_register('CH_DROPTIME')

    def read_drop_thresholds(self):
        """
        :return: A list of 32 drop thresholds in Volts, channel 1 first.
        """
        return [conversion.scale_threshold(v) for v in self._read_register('CH_DROPTH')]

    def read_calibration_data(self):
        """
        Read the two blocks of raw calibration data. The values are returned unscaled.

        :return: A tuple of two lists, each of 32 integers
        """
        with self.conn.lock:
            return self._read_register('CAL_DATA1'), self._read_register('CAL_DATA2')

    def read_channels(self):
        """
        Read the voltages, drop bitmap, drop durations and drop thresholds for every channel, as one uninterrupted
        sequence of transactions.

        :return: A list of 32 VoltageReading instances, channel 1 first, with the drop information filled in.
        """
        with self.conn.lock:
            valuelist = self._read_register('CH_VOLTAGE')
            read_timestamp = time.time()
            drop_mask = self.read_drop_mask()
            durations = self.read_drop_durations()
            thresholds = self.read_drop_thresholds()

        return [VoltageReading(channel=i + 1,
                               raw_value=valuelist[i],
                               modbus_address=self.modbus_address,
                               read_timestamp=read_timestamp,
                               dropped=bool(drop_mask & (1 << i)),
                               drop_duration=durations[i],
                               drop_threshold=thresholds[i]) for i in range(registers.CHANNEL_COUNT)]

    def read_device_snapshot(self):
        """
        Read the complete configuration and status of the board, one register (or register block) at a time, and
        return it as a new DeviceSnapshot. The result is also stored in self.snapshot.

        If any read fails, self.snapshot is replaced with an empty snapshot marked offline, and the exception from the
        failed read is raised - the values read before the failure are discarded.

        :return: A DeviceSnapshot instance
        """
        with self.conn.lock:
            read_timestamp = time.time()
            try:
                modbus_address = self._read_register('SYS_ADDRESS')[0]
                firmware_version = conversion.scale_version(self._read_register('SYS_VERSION')[0])
                baudrate = conversion.scale_baudrate(self._read_register('SYS_BAUDRATE')[0])
                io_direction = self._read_register('SYS_IODIR')[0]
                io_value = self._read_register('SYS_IOVAL')[0]
                drop_mask = self.read_drop_mask()
                set_temperature = self._read_register('SYS_SETTEMP')[0]
                current_temperature = self._read_register('SYS_TEMP')[0]
                fan_current = self._read_register('SYS_FANCURR')[0]
                ac_on = (self._read_register('SYS_ACON')[0] == 1)
                namelist = self._read_register('ID_BOARDNAME')
                snlist = self._read_register('ID_SERIAL')
            except ModbusError as e:
                self.logger.error('Reading device status from board %d failed: %s' % (self.modbus_address, e))
                self.snapshot = DeviceSnapshot(modbus_address=self.modbus_address, readtime=read_timestamp, online=False)
                raise

        if conversion.is_unset(namelist):
            board_name = None
        else:
            board_name = conversion.registers_to_string(namelist)
        if conversion.is_unset(snlist):
            serial_number = None
        else:
            serial_number = conversion.registers_to_string(snlist)

        self.snapshot = DeviceSnapshot(modbus_address=modbus_address,
                                       firmware_version=firmware_version,
                                       baudrate=baudrate,
                                       board_name=board_name,
                                       serial_number=serial_number,
                                       io_direction=io_direction,
                                       io_value=io_value,
                                       drop_mask=drop_mask,
                                       set_temperature=set_temperature,
                                       current_temperature=current_temperature,
                                       fan_current=fan_current,
                                       ac_on=ac_on,
                                       readtime=read_timestamp,
                                       online=True)
        return self.snapshot

    def write_device_address(self, new_address):
        """
        Write a new modbus address to the board. Note that this doesn't change self.modbus_address - call
        set_modbus_address() once the board is answering on the new address.

        :param new_address: New modbus station address, 1-128
        :return: True for success
        """
        check_address(new_address)
        return self._write_register(registers.DEVICE_ADDRESS, new_address, 'device address')

    def write_baud_rate(self, baudrate):
        """
        Write a new serial port speed to the board. Raises UnsupportedValueError for anything except 9600, 19200,
        38400 or 57600.

        :param baudrate: New baud rate
        :return: True for success
        """
        code = conversion.scale_baudrate(baudrate, reverse=True)
        return self._write_register(registers.BAUD_RATE, code, 'baud rate code')

    def write_io_direction(self, io_direction):
        """
        :param io_direction: IO direction bitmap, 0-65535, bit=1 means output
        :return: True for success
        """
        check_word(io_direction, 'IO direction')
        return self._write_register(registers.IO_DIRECTION, io_direction, 'IO direction')

    def write_io_value(self, io_value):
        """
        :param io_value: IO value bitmap, 0-65535
        :return: True for success
        """
        check_word(io_value, 'IO value')
        return self._write_register(registers.IO_VALUE, io_value, 'IO value')

    def write_set_temperature(self, temperature):
        """
        :param temperature: Set temperature in whole deg C, 0-255
        :return: True for success
        """
        if (not (0 <= temperature <= 255)) or (temperature != int(temperature)):
            raise RangeError('Set temperature %s must be a whole number in the range 0-255' % temperature)
        return self._write_register(registers.SET_TEMPERATURE, int(temperature), 'set temperature')

    def write_drop_threshold(self, channel, voltage):
        """
        Write the drop threshold for one channel.

        :param channel: Channel number, 1-32
        :param voltage: Threshold in Volts - the channel is flagged as dropped when it falls below this
        :return: True for success
        """
        regnum = registers.channel_address(registers.DROP_THRESHOLD, channel)
        raw = conversion.scale_threshold(voltage, reverse=True)
        return self._write_register(regnum, raw, 'CH%02d drop threshold' % channel)

    def write_drop_thresholds(self, voltages):
        """
        Write the drop thresholds for all 32 channels in a single transaction.

        :param voltages: A list of 32 thresholds in Volts, channel 1 first
        :return: True for success
        """
        if len(voltages) != registers.CHANNEL_COUNT:
            raise RangeError('Need %d thresholds, not %d' % (registers.CHANNEL_COUNT, len(voltages)))
        vlist = [conversion.scale_threshold(v, reverse=True) for v in voltages]
        result = self.conn.write_multiple_registers(self.modbus_address, registers.DROP_THRESHOLD, vlist)
        self.logger.info('Wrote drop thresholds to board %d' % self.modbus_address)
        return result


###################################
# Utility functions
#

def check_address(modbus_address):
    """
    Raise RangeError if the given modbus address is outside the range the board supports.

    :param modbus_address: Modbus station address
    """
    if not (registers.MIN_DEVICE_ADDRESS <= modbus_address <= registers.MAX_DEVICE_ADDRESS):
        raise RangeError('Device address %s must be in the range %d-%d' % (modbus_address,
                                                                          registers.MIN_DEVICE_ADDRESS,
                                                                          registers.MAX_DEVICE_ADDRESS))


def check_word(value, desc):
    if not (0 <= value <= 0xFFFF):
        raise RangeError('%s %s must be in the range 0-65535' % (desc, value))


"""
Use as 'communicate.py info', or:

from vdc32 import transport
from vdc32 import dcboard
conn = transport.Connection(devicename='/dev/ttyUSB0', baudrate=57600)  # or 'COM5' for example, under Windows

b = dcboard.DCBoard(conn=conn, modbus_address=1)
print(b.read_device_snapshot())
for reading in b.read_channels():
    print(reading)
"""
