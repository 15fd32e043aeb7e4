#!/usr/bin/env python

import argparse
from configparser import ConfigParser as conparser
import logging
import sys
import time

from vdc32.errors import ModbusError

LOGFILE = 'communicate.log'
CPPATH = ['/usr/local/etc/vdc32.conf', '/usr/local/etc/vdc32-local.conf',
          './vdc32.conf', './vdc32-local.conf']

DEFAULT_DEVICE = '/dev/ttyUSB0'
DEFAULT_ADDRESS = 1


def monitor(board, interval=1.0):
    """
    Read and print all of the channel voltages every 'interval' seconds, until interrupted, or until a read fails.

    :param board: A dcboard.DCBoard instance
    :param interval: Time in seconds between reads
    :return: The number of successful reads
    """
    count = 0
    try:
        while True:
            readings = board.read_all_voltages()
            count += 1
            print(time.strftime('%H:%M:%S') + ' ' + ' '.join(['%7.3f' % r.voltage for r in readings]))
            time.sleep(interval)
    except KeyboardInterrupt:
        print('Monitoring stopped after %d reads.' % count)
    except ModbusError as e:
        logging.error('Monitoring stopped after %d reads: %s' % (count, e))
    return count


if __name__ == '__main__':
    CP = conparser(defaults={})
    CPfile = CP.read(CPPATH)
    if not CPfile:
        print("None of the specified configuration files found: %s" % (CPPATH,))

    parser = argparse.ArgumentParser(description='Communicate with a 32-channel DC voltage board, by sending packets in "master" mode.',
                                     epilog='Run this as "python -i %s" to drop into the Python prompt after starting up.' % sys.argv[0])
    parser.add_argument('task', nargs='?', default='info', help='What to do - info, voltages, channels or monitor')
    parser.add_argument('--device', dest='device', default=None,
                        help='Serial port device name, eg /dev/ttyUSB0 or COM5')
    parser.add_argument('--baudrate', dest='baudrate', default=None, type=int,
                        help='Serial port speed, one of 9600, 19200, 38400 or 57600')
    parser.add_argument('--address', dest='address', default=None, type=int,
                        help='Modbus address, 1-128')
    parser.add_argument('--interval', dest='interval', default=1.0, type=float,
                        help='Time in seconds between reads, for the monitor task')
    parser.add_argument('--set-address', dest='set_address', default=None, type=int,
                        help='Write a new Modbus address to the board before running the task')
    parser.add_argument('--set-baudrate', dest='set_baudrate', default=None, type=int,
                        help='Write a new baud rate to the board before running the task')
    parser.add_argument('--set-temperature', dest='set_temperature', default=None, type=int,
                        help='Write a new set temperature (deg C) to the board before running the task')
    parser.add_argument('--set-iodir', dest='set_iodir', default=None, type=lambda x: int(x, 0),
                        help='Write a new IO direction bitmap (eg 0x00FF) to the board before running the task')
    parser.add_argument('--set-ioval', dest='set_ioval', default=None, type=lambda x: int(x, 0),
                        help='Write a new IO value bitmap (eg 0x0001) to the board before running the task')
    parser.add_argument('--debug', dest='debug', default=False, action='store_true',
                        help='If given, drop to the DEBUG log level, otherwise use INFO')
    args = parser.parse_args()

    if args.device is None:
        args.device = CP.get('default', 'device', fallback=DEFAULT_DEVICE)
    if args.baudrate is None:
        args.baudrate = CP.getint('default', 'baudrate', fallback=57600)
    if args.address is None:
        args.address = CP.getint('default', 'address', fallback=DEFAULT_ADDRESS)

    if args.debug:
        loglevel = logging.DEBUG
    else:
        loglevel = logging.INFO

    fh = logging.FileHandler(filename=LOGFILE, mode='w')
    fh.setLevel(logging.DEBUG)   # All log messages go to the log file
    sh = logging.StreamHandler()
    sh.setLevel(loglevel)        # Some or all log messages go to the console
    # noinspection PyArgumentList
    logging.basicConfig(handlers=[fh, sh],
                        level=logging.DEBUG,
                        format='%(levelname)s:%(name)s %(created)14.3f - %(message)s')

    from vdc32 import transport
    from vdc32 import dcboard

    tlogger = logging.getLogger('T')
    conn = transport.Connection(devicename=args.device,
                                baudrate=args.baudrate,
                                timeout=CP.getfloat('default', 'timeout', fallback=transport.TIMEOUT),
                                frame_delay=CP.getfloat('default', 'frame_delay', fallback=transport.FRAME_DELAY),
                                logger=tlogger)

    blogger = logging.getLogger('DC:%d' % args.address)
    b = dcboard.DCBoard(conn=conn, modbus_address=args.address, logger=blogger)

    if args.set_temperature is not None:
        b.write_set_temperature(args.set_temperature)
    if args.set_iodir is not None:
        b.write_io_direction(args.set_iodir)
    if args.set_ioval is not None:
        b.write_io_value(args.set_ioval)
    if args.set_address is not None:
        b.write_device_address(args.set_address)
        b.set_modbus_address(args.set_address)
        print('Board address changed to %d.' % args.set_address)
    if args.set_baudrate is not None:
        b.write_baud_rate(args.set_baudrate)
        conn.reopen(baudrate=args.set_baudrate)
        print('Board baud rate changed to %d.' % args.set_baudrate)

    if args.task.upper() == 'INFO':
        print('Reading board status as "b" on address %d.' % b.modbus_address)
        b.read_device_snapshot()
        print(b)
    elif args.task.upper() == 'VOLTAGES':
        print('Reading voltages from board "b" on address %d.' % b.modbus_address)
        for reading in b.read_all_voltages():
            print(reading)
    elif args.task.upper() == 'CHANNELS':
        print('Reading channel status from board "b" on address %d.' % b.modbus_address)
        for reading in b.read_channels():
            print(reading)
    elif args.task.upper() == 'MONITOR':
        print('Monitoring board "b" on address %d every %4.2f seconds, Ctrl-C to stop.' % (b.modbus_address, args.interval))
        monitor(b, interval=args.interval)
    else:
        print('Task must be one of info, voltages, channels or monitor - not %s. Exiting.' % args.task)
        sys.exit(-1)
