#!/usr/bin/env python

import atexit
import argparse
import logging
import sys
import threading

LOGFILE = 'simulate.log'
SIM_OBJECT = None   # Set to the simulated board instance when it's started


def cleanup():
    """Called automatically on exit - sets .wants_exit=True on the simulated board, so that the simulation thread
       shuts down cleanly.
    """
    print('Cleanup called.')
    if SIM_OBJECT is not None:
        SIM_OBJECT.wants_exit = True


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Simulate a 32-channel DC voltage board, and listen forever in "slave" mode for packets',
                                     epilog='Run this as "python -i %s" to drop into the Python prompt after starting up.' % sys.argv[0])
    parser.add_argument('--device', dest='device', default=None, required=True,
                        help='Serial port device name, eg /dev/ttyS0 or COM6')
    parser.add_argument('--baudrate', dest='baudrate', default=57600, type=int,
                        help='Serial port speed, one of 9600, 19200, 38400 or 57600')
    parser.add_argument('--address', dest='address', default=1, type=int,
                        help='Modbus address, 1-128')
    parser.add_argument('--debug', dest='debug', default=False, action='store_true',
                        help='If given, drop to the DEBUG log level, otherwise use INFO')
    args = parser.parse_args()

    if args.debug:
        loglevel = logging.DEBUG
    else:
        loglevel = logging.INFO

    fh = logging.FileHandler(filename=LOGFILE, mode='w')
    fh.setLevel(logging.DEBUG)   # All log messages go to the log file
    sh = logging.StreamHandler()
    sh.setLevel(loglevel)        # Some or all log messages go to the console
    logformat = '%(levelname)s:%(name)s %(created)14.3f - %(threadName)s: %(message)s'
    # noinspection PyArgumentList
    logging.basicConfig(handlers=[fh, sh],
                        level=logging.DEBUG,
                        format=logformat)

    import serial

    from simulate import sim_dcboard

    ser = serial.Serial(args.device, baudrate=args.baudrate, timeout=1.0)

    slogger = logging.getLogger('SIM:%d' % args.address)
    s = SIM_OBJECT = sim_dcboard.SimDCBoard(modbus_address=args.address, logger=slogger)
    s.baudrate = args.baudrate
    simthread = threading.Thread(target=s.listen_loop, args=(ser,), daemon=False, name='SIM.thread')
    print('Simulating board as "s" on address %d, device %s.' % (args.address, args.device))

    atexit.register(cleanup)

    simthread.start()
    print('Started simulation thread')
