"""
Modbus-RTU master for the GJVdc-32 32-channel DC voltage monitoring board.

The contents are:

        crc.py - CRC16/Modbus checksum used to frame every packet.

        registers.py - register addresses and the named register table for protocol version GJVdc-32.

        conversion.py - helper functions to convert between the raw 16-bit register contents and real values
                        (volts, baud rates, text).

        errors.py - exception classes raised by the transport and the device classes.

        transport.py - low-level Modbus-RTU code (read holding registers, write multiple registers).

        dcboard.py - class to query and configure a single board.

"""
