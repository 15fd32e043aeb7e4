"""
CRC16/Modbus checksum (polynomial 0xA001 reflected, initial value 0xFFFF, no final XOR).

The checksum is sent after the message, low byte first.
"""


def calculate(data, length=None):
    """
    Calculate the CRC16/Modbus checksum over the first 'length' bytes of 'data'.

    :param data: A bytes() object, or a list of integers each in the range 0-255
    :param length: Number of bytes to process - defaults to all of them
    :return: An integer, 0-65535
    """
    if length is None:
        length = len(data)
    if length < 0 or length > len(data):
        raise ValueError('CRC length %d outside the %d bytes of data available' % (length, len(data)))

    crc = 0xFFFF
    for byte in data[:length]:
        crc ^= byte
        for bit in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc


def verify(data, length=None):
    """
    Treat the last two bytes of a 'length' byte buffer as a received CRC (low byte first), and check it against the
    CRC calculated over the preceding bytes.

    :param data: A bytes() object, or a list of integers, containing a message followed by its CRC
    :param length: Number of bytes in the message including the CRC - defaults to all of them
    :return: True if the CRC matches, False if it doesn't, or if there are fewer than 3 bytes
    """
    if length is None:
        length = len(data)
    if length < 3:
        return False
    received = data[length - 2] | (data[length - 1] << 8)
    return calculate(data, length - 2) == received


def append_crc(data, length=None):
    """
    Return a new buffer holding the first 'length' bytes of 'data', followed by the CRC low byte then the CRC high byte.

    :param data: A bytes() object, or a list of integers each in the range 0-255
    :param length: Number of bytes of 'data' to use - defaults to all of them
    :return: A bytes() object, length+2 bytes long
    """
    if length is None:
        length = len(data)
    crc = calculate(data, length)
    return bytes(data[:length]) + bytes([crc & 0xFF, (crc >> 8) & 0xFF])
