"""
Code used to simulate a 32-channel DC voltage monitoring board, for testing. Uses the 'vdc32' module.

The contents are:

        sim_dcboard.py - Simulates a single board, either in-process (SimStream, which behaves like a serial port)
                         or as a Modbus slave on a real serial port (SimDCBoard.listen_loop()).

"""
