# coding: utf-8
"""@brief Module implementing the byte-stream transport towards the target using python pyserial
"""
from serial import Serial

from domain.ext_adapters_interface.transport_interface import TransportInterface

class PySerialTransport(TransportInterface):
    """@brief Concrete implementation of TransportInterface using python pyserial"""

    def __init__(self, port: str, baudrate: int = 115200):
        """@brief Constructor
        @param port The serial device (eg: '/dev/ttyUSB0' or 'COM3'), the port is only opened when entering the context
        @param baudrate The initial baudrate
        """
        self.serial = Serial()
        self.serial.port = port
        self.serial.baudrate = baudrate

    def __enter__(self):
        if not self.serial.is_open:
            self.serial.open()
        return self

    def __exit__(self, type, value, traceback):
        self.close()

    def read(self, timeout: float) -> bytes:
        self.serial.timeout = timeout
        first_byte = self.serial.read(1)
        if len(first_byte) == 0:
            return b''
        return first_byte + self.serial.read(self.serial.in_waiting)  # Get everything already received, without waiting

    def write(self, buffer: bytes) -> None:
        self.serial.write(buffer)
        self.serial.flush()

    def set_dtr(self, state: bool) -> None:
        self.serial.dtr = state

    def set_rts(self, state: bool) -> None:
        self.serial.rts = state

    def set_baudrate(self, baudrate: int) -> None:
        self.serial.baudrate = baudrate

    def get_baudrate(self) -> int:
        return self.serial.baudrate

    def flush_input(self) -> None:
        self.serial.reset_input_buffer()

    def close(self) -> None:
        self.serial.close()
