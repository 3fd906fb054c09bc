# coding: utf-8
"""@brief Module declaring the interface to which must comply all concrete implementations of byte-stream transports towards the target
"""
import abc

class TransportInterface(metaclass=abc.ABCMeta):
    """@brief Interface to which must comply all concrete implementations of serial transports"""

    @abc.abstractmethod
    def __enter__(self):
        """@brief Ressource acquisition entry point"""
        raise NotImplementedError

    @abc.abstractmethod
    def __exit__(self, type, value, traceback):
        """@brief Ressource release"""
        raise NotImplementedError

    @abc.abstractmethod
    def read(self, timeout: float) -> bytes:
        """@brief Read incoming bytes

        @param timeout The maximum time (in s) to wait for at least one byte

        @return The bytes received (at least one), or an empty buffer if the timeout expired
        """
        raise NotImplementedError

    @abc.abstractmethod
    def write(self, buffer: bytes) -> None:
        """@brief Send bytes to the target

        @param buffer The bytes to send
        """
        raise NotImplementedError

    @abc.abstractmethod
    def set_dtr(self, state: bool) -> None:
        """@brief Assert (True) or release (False) the DTR control line"""
        raise NotImplementedError

    @abc.abstractmethod
    def set_rts(self, state: bool) -> None:
        """@brief Assert (True) or release (False) the RTS control line"""
        raise NotImplementedError

    @abc.abstractmethod
    def set_baudrate(self, baudrate: int) -> None:
        """@brief Reconfigure the local side of the link to a new baudrate"""
        raise NotImplementedError

    @abc.abstractmethod
    def get_baudrate(self) -> int:
        """@brief Get the current baudrate of the local side of the link"""
        raise NotImplementedError

    @abc.abstractmethod
    def flush_input(self) -> None:
        """@brief Discard all bytes received but not read yet"""
        raise NotImplementedError

    @abc.abstractmethod
    def close(self) -> None:
        """@brief Release the underlying device"""
        raise NotImplementedError

    @classmethod
    def __subclasshook__(cls, subclass):
        if cls is not TransportInterface:
            return NotImplemented
        required_methods = ('read', 'write', 'set_dtr', 'set_rts', 'set_baudrate', 'get_baudrate', 'flush_input', 'close')
        return all(callable(getattr(subclass, name, None)) for name in required_methods) or NotImplemented
