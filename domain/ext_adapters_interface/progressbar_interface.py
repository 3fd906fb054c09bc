# coding: utf-8
"""@brief Module declaring the interface to which must comply all concrete implementations of progress bar handlers

Flashing tools only see these interfaces (through FlasherContext), the CLI picks a drawing or silent implementation
"""
import abc

def _implements_all(subclass, method_names) -> bool:
    return all(callable(getattr(subclass, name, None)) for name in method_names)

class ProgressBarInterface(metaclass=abc.ABCMeta):
    """@brief A progress bar, used as a context manager around a long operation (eg: writing one flash part)"""

    REQUIRED_METHODS = ('__enter__', '__exit__', 'start', 'update', 'finish')

    @abc.abstractmethod
    def __init__(self, name: str, min_value: int, max_value: int, show_eta: bool = False, *args, **kwargs):
        """@brief Constructor

        @param name The label displayed before the bar
        @param min_value The value corresponding to 0% progress
        @param max_value The value corresponding to 100% progress
        @param show_eta Should an estimated completion time be displayed?
        """
        raise NotImplementedError

    @abc.abstractmethod
    def __enter__(self):
        raise NotImplementedError

    @abc.abstractmethod
    def __exit__(self, type, value, traceback):
        """@brief Leave the bar on screen, even if the operation was interrupted by an exception"""
        raise NotImplementedError

    @abc.abstractmethod
    def start(self):
        """@brief Display the bar at 0%"""
        raise NotImplementedError

    @abc.abstractmethod
    def update(self, value: int, raise_on_out_of_bounds = False):
        """@brief Move the bar to @p value

        @param value The new value, between min_value and max_value
        @param raise_on_out_of_bounds Should values outside [min_value, max_value] raise IndexError? If False, they are clamped
        """
        raise NotImplementedError

    @abc.abstractmethod
    def finish(self):
        """@brief Display the bar at 100%"""
        raise NotImplementedError

    @classmethod
    def __subclasshook__(cls, subclass):
        if cls is not ProgressBarInterface:
            return NotImplemented
        return _implements_all(subclass, cls.REQUIRED_METHODS) or NotImplemented

class ProgressBarFactoryInterface(metaclass=abc.ABCMeta):
    """@brief Factory injected into FlasherContext, creating one progress bar per operation"""

    @staticmethod
    @abc.abstractmethod
    def create(*args, **kwargs):
        """@brief Generate a progress bar instance

        @note All arguments are passed as is to the progress bar constructor
        """
        raise NotImplementedError

    @classmethod
    def __subclasshook__(cls, subclass):
        if cls is not ProgressBarFactoryInterface:
            return NotImplemented
        return _implements_all(subclass, ('create',)) or NotImplemented
