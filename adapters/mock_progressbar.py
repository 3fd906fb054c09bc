# coding: utf-8
"""@brief Module implementing a history-recording progress bar for unit tests
"""
from typing import List

from domain.ext_adapters_interface.progressbar_interface import ProgressBarInterface, ProgressBarFactoryInterface

class MockProgressBar(ProgressBarInterface):
    """@brief Concrete implementation of ProgressBarInterface for unit test purposes"""
    def __init__(self, name: str, min_value: int, max_value: int, show_eta: bool = False, *args, **kwargs):
        self.name = name
        self.min_value = min_value
        self.max_value = max_value
        self.started = False
        self.finished = False
        self.updates: List[int] = []

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        pass

    def update(self, value: int, raise_on_out_of_bounds = False):
        if value < self.min_value or value > self.max_value:
            raise IndexError("Update value out of bounds")
        self.updates.append(value)

    def get_completion(self) -> float:
        """@brief Get the last reported progress, between 0.0 and 1.0"""
        if len(self.updates) == 0:
            return 0.0
        return (self.updates[-1] - self.min_value) / (self.max_value - self.min_value)

    def finish(self):
        self.finished = True

    def start(self):
        self.started = True

class MockProgressBarFactory(ProgressBarFactoryInterface):
    """@brief Factory keeping track of all progress bars it created"""
    created_bars: List[MockProgressBar] = []

    @staticmethod
    def create(*args, **kwargs):
        bar = MockProgressBar(*args, **kwargs)
        MockProgressBarFactory.created_bars.append(bar)
        return bar

    @staticmethod
    def reset():
        MockProgressBarFactory.created_bars.clear()
