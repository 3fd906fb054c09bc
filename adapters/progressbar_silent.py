# coding: utf-8
"""@brief Module implementing a non-drawing progress bar, used when logs are verbose enough to report progress
"""
from domain.ext_adapters_interface.progressbar_interface import ProgressBarInterface, ProgressBarFactoryInterface

class SilentProgressBar(ProgressBarInterface):
    """@brief Concrete implementation of ProgressBarInterface that displays nothing"""
    def __init__(self, name: str, min_value: int, max_value: int, show_eta: bool = False, *args, **kwargs):
        self.name = name

    def __enter__(self):
        return self

    def __exit__(self, type, value, traceback):
        pass

    def update(self, *args, **kwargs):
        pass

    def finish(self, *args, **kwargs):
        pass

    def start(self, *args, **kwargs):
        pass

class SilentProgressBarFactory(ProgressBarFactoryInterface):
    @staticmethod
    def create(*args, **kwargs):
        return SilentProgressBar(*args, **kwargs)
