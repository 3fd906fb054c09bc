# coding: utf-8
"""@brief Module providing context for flasher code
"""

from domain.ext_adapters_interface.progressbar_interface import ProgressBarInterface, ProgressBarFactoryInterface

class FlasherContext:
    """@brief Flasher context container, including handlers for UI (logger, progressbar) and for target access
    @note This class is used for dependency injection
    """

    def __init__(self, name: str, progressbar_factory: ProgressBarFactoryInterface, logger, target_command_executor, target_capabilities, state_listener=None):
        """@brief Construct a Flasher context container
        @param name The name of the context
        @param progressbar_factory A factory generating progress bar instances
        @param logger A logger to use
        @param target_command_executor A callback to execute commands towards the loader running on the target
        @param target_capabilities A callback returning the LoaderCapabilities of the loader currently running on the target
        @param state_listener An optional callback notified when flashing activities start (with the new state) and end (with None)
        """
        self.name = name
        self.progressbar_factory = progressbar_factory
        self.logger = logger
        if not callable(target_command_executor):
            raise TypeError("target_command_executor argument is not callable")
        self._command_executor = target_command_executor
        if not callable(target_capabilities):
            raise TypeError("target_capabilities argument is not callable")
        self._capabilities_getter = target_capabilities
        if state_listener is not None and not callable(state_listener):
            raise TypeError("state_listener argument is not callable")
        self._state_listener = state_listener

    def create_progress_bar(self, name: str, min_value: int, max_value: int, *args, **kwargs) -> ProgressBarInterface:
        """@brief Construct a progress bar based on min and max values
        @param name The name of the progress bar
        @param min_value The minimum value for progress display (corresponds to 0% progress)
        @param max_value The maximum value for progress display (corresponds to 100% progress)
        @return The Progress bar that has been created
        @note All other arguments are to be passed as are to the ProgressBar contructor
        """
        return self.progressbar_factory.create(name=name, min_value=min_value, max_value=max_value, *args, **kwargs)

    def execute_on_target(self, command):
        """@brief Execute a command on the target, using the provided target_command_executor

        @param command The command to execute

        @return An optional return value from the command
        """
        return self._command_executor(command)

    def get_capabilities(self):
        """@brief Get the capabilities of the loader currently running on the target
        """
        return self._capabilities_getter()

    def report_state(self, state) -> None:
        """@brief Notify the state listener (if any) that a flashing activity starts or ends

        @param state The new activity state, or None when returning to idle
        """
        if self._state_listener is not None:
            self._state_listener(state)
