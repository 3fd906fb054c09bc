# coding: utf-8
"""@brief Module implementing a serial console to the target application, using pyserial's miniterm
"""
from logging import getLogger

from serial.tools.miniterm import Miniterm

logger = getLogger(__name__)

MONITOR_BAUDRATE = 115200
EXIT_CHARACTER = chr(0x1d)  # Ctrl+]
MENU_CHARACTER = chr(0x14)  # Ctrl+T

def run_monitor(serial_instance, baudrate: int = MONITOR_BAUDRATE) -> None:
    """@brief Forward the console to the target serial port until the user exits with Ctrl+]

    @param serial_instance An open pyserial Serial instance
    @param baudrate The baudrate of the application running on the target

    @note The miniterm menu (Ctrl+T) allows pulsing RTS (Ctrl+T Ctrl+R), which restarts the target
    """
    serial_instance.baudrate = baudrate
    serial_instance.timeout = 1
    miniterm = Miniterm(serial_instance, echo=False, eol='crlf', filters=['direct'])
    miniterm.exit_character = EXIT_CHARACTER
    miniterm.menu_character = MENU_CHARACTER
    miniterm.raw = False
    miniterm.set_rx_encoding('UTF-8', errors='replace')
    miniterm.set_tx_encoding('UTF-8')
    logger.info(f'Monitoring {serial_instance.port} at {baudrate} bauds, exit with Ctrl+]')
    miniterm.start()
    try:
        miniterm.join(True)
    except KeyboardInterrupt:
        logger.info('Monitor interrupted')
    miniterm.join()
    miniterm.close()
