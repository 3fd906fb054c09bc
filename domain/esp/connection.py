#!/usr/bin/env python3
# coding: utf-8

import enum
import time
from typing import Optional

from logging import getLogger

from domain.flasher_context import FlasherContext
from domain.ext_adapters_interface.progressbar_interface import ProgressBarFactoryInterface
from domain.esp.chips import ChipVariant, ChipParameters, ESP_ROM_OPCODES, CHIP_DETECT_MAGIC_REG_ADDR, get_chip_parameters, chip_from_magic
from domain.esp.errors import ProtocolError, SyncFailedError, BaudChangeError, InvalidStateError
import domain.esp.loader_comm as comm

logger = getLogger(__name__)

DEFAULT_SYNC_ATTEMPTS = 7
DEFAULT_SYNC_DELAY = 0.05
DEFAULT_RESET_DELAYS = (0.1, 0.05)  # EN held low, then IO0 held low after EN release (in s)
STUB_STATUS_BYTES_LENGTH = 2


class ConnectionState(enum.Enum):
    DISCONNECTED = 'Disconnected'
    RESETTING = 'Resetting'
    SYNCING = 'Syncing'
    CONNECTED_ROM = 'ConnectedRom'
    UPLOADING_STUB = 'UploadingStub'
    CONNECTED_STUB = 'ConnectedStub'
    FLASHING = 'Flashing'
    VERIFYING = 'Verifying'
    ERROR = 'Error'

    def __str__(self) -> str:
        return self.value

CONNECTED_STATES = (ConnectionState.CONNECTED_ROM, ConnectionState.CONNECTED_STUB)
ACTIVITY_STATES = (ConnectionState.FLASHING, ConnectionState.VERIFYING)


class BoardInfo:
    """@brief Summary of what we know about the connected target
    """
    def __init__(self, chip: ChipVariant, magic_value: int, is_stub: bool, baudrate: int):
        self.chip = chip
        self.magic_value = magic_value
        self.is_stub = is_stub
        self.baudrate = baudrate

    def __str__(self) -> str:
        return (f'Chip type: {get_chip_parameters(self.chip).name} (magic 0x{self.magic_value:08x}), '
                f'loader: {"stub" if self.is_stub else "ROM"}, baudrate: {self.baudrate}')


class LoaderSession:
    """@brief Class owning the transport and the protocol state of one connection to an ESP target
    @note Use as a context manager: the transport is released (after a best-effort reset of the target) on every exit path
    """
    def __init__(self, transport,
                 sync_attempts: int = DEFAULT_SYNC_ATTEMPTS,
                 sync_delay: float = DEFAULT_SYNC_DELAY,
                 reset_delays=DEFAULT_RESET_DELAYS,
                 reset_on_exit: bool = True):
        """@brief Constructor
        @param transport The transport (implementing TransportInterface) we read/write serial data from/to
        @param sync_attempts The maximum number of synchronization frames sent before giving up
        @param sync_delay The pause (in s) between two synchronization attempts
        @param reset_delays A tuple of pauses (in s) used during the reset sequence
        @param reset_on_exit Should we restart the target (running its application) when leaving the session
        """
        self.transport = transport
        self.protocol = comm.LoaderProtocol(transport=transport, opcodes=ESP_ROM_OPCODES)
        self.sync_attempts = sync_attempts
        self.sync_delay = sync_delay
        self.reset_delays = reset_delays
        self.reset_on_exit = reset_on_exit
        self.state = ConnectionState.DISCONNECTED
        self.chip: Optional[ChipVariant] = None
        self.chip_parameters: Optional[ChipParameters] = None
        self.magic_value: Optional[int] = None
        self.is_stub = False

    def __enter__(self):
        self.transport.__enter__()
        return self

    def __exit__(self, type, value, traceback):
        try:
            if self.reset_on_exit:
                self.hard_reset()
        except Exception as e:
            logger.warning('Could not reset target while closing session: ' + str(e))
        finally:
            self.transport.__exit__(type, value, traceback)
            self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state: ConnectionState) -> None:
        if state != self.state:
            logger.debug(f'Session state {self.state} -> {state}')
        self.state = state

    def set_state(self, state: ConnectionState) -> None:
        """@brief Move the session to a new state (used by the stub uploader)
        """
        self._set_state(state)

    def _require_state(self, *states: ConnectionState) -> None:
        if self.state not in states:
            raise InvalidStateError(f'Operation not allowed in state {self.state} (expected one of: ' + ', '.join(str(s) for s in states) + ')')

    def is_connected(self) -> bool:
        return self.state in CONNECTED_STATES or self.state in ACTIVITY_STATES

    def _reset_into_bootloader(self) -> None:
        """@brief Toggle control lines to restart the target in serial bootloader mode

        @note On usual boards, RTS drives EN (chip enable, active low) and DTR drives IO0 (boot mode strapping, active low)
        """
        (en_low_delay, boot_strap_delay) = self.reset_delays
        logger.debug('Resetting target into bootloader mode')
        self.transport.set_dtr(False)   # IO0=HIGH
        self.transport.set_rts(True)    # EN=LOW, chip in reset
        time.sleep(en_low_delay)
        self.transport.set_dtr(True)    # IO0=LOW
        self.transport.set_rts(False)   # EN=HIGH, chip out of reset
        time.sleep(boot_strap_delay)
        self.transport.set_dtr(False)   # IO0=HIGH, done
        self.protocol.flush_input()

    def hard_reset(self) -> None:
        """@brief Pulse EN to restart the target (running its application)
        """
        self.transport.set_rts(True)
        time.sleep(self.reset_delays[0])
        self.transport.set_rts(False)

    def _sync(self) -> int:
        """@brief Send synchronization frames until the ROM loader answers
        @return The number of attempts that were needed
        """
        for attempt in range(self.sync_attempts):
            try:
                self.protocol.execute(comm.CommandSync())
                logger.debug(f'Synchronized after {attempt+1} attempt(s)')
                return attempt + 1
            except ProtocolError as e:
                logger.debug(f'Sync attempt #{attempt+1} failed: {str(e)}')
                time.sleep(self.sync_delay)
        raise SyncFailedError(f'No reply to synchronization after {self.sync_attempts} attempt(s), is the target in bootloader mode?')

    def connect(self, reset: bool = True) -> ChipVariant:
        """@brief Bring the target loader to a connected state and identify the chip
        @param reset Should we toggle control lines to force the target into bootloader mode first?
        @return The detected chip variant

        @note Any failure (including transport errors while resetting) leaves the session in the Error state
        """
        self._require_state(ConnectionState.DISCONNECTED, ConnectionState.ERROR)
        try:
            self._set_state(ConnectionState.RESETTING)
            if reset:
                self._reset_into_bootloader()
            self._set_state(ConnectionState.SYNCING)
            self._sync()
            magic_value = self.protocol.execute(comm.CommandReadReg(address=CHIP_DETECT_MAGIC_REG_ADDR))
            variant = chip_from_magic(magic_value)
            self.chip = variant
            self.chip_parameters = get_chip_parameters(variant)
            self.magic_value = magic_value
            self.is_stub = False
            self.protocol.configure(opcodes=self.chip_parameters.rom_opcodes,
                                    status_bytes_length=self.chip_parameters.rom_status_bytes_length,
                                    checksum_seed=self.chip_parameters.checksum_seed)
            self._set_state(ConnectionState.CONNECTED_ROM)
            logger.info(f'Connected to {self.chip_parameters.name}')
            if self.chip_parameters.rom_needs_spi_attach:
                self.execute(comm.CommandSpiAttach(rom_format=True))
        except Exception:
            self._set_state(ConnectionState.ERROR)
            raise
        return variant

    def switch_to_stub(self) -> None:
        """@brief Use the stub loader dialect from now on (invoked once the stub has announced itself)
        """
        self.is_stub = True
        self.protocol.configure(opcodes=self.chip_parameters.stub_opcodes, status_bytes_length=STUB_STATUS_BYTES_LENGTH)
        self._set_state(ConnectionState.CONNECTED_STUB)

    def change_baud(self, baudrate: int) -> None:
        """@brief Switch both the target and the local transport to a new baudrate
        @param baudrate The new baudrate

        @warning A failure is fatal to the session (both sides may disagree on the baudrate), BaudChangeError is raised and the session goes to the Error state
        """
        self._require_state(*CONNECTED_STATES)
        old_baudrate = self.transport.get_baudrate()
        logger.info(f'Changing baudrate from {old_baudrate} to {baudrate}')
        try:
            self.execute(comm.CommandChangeBaudrate(new_baudrate=baudrate, old_baudrate=(old_baudrate if self.is_stub else 0)))
            self.transport.set_baudrate(baudrate)
            time.sleep(0.05)    # Get rid of garbage sent during baudrate change
            self.protocol.flush_input()
            echoed_magic = self.execute(comm.CommandReadReg(address=CHIP_DETECT_MAGIC_REG_ADDR))
        except ProtocolError as e:
            self._set_state(ConnectionState.ERROR)
            raise BaudChangeError(f'Failed switching to {baudrate} bauds') from e
        if echoed_magic != self.magic_value:
            self._set_state(ConnectionState.ERROR)
            raise BaudChangeError(f'Unexpected identification value 0x{echoed_magic:08x} after switching to {baudrate} bauds')

    def configure_flash(self, flash_size: int) -> None:
        """@brief Tell the loader about the size of the attached flash
        @param flash_size The flash size in bytes
        """
        self._require_state(*CONNECTED_STATES)
        self.execute(comm.CommandSpiSetParams(total_size=flash_size))

    def execute(self, command: comm.LoaderCommand):
        """@brief Run a command on the loader
        @param command The command to execute
        @return The outcome of the command
        """
        if self.state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
            raise InvalidStateError(f'Cannot run {str(command)} in state {self.state}')
        return self.protocol.execute(command)

    def capabilities(self) -> comm.LoaderCapabilities:
        """@brief Get what the loader currently running on the target supports
        """
        if self.chip_parameters is None:
            raise InvalidStateError('Target not identified yet')
        parameters = self.chip_parameters
        if self.is_stub:
            return comm.LoaderCapabilities(flash_block_size=parameters.stub_flash_block_size,
                                           ram_block_size=parameters.ram_block_size,
                                           supports_compression=True,
                                           supports_md5=True,
                                           auto_erase=True,
                                           is_stub=True,
                                           sector_size=parameters.sector_size)
        return comm.LoaderCapabilities(flash_block_size=parameters.rom_flash_block_size,
                                       ram_block_size=parameters.ram_block_size,
                                       supports_compression=parameters.rom_supports_compression,
                                       supports_md5=parameters.rom_supports_md5,
                                       auto_erase=True,
                                       is_stub=False,
                                       sector_size=parameters.sector_size,
                                       begin_has_encrypt_flag=parameters.rom_begin_has_encrypt_flag)

    def board_info(self) -> BoardInfo:
        self._require_state(*CONNECTED_STATES)
        return BoardInfo(chip=self.chip, magic_value=self.magic_value, is_stub=self.is_stub, baudrate=self.transport.get_baudrate())

    def _on_activity(self, state: Optional[ConnectionState]) -> None:
        """@brief State listener given to flasher contexts
        @param state The activity starting (FLASHING or VERIFYING), or None once done
        """
        if state is None:
            self._set_state(ConnectionState.CONNECTED_STUB if self.is_stub else ConnectionState.CONNECTED_ROM)
        else:
            self._require_state(*CONNECTED_STATES, *ACTIVITY_STATES)
            self._set_state(state)

    def create_flasher_context(self, progressbar_factory: ProgressBarFactoryInterface, logger_to_use=None) -> FlasherContext:
        """@brief Build a FlasherContext wired to this session
        @param progressbar_factory The progress bar factory to use
        @param logger_to_use The logger flashing tools will write to (this module's logger if None)
        """
        self._require_state(*CONNECTED_STATES)
        return FlasherContext(name=self.chip_parameters.name,
                              progressbar_factory=progressbar_factory,
                              logger=(logger_to_use if logger_to_use is not None else logger),
                              target_command_executor=self.execute,
                              target_capabilities=self.capabilities,
                              state_listener=self._on_activity)
