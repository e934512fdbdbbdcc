# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
mrbwrite protocol state machine.

The device has no explicit handshake: it enters command mode on its own
and announces it with a ``+OK mruby/c`` banner somewhere in its output.
Replies are plain lines starting with ``+OK``, ``-ERR`` or ``+DONE``.
This module tracks the mode from the text the transport delivers,
correlates each command with the next reply line, and implements the
clear/write/verify/execute operations on top of that.

Protocol failures are reported to the :class:`~mrbwrite.events.EventSink`
and returned as falsy values; they are never raised.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .crc8 import DEFAULT_POLY, crc8
from .events import EventSink, LoggingEventSink, ProtocolState, TransportListener
from .lines import LINE_DELIMITER
from .profiles import DeviceProfile
from .transport import ConnectionError, Transport, TransportError

logger = logging.getLogger(__name__)

SUCCESS_PREFIX = "+OK"
ERROR_PREFIX = "-ERR"
DONE_PREFIX = "+DONE"
REPLY_PREFIXES = (SUCCESS_PREFIX, ERROR_PREFIX, DONE_PREFIX)

COMMAND_MODE_BANNER = "+OK mruby/c"
WRITE_CONFIRMATION = "+OK Write bytecode"

MODE_ENTRY_ATTEMPTS = 30
MODE_ENTRY_INTERVAL = 1.0
RESPONSE_TIMEOUT = 5.0
WRITE_TIMEOUT = 10.0

_TRAILING_HEX = re.compile(r"([0-9a-fA-F]{2,})\s*$")


class ProtocolTimeout(TransportError):
    """No matching reply within the response window."""
    pass


class ProtocolError(TransportError):
    """Error-prefixed or malformed reply."""
    pass


class ModeTransitionTimeout(TransportError):
    """The device never entered command mode."""
    pass


class VerifyMismatch(TransportError):
    """Device CRC differs from the locally computed one."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Verify failed. expected=0x{expected:02x} got=0x{actual:02x}")
        self.expected = expected
        self.actual = actual


class PostCommand(Enum):
    """Commands whose aftermath changes how mode exit is detected."""
    NONE = "none"
    EXECUTE = "execute"


@dataclass
class Outcome:
    """Result of a high-level operation. Falsy on failure."""
    ok: bool
    message: str = ""
    error: Optional[TransportError] = None

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class VerifyResult(Outcome):
    local_crc: Optional[int] = None
    device_crc: Optional[int] = None


class MrbwriteProtocol(TransportListener):
    """
    Command-mode tracking and request/response handling for one board.

    Example:
        transport = Transport("/dev/ttyUSB0")
        proto = MrbwriteProtocol(transport, get_profile("kani"))
        await transport.connect(proto.profile)
        if await proto.ensure_command_mode():
            await proto.write_bytecode(bytecode)
            await proto.verify_bytecode(bytecode)
            await proto.execute_program()
    """

    def __init__(
        self,
        transport: Transport,
        profile: Optional[DeviceProfile] = None,
        events: Optional[EventSink] = None,
        mode_entry_attempts: int = MODE_ENTRY_ATTEMPTS,
        mode_entry_interval: float = MODE_ENTRY_INTERVAL,
        response_timeout: float = RESPONSE_TIMEOUT,
        write_timeout: float = WRITE_TIMEOUT,
    ):
        """
        Args:
            transport: Link to the board; the protocol registers itself as a listener
            profile: Board profile, used for the default CRC polynomial
            events: Sink for user-facing messages (default: log them)
            mode_entry_attempts: Tries made by ensure_command_mode()
            mode_entry_interval: Seconds between those tries
            response_timeout: Default reply window in seconds
            write_timeout: Reply window after the bytecode payload
        """
        self.transport = transport
        self.profile = profile
        self.events = events or LoggingEventSink()
        self.mode_entry_attempts = mode_entry_attempts
        self.mode_entry_interval = mode_entry_interval
        self.response_timeout = response_timeout
        self.write_timeout = write_timeout

        self.command_mode = False
        self.last_command = PostCommand.NONE
        self._waiter: Optional[asyncio.Future] = None

        transport.add_listener(self)

    @property
    def connected(self) -> bool:
        return self.transport.connected

    @property
    def state(self) -> ProtocolState:
        if not self.connected:
            return ProtocolState.IDLE
        if self.command_mode:
            return ProtocolState.COMMAND_MODE
        return ProtocolState.DATA_MODE

    @property
    def busy(self) -> bool:
        """True while a command is waiting for its reply."""
        return self._waiter is not None and not self._waiter.done()

    # Transport events

    def on_connect(self) -> None:
        self.command_mode = False
        self.last_command = PostCommand.NONE
        self.events.on_state_changed(self.state)

    def on_line_received(self, line: str) -> None:
        self.check_command_mode_patterns(line)

        if self.busy and line.startswith(REPLY_PREFIXES):
            waiter, self._waiter = self._waiter, None
            waiter.set_result(line)

    def on_pending_line(self, text: str) -> None:
        # The banner is not always newline-terminated
        self.check_command_mode_patterns(text)

    def on_disconnect(self) -> None:
        self.command_mode = False
        self.last_command = PostCommand.NONE
        waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_result(None)
        self.events.on_info("Disconnected.")
        self.events.on_state_changed(ProtocolState.IDLE)

    def check_command_mode_patterns(self, text: str) -> None:
        """Update command mode from a line or the pending tail."""
        if not self.command_mode and COMMAND_MODE_BANNER in text:
            self.command_mode = True
            self.events.on_info("Command mode entered.")
            self.events.on_state_changed(self.state)
        elif (
            self.command_mode
            and self.last_command is PostCommand.EXECUTE
            and text.startswith(SUCCESS_PREFIX)
            and COMMAND_MODE_BANNER not in text
        ):
            self.command_mode = False
            self.last_command = PostCommand.NONE
            self.events.on_info("Command mode exited.")
            self.events.on_state_changed(self.state)

    # Request/response

    def _register_waiter(self) -> Optional[asyncio.Future]:
        if self.busy:
            self._error("Another command is still waiting for a response.")
            return None
        self._waiter = asyncio.get_running_loop().create_future()
        return self._waiter

    async def _await_response(self, waiter: asyncio.Future, timeout: float) -> Optional[str]:
        try:
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            logger.debug("No response within %.1fs", timeout)
            return None
        finally:
            if self._waiter is waiter:
                self._waiter = None

    async def _send_line(self, text: str) -> bool:
        try:
            await self.transport.send_text(text + LINE_DELIMITER)
        except ConnectionError as e:
            self._error(f"Send failed: {e}")
            return False
        return True

    async def _transact(self, command: str, timeout: Optional[float] = None) -> Optional[str]:
        # The waiter must exist before the command leaves, a fast reply could beat it
        waiter = self._register_waiter()
        if waiter is None:
            return None
        if not await self._send_line(command):
            if self._waiter is waiter:
                self._waiter = None
            waiter.cancel()
            return None
        return await self._await_response(waiter, timeout or self.response_timeout)

    def _ready(self, force: bool) -> bool:
        if not self.connected:
            self._error("Not connected.")
            return False
        if not force and not self.command_mode:
            self._error("Not in command mode.")
            return False
        return True

    async def send_command(
        self,
        command: str,
        force: bool = False,
        ignore_response: bool = False,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        """
        Send one command line and wait for its reply.

        Args:
            command: Command text without line ending
            force: Send even when not in command mode
            ignore_response: Return right after sending
            timeout: Reply window in seconds (default response_timeout)

        Returns:
            The first reply line starting with +OK, -ERR or +DONE, or None
            if nothing was sent, the wait timed out, or the link dropped
        """
        if not self._ready(force):
            return None
        if self.busy:
            self._error("Another command is still waiting for a response.")
            return None
        self.events.on_info("> " + command)

        if ignore_response:
            await self._send_line(command)
            return None

        return await self._transact(command, timeout)

    async def ensure_command_mode(self) -> bool:
        """
        Nudge the device into command mode.

        Sends an empty line every mode_entry_interval seconds until the
        banner shows up, at most mode_entry_attempts times.

        Returns:
            True once in command mode, False on timeout or lost connection
        """
        if self.command_mode:
            return True
        if not self.connected:
            return False
        self.events.on_info("Entering command mode...")

        for _ in range(self.mode_entry_attempts):
            try:
                await self.transport.send_text(LINE_DELIMITER)
            except ConnectionError as e:
                self._error(f"Send error during command mode transition: {e}")
                return False
            await asyncio.sleep(self.mode_entry_interval)
            if self.command_mode:
                return True
            if not self.connected:
                return False

        total = self.mode_entry_attempts * self.mode_entry_interval
        self._fail(ModeTransitionTimeout(f"Command mode transition timed out ({total:g}s)."))
        return False

    # High-level operations

    async def write_bytecode(self, binary: bytes) -> Outcome:
        """
        Upload a bytecode image: ``clear``, ``write <N>``, then the raw bytes.

        Any failed step ends the upload. Steps already acknowledged by the
        device are not rolled back.
        """
        if not self.connected:
            return self._fail(ConnectionError("Not connected."))
        if not self.command_mode:
            return self._fail(ProtocolError("Not in command mode."))

        self.events.on_info("> clear")
        resp = await self._transact("clear")
        if not resp or not resp.startswith(SUCCESS_PREFIX):
            return self._fail(self._reply_error("clear command failed", resp))

        write_cmd = f"write {len(binary)}"
        self.events.on_info("> " + write_cmd)
        resp = await self._transact(write_cmd)
        if not resp or not resp.startswith(WRITE_CONFIRMATION):
            return self._fail(self._reply_error("write command failed", resp))

        self.events.on_info(f"Sending bytecode ({len(binary)} bytes)...")
        waiter = self._register_waiter()
        if waiter is None:
            return self._fail(ProtocolError("Response slot busy."))
        try:
            await self.transport.send_binary(binary)
        except ConnectionError as e:
            if self._waiter is waiter:
                self._waiter = None
            waiter.cancel()
            return self._fail(e)
        result = await self._await_response(waiter, self.write_timeout)

        if result and result.startswith(DONE_PREFIX):
            self.events.on_info("Write completed.")
            return Outcome(True, "Write completed.")
        if result and result.startswith(ERROR_PREFIX):
            return self._fail(ProtocolError(f"Write failed: {result}"))
        if result is None:
            if not self.connected:
                return self._fail(ConnectionError("Disconnected."))
            return self._fail(ProtocolTimeout("Write response timeout."))
        return self._fail(ProtocolError(f"Write response unexpected: {result}"))

    async def verify_bytecode(self, binary: bytes, poly: Optional[int] = None) -> VerifyResult:
        """
        Compare the device's CRC-8 of its stored bytecode with ours.

        Args:
            binary: The bytecode that was written
            poly: CRC polynomial (default: from the profile)
        """
        if poly is None:
            poly = self._crc_poly()

        if not self.connected:
            return self._fail(ConnectionError("Not connected."), VerifyResult)
        if not self.command_mode:
            return self._fail(ProtocolError("Not in command mode."), VerifyResult)
        if self.busy:
            return self._fail(
                ProtocolError("Another command is still waiting for a response."), VerifyResult
            )

        self.events.on_info("> verify")
        resp = await self._transact("verify")
        if not resp:
            return self._fail(self._reply_error("verify", resp), VerifyResult)
        if resp.startswith(ERROR_PREFIX):
            return self._fail(ProtocolError("verify: " + resp), VerifyResult)

        match = _TRAILING_HEX.search(resp)
        if not match:
            return self._fail(ProtocolError("verify: unexpected response: " + resp), VerifyResult)

        device_crc = int(match.group(1), 16)
        local_crc = crc8(binary, poly)
        if local_crc != device_crc:
            result = self._fail(VerifyMismatch(local_crc, device_crc), VerifyResult)
        else:
            message = f"Verify succeeded. (CRC8: 0x{local_crc:02x})"
            self.events.on_info(message)
            result = VerifyResult(True, message)
        result.local_crc = local_crc
        result.device_crc = device_crc
        return result

    async def execute_program(self) -> bool:
        """
        Start the stored program.

        The device answers asynchronously; leaving command mode is picked
        up by check_command_mode_patterns(), not by waiting for a reply.
        """
        if not await self.ensure_command_mode():
            return False
        if not self._ready(force=False):
            return False
        self.last_command = PostCommand.EXECUTE
        self.events.on_info("> execute")
        if not await self._send_line("execute"):
            self.last_command = PostCommand.NONE
            return False
        return True

    # Helpers

    def _crc_poly(self) -> int:
        profile = self.profile or self.transport.profile
        return profile.crc_poly if profile else DEFAULT_POLY

    def _reply_error(self, what: str, resp: Optional[str]) -> TransportError:
        if resp is None:
            if not self.connected:
                return ConnectionError("Disconnected.")
            return ProtocolTimeout(f"{what}: no response")
        return ProtocolError(f"{what}: {resp}")

    def _error(self, message: str) -> None:
        self.events.on_error(message)

    def _fail(self, error: TransportError, result_type=Outcome):
        self._error(str(error))
        return result_type(False, str(error), error)
