# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Transport layer for mrbwrite communication.

Owns the serial port: opening and closing it, a background read loop
that reassembles CRLF lines, and locked writes. Received data is handed
to registered :class:`~mrbwrite.events.TransportListener` objects.

pyserial is blocking, so every port call runs in the event loop's
default executor while the loop itself stays single-threaded.
"""

import asyncio
import functools
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import serial

from .events import TransportListener
from .lines import LineSplitter
from .profiles import DeviceProfile

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Base exception for transport and protocol errors."""
    pass


class ConnectionError(TransportError):
    """The serial link could not be opened, written or closed."""
    pass


class Transport:
    """
    Serial transport for an mrbwrite-capable board.

    Can be used as an async context manager via :meth:`session`:
        async with Transport("/dev/ttyUSB0").session(profile) as t:
            await t.send_text("version\\r\\n")
    """

    def __init__(
        self,
        port: str,
        read_timeout: float = 0.1,
        chunk_size: int = 256,
    ):
        """
        Create a transport for a serial port. Nothing is opened yet.

        Args:
            port: Serial port path (e.g., "/dev/ttyUSB0")
            read_timeout: Poll interval of the read loop in seconds
            chunk_size: Maximum bytes per read
        """
        self._port = port
        self._read_timeout = read_timeout
        self._chunk_size = chunk_size
        self._ser: Optional[serial.Serial] = None
        self._profile: Optional[DeviceProfile] = None
        self._splitter = LineSplitter()
        self._listeners: List[TransportListener] = []
        self._keep_reading = False
        self._read_task: Optional[asyncio.Task] = None
        self._link_lost_task: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Task] = None
        self._read_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self.connected = False

    @property
    def port(self) -> str:
        """Return the serial port name."""
        return self._port

    @property
    def profile(self) -> Optional[DeviceProfile]:
        """Profile of the current connection, if any."""
        return self._profile

    @property
    def pending(self) -> str:
        """Received text not yet terminated by CRLF."""
        return self._splitter.pending

    def add_listener(self, listener: TransportListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: TransportListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def connect(self, profile: DeviceProfile) -> None:
        """
        Open the port at the profile's baud rate and start reading.

        Raises:
            ConnectionError: If the port cannot be opened
        """
        if self._closing is not None:
            await asyncio.shield(self._closing)
        if self._ser is not None:
            raise ConnectionError(f"Already connected to {self._port}")

        loop = asyncio.get_running_loop()
        opener = functools.partial(
            serial.Serial, self._port, profile.baud_rate, timeout=self._read_timeout
        )
        try:
            ser = await loop.run_in_executor(None, opener)
        except (serial.SerialException, OSError, ValueError) as e:
            raise ConnectionError(f"Could not open {self._port}: {e}") from e

        self._ser = ser
        self._profile = profile
        self._splitter.reset()
        self.connected = True
        self._keep_reading = True
        self._read_task = loop.create_task(self._read_loop(ser))
        logger.info("Connected to %s (%s, %d baud)", self._port, profile.name, profile.baud_rate)
        self._notify("on_connect")

    async def disconnect(self) -> None:
        """
        Stop reading, close the port and notify listeners.

        Does nothing if the transport is already closed. A call made
        while another disconnect is in progress returns once that one
        has closed the port.
        """
        if self._closing is None:
            ser, self._ser = self._ser, None
            if ser is None:
                return
            self._closing = asyncio.get_running_loop().create_task(self._close(ser))
        await asyncio.shield(self._closing)

    async def _close(self, ser: serial.Serial) -> None:
        try:
            await self._shutdown(ser)
        finally:
            self._closing = None

    async def _shutdown(self, ser: serial.Serial) -> None:
        self.connected = False
        self._keep_reading = False

        # Wake up a read blocked in the worker thread
        if hasattr(ser, "cancel_read"):
            try:
                ser.cancel_read()
            except (serial.SerialException, OSError) as e:
                logger.debug("cancel_read failed: %s", e)

        task, self._read_task = self._read_task, None
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except Exception as e:
                logger.warning("Read loop ended with error: %s", e)

        text, lines = self._splitter.flush()
        if text:
            self._dispatch(text, lines)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, ser.close)
        except (serial.SerialException, OSError) as e:
            logger.warning("Error closing %s: %s", self._port, e)

        self._splitter.reset()
        self._profile = None
        logger.info("Disconnected from %s", self._port)
        self._notify("on_disconnect")

    @asynccontextmanager
    async def session(self, profile: DeviceProfile):
        """Connect for the duration of an ``async with`` block."""
        await self.connect(profile)
        try:
            yield self
        finally:
            await self.disconnect()

    async def write(self, data: bytes) -> None:
        """
        Write bytes to the port, holding the write lock.

        Raises:
            ConnectionError: If not connected or the write fails
        """
        ser = self._ser
        if ser is None or not self.connected:
            raise ConnectionError("Not connected")

        loop = asyncio.get_running_loop()
        async with self._write_lock:
            try:
                await loop.run_in_executor(None, self._write_blocking, ser, data)
            except (serial.SerialException, OSError) as e:
                raise ConnectionError(f"Write to {self._port} failed: {e}") from e
        logger.debug(">> %r", data)

    async def send_text(self, text: str) -> None:
        """Encode text as UTF-8 and write it."""
        await self.write(text.encode("utf-8"))

    async def send_binary(self, data: bytes) -> None:
        """Write raw bytes verbatim."""
        await self.write(bytes(data))

    @staticmethod
    def _write_blocking(ser: serial.Serial, data: bytes) -> None:
        ser.write(data)
        ser.flush()

    def _read_chunk(self, ser: serial.Serial) -> bytes:
        waiting = ser.in_waiting
        return ser.read(min(max(1, waiting), self._chunk_size))

    async def _read_loop(self, ser: serial.Serial) -> None:
        loop = asyncio.get_running_loop()
        while self.connected and self._keep_reading:
            try:
                async with self._read_lock:
                    data = await loop.run_in_executor(None, self._read_chunk, ser)
            except (serial.SerialException, OSError) as e:
                if not self._keep_reading:
                    break
                # Treated as a lost link; disconnect() notifies listeners
                logger.warning("Read error on %s: %s", self._port, e)
                self._link_lost_task = loop.create_task(self.disconnect())
                break
            if data:
                # One raw event per chunk, even if it only holds part of a character
                self._dispatch(*self._splitter.feed(data))

    def _dispatch(self, text: str, lines: List[str]) -> None:
        self._notify("on_raw_data", text)
        for line in lines:
            logger.debug("<< %s", line)
            self._notify("on_line_received", line)
        pending = self._splitter.pending
        if text and pending:
            self._notify("on_pending_line", pending)

    def _notify(self, event: str, *args) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, event)(*args)
            except Exception:
                logger.exception("Listener %r failed in %s", listener, event)
