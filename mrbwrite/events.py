# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Listener interfaces connecting the transport, the protocol and the UI.

Subclass and override only the callbacks you care about; the defaults
do nothing.
"""

import logging
from enum import Enum

logger = logging.getLogger("mrbwrite")


class ProtocolState(Enum):
    """Local mirror of the device state."""
    IDLE = "idle"
    DATA_MODE = "data"
    COMMAND_MODE = "command"

    def __str__(self) -> str:
        return self.value


class TransportListener:
    """Receives events from a :class:`~mrbwrite.transport.Transport`."""

    def on_connect(self) -> None:
        """The link has been opened and the read loop started."""

    def on_raw_data(self, text: str) -> None:
        """Decoded text of one read chunk, before any line events."""

    def on_line_received(self, line: str) -> None:
        """A complete line, without its CRLF."""

    def on_pending_line(self, text: str) -> None:
        """The unterminated tail after a chunk, when non-empty."""

    def on_disconnect(self) -> None:
        """The link has been closed."""


class EventSink:
    """Receives user-facing events from the protocol."""

    def on_info(self, message: str) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass

    def on_state_changed(self, state: ProtocolState) -> None:
        pass


class LoggingEventSink(EventSink):
    """Event sink that forwards messages to the ``mrbwrite`` logger."""

    def on_info(self, message: str) -> None:
        logger.info("%s", message)

    def on_error(self, message: str) -> None:
        logger.error("%s", message)

    def on_state_changed(self, state: ProtocolState) -> None:
        logger.debug("State: %s", state)
