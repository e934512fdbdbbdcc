# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
mrbwrite - Python client for mruby/c boards.

This package writes compiled mruby bytecode to a board over a serial
link using the line-based mrbwrite protocol, verifies it with CRC-8,
and starts it.

Example usage:
    import asyncio
    from mrbwrite import MrbwriteProtocol, Transport, get_profile

    async def main(bytecode):
        profile = get_profile("kani")
        transport = Transport("/dev/ttyUSB0")
        proto = MrbwriteProtocol(transport, profile)

        async with transport.session(profile):
            if not await proto.ensure_command_mode():
                return
            if await proto.write_bytecode(bytecode):
                await proto.verify_bytecode(bytecode)
                await proto.execute_program()

    asyncio.run(main(open("app.mrb", "rb").read()))
"""

from .crc8 import crc8, DEFAULT_POLY
from .events import (
    EventSink,
    LoggingEventSink,
    ProtocolState,
    TransportListener,
)
from .lines import LineSplitter, LINE_DELIMITER
from .profiles import BOARD_PROFILES, DEFAULT_BOARD, DeviceProfile, get_profile
from .protocol import (
    MrbwriteProtocol,
    PostCommand,
    Outcome,
    VerifyResult,
    ProtocolTimeout,
    ProtocolError,
    ModeTransitionTimeout,
    VerifyMismatch,
)
from .toolchain import (
    CompileResult,
    MrbcCompiler,
    MrubyRunner,
    RunResult,
    hex_dump,
)
from .transport import (
    Transport,
    TransportError,
    ConnectionError,
)

__version__ = "0.1.0"

__all__ = [
    # CRC
    "crc8",
    "DEFAULT_POLY",
    # Profiles
    "BOARD_PROFILES",
    "DEFAULT_BOARD",
    "DeviceProfile",
    "get_profile",
    # Events
    "EventSink",
    "LoggingEventSink",
    "ProtocolState",
    "TransportListener",
    # Line framing
    "LineSplitter",
    "LINE_DELIMITER",
    # Transport
    "Transport",
    "TransportError",
    "ConnectionError",
    # Protocol
    "MrbwriteProtocol",
    "PostCommand",
    "Outcome",
    "VerifyResult",
    "ProtocolTimeout",
    "ProtocolError",
    "ModeTransitionTimeout",
    "VerifyMismatch",
    # Host tools
    "CompileResult",
    "MrbcCompiler",
    "MrubyRunner",
    "RunResult",
    "hex_dump",
]
