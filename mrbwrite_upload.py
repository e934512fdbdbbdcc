#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Bytecode writer for mruby/c boards via the mrbwrite protocol.

Usage:
    python mrbwrite_upload.py ports
    python mrbwrite_upload.py compile app.rb -o app.mrb
    python mrbwrite_upload.py run app.rb
    python mrbwrite_upload.py --port /dev/ttyUSB0 --board kani write app.rb
    python mrbwrite_upload.py --port /dev/ttyUSB0 verify app.mrb
    python mrbwrite_upload.py --port /dev/ttyUSB0 execute --monitor 5
    python mrbwrite_upload.py --port /dev/ttyUSB0 send version
    python mrbwrite_upload.py --port /dev/ttyUSB0 burn app.rb

Requirements:
    pip install pyserial
    mrbc / mruby on PATH for compiling and host runs
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional

from serial.tools import list_ports

from mrbwrite import (
    BOARD_PROFILES,
    DEFAULT_BOARD,
    ConnectionError,
    EventSink,
    MrbcCompiler,
    MrbwriteProtocol,
    MrubyRunner,
    Transport,
    TransportListener,
    get_profile,
    hex_dump,
)


class ConsoleEvents(EventSink):
    """Print protocol messages the way the log pane shows them."""

    def on_info(self, message: str) -> None:
        print(message, flush=True)

    def on_error(self, message: str) -> None:
        print(f"Error: {message}", file=sys.stderr, flush=True)


class RawEcho(TransportListener):
    """Echo everything the board prints."""

    def on_raw_data(self, text: str) -> None:
        print(text.replace("\r\n", "\n").replace("\r", "\n"), end="", flush=True)


def load_bytecode(path: Path, compiler: MrbcCompiler) -> Optional[bytes]:
    """Read bytecode, compiling first if given Ruby source."""
    if not path.exists():
        print(f"Error: File not found: {path}")
        return None
    if path.suffix != ".rb":
        return path.read_bytes()

    print("Compiling...")
    result = compiler.compile_file(path)
    if not result.ok:
        print(f"Error: {result.error}", file=sys.stderr)
        return None
    print(f"Compile succeeded. ({len(result.bytecode)} bytes)")
    return result.bytecode


def cmd_ports() -> bool:
    """List serial ports."""
    ports = list(list_ports.comports())
    if not ports:
        print("(none)")
        return True
    for i, port in enumerate(ports):
        ids = ""
        if port.vid is not None:
            ids = f" (VID:{port.vid:04x} PID:{port.pid:04x})"
        print(f"Port {i}: {port.device}{ids} {port.description}")
    return True


def cmd_compile(compiler: MrbcCompiler, source: Path, output: Optional[Path]) -> bool:
    """Compile Ruby source to bytecode."""
    bytecode = load_bytecode(source, compiler)
    if bytecode is None:
        return False
    print(hex_dump(bytecode))
    output = output or source.with_suffix(".mrb")
    output.write_bytes(bytecode)
    print(f"Wrote {output}")
    return True


def cmd_run(compiler: MrbcCompiler, runner: MrubyRunner, path: Path) -> bool:
    """Run bytecode on the host interpreter."""
    bytecode = load_bytecode(path, compiler)
    if bytecode is None:
        return False
    print("Running on mruby...")
    result = runner.run(bytecode)
    if result.stdout:
        print(result.stdout, end="")
    if result.stderr:
        print(result.stderr.rstrip(), file=sys.stderr)
    print("mruby execution finished.")
    return result.ok


async def with_device(
    port: str,
    board: str,
    action: Callable[[MrbwriteProtocol], Awaitable[bool]],
    command_mode: bool = True,
) -> bool:
    """
    Connect, enter command mode, run ``action`` and disconnect.

    With command_mode=False the action runs in whatever mode the
    device is in.
    """
    profile = get_profile(board)
    transport = Transport(port)
    transport.add_listener(RawEcho())
    proto = MrbwriteProtocol(transport, profile, events=ConsoleEvents())

    print(f"Connecting ({profile.name}, {profile.baud_rate} baud)...")
    try:
        await transport.connect(profile)
    except ConnectionError as e:
        print(f"Error opening {port}: {e}")
        return False
    print("Connected.")

    try:
        if command_mode and not await proto.ensure_command_mode():
            return False
        return await action(proto)
    finally:
        print("Disconnecting...")
        await transport.disconnect()


async def execute_and_monitor(proto: MrbwriteProtocol, monitor: float) -> bool:
    if not await proto.execute_program():
        return False
    if monitor > 0:
        await asyncio.sleep(monitor)
    return True


async def burn(proto: MrbwriteProtocol, bytecode: bytes, monitor: float) -> bool:
    """Write, verify and execute in one go."""
    if not await proto.write_bytecode(bytecode):
        return False
    if not await proto.verify_bytecode(bytecode):
        return False
    return await execute_and_monitor(proto, monitor)


def main():
    parser = argparse.ArgumentParser(
        description="Bytecode writer for mruby/c boards (mrbwrite protocol)"
    )
    parser.add_argument(
        "--port", "-p",
        help="Serial port (e.g., /dev/ttyUSB0)"
    )
    parser.add_argument(
        "--board", "-b",
        default=DEFAULT_BOARD,
        choices=sorted(BOARD_PROFILES),
        help=f"Board profile (default {DEFAULT_BOARD})"
    )
    parser.add_argument("--mrbc", default="mrbc", help="mrbc executable")
    parser.add_argument("--mruby", default="mruby", help="mruby executable")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("ports", help="List serial ports")

    compile_parser = subparsers.add_parser("compile", help="Compile Ruby source")
    compile_parser.add_argument("file", type=Path, help="Ruby source file")
    compile_parser.add_argument("--output", "-o", type=Path, help="Output .mrb file")

    run_parser = subparsers.add_parser("run", help="Run on the host mruby")
    run_parser.add_argument("file", type=Path, help="Ruby source or .mrb file")

    for name, help_text in (
        ("write", "Write bytecode to the board"),
        ("verify", "Verify bytecode on the board"),
        ("burn", "Write, verify and execute"),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("file", type=Path, help="Ruby source or .mrb file")
        if name == "burn":
            p.add_argument("--monitor", "-m", type=float, default=0.0,
                           help="Seconds to show board output after execute")

    execute_parser = subparsers.add_parser("execute", help="Execute the stored program")
    execute_parser.add_argument("--monitor", "-m", type=float, default=0.0,
                                help="Seconds to show board output after execute")

    send_parser = subparsers.add_parser("send", help="Send a raw command")
    send_parser.add_argument("text", help="Command text")
    send_parser.add_argument("--force", action="store_true",
                             help="Send without entering command mode first")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    compiler = MrbcCompiler(args.mrbc)

    if args.command == "ports":
        ok = cmd_ports()
    elif args.command == "compile":
        ok = cmd_compile(compiler, args.file, args.output)
    elif args.command == "run":
        ok = cmd_run(compiler, MrubyRunner(args.mruby), args.file)
    else:
        if not args.port:
            print("Error: --port is required for this command")
            sys.exit(1)

        if args.command == "execute":
            action = lambda proto: execute_and_monitor(proto, args.monitor)
        elif args.command == "send":
            action = lambda proto: _send(proto, args.text, args.force)
        else:
            bytecode = load_bytecode(args.file, compiler)
            if bytecode is None:
                sys.exit(1)
            if args.command == "write":
                action = lambda proto: _write(proto, bytecode)
            elif args.command == "verify":
                action = lambda proto: _verify(proto, bytecode)
            else:
                action = lambda proto: burn(proto, bytecode, args.monitor)

        command_mode = not (args.command == "send" and args.force)
        ok = asyncio.run(with_device(args.port, args.board, action, command_mode))

    if not ok:
        sys.exit(1)


async def _send(proto: MrbwriteProtocol, text: str, force: bool = False) -> bool:
    return await proto.send_command(text, force=force) is not None


async def _write(proto: MrbwriteProtocol, bytecode: bytes) -> bool:
    return bool(await proto.write_bytecode(bytecode))


async def _verify(proto: MrbwriteProtocol, bytecode: bytes) -> bool:
    return bool(await proto.verify_bytecode(bytecode))


if __name__ == "__main__":
    main()
