# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Tests for Transport class."""

import asyncio

import pytest
from unittest.mock import patch

import serial

from mrbwrite.profiles import DeviceProfile, get_profile
from mrbwrite.transport import Transport, TransportError, ConnectionError

from fakes import RecordingListener, wait_until


KANI = get_profile("kani")


def make_transport():
    transport = Transport("/dev/ttyTEST", read_timeout=0.01)
    listener = RecordingListener()
    transport.add_listener(listener)
    return transport, listener


class TestTransportConnect:
    """Tests for connect()."""

    def test_connect_opens_serial(self, fake_serial):
        """connect() opens the port at the profile baud rate."""
        transport, listener = make_transport()

        async def scenario():
            await transport.connect(KANI)
            assert transport.connected is True
            assert transport.profile == KANI
            await transport.disconnect()

        asyncio.run(scenario())

        fake_serial.serial_class.assert_called_once_with(
            "/dev/ttyTEST", 19200, timeout=0.01
        )
        assert listener.events[0] == ("connect",)

    def test_connect_esp32_baud(self, fake_serial):
        transport, _ = make_transport()

        async def scenario():
            await transport.connect(get_profile("esp32"))
            await transport.disconnect()

        asyncio.run(scenario())

        fake_serial.serial_class.assert_called_once_with(
            "/dev/ttyTEST", 115200, timeout=0.01
        )

    @patch("mrbwrite.transport.serial.Serial")
    def test_connect_failure(self, mock_serial_class):
        """An open failure raises ConnectionError and leaves the link closed."""
        mock_serial_class.side_effect = serial.SerialException("no such port")
        transport, listener = make_transport()

        with pytest.raises(ConnectionError, match="no such port"):
            asyncio.run(transport.connect(KANI))

        assert transport.connected is False
        assert listener.events == []

    def test_connect_twice(self, fake_serial):
        transport, _ = make_transport()

        async def scenario():
            await transport.connect(KANI)
            try:
                with pytest.raises(ConnectionError, match="Already connected"):
                    await transport.connect(KANI)
            finally:
                await transport.disconnect()

        asyncio.run(scenario())

    def test_port_property(self):
        assert Transport("/dev/ttyUSB3").port == "/dev/ttyUSB3"


class TestTransportReadLoop:
    """Tests for the read loop and event ordering."""

    def test_raw_before_lines_then_pending(self, fake_serial):
        """One chunk: raw event, each line in order, then the tail."""
        transport, listener = make_transport()

        async def scenario():
            await transport.connect(KANI)
            fake_serial.feed(b"a\r\nb\r\nc")
            await wait_until(lambda: ("pending", "c") in listener.events)
            await transport.disconnect()

        asyncio.run(scenario())

        assert listener.events[1:5] == [
            ("raw", "a\r\nb\r\nc"),
            ("line", "a"),
            ("line", "b"),
            ("pending", "c"),
        ]

    def test_lines_across_chunks(self, fake_serial):
        transport, listener = make_transport()

        async def scenario():
            await transport.connect(KANI)
            fake_serial.feed(b"+OK Wri")
            fake_serial.feed(b"te bytecode\r")
            fake_serial.feed(b"\n+DONE\r\n")
            await wait_until(lambda: "+DONE" in listener.of("line"))
            assert transport.pending == ""
            await transport.disconnect()

        asyncio.run(scenario())

        assert listener.of("raw") == ["+OK Wri", "te bytecode\r", "\n+DONE\r\n"]
        assert listener.of("line") == ["+OK Write bytecode", "+DONE"]
        assert listener.of("pending") == ["+OK Wri", "+OK Write bytecode\r"]

    def test_raw_event_for_partial_character_chunk(self, fake_serial):
        """A chunk holding only part of a character still gets a raw event."""
        transport, listener = make_transport()

        async def scenario():
            await transport.connect(KANI)
            fake_serial.feed(b"\xc3")
            fake_serial.feed(b"\xa9\r\n")
            await wait_until(lambda: listener.of("line"))
            await transport.disconnect()

        asyncio.run(scenario())

        assert listener.of("raw") == ["", "é\r\n"]
        assert listener.of("line") == ["é"]
        assert listener.of("pending") == []

    def test_failing_listener_does_not_stop_reading(self, fake_serial):
        """An exception in one listener is logged; delivery continues."""
        transport, listener = make_transport()

        class Exploding(RecordingListener):
            def on_line_received(self, line):
                if line == "boom":
                    raise ValueError("listener failed")
                super().on_line_received(line)

        exploding = Exploding()
        transport.add_listener(exploding)

        async def scenario():
            await transport.connect(KANI)
            fake_serial.feed(b"boom\r\n")
            fake_serial.feed(b"after\r\n")
            await wait_until(lambda: "after" in exploding.of("line"))
            assert transport.connected
            await transport.disconnect()

        asyncio.run(scenario())

        assert listener.of("line") == ["boom", "after"]
        assert exploding.of("line") == ["after"]

    def test_no_pending_event_for_empty_tail(self, fake_serial):
        transport, listener = make_transport()

        async def scenario():
            await transport.connect(KANI)
            fake_serial.feed(b"+OK\r\n")
            await wait_until(lambda: listener.of("line"))
            await transport.disconnect()

        asyncio.run(scenario())

        assert listener.of("pending") == []

    def test_read_error_disconnects(self, fake_serial):
        """A failed read ends the loop and runs disconnect sequencing."""
        transport, listener = make_transport()

        async def scenario():
            await transport.connect(KANI)
            fake_serial.read_error = "device reports readiness to read but returned no data"
            await wait_until(lambda: ("disconnect",) in listener.events)

        asyncio.run(scenario())

        assert transport.connected is False
        assert fake_serial.is_open is False
        assert listener.of("disconnect") == [None]

    def test_remove_listener(self, fake_serial):
        transport, listener = make_transport()
        other = RecordingListener()
        transport.add_listener(other)
        transport.remove_listener(listener)

        async def scenario():
            await transport.connect(KANI)
            fake_serial.feed(b"x\r\n")
            await wait_until(lambda: other.of("line"))
            await transport.disconnect()

        asyncio.run(scenario())

        assert listener.events == []


class TestTransportWrite:
    """Tests for write(), send_text() and send_binary()."""

    def test_write_not_connected(self):
        transport, _ = make_transport()

        with pytest.raises(ConnectionError, match="Not connected"):
            asyncio.run(transport.write(b"clear\r\n"))

    def test_send_text_encodes(self, fake_serial):
        transport, _ = make_transport()

        async def scenario():
            await transport.connect(KANI)
            await transport.send_text("write 37\r\n")
            await transport.disconnect()

        asyncio.run(scenario())

        assert fake_serial.writes == [b"write 37\r\n"]

    def test_send_binary_verbatim(self, fake_serial):
        transport, _ = make_transport()
        payload = bytes(range(256))

        async def scenario():
            await transport.connect(KANI)
            await transport.send_binary(bytearray(payload))
            await transport.disconnect()

        asyncio.run(scenario())

        assert fake_serial.writes == [payload]

    def test_write_failure_wrapped(self, fake_serial):
        transport, _ = make_transport()
        fake_serial.write_error = "write failed: [Errno 5] Input/output error"

        async def scenario():
            await transport.connect(KANI)
            try:
                with pytest.raises(ConnectionError, match="Input/output error"):
                    await transport.write(b"x")
            finally:
                await transport.disconnect()

        asyncio.run(scenario())

    def test_writes_are_serialized(self, fake_serial):
        """Concurrent writers never interleave inside one write."""
        transport, _ = make_transport()

        async def scenario():
            await transport.connect(KANI)
            await asyncio.gather(*(transport.send_text(f"cmd{i}\r\n") for i in range(10)))
            await transport.disconnect()

        asyncio.run(scenario())

        assert sorted(fake_serial.writes) == sorted(f"cmd{i}\r\n".encode() for i in range(10))


class TestTransportDisconnect:
    """Tests for disconnect()."""

    def test_disconnect_closes_and_notifies(self, fake_serial):
        transport, listener = make_transport()

        async def scenario():
            await transport.connect(KANI)
            await transport.disconnect()

        asyncio.run(scenario())

        assert transport.connected is False
        assert transport.profile is None
        assert fake_serial.is_open is False
        assert fake_serial.cancel_count == 1
        assert listener.events[-1] == ("disconnect",)

    def test_disconnect_idempotent(self, fake_serial):
        transport, listener = make_transport()

        async def scenario():
            await transport.connect(KANI)
            await transport.disconnect()
            await transport.disconnect()

        asyncio.run(scenario())

        assert listener.of("disconnect") == [None]

    def test_concurrent_disconnects_wait_for_close(self, fake_serial):
        """A second disconnect returns only after the port is closed."""
        transport, listener = make_transport()
        closed_when_returned = []

        async def stop():
            await transport.disconnect()
            closed_when_returned.append(fake_serial.is_open is False)

        async def scenario():
            await transport.connect(KANI)
            await asyncio.gather(stop(), stop())
            await transport.connect(KANI)
            assert transport.profile is KANI
            assert transport.connected
            await transport.disconnect()

        asyncio.run(scenario())

        assert closed_when_returned == [True, True]
        assert listener.of("disconnect") == [None, None]
        assert listener.of("connect") == [None, None]

    def test_disconnect_never_connected(self):
        transport, listener = make_transport()
        asyncio.run(transport.disconnect())
        assert listener.events == []

    def test_disconnect_flushes_decoder_and_resets_pending(self, fake_serial):
        transport, listener = make_transport()

        async def scenario():
            await transport.connect(KANI)
            fake_serial.feed(b"abc\xe3\x81")
            await wait_until(lambda: listener.of("pending") == ["abc"])
            await transport.disconnect()
            assert transport.pending == ""

        asyncio.run(scenario())

        assert listener.events[-3:] == [
            ("raw", "�"),
            ("pending", "abc�"),
            ("disconnect",),
        ]

    def test_reconnect_starts_clean(self, fake_serial):
        transport, listener = make_transport()

        async def scenario():
            await transport.connect(KANI)
            fake_serial.feed(b"partial")
            await wait_until(lambda: transport.pending == "partial")
            await transport.disconnect()
            await transport.connect(KANI)
            fake_serial.feed(b"\r\n")
            await wait_until(lambda: listener.of("line"))
            await transport.disconnect()

        asyncio.run(scenario())

        assert listener.of("line") == [""]

    def test_session_context_manager(self, fake_serial):
        transport, listener = make_transport()

        async def scenario():
            async with transport.session(KANI) as t:
                assert t is transport
                assert transport.connected

        asyncio.run(scenario())

        assert transport.connected is False
        assert listener.of("disconnect") == [None]


class TestExceptions:
    """Tests for exception classes."""

    def test_connection_error_is_transport_error(self):
        assert issubclass(ConnectionError, TransportError)

    def test_profile_is_immutable(self):
        profile = DeviceProfile("x", 9600)
        with pytest.raises(AttributeError):
            profile.baud_rate = 115200
