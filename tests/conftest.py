# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Pytest configuration: serial fakes and hardware options."""

import shutil
from unittest.mock import patch

import pytest

from fakes import FakeSerial


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--device",
        action="store",
        default=None,
        help="Serial port of a real board (e.g., /dev/ttyUSB0)",
    )
    parser.addoption(
        "--board",
        action="store",
        default="kani",
        help="Board profile for integration tests",
    )


@pytest.fixture
def fake_serial():
    """
    Patch ``serial.Serial`` so Transport.connect() opens a FakeSerial.

    The patched class is available as ``fake_serial.serial_class``.
    """
    fake = FakeSerial()
    with patch("mrbwrite.transport.serial.Serial", return_value=fake) as serial_class:
        fake.serial_class = serial_class
        yield fake


@pytest.fixture(scope="session")
def device_port(request):
    """Serial port from --device; integration tests skip without it."""
    port = request.config.getoption("--device")
    if port is None:
        pytest.skip("No --device given")
    return port


@pytest.fixture(scope="session")
def board_profile(request):
    from mrbwrite import get_profile

    return get_profile(request.config.getoption("--board"))


@pytest.fixture(scope="session")
def mrbc():
    """Path to mrbc, skipping when it is not installed."""
    path = shutil.which("mrbc")
    if path is None:
        pytest.skip("mrbc not found on PATH")
    return path
