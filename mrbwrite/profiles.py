# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Serial profiles for the supported boards."""

from dataclasses import dataclass
from typing import Dict

from .crc8 import DEFAULT_POLY


@dataclass(frozen=True)
class DeviceProfile:
    """Link settings for one device family."""
    name: str
    baud_rate: int
    crc_poly: int = DEFAULT_POLY


BOARD_PROFILES: Dict[str, DeviceProfile] = {
    "kani": DeviceProfile("kani", 19200),
    "rboard": DeviceProfile("rboard", 19200),
    "esp32": DeviceProfile("esp32", 115200),
}

DEFAULT_BOARD = "kani"


def get_profile(name: str) -> DeviceProfile:
    """
    Look up a board profile by name.

    Raises:
        KeyError: If the board is unknown
    """
    try:
        return BOARD_PROFILES[name.lower()]
    except KeyError:
        known = ", ".join(sorted(BOARD_PROFILES))
        raise KeyError(f"Unknown board {name!r} (known: {known})") from None
