# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
CRC-8 implementation.

This is the same CRC-8 algorithm the mruby/c firmware uses to answer
the ``verify`` command, so the result must match it bit for bit.
"""

DEFAULT_POLY = 0x31


def crc8(data: bytes, poly: int = DEFAULT_POLY) -> int:
    """
    Compute the CRC-8 checksum reported by the device.

    Args:
        data: Bytes to compute checksum for
        poly: CRC polynomial from the device profile (default 0x31)

    Returns:
        8-bit CRC value
    """
    crc = 0xFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x80:
                crc = (crc << 1) ^ poly
            else:
                crc <<= 1
            crc &= 0xFF
    return crc
