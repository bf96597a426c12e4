"""Internet checksum (RFC 1071) helpers."""

from __future__ import annotations

import struct

_MASK64 = (1 << 64) - 1


def checksum_no_fold(b: bytes | bytearray | memoryview, initial: int = 0) -> int:
    """Sum ``b`` as big-endian words onto ``initial`` without folding carries."""
    data = memoryview(b)
    whole = len(data) & ~3
    ac = initial + sum(word for (word,) in struct.iter_unpack(">I", data[:whole]))
    rest = data[whole:]
    if len(rest) >= 2:
        ac += int.from_bytes(rest[:2], "big")
        rest = rest[2:]
    if len(rest) == 1:
        ac += rest[0] << 8
    return ac & _MASK64


def checksum(b: bytes | bytearray | memoryview, initial: int = 0) -> int:
    """Return the folded 16-bit one's complement sum of ``b`` and ``initial``."""
    ac = checksum_no_fold(b, initial)
    for _ in range(4):
        ac = (ac >> 16) + (ac & 0xFFFF)
    return ac & 0xFFFF


def pseudo_header_checksum_no_fold(
    protocol: int,
    src_addr: bytes | bytearray | memoryview,
    dst_addr: bytes | bytearray | memoryview,
    total_len: int,
) -> int:
    """Unfolded sum of the TCP/UDP pseudo header."""
    total = checksum_no_fold(src_addr, 0)
    total = checksum_no_fold(dst_addr, total)
    total = checksum_no_fold(bytes((0, protocol & 0xFF)), total)
    return checksum_no_fold((total_len & 0xFFFF).to_bytes(2, "big"), total)