"""The virtio_net_hdr structure that prefixes packets on offload-capable TUNs."""

from __future__ import annotations

import struct
from dataclasses import dataclass

# Native byte order, no padding: matches sizeof(struct virtio_net_hdr).
_LAYOUT = struct.Struct("=BBHHHH")

VIRTIO_NET_HDR_LEN = _LAYOUT.size

VIRTIO_NET_HDR_F_NEEDS_CSUM = 0x1
VIRTIO_NET_HDR_F_DATA_VALID = 0x2

VIRTIO_NET_HDR_GSO_NONE = 0x0
VIRTIO_NET_HDR_GSO_TCPV4 = 0x1
VIRTIO_NET_HDR_GSO_UDP = 0x3
VIRTIO_NET_HDR_GSO_TCPV6 = 0x4
VIRTIO_NET_HDR_GSO_UDP_L4 = 0x5
VIRTIO_NET_HDR_GSO_ECN = 0x80


@dataclass
class VirtioNetHdr:
    """Offload metadata exchanged with the kernel alongside each packet."""

    flags: int = 0
    gso_type: int = 0
    hdr_len: int = 0
    gso_size: int = 0
    csum_start: int = 0
    csum_offset: int = 0

    @classmethod
    def decode(cls, b: bytes | bytearray | memoryview) -> "VirtioNetHdr":
        """Parse a header from the first bytes of ``b``."""
        if len(b) < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        return cls(*_LAYOUT.unpack_from(b, 0))

    def encode(self, b: bytearray | memoryview) -> None:
        """Write the header into the first bytes of the writable buffer ``b``."""
        if len(b) < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        _LAYOUT.pack_into(
            b,
            0,
            self.flags & 0xFF,
            self.gso_type & 0xFF,
            self.hdr_len & 0xFFFF,
            self.gso_size & 0xFFFF,
            self.csum_start & 0xFFFF,
            self.csum_offset & 0xFFFF,
        )