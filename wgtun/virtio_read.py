"""Turning a virtio-prefixed read from a TUN device into plain packets."""

from __future__ import annotations

from typing import MutableSequence

from wgtun.gso import gso_none_checksum, gso_split
from wgtun.virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_NONE,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_GSO_UDP_L4,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
)

_SUPPORTED_GSO = {
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_GSO_UDP_L4,
}

_GSO_FOR_VERSION = {
    4: {VIRTIO_NET_HDR_GSO_TCPV4, VIRTIO_NET_HDR_GSO_UDP_L4},
    6: {VIRTIO_NET_HDR_GSO_TCPV6, VIRTIO_NET_HDR_GSO_UDP_L4},
}


def handle_virtio_read(
    data,
    bufs: MutableSequence[bytearray],
    sizes: MutableSequence[int],
    offset: int,
) -> int:
    """Split ``data`` into ``bufs``, leaving ``offset`` bytes before each packet.

    ``data`` starts with a virtio header. Packet lengths go into ``sizes``.
    Returns the number of packets produced; raises ValueError on a malformed
    read.
    """
    hdr = VirtioNetHdr.decode(data)
    pkt = bytearray(data[VIRTIO_NET_HDR_LEN:])

    if hdr.gso_type == VIRTIO_NET_HDR_GSO_NONE:
        if hdr.flags & VIRTIO_NET_HDR_F_NEEDS_CSUM:
            # CHECKSUM_PARTIAL: finish the checksum at csum_start + csum_offset.
            gso_none_checksum(pkt, hdr.csum_start, hdr.csum_offset)
        room = max(len(bufs[0]) - offset, 0)
        if len(pkt) > room:
            raise ValueError(f"read len {len(pkt)} overflows bufs element len {room}")
        bufs[0][offset : offset + len(pkt)] = pkt
        sizes[0] = len(pkt)
        return 1

    if hdr.gso_type not in _SUPPORTED_GSO:
        raise ValueError(f"unsupported virtio GSO type: {hdr.gso_type}")
    if not pkt:
        raise ValueError("packet is too short")

    ip_version = pkt[0] >> 4
    allowed = _GSO_FOR_VERSION.get(ip_version)
    if allowed is None:
        raise ValueError(f"invalid ip header version: {ip_version}")
    if hdr.gso_type not in allowed:
        raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")

    # The kernel's hdr_len may span the whole first packet on a forward path,
    # so derive it from csum_start and the transport header instead.
    if hdr.gso_type == VIRTIO_NET_HDR_GSO_UDP_L4:
        hdr.hdr_len = hdr.csum_start + 8
    else:
        if len(pkt) <= hdr.csum_start + 12:
            raise ValueError("packet is too short")
        tcp_hlen = (pkt[hdr.csum_start + 12] >> 4) * 4
        if tcp_hlen < 20 or tcp_hlen > 60:
            raise ValueError(f"tcp header len is invalid: {tcp_hlen}")
        hdr.hdr_len = hdr.csum_start + tcp_hlen

    if len(pkt) < hdr.hdr_len:
        raise ValueError(
            f"length of packet ({len(pkt)}) < virtioNetHdr.hdrLen ({hdr.hdr_len})"
        )
    if hdr.hdr_len < hdr.csum_start:
        raise ValueError(
            f"virtioNetHdr.hdrLen ({hdr.hdr_len}) < virtioNetHdr.csumStart ({hdr.csum_start})"
        )
    csum_at = hdr.csum_start + hdr.csum_offset
    if csum_at + 1 >= len(pkt):
        raise ValueError(
            f"end of checksum offset ({csum_at + 1}) exceeds packet length ({len(pkt)})"
        )

    return gso_split(pkt, hdr, bufs, sizes, offset, ip_version == 6)