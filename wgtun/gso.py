"""Generic segmentation offload: splitting one large packet into many."""

from __future__ import annotations

import socket
from typing import MutableSequence

from wgtun.checksum import checksum, pseudo_header_checksum_no_fold
from wgtun.errors import TooManySegmentsError
from wgtun.gro_table import (
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_FIN,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
)
from wgtun.virtio import (
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VirtioNetHdr,
)


def _u16(b, at: int) -> int:
    return int.from_bytes(b[at : at + 2], "big")


def _u32(b, at: int) -> int:
    return int.from_bytes(b[at : at + 4], "big")


def _put_u16(b: bytearray, at: int, value: int) -> None:
    b[at : at + 2] = (value & 0xFFFF).to_bytes(2, "big")


def _put_u32(b: bytearray, at: int, value: int) -> None:
    b[at : at + 4] = (value & 0xFFFFFFFF).to_bytes(4, "big")


def gso_split(
    data: bytearray,
    hdr: VirtioNetHdr,
    out_bufs: MutableSequence[bytearray],
    sizes: MutableSequence[int],
    out_offset: int,
    is_v6: bool,
) -> int:
    """Split the packet ``data`` into segments described by ``hdr``.

    Each segment is written into ``out_bufs`` starting at ``out_offset`` and
    its length stored in ``sizes``. ``data`` has its checksum fields cleared.
    Returns the number of buffers filled; raises TooManySegmentsError when
    ``out_bufs`` runs out.
    """
    iph_len = hdr.csum_start
    if is_v6:
        src_addr_offset, addr_len = IPV6_SRC_ADDR_OFFSET, 16
    else:
        data[10:12] = b"\x00\x00"  # clear the IPv4 header checksum
        src_addr_offset, addr_len = IPV4_SRC_ADDR_OFFSET, 4
    transport_csum_at = hdr.csum_start + hdr.csum_offset
    data[transport_csum_at : transport_csum_at + 2] = b"\x00\x00"

    if hdr.gso_type in (VIRTIO_NET_HDR_GSO_TCPV4, VIRTIO_NET_HDR_GSO_TCPV6):
        protocol = socket.IPPROTO_TCP
        first_tcp_seq = _u32(data, hdr.csum_start + 4)
    else:
        protocol = socket.IPPROTO_UDP
        first_tcp_seq = 0

    src_addr = bytes(data[src_addr_offset : src_addr_offset + addr_len])
    dst_addr = bytes(data[src_addr_offset + addr_len : src_addr_offset + addr_len * 2])
    transport_header_len = hdr.hdr_len - hdr.csum_start

    next_segment_at = hdr.hdr_len
    i = 0
    while next_segment_at < len(data):
        if i == len(out_bufs):
            raise TooManySegmentsError(i - 1)
        segment_end = min(next_segment_at + hdr.gso_size, len(data))
        segment_data_len = segment_end - next_segment_at
        total_len = hdr.hdr_len + segment_data_len
        sizes[i] = total_len

        seg = bytearray(total_len)
        seg[:iph_len] = data[:iph_len]
        if is_v6:
            _put_u16(seg, 4, total_len - iph_len)
        else:
            # IPv4: bump the ID, set the total length, redo the header checksum.
            if i > 0:
                _put_u16(seg, 4, _u16(seg, 4) + i)
            _put_u16(seg, 2, total_len)
            _put_u16(seg, 10, ~checksum(seg[:iph_len], 0))

        seg[hdr.csum_start : hdr.hdr_len] = data[hdr.csum_start : hdr.hdr_len]

        if protocol == socket.IPPROTO_TCP:
            seq = first_tcp_seq + ((hdr.gso_size * i) & 0xFFFF)
            _put_u32(seg, hdr.csum_start + 4, seq)
            if segment_end != len(data):
                # FIN and PSH belong on the last segment only
                seg[hdr.csum_start + TCP_FLAGS_OFFSET] &= ~(TCP_FLAG_FIN | TCP_FLAG_PSH) & 0xFF
        else:
            _put_u16(seg, hdr.csum_start + 4, segment_data_len + transport_header_len)

        seg[hdr.hdr_len :] = data[next_segment_at:segment_end]

        pseudo = pseudo_header_checksum_no_fold(
            protocol, src_addr, dst_addr, transport_header_len + segment_data_len
        )
        transport_csum = ~checksum(seg[hdr.csum_start : total_len], pseudo)
        _put_u16(seg, hdr.csum_start + hdr.csum_offset, transport_csum)

        out = out_bufs[i]
        if len(out) < out_offset + total_len:
            raise ValueError(
                f"segment of {total_len} bytes does not fit buffer of {len(out)} bytes"
            )
        out[out_offset : out_offset + total_len] = seg

        next_segment_at += hdr.gso_size
        i += 1
    return i


def gso_none_checksum(data: bytearray, csum_start: int, csum_offset: int) -> None:
    """Complete a partial checksum in place.

    The value already at the checksum field, usually the pseudo header sum,
    is folded into the checksum computed from ``csum_start`` onward.
    """
    csum_at = csum_start + csum_offset
    initial = _u16(data, csum_at)
    data[csum_at : csum_at + 2] = b"\x00\x00"
    _put_u16(data, csum_at, ~checksum(data[csum_start:], initial))