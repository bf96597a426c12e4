"""Generic receive offload: merging a batch of TCP and UDP packets before a write."""

from __future__ import annotations

import dataclasses
import enum
import socket
from typing import List, MutableSequence, Optional

from wgtun.checksum import checksum, pseudo_header_checksum_no_fold
from wgtun.coalesce import (
    CanCoalesce,
    CoalesceResult,
    coalesce_tcp_packets,
    coalesce_udp_packets,
    tcp_packets_can_coalesce,
    udp_packets_can_coalesce,
)
from wgtun.gro_table import (
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_ACK,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDPH_LEN,
    TCPGROTable,
    UDPGROTable,
)
from wgtun.virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_GSO_UDP_L4,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
)

IPV4_FLAG_MORE_FRAGMENTS = 0x20
MAX_UINT16 = 0xFFFF


class GROResult(enum.IntEnum):
    """What a GRO evaluation did with a packet."""

    NOOP = 0
    TABLE_INSERT = 1
    COALESCED = 2


class GROCandidate(enum.IntEnum):
    """Kind of GRO a packet is eligible for."""

    NOT_CANDIDATE = 0
    TCP4 = 1
    TCP6 = 2
    UDP4 = 3
    UDP6 = 4


def _u16(b, at: int) -> int:
    return int.from_bytes(b[at : at + 2], "big")


def _put_u16(b: bytearray, at: int, value: int) -> None:
    b[at : at + 2] = (value & 0xFFFF).to_bytes(2, "big")


def _encode_header(hdr: VirtioNetHdr, buf: bytearray, offset: int) -> None:
    if offset < VIRTIO_NET_HDR_LEN or len(buf) < offset:
        raise ValueError("short buffer")
    region = bytearray(VIRTIO_NET_HDR_LEN)
    hdr.encode(region)
    buf[offset - VIRTIO_NET_HDR_LEN : offset] = region


def _ip_header_len(pkt: bytes, is_v6: bool) -> Optional[int]:
    """Length of the IP header, or None if the length fields do not add up."""
    if len(pkt) > MAX_UINT16:
        return None
    if is_v6:
        iph_len = 40
        if _u16(pkt, 4) != len(pkt) - iph_len:
            return None
    else:
        iph_len = (pkt[0] & 0x0F) * 4
        if _u16(pkt, 2) != len(pkt):
            return None
    if len(pkt) < iph_len:
        return None
    return iph_len


def _is_ipv4_fragment(pkt: bytes) -> bool:
    return bool(
        pkt[6] & IPV4_FLAG_MORE_FRAGMENTS or (pkt[6] << 3) & 0xFF or pkt[7]
    )


def _address_layout(is_v6: bool) -> tuple:
    return (IPV6_SRC_ADDR_OFFSET, 16) if is_v6 else (IPV4_SRC_ADDR_OFFSET, 4)


def packet_is_gro_candidate(b, can_udp_gro: bool) -> GROCandidate:
    """Classify the IP packet ``b`` for GRO."""
    if len(b) < 28:
        return GROCandidate.NOT_CANDIDATE
    version = b[0] >> 4
    if version == 4:
        if b[0] & 0x0F != 5:
            # IPv4 packets with options do not coalesce
            return GROCandidate.NOT_CANDIDATE
        if b[9] == socket.IPPROTO_TCP and len(b) >= 40:
            return GROCandidate.TCP4
        if b[9] == socket.IPPROTO_UDP and can_udp_gro:
            return GROCandidate.UDP4
    elif version == 6:
        if b[6] == socket.IPPROTO_TCP and len(b) >= 60:
            return GROCandidate.TCP6
        if b[6] == socket.IPPROTO_UDP and len(b) >= 48 and can_udp_gro:
            return GROCandidate.UDP6
    return GROCandidate.NOT_CANDIDATE


def tcp_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    pkt_i: int,
    table: TCPGROTable,
    is_v6: bool,
) -> GROResult:
    """Try to coalesce the TCP packet at ``bufs[pkt_i]`` with packets in ``table``."""
    pkt = bytes(bufs[pkt_i][offset:])
    iph_len = _ip_header_len(pkt, is_v6)
    if iph_len is None:
        return GROResult.NOOP
    tcph_len = (pkt[iph_len + 12] >> 4) * 4
    if tcph_len < 20 or tcph_len > 60:
        return GROResult.NOOP
    if len(pkt) < iph_len + tcph_len:
        return GROResult.NOOP
    if not is_v6 and _is_ipv4_fragment(pkt):
        # fragmented segments are not coalesced
        return GROResult.NOOP
    tcp_flags = pkt[iph_len + TCP_FLAGS_OFFSET]
    psh_set = False
    if tcp_flags != TCP_FLAG_ACK:
        if tcp_flags != TCP_FLAG_ACK | TCP_FLAG_PSH:
            return GROResult.NOOP
        psh_set = True
    gso_size = (len(pkt) - tcph_len - iph_len) & 0xFFFF
    if gso_size < 1:
        return GROResult.NOOP
    seq = int.from_bytes(pkt[iph_len + 4 : iph_len + 8], "big")
    src_addr_offset, addr_len = _address_layout(is_v6)
    dst_addr_offset = src_addr_offset + addr_len

    items = table.lookup_or_insert(pkt, src_addr_offset, dst_addr_offset, iph_len, tcph_len, pkt_i)
    if items is None:
        return GROResult.TABLE_INSERT
    # Newest first: in-order arrival makes the last item the likely match, and
    # deleting the current index leaves the earlier ones in place.
    for i in reversed(range(len(items))):
        item = dataclasses.replace(items[i])
        can = tcp_packets_can_coalesce(
            pkt, iph_len, tcph_len, seq, psh_set, gso_size, item, bufs, offset
        )
        if can == CanCoalesce.UNAVAILABLE:
            continue
        result = coalesce_tcp_packets(
            can, pkt, pkt_i, gso_size, seq, psh_set, item, bufs, offset, is_v6
        )
        if result == CoalesceResult.SUCCESS:
            table.update_at(item, i)
            return GROResult.COALESCED
        if result == CoalesceResult.ITEM_INVALID_CSUM:
            table.delete_at(item.key, i)
        elif result == CoalesceResult.PKT_INVALID_CSUM:
            return GROResult.NOOP
    table.insert(pkt, src_addr_offset, dst_addr_offset, iph_len, tcph_len, pkt_i)
    return GROResult.TABLE_INSERT


def udp_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    pkt_i: int,
    table: UDPGROTable,
    is_v6: bool,
) -> GROResult:
    """Try to coalesce the UDP packet at ``bufs[pkt_i]`` with packets in ``table``."""
    pkt = bytes(bufs[pkt_i][offset:])
    iph_len = _ip_header_len(pkt, is_v6)
    if iph_len is None:
        return GROResult.NOOP
    if len(pkt) < iph_len + UDPH_LEN:
        return GROResult.NOOP
    if not is_v6 and _is_ipv4_fragment(pkt):
        return GROResult.NOOP
    gso_size = (len(pkt) - UDPH_LEN - iph_len) & 0xFFFF
    if gso_size < 1:
        return GROResult.NOOP
    src_addr_offset, addr_len = _address_layout(is_v6)
    dst_addr_offset = src_addr_offset + addr_len

    items = table.lookup_or_insert(pkt, src_addr_offset, dst_addr_offset, iph_len, pkt_i)
    if items is None:
        return GROResult.TABLE_INSERT
    # Only the last item is considered so that a flow is never reordered.
    last = len(items) - 1
    item = dataclasses.replace(items[last])
    can = udp_packets_can_coalesce(pkt, iph_len, gso_size, item, bufs, offset)
    pkt_csum_known_invalid = False
    if can == CanCoalesce.APPEND:
        result = coalesce_udp_packets(pkt, item, bufs, offset, is_v6)
        if result == CoalesceResult.SUCCESS:
            table.update_at(item, last)
            return GROResult.COALESCED
        if result == CoalesceResult.PKT_INVALID_CSUM:
            pkt_csum_known_invalid = True
    table.insert(pkt, src_addr_offset, dst_addr_offset, iph_len, pkt_i, pkt_csum_known_invalid)
    return GROResult.TABLE_INSERT


def _fix_ip_lengths(buf: bytearray, offset: int, iph_len: int, is_v6: bool) -> None:
    pkt_len = len(buf) - offset
    if is_v6:
        _put_u16(buf, offset + 4, pkt_len - iph_len)
    else:
        buf[offset + 10 : offset + 12] = b"\x00\x00"
        _put_u16(buf, offset + 2, pkt_len)
        _put_u16(buf, offset + 10, ~checksum(buf[offset : offset + iph_len], 0))


def _place_pseudo_checksum(
    buf: bytearray, offset: int, iph_len: int, proto: int, is_v6: bool, csum_at: int
) -> None:
    addr_offset, addr_len = _address_layout(is_v6)
    src_at = offset + addr_offset
    psum = pseudo_header_checksum_no_fold(
        proto,
        buf[src_at : src_at + addr_len],
        buf[src_at + addr_len : src_at + addr_len * 2],
        len(buf) - offset - iph_len,
    )
    _put_u16(buf, offset + csum_at, checksum(b"", psum))


def apply_tcp_coalesce_accounting(
    bufs: MutableSequence[bytearray], offset: int, table: TCPGROTable
) -> None:
    """Write virtio headers and fix IP and TCP fields for every item in ``table``."""
    for item in table:
        buf = bufs[item.bufs_index]
        if item.num_merged == 0:
            _encode_header(VirtioNetHdr(), buf, offset)
            continue
        hdr = VirtioNetHdr(
            flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
            gso_type=VIRTIO_NET_HDR_GSO_TCPV6 if item.key.is_v6 else VIRTIO_NET_HDR_GSO_TCPV4,
            hdr_len=item.iph_len + item.tcph_len,
            gso_size=item.gso_size,
            csum_start=item.iph_len,
            csum_offset=16,
        )
        _fix_ip_lengths(buf, offset, item.iph_len, item.key.is_v6)
        _encode_header(hdr, buf, offset)
        # The pseudo header sum is completed by downstream checksum offload.
        _place_pseudo_checksum(
            buf, offset, item.iph_len, socket.IPPROTO_TCP, item.key.is_v6,
            hdr.csum_start + hdr.csum_offset,
        )


def apply_udp_coalesce_accounting(
    bufs: MutableSequence[bytearray], offset: int, table: UDPGROTable
) -> None:
    """Write virtio headers and fix IP and UDP fields for every item in ``table``."""
    for item in table:
        buf = bufs[item.bufs_index]
        if item.num_merged == 0:
            _encode_header(VirtioNetHdr(), buf, offset)
            continue
        hdr = VirtioNetHdr(
            flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
            gso_type=VIRTIO_NET_HDR_GSO_UDP_L4,
            hdr_len=item.iph_len + UDPH_LEN,
            gso_size=item.gso_size,
            csum_start=item.iph_len,
            csum_offset=6,
        )
        _fix_ip_lengths(buf, offset, item.iph_len, item.key.is_v6)
        _encode_header(hdr, buf, offset)
        _put_u16(buf, offset + item.iph_len + 4, len(buf) - offset - item.iph_len)
        _place_pseudo_checksum(
            buf, offset, item.iph_len, socket.IPPROTO_UDP, item.key.is_v6,
            hdr.csum_start + hdr.csum_offset,
        )


def handle_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    tcp_table: TCPGROTable,
    udp_table: UDPGROTable,
    can_udp_gro: bool,
) -> List[int]:
    """Coalesce ``bufs`` in place and return the indices of the packets to write.

    Each packet begins at ``offset``; the virtio header is written just in
    front of it. The tables should start empty.
    """
    to_write: List[int] = []
    for i, buf in enumerate(bufs):
        if offset < VIRTIO_NET_HDR_LEN or offset > len(buf) - 1:
            raise ValueError("invalid offset")
        candidate = packet_is_gro_candidate(bufs[i][offset:], can_udp_gro)
        if candidate == GROCandidate.TCP4:
            result = tcp_gro(bufs, offset, i, tcp_table, False)
        elif candidate == GROCandidate.TCP6:
            result = tcp_gro(bufs, offset, i, tcp_table, True)
        elif candidate == GROCandidate.UDP4:
            result = udp_gro(bufs, offset, i, udp_table, False)
        elif candidate == GROCandidate.UDP6:
            result = udp_gro(bufs, offset, i, udp_table, True)
        else:
            result = GROResult.NOOP
        if result == GROResult.NOOP:
            _encode_header(VirtioNetHdr(), bufs[i], offset)
            to_write.append(i)
        elif result == GROResult.TABLE_INSERT:
            to_write.append(i)
    apply_tcp_coalesce_accounting(bufs, offset, tcp_table)
    apply_udp_coalesce_accounting(bufs, offset, udp_table)
    return to_write