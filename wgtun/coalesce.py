"""Checks and merges that coalesce TCP and UDP packets for GRO."""

from __future__ import annotations

import enum
import socket
from typing import MutableSequence

from wgtun.checksum import checksum, pseudo_header_checksum_no_fold
from wgtun.gro_table import (
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDPH_LEN,
    TCPGROItem,
    UDPGROItem,
)

# Buffers never grow past what a single IP packet can hold.
MAX_BUFFER_LEN = 65535


class CanCoalesce(enum.IntEnum):
    """Whether a packet can join an item, and on which side."""

    PREPEND = -1
    UNAVAILABLE = 0
    APPEND = 1


class CoalesceResult(enum.IntEnum):
    """Outcome of an attempt to merge two packets."""

    INSUFFICIENT_CAP = 0
    PSH_ENDING = 1
    ITEM_INVALID_CSUM = 2
    PKT_INVALID_CSUM = 3
    SUCCESS = 4


def _has_room(bufs_offset: int, coalesced_len: int) -> bool:
    return MAX_BUFFER_LEN - 2 * bufs_offset >= coalesced_len


def ip_headers_can_coalesce(pkt_a, pkt_b) -> bool:
    """True if the IP headers of both packets allow them to be merged."""
    if len(pkt_a) < 9 or len(pkt_b) < 9:
        return False
    if pkt_a[0] >> 4 == 6:
        # traffic class, then hop limit
        if pkt_a[0] != pkt_b[0] or pkt_a[1] >> 4 != pkt_b[1] >> 4:
            return False
        if pkt_a[7] != pkt_b[7]:
            return False
    else:
        # ToS, DF and reserved bits, then TTL
        if pkt_a[1] != pkt_b[1]:
            return False
        if pkt_a[6] >> 5 != pkt_b[6] >> 5:
            return False
        if pkt_a[8] != pkt_b[8]:
            return False
    return True


def udp_packets_can_coalesce(
    pkt,
    iph_len: int,
    gso_size: int,
    item: UDPGROItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
) -> CanCoalesce:
    """Decide whether ``pkt`` can be appended to the packet described by ``item``."""
    target = bufs[item.bufs_index][bufs_offset:]
    if not ip_headers_can_coalesce(pkt, target):
        return CanCoalesce.UNAVAILABLE
    if item.gso_size == 0 or len(target[iph_len + UDPH_LEN :]) % item.gso_size != 0:
        # a smaller packet was appended before; nothing may follow it
        return CanCoalesce.UNAVAILABLE
    if gso_size > item.gso_size:
        return CanCoalesce.UNAVAILABLE
    return CanCoalesce.APPEND


def tcp_packets_can_coalesce(
    pkt,
    iph_len: int,
    tcph_len: int,
    seq: int,
    psh_set: bool,
    gso_size: int,
    item: TCPGROItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
) -> CanCoalesce:
    """Decide whether ``pkt`` can join the packet described by ``item``."""
    target = bufs[item.bufs_index][bufs_offset:]
    if tcph_len != item.tcph_len:
        return CanCoalesce.UNAVAILABLE
    if tcph_len > 20:
        if bytes(pkt[iph_len + 20 : iph_len + tcph_len]) != bytes(
            target[item.iph_len + 20 : iph_len + tcph_len]
        ):
            return CanCoalesce.UNAVAILABLE
    if not ip_headers_can_coalesce(pkt, target):
        return CanCoalesce.UNAVAILABLE
    lhs_len = (item.gso_size + item.num_merged * item.gso_size) & 0xFFFF
    if seq == (item.sent_seq + lhs_len) & 0xFFFFFFFF:
        if item.psh_set:
            # PSH may only be set on the final segment of a group
            return CanCoalesce.UNAVAILABLE
        if item.gso_size == 0 or len(target[iph_len + tcph_len :]) % item.gso_size != 0:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.APPEND
    if (seq + gso_size) & 0xFFFFFFFF == item.sent_seq:
        if psh_set:
            return CanCoalesce.UNAVAILABLE
        if gso_size < item.gso_size:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size and item.num_merged > 0:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.PREPEND
    return CanCoalesce.UNAVAILABLE


def checksum_valid(pkt, iph_len: int, proto: int, is_v6: bool) -> bool:
    """True if the transport checksum of ``pkt`` verifies."""
    src_at, addr_size = (IPV6_SRC_ADDR_OFFSET, 16) if is_v6 else (IPV4_SRC_ADDR_OFFSET, 4)
    len_for_pseudo = (len(pkt) - iph_len) & 0xFFFF
    csum = pseudo_header_checksum_no_fold(
        proto,
        pkt[src_at : src_at + addr_size],
        pkt[src_at + addr_size : src_at + addr_size * 2],
        len_for_pseudo,
    )
    return (~checksum(pkt[iph_len:], csum)) & 0xFFFF == 0


def coalesce_udp_packets(
    pkt,
    item: UDPGROItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
    is_v6: bool,
) -> CoalesceResult:
    """Append the payload of ``pkt`` to the packet described by ``item``."""
    head = bufs[item.bufs_index]
    headers_len = item.iph_len + UDPH_LEN
    coalesced_len = len(head) - bufs_offset + len(pkt) - headers_len
    if not _has_room(bufs_offset, coalesced_len):
        return CoalesceResult.INSUFFICIENT_CAP
    if item.num_merged == 0:
        if item.csum_known_invalid or not checksum_valid(
            head[bufs_offset:], item.iph_len, socket.IPPROTO_UDP, is_v6
        ):
            return CoalesceResult.ITEM_INVALID_CSUM
    if not checksum_valid(pkt, item.iph_len, socket.IPPROTO_UDP, is_v6):
        return CoalesceResult.PKT_INVALID_CSUM
    head.extend(pkt[headers_len:])
    item.num_merged += 1
    return CoalesceResult.SUCCESS


def coalesce_tcp_packets(
    mode: CanCoalesce,
    pkt,
    pkt_bufs_index: int,
    gso_size: int,
    seq: int,
    psh_set: bool,
    item: TCPGROItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
    is_v6: bool,
) -> CoalesceResult:
    """Merge ``pkt`` with the packet described by ``item``.

    On a prepend the two entries of ``bufs`` are swapped, so that the merged
    packet stays at ``item.bufs_index``.
    """
    headers_len = item.iph_len + item.tcph_len
    item_buf = bufs[item.bufs_index]
    coalesced_len = len(item_buf) - bufs_offset + len(pkt) - headers_len

    if mode == CanCoalesce.PREPEND:
        if not _has_room(bufs_offset, coalesced_len):
            return CoalesceResult.INSUFFICIENT_CAP
        if psh_set:
            return CoalesceResult.PSH_ENDING
        if item.num_merged == 0:
            if not checksum_valid(item_buf[bufs_offset:], item.iph_len, socket.IPPROTO_TCP, is_v6):
                return CoalesceResult.ITEM_INVALID_CSUM
        if not checksum_valid(pkt, item.iph_len, socket.IPPROTO_TCP, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        item.sent_seq = seq
        pkt_buf = bufs[pkt_bufs_index]
        del pkt_buf[bufs_offset + len(pkt) :]
        pkt_buf.extend(item_buf[bufs_offset + headers_len :])
        bufs[item.bufs_index], bufs[pkt_bufs_index] = bufs[pkt_bufs_index], bufs[item.bufs_index]
    else:
        if not _has_room(bufs_offset, coalesced_len):
            return CoalesceResult.INSUFFICIENT_CAP
        if item.num_merged == 0:
            if not checksum_valid(item_buf[bufs_offset:], item.iph_len, socket.IPPROTO_TCP, is_v6):
                return CoalesceResult.ITEM_INVALID_CSUM
        if not checksum_valid(pkt, item.iph_len, socket.IPPROTO_TCP, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        if psh_set:
            item.psh_set = True
            item_buf[bufs_offset + item.iph_len + TCP_FLAGS_OFFSET] |= TCP_FLAG_PSH
        item_buf.extend(pkt[headers_len:])

    if gso_size > item.gso_size:
        item.gso_size = gso_size
    item.num_merged += 1
    return CoalesceResult.SUCCESS