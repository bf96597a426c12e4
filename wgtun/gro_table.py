"""Per-flow bookkeeping for generic receive offload (GRO)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

TCP_FLAGS_OFFSET = 13
TCP_FLAG_FIN = 0x01
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10

UDPH_LEN = 8

IPV4_SRC_ADDR_OFFSET = 12
IPV6_SRC_ADDR_OFFSET = 8

_ZERO_ADDR = bytes(16)


def _u16(pkt, at: int) -> int:
    return int.from_bytes(pkt[at : at + 2], "big")


def _u32(pkt, at: int) -> int:
    return int.from_bytes(pkt[at : at + 4], "big")


def _flow_addrs(pkt, src_addr_offset: int, dst_addr_offset: int) -> Tuple[bytes, bytes, bool]:
    size = dst_addr_offset - src_addr_offset
    src = bytes(pkt[src_addr_offset:dst_addr_offset]).ljust(16, b"\0")[:16]
    dst = bytes(pkt[dst_addr_offset : dst_addr_offset + size]).ljust(16, b"\0")[:16]
    return src, dst, size == 16


@dataclass(frozen=True)
class TCPFlowKey:
    """Identifies a TCP flow; differing ACK values are kept as separate flows."""

    src_addr: bytes = _ZERO_ADDR
    dst_addr: bytes = _ZERO_ADDR
    src_port: int = 0
    dst_port: int = 0
    rx_ack: int = 0
    is_v6: bool = False


@dataclass
class TCPGROItem:
    """Bookkeeping for one TCP packet during a GRO pass over a batch."""

    key: TCPFlowKey = field(default_factory=TCPFlowKey)
    sent_seq: int = 0
    bufs_index: int = 0
    num_merged: int = 0
    gso_size: int = 0
    iph_len: int = 0
    tcph_len: int = 0
    psh_set: bool = False


def _tcp_flow_key(pkt, src_addr_offset: int, dst_addr_offset: int, tcph_offset: int) -> TCPFlowKey:
    src, dst, is_v6 = _flow_addrs(pkt, src_addr_offset, dst_addr_offset)
    return TCPFlowKey(
        src_addr=src,
        dst_addr=dst,
        src_port=_u16(pkt, tcph_offset),
        dst_port=_u16(pkt, tcph_offset + 2),
        rx_ack=_u32(pkt, tcph_offset + 8),
        is_v6=is_v6,
    )


class TCPGROTable:
    """Flows and their coalescing candidates for TCP GRO."""

    def __init__(self) -> None:
        self.items_by_flow: Dict[TCPFlowKey, List[TCPGROItem]] = {}

    def lookup_or_insert(
        self,
        pkt,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> Optional[List[TCPGROItem]]:
        """Return the items of the packet's flow, or insert the packet and return None."""
        key = _tcp_flow_key(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return items
        self._insert(key, pkt, tcph_offset, tcph_len, bufs_index)
        return None

    def insert(
        self,
        pkt,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> None:
        """Add an item describing ``pkt`` to its flow."""
        key = _tcp_flow_key(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        self._insert(key, pkt, tcph_offset, tcph_len, bufs_index)

    def _insert(self, key: TCPFlowKey, pkt, tcph_offset: int, tcph_len: int, bufs_index: int) -> None:
        item = TCPGROItem(
            key=key,
            bufs_index=bufs_index & 0xFFFF,
            gso_size=max(len(pkt) - (tcph_offset + tcph_len), 0) & 0xFFFF,
            iph_len=tcph_offset & 0xFF,
            tcph_len=tcph_len & 0xFF,
            sent_seq=_u32(pkt, tcph_offset + 4),
            psh_set=bool(pkt[tcph_offset + TCP_FLAGS_OFFSET] & TCP_FLAG_PSH),
        )
        self.items_by_flow.setdefault(key, []).append(item)

    def update_at(self, item: TCPGROItem, i: int) -> None:
        """Replace the item at position ``i`` of its flow."""
        self.items_by_flow[item.key][i] = item

    def delete_at(self, key: TCPFlowKey, i: int) -> TCPGROItem:
        """Remove and return the item at position ``i`` of flow ``key``."""
        items = self.items_by_flow[key]
        removed = items.pop(i)
        self.items_by_flow[key] = items
        return removed

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()

    def __iter__(self) -> Iterator[TCPGROItem]:
        for items in self.items_by_flow.values():
            yield from items

    def __len__(self) -> int:
        return sum(len(items) for items in self.items_by_flow.values())


@dataclass(frozen=True)
class UDPFlowKey:
    """Identifies a UDP flow."""

    src_addr: bytes = _ZERO_ADDR
    dst_addr: bytes = _ZERO_ADDR
    src_port: int = 0
    dst_port: int = 0
    is_v6: bool = False


@dataclass
class UDPGROItem:
    """Bookkeeping for one UDP packet during a GRO pass over a batch.

    ``csum_known_invalid`` False does not mean the checksum is valid, only
    that it is unknown.
    """

    key: UDPFlowKey = field(default_factory=UDPFlowKey)
    bufs_index: int = 0
    num_merged: int = 0
    gso_size: int = 0
    iph_len: int = 0
    csum_known_invalid: bool = False


def _udp_flow_key(pkt, src_addr_offset: int, dst_addr_offset: int, udph_offset: int) -> UDPFlowKey:
    src, dst, is_v6 = _flow_addrs(pkt, src_addr_offset, dst_addr_offset)
    return UDPFlowKey(
        src_addr=src,
        dst_addr=dst,
        src_port=_u16(pkt, udph_offset),
        dst_port=_u16(pkt, udph_offset + 2),
        is_v6=is_v6,
    )


class UDPGROTable:
    """Flows and their coalescing candidates for UDP GRO."""

    def __init__(self) -> None:
        self.items_by_flow: Dict[UDPFlowKey, List[UDPGROItem]] = {}

    def lookup_or_insert(
        self,
        pkt,
        src_addr_offset: int,
        dst_addr_offset: int,
        udph_offset: int,
        bufs_index: int,
    ) -> Optional[List[UDPGROItem]]:
        """Return the items of the packet's flow, or insert the packet and return None."""
        key = _udp_flow_key(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return items
        self._insert(key, pkt, udph_offset, bufs_index, False)
        return None

    def insert(
        self,
        pkt,
        src_addr_offset: int,
        dst_addr_offset: int,
        udph_offset: int,
        bufs_index: int,
        csum_known_invalid: bool = False,
    ) -> None:
        """Add an item describing ``pkt`` to its flow."""
        key = _udp_flow_key(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        self._insert(key, pkt, udph_offset, bufs_index, csum_known_invalid)

    def _insert(self, key: UDPFlowKey, pkt, udph_offset: int, bufs_index: int, csum_known_invalid: bool) -> None:
        item = UDPGROItem(
            key=key,
            bufs_index=bufs_index & 0xFFFF,
            gso_size=max(len(pkt) - (udph_offset + UDPH_LEN), 0) & 0xFFFF,
            iph_len=udph_offset & 0xFF,
            csum_known_invalid=csum_known_invalid,
        )
        self.items_by_flow.setdefault(key, []).append(item)

    def update_at(self, item: UDPGROItem, i: int) -> None:
        """Replace the item at position ``i`` of its flow."""
        self.items_by_flow[item.key][i] = item

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()

    def __iter__(self) -> Iterator[UDPGROItem]:
        for items in self.items_by_flow.values():
            yield from items

    def __len__(self) -> int:
        return sum(len(items) for items in self.items_by_flow.values())