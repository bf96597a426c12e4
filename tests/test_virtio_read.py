import ipaddress
import socket

import pytest

from wgtun.checksum import checksum, pseudo_header_checksum_no_fold
from wgtun.coalesce import checksum_valid
from wgtun.virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_NONE,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_GSO_UDP,
    VIRTIO_NET_HDR_GSO_UDP_L4,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
)
from wgtun.virtio_read import handle_virtio_read

OFFSET = VIRTIO_NET_HDR_LEN
IDEAL_BATCH_SIZE = 128

IP4_A = ipaddress.ip_address("192.0.2.1").packed
IP4_B = ipaddress.ip_address("192.0.2.2").packed
IP6_A = ipaddress.ip_address("2001:db8::1").packed
IP6_B = ipaddress.ip_address("2001:db8::2").packed

ACK = 0x10
PSH = 0x08


def _ipv4(proto, total_len):
    h = bytearray(20)
    h[0] = 0x45
    h[2:4] = total_len.to_bytes(2, "big")
    h[8] = 64
    h[9] = proto
    h[12:16] = IP4_A
    h[16:20] = IP4_B
    h[10:12] = (~checksum(h, 0) & 0xFFFF).to_bytes(2, "big")
    return h


def _ipv6(proto, payload_len):
    h = bytearray(40)
    h[0] = 0x60
    h[4:6] = payload_len.to_bytes(2, "big")
    h[6] = proto
    h[7] = 64
    h[8:24] = IP6_A
    h[24:40] = IP6_B
    return h


def _tcp(seq, flags, size, src, dst):
    seg = bytearray(20 + size)
    seg[0:2] = (1).to_bytes(2, "big")
    seg[2:4] = (1).to_bytes(2, "big")
    seg[4:8] = seq.to_bytes(4, "big")
    seg[8:12] = (1).to_bytes(4, "big")
    seg[12] = 5 << 4
    seg[13] = flags
    seg[14:16] = (3000).to_bytes(2, "big")
    p = pseudo_header_checksum_no_fold(socket.IPPROTO_TCP, src, dst, len(seg))
    seg[16:18] = (~checksum(seg, p) & 0xFFFF).to_bytes(2, "big")
    return seg


def _udp(size, src, dst):
    seg = bytearray(8 + size)
    seg[0:2] = (1).to_bytes(2, "big")
    seg[2:4] = (1).to_bytes(2, "big")
    seg[4:6] = (8 + size).to_bytes(2, "big")
    p = pseudo_header_checksum_no_fold(socket.IPPROTO_UDP, src, dst, len(seg))
    seg[6:8] = (~checksum(seg, p) & 0xFFFF).to_bytes(2, "big")
    return seg


def tcp4_packet(flags, size, seq):
    seg = _tcp(seq, flags, size, IP4_A, IP4_B)
    return bytearray(OFFSET) + _ipv4(socket.IPPROTO_TCP, 20 + len(seg)) + seg


def tcp6_packet(flags, size, seq):
    seg = _tcp(seq, flags, size, IP6_A, IP6_B)
    return bytearray(OFFSET) + _ipv6(socket.IPPROTO_TCP, len(seg)) + seg


def udp4_packet(size):
    seg = _udp(size, IP4_A, IP4_B)
    return bytearray(OFFSET) + _ipv4(socket.IPPROTO_UDP, 20 + len(seg)) + seg


def udp6_packet(size):
    seg = _udp(size, IP6_A, IP6_B)
    return bytearray(OFFSET) + _ipv6(socket.IPPROTO_UDP, len(seg)) + seg


def _out():
    return [bytearray(65535) for _ in range(IDEAL_BATCH_SIZE)], [0] * IDEAL_BATCH_SIZE


CASES = [
    (
        "tcp4",
        VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_TCPV4, 40, 100, 20, 16),
        lambda: tcp4_packet(ACK | PSH, 200, 1),
        [140, 140],
    ),
    (
        "tcp6",
        VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_TCPV6, 60, 100, 40, 16),
        lambda: tcp6_packet(ACK | PSH, 200, 1),
        [160, 160],
    ),
    (
        "udp4",
        VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_UDP_L4, 28, 100, 20, 6),
        lambda: udp4_packet(200),
        [128, 128],
    ),
    (
        "udp6",
        VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_UDP_L4, 48, 100, 40, 6),
        lambda: udp6_packet(200),
        [148, 148],
    ),
]


@pytest.mark.parametrize("name,hdr,make_pkt,want_lens", CASES, ids=[c[0] for c in CASES])
def test_handle_virtio_read(name, hdr, make_pkt, want_lens):
    pkt_in = make_pkt()
    hdr.encode(pkt_in)
    out, sizes = _out()
    n = handle_virtio_read(pkt_in, out, sizes, OFFSET)
    assert n == len(want_lens)
    assert sizes[:n] == want_lens


@pytest.mark.parametrize("name,hdr,make_pkt,want_lens", CASES, ids=[c[0] for c in CASES])
def test_handle_virtio_read_segments_verify(name, hdr, make_pkt, want_lens):
    pkt_in = make_pkt()
    hdr.encode(pkt_in)
    out, sizes = _out()
    n = handle_virtio_read(pkt_in, out, sizes, OFFSET)
    is_v6 = name.endswith("6")
    proto = socket.IPPROTO_TCP if name.startswith("tcp") else socket.IPPROTO_UDP
    for i in range(n):
        seg = out[i][OFFSET : OFFSET + sizes[i]]
        assert checksum_valid(seg, hdr.csum_start, proto, is_v6)


def test_tcp4_split_sequence_numbers():
    pkt_in = tcp4_packet(ACK | PSH, 200, 1)
    VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_TCPV4, 40, 100, 20, 16).encode(pkt_in)
    out, sizes = _out()
    handle_virtio_read(pkt_in, out, sizes, OFFSET)
    assert int.from_bytes(out[0][OFFSET + 24 : OFFSET + 28], "big") == 1
    assert int.from_bytes(out[1][OFFSET + 24 : OFFSET + 28], "big") == 101
    assert out[0][OFFSET + 33] == ACK
    assert out[1][OFFSET + 33] == ACK | PSH


def test_gso_none_copies_packet():
    pkt_in = tcp4_packet(ACK, 50, 1)
    VirtioNetHdr().encode(pkt_in)
    out, sizes = _out()
    n = handle_virtio_read(pkt_in, out, sizes, OFFSET)
    assert n == 1
    assert sizes[0] == len(pkt_in) - OFFSET
    assert out[0][OFFSET : OFFSET + sizes[0]] == pkt_in[OFFSET:]


def test_gso_none_needs_csum_completes_checksum():
    pkt_in = tcp4_packet(ACK, 50, 1)
    pkt = pkt_in[OFFSET:]
    pseudo = pseudo_header_checksum_no_fold(socket.IPPROTO_TCP, IP4_A, IP4_B, len(pkt) - 20)
    pkt_in[OFFSET + 36 : OFFSET + 38] = checksum(b"", pseudo).to_bytes(2, "big")
    VirtioNetHdr(
        flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
        gso_type=VIRTIO_NET_HDR_GSO_NONE,
        csum_start=20,
        csum_offset=16,
    ).encode(pkt_in)
    out, sizes = _out()
    assert handle_virtio_read(pkt_in, out, sizes, OFFSET) == 1
    assert checksum_valid(out[0][OFFSET : OFFSET + sizes[0]], 20, socket.IPPROTO_TCP, False)


def test_gso_none_overflow():
    pkt_in = tcp4_packet(ACK, 100, 1)
    VirtioNetHdr().encode(pkt_in)
    with pytest.raises(ValueError, match="overflows"):
        handle_virtio_read(pkt_in, [bytearray(OFFSET + 20)], [0], OFFSET)


def test_short_header():
    with pytest.raises(ValueError):
        handle_virtio_read(b"\x00\x01", [bytearray(100)], [0], OFFSET)


def test_unsupported_gso_type():
    pkt_in = udp4_packet(200)
    VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_UDP, 28, 100, 20, 6).encode(pkt_in)
    out, sizes = _out()
    with pytest.raises(ValueError, match="unsupported virtio GSO type"):
        handle_virtio_read(pkt_in, out, sizes, OFFSET)


def test_version_gso_mismatch():
    pkt_in = tcp4_packet(ACK, 200, 1)
    VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_TCPV6, 40, 100, 20, 16).encode(pkt_in)
    out, sizes = _out()
    with pytest.raises(ValueError, match="ip header version"):
        handle_virtio_read(pkt_in, out, sizes, OFFSET)


def test_invalid_ip_version():
    pkt_in = tcp4_packet(ACK, 200, 1)
    pkt_in[OFFSET] = 0x55
    VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_TCPV4, 40, 100, 20, 16).encode(pkt_in)
    out, sizes = _out()
    with pytest.raises(ValueError, match="invalid ip header version"):
        handle_virtio_read(pkt_in, out, sizes, OFFSET)


def test_invalid_tcp_header_len():
    pkt_in = tcp4_packet(ACK, 200, 1)
    pkt_in[OFFSET + 32] = 4 << 4
    VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_TCPV4, 40, 100, 20, 16).encode(pkt_in)
    out, sizes = _out()
    with pytest.raises(ValueError, match="tcp header len is invalid"):
        handle_virtio_read(pkt_in, out, sizes, OFFSET)


def test_tcp_packet_too_short():
    pkt_in = tcp4_packet(ACK, 200, 1)[: OFFSET + 30]
    VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_TCPV4, 40, 100, 20, 16).encode(pkt_in)
    out, sizes = _out()
    with pytest.raises(ValueError, match="packet is too short"):
        handle_virtio_read(pkt_in, out, sizes, OFFSET)


def test_checksum_offset_beyond_packet():
    pkt_in = udp4_packet(0)
    VirtioNetHdr(VIRTIO_NET_HDR_F_NEEDS_CSUM, VIRTIO_NET_HDR_GSO_UDP_L4, 28, 100, 20, 60).encode(pkt_in)
    out, sizes = _out()
    with pytest.raises(ValueError, match="exceeds packet length"):
        handle_virtio_read(pkt_in, out, sizes, OFFSET)