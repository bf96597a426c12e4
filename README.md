# wgtun

Packet-level building blocks for TUN devices that use virtio-net offload
headers (`IFF_VNET_HDR` on Linux): the Internet checksum, the virtio-net
header, generic receive offload (GRO) for batches of outgoing TCP and UDP
packets, and generic segmentation offload (GSO) splitting for large
segments read back from the kernel. Everything is pure Python and works on
`bytearray` buffers.

## Modules

- `wgtun.checksum`: `checksum(b, initial)`, `checksum_no_fold(b, initial)`
  and `pseudo_header_checksum_no_fold(protocol, src_addr, dst_addr, total_len)`.
- `wgtun.virtio`: `VirtioNetHdr`, a dataclass for the 10-byte virtio-net
  header, with `VirtioNetHdr.decode(b)` and `hdr.encode(b)`, plus the
  `VIRTIO_NET_HDR_*` flag and GSO-type constants and `VIRTIO_NET_HDR_LEN`.
  Both methods raise `ValueError` on a buffer shorter than the header.
- `wgtun.gro_table`: `TCPGROTable` and `UDPGROTable`, which track flows
  (`TCPFlowKey`, `UDPFlowKey`) and their coalescing candidates
  (`TCPGROItem`, `UDPGROItem`) during one pass over a batch.
- `wgtun.coalesce`: the checks and merges behind GRO
  (`ip_headers_can_coalesce`, `tcp_packets_can_coalesce`,
  `udp_packets_can_coalesce`, `checksum_valid`, `coalesce_tcp_packets`,
  `coalesce_udp_packets`) and the `CanCoalesce` and `CoalesceResult` enums.
- `wgtun.gro`: `handle_gro(bufs, offset, tcp_table, udp_table, can_udp_gro)`
  coalesces a batch in place and returns the indices of the buffers to
  write. Lower-level pieces are `packet_is_gro_candidate`, `tcp_gro`,
  `udp_gro`, `apply_tcp_coalesce_accounting` and
  `apply_udp_coalesce_accounting`.
- `wgtun.gso`: `gso_split(data, hdr, out_bufs, sizes, out_offset, is_v6)`
  splits one large TCP or UDP segment into packets of `hdr.gso_size`
  payload bytes, fixing IP lengths, IPv4 IDs, TCP sequence numbers and
  checksums. `gso_none_checksum(data, csum_start, csum_offset)` completes a
  partial checksum in place.
- `wgtun.virtio_read`: `handle_virtio_read(data, bufs, sizes, offset)` takes
  one read that starts with a virtio-net header and writes the resulting
  packets into `bufs`, their lengths into `sizes`, and returns how many
  there are. It raises `ValueError` for a malformed read.
- `wgtun.errors`: `TooManySegmentsError`, raised when splitting needs more
  buffers than were supplied; its `count` attribute holds the number of
  buffers filled before the overflow.

## Buffers and offsets

Every buffer holds `offset` bytes of headroom in front of the IP packet.
`handle_gro` requires `offset >= VIRTIO_NET_HDR_LEN` and writes a virtio-net
header into the last `VIRTIO_NET_HDR_LEN` bytes of that headroom; otherwise
it raises `ValueError("invalid offset")`. Coalesced buffers grow in place,
and a TCP prepend swaps two entries of `bufs`, so pass a mutable list of
`bytearray` objects.

## Install

```
pip install .
```

With the test extra, to run the tests:

```
pip install .[test]
pytest
```

## Examples

Checksum of an IPv4 header:

```python
from wgtun.checksum import checksum

header = bytearray.fromhex("4500001c0000000040110000c0000201c0000202")
csum = ~checksum(header, 0) & 0xFFFF
header[10:12] = csum.to_bytes(2, "big")
assert checksum(header, 0) == 0xFFFF
```

Encoding and decoding a virtio-net header:

```python
from wgtun.virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
)

hdr = VirtioNetHdr(
    flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
    gso_type=VIRTIO_NET_HDR_GSO_TCPV4,
    hdr_len=40,
    gso_size=100,
    csum_start=20,
    csum_offset=16,
)
buf = bytearray(VIRTIO_NET_HDR_LEN)
hdr.encode(buf)
assert VirtioNetHdr.decode(buf) == hdr
```

Coalescing a batch before writing it:

```python
from wgtun.gro import handle_gro
from wgtun.gro_table import TCPGROTable, UDPGROTable
from wgtun.virtio import VIRTIO_NET_HDR_LEN

offset = VIRTIO_NET_HDR_LEN
bufs = [bytearray(offset) + packet for packet in packets]  # packets: raw IP packets
to_write = handle_gro(bufs, offset, TCPGROTable(), UDPGROTable(), can_udp_gro=True)
for i in to_write:
    out = bufs[i]  # virtio-net header followed by the (possibly merged) packet
```

## What it does not do

The package handles packet buffers only. It does not open, configure or
monitor TUN devices, does not read from or write to the kernel, and has no
device interface, event stream or in-memory test device. Feeding it reads
and writing its results out is left to the caller.