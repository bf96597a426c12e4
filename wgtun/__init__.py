"""Packet offload helpers for TUN devices: checksums, virtio-net headers, GRO and GSO."""

__version__ = "0.1.0"

__all__ = [
    "checksum",
    "coalesce",
    "errors",
    "gro",
    "gro_table",
    "gso",
    "virtio",
    "virtio_read",
]