"""Errors raised by TUN devices and packet offload helpers."""


class TooManySegmentsError(Exception):
    """Segmentation produced more packets than the supplied buffers can hold.

    Reads should not stop because of this error. ``count`` holds the number of
    buffers that were filled before the overflow.
    """

    def __init__(self, count: int = 0) -> None:
        super().__init__("too many segments")
        self.count = count