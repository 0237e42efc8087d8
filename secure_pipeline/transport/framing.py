"""
Frame assembly and parsing for the transport wire format.

Frame structure (16 + N [+ 32] bytes), big-endian:
    [epoch:4][sequence:8][ciphertext_len:4][ciphertext||tag:N][mac:32, optional]

``ciphertext_len`` counts the trailing 16-byte tag. The optional outer MAC
is present only when both ends run with ``outer_mac`` enabled.
"""
import struct
from collections.abc import Iterator

from ..conf import HEADER_FORMAT, HEADER_SIZE, MAC_SIZE, MAX_CIPHERTEXT_LEN, TAG_SIZE
from ..data import Frame
from ..exceptions import IncompleteFrame, MalformedFrame

_HEADER = struct.Struct(HEADER_FORMAT)


class FrameCodec:
    """Length-prefixed frame codec; no cryptography.

    Args:
        mac_size: Size of the trailing outer MAC (0 disables it).
        max_ciphertext_len: Largest accepted ``ciphertext_len``.
    """

    __slots__ = ("mac_size", "max_ciphertext_len")

    def __init__(self, mac_size: int = 0, max_ciphertext_len: int = MAX_CIPHERTEXT_LEN):
        if mac_size not in (0, MAC_SIZE):
            raise ValueError(f"mac_size must be 0 or {MAC_SIZE}, got {mac_size}")
        if not TAG_SIZE <= max_ciphertext_len <= MAX_CIPHERTEXT_LEN:
            raise ValueError(
                f"max_ciphertext_len must be in [{TAG_SIZE}, {MAX_CIPHERTEXT_LEN}]"
            )
        self.mac_size = mac_size
        self.max_ciphertext_len = max_ciphertext_len

    @staticmethod
    def header(epoch: int, sequence: int, ciphertext_len: int) -> bytes:
        return _HEADER.pack(epoch, sequence, ciphertext_len)

    def authenticated_bytes(self, frame: Frame) -> bytes:
        """Header plus ciphertext||tag: the input of the outer MAC."""
        sealed = frame.sealed
        return self.header(frame.epoch, frame.sequence, len(sealed)) + sealed

    def encode(self, frame: Frame) -> bytes:
        """Serialize a frame to its wire representation.

        Raises:
            ValueError: If the frame does not fit this codec.
        """
        sealed_len = len(frame.ciphertext) + TAG_SIZE
        if sealed_len > self.max_ciphertext_len:
            raise ValueError(
                f"ciphertext too large: {sealed_len} bytes "
                f"(maximum {self.max_ciphertext_len})"
            )
        if len(frame.mac) != self.mac_size:
            raise ValueError(
                f"frame MAC is {len(frame.mac)} bytes, codec expects {self.mac_size}"
            )
        return self.authenticated_bytes(frame) + frame.mac

    def decode(self, data: bytes | bytearray | memoryview) -> tuple[Frame, int]:
        """Parse one frame from the start of ``data``.

        Returns:
            Tuple of (frame, bytes consumed).

        Raises:
            IncompleteFrame: If ``data`` holds only part of a frame.
            MalformedFrame: If the length field is out of bounds.
        """
        if len(data) < HEADER_SIZE:
            raise IncompleteFrame(HEADER_SIZE - len(data))
        epoch, sequence, ciphertext_len = _HEADER.unpack_from(data, 0)
        if ciphertext_len > self.max_ciphertext_len:
            raise MalformedFrame(
                f"ciphertext_len {ciphertext_len} exceeds maximum "
                f"{self.max_ciphertext_len}"
            )
        if ciphertext_len < TAG_SIZE:
            raise MalformedFrame(
                f"ciphertext_len {ciphertext_len} shorter than tag ({TAG_SIZE})"
            )
        total = HEADER_SIZE + ciphertext_len + self.mac_size
        if len(data) < total:
            raise IncompleteFrame(total - len(data))

        tag_start = HEADER_SIZE + ciphertext_len - TAG_SIZE
        mac_start = HEADER_SIZE + ciphertext_len
        frame = Frame(
            epoch=epoch,
            sequence=sequence,
            ciphertext=bytes(data[HEADER_SIZE:tag_start]),
            tag=bytes(data[tag_start:mac_start]),
            mac=bytes(data[mac_start:total]),
        )
        return frame, total

    def iter_frames(self, buffer: bytearray) -> Iterator[Frame]:
        """Yield every complete frame in ``buffer``, consuming it in place.

        Bytes of a trailing partial frame stay in the buffer.
        """
        while True:
            try:
                frame, consumed = self.decode(buffer)
            except IncompleteFrame:
                return
            del buffer[:consumed]
            yield frame
