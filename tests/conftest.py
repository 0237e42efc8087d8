"""Shared fixtures for the Secure Pipeline test-suite."""
import pytest

from secure_pipeline.transport import (
    AeadEngine,
    Decoder,
    Encoder,
    FrameCodec,
    KeyRing,
    SessionKeys,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Link:
    """Sender and receiver halves sharing mirrored keys."""

    def __init__(self, outer_mac: bool = False, reorder_window: int = 64, **ring_kwargs):
        self.keys = SessionKeys.generate()
        self.peer_keys = self.keys.mirrored()
        self.engine = AeadEngine()
        self.codec = FrameCodec(mac_size=32 if outer_mac else 0)
        self.send_ring = KeyRing(self.keys, **ring_kwargs)
        self.recv_ring = KeyRing(self.peer_keys, **ring_kwargs)
        self.encoder = Encoder(self.send_ring, self.engine, self.codec)
        self.decoder = Decoder(
            self.recv_ring, self.engine, self.codec, reorder_window=reorder_window,
        )

    def rotate(self, epoch: int) -> None:
        new_keys = SessionKeys.generate(epoch=epoch)
        peer = new_keys.mirrored()
        self.send_ring.rotate(new_keys)
        self.recv_ring.rotate(peer)

    def wire(self, *payloads: bytes) -> list[bytes]:
        return [self.encoder.encode(p) for p in payloads]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def keys():
    return SessionKeys.generate()


@pytest.fixture
def link():
    return Link()


@pytest.fixture
def make_link():
    """Factory for links with custom settings."""
    return Link
