"""
Tests for the Encoder / Decoder pair.

Tests cover:
- Round trip across payload sizes
- Sequence assignment
- Tamper detection and fault behaviour
- Replay rejection
- Reordering and the reorder window
- Partial reads and lazy, restartable delivery
- Epoch rotation continuity
- Outer MAC mode
"""
import random
import struct

import pytest

from secure_pipeline.conf import MAX_CHUNK_SIZE
from secure_pipeline.data import PlaintextChunk
from secure_pipeline.exceptions import (
    AuthenticationFailure,
    MalformedFrame,
    ReorderBufferOverflow,
    SessionClosed,
    SessionFaulted,
)


def payloads(chunks):
    return [c.payload for c in chunks]


class TestRoundTrip:
    """Tests for Decoder.feed(Encoder.encode(chunk))."""

    @pytest.mark.parametrize("size", [0, 1, 15, 16, 17, 1000, 65536])
    def test_roundtrip_sizes(self, link, size):
        """Test payloads of various sizes come back unchanged."""
        payload = bytes(random.Random(size).getrandbits(8) for _ in range(size))
        chunks = list(link.decoder.feed(link.encoder.encode(payload)))
        assert chunks == [PlaintextChunk(sequence=0, payload=payload)]

    def test_roundtrip_max_chunk(self, link):
        """Test the largest allowed chunk fits in one frame."""
        payload = b"\xab" * MAX_CHUNK_SIZE
        chunks = list(link.decoder.feed(link.encoder.encode(payload)))
        assert payloads(chunks) == [payload]

    def test_oversized_chunk_rejected(self, link):
        """Test chunks above the maximum are a usage error."""
        with pytest.raises(ValueError):
            link.encoder.submit(b"\x00" * (MAX_CHUNK_SIZE + 1))
        assert link.encoder.submit(b"ok").sequence == 0

    def test_ciphertext_hides_plaintext(self, link):
        """Test the wire bytes do not contain the payload."""
        wire = link.encoder.encode(b"Hello, World! " * 4)
        assert b"Hello, World!" not in wire

    def test_submit_accepts_plaintext_chunk(self, link):
        """Test a PlaintextChunk payload is sealed; its sequence is reassigned."""
        frame = link.encoder.submit(PlaintextChunk(sequence=99, payload=b"abc"))
        assert frame.sequence == 0
        assert len(frame.ciphertext) == 3


class TestSequencing:
    """Tests for sequence assignment on send."""

    def test_sequences_strictly_increasing(self, link):
        """Test sequences have no gaps or repeats."""
        frames = [link.encoder.submit(b"x") for _ in range(50)]
        assert [f.sequence for f in frames] == list(range(50))
        assert {f.epoch for f in frames} == {0}

    def test_failed_submit_consumes_no_sequence(self, link):
        """Test a rejected chunk leaves the sequence untouched."""
        link.encoder.submit(b"a")
        with pytest.raises(ValueError):
            link.encoder.submit(b"\x00" * (MAX_CHUNK_SIZE + 1))
        assert link.encoder.submit(b"b").sequence == 1
        assert link.encoder.submitted == 2


class TestTamperDetection:
    """Tests for bit flips in transmitted frames."""

    @pytest.mark.parametrize("offset", [16, 17, 20, 24, 25, 39, 40])
    def test_bit_flip_in_sealed_bytes(self, link, offset):
        """Test any flipped ciphertext or tag bit faults the decoder."""
        wire = bytearray(link.encoder.encode(b"sensitive"))
        assert len(wire) == 16 + 9 + 16
        wire[offset] ^= 0x01
        with pytest.raises(AuthenticationFailure):
            list(link.decoder.feed(bytes(wire)))
        assert isinstance(link.decoder.fault, AuthenticationFailure)

    def test_flipped_sequence_fails(self, link):
        """Test a relabelled sequence fails authentication."""
        wire = bytearray(link.encoder.encode(b"sensitive"))
        wire[11] ^= 0x01
        with pytest.raises(AuthenticationFailure):
            list(link.decoder.feed(bytes(wire)))

    def test_faulted_decoder_refuses_input(self, link):
        """Test no more data is processed after a fault."""
        good = link.encoder.encode(b"good")
        bad = bytearray(link.encoder.encode(b"bad"))
        bad[-1] ^= 0x80
        with pytest.raises(AuthenticationFailure):
            list(link.decoder.feed(bytes(bad)))
        with pytest.raises(SessionFaulted) as exc:
            link.decoder.feed(good)
        assert isinstance(exc.value.reason, AuthenticationFailure)

    def test_malformed_length_is_fatal(self, link):
        """Test an oversized length field faults the decoder."""
        header = struct.pack(">IQI", 0, 0, 2 * 1024 * 1024)
        with pytest.raises(MalformedFrame):
            list(link.decoder.feed(header))
        assert isinstance(link.decoder.fault, MalformedFrame)


class TestReplay:
    """Tests for replayed frames."""

    def test_replay_dropped(self, link):
        """Test a re-sent frame is dropped and not re-emitted."""
        wire = link.encoder.encode(b"once")
        assert payloads(link.decoder.feed(wire)) == [b"once"]
        assert list(link.decoder.feed(wire)) == []
        assert link.decoder.dropped == 1
        event = link.decoder.events[-1]
        assert event.kind == "replay"
        assert (event.epoch, event.sequence) == (0, 0)

    def test_replay_does_not_interrupt_stream(self, link):
        """Test chunks after a replay still flow."""
        first, second = link.wire(b"one", b"two")
        list(link.decoder.feed(first))
        assert payloads(link.decoder.feed(first + second)) == [b"two"]
        assert link.decoder.fault is None

    def test_replay_of_buffered_frame(self, link):
        """Test duplicates of a frame waiting in the reorder buffer are dropped."""
        a, b = link.wire(b"A", b"B")
        assert list(link.decoder.feed(b)) == []
        assert list(link.decoder.feed(b)) == []
        assert link.decoder.dropped == 1
        assert payloads(link.decoder.feed(a)) == [b"A", b"B"]

    def test_event_callback(self, make_link):
        """Test recoverable events reach the callback."""
        seen = []
        link = make_link()
        link.decoder._on_event = seen.append
        wire = link.encoder.encode(b"x")
        list(link.decoder.feed(wire))
        list(link.decoder.feed(wire))
        assert len(seen) == 1
        assert seen[0].reason == "duplicate sequence"


class TestReordering:
    """Tests for out-of-order delivery."""

    def test_scenario_two_zero_one(self, link):
        """Test wire order [2, 0, 1] yields exactly A, B, C."""
        a, b, c = link.wire(b"A", b"B", b"C")
        assert list(link.decoder.feed(c)) == []
        assert link.decoder.pending == 1
        assert payloads(link.decoder.feed(a)) == [b"A"]
        assert payloads(link.decoder.feed(b)) == [b"B", b"C"]
        assert link.decoder.pending == 0

    def test_shuffled_within_window(self, link):
        """Test any permutation inside the window is delivered in order."""
        items = [bytes([i]) * 3 for i in range(40)]
        wires = list(enumerate(link.wire(*items)))
        random.Random(7).shuffle(wires)
        delivered = []
        for _, wire in wires:
            delivered.extend(link.decoder.feed(wire))
        assert [c.sequence for c in delivered] == list(range(40))
        assert payloads(delivered) == items

    def test_reorder_overflow(self, make_link):
        """Test a gap beyond the window is fatal."""
        link = make_link(reorder_window=4)
        wires = link.wire(*[b"x"] * 6)
        assert list(link.decoder.feed(wires[3])) == []
        with pytest.raises(ReorderBufferOverflow):
            list(link.decoder.feed(wires[4]))
        with pytest.raises(SessionFaulted):
            link.decoder.feed(wires[0])

    def test_concatenated_out_of_order(self, link):
        """Test several frames in one feed are reordered."""
        a, b, c = link.wire(b"A", b"B", b"C")
        assert payloads(link.decoder.feed(b + c + a)) == [b"A", b"B", b"C"]


class TestStreaming:
    """Tests for partial input and lazy delivery."""

    def test_byte_by_byte_feed(self, link):
        """Test frame boundaries need not align with reads."""
        stream = b"".join(link.wire(b"first", b"second"))
        delivered = []
        for i in range(len(stream)):
            delivered.extend(link.decoder.feed(stream[i:i + 1]))
        assert payloads(delivered) == [b"first", b"second"]
        assert link.decoder.buffered_bytes == 0

    def test_partial_frame_kept(self, link):
        """Test the tail of a frame waits for the rest."""
        wire = link.encoder.encode(b"split")
        assert list(link.decoder.feed(wire[:10])) == []
        assert link.decoder.buffered_bytes == 10
        assert payloads(link.decoder.feed(wire[10:])) == [b"split"]

    def test_lazy_and_restartable(self, link):
        """Test unconsumed chunks carry over to the next call."""
        stream = b"".join(link.wire(b"A", b"B", b"C"))
        it = link.decoder.feed(stream)
        assert next(it).payload == b"A"
        assert payloads(link.decoder.feed()) == [b"B", b"C"]

    def test_closed_keyring(self, link):
        """Test a closed key ring surfaces SessionClosed."""
        wire = link.encoder.encode(b"late")
        link.recv_ring.close()
        with pytest.raises(SessionClosed):
            list(link.decoder.feed(wire))

    def test_submit_after_close(self, link):
        """Test the encoder refuses to seal with a closed ring."""
        link.send_ring.close()
        with pytest.raises(SessionClosed):
            link.encoder.submit(b"late")


class TestEpochContinuity:
    """Tests for rotation while frames are in flight."""

    def test_in_flight_frames_survive_rotation(self, make_link):
        """Test old-epoch frames decrypt during the grace window."""
        link = make_link(grace_frames=3, grace_seconds=None)
        a, b = link.wire(b"A", b"B")
        link.rotate(1)
        c = link.encoder.encode(b"C")
        delivered = []
        for wire in (c, a, b):
            delivered.extend(link.decoder.feed(wire))
        assert payloads(delivered) == [b"A", b"B", b"C"]
        assert link.recv_ring.in_grace is False

    def test_stale_after_grace(self, make_link):
        """Test old-epoch frames are rejected once the window elapsed."""
        link = make_link(grace_frames=1, grace_seconds=None)
        a, b = link.wire(b"A", b"B")
        link.rotate(1)
        assert payloads(link.decoder.feed(a)) == [b"A"]
        assert list(link.decoder.feed(b)) == []
        assert link.decoder.events[-1].reason == "stale epoch"
        assert link.decoder.fault is None

    def test_stale_after_time_bound(self, make_link, clock):
        """Test the time bound also retires the old epoch."""
        link = make_link(grace_frames=None, grace_seconds=2.0, clock=clock)
        (a,) = link.wire(b"A")
        link.rotate(1)
        clock.advance(3.0)
        assert list(link.decoder.feed(a)) == []
        assert link.decoder.events[-1].reason == "stale epoch"

    def test_new_epoch_frames(self, make_link):
        """Test frames after rotation carry the new epoch."""
        link = make_link()
        link.wire(b"A")
        link.rotate(1)
        frame = link.encoder.submit(b"B")
        assert (frame.epoch, frame.sequence) == (1, 1)


class TestOuterMac:
    """Tests for the optional encrypt-then-MAC layer."""

    def test_roundtrip_with_mac(self, make_link):
        """Test frames carry and verify a 32-byte MAC."""
        link = make_link(outer_mac=True)
        frame = link.encoder.submit(b"double")
        assert len(frame.mac) == 32
        wire = link.codec.encode(frame)
        assert payloads(link.decoder.feed(wire)) == [b"double"]

    def test_mac_tamper(self, make_link):
        """Test a flipped MAC bit fails before decryption."""
        link = make_link(outer_mac=True)
        wire = bytearray(link.encoder.encode(b"double"))
        wire[-1] ^= 0x01
        with pytest.raises(AuthenticationFailure) as exc:
            list(link.decoder.feed(bytes(wire)))
        assert "MAC" in str(exc.value)

    def test_ciphertext_tamper_caught_by_mac(self, make_link):
        """Test a flipped ciphertext bit fails the outer MAC."""
        link = make_link(outer_mac=True)
        wire = bytearray(link.encoder.encode(b"double"))
        wire[16] ^= 0x01
        with pytest.raises(AuthenticationFailure):
            list(link.decoder.feed(bytes(wire)))
