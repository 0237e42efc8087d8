"""
Decoder: wire bytes in, ordered plaintext chunks out.

For each complete frame:
    validate nonce (replay / stale epoch: drop, record event, continue)
    -> verify outer MAC (optional) -> open AEAD -> mark received
    -> deliver in sequence order, buffering frames that arrive early.

Authentication failures, malformed frames and unresolvable gaps are fatal:
the decoder stops and keeps the error as its fault reason.
"""
import logging
import threading
from collections import deque
from collections.abc import Iterator
from typing import Callable, Optional

from ..conf import DEFAULT_REORDER_WINDOW
from ..data import DecoderEvent, Frame, PlaintextChunk
from ..exceptions import (
    IncompleteFrame,
    PipelineError,
    ReorderBufferOverflow,
    ReplayDetected,
    SessionFaulted,
)
from .crypto import AeadEngine, associated_data, build_nonce, verify_mac
from .framing import FrameCodec
from .keyring import KeyRing

logger = logging.getLogger("pipeline.transport")

_MAX_EVENTS = 1024


class Decoder:
    """Receiver half of the codec.

    Args:
        keyring: Shared key ring (receive half is used).
        engine: AEAD engine matching the sender's backend.
        codec: Frame codec matching the sender's MAC setting.
        reorder_window: Largest distance ahead of the next expected
            sequence that may be buffered.
        on_event: Optional callback for recoverable per-frame events.
    """

    def __init__(
        self,
        keyring: KeyRing,
        engine: AeadEngine,
        codec: FrameCodec,
        reorder_window: int = DEFAULT_REORDER_WINDOW,
        on_event: Optional[Callable[[DecoderEvent], None]] = None,
    ):
        if reorder_window < 1:
            raise ValueError("reorder_window must be positive")
        self._keyring = keyring
        self._engine = engine
        self._codec = codec
        self._reorder_window = reorder_window
        self._on_event = on_event
        self._lock = threading.Lock()
        self._buffer = bytearray()
        self._pending: dict[int, PlaintextChunk] = {}
        self._ready: deque[PlaintextChunk] = deque()
        self._next_sequence = 0
        self._fault: Optional[PipelineError] = None
        self._events: deque[DecoderEvent] = deque(maxlen=_MAX_EVENTS)
        self._delivered = 0
        self._dropped = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def next_sequence(self) -> int:
        """Sequence the consumer will receive next."""
        return self._next_sequence

    @property
    def pending(self) -> int:
        """Number of out-of-order chunks waiting for a gap to close."""
        return len(self._pending)

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    @property
    def fault(self) -> Optional[PipelineError]:
        return self._fault

    @property
    def events(self) -> list[DecoderEvent]:
        return list(self._events)

    @property
    def delivered(self) -> int:
        return self._delivered

    @property
    def dropped(self) -> int:
        return self._dropped

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, data: bytes = b"") -> Iterator[PlaintextChunk]:
        """Append ``data`` and lazily yield every chunk that became deliverable.

        The iterator is finite. Bytes of an incomplete frame and chunks not
        yet consumed carry over to the next call.

        Raises:
            SessionFaulted: If an earlier call hit a fatal error.
            AuthenticationFailure, MalformedFrame, ReorderBufferOverflow,
            CryptoFailure: While iterating; the decoder is then faulted.
        """
        if self._fault is not None:
            raise SessionFaulted(self._fault)
        if data:
            with self._lock:
                self._buffer += data
        return self._drain()

    def discard(self) -> None:
        """Drop every buffered byte and undelivered chunk."""
        with self._lock:
            self._buffer.clear()
            self._pending.clear()
            self._ready.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _drain(self) -> Iterator[PlaintextChunk]:
        while True:
            with self._lock:
                if not self._ready:
                    self._advance()
                if not self._ready:
                    return
                chunk = self._ready.popleft()
                self._delivered += 1
            yield chunk

    def _advance(self) -> None:
        """Process buffered frames until a chunk is ready or bytes run out."""
        while not self._ready:
            if self._fault is not None:
                raise SessionFaulted(self._fault)
            try:
                frame, consumed = self._codec.decode(self._buffer)
            except IncompleteFrame:
                return
            except PipelineError as err:
                self._set_fault(err)
                raise
            del self._buffer[:consumed]
            try:
                self._process(frame)
            except ReplayDetected as err:
                self._record_drop(err)
            except PipelineError as err:
                if not err.fatal:
                    raise
                self._set_fault(err)
                raise

    def _process(self, frame: Frame) -> None:
        epoch, sequence = frame.epoch, frame.sequence
        keys = self._keyring.validate_receive_nonce(epoch, sequence)
        if sequence < self._next_sequence or sequence in self._pending:
            raise ReplayDetected(epoch, sequence, "already delivered")
        if self._codec.mac_size:
            verify_mac(keys.mac_key, self._codec.authenticated_bytes(frame), frame.mac)
        plaintext = self._engine.open(
            keys.decrypt_key,
            build_nonce(epoch, sequence),
            associated_data(epoch, sequence),
            frame.sealed,
        )
        if sequence - self._next_sequence >= self._reorder_window:
            raise ReorderBufferOverflow(
                f"sequence {sequence} is {sequence - self._next_sequence} ahead "
                f"of expected {self._next_sequence} "
                f"(reorder window {self._reorder_window})"
            )
        self._keyring.mark_received(epoch, sequence)
        chunk = PlaintextChunk(sequence=sequence, payload=plaintext)
        if sequence != self._next_sequence:
            self._pending[sequence] = chunk
            logger.debug(
                "Buffered out-of-order frame sequence=%d (expected %d)",
                sequence, self._next_sequence,
            )
            return
        self._ready.append(chunk)
        self._next_sequence += 1
        while self._next_sequence in self._pending:
            self._ready.append(self._pending.pop(self._next_sequence))
            self._next_sequence += 1

    def _record_drop(self, err: ReplayDetected) -> None:
        self._dropped += 1
        event = DecoderEvent(
            kind="replay",
            epoch=err.epoch,
            sequence=err.sequence,
            reason=err.reason,
        )
        self._events.append(event)
        logger.warning(
            "Dropped frame epoch=%d sequence=%d: %s",
            err.epoch, err.sequence, err.reason,
        )
        if self._on_event is not None:
            self._on_event(event)

    def _set_fault(self, err: PipelineError) -> None:
        self._fault = err
        self._pending.clear()
        self._ready.clear()
        self._buffer.clear()
        logger.error("Decoder faulted: %s: %s", err.__class__.__name__, err)
