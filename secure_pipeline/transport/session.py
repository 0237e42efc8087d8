"""
PipelineSession: Encoder and Decoder over a duplex byte channel.

Provides the public API of the transport:
- ``open(keys)``: install keys (OPENING -> ACTIVE)
- ``submit(payload)`` / ``send(payload)``: seal a chunk (and write it)
- ``feed(data)`` / ``receive()``: decode wire bytes into ordered chunks
- ``rotate(keys)``: move to the next epoch (ROTATING until grace ends)
- ``close()``: graceful, terminal shutdown

Any fatal error moves the session to FAULTED: key material is zeroized,
the error is kept as ``fault_reason`` and every later call raises
``SessionFaulted``. Calls after ``close()`` raise ``SessionClosed``.

Security Note:
    Never log plaintext, ciphertext or key values.
"""
import time
import logging
import threading
from collections.abc import Iterator
from typing import Any, Callable, Optional

import orjson

from ..conf import MAC_SIZE
from ..data import DecoderEvent, Frame, PlaintextChunk, SessionState
from ..exceptions import ChannelFailure, PipelineError, SessionClosed, SessionFaulted
from .channel import ByteChannel
from .config import PipelineConfig
from .crypto import AeadEngine
from .decoder import Decoder
from .encoder import Encoder
from .framing import FrameCodec
from .keyring import KeyRing, SessionKeys

logger = logging.getLogger("pipeline.transport")


class PipelineSession:
    """Secure point-to-point session over a byte channel.

    The send path and the receive path are serialized independently and may
    run in parallel from different threads.

    Args:
        channel: Optional duplex channel used by ``send`` and ``receive``.
        config: Pipeline settings (defaults when omitted).
        on_event: Optional callback for recoverable decoder events.
        clock: Monotonic time source for the rotation grace period.
    """

    def __init__(
        self,
        channel: Optional[ByteChannel] = None,
        config: Optional[PipelineConfig] = None,
        on_event: Optional[Callable[[DecoderEvent], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._channel = channel
        self._config = config or PipelineConfig()
        self._on_event = on_event
        self._clock = clock
        self._state = SessionState.OPENING
        self._state_lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._recv_lock = threading.Lock()
        self._fault_reason: Optional[PipelineError] = None
        self._eof = False
        self._keyring: Optional[KeyRing] = None
        self._encoder: Optional[Encoder] = None
        self._decoder: Optional[Decoder] = None
        self._engine = AeadEngine(self._config.cipher_backend)
        self._codec = FrameCodec(mac_size=MAC_SIZE if self._config.outer_mac else 0)

    @classmethod
    def start(
        cls,
        keys: SessionKeys,
        channel: Optional[ByteChannel] = None,
        config: Optional[PipelineConfig] = None,
        **kwargs: Any,
    ) -> "PipelineSession":
        """Build a session and install ``keys`` in one step."""
        session = cls(channel=channel, config=config, **kwargs)
        session.open(keys)
        return session

    def __repr__(self) -> str:
        epoch = self._keyring.snapshot()["epoch"] if self._keyring else None
        return f"<PipelineSession state={self._state.value} epoch={epoch}>"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            self._refresh_rotation()
            return self._state

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def fault_reason(self) -> Optional[PipelineError]:
        return self._fault_reason

    @property
    def eof(self) -> bool:
        """True once the channel reported end of stream."""
        return self._eof

    @property
    def keyring(self) -> Optional[KeyRing]:
        return self._keyring

    @property
    def encoder(self) -> Optional[Encoder]:
        return self._encoder

    @property
    def decoder(self) -> Optional[Decoder]:
        return self._decoder

    @property
    def codec(self) -> FrameCodec:
        return self._codec

    @property
    def needs_rotation(self) -> bool:
        """True once the current epoch sealed ``rotation_threshold`` frames."""
        threshold = self._config.rotation_threshold
        if threshold is None or self._keyring is None:
            return False
        return self._keyring.epoch_sealed >= threshold

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _ensure_usable(self) -> None:
        with self._state_lock:
            if self._state is SessionState.FAULTED:
                raise SessionFaulted(self._fault_reason)
            if self._state is SessionState.CLOSED:
                raise SessionClosed("Session is closed")
            if self._state is SessionState.OPENING:
                raise SessionClosed("Session is not open yet")

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.info(
                "Session state %s -> %s", self._state.value, state.value,
            )
            self._state = state

    def _refresh_rotation(self) -> None:
        if self._state is SessionState.ROTATING and self._keyring.expire_grace():
            self._set_state(SessionState.ACTIVE)

    def _fault(self, err: PipelineError) -> None:
        with self._state_lock:
            if self._state.terminal:
                return
            self._fault_reason = err
            self._set_state(SessionState.FAULTED)
            self._teardown()
        logger.error(
            "Session faulted: %s: %s", err.__class__.__name__, err,
        )

    def _teardown(self) -> None:
        if self._decoder is not None:
            self._decoder.discard()
        if self._keyring is not None:
            self._keyring.close()

    def _guard(self, err: PipelineError) -> None:
        if err.fatal:
            self._fault(err)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self, keys: SessionKeys) -> None:
        """Install initial keys: OPENING -> ACTIVE.

        Raises:
            SessionClosed: If the session was already opened or closed.
            SessionFaulted: If the session is faulted.
            ValueError: If ``keys`` were already zeroized.
        """
        with self._state_lock:
            if self._state is SessionState.FAULTED:
                raise SessionFaulted(self._fault_reason)
            if self._state is not SessionState.OPENING:
                raise SessionClosed(
                    f"Cannot open a session in state {self._state.value}"
                )
            cfg = self._config
            self._keyring = KeyRing(
                keys,
                replay_window=cfg.replay_window,
                grace_frames=cfg.grace_frames,
                grace_seconds=cfg.grace_seconds,
                nonce_limit=cfg.nonce_limit,
                clock=self._clock,
            )
            self._encoder = Encoder(
                self._keyring, self._engine, self._codec,
                max_chunk_size=cfg.max_chunk_size,
            )
            self._decoder = Decoder(
                self._keyring, self._engine, self._codec,
                reorder_window=cfg.reorder_window,
                on_event=self._on_event,
            )
            self._set_state(SessionState.ACTIVE)

    def rotate(self, new_keys: SessionKeys) -> None:
        """Move to the next epoch; the previous one stays valid for decryption
        until the grace period elapses.

        Raises:
            ValueError: If ``new_keys.epoch`` is not the next epoch.
        """
        self._ensure_usable()
        with self._state_lock:
            self._keyring.rotate(new_keys)
            self._set_state(SessionState.ROTATING)
            self._refresh_rotation()

    def close(self) -> None:
        """Close the session and zeroize all key material. Idempotent."""
        with self._state_lock:
            if self._state.terminal:
                return
            self._set_state(SessionState.CLOSED)
            self._teardown()

    def __enter__(self) -> "PipelineSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Send path
    # ------------------------------------------------------------------

    def submit_frame(self, payload: bytes | PlaintextChunk) -> Frame:
        """Seal one payload into a Frame without writing it."""
        self._ensure_usable()
        with self._send_lock:
            try:
                frame = self._encoder.submit(payload)
            except PipelineError as err:
                self._guard(err)
                raise
        if self.needs_rotation:
            logger.warning(
                "Epoch %d sealed %d frames, rotation recommended",
                frame.epoch, self._keyring.epoch_sealed,
            )
        return frame

    def submit(self, payload: bytes | PlaintextChunk) -> bytes:
        """Seal one payload and return its wire bytes."""
        return self._codec.encode(self.submit_frame(payload))

    def send(self, payload: bytes | PlaintextChunk) -> Frame:
        """Seal one payload and write it to the channel.

        Raises:
            RuntimeError: If the session has no channel.
            ChannelFailure: If the channel write fails; the session is faulted.
        """
        if self._channel is None:
            raise RuntimeError("Session has no channel")
        self._ensure_usable()
        with self._send_lock:
            try:
                frame = self._encoder.submit(payload)
            except PipelineError as err:
                self._guard(err)
                raise
            try:
                self._channel.write(self._codec.encode(frame))
            except OSError as err:
                failure = ChannelFailure(f"channel write failed: {err}")
                self._fault(failure)
                raise failure from err
        return frame

    def sendall(self, data: bytes) -> list[Frame]:
        """Split ``data`` into ``max_chunk_size`` chunks and send each.

        Empty ``data`` is sent as a single empty chunk.
        """
        if not data:
            return [self.send(b"")]
        size = self._config.max_chunk_size
        if size == 0:
            raise ValueError("max_chunk_size of 0 only allows empty chunks")
        return [
            self.send(data[offset:offset + size])
            for offset in range(0, len(data), size)
        ]

    # ------------------------------------------------------------------
    # Receive path
    # ------------------------------------------------------------------

    def feed(self, data: bytes = b"") -> Iterator[PlaintextChunk]:
        """Decode wire bytes; lazily yields chunks in sequence order.

        ``data`` is buffered before this returns, whether or not the iterator
        is consumed. Chunks left unread are yielded by the next call.
        Fatal errors fault the session and are re-raised to the caller.
        """
        self._ensure_usable()
        with self._recv_lock:
            return self._guarded(self._decoder.feed(data))

    def _guarded(self, chunks: Iterator[PlaintextChunk]) -> Iterator[PlaintextChunk]:
        while True:
            with self._recv_lock:
                try:
                    chunk = next(chunks, None)
                except PipelineError as err:
                    self._guard(err)
                    raise
                finally:
                    with self._state_lock:
                        if not self._state.terminal:
                            self._refresh_rotation()
            if chunk is None:
                return
            yield chunk

    def receive(self, max_bytes: Optional[int] = None) -> list[PlaintextChunk]:
        """Read once from the channel and return every deliverable chunk.

        An empty read marks ``eof`` when the channel reports end of stream.
        """
        if self._channel is None:
            raise RuntimeError("Session has no channel")
        self._ensure_usable()
        with self._recv_lock:
            data = self._channel.read(max_bytes or self._config.read_size)
            if not data:
                self._eof = bool(getattr(self._channel, "eof", True))
            chunks = self._guarded(self._decoder.feed(data))
        return list(chunks)

    def receive_all(self) -> list[PlaintextChunk]:
        """Read until the channel has nothing more to deliver."""
        chunks: list[PlaintextChunk] = []
        while True:
            batch = self.receive()
            chunks.extend(batch)
            if not batch and (self._eof or not getattr(self._channel, "queued", 0)):
                return chunks

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Snapshot of the session, without key material."""
        state = self.state
        fault = self._fault_reason
        info: dict[str, Any] = {
            "state": state.value,
            "cipher_backend": self._engine.backend,
            "outer_mac": bool(self._codec.mac_size),
            "eof": self._eof,
            "fault": (
                {"type": fault.__class__.__name__, "message": str(fault)}
                if fault is not None else None
            ),
        }
        if self._keyring is not None:
            info["keyring"] = self._keyring.snapshot()
        if self._encoder is not None:
            info["sent"] = {
                "frames": self._encoder.submitted,
                "bytes": self._encoder.bytes_in,
            }
        if self._decoder is not None:
            info["received"] = {
                "delivered": self._decoder.delivered,
                "dropped": self._decoder.dropped,
                "pending": self._decoder.pending,
                "next_sequence": self._decoder.next_sequence,
                "events": [e.to_dict() for e in self._decoder.events],
            }
        return info

    def status_json(self) -> bytes:
        """``status()`` serialized with orjson."""
        return orjson.dumps(self.status())
