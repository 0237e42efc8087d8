"""
Encoder: plaintext chunks in, sealed frames out.

Every payload is sealed under the nonce reserved from the KeyRing, with the
frame header (epoch, sequence) as associated data, so a frame cannot be
re-labelled without failing authentication.
"""
import logging
import threading
from typing import Union

from ..conf import MAX_CHUNK_SIZE, TAG_SIZE
from ..data import Frame, PlaintextChunk
from ..exceptions import CryptoFailure
from .crypto import AeadEngine, associated_data, build_nonce, compute_mac
from .framing import FrameCodec
from .keyring import KeyRing

logger = logging.getLogger("pipeline.transport")


class Encoder:
    """Sender half of the codec.

    Sequences are assigned in submission order; one ``submit`` runs at a time.
    """

    def __init__(
        self,
        keyring: KeyRing,
        engine: AeadEngine,
        codec: FrameCodec,
        max_chunk_size: int = MAX_CHUNK_SIZE,
    ):
        self._keyring = keyring
        self._engine = engine
        self._codec = codec
        self._max_chunk_size = max_chunk_size
        self._lock = threading.Lock()
        self._submitted = 0
        self._bytes_in = 0

    @property
    def submitted(self) -> int:
        return self._submitted

    @property
    def bytes_in(self) -> int:
        return self._bytes_in

    def submit(self, chunk: Union[bytes, bytearray, memoryview, PlaintextChunk]) -> Frame:
        """Seal one payload into a Frame.

        A PlaintextChunk's own ``sequence`` is ignored; the Encoder assigns
        the next stream sequence.

        Raises:
            ValueError: If the payload exceeds ``max_chunk_size``.
            NonceExhaustion: If the current epoch is out of nonces.
            SessionClosed: If the KeyRing is closed.
            CryptoFailure: On a primitive failure.
        """
        payload = chunk.payload if isinstance(chunk, PlaintextChunk) else bytes(chunk)
        if len(payload) > self._max_chunk_size:
            raise ValueError(
                f"Chunk too large: {len(payload)} bytes "
                f"(maximum {self._max_chunk_size})"
            )
        with self._lock:
            reservation = self._keyring.acquire_send_nonce()
            epoch, sequence = reservation.epoch, reservation.sequence
            sealed = self._engine.seal(
                reservation.encrypt_key,
                build_nonce(epoch, sequence),
                associated_data(epoch, sequence),
                payload,
            )
            if len(sealed) != len(payload) + TAG_SIZE:
                raise CryptoFailure("AEAD primitive returned an unexpected ciphertext length")
            ciphertext, tag = sealed[:len(payload)], sealed[len(payload):]
            frame = Frame(epoch=epoch, sequence=sequence, ciphertext=ciphertext, tag=tag)
            if self._codec.mac_size:
                mac = compute_mac(
                    reservation.mac_key, self._codec.authenticated_bytes(frame),
                )
                frame = Frame(
                    epoch=epoch, sequence=sequence,
                    ciphertext=ciphertext, tag=tag, mac=mac,
                )
            self._submitted += 1
            self._bytes_in += len(payload)
        logger.debug(
            "Sealed frame epoch=%d sequence=%d size=%d", epoch, sequence, len(payload),
        )
        return frame

    def encode(self, chunk: Union[bytes, bytearray, memoryview, PlaintextChunk]) -> bytes:
        """Seal one payload and return its wire bytes."""
        return self._codec.encode(self.submit(chunk))
