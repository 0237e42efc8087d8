"""
Key Ring: Session keys, nonce counters, anti-replay and key lifecycle.

Lifecycle:
    install (epoch N) -> rotate (epoch N+1, N kept for a grace period)
    -> retire N (zeroized) -> ... -> close (everything zeroized)

At most two epochs are live at once. Send and receive nonce state are kept
apart so both directions can progress in parallel; a single lock guards the
shared epoch and rotation fields.

Security Note:
    Never log key material. Only log epochs, sequences and counters.
"""
import time
import secrets
import logging
import threading
from typing import Callable, NamedTuple, Optional
from dataclasses import dataclass

from ..conf import KEY_LENGTH, MAX_EPOCH, MAX_SEQUENCE
from ..exceptions import (
    AuthenticationFailure,
    NonceExhaustion,
    ReplayDetected,
    SessionClosed,
)
from .crypto import zeroize

logger = logging.getLogger("pipeline.transport")


class SessionKeys:
    """Key material for one epoch.

    Keys are copied into ``bytearray`` buffers so they can be wiped with
    :meth:`zeroize`. Ownership passes to the KeyRing that installs them.
    """

    __slots__ = ("encrypt_key", "decrypt_key", "mac_key", "epoch", "_zeroized")

    def __init__(
        self,
        encrypt_key: bytes,
        decrypt_key: bytes,
        mac_key: bytes,
        epoch: int = 0,
    ):
        for name, value in (
            ("encrypt_key", encrypt_key),
            ("decrypt_key", decrypt_key),
            ("mac_key", mac_key),
        ):
            if len(value) != KEY_LENGTH:
                raise ValueError(
                    f"{name} must be exactly {KEY_LENGTH} bytes, got {len(value)}"
                )
        if not 0 <= epoch <= MAX_EPOCH:
            raise ValueError(f"epoch out of range: {epoch}")
        self.encrypt_key = bytearray(encrypt_key)
        self.decrypt_key = bytearray(decrypt_key)
        self.mac_key = bytearray(mac_key)
        self.epoch = epoch
        self._zeroized = False

    @classmethod
    def generate(cls, epoch: int = 0) -> "SessionKeys":
        """Create fresh random keys for one side of a session.

        Use :meth:`mirrored` to obtain the matching keys for the peer.
        """
        return cls(
            encrypt_key=secrets.token_bytes(KEY_LENGTH),
            decrypt_key=secrets.token_bytes(KEY_LENGTH),
            mac_key=secrets.token_bytes(KEY_LENGTH),
            epoch=epoch,
        )

    def mirrored(self) -> "SessionKeys":
        """Return a copy for the peer: encrypt and decrypt keys swapped."""
        if self._zeroized:
            raise ValueError("Cannot mirror zeroized keys")
        return SessionKeys(
            encrypt_key=bytes(self.decrypt_key),
            decrypt_key=bytes(self.encrypt_key),
            mac_key=bytes(self.mac_key),
            epoch=self.epoch,
        )

    @property
    def zeroized(self) -> bool:
        return self._zeroized

    def zeroize(self) -> None:
        """Wipe all key buffers. Idempotent."""
        zeroize(self.encrypt_key)
        zeroize(self.decrypt_key)
        zeroize(self.mac_key)
        self._zeroized = True

    def __enter__(self) -> "SessionKeys":
        return self

    def __exit__(self, *exc) -> None:
        self.zeroize()

    def __repr__(self) -> str:
        return f"SessionKeys(epoch={self.epoch}, zeroized={self._zeroized})"


@dataclass
class NonceState:
    """Per-direction nonce position.

    Send side: ``counter`` is the next sequence to assign.
    Receive side: ``counter`` is the highest sequence accepted so far.
    """

    epoch: int
    counter: int = 0


class ReceiveKeys(NamedTuple):
    decrypt_key: bytes
    mac_key: bytes


class SendReservation(NamedTuple):
    epoch: int
    sequence: int
    encrypt_key: bytes
    mac_key: bytes


class ReplayWindow:
    """Sliding bitmap of recently accepted sequence numbers.

    Bit ``i`` of the bitmap records whether ``top - i`` was accepted.
    """

    __slots__ = ("size", "top", "_bitmap", "_mask")

    def __init__(self, size: int = 1024):
        if size < 1:
            raise ValueError("Replay window size must be positive")
        self.size = size
        self.top = -1
        self._bitmap = 0
        self._mask = (1 << size) - 1

    def check(self, sequence: int) -> Optional[str]:
        """Return a rejection reason, or None if ``sequence`` is acceptable."""
        if sequence > self.top:
            return None
        offset = self.top - sequence
        if offset >= self.size:
            return "outside replay window"
        if (self._bitmap >> offset) & 1:
            return "duplicate sequence"
        return None

    def accept(self, sequence: int) -> None:
        if sequence > self.top:
            shift = sequence - self.top
            if shift >= self.size:
                self._bitmap = 1
            else:
                self._bitmap = ((self._bitmap << shift) | 1) & self._mask
            self.top = sequence
        else:
            self._bitmap |= 1 << (self.top - sequence)

    def __contains__(self, sequence: int) -> bool:
        return self.check(sequence) == "duplicate sequence"


class KeyRing:
    """Holds session keys and enforces nonce and key lifecycle rules.

    Args:
        keys: Initial keys; the ring takes ownership and zeroizes them.
        replay_window: Size of the anti-replay bitmap.
        grace_frames: Frames received after a rotation before the previous
            epoch is retired (None disables the bound).
        grace_seconds: Seconds after a rotation before the previous epoch is
            retired (None disables the bound).
        nonce_limit: Maximum frames sealed under one epoch.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        keys: SessionKeys,
        replay_window: int = 1024,
        grace_frames: Optional[int] = 256,
        grace_seconds: Optional[float] = 30.0,
        nonce_limit: int = MAX_SEQUENCE,
        clock: Callable[[], float] = time.monotonic,
    ):
        if keys.zeroized:
            raise ValueError("Cannot install zeroized keys")
        self._lock = threading.RLock()
        self._clock = clock
        self._grace_frames = grace_frames
        self._grace_seconds = grace_seconds
        self._nonce_limit = nonce_limit
        self._current: Optional[SessionKeys] = keys
        self._previous: Optional[SessionKeys] = None
        self._rotated_at: float = clock()
        self._grace_received = 0
        self._epoch_sealed = 0
        self._send = NonceState(epoch=keys.epoch)
        self._recv = NonceState(epoch=keys.epoch)
        self._window = ReplayWindow(replay_window)
        self._closed = False
        logger.info("KeyRing installed keys for epoch %d", keys.epoch)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def epoch(self) -> int:
        with self._lock:
            self._ensure_open()
            return self._current.epoch

    @property
    def previous_epoch(self) -> Optional[int]:
        with self._lock:
            self._ensure_open()
            return self._previous.epoch if self._previous is not None else None

    @property
    def in_grace(self) -> bool:
        """True while a previous epoch is still live for decryption."""
        with self._lock:
            self._ensure_open()
            return self._previous is not None

    @property
    def epoch_sealed(self) -> int:
        """Frames sealed under the current epoch."""
        return self._epoch_sealed

    @property
    def send_state(self) -> NonceState:
        with self._lock:
            return NonceState(self._send.epoch, self._send.counter)

    @property
    def receive_state(self) -> NonceState:
        with self._lock:
            return NonceState(self._recv.epoch, self._recv.counter)

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosed("KeyRing is closed")

    # ------------------------------------------------------------------
    # Send direction
    # ------------------------------------------------------------------

    def acquire_send_nonce(self) -> SendReservation:
        """Reserve the next send nonce together with the keys to seal it.

        Raises:
            NonceExhaustion: If the epoch budget or the sequence space is spent.
            SessionClosed: If the ring is closed.
        """
        with self._lock:
            self._ensure_open()
            if self._epoch_sealed >= self._nonce_limit:
                raise NonceExhaustion(
                    f"Nonce budget of {self._nonce_limit} exhausted for epoch "
                    f"{self._current.epoch}; rotate keys"
                )
            sequence = self._send.counter
            if sequence > MAX_SEQUENCE:
                raise NonceExhaustion("Sequence space exhausted")
            self._send.counter = sequence + 1
            self._epoch_sealed += 1
            return SendReservation(
                epoch=self._current.epoch,
                sequence=sequence,
                encrypt_key=bytes(self._current.encrypt_key),
                mac_key=bytes(self._current.mac_key),
            )

    def next_send_nonce(self) -> tuple[int, int]:
        """Atomically assign the next (epoch, counter) pair for sending."""
        reservation = self.acquire_send_nonce()
        return reservation.epoch, reservation.sequence

    # ------------------------------------------------------------------
    # Receive direction
    # ------------------------------------------------------------------

    def validate_receive_nonce(self, epoch: int, counter: int) -> ReceiveKeys:
        """Check an incoming (epoch, counter) pair against the replay state.

        Returns:
            Keys to verify and decrypt the frame.

        Raises:
            ReplayDetected: Stale epoch, duplicate or too-old counter.
            AuthenticationFailure: No key material for a newer epoch.
            SessionClosed: If the ring is closed.
        """
        with self._lock:
            self._ensure_open()
            self._expire_grace_locked()
            if epoch == self._current.epoch:
                keys = self._current
            elif self._previous is not None and epoch == self._previous.epoch:
                keys = self._previous
            elif epoch < self._current.epoch:
                raise ReplayDetected(epoch, counter, "stale epoch")
            else:
                raise AuthenticationFailure(
                    f"No key material for epoch {epoch} "
                    f"(current epoch {self._current.epoch})"
                )
            reason = self._window.check(counter)
            if reason is not None:
                raise ReplayDetected(epoch, counter, reason)
            return ReceiveKeys(bytes(keys.decrypt_key), bytes(keys.mac_key))

    def mark_received(self, epoch: int, counter: int) -> None:
        """Record an authenticated (epoch, counter) pair as accepted."""
        with self._lock:
            self._ensure_open()
            self._window.accept(counter)
            if counter > self._recv.counter:
                self._recv.counter = counter
            if epoch > self._recv.epoch:
                self._recv.epoch = epoch
            if self._previous is not None:
                self._grace_received += 1
                self._expire_grace_locked()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def rotate(self, new_keys: SessionKeys) -> None:
        """Install keys for the next epoch.

        The current epoch stays valid for decryption during the grace period.
        A previous epoch still in grace is retired immediately.

        Raises:
            ValueError: If ``new_keys.epoch`` is not ``current + 1``.
            SessionClosed: If the ring is closed.
        """
        with self._lock:
            self._ensure_open()
            if new_keys.zeroized:
                raise ValueError("Cannot install zeroized keys")
            expected = self._current.epoch + 1
            if new_keys.epoch != expected:
                raise ValueError(
                    f"Rotation must advance to epoch {expected}, "
                    f"got {new_keys.epoch}"
                )
            if self._previous is not None:
                self._retire_locked()
            self._previous = self._current
            self._current = new_keys
            self._rotated_at = self._clock()
            self._grace_received = 0
            self._epoch_sealed = 0
            self._send.epoch = new_keys.epoch
            logger.info(
                "KeyRing rotated from epoch %d to epoch %d",
                self._previous.epoch, new_keys.epoch,
            )
            self._expire_grace_locked()

    def expire_grace(self) -> bool:
        """Retire the previous epoch if its grace period elapsed.

        Returns:
            True if no previous epoch remains live.

        Raises:
            SessionClosed: If the ring is closed.
        """
        with self._lock:
            self._ensure_open()
            self._expire_grace_locked()
            return self._previous is None

    def _grace_elapsed(self) -> bool:
        if (
            self._grace_frames is not None
            and self._grace_received >= self._grace_frames
        ):
            return True
        if (
            self._grace_seconds is not None
            and self._clock() - self._rotated_at >= self._grace_seconds
        ):
            return True
        return False

    def _expire_grace_locked(self) -> None:
        if self._previous is not None and self._grace_elapsed():
            self._retire_locked()

    def _retire_locked(self) -> None:
        epoch = self._previous.epoch
        self._previous.zeroize()
        self._previous = None
        logger.info("KeyRing retired epoch %d", epoch)

    def close(self) -> None:
        """Zeroize all key material; later operations raise SessionClosed."""
        with self._lock:
            if self._closed:
                return
            if self._previous is not None:
                self._previous.zeroize()
                self._previous = None
            if self._current is not None:
                self._current.zeroize()
            self._closed = True
            logger.info("KeyRing closed, key material zeroized")

    def snapshot(self) -> dict:
        """Counters and epochs, without key material."""
        with self._lock:
            return {
                "closed": self._closed,
                "epoch": self._current.epoch if self._current else None,
                "previous_epoch": self._previous.epoch if self._previous else None,
                "send_sequence": self._send.counter,
                "epoch_sealed": self._epoch_sealed,
                "receive_sequence": self._recv.counter,
                "grace_received": self._grace_received,
            }
