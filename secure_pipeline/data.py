"""Value types exchanged between the pipeline components.

Frames and chunks are immutable; they are produced, consumed and discarded.
"""
import time
from enum import Enum
from typing import Any
from dataclasses import dataclass, field

from .conf import MAX_EPOCH, MAX_SEQUENCE, TAG_SIZE


class SessionState(str, Enum):
    """Lifecycle of a PipelineSession."""
    OPENING = 'opening'
    ACTIVE = 'active'
    ROTATING = 'rotating'
    CLOSED = 'closed'
    FAULTED = 'faulted'

    @property
    def terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.FAULTED)


def _check_header(epoch: int, sequence: int) -> None:
    if not 0 <= epoch <= MAX_EPOCH:
        raise ValueError(f"epoch out of range: {epoch}")
    if not 0 <= sequence <= MAX_SEQUENCE:
        raise ValueError(f"sequence out of range: {sequence}")


@dataclass(frozen=True, slots=True)
class Frame:
    """Encrypted unit on the wire.

    Attributes:
        epoch: Key generation the frame was sealed under.
        sequence: Stream position, shared across epochs.
        ciphertext: Encrypted payload without the tag.
        tag: 16-byte AEAD authenticator.
        mac: Optional outer HMAC over header, ciphertext and tag.
    """

    epoch: int
    sequence: int
    ciphertext: bytes
    tag: bytes
    mac: bytes = b''

    def __post_init__(self) -> None:
        _check_header(self.epoch, self.sequence)
        if len(self.tag) != TAG_SIZE:
            raise ValueError(
                f"tag must be exactly {TAG_SIZE} bytes, got {len(self.tag)}"
            )

    @property
    def sealed(self) -> bytes:
        """ciphertext||tag, as produced by the AEAD primitive."""
        return self.ciphertext + self.tag

    def __repr__(self) -> str:
        return (
            f'<Frame epoch={self.epoch} sequence={self.sequence} '
            f'ciphertext_len={len(self.ciphertext)} mac={bool(self.mac)}>'
        )


@dataclass(frozen=True, slots=True)
class PlaintextChunk:
    """Decrypted payload; ordering is defined by ``sequence``."""

    sequence: int
    payload: bytes

    def __post_init__(self) -> None:
        if not 0 <= self.sequence <= MAX_SEQUENCE:
            raise ValueError(f"sequence out of range: {self.sequence}")

    def __len__(self) -> int:
        return len(self.payload)


@dataclass(frozen=True, slots=True)
class DecoderEvent:
    """Recoverable per-frame event, surfaced for observability only."""

    kind: str
    epoch: int
    sequence: int
    reason: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            'kind': self.kind,
            'epoch': self.epoch,
            'sequence': self.sequence,
            'reason': self.reason,
            'timestamp': self.timestamp,
        }
