"""
Error taxonomy for Secure Pipeline.

Errors carry a ``fatal`` flag: recoverable errors are absorbed per frame,
fatal errors move the owning session to ``FAULTED``.
"""
from typing import Optional


class PipelineError(Exception):
    """Base exception for Secure Pipeline operations."""
    fatal: bool = False


# --- Recoverable, per frame ---

class IncompleteFrame(PipelineError):
    """Raised when the buffer does not yet hold a complete frame."""

    def __init__(self, needed: int):
        super().__init__(f"Incomplete frame: {needed} more byte(s) required")
        self.needed = needed


class ReplayDetected(PipelineError):
    """Raised when a frame was already accepted or belongs to a stale epoch."""

    def __init__(self, epoch: int, sequence: int, reason: str = "replay"):
        super().__init__(
            f"Frame rejected (epoch={epoch}, sequence={sequence}): {reason}"
        )
        self.epoch = epoch
        self.sequence = sequence
        self.reason = reason


# --- Fatal to the session ---

class CryptoFailure(PipelineError):
    """Raised on an internal failure of the crypto primitive."""
    fatal = True


class AuthenticationFailure(PipelineError):
    """Raised when a frame does not authenticate (tampering)."""
    fatal = True


class MalformedFrame(PipelineError):
    """Raised when the byte stream is desynchronized beyond recovery."""
    fatal = True


class ReorderBufferOverflow(PipelineError):
    """Raised when a sequence gap cannot be resolved inside the reorder window."""
    fatal = True


class NonceExhaustion(PipelineError):
    """Raised when no nonce is left for the current epoch; keys must rotate."""
    fatal = True


class ChannelFailure(PipelineError):
    """Raised when the underlying byte channel fails to carry a frame."""
    fatal = True


# --- Usage errors ---

class SessionClosed(PipelineError):
    """Raised when operating on a closed session or key ring."""


class SessionFaulted(PipelineError):
    """Raised when operating on a faulted session.

    The original fatal error is available as ``reason``.
    """

    def __init__(self, reason: Optional[BaseException] = None):
        msg = "Session is faulted"
        if reason is not None:
            msg = f"{msg}: {reason.__class__.__name__}: {reason}"
        super().__init__(msg)
        self.reason = reason
