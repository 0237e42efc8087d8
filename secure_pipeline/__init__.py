"""Secure Pipeline.

Streaming authenticated transport: frames, encrypts, authenticates and
reassembles byte streams over unreliable point-to-point channels.
"""
from .version import __version__
from .data import DecoderEvent, Frame, PlaintextChunk, SessionState
from .exceptions import (
    AuthenticationFailure,
    ChannelFailure,
    CryptoFailure,
    IncompleteFrame,
    MalformedFrame,
    NonceExhaustion,
    PipelineError,
    ReorderBufferOverflow,
    ReplayDetected,
    SessionClosed,
    SessionFaulted,
)
from .transport import (
    AeadEngine,
    Decoder,
    Encoder,
    FrameCodec,
    KeyRing,
    MemoryChannel,
    PipelineConfig,
    PipelineSession,
    SessionKeys,
    derive_session_keys,
    generate_key,
    load_session_keys,
    simulate,
)

__all__ = [
    "__version__",
    "AeadEngine",
    "AuthenticationFailure",
    "ChannelFailure",
    "CryptoFailure",
    "DecoderEvent",
    "Decoder",
    "Encoder",
    "Frame",
    "FrameCodec",
    "IncompleteFrame",
    "KeyRing",
    "MalformedFrame",
    "MemoryChannel",
    "NonceExhaustion",
    "PipelineConfig",
    "PipelineError",
    "PipelineSession",
    "PlaintextChunk",
    "ReorderBufferOverflow",
    "ReplayDetected",
    "SessionClosed",
    "SessionFaulted",
    "SessionKeys",
    "SessionState",
    "derive_session_keys",
    "generate_key",
    "load_session_keys",
    "simulate",
]
