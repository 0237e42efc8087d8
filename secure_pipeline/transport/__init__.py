"""Secure Transport: framed, authenticated byte streams.

Security Note (Threat Model):
    Key material is held in process memory for the lifetime of a session
    and wiped on close, fault and rotation retirement. Copies handed to the
    AEAD primitive are immutable ``bytes`` and cannot be wiped; a memory
    dump taken while a session is active can expose them. This is an
    accepted limitation.
"""

from .channel import ByteChannel, MemoryChannel
from .config import PipelineConfig, derive_session_keys, generate_key, load_session_keys
from .crypto import AeadEngine
from .decoder import Decoder
from .encoder import Encoder
from .framing import FrameCodec
from .keyring import KeyRing, NonceState, ReplayWindow, SessionKeys
from .session import PipelineSession
from .simulator import PipelineSimulator, simulate

__all__ = [
    "AeadEngine",
    "ByteChannel",
    "Decoder",
    "Encoder",
    "FrameCodec",
    "KeyRing",
    "MemoryChannel",
    "NonceState",
    "PipelineConfig",
    "PipelineSession",
    "PipelineSimulator",
    "ReplayWindow",
    "SessionKeys",
    "derive_session_keys",
    "generate_key",
    "load_session_keys",
    "simulate",
]
