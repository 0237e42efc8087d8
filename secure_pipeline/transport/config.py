"""
Pipeline Configuration: Validated settings and session key loading.

Reads session keys from environment variables:
    PIPELINE_ENCRYPT_KEY = <base64-encoded 32-byte key>
    PIPELINE_DECRYPT_KEY = <base64-encoded 32-byte key>
    PIPELINE_MAC_KEY     = <base64-encoded 32-byte key>
    PIPELINE_KEY_EPOCH   = <integer, optional, default 0>

Security Note:
    Never log key material. Only log epochs and variable names.
"""
import os
import base64
import secrets
import logging
import binascii
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..conf import (
    DEFAULT_CIPHER_BACKEND,
    DEFAULT_GRACE_FRAMES,
    DEFAULT_GRACE_SECONDS,
    DEFAULT_READ_SIZE,
    DEFAULT_REORDER_WINDOW,
    DEFAULT_REPLAY_WINDOW,
    ENV_PREFIX,
    KEY_LENGTH,
    MAX_CHUNK_SIZE,
    MAX_SEQUENCE,
)
from .crypto import CIPHER_BACKENDS, derive_key
from .keyring import SessionKeys

logger = logging.getLogger("pipeline.transport")


def _decode_key(name: str, value: str) -> bytes:
    try:
        key_bytes = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise ValueError(f"{name} is not valid base64") from err
    if len(key_bytes) != KEY_LENGTH:
        raise ValueError(
            f"{name} must decode to exactly {KEY_LENGTH} bytes, "
            f"got {len(key_bytes)}"
        )
    return key_bytes


def load_session_keys(prefix: str = ENV_PREFIX) -> SessionKeys:
    """Load session keys from ``{prefix}*_KEY`` environment variables.

    Returns:
        SessionKeys for the configured epoch.

    Raises:
        RuntimeError: If a required key variable is not set.
        ValueError: If a key does not decode to exactly 32 bytes.
    """
    keys: dict[str, bytes] = {}
    for field in ("ENCRYPT", "DECRYPT", "MAC"):
        name = f"{prefix}{field}_KEY"
        value = os.environ.get(name)
        if value is None:
            raise RuntimeError(
                f"{name} environment variable is not set. "
                f"Set {name}=<base64-encoded-32-byte-key>"
            )
        keys[field] = _decode_key(name, value)
    epoch = int(os.environ.get(f"{prefix}KEY_EPOCH", "0"))
    logger.debug("Loaded session keys for epoch %d from environment", epoch)
    return SessionKeys(
        encrypt_key=keys["ENCRYPT"],
        decrypt_key=keys["DECRYPT"],
        mac_key=keys["MAC"],
        epoch=epoch,
    )


def generate_key() -> str:
    """Generate a random 32-byte key and return it as a base64 string.

    This is a utility for operators provisioning ``PIPELINE_*_KEY`` values.
    """
    return base64.b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


def derive_session_keys(secret: bytes, epoch: int = 0, initiator: bool = True) -> SessionKeys:
    """Derive directional session keys from a pre-shared secret.

    Both ends call this with the same secret and epoch and opposite
    ``initiator`` flags; their encrypt and decrypt keys then mirror.

    Args:
        secret: Pre-shared secret, at least 32 bytes.
        epoch: Key generation to derive.
        initiator: Which end of the session this is.
    """
    if len(secret) < KEY_LENGTH:
        raise ValueError(f"secret must be at least {KEY_LENGTH} bytes")
    forward = derive_key(secret, f"pipeline-i2r-e{epoch}")
    backward = derive_key(secret, f"pipeline-r2i-e{epoch}")
    mac_key = derive_key(secret, f"pipeline-mac-e{epoch}")
    if initiator:
        return SessionKeys(forward, backward, mac_key, epoch)
    return SessionKeys(backward, forward, mac_key, epoch)


class PipelineConfig(BaseModel):
    """Validated pipeline configuration."""

    cipher_backend: str = Field(default=DEFAULT_CIPHER_BACKEND)
    max_chunk_size: int = Field(default=MAX_CHUNK_SIZE, ge=0, le=MAX_CHUNK_SIZE)
    replay_window: int = Field(default=DEFAULT_REPLAY_WINDOW, ge=1, le=65536)
    reorder_window: int = Field(default=DEFAULT_REORDER_WINDOW, ge=1, le=65536)
    grace_frames: Optional[int] = Field(default=DEFAULT_GRACE_FRAMES, ge=0)
    grace_seconds: Optional[float] = Field(default=DEFAULT_GRACE_SECONDS, ge=0)
    nonce_limit: int = Field(default=MAX_SEQUENCE, ge=1, le=MAX_SEQUENCE)
    rotation_threshold: Optional[int] = Field(default=None, ge=1)
    outer_mac: bool = Field(default=False)
    read_size: int = Field(default=DEFAULT_READ_SIZE, ge=1)

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in CIPHER_BACKENDS:
            raise ValueError(f"Unsupported cipher backend: {v}")
        return v

    @model_validator(mode="after")
    def validate_windows(self) -> "PipelineConfig":
        """Reorder window must fit inside the replay window."""
        if self.reorder_window > self.replay_window:
            raise ValueError(
                f"reorder_window ({self.reorder_window}) cannot exceed "
                f"replay_window ({self.replay_window})"
            )
        if (
            self.rotation_threshold is not None
            and self.rotation_threshold > self.nonce_limit
        ):
            raise ValueError(
                "rotation_threshold cannot exceed nonce_limit"
            )
        return self

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "PipelineConfig":
        """Create PipelineConfig from ``{prefix}*`` environment variables.

        Unset variables keep their defaults. ``none`` disables an optional
        grace bound.
        """
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = os.environ.get(f"{prefix}{name.upper()}")
            if raw is None:
                continue
            if raw.strip().lower() == "none":
                values[name] = None
            else:
                values[name] = raw
        return cls(**values)
