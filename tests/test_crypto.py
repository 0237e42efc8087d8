"""
Tests for the transport crypto layer.

Tests cover:
- AEAD seal/open on both backends
- Authentication and malformed-input failures
- Nonce and associated-data layout
- HKDF derivation, outer MAC and zeroization
"""
import os
import struct

import pytest

from secure_pipeline.exceptions import AuthenticationFailure, CryptoFailure
from secure_pipeline.transport.crypto import (
    AeadEngine,
    associated_data,
    build_nonce,
    compute_mac,
    derive_key,
    verify_mac,
    zeroize,
)


@pytest.fixture(params=["chacha20", "aesgcm"])
def engine(request):
    """AEAD engine for each supported backend."""
    return AeadEngine(request.param)


@pytest.fixture
def key():
    return os.urandom(32)


class TestAeadEngine:
    """Tests for AeadEngine seal/open."""

    def test_seal_open_roundtrip(self, engine, key):
        """Test that open reverses seal."""
        nonce = build_nonce(0, 7)
        ad = associated_data(0, 7)
        sealed = engine.seal(key, nonce, ad, b"Hello, World!")
        assert len(sealed) == len(b"Hello, World!") + 16
        assert engine.open(key, nonce, ad, sealed) == b"Hello, World!"

    def test_seal_empty_plaintext(self, engine, key):
        """Test sealing zero bytes yields a bare tag."""
        nonce = build_nonce(1, 0)
        sealed = engine.seal(key, nonce, b"", b"")
        assert len(sealed) == 16
        assert engine.open(key, nonce, b"", sealed) == b""

    def test_seal_is_deterministic(self, engine, key):
        """Test same inputs produce the same ciphertext."""
        nonce = build_nonce(0, 1)
        first = engine.seal(key, nonce, b"ad", b"payload")
        second = engine.seal(key, nonce, b"ad", b"payload")
        assert first == second

    def test_open_wrong_associated_data(self, engine, key):
        """Test that a different header fails authentication."""
        nonce = build_nonce(0, 1)
        sealed = engine.seal(key, nonce, associated_data(0, 1), b"payload")
        with pytest.raises(AuthenticationFailure):
            engine.open(key, nonce, associated_data(0, 2), sealed)

    def test_open_wrong_key(self, engine, key):
        """Test that another key fails authentication."""
        nonce = build_nonce(0, 1)
        sealed = engine.seal(key, nonce, b"", b"payload")
        with pytest.raises(AuthenticationFailure):
            engine.open(os.urandom(32), nonce, b"", sealed)

    def test_open_tampered_tag(self, engine, key):
        """Test that a flipped tag bit fails authentication."""
        nonce = build_nonce(0, 1)
        sealed = bytearray(engine.seal(key, nonce, b"", b"payload"))
        sealed[-1] ^= 0x01
        with pytest.raises(AuthenticationFailure):
            engine.open(key, nonce, b"", bytes(sealed))

    def test_open_too_short(self, engine, key):
        """Test that data shorter than a tag is a CryptoFailure."""
        with pytest.raises(CryptoFailure):
            engine.open(key, build_nonce(0, 0), b"", b"\x00" * 15)

    def test_bad_key_length(self, engine):
        """Test that a short key is a CryptoFailure."""
        with pytest.raises(CryptoFailure):
            engine.seal(b"\x00" * 16, build_nonce(0, 0), b"", b"data")

    def test_bad_nonce_length(self, engine, key):
        """Test that a short nonce is a CryptoFailure."""
        with pytest.raises(CryptoFailure):
            engine.seal(key, b"\x00" * 8, b"", b"data")

    def test_unsupported_backend(self):
        """Test unknown backends are rejected."""
        with pytest.raises(ValueError):
            AeadEngine("rot13")

    def test_backend_property(self, engine):
        """Test backend name is exposed."""
        assert engine.backend in ("chacha20", "aesgcm")


class TestNonce:
    """Tests for nonce and associated data layout."""

    def test_nonce_layout(self):
        """Test nonce is epoch u32 BE followed by sequence u64 BE."""
        nonce = build_nonce(3, 258)
        assert len(nonce) == 12
        assert nonce == struct.pack(">IQ", 3, 258)

    def test_nonces_differ_per_header(self):
        """Test distinct headers give distinct nonces."""
        assert build_nonce(0, 1) != build_nonce(1, 0)

    def test_associated_data_binds_header(self):
        """Test associated data changes with epoch and sequence."""
        assert associated_data(0, 0) != associated_data(0, 1)
        assert associated_data(0, 0) != associated_data(1, 0)


class TestKeyDerivation:
    """Tests for HKDF key derivation."""

    def test_derive_key_length(self):
        """Test derived keys are 32 bytes."""
        assert len(derive_key(b"s" * 32, "ctx")) == 32

    def test_derive_key_deterministic(self):
        """Test derivation is repeatable."""
        assert derive_key(b"s" * 32, "ctx") == derive_key(b"s" * 32, "ctx")

    def test_derive_key_context_separation(self):
        """Test different contexts give different keys."""
        assert derive_key(b"s" * 32, "a") != derive_key(b"s" * 32, "b")


class TestOuterMac:
    """Tests for HMAC-SHA256 outer authentication."""

    def test_mac_roundtrip(self, key):
        """Test a computed MAC verifies."""
        mac = compute_mac(key, b"frame bytes")
        assert len(mac) == 32
        verify_mac(key, b"frame bytes", mac)

    def test_mac_mismatch(self, key):
        """Test altered data fails verification."""
        mac = compute_mac(key, b"frame bytes")
        with pytest.raises(AuthenticationFailure):
            verify_mac(key, b"frame bytez", mac)

    def test_mac_wrong_size(self, key):
        """Test truncated MAC fails verification."""
        with pytest.raises(AuthenticationFailure):
            verify_mac(key, b"frame bytes", b"\x00" * 16)


class TestZeroize:
    """Tests for in-place key wiping."""

    def test_zeroize_bytearray(self):
        """Test every byte is overwritten."""
        buf = bytearray(os.urandom(32))
        zeroize(buf)
        assert buf == bytearray(32)

    def test_zeroize_empty(self):
        """Test empty buffers are accepted."""
        buf = bytearray()
        zeroize(buf)
        assert buf == bytearray()
