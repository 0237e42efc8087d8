"""
Transport Crypto Core: AEAD sealing, key derivation and outer MAC.

- AEAD: ChaCha20-Poly1305 (default) or AES-256-GCM, 96-bit nonce,
  16-byte tag appended to the ciphertext.
- Nonce: [epoch 4B u32 BE][sequence 8B u64 BE], never random, so the
  receiver recomputes it from the frame header.
- Outer MAC: HMAC-SHA256 over the encoded frame (encrypt-then-MAC).

Security Note:
    Never log plaintext, ciphertext or key values.
    A (key, nonce) pair must never be sealed twice; the KeyRing owns that
    invariant, this module is stateless.
"""
import struct

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from ..conf import KEY_LENGTH, NONCE_SIZE, TAG_SIZE, MAC_SIZE
from ..exceptions import AuthenticationFailure, CryptoFailure


_NONCE_STRUCT = struct.Struct("!IQ")

CIPHER_BACKENDS: dict[str, type] = {
    "chacha20": ChaCha20Poly1305,
    "aesgcm": AESGCM,
}


# ---------------------------------------------------------------------------
# Nonce and associated data
# ---------------------------------------------------------------------------

def build_nonce(epoch: int, sequence: int) -> bytes:
    """Build the 12-byte nonce for a frame header."""
    return _NONCE_STRUCT.pack(epoch, sequence)


def associated_data(epoch: int, sequence: int) -> bytes:
    """Bind the frame header (epoch, sequence) to its ciphertext."""
    return b"pipeline/v1" + _NONCE_STRUCT.pack(epoch, sequence)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte key using HKDF-SHA256.

    Args:
        seed: Input key material (a pre-shared secret).
        context: Context string for domain separation (e.g. "pipeline-c2s-e0").

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=context.encode("utf-8"),
    )
    return hkdf.derive(bytes(seed))


# ---------------------------------------------------------------------------
# Zeroization
# ---------------------------------------------------------------------------

def zeroize(buffer: bytearray) -> None:
    """Overwrite a mutable key buffer in place.

    Best effort: immutable ``bytes`` copies handed to the primitive
    cannot be wiped from Python.
    """
    for i in range(len(buffer)):
        buffer[i] = 0


# ---------------------------------------------------------------------------
# Outer MAC (encrypt-then-MAC)
# ---------------------------------------------------------------------------

def compute_mac(mac_key: bytes, data: bytes) -> bytes:
    """Return the 32-byte HMAC-SHA256 of ``data``."""
    h = hmac.HMAC(bytes(mac_key), hashes.SHA256())
    h.update(data)
    return h.finalize()


def verify_mac(mac_key: bytes, data: bytes, mac: bytes) -> None:
    """Verify an outer MAC in constant time.

    Raises:
        AuthenticationFailure: If the MAC does not match.
    """
    if len(mac) != MAC_SIZE:
        raise AuthenticationFailure(
            f"outer MAC must be {MAC_SIZE} bytes, got {len(mac)}"
        )
    h = hmac.HMAC(bytes(mac_key), hashes.SHA256())
    h.update(data)
    try:
        h.verify(mac)
    except InvalidSignature:
        raise AuthenticationFailure(
            "Outer MAC verification failed"
        ) from None


# ---------------------------------------------------------------------------
# AEAD engine
# ---------------------------------------------------------------------------

class AeadEngine:
    """Stateless seal/open over a 256-bit AEAD primitive.

    Both operations take every input explicitly; the engine only remembers
    which cipher backend to use.
    """

    __slots__ = ("_backend", "_cipher_cls")

    def __init__(self, backend: str = "chacha20"):
        try:
            self._cipher_cls = CIPHER_BACKENDS[backend]
        except KeyError:
            raise ValueError(f"Unsupported cipher backend: {backend}") from None
        self._backend = backend

    @property
    def backend(self) -> str:
        return self._backend

    def _cipher(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise CryptoFailure(
                f"key must be exactly {KEY_LENGTH} bytes, got {len(key)}"
            )
        return self._cipher_cls(bytes(key))

    def seal(
        self,
        key: bytes,
        nonce: bytes,
        associated_data: bytes,
        plaintext: bytes,
    ) -> bytes:
        """Encrypt and authenticate ``plaintext``.

        Returns:
            ciphertext||tag (len(plaintext) + 16 bytes).

        Raises:
            CryptoFailure: If the primitive rejects its inputs.
        """
        if len(nonce) != NONCE_SIZE:
            raise CryptoFailure(
                f"nonce must be exactly {NONCE_SIZE} bytes, got {len(nonce)}"
            )
        cipher = self._cipher(key)
        try:
            return cipher.encrypt(nonce, plaintext, associated_data)
        except (ValueError, TypeError, OverflowError) as err:
            raise CryptoFailure(f"seal failed: {err}") from err

    def open(
        self,
        key: bytes,
        nonce: bytes,
        associated_data: bytes,
        sealed: bytes,
    ) -> bytes:
        """Verify and decrypt ``sealed`` (ciphertext||tag).

        Raises:
            CryptoFailure: If ``sealed`` is shorter than the tag.
            AuthenticationFailure: If the tag does not verify.
        """
        if len(sealed) < TAG_SIZE:
            raise CryptoFailure(
                f"sealed data too short: {len(sealed)} bytes "
                f"(minimum {TAG_SIZE})"
            )
        if len(nonce) != NONCE_SIZE:
            raise CryptoFailure(
                f"nonce must be exactly {NONCE_SIZE} bytes, got {len(nonce)}"
            )
        cipher = self._cipher(key)
        try:
            return cipher.decrypt(nonce, sealed, associated_data)
        except InvalidTag:
            raise AuthenticationFailure(
                "Authentication tag verification failed"
            ) from None
        except (ValueError, TypeError, OverflowError) as err:
            raise CryptoFailure(f"open failed: {err}") from err
