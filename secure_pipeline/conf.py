"""Wire constants and defaults for Secure Pipeline."""

# Frame header: epoch (u32) | sequence (u64) | ciphertext_len (u32), big-endian
HEADER_FORMAT = "!IQI"
HEADER_SIZE = 16

KEY_LENGTH = 32  # 256-bit keys
NONCE_SIZE = 12  # 96-bit nonce: epoch (4B) | sequence (8B)
TAG_SIZE = 16  # Poly1305 / GCM tag
MAC_SIZE = 32  # HMAC-SHA256 outer tag

MAX_CIPHERTEXT_LEN = 1024 * 1024  # ciphertext||tag, 1 MiB
MAX_CHUNK_SIZE = MAX_CIPHERTEXT_LEN - TAG_SIZE

MAX_EPOCH = 2 ** 32 - 1
MAX_SEQUENCE = 2 ** 64 - 1

DEFAULT_CIPHER_BACKEND = "chacha20"
DEFAULT_REPLAY_WINDOW = 1024
DEFAULT_REORDER_WINDOW = 64
DEFAULT_GRACE_FRAMES = 256
DEFAULT_GRACE_SECONDS = 30.0
DEFAULT_READ_SIZE = 65536

ENV_PREFIX = "PIPELINE_"
