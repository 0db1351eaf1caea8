"""
Encryption and integrity helpers for backup artifacts.

Artifacts are self-describing. Everything needed to decrypt besides the
long-lived key material is stored in a fixed header in front of the
ciphertext::

    magic (4) | version (1) | kdf iterations (4, big endian) | salt (16) |
    nonce (12) | AES-256-GCM ciphertext + tag

The per-artifact key is derived from the key material and the embedded salt
with PBKDF2-HMAC-SHA256, and decryption always uses the embedded nonce.
"""

import base64
import hashlib
import os
import secrets
import struct
import zlib
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from dbvault.backup.errors import EncryptionError, IntegrityError

MAGIC = b"DBVE"
FORMAT_VERSION = 1
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
DEFAULT_KDF_ITERATIONS = 200_000
MIN_KDF_ITERATIONS = 1_000
MAX_KDF_ITERATIONS = 10_000_000
HASH_BUFFER_SIZE = 64 * 1024

_HEADER = struct.Struct(f">4sBI{SALT_SIZE}s{NONCE_SIZE}s")
HEADER_SIZE = _HEADER.size


def compute_checksum(data: bytes) -> str:
    """Return the SHA-256 hex digest of *data*."""
    return hashlib.sha256(data).hexdigest()


def compute_file_checksum(path: Path) -> str:
    """Return the SHA-256 hex digest of the file at *path*, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(HASH_BUFFER_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def generate_key() -> str:
    """Generate random key material suitable for ``BACKUP_ENCRYPTION_KEY``."""
    return base64.urlsafe_b64encode(secrets.token_bytes(KEY_SIZE)).decode("ascii")


def _derive_key(key: str | bytes, salt: bytes, iterations: int) -> bytes:
    material = key.encode("utf-8") if isinstance(key, str) else key
    if not material:
        raise EncryptionError("Encryption key is empty")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(material)


def encrypt(
    data: bytes, key: str | bytes, *, iterations: int = DEFAULT_KDF_ITERATIONS
) -> bytes:
    """Encrypt *data* and return the artifact bytes, header included."""
    if not MIN_KDF_ITERATIONS <= iterations <= MAX_KDF_ITERATIONS:
        raise EncryptionError(f"KDF iteration count out of range: {iterations}")

    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    header = _HEADER.pack(MAGIC, FORMAT_VERSION, iterations, salt, nonce)
    try:
        derived = _derive_key(key, salt, iterations)
        # The header is bound as associated data so it cannot be swapped
        ciphertext = AESGCM(derived).encrypt(nonce, data, header)
    except EncryptionError:
        raise
    except Exception as e:
        raise EncryptionError(f"Encryption failed: {e}") from e
    return header + ciphertext


def decrypt(artifact: bytes, key: str | bytes) -> bytes:
    """Decrypt an artifact produced by :func:`encrypt`.

    Raises ``EncryptionError`` for a malformed header, a wrong key or any
    modification of the artifact. Unauthenticated plaintext is never returned.
    """
    if len(artifact) < HEADER_SIZE + TAG_SIZE:
        raise EncryptionError("Artifact is too short to contain a header")

    header = artifact[:HEADER_SIZE]
    magic, version, iterations, salt, nonce = _HEADER.unpack(header)
    if magic != MAGIC:
        raise EncryptionError("Artifact header has an unknown magic value")
    if version != FORMAT_VERSION:
        raise EncryptionError(f"Unsupported artifact format version: {version}")
    if not MIN_KDF_ITERATIONS <= iterations <= MAX_KDF_ITERATIONS:
        raise EncryptionError(f"Artifact KDF iteration count is invalid: {iterations}")

    derived = _derive_key(key, salt, iterations)
    try:
        return AESGCM(derived).decrypt(nonce, artifact[HEADER_SIZE:], header)
    except InvalidTag as e:
        raise EncryptionError(
            "Artifact failed authentication (wrong key or corrupted data)"
        ) from e


def compress(data: bytes) -> bytes:
    return zlib.compress(data, 6)


def decompress(data: bytes) -> bytes:
    try:
        return zlib.decompress(data)
    except zlib.error as e:
        raise IntegrityError(f"Decompression failed: {e}") from e
