"""Content verification for downloaded blobs.

Blob integrity always uses hex SHA-256 digests (``sha256:<hex>`` in manifests).
The base64 ``digest`` helper is only a change-detection fingerprint for small
in-memory payloads such as catalog listing fragments.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import mmap
import string
from typing import TYPE_CHECKING

from modelpull.errors import DigestDecodeError, LocalIOError

if TYPE_CHECKING:
    from pathlib import Path

DIGEST_ALGORITHM = "sha256"
_HEX_CHARS = frozenset(string.hexdigits)


def decode_hex_digest(expected_hex: str) -> bytes:
    """Strictly decode a hex digest string.

    Args:
        expected_hex: Hex-encoded digest (either case).

    Returns:
        Raw digest bytes.

    Raises:
        DigestDecodeError: On odd length or non-hex characters.
    """
    if len(expected_hex) % 2 != 0:
        msg = f"Digest has odd length ({len(expected_hex)}): {expected_hex!r}"
        raise DigestDecodeError(msg)
    if not _HEX_CHARS.issuperset(expected_hex):
        msg = f"Digest contains non-hex characters: {expected_hex!r}"
        raise DigestDecodeError(msg)
    return bytes.fromhex(expected_hex)


def strip_algorithm(digest_ref: str) -> str:
    """Turn ``sha256:<hex>`` into ``<hex>``.

    Raises:
        DigestDecodeError: If the digest names another algorithm.
    """
    algorithm, sep, hex_part = digest_ref.partition(":")
    if not sep:
        return digest_ref
    if algorithm != DIGEST_ALGORITHM:
        msg = f"Unsupported digest algorithm {algorithm!r} in {digest_ref!r}"
        raise DigestDecodeError(msg)
    return hex_part


def file_sha256(path: Path) -> bytes:
    """SHA-256 of a file's full byte range via a read-only memory map.

    Raises:
        LocalIOError: If the file cannot be opened or mapped.
    """
    try:
        with path.open("rb") as f:
            # mmap refuses zero-length files
            if path.stat().st_size == 0:
                return hashlib.sha256(b"").digest()
            with mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ) as mapped:
                return hashlib.sha256(mapped).digest()
    except (OSError, ValueError) as e:
        msg = f"Failed to read {path} for hashing: {e}"
        raise LocalIOError(msg, path=str(path)) from e


def checksum(path: Path, expected_hex: str) -> bool:
    """Check a file's SHA-256 against an expected hex digest.

    Args:
        path: File to verify.
        expected_hex: Expected digest, hex-encoded, without algorithm prefix.

    Returns:
        True if the digests match byte-for-byte.

    Raises:
        DigestDecodeError: If ``expected_hex`` is malformed.
        LocalIOError: If the file cannot be read.
    """
    expected = decode_hex_digest(expected_hex)
    return hmac.compare_digest(file_sha256(path), expected)


def hex_digest(data: bytes) -> str:
    """Hex SHA-256 of in-memory bytes."""
    return hashlib.sha256(data).hexdigest()


def digest(data: bytes) -> str:
    """Base64 (standard alphabet) SHA-256 of in-memory bytes."""
    return base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")
