"""
Content digests for bundle entries.

Uses hashlib. A ContentDigest is a fixed-size byte string tagged with the
algorithm that produced it; its text form is "<algorithm>:<hex>".
"""

import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Any, BinaryIO

from .errors import check_cancelled


DEFAULT_ALGORITHM = "sha256"

# sha1 is only accepted for legacy pass manifests.
SUPPORTED_ALGORITHMS = ("sha256", "sha384", "sha512", "sha1")

CHUNK_SIZE = 64 * 1024

_LOWER_HEX = re.compile(r"[0-9a-f]*")


@dataclass(frozen=True)
class ContentDigest:
    """A digest value and the algorithm that produced it."""
    algorithm: str
    value: bytes

    def hex(self) -> str:
        return self.value.hex()

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.value.hex()}"

    def matches(self, other: "ContentDigest") -> bool:
        """Constant-time equality check."""
        return self.algorithm == other.algorithm and hmac.compare_digest(self.value, other.value)

    @classmethod
    def from_hex(cls, algorithm: str, hex_value: str) -> "ContentDigest":
        """
        Build a digest from its hex encoding.

        Only lowercase hex of the exact length is accepted, so a parsed
        digest always serializes back to the same text.

        Raises:
            ValueError: If the algorithm is unsupported, the hex is invalid,
                or the length does not match the algorithm
        """
        expected = digest_size(algorithm)
        if not isinstance(hex_value, str) or not _LOWER_HEX.fullmatch(hex_value):
            raise ValueError(f"{algorithm} digest must be lowercase hex: {hex_value!r}")
        if len(hex_value) != expected * 2:
            raise ValueError(
                f"{algorithm} digest must be {expected} bytes, got {len(hex_value) // 2}"
            )
        return cls(algorithm=algorithm, value=bytes.fromhex(hex_value))

    @classmethod
    def parse(cls, text: str) -> "ContentDigest":
        """Parse the "<algorithm>:<hex>" text form."""
        if not isinstance(text, str):
            raise ValueError(f"Digest must be a string, got {type(text).__name__}")
        algorithm, sep, hex_value = text.partition(":")
        if not sep:
            raise ValueError(f"Digest missing algorithm prefix: {text!r}")
        return cls.from_hex(algorithm, hex_value)


def _new_hash(algorithm: str) -> Any:
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(
            f"Unsupported digest algorithm: {algorithm}. "
            f"Supported: {', '.join(SUPPORTED_ALGORITHMS)}"
        )
    return hashlib.new(algorithm)


def digest_size(algorithm: str) -> int:
    """Output length in bytes for a supported algorithm."""
    return _new_hash(algorithm).digest_size


def digest_bytes(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> ContentDigest:
    """
    Digest an in-memory byte string.

    Args:
        data: Bytes to hash (may be empty)
        algorithm: One of SUPPORTED_ALGORITHMS

    Returns:
        ContentDigest
    """
    hasher = _new_hash(algorithm)
    hasher.update(data)
    return ContentDigest(algorithm=algorithm, value=hasher.digest())


def digest_stream(
    stream: BinaryIO,
    algorithm: str = DEFAULT_ALGORITHM,
    chunk_size: int = CHUNK_SIZE,
    cancel: Any = None,
) -> ContentDigest:
    """
    Digest a binary stream with bounded reads.

    The cancel signal is checked before every chunk so large entries can be
    aborted promptly. Read errors propagate to the caller unchanged.
    """
    hasher = _new_hash(algorithm)
    while True:
        check_cancelled(cancel)
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        hasher.update(chunk)
    return ContentDigest(algorithm=algorithm, value=hasher.digest())
