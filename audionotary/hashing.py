import hashlib
import re
from typing import BinaryIO

CHUNK_SIZE = 65536  # 64KB reads keep large audio files out of memory

_CONTENT_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def sha256_bytes(data: bytes) -> str:
    """Lowercase hex SHA-256 of raw bytes (64 characters)."""
    return hashlib.sha256(data).hexdigest()


def sha256_file(file_obj: BinaryIO) -> str:
    """Chunked SHA-256 of a binary file object. Rewinds when seekable."""
    sha256 = hashlib.sha256()
    for chunk in iter(lambda: file_obj.read(CHUNK_SIZE), b""):
        sha256.update(chunk)
    if file_obj.seekable():
        file_obj.seek(0)
    return sha256.hexdigest()


def normalize_content_hash(value: str) -> str:
    return value.strip().lower()


def is_content_hash(value: str) -> bool:
    return bool(_CONTENT_HASH_RE.match(value))
