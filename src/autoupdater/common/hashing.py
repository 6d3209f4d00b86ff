from __future__ import annotations

import base64
import hashlib
from pathlib import Path


def _b64(digest: bytes) -> str:
    return base64.b64encode(digest).decode("ascii")


def file_digests(path: Path, chunk_size: int = 1024 * 1024) -> tuple[str, str]:
    """Return the base64 (sha256, md5) pair for a file, read in one pass."""
    sha = hashlib.sha256()
    md5 = hashlib.md5()
    with path.open("rb") as fh:
        while True:
            data = fh.read(chunk_size)
            if not data:
                break
            sha.update(data)
            md5.update(data)
    return _b64(sha.digest()), _b64(md5.digest())


def bytes_digests(data: bytes) -> tuple[str, str]:
    return _b64(hashlib.sha256(data).digest()), _b64(hashlib.md5(data).digest())
