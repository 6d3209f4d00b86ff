from __future__ import annotations

from pathlib import PurePosixPath
from typing import Iterable
from urllib.parse import urlparse

from autoupdater.common.errors import PathTraversalError, TransportError


def validate_trusted_url(url: str, allowed_hosts: Iterable[str] = (), allow_http: bool = False) -> None:
    parsed = urlparse(str(url))
    scheme = (parsed.scheme or "").lower()
    if scheme not in {"https", "http"} or (scheme == "http" and not allow_http):
        raise TransportError(f"Untrusted URL scheme for update download: {url}")
    host = (parsed.hostname or "").rstrip(".")
    if not host:
        raise TransportError(f"Update URL has no host: {url}")

    # An empty allow-list means any host; the signature is the trust boundary.
    allowed = {h.strip().lower().rstrip(".") for h in allowed_hosts if h.strip()}
    if allowed and not any(host == h or host.endswith("." + h) for h in allowed):
        raise TransportError(f"Untrusted update host: {host}")


def validate_archive_member_path(member_name: str) -> PurePosixPath:
    # Normalize as posix to avoid platform-dependent traversal quirks.
    normalized = str(member_name or "").replace("\\", "/").strip()
    if not normalized:
        raise PathTraversalError("Archive contains an empty path entry.")

    path = PurePosixPath(normalized)
    parts = path.parts
    if not parts:
        raise PathTraversalError("Archive path entry has no parts.")
    if path.is_absolute():
        raise PathTraversalError(f"Out-of-place file path detected: {member_name}")
    if normalized.startswith(".."):
        raise PathTraversalError(f"Out-of-place file path detected: {member_name}")
    if any(part == ".." for part in parts):
        raise PathTraversalError(f"Archive entry contains traversal segment: {member_name}")
    if ":" in parts[0]:
        raise PathTraversalError(f"Archive entry contains drive designator: {member_name}")
    return path
