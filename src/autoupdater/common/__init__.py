from autoupdater.common.config import UpdaterConfig
from autoupdater.common.errors import (
    IntegrityError,
    PathTraversalError,
    TransportError,
    TrustError,
    UpdateError,
    VersionError,
)
from autoupdater.common.manifest import FileEntry, ManifestInfo, parse_version

__all__ = [
    "UpdaterConfig",
    "FileEntry",
    "ManifestInfo",
    "parse_version",
    "UpdateError",
    "IntegrityError",
    "TrustError",
    "PathTraversalError",
    "TransportError",
    "VersionError",
]
