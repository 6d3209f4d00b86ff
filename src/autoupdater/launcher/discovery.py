from __future__ import annotations

import logging
import tempfile
from pathlib import Path
from typing import Callable, Iterable

from autoupdater.common.config import UpdaterConfig
from autoupdater.common.errors import TransportError, UpdateError, VersionError
from autoupdater.common.manifest import MANIFEST_FILENAME, ManifestInfo, parse_manifest_bytes
from autoupdater.common.signed_stream import PublicKeyLike, load_public_key, open_bytes
from autoupdater.common.types import ErrorReporter
from autoupdater.launcher.transport import Transport


log = logging.getLogger(__name__)


def acceptance_error(
    candidate: ManifestInfo,
    current: ManifestInfo,
    isolated_channels: Iterable[str] = ("debug",),
) -> VersionError | None:
    if candidate.version_key <= current.version_key:
        return VersionError(
            f"Update {candidate.version!r} is not newer than running version {current.version!r}"
        )

    isolated = {c.strip().lower() for c in isolated_channels}
    current_channel = current.release_type.strip().lower()
    candidate_channel = candidate.release_type.strip().lower()
    if (current_channel in isolated or candidate_channel in isolated) and current_channel != candidate_channel:
        return VersionError(
            f"Update channel {candidate.release_type!r} does not match running channel {current.release_type!r}"
        )
    return None


class UpdateDiscovery:
    def __init__(
        self,
        config: UpdaterConfig,
        transport: Transport,
        public_key: PublicKeyLike,
        current_version: Callable[[], ManifestInfo],
        on_error: ErrorReporter | None = None,
    ):
        self.config = config
        self.transport = transport
        self.public_key = load_public_key(public_key)
        self.current_version = current_version
        self.on_error = on_error

    def _report(self, exc: Exception) -> None:
        log.warning("%s", exc)
        if self.on_error is None:
            return
        try:
            self.on_error(exc)
        except Exception:
            log.exception("Error observer failed.")

    def fetch_manifest(self, url: str, scratch: Path) -> ManifestInfo:
        target = scratch / MANIFEST_FILENAME
        try:
            self.transport.download(url, target)
        except UpdateError:
            raise
        except Exception as exc:
            raise TransportError(f"Download failed for {url}: {exc}") from exc
        manifest = parse_manifest_bytes(open_bytes(target.read_bytes(), self.public_key))
        target.unlink()
        return manifest

    def check_for_update(self) -> ManifestInfo | None:
        current = self.current_version()
        for url in self.config.urls:
            try:
                with tempfile.TemporaryDirectory(dir=self.config.temp_dir) as td:
                    candidate = self.fetch_manifest(url, Path(td))
            except (UpdateError, OSError, ValueError) as exc:
                self._report(exc)
                continue

            rejected = acceptance_error(candidate, current, self.config.isolated_channels)
            if rejected is not None:
                if candidate.version_key > current.version_key:
                    self._report(rejected)
                else:
                    log.info("No update from %s: %s", url, rejected)
                continue

            log.info(
                "Update available: %s (%s, %s) from %s",
                candidate.display_name,
                candidate.version,
                candidate.release_type,
                url,
            )
            return candidate
        return None
