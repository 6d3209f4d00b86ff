from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable

from autoupdater.common.errors import UpdateError
from autoupdater.common.manifest import MANIFEST_FILENAME, ManifestInfo
from autoupdater.common.types import InstalledVersion
from autoupdater.launcher.verifier import IntegrityVerifier


log = logging.getLogger(__name__)

_UNSET = object()


class InstalledVersionCache:
    def __init__(self, loader: Callable[[], InstalledVersion | None]):
        self._loader = loader
        self._lock = threading.Lock()
        self._value: object = _UNSET

    def get(self) -> InstalledVersion | None:
        with self._lock:
            if self._value is _UNSET:
                self._value = self._loader()
            return self._value  # type: ignore[return-value]

    def invalidate(self) -> None:
        with self._lock:
            self._value = _UNSET


class VersionSelector:
    def __init__(self, install_dir: Path, verifier: IntegrityVerifier, current_version: Callable[[], ManifestInfo]):
        self.install_dir = install_dir
        self.verifier = verifier
        self.current_version = current_version

    def find_installed_versions(self) -> list[InstalledVersion]:
        if not self.install_dir.is_dir():
            return []
        found: list[InstalledVersion] = []
        for folder in sorted(self.install_dir.iterdir()):
            # Hidden names are in-progress publishes.
            if folder.name.startswith(".") or not folder.is_dir():
                continue
            if not (folder / MANIFEST_FILENAME).is_file():
                continue
            try:
                manifest = self.verifier.read_manifest(folder)
            except (UpdateError, OSError, ValueError) as exc:
                self.verifier.report(exc)
                continue
            found.append(InstalledVersion(folder=folder, manifest=manifest))
        return found

    def best_candidate(self) -> InstalledVersion | None:
        current = self.current_version().version_key
        newer = [v for v in self.find_installed_versions() if v.manifest.version_key > current]
        newer.sort(key=lambda v: v.manifest.version_key, reverse=True)
        for candidate in newer:
            if self.verifier.verify(candidate.folder):
                return candidate
            log.info("Skipping installed version %s; folder failed verification", candidate.folder.name)
        return None
