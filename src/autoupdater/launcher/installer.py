from __future__ import annotations

import logging
import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Callable

from autoupdater.common.config import UpdaterConfig
from autoupdater.common.errors import IntegrityError, PathTraversalError, TransportError, UpdateError
from autoupdater.common.hashing import file_digests
from autoupdater.common.manifest import PACKAGE_FILENAME, ManifestInfo
from autoupdater.common.security import validate_archive_member_path
from autoupdater.common.tree import walk_tree
from autoupdater.common.types import ErrorReporter, InstalledVersion
from autoupdater.launcher.transport import Transport
from autoupdater.launcher.verifier import IntegrityVerifier


log = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"


class PackageInstaller:
    def __init__(
        self,
        config: UpdaterConfig,
        transport: Transport,
        verifier: IntegrityVerifier,
        install_dir: Path,
        on_error: ErrorReporter | None = None,
        on_installed: Callable[[InstalledVersion], None] | None = None,
    ):
        self.config = config
        self.transport = transport
        self.verifier = verifier
        self.install_dir = install_dir
        self.on_error = on_error
        self.on_installed = on_installed

    def _report(self, exc: Exception) -> None:
        log.warning("%s", exc)
        if self.on_error is None:
            return
        try:
            self.on_error(exc)
        except Exception:
            log.exception("Error observer failed.")

    def install(self, manifest: ManifestInfo) -> InstalledVersion | None:
        urls = manifest.remote_urls or ()
        if not urls:
            self._report(IntegrityError(f"Manifest for {manifest.display_name!r} has no download URLs"))
            return None

        for url in urls:
            try:
                with tempfile.TemporaryDirectory(dir=self.config.temp_dir) as td:
                    installed = self._install_from(url, manifest, Path(td))
            except PathTraversalError as exc:
                # A hostile archive aborts the whole install, not just this mirror.
                self._report(exc)
                return None
            except (UpdateError, OSError, ValueError, zipfile.BadZipFile) as exc:
                self._report(exc)
                continue

            log.info("Installed %s (%s) into %s", manifest.display_name, manifest.version, installed.folder)
            if self.on_installed is not None:
                self.on_installed(installed)
            return installed
        return None

    def _install_from(self, url: str, manifest: ManifestInfo, scratch: Path) -> InstalledVersion:
        archive = scratch / PACKAGE_FILENAME
        try:
            self.transport.download(url, archive)
        except UpdateError:
            raise
        except Exception as exc:
            raise TransportError(f"Download failed for {url}: {exc}") from exc

        self.check_package(archive, manifest, url)

        staging = scratch / "staging"
        self.extract_archive(archive, staging)

        result = self.verifier.check(staging, manifest)
        if not result.ok:
            raise IntegrityError(f"Unable to verify unpacked folder for url {url}: {result.reason}")

        target = self.publish(staging, manifest)
        return InstalledVersion(folder=target, manifest=result.manifest or manifest)

    @staticmethod
    def check_package(archive: Path, manifest: ManifestInfo, url: str = "") -> None:
        size = archive.stat().st_size
        if size != manifest.compressed_size:
            raise IntegrityError(f"Invalid file size {size}, expected {manifest.compressed_size} for {url}")
        sha256, md5 = file_digests(archive)
        if sha256 != manifest.sha256:
            raise IntegrityError(f"Damaged or corrupted file, sha256 mismatch for {url}")
        if md5 != manifest.md5:
            raise IntegrityError(f"Damaged or corrupted file, md5 mismatch for {url}")

    @staticmethod
    def extract_archive(archive: Path, target: Path) -> Path:
        target.mkdir(parents=True, exist_ok=True)
        root = target.resolve()
        with zipfile.ZipFile(archive, "r") as zf:
            members = zf.infolist()
            planned: list[tuple[zipfile.ZipInfo, Path]] = []
            # Validate every entry before anything is written.
            for info in members:
                member = validate_archive_member_path(info.filename)

                mode = (info.external_attr >> 16) & 0o170000
                if mode == 0o120000:
                    raise PathTraversalError(f"Archive contains a symbolic link entry: {info.filename}")

                dest_path = (target / Path(*member.parts)).resolve()
                if not str(dest_path).startswith(str(root) + os.sep) and dest_path != root:
                    raise PathTraversalError(f"Archive entry escapes extraction root: {info.filename}")
                planned.append((info, dest_path))

            for info, dest_path in planned:
                if info.is_dir():
                    dest_path.mkdir(parents=True, exist_ok=True)
                    continue
                dest_path.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info, "r") as src, dest_path.open("wb") as dst:
                    shutil.copyfileobj(src, dst, length=1024 * 1024)
        return target

    def publish(self, staged: Path, manifest: ManifestInfo) -> Path:
        self.install_dir.mkdir(parents=True, exist_ok=True)
        target = self.install_dir / manifest.folder_name
        partial = self.install_dir / f".{manifest.folder_name}{PARTIAL_SUFFIX}"
        if partial.exists():
            shutil.rmtree(partial)
        partial.mkdir()

        try:
            entries = list(walk_tree(staged))
            for relpath, _ in entries:
                if relpath.endswith("/"):
                    (partial / relpath).mkdir(parents=True, exist_ok=True)
            for relpath, source in entries:
                if not relpath.endswith("/"):
                    self.copy_file(source, partial / relpath)

            if target.exists():
                log.info("Replacing existing install folder %s", target)
                shutil.rmtree(target)
            os.replace(partial, target)
        except Exception:
            log.exception("Publishing %s failed. Removing partial copy.", target.name)
            shutil.rmtree(partial, ignore_errors=True)
            raise
        return target

    @staticmethod
    def copy_file(source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
