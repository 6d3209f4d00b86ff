from __future__ import annotations

import json
import logging
import os
import zipfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from autoupdater.common.hashing import file_digests
from autoupdater.common.manifest import (
    MANIFEST_FILENAME,
    PACKAGE_FILENAME,
    FileEntry,
    ManifestInfo,
)
from autoupdater.common.signed_stream import PrivateKeyLike, load_private_key, seal_bytes
from autoupdater.common.tree import IgnoreMatcher, path_key, walk_tree


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildResult:
    archive_path: Path
    manifest_path: Path
    remote_manifest: ManifestInfo
    install_manifest: ManifestInfo


def _mtime(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc).replace(microsecond=0)


def _write_atomic(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    tmp.replace(path)


def load_template(path: Path) -> ManifestInfo:
    with path.open("r", encoding="utf-8-sig") as fh:
        raw = json.load(fh)
    return ManifestInfo.from_dict(raw)


class PackageBuilder:
    """Builds ``package.zip`` and its signed manifests from a source tree.

    The template manifest (plain JSON, usually ``autoupdate.manifest`` at the
    root of the tree) supplies the display name, version, release type,
    download URLs and ignored paths. Two manifests are signed: one listing
    every file, written into the archive for folder verification, and one
    describing the archive itself, written next to it for discovery.
    """

    def __init__(self, private_key: PrivateKeyLike):
        self.private_key = load_private_key(private_key)

    def build(self, source_dir: Path, output_dir: Path, manifest_path: Path | None = None) -> BuildResult:
        source_dir = Path(source_dir)
        output_dir = Path(output_dir)
        template = load_template(manifest_path or source_dir / MANIFEST_FILENAME)
        if not template.has_release_time:
            template = template.clone(release_time=datetime.now(timezone.utc).replace(microsecond=0))

        ignore_entries = tuple(f for f in (template.files or ()) if f.ignore)
        ignores = IgnoreMatcher(f.path for f in ignore_entries)
        manifest_key = path_key(MANIFEST_FILENAME)

        output_dir.mkdir(parents=True, exist_ok=True)
        archive_path = output_dir / PACKAGE_FILENAME
        archive_tmp = output_dir / (PACKAGE_FILENAME + ".tmp")

        entries: list[FileEntry] = []
        uncompressed = 0
        with zipfile.ZipFile(archive_tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for relpath, full in walk_tree(source_dir):
                if path_key(relpath) == manifest_key or ignores.matches(relpath):
                    continue
                if relpath.endswith("/"):
                    zf.writestr(zipfile.ZipInfo(relpath), b"")
                    entries.append(FileEntry(path=relpath, last_write_time=_mtime(full)))
                    continue

                zf.write(full, relpath)
                uncompressed += full.stat().st_size
                sha256, md5 = file_digests(full)
                entries.append(FileEntry(path=relpath, last_write_time=_mtime(full), sha256=sha256, md5=md5))

            install_manifest = template.clone(
                files=tuple(entries) + ignore_entries,
                remote_urls=None,
                md5=None,
                sha256=None,
                compressed_size=0,
                uncompressed_size=0,
            )
            zf.writestr(MANIFEST_FILENAME, seal_bytes(install_manifest.to_json_bytes(), self.private_key))

        sha256, md5 = file_digests(archive_tmp)
        remote_manifest = template.clone(
            files=None,
            md5=md5,
            sha256=sha256,
            compressed_size=archive_tmp.stat().st_size,
            uncompressed_size=uncompressed,
        )
        os.replace(archive_tmp, archive_path)

        manifest_out = output_dir / MANIFEST_FILENAME
        _write_atomic(manifest_out, seal_bytes(remote_manifest.to_json_bytes(), self.private_key))
        log.info(
            "Built %s %s: %d entries, %d bytes compressed",
            remote_manifest.display_name,
            remote_manifest.version,
            len(entries),
            remote_manifest.compressed_size,
        )
        return BuildResult(
            archive_path=archive_path,
            manifest_path=manifest_out,
            remote_manifest=remote_manifest,
            install_manifest=install_manifest,
        )
