from __future__ import annotations

import logging
from pathlib import Path

from autoupdater.common.errors import IntegrityError, UpdateError
from autoupdater.common.hashing import bytes_digests, file_digests
from autoupdater.common.manifest import MANIFEST_FILENAME, FileEntry, ManifestInfo, parse_manifest_bytes
from autoupdater.common.signed_stream import PublicKeyLike, load_public_key, open_bytes
from autoupdater.common.tree import IgnoreMatcher, path_key, walk_tree
from autoupdater.common.types import ErrorReporter, VerificationResult


log = logging.getLogger(__name__)


class IntegrityVerifier:
    def __init__(self, public_key: PublicKeyLike, on_error: ErrorReporter | None = None):
        self.public_key = load_public_key(public_key)
        self.on_error = on_error

    def report(self, exc: Exception) -> None:
        log.warning("%s", exc)
        if self.on_error is None:
            return
        try:
            self.on_error(exc)
        except Exception:
            log.exception("Error observer failed.")

    def read_manifest(self, folder: Path) -> ManifestInfo:
        raw = (folder / MANIFEST_FILENAME).read_bytes()
        return parse_manifest_bytes(open_bytes(raw, self.public_key))

    def verify(self, folder: Path, expected: ManifestInfo | None = None) -> bool:
        result = self.check(folder, expected)
        if not result.ok and result.error is not None:
            self.report(result.error)
        return result.ok

    def check(self, folder: Path, expected: ManifestInfo | None = None) -> VerificationResult:
        try:
            return self._check(Path(folder), expected)
        except UpdateError as exc:
            return VerificationResult.failed(str(exc), exc)
        except (OSError, ValueError) as exc:
            err = IntegrityError(f"Unable to verify folder {folder}: {exc}")
            err.__cause__ = exc
            return VerificationResult.failed(str(err), err)

    def _check(self, folder: Path, expected: ManifestInfo | None) -> VerificationResult:
        raw = (folder / MANIFEST_FILENAME).read_bytes()
        manifest = parse_manifest_bytes(open_bytes(raw, self.public_key))
        sha256, md5 = bytes_digests(raw)
        own_entry = FileEntry(
            path=MANIFEST_FILENAME,
            last_write_time=manifest.release_time,
            sha256=sha256,
            md5=md5,
        )

        if expected is not None and (
            manifest.display_name != expected.display_name or manifest.release_time != expected.release_time
        ):
            return VerificationResult.failed(
                f"The found version was not the expected version: "
                f"{manifest.display_name!r} {manifest.release_time.isoformat()} != "
                f"{expected.display_name!r} {expected.release_time.isoformat()}"
            )
        if manifest.files is None:
            return VerificationResult.failed(f"Manifest in {folder} does not list files")

        required: dict[str, FileEntry] = {path_key(f.path): f for f in manifest.files if not f.ignore}
        required[path_key(own_entry.path)] = own_entry
        ignores = IgnoreMatcher(f.path for f in manifest.files if f.ignore)

        for relpath, full in walk_tree(folder):
            entry = required.pop(path_key(relpath), None)
            if entry is None:
                if ignores.matches(relpath):
                    continue
                return VerificationResult.failed(f"Found unexpected file: {full}")

            if entry.is_directory:
                continue

            actual_sha256, actual_md5 = file_digests(full)
            if actual_sha256 != entry.sha256:
                return VerificationResult.failed(f"Invalid sha256 hash for file: {full}")
            if actual_md5 != entry.md5:
                return VerificationResult.failed(f"Invalid md5 hash for file: {full}")

        missing = [entry.path for key, entry in required.items() if key.strip() and not entry.is_directory]
        if len(missing) == 1:
            return VerificationResult.failed(f"Folder {folder} is missing: {missing[0]}")
        if missing:
            return VerificationResult.failed(f"Folder {folder} is missing {len(missing)} files")

        return VerificationResult.passed(manifest)
