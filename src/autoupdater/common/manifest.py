from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Mapping


MANIFEST_FILENAME = "autoupdate.manifest"
PACKAGE_FILENAME = "package.zip"
FOLDER_TIME_FORMAT = "%Y%m%d%H%M%S"

UNSET_RELEASE_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
NO_VERSION: tuple[int, int, int, int] = (0, 0, 0, 0)

VersionKey = tuple[int, int, int, int]


def parse_version(value: object) -> VersionKey:
    text = str(value or "").strip()
    if text[:1] in {"v", "V"}:
        text = text[1:]
    parts = text.split(".")
    if not 1 <= len(parts) <= 4:
        return NO_VERSION
    nums: list[int] = []
    for part in parts:
        # str.isdigit() accepts non-ASCII digits that int() may reject.
        if not part or not part.isascii() or not part.isdigit():
            return NO_VERSION
        nums.append(int(part))
    while len(nums) < 4:
        nums.append(0)
    return (nums[0], nums[1], nums[2], nums[3])


def parse_timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            return UNSET_RELEASE_TIME
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValueError(f"Invalid manifest timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _lower_keys(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {str(k).lower(): v for k, v in raw.items()}


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class FileEntry:
    path: str
    last_write_time: datetime | None = None
    sha256: str | None = None
    md5: str | None = None
    ignore: bool = False

    @property
    def is_directory(self) -> bool:
        return self.path.endswith("/")

    def local_path(self) -> str:
        return self.path.replace("/", os.sep)

    def to_dict(self) -> dict[str, Any]:
        return {
            "Path": self.path,
            "LastWriteTime": format_timestamp(self.last_write_time) if self.last_write_time else None,
            "SHA256": self.sha256,
            "MD5": self.md5,
            "Ignore": self.ignore,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FileEntry":
        if not isinstance(raw, Mapping):
            raise ValueError("Manifest file entry is not an object.")
        data = _lower_keys(raw)
        path = str(data.get("path") or "").replace("\\", "/").strip()
        if not path:
            raise ValueError("Manifest file entry has an empty path.")
        last_write = data.get("lastwritetime")
        return cls(
            path=path,
            last_write_time=parse_timestamp(last_write) if last_write else None,
            sha256=_optional_str(data.get("sha256")),
            md5=_optional_str(data.get("md5")),
            ignore=bool(data.get("ignore", False)),
        )


@dataclass(frozen=True)
class ManifestInfo:
    """A release description.

    The same type plays two roles: an install manifest carries ``files`` and
    is used to verify an unpacked folder, a remote manifest carries
    ``remote_urls`` plus the archive's size and digests and is used by
    discovery and the installer.
    """

    display_name: str
    version: str
    release_time: datetime = UNSET_RELEASE_TIME
    release_type: str = ""
    files: tuple[FileEntry, ...] | None = None
    remote_urls: tuple[str, ...] | None = None
    md5: str | None = None
    sha256: str | None = None
    compressed_size: int = 0
    uncompressed_size: int = 0

    @property
    def version_key(self) -> VersionKey:
        return parse_version(self.version)

    @property
    def folder_name(self) -> str:
        return self.release_time.astimezone(timezone.utc).strftime(FOLDER_TIME_FORMAT)

    @property
    def has_release_time(self) -> bool:
        return self.release_time != UNSET_RELEASE_TIME

    def clone(self, **changes: Any) -> "ManifestInfo":
        return replace(copy.deepcopy(self), **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "Displayname": self.display_name,
            "Version": self.version,
            "ReleaseTime": format_timestamp(self.release_time),
            "ReleaseType": self.release_type,
            "Files": None if self.files is None else [f.to_dict() for f in self.files],
            "RemoteURLS": None if self.remote_urls is None else list(self.remote_urls),
            "MD5": self.md5,
            "SHA256": self.sha256,
            "CompressedSize": self.compressed_size,
            "UncompressedSize": self.uncompressed_size,
        }

    def to_json_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=True).encode("utf-8")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ManifestInfo":
        if not isinstance(raw, Mapping):
            raise ValueError("Manifest is not a JSON object.")
        data = _lower_keys(raw)

        raw_files = data.get("files")
        files: tuple[FileEntry, ...] | None = None
        if raw_files is not None:
            if not isinstance(raw_files, list):
                raise ValueError("Manifest Files must be a list.")
            files = tuple(FileEntry.from_dict(item) for item in raw_files)

        raw_urls = data.get("remoteurls")
        urls: tuple[str, ...] | None = None
        if raw_urls is not None:
            if not isinstance(raw_urls, list):
                raise ValueError("Manifest RemoteURLS must be a list.")
            urls = tuple(str(u).strip() for u in raw_urls if str(u).strip())

        return cls(
            display_name=str(data.get("displayname") or ""),
            version=str(data.get("version") or ""),
            release_time=parse_timestamp(data.get("releasetime")),
            release_type=str(data.get("releasetype") or ""),
            files=files,
            remote_urls=urls,
            md5=_optional_str(data.get("md5")),
            sha256=_optional_str(data.get("sha256")),
            compressed_size=int(data.get("compressedsize") or 0),
            uncompressed_size=int(data.get("uncompressedsize") or 0),
        )


def parse_manifest_bytes(payload: bytes) -> ManifestInfo:
    try:
        raw = json.loads(payload.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"Manifest is not valid JSON: {exc}") from exc
    return ManifestInfo.from_dict(raw)
