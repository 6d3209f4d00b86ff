from __future__ import annotations

import json
import unittest
from datetime import datetime, timezone

from autoupdater.common.manifest import (
    NO_VERSION,
    UNSET_RELEASE_TIME,
    FileEntry,
    ManifestInfo,
    parse_manifest_bytes,
    parse_version,
)


class VersionParsingTests(unittest.TestCase):
    def test_componentwise_ordering(self) -> None:
        ordered = ["0.9", "1.0", "1.0.1", "1.2", "1.10", "2.0.0.1", "10.0"]
        keys = [parse_version(v) for v in ordered]
        self.assertEqual(keys, sorted(keys))
        self.assertLess(parse_version("1.2"), parse_version("1.10"))
        self.assertEqual(parse_version("1.2"), parse_version("1.2.0.0"))

    def test_unparsable_is_zero(self) -> None:
        for text in ("", "abc", "1.x", "1..2", "1.2.3.4.5", "-1.0", None, "1.2-beta"):
            self.assertEqual(parse_version(text), NO_VERSION, text)
        self.assertLess(parse_version("garbage"), parse_version("0.1"))

    def test_lenient_forms(self) -> None:
        self.assertEqual(parse_version(" v2.1 "), (2, 1, 0, 0))
        self.assertEqual(parse_version("3"), (3, 0, 0, 0))


class ManifestModelTests(unittest.TestCase):
    def _manifest(self) -> ManifestInfo:
        return ManifestInfo(
            display_name="TestApp 1.2",
            version="1.2",
            release_time=datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc),
            release_type="Stable",
            files=(
                FileEntry(path="app.py", sha256="s", md5="m"),
                FileEntry(path="logs/", ignore=True),
            ),
        )

    def test_wire_names_and_roundtrip(self) -> None:
        manifest = self._manifest()
        data = json.loads(manifest.to_json_bytes())
        self.assertEqual(data["Displayname"], "TestApp 1.2")
        self.assertEqual(data["ReleaseTime"], "2024-05-01T12:30:00Z")
        self.assertIsNone(data["RemoteURLS"])
        self.assertEqual(data["Files"][1], {"Path": "logs/", "LastWriteTime": None, "SHA256": None, "MD5": None, "Ignore": True})
        self.assertEqual(parse_manifest_bytes(manifest.to_json_bytes()), manifest)

    def test_keys_are_case_insensitive(self) -> None:
        parsed = ManifestInfo.from_dict(
            {
                "DisplayName": "X",
                "version": "2.0",
                "RemoteURLs": ["https://a/p.zip", " "],
                "files": [{"path": "bin\\tool.exe", "ignore": False}],
            }
        )
        self.assertEqual(parsed.display_name, "X")
        self.assertEqual(parsed.remote_urls, ("https://a/p.zip",))
        self.assertEqual(parsed.files[0].path, "bin/tool.exe")
        self.assertEqual(parsed.release_time, UNSET_RELEASE_TIME)
        self.assertFalse(parsed.has_release_time)

    def test_naive_and_zulu_times_are_utc(self) -> None:
        a = ManifestInfo.from_dict({"Version": "1", "ReleaseTime": "2024-05-01T12:30:00"})
        b = ManifestInfo.from_dict({"Version": "1", "ReleaseTime": "2024-05-01T12:30:00Z"})
        self.assertEqual(a.release_time, b.release_time)

    def test_folder_name_is_sortable_timestamp(self) -> None:
        self.assertEqual(self._manifest().folder_name, "20240501123000")

    def test_clone_is_independent(self) -> None:
        original = self._manifest()
        package = original.clone(files=None, remote_urls=("https://a/p.zip",))
        self.assertIsNone(package.files)
        self.assertEqual(len(original.files), 2)
        self.assertIsNone(original.remote_urls)
        self.assertIsNot(original.clone().files, original.files)

    def test_invalid_json_raises_value_error(self) -> None:
        with self.assertRaises(ValueError):
            parse_manifest_bytes(b"{not json")
        with self.assertRaises(ValueError):
            parse_manifest_bytes(b"[]")


if __name__ == "__main__":
    unittest.main()
