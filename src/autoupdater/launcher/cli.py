from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from autoupdater.common.config import UpdaterConfig
from autoupdater.common.logging_utils import configure_logging
from autoupdater.common.signed_stream import generate_key_pair
from autoupdater.launcher.manager import UpdaterManager
from autoupdater.launcher.verifier import IntegrityVerifier
from autoupdater.packaging.builder import PackageBuilder


log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NO_UPDATE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Signed self-update tooling")
    parser.add_argument("--log-level", default="INFO", help="Log level.")
    parser.add_argument("--log-dir", type=Path, default=None, help="Also write logs to this directory.")
    parser.add_argument(
        "--app-name",
        default=os.environ.get("AUTOUPDATER_APP_NAME", "autoupdater"),
        help="Application name used for handoff signals and install directories.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    keygen = sub.add_parser("keygen", help="Generate an Ed25519 signing key pair.")
    keygen.add_argument("--out-dir", type=Path, required=True)

    build = sub.add_parser("build", help="Build a signed update package from a folder.")
    build.add_argument("source", type=Path)
    build.add_argument("output", type=Path)
    build.add_argument("--manifest", type=Path, default=None, help="Template manifest (default: <source>/autoupdate.manifest).")
    build.add_argument("--key-file", type=Path, default=None, help="Private key file (default: $AUTOUPDATER_SIGNING_KEY).")

    verify = sub.add_parser("verify", help="Verify an unpacked install folder.")
    verify.add_argument("folder", type=Path)

    sub.add_parser("list", help="List installed versions.")
    sub.add_parser("check", help="Check the configured URLs for an update.")
    sub.add_parser("install", help="Check for an update and install it.")
    return parser


def _signing_key(key_file: Path | None) -> str:
    if key_file is not None:
        return key_file.read_text(encoding="utf-8").strip()
    value = os.environ.get("AUTOUPDATER_SIGNING_KEY", "").strip()
    if not value:
        raise SystemExit("No signing key given; use --key-file or AUTOUPDATER_SIGNING_KEY.")
    return value


def _keygen(out_dir: Path) -> int:
    private, public = generate_key_pair()
    out_dir.mkdir(parents=True, exist_ok=True)
    (out_dir / "signing.key").write_text(private + "\n", encoding="utf-8")
    (out_dir / "signing.pub").write_text(public + "\n", encoding="utf-8")
    log.info("Wrote key pair to %s (public key %s)", out_dir, public)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_dir, level=args.log_level)

    if args.command == "keygen":
        return _keygen(args.out_dir)

    if args.command == "build":
        result = PackageBuilder(_signing_key(args.key_file)).build(args.source, args.output, manifest_path=args.manifest)
        log.info("Package written to %s", result.archive_path)
        return EXIT_OK

    config = UpdaterConfig.from_env(args.app_name)
    if not config.public_key:
        log.error("AUTOUPDATER_PUBLIC_KEY is not set.")
        return EXIT_FAILED

    if args.command == "verify":
        ok = IntegrityVerifier(config.public_key).verify(args.folder)
        log.info("%s: %s", args.folder, "verified" if ok else "verification failed")
        return EXIT_OK if ok else EXIT_FAILED

    manager = UpdaterManager(config)
    if args.command == "list":
        best = manager.best_installed()
        for installed in manager.find_installed_versions():
            marker = "*" if best is not None and best.folder == installed.folder else " "
            m = installed.manifest
            print(f"{marker} {installed.folder.name}  {m.version}  {m.release_type}  {m.display_name}")
        return EXIT_OK

    update = manager.check_for_update()
    if update is None:
        log.info("No update available (running %s).", manager.self_version.version)
        return EXIT_NO_UPDATE
    log.info("Update available: %s (%s)", update.display_name, update.version)
    if args.command == "check":
        return EXIT_OK

    if not manager.download_and_unpack_update(update):
        log.error("Install of %s failed.", update.display_name)
        return EXIT_FAILED
    log.info("Installed %s; it will run on next launch.", update.display_name)
    return EXIT_OK
