from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, MutableMapping, Sequence

from autoupdater.common.config import UpdaterConfig
from autoupdater.common.errors import UpdateError
from autoupdater.common.manifest import MANIFEST_FILENAME, ManifestInfo
from autoupdater.common.signals import HandoffSignals
from autoupdater.common.signed_stream import PrivateKeyLike
from autoupdater.common.types import ErrorReporter, InstalledVersion, UpdateStrategy
from autoupdater.launcher.discovery import UpdateDiscovery
from autoupdater.launcher.installer import PackageInstaller
from autoupdater.launcher.process_service import ExecutionLauncher, ProcessService, main_module_name
from autoupdater.launcher.run_loop import RunLoop
from autoupdater.launcher.selector import InstalledVersionCache, VersionSelector
from autoupdater.launcher.transport import HttpTransport, Transport
from autoupdater.launcher.verifier import IntegrityVerifier


log = logging.getLogger(__name__)

AUTO_UPDATE_OPTION = "--auto-update-strategy"


def strategy_from_args(argv: Sequence[str], default: UpdateStrategy | str) -> UpdateStrategy:
    fallback = default if isinstance(default, UpdateStrategy) else UpdateStrategy.parse(default)
    value: str | None = None
    args = list(argv)
    for idx, arg in enumerate(args):
        if arg.startswith(AUTO_UPDATE_OPTION + "="):
            value = arg.split("=", 1)[1]
        elif arg == AUTO_UPDATE_OPTION and idx + 1 < len(args):
            value = args[idx + 1]
    if value is None:
        return fallback
    try:
        return UpdateStrategy.parse(value)
    except ValueError:
        log.warning("Unknown update strategy %r; using %s", value, fallback.value)
        return fallback


class UpdaterManager:
    def __init__(
        self,
        config: UpdaterConfig,
        transport: Transport | None = None,
        launcher: ExecutionLauncher | None = None,
        on_error: ErrorReporter | None = None,
        environ: MutableMapping[str, str] | None = None,
    ):
        self.config = config
        self.on_error = on_error
        self.signals = HandoffSignals(config.app_name, environ)
        self.install_dir = config.resolve_install_dir()
        if config.temp_dir is not None:
            config.temp_dir.mkdir(parents=True, exist_ok=True)
        self.transport = transport or HttpTransport(config)
        self.launcher = launcher
        self.verifier = IntegrityVerifier(config.public_key, on_error=self.report)
        self.discovery = UpdateDiscovery(
            config,
            self.transport,
            config.public_key,
            current_version=lambda: self.self_version,
            on_error=self.report,
        )
        self.installer = PackageInstaller(
            config,
            self.transport,
            self.verifier,
            self.install_dir,
            on_error=self.report,
            on_installed=self._on_installed,
        )
        self.selector = VersionSelector(self.install_dir, self.verifier, lambda: self.self_version)
        self._best_installed = InstalledVersionCache(self.selector.best_candidate)
        self._self_version: ManifestInfo | None = None
        self._self_lock = threading.Lock()

    def report(self, exc: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(exc)
        except Exception:
            log.exception("Error observer failed.")

    @property
    def installed_base_dir(self) -> Path:
        return self.signals.install_root() or self.config.app_dir

    @property
    def self_version(self) -> ManifestInfo:
        with self._self_lock:
            if self._self_version is None:
                self._self_version = self._read_self_version()
            return self._self_version

    @property
    def running_folder(self) -> Path:
        # A context launched by the run loop runs from an install folder, not app_dir.
        return self.signals.context_folder() or self.config.app_dir

    def _read_self_version(self) -> ManifestInfo:
        folder = self.running_folder
        if (folder / MANIFEST_FILENAME).is_file():
            try:
                return self.verifier.read_manifest(folder)
            except (UpdateError, OSError, ValueError) as exc:
                self.verifier.report(exc)
        return ManifestInfo(
            display_name="Current",
            version=self.config.self_version,
            release_type=self.config.self_release_type,
        )

    def _on_installed(self, installed: InstalledVersion) -> None:
        self._best_installed.invalidate()

    def check_for_update(self) -> ManifestInfo | None:
        return self.discovery.check_for_update()

    def download_and_unpack_update(self, manifest: ManifestInfo) -> bool:
        return self.installer.install(manifest) is not None

    def verify_unpacked_folder(self, folder: Path, expected: ManifestInfo | None = None) -> bool:
        return self.verifier.verify(folder, expected)

    def find_installed_versions(self) -> list[InstalledVersion]:
        return self.selector.find_installed_versions()

    def best_installed(self) -> InstalledVersion | None:
        return self._best_installed.get()

    @property
    def has_update_installed(self) -> bool:
        return self.best_installed() is not None

    def set_run_update(self) -> bool:
        best = self.best_installed()
        if best is None:
            return False
        self.signals.request_update(best.folder)
        return True

    def create_update_package(
        self,
        private_key: PrivateKeyLike,
        input_folder: Path,
        output_folder: Path,
        manifest: Path | None = None,
    ):
        from autoupdater.packaging.builder import PackageBuilder

        return PackageBuilder(private_key).build(input_folder, output_folder, manifest_path=manifest)

    def run_from_most_recent(
        self,
        entry: Callable[[list[str]], int | None],
        argv: Sequence[str],
        default_strategy: UpdateStrategy | str | None = None,
    ) -> int:
        args = list(argv)
        if self.signals.in_isolated_context():
            result = entry(args)
            return result if isinstance(result, int) else 0

        strategy = strategy_from_args(args, default_strategy or self.config.default_strategy)
        return RunLoop(self, self.context_launcher(entry)).run(args, strategy)

    def context_launcher(self, entry: Callable[..., object]) -> ExecutionLauncher:
        if self.launcher is not None:
            return self.launcher
        module = getattr(entry, "__module__", None)
        if not module or module == "__main__":
            module = main_module_name()
        return ProcessService(self.config, self.signals, entry_module=module)
