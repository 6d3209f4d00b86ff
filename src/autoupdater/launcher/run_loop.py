from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from autoupdater.common.manifest import ManifestInfo
from autoupdater.common.types import InstalledVersion, RunState, UpdateStrategy
from autoupdater.launcher.process_service import ExecutionLauncher

if TYPE_CHECKING:
    from autoupdater.launcher.manager import UpdaterManager


log = logging.getLogger(__name__)

LAUNCH_FAILED = 1


class BackgroundUpdateCheck:
    def __init__(self, manager: "UpdaterManager", install: bool, delay_seconds: float = 0.0):
        self.manager = manager
        self.install = install
        self.delay_seconds = delay_seconds
        self.detected: ManifestInfo | None = None
        self.installed = False
        self._thread = threading.Thread(target=self._run, daemon=True, name="BackgroundUpdateChecker")
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        self._started = True
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        # Short-lived work should finish before a "during" check competes with it.
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)
        try:
            self.detected = self.manager.check_for_update()
            if self.detected is not None and self.install:
                log.info("Update to %s detected, installing...", self.detected.display_name)
                self.installed = self.manager.download_and_unpack_update(self.detected)
        except Exception as exc:
            log.exception("Background update check failed.")
            self.manager.report(exc)


class RunLoop:
    def __init__(self, manager: "UpdaterManager", launcher: ExecutionLauncher):
        self.manager = manager
        self.launcher = launcher
        self.state = RunState.DISCOVERING
        self.history: list[RunState] = []

    def _enter(self, state: RunState) -> None:
        self.state = state
        self.history.append(state)
        log.debug("Run loop state: %s", state.value)

    def _start_background(self, strategy: UpdateStrategy) -> BackgroundUpdateCheck | None:
        if not strategy.checks:
            return None

        timing = strategy.timing
        delay = self.manager.config.during_delay_seconds if timing == "during" else 0.0
        checker = BackgroundUpdateCheck(self.manager, install=strategy.installs, delay_seconds=delay)
        if timing == "after":
            return checker

        checker.start()
        if timing != "before":
            return checker

        log.info("Checking for update ...")
        checker.join()
        if strategy.installs:
            if checker.installed:
                log.info("Install succeeded, running updated version")
            else:
                log.info("Install or download failed, using current version")
        elif checker.detected is not None:
            log.info('Update "%s" detected', checker.detected.display_name)
        return None

    def _finish_background(self, checker: BackgroundUpdateCheck | None, strategy: UpdateStrategy) -> None:
        if checker is None:
            return
        if not checker.started:
            log.info("Checking for update ...")
            checker.start()
            checker.join()

        if checker.detected is None:
            return
        if checker.is_alive():
            log.info('Waiting for update "%s" to complete', checker.detected.display_name)
            checker.join()

        if strategy.installs:
            if checker.installed:
                log.info("Install succeeded, running updated version on next launch")
            else:
                log.info("Install or download failed, using current version on next launch")
        else:
            log.info('Update "%s" detected', checker.detected.display_name)

    def select(self) -> InstalledVersion:
        self._enter(RunState.SELECTING)
        best = self.manager.best_installed()
        if best is not None:
            return best
        return InstalledVersion(folder=self.manager.config.app_dir, manifest=self.manager.self_version)

    def run(self, argv: Sequence[str], strategy: UpdateStrategy) -> int:
        if self.manager.signals.take_sleep_marker():
            # Give the process that respawned us time to release its handles.
            time.sleep(self.manager.config.respawn_grace_seconds)

        self._enter(RunState.DISCOVERING)
        checker = self._start_background(strategy)

        best = self.select()
        self.manager.signals.publish_install_root(self.manager.installed_base_dir)

        folder: Path | None = best.folder
        fallback: Path | None = None
        failed: set[Path] = set()
        result = 0
        while folder is not None and folder.is_dir():
            self._enter(RunState.RUNNING)
            try:
                outcome = self.launcher.run(folder, list(argv))
            except Exception as exc:
                log.exception("Unable to start %s", folder)
                self.manager.report(exc)
                failed.add(folder)
                result = LAUNCH_FAILED
                folder, fallback = fallback, None
                if folder is not None:
                    log.warning("Falling back to %s", folder)
                continue

            previous = folder
            result = outcome.exit_code

            self._enter(RunState.VERIFYING_HANDOFF)
            requested = outcome.requested_folder
            if requested is not None and requested in failed:
                log.warning("Ignoring request for %s; it failed to start earlier", requested)
                requested = None
            folder, taken_over = self._next_folder(requested, previous)
            fallback = previous if folder is not None and folder != previous else None
            if taken_over:
                self._enter(RunState.DONE)
                return 0

        self._enter(RunState.DONE)
        self._finish_background(checker, strategy)
        return result

    def _next_folder(self, requested: Path | None, previous: Path) -> tuple[Path | None, bool]:
        if requested is None:
            return None, False
        if not self.manager.verifier.verify(requested):
            log.warning("Requested update %s failed verification; running %s again", requested, previous)
            return previous, False
        if not self.manager.config.requires_respawn:
            log.info("Handing off to %s", requested)
            return requested, False

        self._enter(RunState.RESPAWNING)
        try:
            if self.launcher.respawn():
                return None, True
        except Exception as exc:
            log.warning("Respawn failed: %s", exc)
            self.manager.report(exc)
        return previous, False
