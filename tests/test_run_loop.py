from __future__ import annotations

import sys
import tempfile
import time
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

from autoupdater.common.types import RunState, UpdateStrategy
from autoupdater.common.signed_stream import generate_key_pair
from autoupdater.launcher.manager import UpdaterManager, strategy_from_args
from autoupdater.launcher.process_service import ContextResult, ProcessService
from autoupdater.launcher.run_loop import LAUNCH_FAILED, RunLoop

from release_fixtures import FakeTransport, build_release, make_config


MANIFEST_URL = "https://updates.example.com/autoupdate.manifest"
PACKAGE_URL = "https://mirror.example.com/1.2/package.zip"
INSTALLED_NAME = "20240501123000"


class ScriptedLauncher:
    def __init__(self, script=(), respawn_result: object = True):
        self.script = list(script)
        self.calls: list[tuple[Path, list[str]]] = []
        self.respawn_result = respawn_result
        self.respawns = 0

    def run(self, folder: Path, args) -> ContextResult:
        self.calls.append((Path(folder), list(args)))
        step = self.script.pop(0) if self.script else ContextResult(exit_code=0)
        return step() if callable(step) else step

    def respawn(self) -> bool:
        self.respawns += 1
        if isinstance(self.respawn_result, Exception):
            raise self.respawn_result
        return bool(self.respawn_result)

    @property
    def folders(self) -> list[Path]:
        return [folder for folder, _ in self.calls]


class RunLoopTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.root = Path(self._td.name)
        self.private, self.public = generate_key_pair()
        self.errors: list[Exception] = []
        self.environ: dict[str, str] = {}
        self.transport = FakeTransport()
        self.release = build_release(self.root, self.private, version="1.2")
        self.transport.add(MANIFEST_URL, self.release.manifest_path)
        self.transport.add(PACKAGE_URL, self.release.archive_path)

    def _manager(self, launcher: ScriptedLauncher, **overrides) -> UpdaterManager:
        config = make_config(self.root, self.public, **overrides)
        return UpdaterManager(
            config,
            transport=self.transport,
            launcher=launcher,
            on_error=self.errors.append,
            environ=self.environ,
        )

    def _installed_folder(self, manager: UpdaterManager) -> Path:
        return manager.install_dir / INSTALLED_NAME

    def test_runs_current_version_when_nothing_installed(self) -> None:
        launcher = ScriptedLauncher([ContextResult(exit_code=4)])
        manager = self._manager(launcher)
        loop = RunLoop(manager, launcher)

        self.assertEqual(loop.run(["--flag"], UpdateStrategy.NEVER), 4)
        self.assertEqual(launcher.calls, [(manager.config.app_dir, ["--flag"])])
        self.assertEqual(
            loop.history,
            [RunState.DISCOVERING, RunState.SELECTING, RunState.RUNNING, RunState.VERIFYING_HANDOFF, RunState.DONE],
        )
        self.assertEqual(self.transport.requests, [])
        self.assertEqual(self.environ[manager.signals.install_root_var], str(manager.config.app_dir))

    def test_prefers_newest_verified_install(self) -> None:
        launcher = ScriptedLauncher()
        manager = self._manager(launcher)
        self.assertTrue(manager.download_and_unpack_update(self.release.remote_manifest))

        manager.run_from_most_recent(lambda args: 0, [], UpdateStrategy.NEVER)
        self.assertEqual(launcher.folders, [self._installed_folder(manager)])

    def test_corrupted_install_is_skipped(self) -> None:
        launcher = ScriptedLauncher()
        manager = self._manager(launcher)
        self.assertTrue(manager.download_and_unpack_update(self.release.remote_manifest))
        (self._installed_folder(manager) / "app.py").write_text("tampered\n", encoding="utf-8")

        manager.run_from_most_recent(lambda args: 0, [], UpdateStrategy.NEVER)
        self.assertEqual(launcher.folders, [manager.config.app_dir])
        self.assertTrue(self.errors)

    def test_cache_is_invalidated_after_install(self) -> None:
        manager = self._manager(ScriptedLauncher())
        self.assertFalse(manager.has_update_installed)
        self.assertTrue(manager.download_and_unpack_update(self.release.remote_manifest))
        self.assertTrue(manager.has_update_installed)
        self.assertEqual(manager.best_installed().manifest.version, "1.2")

    def test_child_request_hands_off_to_verified_folder(self) -> None:
        launcher = ScriptedLauncher()
        manager = self._manager(launcher)
        target = self._installed_folder(manager)

        def install_then_request() -> ContextResult:
            self.assertTrue(manager.download_and_unpack_update(self.release.remote_manifest))
            return ContextResult(exit_code=0, requested_folder=target)

        launcher.script = [install_then_request, ContextResult(exit_code=3)]
        loop = RunLoop(manager, launcher)

        self.assertEqual(loop.run([], UpdateStrategy.NEVER), 3)
        self.assertEqual(launcher.folders, [manager.config.app_dir, target])
        self.assertEqual(launcher.respawns, 0)
        self.assertEqual(loop.history.count(RunState.RUNNING), 2)

    def test_failed_handoff_reruns_previous_folder(self) -> None:
        bogus = self.root / "bogus"
        bogus.mkdir()
        launcher = ScriptedLauncher(
            [ContextResult(exit_code=0, requested_folder=bogus), ContextResult(exit_code=5)]
        )
        manager = self._manager(launcher)

        self.assertEqual(manager.run_from_most_recent(lambda args: 0, [], UpdateStrategy.NEVER), 5)
        self.assertEqual(launcher.folders, [manager.config.app_dir, manager.config.app_dir])
        self.assertTrue(self.errors)

    def test_respawn_takes_over(self) -> None:
        launcher = ScriptedLauncher(respawn_result=True)
        manager = self._manager(launcher, requires_respawn=True)
        target = self._installed_folder(manager)

        def install_then_request() -> ContextResult:
            manager.download_and_unpack_update(self.release.remote_manifest)
            return ContextResult(exit_code=9, requested_folder=target)

        launcher.script = [install_then_request]
        loop = RunLoop(manager, launcher)

        self.assertEqual(loop.run([], UpdateStrategy.NEVER), 0)
        self.assertEqual(launcher.respawns, 1)
        self.assertEqual(len(launcher.calls), 1)
        self.assertEqual(loop.history[-2:], [RunState.RESPAWNING, RunState.DONE])

    def test_failed_respawn_falls_back(self) -> None:
        launcher = ScriptedLauncher(respawn_result=OSError("cannot spawn"))
        manager = self._manager(launcher, requires_respawn=True)
        target = self._installed_folder(manager)

        def install_then_request() -> ContextResult:
            manager.download_and_unpack_update(self.release.remote_manifest)
            return ContextResult(exit_code=0, requested_folder=target)

        launcher.script = [install_then_request, ContextResult(exit_code=6)]

        self.assertEqual(manager.run_from_most_recent(lambda args: 0, [], UpdateStrategy.NEVER), 6)
        self.assertEqual(launcher.folders, [manager.config.app_dir, manager.config.app_dir])
        self.assertTrue(any(isinstance(e, OSError) for e in self.errors))

    def test_install_before_runs_new_version(self) -> None:
        launcher = ScriptedLauncher()
        manager = self._manager(launcher)

        manager.run_from_most_recent(lambda args: 0, ["--auto-update-strategy=InstallBefore"])
        self.assertEqual(launcher.folders, [self._installed_folder(manager)])
        self.assertEqual(self.transport.requests, [MANIFEST_URL, PACKAGE_URL])
        self.assertEqual(manager.best_installed().manifest.version, "1.2")

    def test_check_before_only_detects(self) -> None:
        launcher = ScriptedLauncher()
        manager = self._manager(launcher)

        manager.run_from_most_recent(lambda args: 0, [], UpdateStrategy.CHECK_BEFORE)
        self.assertEqual(launcher.folders, [manager.config.app_dir])
        self.assertEqual(self.transport.requests, [MANIFEST_URL])
        self.assertEqual(manager.find_installed_versions(), [])

    def test_install_after_installs_for_next_launch(self) -> None:
        launcher = ScriptedLauncher()
        manager = self._manager(launcher)

        def run_without_network() -> ContextResult:
            self.assertEqual(self.transport.requests, [])
            return ContextResult(exit_code=0)

        launcher.script = [run_without_network]
        manager.run_from_most_recent(lambda args: 0, [], UpdateStrategy.INSTALL_AFTER)

        self.assertEqual(launcher.folders, [manager.config.app_dir])
        self.assertEqual([v.folder.name for v in manager.find_installed_versions()], [INSTALLED_NAME])

    def test_install_during_finishes_before_returning(self) -> None:
        launcher = ScriptedLauncher()
        manager = self._manager(launcher)

        def wait_for_install() -> ContextResult:
            deadline = time.monotonic() + 10
            while not manager.find_installed_versions() and time.monotonic() < deadline:
                time.sleep(0.01)
            return ContextResult(exit_code=0)

        launcher.script = [wait_for_install]
        manager.run_from_most_recent(lambda args: 0, [], UpdateStrategy.INSTALL_DURING)

        self.assertEqual(launcher.folders, [manager.config.app_dir])
        self.assertEqual(manager.best_installed().folder.name, INSTALLED_NAME)

    def test_sleep_marker_delays_startup(self) -> None:
        launcher = ScriptedLauncher()
        manager = self._manager(launcher, respawn_grace_seconds=2.5)
        self.environ[manager.signals.sleep_var] = "1"

        with patch("autoupdater.launcher.run_loop.time.sleep") as sleep:
            manager.run_from_most_recent(lambda args: 0, [], UpdateStrategy.NEVER)

        sleep.assert_called_once_with(2.5)
        self.assertNotIn(manager.signals.sleep_var, self.environ)

    def test_isolated_context_calls_entry_directly(self) -> None:
        launcher = ScriptedLauncher()
        manager = self._manager(launcher)
        self.environ[manager.signals.context_var] = str(manager.config.app_dir)
        seen: list[list[str]] = []

        def entry(args: list[str]) -> int:
            seen.append(args)
            return 12

        self.assertEqual(manager.run_from_most_recent(entry, ["x"]), 12)
        self.assertEqual(seen, [["x"]])
        self.assertEqual(launcher.calls, [])

    def test_set_run_update_writes_request(self) -> None:
        manager = self._manager(ScriptedLauncher())
        handoff = self.root / "handoff" / "request.handoff"
        self.environ[manager.signals.handoff_file_var] = str(handoff)
        self.assertFalse(manager.set_run_update())

        self.assertTrue(manager.download_and_unpack_update(self.release.remote_manifest))
        self.assertTrue(manager.set_run_update())
        expected = str(self._installed_folder(manager))
        self.assertEqual(self.environ[manager.signals.load_update_var], expected)
        self.assertEqual(handoff.read_text(encoding="utf-8"), expected)

    def test_context_on_newest_install_sees_no_update(self) -> None:
        parent = self._manager(ScriptedLauncher())
        self.assertTrue(parent.download_and_unpack_update(self.release.remote_manifest))
        target = self._installed_folder(parent)
        handoff = self.root / "tmp" / "child.handoff"
        service = ProcessService(parent.config, parent.signals, entry_module="app")
        self.environ = service.build_environment(target, handoff)

        child = self._manager(ScriptedLauncher())
        self.assertEqual(child.running_folder, target)
        self.assertEqual(child.self_version.version, "1.2")
        self.assertFalse(child.has_update_installed)
        self.assertFalse(child.set_run_update())
        self.assertFalse(handoff.exists())
        self.assertNotIn(child.signals.load_update_var, self.environ)

    def test_first_launch_failure_is_reported(self) -> None:
        def cannot_start() -> ContextResult:
            raise FileNotFoundError("python is missing")

        launcher = ScriptedLauncher([cannot_start])
        manager = self._manager(launcher)
        loop = RunLoop(manager, launcher)

        self.assertEqual(loop.run([], UpdateStrategy.NEVER), LAUNCH_FAILED)
        self.assertEqual(launcher.folders, [manager.config.app_dir])
        self.assertIsInstance(self.errors[0], FileNotFoundError)
        self.assertEqual(loop.history[-1], RunState.DONE)

    def test_handoff_launch_failure_falls_back(self) -> None:
        launcher = ScriptedLauncher()
        manager = self._manager(launcher)
        target = self._installed_folder(manager)

        def install_then_request() -> ContextResult:
            self.assertTrue(manager.download_and_unpack_update(self.release.remote_manifest))
            return ContextResult(exit_code=0, requested_folder=target)

        def cannot_start() -> ContextResult:
            raise FileNotFoundError("cannot start python in handoff folder")

        launcher.script = [
            install_then_request,
            cannot_start,
            ContextResult(exit_code=8, requested_folder=target),
        ]

        self.assertEqual(manager.run_from_most_recent(lambda args: 0, [], UpdateStrategy.NEVER), 8)
        self.assertEqual(launcher.folders, [manager.config.app_dir, target, manager.config.app_dir])
        self.assertTrue(any(isinstance(e, FileNotFoundError) for e in self.errors))

    def test_main_module_entry_uses_main_spec(self) -> None:
        manager = self._manager(None)

        def entry(args: list[str]) -> int:
            return 0

        entry.__module__ = "__main__"
        host_main = SimpleNamespace(__spec__=SimpleNamespace(name="hostapp.__main__"))
        with patch.dict(sys.modules, {"__main__": host_main}):
            launcher = manager.context_launcher(entry)
        self.assertIsInstance(launcher, ProcessService)
        self.assertEqual(launcher.entry_module, "hostapp")

    def test_unresolvable_entry_module_does_not_raise(self) -> None:
        manager = self._manager(None)

        def entry(args: list[str]) -> int:
            return 0

        entry.__module__ = "__main__"
        with patch.dict(sys.modules, {"__main__": SimpleNamespace(__spec__=None)}):
            result = manager.run_from_most_recent(entry, [], UpdateStrategy.NEVER)
        self.assertEqual(result, LAUNCH_FAILED)
        self.assertTrue(any(isinstance(e, RuntimeError) for e in self.errors))


class StrategyArgumentTests(unittest.TestCase):
    def test_equals_and_separate_forms(self) -> None:
        self.assertIs(strategy_from_args(["--auto-update-strategy=never"], "install-during"), UpdateStrategy.NEVER)
        self.assertIs(
            strategy_from_args(["a", "--auto-update-strategy", "CheckAfter"], "never"),
            UpdateStrategy.CHECK_AFTER,
        )

    def test_missing_or_invalid_uses_default(self) -> None:
        self.assertIs(strategy_from_args([], "install-before"), UpdateStrategy.INSTALL_BEFORE)
        self.assertIs(
            strategy_from_args(["--auto-update-strategy=sometimes"], UpdateStrategy.CHECK_DURING),
            UpdateStrategy.CHECK_DURING,
        )

    def test_strategy_properties(self) -> None:
        self.assertFalse(UpdateStrategy.NEVER.checks)
        self.assertIsNone(UpdateStrategy.NEVER.timing)
        self.assertTrue(UpdateStrategy.INSTALL_AFTER.installs)
        self.assertFalse(UpdateStrategy.CHECK_BEFORE.installs)
        self.assertEqual(UpdateStrategy.parse("install_during"), UpdateStrategy.INSTALL_DURING)


if __name__ == "__main__":
    unittest.main()
