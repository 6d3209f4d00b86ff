from __future__ import annotations

import logging
import os
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

from autoupdater.common.config import UpdaterConfig
from autoupdater.common.signals import HandoffSignals


log = logging.getLogger(__name__)


def main_module_name() -> str | None:
    main = sys.modules.get("__main__")
    spec = getattr(main, "__spec__", None)
    name = getattr(spec, "name", None)
    if not name or name == "__main__":
        return None
    if name.endswith(".__main__"):
        return name[: -len(".__main__")]
    return name


def default_respawn_command() -> list[str]:
    # `python -m pkg` leaves a file path in argv[0]; relaunch by module name to keep the package context.
    module = main_module_name()
    if module:
        return [sys.executable, "-m", module, *sys.argv[1:]]
    return [sys.executable, *sys.argv]


@dataclass(frozen=True)
class ContextResult:
    exit_code: int
    requested_folder: Path | None = None


class ExecutionLauncher(Protocol):
    def run(self, folder: Path, args: Sequence[str]) -> ContextResult: ...

    def respawn(self) -> bool: ...


class ProcessService:
    """Runs one installed version in a child process rooted at its folder."""

    def __init__(
        self,
        config: UpdaterConfig,
        signals: HandoffSignals,
        entry_module: str | None = None,
        respawn_command: Sequence[str] | None = None,
    ):
        self.config = config
        self.signals = signals
        self.entry_module = entry_module or config.entry_module
        command = respawn_command or config.respawn_command
        self.respawn_command = list(command) if command else None

    @staticmethod
    def _merge_pythonpath(parts: list[str], existing: str = "") -> str:
        merged: list[str] = []
        seen: set[str] = set()

        for part in [*parts, *existing.split(os.pathsep)]:
            p = str(part).strip()
            if not p:
                continue
            key = os.path.normcase(os.path.normpath(p))
            if key in seen:
                continue
            seen.add(key)
            merged.append(p)
        return os.pathsep.join(merged)

    def _handoff_file(self) -> Path:
        root = self.config.temp_dir or Path(tempfile.gettempdir())
        return root / f"autoupdater-{self.signals.app_name}-{os.getpid()}.handoff"

    def build_command(self, args: Sequence[str]) -> list[str]:
        if not self.entry_module:
            raise RuntimeError("No entry module configured for the isolated execution context.")
        return [sys.executable, "-m", self.entry_module, *args]

    def build_environment(self, folder: Path, handoff_file: Path) -> dict[str, str]:
        env = self.signals.context_environment(folder, handoff_file)
        env["PYTHONPATH"] = self._merge_pythonpath([str(folder)], env.get("PYTHONPATH", ""))
        return env

    def run(self, folder: Path, args: Sequence[str]) -> ContextResult:
        handoff_file = self._handoff_file()
        if handoff_file.exists():
            handoff_file.unlink()

        cmd = self.build_command(args)
        log.info("Running %s from %s", self.entry_module, folder)
        completed = subprocess.run(
            cmd,
            cwd=str(folder),
            env=self.build_environment(folder, handoff_file),
            shell=False,
            check=False,
        )
        requested = self.signals.consume_update_request(handoff_file)
        return ContextResult(exit_code=completed.returncode, requested_folder=requested)

    def respawn(self) -> bool:
        cmd = self.respawn_command or default_respawn_command()
        log.info("Respawning application: %s", cmd)
        proc = subprocess.Popen(
            cmd,
            env=self.signals.respawn_environment(),
            cwd=str(self.signals.install_root() or self.config.app_dir),
            shell=False,
        )
        try:
            code = proc.wait(timeout=self.config.respawn_wait_seconds)
        except subprocess.TimeoutExpired:
            return True
        log.warning("Respawned process exited early with code %s", code)
        return False
