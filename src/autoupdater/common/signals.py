from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import MutableMapping


log = logging.getLogger(__name__)

_ENV_TEMPLATE = "AUTOUPDATER_{app}_{name}"


def env_app_name(app_name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]", "_", str(app_name or "").strip()).upper()
    if not cleaned:
        raise ValueError("Application name is required for handoff signals.")
    return cleaned


class HandoffSignals:
    """Named signals shared between the run loop and the contexts it launches.

    ``INSTALL_ROOT`` and ``SLEEP`` travel from parent to child through the
    environment. ``LOAD_UPDATE`` travels the other way; a child process cannot
    modify its parent's environment, so the request is also written to the
    file named by ``HANDOFF_FILE`` when the parent provided one.
    """

    def __init__(self, app_name: str, environ: MutableMapping[str, str] | None = None):
        self.app_name = app_name
        self.environ = os.environ if environ is None else environ
        key = env_app_name(app_name)
        self.install_root_var = _ENV_TEMPLATE.format(app=key, name="INSTALL_ROOT")
        self.load_update_var = _ENV_TEMPLATE.format(app=key, name="LOAD_UPDATE")
        self.sleep_var = _ENV_TEMPLATE.format(app=key, name="SLEEP")
        self.context_var = _ENV_TEMPLATE.format(app=key, name="CONTEXT")
        self.handoff_file_var = _ENV_TEMPLATE.format(app=key, name="HANDOFF_FILE")

    def _get(self, name: str) -> str:
        return str(self.environ.get(name, "") or "").strip()

    def install_root(self) -> Path | None:
        value = self._get(self.install_root_var)
        return Path(value) if value else None

    def publish_install_root(self, path: Path) -> None:
        self.environ[self.install_root_var] = str(path)

    def in_isolated_context(self) -> bool:
        return bool(self._get(self.context_var))

    def context_folder(self) -> Path | None:
        value = self._get(self.context_var)
        return Path(value) if value else None

    def handoff_file(self) -> Path | None:
        value = self._get(self.handoff_file_var)
        return Path(value) if value else None

    def request_update(self, folder: Path) -> None:
        self.environ[self.load_update_var] = str(folder)
        target = self.handoff_file()
        if target is None:
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(".tmp")
        tmp.write_text(str(folder), encoding="utf-8")
        tmp.replace(target)

    def consume_update_request(self, handoff_file: Path | None = None) -> Path | None:
        requested = self._get(self.load_update_var)
        self.environ.pop(self.load_update_var, None)

        target = handoff_file if handoff_file is not None else self.handoff_file()
        if target is not None and target.exists():
            text = target.read_text(encoding="utf-8").strip()
            target.unlink()
            if text:
                requested = text
        return Path(requested) if requested else None

    def take_sleep_marker(self) -> bool:
        if not self._get(self.sleep_var):
            return False
        self.environ.pop(self.sleep_var, None)
        return True

    def context_environment(self, folder: Path, handoff_file: Path) -> dict[str, str]:
        env = dict(self.environ)
        env[self.context_var] = str(folder)
        env[self.handoff_file_var] = str(handoff_file)
        env.pop(self.load_update_var, None)
        env.pop(self.sleep_var, None)
        return env

    def respawn_environment(self) -> dict[str, str]:
        env = dict(self.environ)
        env[self.sleep_var] = "1"
        for name in (self.context_var, self.handoff_file_var, self.load_update_var):
            env.pop(name, None)
        return env
