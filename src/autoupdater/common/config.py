from __future__ import annotations

import logging
import os
import shlex
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from autoupdater.common.signals import env_app_name


log = logging.getLogger(__name__)

_ENV_PREFIX = "AUTOUPDATER_"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(_ENV_PREFIX + name, default).strip()


def _env_list(name: str) -> tuple[str, ...]:
    return tuple(v.strip() for v in _env(name).split(",") if v.strip())


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _default_app_dir() -> Path:
    entry = sys.argv[0] if sys.argv and sys.argv[0] else ""
    if entry and entry != "-c":
        return Path(entry).resolve().parent
    return Path.cwd()


def _local_data_root() -> Path:
    if os.name == "nt":
        return Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    return Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))


def _roaming_data_root() -> Path:
    if os.name == "nt":
        return Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def is_directory_writable(path: Path) -> bool:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    probe = path / f"test-{stamp}" if path.is_dir() else path
    if probe.exists():
        return False
    try:
        probe.mkdir(parents=True)
        if probe != path:
            probe.rmdir()
        return True
    except OSError:
        return False


@dataclass(frozen=True)
class UpdaterConfig:
    app_name: str
    public_key: str
    urls: tuple[str, ...] = ()
    app_dir: Path = field(default_factory=_default_app_dir)
    install_dir: Path | None = None
    temp_dir: Path | None = None
    entry_module: str | None = None
    self_version: str = "0.0"
    self_release_type: str = "Nightly"
    isolated_channels: tuple[str, ...] = ("debug",)
    requires_respawn: bool = False
    respawn_command: tuple[str, ...] = ()
    default_strategy: str = "install-during"
    during_delay_seconds: float = 10.0
    respawn_wait_seconds: float = 5.0
    respawn_grace_seconds: float = 15.0
    trusted_hosts: tuple[str, ...] = ()
    allow_insecure_http: bool = False
    connect_timeout_seconds: int = 10
    read_timeout_seconds: int = 60
    download_chunk_size: int = 1024 * 1024
    max_retries: int = 3

    @classmethod
    def from_env(cls, app_name: str, **overrides: Any) -> "UpdaterConfig":
        values: dict[str, Any] = {
            "app_name": app_name,
            "public_key": _env("PUBLIC_KEY"),
            "urls": _env_list("URLS"),
            "self_version": _env("SELF_VERSION", "0.0"),
            "self_release_type": _env("RELEASE_TYPE", "Nightly"),
            "isolated_channels": _env_list("ISOLATED_CHANNELS") or ("debug",),
            "requires_respawn": _env_bool("REQUIRES_RESPAWN"),
            "respawn_command": tuple(shlex.split(_env("RESPAWN_COMMAND"))),
            "default_strategy": _env("STRATEGY", "install-during"),
            "during_delay_seconds": float(_env("DURING_DELAY", "10")),
            "respawn_wait_seconds": float(_env("RESPAWN_WAIT", "5")),
            "respawn_grace_seconds": float(_env("RESPAWN_GRACE", "15")),
            "trusted_hosts": _env_list("TRUSTED_HOSTS"),
            "allow_insecure_http": _env_bool("ALLOW_HTTP"),
            "connect_timeout_seconds": int(_env("CONNECT_TIMEOUT", "10")),
            "read_timeout_seconds": int(_env("READ_TIMEOUT", "60")),
            "download_chunk_size": int(_env("DOWNLOAD_CHUNK", str(1024 * 1024))),
            "max_retries": int(_env("MAX_RETRIES", "3")),
        }
        for name, key in (("APP_DIR", "app_dir"), ("INSTALL_DIR", "install_dir"), ("TEMP_DIR", "temp_dir")):
            raw = _env(name)
            if raw:
                values[key] = Path(raw)
        entry_module = _env("ENTRY_MODULE")
        if entry_module:
            values["entry_module"] = entry_module
        values.update(overrides)
        return cls(**values)

    def with_changes(self, **changes: Any) -> "UpdaterConfig":
        return replace(self, **changes)

    def install_root(self) -> Path:
        # Isolated contexts run from an update folder; INSTALL_ROOT names the original one.
        published = os.environ.get(f"{_ENV_PREFIX}{env_app_name(self.app_name)}_INSTALL_ROOT", "").strip()
        if published:
            return Path(published)
        return self.app_dir

    def install_dir_candidates(self) -> list[Path]:
        return [
            self.install_root() / "updates",
            _local_data_root() / self.app_name / "updates",
            _roaming_data_root() / self.app_name / "updates",
        ]

    def resolve_install_dir(self) -> Path:
        if self.install_dir is not None:
            self.install_dir.mkdir(parents=True, exist_ok=True)
            return self.install_dir
        for candidate in self.install_dir_candidates():
            if is_directory_writable(candidate):
                return candidate
        raise RuntimeError(f"No writable update directory found for {self.app_name}.")
