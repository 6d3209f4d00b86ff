from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from autoupdater.common.errors import IntegrityError, UpdateError
from autoupdater.common.manifest import ManifestInfo


ErrorReporter = Callable[[Exception], None]


@dataclass(frozen=True)
class InstalledVersion:
    folder: Path
    manifest: ManifestInfo


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: str | None = None
    error: UpdateError | None = None
    manifest: ManifestInfo | None = None

    @classmethod
    def passed(cls, manifest: ManifestInfo) -> "VerificationResult":
        return cls(ok=True, manifest=manifest)

    @classmethod
    def failed(cls, reason: str, error: UpdateError | None = None) -> "VerificationResult":
        return cls(ok=False, reason=reason, error=error or IntegrityError(reason))


class RunState(str, Enum):
    DISCOVERING = "discovering"
    SELECTING = "selecting"
    RUNNING = "running"
    VERIFYING_HANDOFF = "verifying-handoff"
    RESPAWNING = "respawning"
    DONE = "done"


class UpdateStrategy(str, Enum):
    CHECK_BEFORE = "check-before"
    CHECK_DURING = "check-during"
    CHECK_AFTER = "check-after"
    INSTALL_BEFORE = "install-before"
    INSTALL_DURING = "install-during"
    INSTALL_AFTER = "install-after"
    NEVER = "never"

    @property
    def checks(self) -> bool:
        return self is not UpdateStrategy.NEVER

    @property
    def installs(self) -> bool:
        return self.value.startswith("install-")

    @property
    def timing(self) -> str | None:
        if self is UpdateStrategy.NEVER:
            return None
        return self.value.split("-", 1)[1]

    @classmethod
    def parse(cls, value: object) -> "UpdateStrategy":
        raw = str(value or "").strip()
        # CheckBefore -> check-before
        text = re.sub(r"(?<=[a-z])(?=[A-Z])", "-", raw).lower().replace("_", "-")
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unknown update strategy: {value!r}")
