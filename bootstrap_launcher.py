from __future__ import annotations

import os
import sys
from pathlib import Path


def _prepend_path(path: Path) -> None:
    if not path.exists():
        return
    p = str(path)
    if p not in sys.path:
        sys.path.insert(0, p)


def main() -> int:
    install_root = Path(__file__).resolve().parent

    _prepend_path(install_root / "src")

    os.environ.setdefault("AUTOUPDATER_APP_DIR", str(install_root))

    from autoupdater.launcher.cli import main as launcher_main

    return int(launcher_main())


if __name__ == "__main__":
    raise SystemExit(main())
