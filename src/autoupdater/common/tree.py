from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Iterator


def path_key(relpath: str) -> str:
    normalized = relpath.replace("\\", "/")
    if os.name == "nt":
        return normalized.lower()
    return normalized


class IgnoreMatcher:
    """Anchored prefix matching for ignored manifest entries.

    An ignored ``logs`` or ``logs/`` matches ``logs`` itself and everything
    under ``logs/``, but never ``logs2/``.
    """

    def __init__(self, paths: Iterable[str]):
        self._prefixes = sorted({path_key(p).rstrip("/") for p in paths if p.strip("/")})

    def matches(self, relpath: str) -> bool:
        key = path_key(relpath).rstrip("/")
        return any(key == p or key.startswith(p + "/") for p in self._prefixes)


def walk_tree(root: Path) -> Iterator[tuple[str, Path]]:
    """Yield (relative posix path, absolute path); directories end with ``/``."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        rel_base = base.relative_to(root).as_posix()
        prefix = "" if rel_base == "." else rel_base + "/"
        for name in dirnames:
            yield prefix + name + "/", base / name
        for name in sorted(filenames):
            yield prefix + name, base / name
