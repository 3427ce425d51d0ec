from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable


@dataclass(frozen=True)
class BundleFile:
    path: str
    content: bytes


def hash_content(content: bytes | str) -> str:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def hash_bundle(files: Iterable[BundleFile]) -> str:
    """
    Deterministic SHA-256 over a set of files.

    Files are sorted by path and reduced to ``path:sha256(content)`` lines, so
    the digest ignores collection order but changes on any rename or edit.
    """
    lines = [f"{f.path}:{hash_content(f.content)}" for f in sorted(files, key=lambda f: f.path)]
    return hash_content("\n".join(lines))


def hash_installed_files(root: Path, paths: Iterable[str]) -> str:
    """Rehash files already on disk; raises FileNotFoundError if any are missing."""
    return hash_bundle(BundleFile(path=p, content=(root / p).read_bytes()) for p in paths)
