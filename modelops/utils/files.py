"""File helpers for artifact storage."""

import hashlib
import shutil
from pathlib import Path


def copy_with_digest(source: Path, destination: Path) -> tuple[int, str]:
    """Copy ``source`` to ``destination`` and return the copy's size and md5 digest."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, destination)
    digest = hashlib.md5()  # noqa: S324
    with destination.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return destination.stat().st_size, digest.hexdigest()
