"""
bookscribe.io - Atomic file output.

Attempt history exports and caption files are written to a temp file in the
destination directory and moved into place, so readers never see a partial
file.
"""

from __future__ import annotations

import json
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import IO, Any


def _atomic_write(path: Path, write: Callable[[IO[str]], None]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        delete=False,
        suffix=".tmp",
    ) as tmp:
        tmp_path = Path(tmp.name)
        try:
            write(tmp)
        except BaseException:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
    return tmp_path.replace(path)


def write_json(path: Path, data: dict[str, Any], indent: int = 2) -> Path:
    """Write a JSON document atomically, keeping non-ASCII text readable.

    Returns:
        The written path
    """
    return _atomic_write(path, lambda f: json.dump(data, f, indent=indent, ensure_ascii=False))


def write_text(path: Path, content: str) -> Path:
    """Write caption text atomically."""
    return _atomic_write(path, lambda f: f.write(content))
