"""Atomic file writes for configuration."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path


def write_atomic(path: str | os.PathLike, text: str, mode: int = 0o644) -> None:
    """Replace *path* with *text* so readers see either the old or the new file.

    The temporary file lives next to the target; parent directories are
    created as needed.
    """
    target = Path(path).expanduser().absolute()
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        tmp.chmod(mode)
        tmp.replace(target)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def save_json(path: str | os.PathLike, data: dict) -> None:
    """Serialize *data* (indented, UTF-8) and write it atomically."""
    write_atomic(path, json.dumps(data, ensure_ascii=False, indent=2) + "\n")
