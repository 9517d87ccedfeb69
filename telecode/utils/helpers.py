"""Filesystem helpers shared by the persistent stores."""

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from loguru import logger


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def read_json_file(path: Path, default: Any) -> Any:
    """
    Read a JSON document, falling back to ``default`` when the file is
    missing or unreadable.
    """
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to read {path}: {e}")
        return default


def write_json_file(path: Path, data: Any) -> None:
    """Replace ``path`` with ``data`` as JSON without ever leaving a partial file."""
    ensure_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f"{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            json.dump(data, tmp, ensure_ascii=False, indent=2)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
