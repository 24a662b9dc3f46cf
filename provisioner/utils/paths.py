"""Path utilities for safe file IO and directory handling.

Functions here centralize name sanitization and atomic JSON writes.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any


def sanitize_name(name: str, replacement: str = "_") -> str:
    """Turn an instance identifier into a safe single path component.

    Keeps alphanumerics, dots, hyphens and underscores; collapses runs of the
    replacement character and never returns an empty or dot-only name.
    """
    sanitized = re.sub(r"[^\w.-]", replacement, name.strip())
    if replacement:
        sanitized = re.sub(f"{re.escape(replacement)}+", replacement, sanitized)
    sanitized = sanitized.strip(f". {replacement}")
    if not sanitized:
        sanitized = "unnamed"
    return sanitized[:200]


def ensure_subpath(root: Path, sub: Path | str) -> Path:
    """Return absolute path for `root/sub` ensuring it stays within `root`.

    Raises ValueError if the resolved path escapes the root directory.
    """
    root_resolved = Path(root).resolve()
    candidate = (root_resolved / Path(sub)).resolve()
    try:
        candidate.relative_to(root_resolved)
    except ValueError as e:
        raise ValueError(f"Path escapes root: {candidate} not in {root_resolved}") from e
    return candidate


def safe_write_json(path: Path, data: Any, *, encoding: str = "utf-8", indent: int = 2) -> None:
    """Atomically write JSON to file with parent creation.

    The payload goes to a temporary sibling first and is moved into place with
    os.replace, so readers see either the old or the new document.

    Propagates OSError/PermissionError to caller for handling.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            json.dump(data, f, indent=indent)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def read_json(path: Path, *, encoding: str = "utf-8") -> Any:
    """Read a JSON document.

    Raises:
        OSError: If the file cannot be read
        json.JSONDecodeError: If the content is not valid JSON
    """
    with open(path, "r", encoding=encoding) as f:
        return json.load(f)
