"""
Atomic writers for report outputs.

Tables and the run summary are written to a temporary file in the target
directory and moved into place with ``os.replace()``, so an interrupted run
never leaves a half-written CSV next to complete ones.
"""

from __future__ import annotations

import json
import os
import tempfile
from typing import Any, Callable

import pandas as pd


def _atomic_write(path: str | os.PathLike, write: Callable[[Any], None]) -> None:
    path = str(path)
    dir_path = os.path.dirname(path) or "."
    os.makedirs(dir_path, exist_ok=True)
    tmp_path: str | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w", dir=dir_path, suffix=".tmp", delete=False, newline=""
        ) as tmp:
            tmp_path = tmp.name
            write(tmp)
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def atomic_write_json(path: str | os.PathLike, data: Any, *, indent: int = 2) -> None:
    """Write *data* as JSON atomically. Non-JSON scalars fall back to str()."""
    _atomic_write(path, lambda f: json.dump(data, f, indent=indent, default=str))


def atomic_write_text(path: str | os.PathLike, content: str) -> None:
    """Write *content* as text atomically."""
    _atomic_write(path, lambda f: f.write(content))


def atomic_write_csv(path: str | os.PathLike, frame: pd.DataFrame, *, index: bool = True) -> None:
    """Write a DataFrame as CSV atomically."""
    _atomic_write(path, lambda f: frame.to_csv(f, index=index))
