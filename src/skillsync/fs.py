from __future__ import annotations

import hashlib
import json
import os
import shutil
from pathlib import Path
from typing import Any

from .errors import IoError


def write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


def write_json_atomic(path: Path, data: Any) -> None:
    write_text_atomic(path, json.dumps(data, indent=2, sort_keys=True) + "\n")


def lexists(path: Path) -> bool:
    try:
        os.lstat(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        raise IoError(f"Unable to access {path}: {e}", path=path, operation="lstat") from e
    return True


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree. Missing paths are fine."""
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as e:
        raise IoError(f"Unable to remove {path}: {e}", path=path, operation="remove") from e


def tree_digest(root: Path, *, exclude: frozenset[str] = frozenset()) -> str:
    """sha256 over relative paths, file bytes and symlink targets, in sorted order."""
    h = hashlib.sha256()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in exclude)
        rel_dir = os.path.relpath(dirpath, root)
        for name in sorted(filenames):
            if name in exclude:
                continue
            full = Path(dirpath) / name
            rel = os.path.normpath(os.path.join(rel_dir, name)).replace(os.sep, "/")
            h.update(rel.encode("utf-8") + b"\0")
            if full.is_symlink():
                h.update(b"L" + os.readlink(full).encode("utf-8"))
            else:
                with full.open("rb") as f:
                    for chunk in iter(lambda: f.read(65536), b""):
                        h.update(chunk)
            h.update(b"\0")
        for name in dirnames:
            rel = os.path.normpath(os.path.join(rel_dir, name)).replace(os.sep, "/")
            h.update(b"D" + rel.encode("utf-8") + b"\0")
    return h.hexdigest()
