from __future__ import annotations

import os
import shutil
import stat
import tempfile
from pathlib import Path

WORLD_RWX = stat.S_IRWXU | stat.S_IRWXG | stat.S_IRWXO


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` so a reader sees either the old file or the new one.

    The content goes to a hidden sibling first and is renamed into place; the
    parent directory is synced afterwards where the platform allows it.
    """
    directory = path.parent
    directory.mkdir(parents=True, exist_ok=True)
    fd, staged = tempfile.mkstemp(dir=str(directory), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staged, path)
    except BaseException:
        Path(staged).unlink(missing_ok=True)
        raise

    if hasattr(os, "O_DIRECTORY"):
        dir_fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        except OSError:
            # not every filesystem can sync a directory (e.g. some FAT sticks)
            pass
        finally:
            os.close(dir_fd)


def relax_permissions(path: Path) -> bool:
    """chmod a+rwx on a single directory; best effort, returns success."""
    try:
        mode = path.stat().st_mode
        os.chmod(path, stat.S_IMODE(mode) | WORLD_RWX)
    except OSError:
        return False
    return True


def recreate_dir(path: Path) -> None:
    if path.exists() or path.is_symlink():
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    path.mkdir(parents=True)


def remove_tree(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)
