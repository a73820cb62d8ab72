from __future__ import annotations

import signal
from types import FrameType
from typing import Any

from calibre_portable.fs_ops import relax_permissions, remove_tree
from calibre_portable.resolver import ResolvedPaths

HANDLED_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)
)


def release(paths: ResolvedPaths) -> None:
    """Mark every resolved directory world-writable, then drop the temp tree."""
    for directory in paths.cleanup_targets():
        if directory.is_dir():
            relax_permissions(directory)
    if paths.temp_dir is not None:
        remove_tree(paths.temp_dir)


def _exit_on_signal(signum: int, _frame: FrameType | None) -> None:
    raise SystemExit(128 + signum)


class CleanupGuard:
    """Scope that runs :func:`release` on every way out of the launcher.

    Termination signals are turned into ``SystemExit`` while the guard is
    active so an interrupt unwinds through ``__exit__`` like any other exit.
    The guard keeps a reference to ``paths``; slots filled after entry are
    still released.
    """

    def __init__(self, paths: ResolvedPaths, *, enabled: bool = True):
        self.paths = paths
        self.enabled = enabled
        self._previous: dict[int, Any] = {}

    def __enter__(self) -> ResolvedPaths:
        for signum in HANDLED_SIGNALS:
            try:
                self._previous[signum] = signal.signal(signum, _exit_on_signal)
            except ValueError:
                # signal handlers can only be installed from the main thread
                break
        return self.paths

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if self.enabled:
                release(self.paths)
        finally:
            for signum, handler in self._previous.items():
                signal.signal(signum, handler)
            self._previous.clear()
        return False
