#!/usr/bin/env python3
"""
Portable calibre launcher.

Runs calibre with its program files, library, configuration, metadata
database, source tree and temporary files all redirected to folders next to
the launcher, e.g. on a USB stick:

- Calibre            Linux program files
- CalibreBin         macOS program files (calibre.app)
- CalibreConfig      configuration
- CalibreLibrary     books and metadata
- CalibreSource      calibre source tree (optional)

Every location can be overridden from the environment or from
calibre-portable.conf, which is generated on first run.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Callable, Mapping

from calibre_portable import VERSION
from calibre_portable.cleanup import CleanupGuard
from calibre_portable.config_file import load_config
from calibre_portable.console import eprint
from calibre_portable.errors import LauncherError
from calibre_portable.launcher import launch
from calibre_portable.platform_profile import detect_platform
from calibre_portable.resolver import DirectoryResolver, ResolvedPaths
from calibre_portable.upgrader import make_upgrader, run_upgrade

PROG = "calibre-portable"


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog=PROG, description="Run a portable instance of calibre.")
    p.add_argument(
        "-u",
        "--upgrade-install",
        action="store_true",
        help="upgrade or install the portable calibre binaries",
    )
    p.add_argument("-c", "--create-dirs", action="store_true", help="create missing directories if not found")
    p.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return p.parse_args(argv)


def main(
    argv: list[str],
    *,
    base_dir: Path | None = None,
    environ: Mapping[str, str] | None = None,
    read: Callable[[str], str] = input,
) -> int:
    args = parse_args(argv)
    base_dir = (base_dir or Path.cwd()).resolve()
    environ = dict(os.environ if environ is None else environ)
    profile = detect_platform(environ)

    try:
        config = load_config(base_dir, environ)
    except LauncherError as exc:
        eprint(f"Error: {exc}")
        return exc.exit_code

    resolver = DirectoryResolver(base_dir, environ, config, profile, create_dirs=args.create_dirs)
    settings = resolver.launch_settings()
    paths = ResolvedPaths()

    with CleanupGuard(paths, enabled=settings.cleanup):
        if args.upgrade_install:
            resolver.locate(paths)
            try:
                upgrader = make_upgrader(profile, base_dir)
            except LauncherError as exc:
                eprint(f"Error: {exc}")
                return exc.exit_code
            return run_upgrade(upgrader, paths, workdir=base_dir, create_dirs=args.create_dirs)

        resolver.resolve_all(paths)
        return launch(paths, settings, base_dir=base_dir, base_env=environ, read=read)


def entrypoint() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    entrypoint()
