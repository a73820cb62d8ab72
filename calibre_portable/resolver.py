"""Directory resolution for a portable calibre instance.

Every setting is looked up in three tiers: a non-empty environment value,
then the config file, then the built-in default. Locating paths is kept
separate from the steps that report on them and create missing folders,
so the upgrade flow can reuse the former without side effects.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from calibre_portable import console
from calibre_portable.config_file import LIBRARY_DIRS_KEY, ConfigFile
from calibre_portable.fs_ops import recreate_dir
from calibre_portable.platform_profile import PlatformProfile

CALIBRE_EXECUTABLE = "calibre"
CACHE_DIR_NAME = "calibre_cache"

PLACEHOLDER_LIBRARIES = (
    "/path/to/first/CalibreLibrary",
    "/path/to/second/CalibreLibrary",
)

# Settings where an explicitly empty config value is meaningful.
EMPTY_ALLOWED = frozenset({"BIN_DIR"})


@dataclass
class ResolvedPaths:
    config_dir: Path | None = None
    library_dir: Path | None = None
    metadata_dir: Path | None = None
    src_dir: Path | None = None
    bin_dir: Path | None = None
    app_dir: Path | None = None
    temp_dir: Path | None = None
    cache_dir: Path | None = None
    calibre_command: str = CALIBRE_EXECUTABLE

    def cleanup_targets(self) -> list[Path]:
        slots = (self.config_dir, self.library_dir, self.metadata_dir, self.src_dir, self.app_dir)
        return [p for p in slots if p is not None]


@dataclass(frozen=True)
class LaunchSettings:
    override_lang: str | None = None
    confirm_start: bool = True
    cleanup: bool = True
    passthrough: Mapping[str, str] = field(default_factory=dict)


def resolve_setting(
    name: str,
    env: Mapping[str, str],
    config_values: Mapping[str, str],
    default: str | None = None,
) -> str | None:
    """env[name] ?? config[name] ?? default."""
    env_value = env.get(name)
    if env_value:
        return env_value
    if name in config_values:
        config_value = config_values[name]
        if config_value or name in EMPTY_ALLOWED:
            return config_value
    return default


def anchor_path(raw: str, base_dir: Path) -> Path:
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(str(candidate)))


def default_library_dirs(base_dir: Path) -> list[str]:
    return [*PLACEHOLDER_LIBRARIES, str(base_dir / "CalibreLibrary")]


def library_candidates(base_dir: Path, env: Mapping[str, str], config: ConfigFile) -> list[Path]:
    """Build the ordered candidate list, tier by tier for each index."""
    defaults = dict(enumerate(default_library_dirs(base_dir)))
    raw_env = env.get(LIBRARY_DIRS_KEY, "")
    from_env = dict(enumerate(raw_env.split(os.pathsep))) if raw_env else {}

    size = max([*defaults, *config.library_dirs, *from_env], default=-1) + 1
    candidates: list[Path] = []
    for index in range(size):
        raw = from_env.get(index) or config.library_dirs.get(index) or defaults.get(index)
        if raw:
            candidates.append(anchor_path(raw, base_dir))
    return candidates


def select_library(candidates: list[Path]) -> Path | None:
    for candidate in candidates:
        if candidate.is_dir():
            return candidate
    return None


class DirectoryResolver:
    def __init__(
        self,
        base_dir: Path,
        env: Mapping[str, str],
        config: ConfigFile,
        profile: PlatformProfile,
        *,
        create_dirs: bool = False,
    ):
        self.base_dir = base_dir
        self.env = env
        self.config = config
        self.profile = profile
        self.create_dirs = create_dirs

    def setting(self, name: str, default: str | None = None) -> str | None:
        return resolve_setting(name, self.env, self.config.values, default)

    def _path_setting(self, name: str, default: Path | None = None) -> Path | None:
        raw = self.setting(name, str(default) if default is not None else None)
        if not raw:
            return None
        return anchor_path(raw, self.base_dir)

    def launch_settings(self) -> LaunchSettings:
        return LaunchSettings(
            override_lang=self.setting("CALIBRE_OVERRIDE_LANG") or None,
            confirm_start=self.setting("CALIBRE_NOCONFIRM_START") != "1",
            cleanup=self.setting("CALIBRE_NO_CLEANUP") != "1",
            passthrough=dict(self.config.exports),
        )

    def locate(self, paths: ResolvedPaths) -> ResolvedPaths:
        """Fill the location slots without touching the filesystem."""
        paths.config_dir = self._path_setting("CONFIG_DIR", self.base_dir / "CalibreConfig")
        paths.library_dir = select_library(library_candidates(self.base_dir, self.env, self.config))
        paths.metadata_dir = self._path_setting("METADATA_DIR")
        paths.src_dir = self._path_setting("SRC_DIR")
        paths.bin_dir = self._path_setting("BIN_DIR", self.profile.default_bin_dir(self.base_dir))
        paths.app_dir = self.profile.app_dir_for(paths.bin_dir)
        return paths

    def prepare_config_dir(self, paths: ResolvedPaths) -> None:
        config_dir = paths.config_dir
        if config_dir is not None and not config_dir.is_dir():
            if self.create_dirs:
                print(f"Creating config directory: {config_dir}")
                config_dir.mkdir(parents=True, exist_ok=True)
            else:
                console.alert_status("CONFIG FILES", "Not found", environ=self.env)
        if config_dir is not None and config_dir.is_dir():
            console.status("CONFIG FILES", str(config_dir))
        console.separator()

    def prepare_library_dir(self, paths: ResolvedPaths) -> None:
        if paths.library_dir is not None:
            console.status("LIBRARY FILES", str(paths.library_dir))
        elif self.create_dirs:
            console.alert_status("LIBRARY FILES", "Not found. Creating default library directory.", environ=self.env)
            library_dir = anchor_path(default_library_dirs(self.base_dir)[-1], self.base_dir)
            library_dir.mkdir(parents=True, exist_ok=True)
            paths.library_dir = library_dir
            console.status("LIBRARY FILES", str(library_dir))
        else:
            console.alert_status("LIBRARY FILES", "Not found", environ=self.env)
        console.separator()

    def report_optional_dirs(self, paths: ResolvedPaths) -> None:
        shown = False
        for label, directory in (("METADATA FILES", paths.metadata_dir), ("SOURCE FILES", paths.src_dir)):
            if directory is None:
                continue
            shown = True
            if directory.is_dir():
                console.status(label, str(directory))
            else:
                console.alert_status(label, f"Not found ({directory})", environ=self.env)
        if shown:
            console.separator()

    def prepare_binaries(self, paths: ResolvedPaths) -> None:
        if paths.app_dir is not None and not paths.app_dir.is_dir() and self.create_dirs:
            print(f"Creating APP directory: {paths.app_dir}")
            paths.app_dir.mkdir(parents=True, exist_ok=True)

        if paths.bin_dir is not None and paths.bin_dir.is_dir():
            paths.calibre_command = str(paths.bin_dir / CALIBRE_EXECUTABLE)
            console.status("PROGRAM FILES", str(paths.bin_dir))
        elif paths.bin_dir is None:
            paths.calibre_command = CALIBRE_EXECUTABLE
            console.status("PROGRAM FILES", "Using system search path")
        else:
            paths.calibre_command = CALIBRE_EXECUTABLE
            console.status("PROGRAM FILES", "No portable copy found.")
            print("To install a portable copy, run 'calibre-portable --upgrade-install'")
            console.alert("*** Using system search path instead ***", environ=self.env)
        console.separator()

    def prepare_temp_dir(self, paths: ResolvedPaths) -> None:
        temp_dir = self._path_setting("CALIBRE_TEMP_DIR")
        if temp_dir is None:
            temp_dir = self.profile.default_temp_dir()
        paths.temp_dir = temp_dir
        paths.cache_dir = temp_dir / CACHE_DIR_NAME
        console.status("TEMPORARY FILES", str(temp_dir))
        console.separator()
        recreate_dir(temp_dir)
        paths.cache_dir.mkdir(parents=True, exist_ok=True)

    def resolve_all(self, paths: ResolvedPaths) -> ResolvedPaths:
        """Locate every directory, report it and create what was asked for."""
        self.locate(paths)
        self.prepare_config_dir(paths)
        self.prepare_library_dir(paths)
        self.report_optional_dirs(paths)
        self.prepare_binaries(paths)
        self.prepare_temp_dir(paths)
        return paths
