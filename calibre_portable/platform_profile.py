"""Platform-specific defaults for the portable layout.

Linux (and anything that is not macOS) keeps a plain ``Calibre`` folder with
the executables; macOS keeps a ``calibre.app`` bundle under ``CalibreBin``.
"""

from __future__ import annotations

import os
import platform
import secrets
import string
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Mapping

PlatformName = Literal["linux", "macos"]

PLATFORM_OVERRIDE_ENV = "CALIBRE_PORTABLE_PLATFORM"
APP_BUNDLE_NAME = "calibre.app"
BUNDLE_BIN_SUFFIX = f"/{APP_BUNDLE_NAME}/Contents/MacOS"
TEMP_PREFIX = "CALIBRE_TEMP"

_ALPHANUMERIC = string.ascii_letters + string.digits


def random_suffix(length: int = 7) -> str:
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


@dataclass(frozen=True)
class PlatformProfile:
    name: PlatformName

    @property
    def uses_app_bundle(self) -> bool:
        return self.name == "macos"

    def default_bin_dir(self, base_dir: Path) -> Path:
        if self.uses_app_bundle:
            return base_dir / "CalibreBin" / APP_BUNDLE_NAME / "Contents" / "MacOS"
        return base_dir / "Calibre"

    def app_dir_for(self, bin_dir: Path | None) -> Path | None:
        """Strip the bundle-internal suffix from ``bin_dir``.

        A ``bin_dir`` without the suffix is returned unchanged, so a custom
        layout still gets an app directory to install into.
        """
        if not self.uses_app_bundle or bin_dir is None:
            return None
        raw = str(bin_dir)
        if raw.endswith(BUNDLE_BIN_SUFFIX):
            raw = raw[: -len(BUNDLE_BIN_SUFFIX)]
        return Path(raw)

    def bin_dir_in_app(self, app_dir: Path) -> Path:
        return app_dir / APP_BUNDLE_NAME / "Contents" / "MacOS"

    def default_temp_dir(self) -> Path:
        if self.uses_app_bundle:
            return Path(tempfile.mkdtemp(prefix=TEMP_PREFIX))
        return Path("/tmp") / f"{TEMP_PREFIX}_{random_suffix()}"


def detect_platform(env: Mapping[str, str] | None = None) -> PlatformProfile:
    env = os.environ if env is None else env
    override = str(env.get(PLATFORM_OVERRIDE_ENV, "")).strip().lower()
    if override in ("linux", "macos"):
        return PlatformProfile(name=override)  # type: ignore[arg-type]
    if override == "darwin":
        return PlatformProfile(name="macos")
    if platform.system() == "Darwin":
        return PlatformProfile(name="macos")
    return PlatformProfile(name="linux")
