"""Install or upgrade the portable calibre binaries in place.

Two strategies share one contract: ``check_preconditions`` refuses to run
unless the portable target already exists, ``fetch`` downloads the release
artifact into a work directory and ``install`` puts it in place. The remote
endpoints come from ``upgrade_sources.yaml`` next to this module.
"""

from __future__ import annotations

import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import requests
import yaml

from calibre_portable.console import eprint
from calibre_portable.errors import UpgradeError, UpgradePreconditionError, UpgradeSourcesError
from calibre_portable.platform_profile import APP_BUNDLE_NAME, PlatformProfile
from calibre_portable.resolver import ResolvedPaths

UPGRADE_SOURCES_FILE = Path(__file__).with_name("upgrade_sources.yaml")
CHUNK_SIZE = 64 * 1024

# calibre's linux-installer.py defines main(install_dir, isolated); the
# placeholder only runs when the downloaded script did not define one.
_LINUX_BOOTSTRAP = (
    "import sys; "
    "main = lambda x, y: sys.stderr.write('Download failed\\n'); "
    "exec(sys.stdin.read()); "
    "main({target!r}, True)"
)


@dataclass(frozen=True)
class LinuxSources:
    installer_url: str


@dataclass(frozen=True)
class MacSources:
    download_page: str
    link_pattern: str
    image_name: str
    mount_point: str


@dataclass(frozen=True)
class UpgradeSources:
    linux: LinuxSources
    macos: MacSources
    timeout_seconds: float


def _require_str(section: dict[str, Any], key: str, path: Path) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise UpgradeSourcesError(f"{path}: missing or empty '{key}'")
    return value.strip()


def load_upgrade_sources(path: Path | None = None) -> UpgradeSources:
    path = path or UPGRADE_SOURCES_FILE
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise UpgradeSourcesError(f"cannot read upgrade sources ({path}): {exc}") from exc
    if not isinstance(data, dict):
        raise UpgradeSourcesError(f"{path}: expected a mapping")
    linux = data.get("linux")
    macos = data.get("macos")
    if not isinstance(linux, dict) or not isinstance(macos, dict):
        raise UpgradeSourcesError(f"{path}: 'linux' and 'macos' sections are required")

    pattern = _require_str(macos, "link_pattern", path)
    try:
        re.compile(pattern)
    except re.error as exc:
        raise UpgradeSourcesError(f"{path}: invalid link_pattern: {exc}") from exc

    timeout = data.get("timeout_seconds", 180)
    if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
        raise UpgradeSourcesError(f"{path}: timeout_seconds must be a positive number")

    return UpgradeSources(
        linux=LinuxSources(installer_url=_require_str(linux, "installer_url", path)),
        macos=MacSources(
            download_page=_require_str(macos, "download_page", path),
            link_pattern=pattern,
            image_name=_require_str(macos, "image_name", path),
            mount_point=_require_str(macos, "mount_point", path),
        ),
        timeout_seconds=float(timeout),
    )


class Upgrader(Protocol):
    name: str

    def target_dir(self, paths: ResolvedPaths) -> Path | None: ...

    def check_preconditions(self, paths: ResolvedPaths) -> None: ...

    def fetch(self, workdir: Path) -> Path: ...

    def install(self, artifact: Path, paths: ResolvedPaths) -> ResolvedPaths: ...


class _HttpMixin:
    session: requests.Session
    timeout: float

    def _get_text(self, url: str) -> str:
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise UpgradeError(f"Download failed: {url}: {exc}") from exc
        return response.text

    def _download(self, url: str, dst: Path) -> Path:
        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with dst.open("wb") as f:
                    for chunk in response.iter_content(CHUNK_SIZE):
                        if chunk:
                            f.write(chunk)
        except requests.RequestException as exc:
            dst.unlink(missing_ok=True)
            raise UpgradeError(f"Download failed: {url}: {exc}") from exc
        return dst


def _run(cmd: list[str], **kwargs) -> subprocess.CompletedProcess:
    try:
        result = subprocess.run(cmd, check=False, **kwargs)
    except FileNotFoundError as exc:
        raise UpgradeError(f"{cmd[0]} is not available on this system") from exc
    if result.returncode != 0:
        code = result.returncode if result.returncode > 0 else 1
        raise UpgradeError(f"{cmd[0]} failed with status {result.returncode}", exit_code=code)
    return result


class LinuxUpgrader(_HttpMixin):
    name = "linux"
    banner = "Downloading and installing the latest version of Calibre for Linux..."

    def __init__(self, sources: LinuxSources, *, session: requests.Session, timeout: float, install_root: Path):
        self.sources = sources
        self.session = session
        self.timeout = timeout
        self.install_root = install_root

    def target_dir(self, paths: ResolvedPaths) -> Path | None:
        return paths.bin_dir

    def check_preconditions(self, paths: ResolvedPaths) -> None:
        candidates = [p for p in (paths.bin_dir, paths.src_dir) if p is not None]
        if not any(p.is_dir() for p in candidates):
            shown = " or ".join(str(p) for p in candidates) or "(not configured)"
            raise UpgradePreconditionError(
                f"The destination directory {shown} does not exist. "
                "Please create it first or use --create-dirs."
            )

    def fetch(self, workdir: Path) -> Path:
        script = self._get_text(self.sources.installer_url)
        dst = workdir / "linux-installer.py"
        dst.write_text(script, encoding="utf-8")
        return dst

    def install(self, artifact: Path, paths: ResolvedPaths) -> ResolvedPaths:
        try:
            script = artifact.read_text(encoding="utf-8")
            bootstrap = _LINUX_BOOTSTRAP.format(target=str(self.install_root))
            _run([sys.executable, "-c", bootstrap], input=script, text=True, cwd=str(self.install_root))
        finally:
            artifact.unlink(missing_ok=True)
        return paths


class MacUpgrader(_HttpMixin):
    name = "macos"
    banner = "Downloading the latest version of Calibre for macOS..."

    def __init__(self, sources: MacSources, profile: PlatformProfile, *, session: requests.Session, timeout: float):
        self.sources = sources
        self.profile = profile
        self.session = session
        self.timeout = timeout

    def target_dir(self, paths: ResolvedPaths) -> Path | None:
        return paths.app_dir

    def check_preconditions(self, paths: ResolvedPaths) -> None:
        if paths.app_dir is None or not paths.app_dir.is_dir():
            shown = paths.app_dir if paths.app_dir is not None else "(not configured)"
            raise UpgradePreconditionError(
                f"The destination directory {shown} does not exist. "
                "Please create it first or use --create-dirs."
            )

    def find_download_url(self) -> str:
        page = self._get_text(self.sources.download_page)
        match = re.search(self.sources.link_pattern, page)
        if not match:
            raise UpgradeError("Failed to find the download link for Calibre. Exiting.")
        return match.group(0)

    def fetch(self, workdir: Path) -> Path:
        url = self.find_download_url()
        print(f"Downloading from {url}...")
        return self._download(url, workdir / self.sources.image_name)

    def install(self, artifact: Path, paths: ResolvedPaths) -> ResolvedPaths:
        if paths.app_dir is None:
            raise UpgradePreconditionError("No app directory to install into.")
        mount_point = self.sources.mount_point
        try:
            print("Mounting the .dmg file...")
            _run(["hdiutil", "attach", str(artifact), "-mountpoint", mount_point])
            try:
                print("Installing Calibre...")
                _run(["ditto", f"{mount_point}/{APP_BUNDLE_NAME}", str(paths.app_dir / APP_BUNDLE_NAME)])
            finally:
                print("Cleaning up...")
                try:
                    _run(["hdiutil", "detach", mount_point])
                except UpgradeError as exc:
                    eprint(f"Warning: could not unmount {mount_point}: {exc}")
        finally:
            artifact.unlink(missing_ok=True)
        paths.bin_dir = self.profile.bin_dir_in_app(paths.app_dir)
        return paths


def make_upgrader(
    profile: PlatformProfile,
    base_dir: Path,
    *,
    sources: UpgradeSources | None = None,
    session: requests.Session | None = None,
) -> Upgrader:
    sources = sources or load_upgrade_sources()
    session = session or requests.Session()
    if profile.uses_app_bundle:
        return MacUpgrader(sources.macos, profile, session=session, timeout=sources.timeout_seconds)
    return LinuxUpgrader(sources.linux, session=session, timeout=sources.timeout_seconds, install_root=base_dir)


def run_upgrade(upgrader: Upgrader, paths: ResolvedPaths, *, workdir: Path, create_dirs: bool = False) -> int:
    if create_dirs:
        target = upgrader.target_dir(paths)
        if target is not None and not target.is_dir():
            print(f"Creating directory: {target}")
            target.mkdir(parents=True, exist_ok=True)

    try:
        upgrader.check_preconditions(paths)
    except UpgradePreconditionError as exc:
        eprint(f"Error: {exc}")
        return exc.exit_code

    print(getattr(upgrader, "banner", f"Upgrading calibre ({upgrader.name})..."))
    try:
        artifact = upgrader.fetch(workdir)
        upgrader.install(artifact, paths)
    except UpgradeError as exc:
        eprint(f"Error: {exc}")
        return exc.exit_code

    print("Upgrade complete.")
    return 0
