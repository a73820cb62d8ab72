from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
import requests

from calibre_portable import cli, upgrader as upgrader_mod
from calibre_portable.errors import UpgradeSourcesError
from calibre_portable.platform_profile import PlatformProfile
from calibre_portable.resolver import ResolvedPaths
from calibre_portable.upgrader import (
    LinuxUpgrader,
    MacUpgrader,
    load_upgrade_sources,
    make_upgrader,
    run_upgrade,
)

LINUX = PlatformProfile(name="linux")
MACOS = PlatformProfile(name="macos")
SOURCES = load_upgrade_sources()
DMG_URL = "https://github.com/kovidgoyal/calibre/releases/download/v7.0.0/calibre-7.0.0.dmg"


class FakeResponse:
    def __init__(self, text: str = "", chunks: tuple[bytes, ...] = (), status: int = 200):
        self.text = text
        self.chunks = chunks
        self.status = status

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def iter_content(self, chunk_size: int):
        yield from self.chunks

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> bool:
        return False


class FakeSession:
    def __init__(self, responses: dict[str, FakeResponse] | None = None):
        self.responses = responses or {}
        self.calls: list[str] = []

    def get(self, url: str, **kwargs):
        self.calls.append(url)
        if url not in self.responses:
            raise requests.ConnectionError(f"no route to {url}")
        return self.responses[url]


class RecordingRun:
    def __init__(self, failing: dict[str, int] | None = None):
        self.failing = failing or {}
        self.calls: list[tuple[list[str], dict]] = []

    def __call__(self, cmd, check=False, **kwargs):
        self.calls.append((list(cmd), kwargs))
        key = " ".join(cmd[:2])
        return subprocess.CompletedProcess(cmd, self.failing.get(key, 0))


def _mac(session: FakeSession) -> MacUpgrader:
    return MacUpgrader(SOURCES.macos, MACOS, session=session, timeout=5)


def _linux(session: FakeSession, root: Path) -> LinuxUpgrader:
    return LinuxUpgrader(SOURCES.linux, session=session, timeout=5, install_root=root)


@pytest.mark.upgrade
def test_packaged_upgrade_sources_load():
    assert SOURCES.linux.installer_url.startswith("https://")
    assert SOURCES.macos.download_page == "https://calibre-ebook.com/download_osx"
    assert SOURCES.macos.mount_point == "/Volumes/Calibre"
    assert SOURCES.timeout_seconds > 0


@pytest.mark.upgrade
@pytest.mark.parametrize(
    "text",
    [
        "- not a mapping\n",
        "linux: {}\nmacos: {}\n",
        "linux: {installer_url: x}\nmacos: {download_page: x, link_pattern: '(', image_name: a, mount_point: b}\n",
        "linux: [oops\n",
    ],
)
def test_malformed_upgrade_sources_fail(tmp_path: Path, text: str):
    path = tmp_path / "sources.yaml"
    path.write_text(text, encoding="utf-8")
    with pytest.raises(UpgradeSourcesError):
        load_upgrade_sources(path)


@pytest.mark.upgrade
def test_make_upgrader_picks_strategy_by_platform(tmp_path: Path):
    assert isinstance(make_upgrader(LINUX, tmp_path, sources=SOURCES, session=FakeSession()), LinuxUpgrader)
    assert isinstance(make_upgrader(MACOS, tmp_path, sources=SOURCES, session=FakeSession()), MacUpgrader)


@pytest.mark.upgrade
def test_linux_precondition_failure_downloads_nothing(tmp_path: Path, capsys):
    session = FakeSession()
    paths = ResolvedPaths(bin_dir=tmp_path / "Calibre", src_dir=tmp_path / "CalibreSource")

    rc = run_upgrade(_linux(session, tmp_path), paths, workdir=tmp_path)

    assert rc == 1
    assert session.calls == []
    err = capsys.readouterr().err
    assert "does not exist" in err and "--create-dirs" in err
    assert list(tmp_path.iterdir()) == []


@pytest.mark.upgrade
def test_linux_precondition_accepts_source_dir(tmp_path: Path):
    (tmp_path / "src").mkdir()
    paths = ResolvedPaths(bin_dir=tmp_path / "Calibre", src_dir=tmp_path / "src")
    _linux(FakeSession(), tmp_path).check_preconditions(paths)


@pytest.mark.upgrade
def test_macos_precondition_failure_downloads_nothing(tmp_path: Path):
    session = FakeSession()
    paths = ResolvedPaths(app_dir=tmp_path / "CalibreBin")

    assert run_upgrade(_mac(session), paths, workdir=tmp_path) == 1
    assert session.calls == []


@pytest.mark.upgrade
def test_macos_precondition_names_unconfigured_target(tmp_path: Path, capsys):
    session = FakeSession()

    assert run_upgrade(_mac(session), ResolvedPaths(), workdir=tmp_path) == 1
    err = capsys.readouterr().err
    assert "The destination directory (not configured) does not exist" in err
    assert "None" not in err


@pytest.mark.upgrade
def test_linux_upgrade_runs_installer_against_portable_root(tmp_path: Path, monkeypatch):
    (tmp_path / "Calibre").mkdir()
    session = FakeSession({SOURCES.linux.installer_url: FakeResponse(text="def main(d, isolated): pass\n")})
    run = RecordingRun()
    monkeypatch.setattr(upgrader_mod.subprocess, "run", run)
    paths = ResolvedPaths(bin_dir=tmp_path / "Calibre")

    rc = run_upgrade(_linux(session, tmp_path), paths, workdir=tmp_path)

    assert rc == 0
    assert session.calls == [SOURCES.linux.installer_url]
    (cmd, kwargs), = run.calls
    assert cmd[1] == "-c"
    assert repr(str(tmp_path)) in cmd[2]
    assert kwargs["input"] == "def main(d, isolated): pass\n"
    assert kwargs["cwd"] == str(tmp_path)
    assert not (tmp_path / "linux-installer.py").exists()


@pytest.mark.upgrade
def test_linux_installer_failure_propagates_status(tmp_path: Path, monkeypatch):
    (tmp_path / "Calibre").mkdir()
    session = FakeSession({SOURCES.linux.installer_url: FakeResponse(text="")})
    monkeypatch.setattr(
        upgrader_mod.subprocess,
        "run",
        lambda cmd, check=False, **kw: subprocess.CompletedProcess(cmd, 4),
    )

    rc = run_upgrade(_linux(session, tmp_path), ResolvedPaths(bin_dir=tmp_path / "Calibre"), workdir=tmp_path)

    assert rc == 4
    assert not (tmp_path / "linux-installer.py").exists()


@pytest.mark.upgrade
def test_linux_download_failure_is_reported(tmp_path: Path, capsys):
    (tmp_path / "Calibre").mkdir()
    session = FakeSession({SOURCES.linux.installer_url: FakeResponse(status=503)})

    rc = run_upgrade(_linux(session, tmp_path), ResolvedPaths(bin_dir=tmp_path / "Calibre"), workdir=tmp_path)

    assert rc == 1
    assert "Download failed" in capsys.readouterr().err


@pytest.mark.upgrade
def test_macos_missing_download_link_fails(tmp_path: Path, capsys):
    (tmp_path / "CalibreBin").mkdir()
    session = FakeSession({SOURCES.macos.download_page: FakeResponse(text="<html>no links</html>")})

    rc = run_upgrade(_mac(session), ResolvedPaths(app_dir=tmp_path / "CalibreBin"), workdir=tmp_path)

    assert rc == 1
    assert "Failed to find the download link" in capsys.readouterr().err
    assert session.calls == [SOURCES.macos.download_page]


@pytest.mark.upgrade
def test_macos_upgrade_mounts_copies_and_repoints_bin_dir(tmp_path: Path, monkeypatch):
    app_dir = tmp_path / "CalibreBin"
    app_dir.mkdir()
    page = f'<a href="https://example.com/x.txt">x</a><a href="{DMG_URL}">Alternate download location</a>'
    session = FakeSession(
        {
            SOURCES.macos.download_page: FakeResponse(text=page),
            DMG_URL: FakeResponse(chunks=(b"dmg-", b"bytes")),
        }
    )
    run = RecordingRun()
    monkeypatch.setattr(upgrader_mod.subprocess, "run", run)
    paths = ResolvedPaths(app_dir=app_dir, bin_dir=app_dir / "calibre.app" / "Contents" / "MacOS")

    rc = run_upgrade(_mac(session), paths, workdir=tmp_path)

    assert rc == 0
    assert session.calls == [SOURCES.macos.download_page, DMG_URL]
    dmg = str(tmp_path / "calibre-latest.dmg")
    assert [c for c, _ in run.calls] == [
        ["hdiutil", "attach", dmg, "-mountpoint", "/Volumes/Calibre"],
        ["ditto", "/Volumes/Calibre/calibre.app", str(app_dir / "calibre.app")],
        ["hdiutil", "detach", "/Volumes/Calibre"],
    ]
    assert not (tmp_path / "calibre-latest.dmg").exists()
    assert paths.bin_dir == app_dir / "calibre.app" / "Contents" / "MacOS"


@pytest.mark.upgrade
def test_macos_copy_failure_still_unmounts_and_removes_image(tmp_path: Path, monkeypatch):
    app_dir = tmp_path / "CalibreBin"
    app_dir.mkdir()
    session = FakeSession(
        {
            SOURCES.macos.download_page: FakeResponse(text=f'href="{DMG_URL}"'),
            DMG_URL: FakeResponse(chunks=(b"x",)),
        }
    )
    run = RecordingRun(failing={"ditto /Volumes/Calibre/calibre.app": 5})
    monkeypatch.setattr(upgrader_mod.subprocess, "run", run)

    rc = run_upgrade(_mac(session), ResolvedPaths(app_dir=app_dir), workdir=tmp_path)

    assert rc == 5
    assert run.calls[-1][0] == ["hdiutil", "detach", "/Volumes/Calibre"]
    assert not (tmp_path / "calibre-latest.dmg").exists()


@pytest.mark.upgrade
def test_create_dirs_makes_upgrade_target_before_precondition(tmp_path: Path):
    session = FakeSession()
    paths = ResolvedPaths(app_dir=tmp_path / "CalibreBin")

    rc = run_upgrade(_mac(session), paths, workdir=tmp_path, create_dirs=True)

    assert (tmp_path / "CalibreBin").is_dir()
    assert session.calls == [SOURCES.macos.download_page]
    assert rc == 1


@pytest.mark.upgrade
def test_cli_upgrade_without_target_exits_non_zero_without_network(tmp_path: Path, monkeypatch):
    def _no_network(*args, **kwargs):
        raise AssertionError("upgrade must not touch the network")

    monkeypatch.setattr(upgrader_mod.requests.Session, "get", _no_network)

    rc = cli.main(["--upgrade-install"], base_dir=tmp_path, environ={"CALIBRE_PORTABLE_PLATFORM": "linux"})

    assert rc == 1
    assert not (tmp_path / "Calibre").exists()
