from __future__ import annotations

import json
import os
import shlex
import subprocess
import sys
import time
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]

FAKE_CALIBRE_SH = """#!/bin/sh
exec {python} {recorder} "$@"
"""

FAKE_CALIBRE_RECORDER = """import json, os, sys
record = os.environ["FAKE_CALIBRE_RECORD"]
temp_dir = os.environ.get("CALIBRE_TEMP_DIR", "")
with open(record + ".tmp", "w", encoding="utf-8") as f:
    json.dump({
        "argv": sys.argv[1:],
        "env": {k: v for k, v in os.environ.items() if k.startswith("CALIBRE") or k.startswith("FAKE_")},
        "temp_dir_existed": bool(temp_dir) and os.path.isdir(temp_dir),
        "cwd": os.getcwd(),
    }, f)
os.replace(record + ".tmp", record)
if os.environ.get("FAKE_CALIBRE_TERM_RECORD"):
    import signal, time

    def on_term(signum, _frame):
        with open(os.environ["FAKE_CALIBRE_TERM_RECORD"], "w", encoding="utf-8") as f:
            json.dump({"signum": signum, "temp_dir_existed": bool(temp_dir) and os.path.isdir(temp_dir)}, f)
        sys.exit(0)

    signal.signal(signal.SIGTERM, on_term)
    time.sleep(30)
sys.exit(int(os.environ.get("FAKE_CALIBRE_EXIT", "0")))
"""


def run(
    cmd: list[str],
    *,
    cwd: Path,
    env: dict[str, str] | None = None,
    stdin: str | None = None,
) -> subprocess.CompletedProcess:
    e = _launcher_env(env)
    return subprocess.run(
        cmd,
        cwd=str(cwd),
        env=e,
        input=stdin if stdin is not None else "",
        text=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        check=False,
    )


def _launcher_env(env: dict[str, str] | None) -> dict[str, str]:
    e = os.environ.copy()
    e["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT), e.get("PYTHONPATH", "")]))
    if env:
        e.update(env)
    return e


def run_launcher(
    args: list[str],
    *,
    cwd: Path,
    env: dict[str, str] | None = None,
    stdin: str | None = None,
) -> subprocess.CompletedProcess:
    # Always use the current interpreter.
    return run([sys.executable, "-X", "utf8", "-m", "calibre_portable", *args], cwd=cwd, env=env, stdin=stdin)


def install_fake_calibre(bin_dir: Path) -> Path:
    """Drop an executable named ``calibre`` that records how it was started."""
    bin_dir.mkdir(parents=True, exist_ok=True)
    recorder = bin_dir / "fake_calibre.py"
    recorder.write_text(FAKE_CALIBRE_RECORDER, encoding="utf-8")
    exe = bin_dir / "calibre"
    script = FAKE_CALIBRE_SH.format(python=shlex.quote(sys.executable), recorder=shlex.quote(str(recorder)))
    exe.write_text(script, encoding="utf-8")
    exe.chmod(0o755)
    return exe


def read_record(path: Path) -> dict:
    assert path.exists(), f"fake calibre was not started (no record at {path})"
    return json.loads(path.read_text(encoding="utf-8"))


def mode_bits(path: Path) -> int:
    return path.stat().st_mode & 0o777


def start_launcher(args: list[str], *, cwd: Path, env: dict[str, str] | None = None) -> subprocess.Popen:
    """Start the launcher in the background, e.g. to signal it mid-run."""
    return subprocess.Popen(
        [sys.executable, "-X", "utf8", "-m", "calibre_portable", *args],
        cwd=str(cwd),
        env=_launcher_env(env),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )


def wait_for_file(path: Path, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists():
            return True
        time.sleep(0.05)
    return path.exists()
