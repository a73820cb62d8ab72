from __future__ import annotations

import signal
import subprocess
from pathlib import Path
from typing import Callable, Mapping

from calibre_portable import console
from calibre_portable.console import eprint
from calibre_portable.resolver import LaunchSettings, ResolvedPaths

EXIT_NOT_FOUND = 127
METADATA_DB_NAME = "metadata.db"
CONFIRM_PROMPT = "Do you want to continue and start calibre? (Y/n)"
FORWARDED_SIGNALS = tuple(getattr(signal, name) for name in ("SIGTERM", "SIGHUP") if hasattr(signal, name))


def build_launch_environment(
    paths: ResolvedPaths,
    settings: LaunchSettings,
    base_env: Mapping[str, str],
) -> dict[str, str]:
    """Return the child environment; ``base_env`` is never modified."""
    env = dict(base_env)
    for name, value in settings.passthrough.items():
        env.setdefault(name, value)

    if paths.config_dir is not None and paths.config_dir.is_dir():
        env["CALIBRE_CONFIG_DIRECTORY"] = str(paths.config_dir)
    if paths.temp_dir is not None:
        env["CALIBRE_TEMP_DIR"] = str(paths.temp_dir)
    if paths.cache_dir is not None:
        env["CALIBRE_CACHE_DIRECTORY"] = str(paths.cache_dir)
    if settings.override_lang:
        env["CALIBRE_OVERRIDE_LANG"] = settings.override_lang
    if paths.metadata_dir is not None and paths.metadata_dir.is_dir():
        env["CALIBRE_OVERRIDE_DATABASE_PATH"] = str(paths.metadata_dir / METADATA_DB_NAME)
    if paths.src_dir is not None and paths.src_dir.is_dir():
        env["CALIBRE_DEVELOP_FROM"] = str(paths.src_dir)
    return env


def build_command(paths: ResolvedPaths) -> list[str]:
    cmd = [paths.calibre_command]
    if paths.library_dir is not None:
        cmd += ["--with-library", str(paths.library_dir)]
    return cmd


def is_abort_answer(answer: str) -> bool:
    return answer.strip().lower() in ("n", "no")


def confirm_start(read: Callable[[str], str] = input) -> bool:
    print()
    print(CONFIRM_PROMPT)
    try:
        answer = read("")
    except EOFError:
        answer = ""
    return not is_abort_answer(answer)


def run_application(cmd: list[str], env: Mapping[str, str], *, cwd: Path) -> int:
    try:
        proc = subprocess.Popen(cmd, env=dict(env), cwd=str(cwd))
    except FileNotFoundError:
        eprint(f"Error: calibre executable not found: {cmd[0]}")
        eprint("Install a portable copy with 'calibre-portable --upgrade-install' or add calibre to PATH.")
        return EXIT_NOT_FOUND

    return wait_for_child(proc)


def wait_for_child(proc: subprocess.Popen) -> int:
    """Wait for calibre to exit and return its status the way a shell would.

    Ctrl-C reaches calibre directly through the terminal. SIGTERM and SIGHUP
    sent to the launcher are passed on to calibre, and the launcher keeps
    waiting so nothing is released while calibre still uses it. After such a
    signal the status is ``128 + signum``.
    """
    received: list[int] = []

    def forward(signum: int, _frame) -> None:
        received.append(signum)
        try:
            proc.send_signal(signum)
        except ProcessLookupError:
            pass

    previous = {signal.SIGINT: signal.signal(signal.SIGINT, signal.SIG_IGN)}
    for signum in FORWARDED_SIGNALS:
        previous[signum] = signal.signal(signum, forward)
    try:
        code = proc.wait()
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    if received:
        return 128 + received[0]
    # a child killed by signal N exits 128 + N
    return 128 - code if code < 0 else code


def launch(
    paths: ResolvedPaths,
    settings: LaunchSettings,
    *,
    base_dir: Path,
    base_env: Mapping[str, str],
    read: Callable[[str], str] = input,
) -> int:
    if settings.override_lang:
        console.status("INTERFACE LANGUAGE", settings.override_lang)

    if settings.confirm_start and not confirm_start(read):
        print("Exiting without starting calibre.")
        return 0

    env = build_launch_environment(paths, settings, base_env)
    print(f'Starting up calibre from portable directory "{base_dir}"')
    return run_application(build_command(paths), env, cwd=base_dir)
