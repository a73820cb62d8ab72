"""Human-readable status output for the launcher."""

from __future__ import annotations

import os
import sys
from typing import Mapping, TextIO

LABEL_WIDTH = 20
SEPARATOR = "-" * 50

_RED = "\033[0;31m"
_RESET = "\033[0m"


def eprint(*args, **kwargs):
    print(*args, file=sys.stderr, **kwargs)


def use_color(stream: TextIO, environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    if env.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def status(label: str, value: str) -> None:
    print(f"{label + ':':<{LABEL_WIDTH}}{value}")


def alert(text: str, *, stream: TextIO | None = None, environ: Mapping[str, str] | None = None) -> None:
    out = stream if stream is not None else sys.stdout
    if use_color(out, environ):
        print(f"{_RED}{text}{_RESET}", file=out)
    else:
        print(text, file=out)


def alert_status(label: str, value: str, *, environ: Mapping[str, str] | None = None) -> None:
    alert(f"{label + ':':<{LABEL_WIDTH}}{value}", environ=environ)


def separator() -> None:
    print(SEPARATOR)
