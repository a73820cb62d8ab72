"""Reader and template writer for ``calibre-portable.conf``.

The file stays shell-sourceable so existing portable installs keep working,
but it is parsed here rather than executed. Only assignments are accepted:

    NAME=value                  plain assignment
    export NAME=value           assignment passed through to calibre
    LIBRARY_DIRS[n]=value       one library candidate
    LIBRARY_DIRS=( "a" "b" )    whole candidate list
    : "${NAME:=value}"          set-if-unset within the file
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Mapping

from calibre_portable.errors import ConfigFileError
from calibre_portable.fs_ops import atomic_write_text

CONFIG_FILE_NAME = "calibre-portable.conf"
LIBRARY_DIRS_KEY = "LIBRARY_DIRS"

_NAME = r"[A-Za-z_][A-Za-z0-9_]*"
_ASSIGN_RE = re.compile(rf"^(?P<name>{_NAME})(?:\[(?P<index>\d+)\])?=(?P<value>.*)$", re.DOTALL)
_ARRAY_RE = re.compile(rf"^(?:export\s+)?(?P<name>{_NAME})=\((?P<body>.*)\)$")
_DEFAULT_RE = re.compile(rf"^\$\{{(?P<name>{_NAME})(?:\[(?P<index>\d+)\])?(?P<colon>:?)=(?P<value>.*)\}}$", re.DOTALL)
_PWD_RE = re.compile(r"\$\(\s*pwd\s*\)|`\s*pwd\s*`|\$\{PWD\}|\$PWD\b")
_VAR_RE = re.compile(rf"\$(?:\{{(?P<braced>{_NAME})\}}|(?P<plain>{_NAME}))")


@dataclass
class ConfigFile:
    path: Path
    values: dict[str, str] = field(default_factory=dict)
    library_dirs: dict[int, str] = field(default_factory=dict)
    exports: dict[str, str] = field(default_factory=dict)
    created: bool = False


def config_file_path(base_dir: Path) -> Path:
    return base_dir / CONFIG_FILE_NAME


def expand_value(raw: str, *, base_dir: Path, scope: Mapping[str, str], path: Path, line_no: int) -> str:
    value = _PWD_RE.sub(lambda _m: str(base_dir), raw)
    if "$(" in value or "`" in value:
        raise ConfigFileError(path, line_no, f"unsupported command substitution in {raw!r}")

    def _var(m: re.Match) -> str:
        name = m.group("braced") or m.group("plain")
        if name in scope:
            return scope[name]
        return m.group(0)

    value = _VAR_RE.sub(_var, value)
    if value == "~" or value.startswith("~/"):
        value = str(Path(value).expanduser())
    return value


def parse_config_text(
    text: str,
    *,
    path: Path,
    base_dir: Path,
    environ: Mapping[str, str],
) -> ConfigFile:
    config = ConfigFile(path=path)

    def scope() -> dict[str, str]:
        merged = dict(environ)
        merged.update(config.values)
        return merged

    def assign(name: str, index: str | None, raw: str, line_no: int, *, exported: bool) -> None:
        value = expand_value(raw, base_dir=base_dir, scope=scope(), path=path, line_no=line_no)
        if name == LIBRARY_DIRS_KEY:
            if exported:
                raise ConfigFileError(path, line_no, "LIBRARY_DIRS cannot be exported")
            config.library_dirs[int(index or 0)] = value
            return
        if index is not None:
            raise ConfigFileError(path, line_no, f"{name} is not an array")
        config.values[name] = value
        if exported:
            config.exports[name] = value

    for line_no, line in enumerate(text.splitlines(), start=1):
        stripped = _strip_comment(line).strip()
        if not stripped:
            continue

        array = _ARRAY_RE.match(stripped)
        if array:
            if array.group("name") != LIBRARY_DIRS_KEY:
                raise ConfigFileError(path, line_no, f"only {LIBRARY_DIRS_KEY} may be an array")
            config.library_dirs.clear()
            for i, item in enumerate(_split(array.group("body"), path, line_no)):
                assign(LIBRARY_DIRS_KEY, str(i), item, line_no, exported=False)
            continue

        tokens = _split(stripped, path, line_no)
        if not tokens:
            continue

        if tokens[0] == "export":
            if len(tokens) == 1:
                raise ConfigFileError(path, line_no, "export without a variable")
            for token in tokens[1:]:
                m = _ASSIGN_RE.match(token)
                if m:
                    assign(m.group("name"), m.group("index"), m.group("value"), line_no, exported=True)
                elif re.fullmatch(_NAME, token):
                    if token in config.values:
                        config.exports[token] = config.values[token]
                else:
                    raise ConfigFileError(path, line_no, f"cannot export {token!r}")
            continue

        if tokens[0] == ":" and len(tokens) == 2:
            m = _DEFAULT_RE.match(tokens[1])
            if not m:
                raise ConfigFileError(path, line_no, f"unsupported expression {tokens[1]!r}")
            name, index = m.group("name"), m.group("index")
            if name == LIBRARY_DIRS_KEY:
                existing = config.library_dirs.get(int(index or 0))
            else:
                existing = config.values.get(name)
            # ${X:=v} also replaces an empty value, ${X=v} only a missing one
            if existing is None or (m.group("colon") and existing == ""):
                assign(name, index, m.group("value"), line_no, exported=False)
            continue

        if len(tokens) == 1:
            m = _ASSIGN_RE.match(tokens[0])
            if m:
                assign(m.group("name"), m.group("index"), m.group("value"), line_no, exported=False)
                continue

        raise ConfigFileError(path, line_no, f"not an assignment: {stripped!r}")

    return config


def _strip_comment(line: str) -> str:
    """Drop a trailing comment; like the shell, only a `#` that starts a word counts."""
    quote = None
    escaped = False
    for i, ch in enumerate(line):
        if escaped:
            escaped = False
        elif quote is not None:
            if ch == quote:
                quote = None
            elif ch == "\\" and quote == '"':
                escaped = True
        elif ch == "\\":
            escaped = True
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "#" and (i == 0 or line[i - 1].isspace()):
            return line[:i]
    return line


def _split(text: str, path: Path, line_no: int) -> list[str]:
    try:
        return shlex.split(text, posix=True)
    except ValueError as exc:
        raise ConfigFileError(path, line_no, str(exc)) from exc


def render_template(generated_at: datetime | None = None) -> str:
    stamp = (generated_at or datetime.now()).strftime("%a %d %b %Y %H:%M:%S")
    return CONFIG_TEMPLATE.format(generated_at=stamp)


def load_config(base_dir: Path, environ: Mapping[str, str]) -> ConfigFile:
    """Read the config file at the portable root, writing a template on first run."""
    path = config_file_path(base_dir)
    if path.is_file():
        text = path.read_text(encoding="utf-8")
        return parse_config_text(text, path=path, base_dir=base_dir, environ=environ)

    atomic_write_text(path, render_template())
    print(f"Generating default configuration file at {path}")
    print("Set any non-default options here.")
    return ConfigFile(path=path, created=True)


CONFIG_TEMPLATE = """\
# Configuration file for calibre-portable. Generated on {generated_at}
# Settings here override the launcher defaults. Anything already exported in
# the environment before the launcher starts takes precedence over this file.

##################################################
# calibre config folder.
#
# User specific settings live here.
##################################################

# CONFIG_DIR="$(pwd)/CalibreConfig"

################################################################
# Location of your calibre library.
#
# Use an explicit path, or a path relative to $(pwd) when running
# from a USB stick whose mount point is not known in advance.
#
# List several libraries by adding elements to the array. The first
# entry of LIBRARY_DIRS that is an existing directory becomes the
# current calibre library.
################################################################

# LIBRARY_DIRS[0]="/path/to/first/CalibreLibrary"
# LIBRARY_DIRS[1]="/path/to/second/CalibreLibrary"
# LIBRARY_DIRS[2]="$(pwd)/CalibreLibrary"

################################################################
# Location of the metadata database (optional).
#
# Folder holding metadata.db. When unset the library folder is used.
# Keeping metadata.db on a local disk speeds things up a lot when the
# books live on a slow network share.
#
# NOTE: switching libraries from inside calibre is disabled while this
#       is set, and plugins that store absolute paths may misbehave.
################################################################

# METADATA_DIR="$(pwd)/CalibreMetadata"

################################################################
# Location of the calibre source tree (optional).
#
# Runs calibre from source. The version number in the status bar is
# followed by a '*' when running this way. See
#   https://manual.calibre-ebook.com/develop.html#develop
################################################################

# SRC_DIR="$(pwd)/CalibreSource/src"

################################################################
# Location of the calibre binaries (Linux or macOS).
#
# Linux: the folder holding the calibre executable.
# macOS: the MacOS folder inside calibre.app, kept under CalibreBin.
#
# Set BIN_DIR="" to always use calibre from the system search path.
# Do not share one folder between Windows, Linux and macOS binaries.
################################################################

# BIN_DIR="$(pwd)/Calibre"                                  # Linux
# BIN_DIR="$(pwd)/CalibreBin/calibre.app/Contents/MacOS"    # macOS

################################################################
# Location of calibre temporary files (optional).
#
# calibre leaves temporary files behind after a crash. The launcher
# recreates this folder empty on every start and removes it on exit.
# Default: a fresh /tmp/CALIBRE_TEMP_* folder (Linux) or a system
# temporary folder (macOS).
################################################################

# CALIBRE_TEMP_DIR="/tmp/CALIBRE_TEMP"

################################################################
# Interface language (optional). Defaults to the Preferences value.
################################################################

# CALIBRE_OVERRIDE_LANG="EN"

##################################################################
# Ask for confirmation before starting calibre (default: yes).
#
# Set CALIBRE_NOCONFIRM_START to "1" to start without asking.
##################################################################

# CALIBRE_NOCONFIRM_START=0

##################################################################
# Clean up when the launcher exits (default: yes).
#
# Marks the library, configuration, metadata, source and app folders
# world-writable and removes the temporary folder, so the stick can be
# used on other computers. Set CALIBRE_NO_CLEANUP to "1" to disable.
##################################################################

# CALIBRE_NO_CLEANUP=0

##################################################################
# Any other environment variables for calibre, see
#   https://manual.calibre-ebook.com/customize.html#environment-variables
##################################################################

# export CALIBRE_NO_NATIVE_FILEDIALOGS=1
# export CALIBRE_NO_NATIVE_MENUBAR=1
# export CALIBRE_IGNORE_SYSTEM_THEME=1
# export http_proxy=
"""
