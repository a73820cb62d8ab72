"""Pytest configuration for launcher tests."""
import pytest

LAUNCHER_ENV_VARS = (
    "CONFIG_DIR",
    "LIBRARY_DIRS",
    "METADATA_DIR",
    "SRC_DIR",
    "BIN_DIR",
    "CALIBRE_TEMP_DIR",
    "CALIBRE_OVERRIDE_LANG",
    "CALIBRE_NOCONFIRM_START",
    "CALIBRE_NO_CLEANUP",
    "CALIBRE_CONFIG_DIRECTORY",
    "CALIBRE_CACHE_DIRECTORY",
    "CALIBRE_OVERRIDE_DATABASE_PATH",
    "CALIBRE_DEVELOP_FROM",
)


@pytest.fixture(autouse=True)
def _isolated_launcher_env(monkeypatch):
    """Keep the host's calibre settings out of every test."""
    for name in LAUNCHER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CALIBRE_PORTABLE_PLATFORM", "linux")
    monkeypatch.setenv("NO_COLOR", "1")
    yield
