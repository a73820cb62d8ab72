from __future__ import annotations


class LauncherError(RuntimeError):
    exit_code = 1

    def __init__(self, message: str, *, exit_code: int | None = None):
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigFileError(LauncherError):
    exit_code = 2

    def __init__(self, path, line_no: int, message: str):
        self.path = path
        self.line_no = line_no
        super().__init__(f"{path}:{line_no}: {message}")


class UpgradePreconditionError(LauncherError):
    pass


class UpgradeError(LauncherError):
    pass


class UpgradeSourcesError(LauncherError):
    pass
