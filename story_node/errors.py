from typing import Optional, Sequence


class InstallerError(Exception):
    """Base error: anything the CLI turns into a one-line diagnostic and exit 1"""

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self):
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


class CommandError(InstallerError):
    """An external command exited non-zero or could not be started"""

    def __init__(self, cmd: Sequence[str], returncode: Optional[int], stderr: str = "", step: Optional[str] = None):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        if returncode is None:
            msg = f"command not found: {self.cmd[0] if self.cmd else '?'}"
        else:
            msg = f"`{' '.join(self.cmd)}` exited with code {returncode}"
        if self.stderr:
            msg += f": {self.stderr.splitlines()[-1]}"
        super().__init__(msg, step=step)


class ConfigPatchError(InstallerError):
    pass


class ServiceError(InstallerError):
    pass


class SnapshotError(InstallerError):
    pass


class CriticalStateError(SnapshotError):
    """The validator signing-state file is gone; restarting could double-sign"""


class InvalidChoiceError(InstallerError):
    pass


class HeightUnavailable(Exception):
    """A status endpoint did not return a usable block height (transient)"""
