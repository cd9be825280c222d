"""Test doubles for the runner and systemd controller."""

import subprocess
from pathlib import Path

from story_node.errors import CommandError, ServiceError


class FakeRunner:
    """Records commands instead of running them; `fail` holds command prefixes that exit 1"""

    use_sudo = False

    def __init__(self, fail=()):
        self.calls = []
        self.fail = [tuple(f) for f in fail]
        self.written = {}

    def _failing(self, cmd):
        return any(tuple(cmd[: len(f)]) == f for f in self.fail)

    def run(self, command, args=None, *, check=True, **kwargs):
        cmd = list(command) + list(args or [])
        self.calls.append(cmd)
        rc = 1 if self._failing(cmd) else 0
        if check and rc:
            raise CommandError(cmd, rc, "boom")
        return subprocess.CompletedProcess(cmd, rc, stdout="", stderr="")

    def succeeds(self, command, args=None, **kwargs):
        return self.run(command, args, check=False).returncode == 0

    def output(self, command, args=None, **kwargs):
        return self.run(command, args, **kwargs).stdout

    def write_file(self, path, content, *, sudo=False):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        self.written[path] = content


class FakeController:
    """Stands in for systemctl; keeps an ordered journal of calls"""

    def __init__(self, fail_stop=(), fail_restart=(), known=("story", "story-geth")):
        self.calls = []
        self.fail_stop = set(fail_stop)
        self.fail_restart = set(fail_restart)
        self.known = set(known)

    def stop(self, name):
        self.calls.append(("stop", name))
        if name in self.fail_stop:
            raise ServiceError(f"cannot stop {name}")

    def restart(self, name):
        self.calls.append(("restart", name))
        if name in self.fail_restart:
            raise ServiceError(f"cannot restart {name}")

    def daemon_reload(self):
        self.calls.append(("daemon-reload",))

    def enable(self, name):
        self.calls.append(("enable", name))

    def exists(self, name):
        return name in self.known

    def is_active(self, name):
        return True


