import logging
import os
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence, Union

from story_node.errors import CommandError

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]


def _normalize(command: Command, args: Optional[Iterable[str]] = None) -> List[str]:
    if isinstance(command, str):
        cmd = shlex.split(command)
    else:
        cmd = [str(c) for c in command]
    if args:
        cmd += [str(a) for a in args]
    return cmd


class ShellRunner:
    """Runs external commands and turns failures into CommandError"""

    def __init__(self, use_sudo: bool = True, env: Optional[Mapping[str, str]] = None):
        self.use_sudo = use_sudo
        self.base_env = dict(env) if env is not None else None

    def _env(self, env: Optional[Mapping[str, str]]) -> dict:
        run_env = dict(self.base_env if self.base_env is not None else os.environ)
        # keep systemctl/journalctl non-interactive
        run_env.setdefault("SYSTEMD_PAGER", "")
        run_env.setdefault("SYSTEMD_COLORS", "0")
        if env:
            run_env.update(env)
        return run_env

    def _sudo(self, cmd: List[str], sudo: bool) -> List[str]:
        if sudo and self.use_sudo and os.geteuid() != 0:
            return ["sudo"] + cmd
        return cmd

    def run(
        self,
        command: Command,
        args: Optional[Iterable[str]] = None,
        *,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        sudo: bool = False,
        check: bool = True,
        capture: bool = False,
        input_text: Optional[str] = None,
        quiet: bool = False,
    ) -> subprocess.CompletedProcess:
        """
        Run a command with optional args
        `command` can be a string (e.g., "ls") or a list (e.g., ["ls", "-la"]).
        With check=True a non-zero exit raises CommandError.
        """
        cmd = self._sudo(_normalize(command, args), sudo)
        if not quiet:
            logger.debug("Running: %s", " ".join(shlex.quote(c) for c in cmd))
        try:
            cp = subprocess.run(
                cmd,
                env=self._env(env),
                cwd=str(cwd) if cwd is not None else None,
                input=input_text,
                text=True,
                stdout=subprocess.PIPE if capture or input_text is not None else None,
                stderr=subprocess.PIPE if capture else None,
            )
        except FileNotFoundError:
            raise CommandError(cmd, None)
        if check and cp.returncode != 0:
            raise CommandError(cmd, cp.returncode, cp.stderr or "")
        return cp

    def succeeds(self, command: Command, args: Optional[Iterable[str]] = None, **kwargs) -> bool:
        """True when the command exits 0; output is discarded"""
        try:
            cp = self.run(command, args, check=False, capture=True, quiet=True, **kwargs)
        except CommandError:
            return False
        return cp.returncode == 0

    def output(self, command: Command, args: Optional[Iterable[str]] = None, **kwargs) -> str:
        return self.run(command, args, capture=True, **kwargs).stdout.strip()

    def write_file(self, path: Path, content: str, *, sudo: bool = False):
        """Write `content` to `path`, through `sudo tee` when the target needs root"""
        path = Path(path)
        if not sudo or not self.use_sudo or os.geteuid() == 0:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
            return
        self.run(["tee", str(path)], sudo=True, input_text=content)

    def feed_pipeline(self, commands: Sequence[Command], chunks: Iterable[bytes], *, cwd=None) -> None:
        """
        Stream `chunks` into the first command of a shell-like pipeline
        (e.g. lz4 -d | tar -x). Only one chunk is held in memory at a time.
        """
        cmds = [_normalize(c) for c in commands]
        logger.debug("Piping into: %s", " | ".join(" ".join(c) for c in cmds))
        # temp files, not pipes: stderr is only read once stdin is done
        errs = [tempfile.TemporaryFile() for _ in cmds]
        try:
            self._drive_pipeline(cmds, errs, chunks, cwd)
        finally:
            for err in errs:
                err.close()

    def _drive_pipeline(self, cmds: List[List[str]], errs, chunks: Iterable[bytes], cwd) -> None:
        procs: List[subprocess.Popen] = []
        try:
            stdin = subprocess.PIPE
            for i, cmd in enumerate(cmds):
                last = i == len(cmds) - 1
                proc = subprocess.Popen(
                    cmd,
                    stdin=stdin,
                    stdout=None if last else subprocess.PIPE,
                    stderr=errs[i],
                    cwd=str(cwd) if cwd is not None else None,
                    env=self._env(None),
                )
                if procs and procs[-1].stdout is not None:
                    # let the previous stage get SIGPIPE if this one dies
                    procs[-1].stdout.close()
                procs.append(proc)
                stdin = proc.stdout
        except FileNotFoundError as e:
            for p in procs:
                p.kill()
            for p in procs:
                p.wait()
            raise CommandError([e.filename or cmds[len(procs)][0]], None)

        head = procs[0]
        broken = False
        try:
            for chunk in chunks:
                if not chunk:
                    continue
                try:
                    head.stdin.write(chunk)
                except BrokenPipeError:
                    broken = True
                    break
        except BaseException:
            for p in procs:
                p.kill()
            for p in procs:
                p.wait()
            raise
        finally:
            try:
                head.stdin.close()
            except BrokenPipeError:
                broken = True

        failed = None
        for cmd, proc, err in zip(cmds, procs, errs):
            rc = proc.wait()
            if rc != 0 and failed is None:
                err.seek(0)
                failed = CommandError(cmd, rc, err.read().decode("utf-8", "replace"))
        if failed is not None:
            raise failed
        if broken:
            raise CommandError(cmds[0], -1, "pipeline closed its input early")
