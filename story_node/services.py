import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from story_node.errors import CommandError, ServiceError
from story_node.runner import ShellRunner
from story_node.settings import NodeSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceDescriptor:
    name: str
    description: str
    exec_start: Sequence[str]
    user: str
    working_directory: Optional[Path] = None
    after: str = "network-online.target"
    restart: str = "on-failure"
    restart_sec: int = 3
    limit_nofile: int = 65535
    wanted_by: str = "multi-user.target"

    @property
    def unit_name(self) -> str:
        return f"{self.name}.service"


def render_unit(desc: ServiceDescriptor) -> str:
    """systemd unit text for `desc`"""
    lines = [
        "[Unit]",
        f"Description={desc.description}",
        f"After={desc.after}",
        "",
        "[Service]",
        f"User={desc.user}",
    ]
    if desc.working_directory is not None:
        lines.append(f"WorkingDirectory={desc.working_directory}")
    lines += [
        f"ExecStart={' '.join(shlex.quote(str(a)) for a in desc.exec_start)}",
        f"Restart={desc.restart}",
        f"RestartSec={desc.restart_sec}",
        f"LimitNOFILE={desc.limit_nofile}",
        "",
        "[Install]",
        f"WantedBy={desc.wanted_by}",
        "",
    ]
    return "\n".join(lines)


def geth_descriptor(settings: NodeSettings) -> ServiceDescriptor:
    p = settings.port
    return ServiceDescriptor(
        name=settings.geth_service,
        description="Story Geth daemon",
        exec_start=[
            str(settings.geth_binary), f"--{settings.network}", "--syncmode", "full",
            "--http", "--http.api", "eth,net,web3,engine", "--http.vhosts", "*",
            "--http.addr", "0.0.0.0", "--http.port", str(p(8545)),
            "--authrpc.port", str(p(8551)),
            "--ws", "--ws.api", "eth,web3,net,txpool", "--ws.addr", "0.0.0.0",
            "--ws.port", str(p(8546)),
        ],
        user=settings.user,
        after="network-online.target",
        restart_sec=3,
    )


def story_descriptor(settings: NodeSettings) -> ServiceDescriptor:
    return ServiceDescriptor(
        name=settings.story_service,
        description="Story Service",
        exec_start=[str(settings.story_binary), "run"],
        user=settings.user,
        working_directory=settings.story_home,
        after="network.target",
        restart_sec=5,
    )


class ServiceController:
    """Thin systemctl wrapper; every failure is a ServiceError"""

    def __init__(self, runner: ShellRunner):
        self.runner = runner

    def _systemctl(self, *args: str):
        try:
            self.runner.run(["systemctl", *args], sudo=True, capture=True)
        except CommandError as e:
            raise ServiceError(f"systemctl {' '.join(args)} failed: {e}")

    def daemon_reload(self):
        self._systemctl("daemon-reload")

    def enable(self, name: str):
        self._systemctl("enable", name)

    def stop(self, name: str):
        self._systemctl("stop", name)

    def restart(self, name: str):
        self._systemctl("restart", name)

    def is_active(self, name: str) -> bool:
        return self.runner.succeeds(["systemctl", "is-active", "--quiet", name])

    def exists(self, name: str) -> bool:
        """`systemctl status` exits 4 for units it does not know"""
        return self.runner.succeeds(["systemctl", "status", name])


class ServiceRegistrar:
    """Writes a unit definition and activates it; one definition per service name"""

    def __init__(self, runner: ShellRunner, controller: ServiceController, unit_dir: Path, use_sudo: bool = True):
        self.runner = runner
        self.controller = controller
        self.unit_dir = Path(unit_dir)
        self.use_sudo = use_sudo

    def unit_path(self, desc: ServiceDescriptor) -> Path:
        return self.unit_dir / desc.unit_name

    def write(self, desc: ServiceDescriptor) -> bool:
        """Write the unit file; False when it already has this exact content"""
        path = self.unit_path(desc)
        content = render_unit(desc)
        try:
            if path.is_file() and path.read_text() == content:
                return False
        except OSError:
            pass
        try:
            self.runner.write_file(path, content, sudo=self.use_sudo)
        except (OSError, CommandError) as e:
            raise ServiceError(f"cannot write {path}: {e}")
        logger.info(f"Wrote {path}")
        return True

    def register(self, desc: ServiceDescriptor, start: bool = True):
        """Write, reload systemd, enable and (re)start so the new definition is the live one"""
        self.write(desc)
        self.controller.daemon_reload()
        self.controller.enable(desc.name)
        if start:
            self.controller.restart(desc.name)
        logger.info(f"Service {desc.unit_name} registered")
