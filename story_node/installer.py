import hashlib
import logging
import os
import shutil
import socket
import tarfile
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import requests
from tabulate import tabulate

from story_node.config_patcher import KeyRule, Substitution, apply_rules, port_shift, quoted
from story_node.errors import CommandError, InstallerError
from story_node.log import banner
from story_node.runner import ShellRunner
from story_node.services import ServiceRegistrar, geth_descriptor, story_descriptor
from story_node.settings import (
    CONSENSUS_PORTS,
    STORY_TOML_PORTS,
    NodeSettings,
    ensure_profile_line,
    upsert_exports,
    validate_port_prefix,
)

logger = logging.getLogger(__name__)


def consensus_config_rules(settings: NodeSettings, public_ip: Optional[str]) -> List:
    """Rules for config.toml: ports first, so the peer lines keep the remote :26656"""
    prefix = settings.port_prefix
    rules = [port_shift(port, prefix) for port in CONSENSUS_PORTS]
    rules += [
        KeyRule("seeds", quoted(settings.seeds), section="p2p"),
        KeyRule("persistent_peers", quoted(settings.peers), section="p2p"),
        Substitution("prometheus = false", "prometheus = true"),
        KeyRule("indexer", quoted("null")),
    ]
    if public_ip:
        rules.append(Substitution(
            r'^external_address = ""',
            f'external_address = "{public_ip}:{settings.port(26656)}"',
            regex=True,
        ))
    return rules


def story_config_rules(settings: NodeSettings) -> List:
    return [port_shift(port, settings.port_prefix) for port in STORY_TOML_PORTS]


def ports_in_use(ports: Iterable[int], host: str = "127.0.0.1") -> List[int]:
    """Ports something on this host is already listening on"""
    busy = []
    for port in ports:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(0.5)
            if sock.connect_ex((host, port)) == 0:
                busy.append(port)
    return busy


def sha256_of(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(block)
    return digest.hexdigest()


def safe_extract(archive: Path, target: Path):
    """Extract a .tar.gz, refusing absolute or parent-relative member paths"""
    with tarfile.open(archive) as tar:
        for member in tar.getmembers():
            if member.name.startswith("/") or ".." in Path(member.name).parts:
                raise InstallerError(f"unsafe path in archive {archive.name}: {member.name}")
        tar.extractall(target)


class NodeInstaller:
    """Full node install flow: toolchain, binaries, init, config, services, snapshot"""

    def __init__(
        self,
        settings: NodeSettings,
        runner: ShellRunner,
        registrar: ServiceRegistrar,
        snapshot: Callable[[], object],
        session: Optional[requests.Session] = None,
        prompt: Callable[[str], str] = input,
    ):
        self.settings = settings
        self.runner = runner
        self.registrar = registrar
        self.snapshot = snapshot
        self.session = session or requests.Session()
        self.prompt = prompt

    # helpers

    def download(self, url: str, dest: Path) -> Path:
        logger.info(f"Downloading {url}")
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self.session.get(url, stream=True, timeout=self.settings.http_timeout) as r:
                r.raise_for_status()
                with open(dest, "wb") as f:
                    for chunk in r.iter_content(chunk_size=64 * 1024):
                        if chunk:
                            f.write(chunk)
        except (requests.RequestException, OSError) as e:
            raise InstallerError(f"Failed to download {url}: {e}", step="download")
        return dest

    def build_env(self) -> dict:
        """Process env with the Go toolchain and ~/go/bin on PATH"""
        env = dict(os.environ)
        env["PATH"] = os.pathsep.join([env.get("PATH", ""), str(self.settings.go_root / "bin"), str(self.settings.bin_dir)])
        env["HOME"] = str(self.settings.home)
        return env

    def public_ip(self) -> Optional[str]:
        try:
            r = self.session.get(self.settings.public_ip_url, timeout=10)
            r.raise_for_status()
            ip = r.text.strip()
        except requests.RequestException as e:
            logger.warning(f"[WARN] Could not detect public IP ({e}); external_address left unchanged")
            return None
        return ip or None

    # steps

    def collect_inputs(self, moniker: Optional[str] = None, port: Optional[str] = None):
        s = self.settings
        s.moniker = (moniker or self.prompt("Enter your MONIKER: ")).strip()
        if not s.moniker:
            raise InstallerError("moniker must not be empty")
        s.port_prefix = validate_port_prefix(port or self.prompt("Enter your PORT (e.g., 17, default port=26): ") or "26")

        try:
            upsert_exports(s.profile, {"MONIKER": s.moniker, "STORY_CHAIN_ID": s.chain_id, "STORY_PORT": s.port_prefix})
        except OSError as e:
            raise InstallerError(f"Failed to update {s.profile}: {e}", step="profile")
        logger.info(f"Moniker: {s.moniker}, Chain ID: {s.chain_id}, Node custom port: {s.port_prefix}")

        shifted = [s.port(p) for p in CONSENSUS_PORTS + STORY_TOML_PORTS]
        busy = ports_in_use(shifted)
        if busy:
            logger.warning(f"[WARN] Port(s) {', '.join(map(str, busy))} already in use on this host; "
                           "another node may be using the same prefix")

    def install_go(self):
        s = self.settings
        banner(logger, "Setting up Go environment")
        tarball = self.download(s.go_url, s.home / f"go{s.go_version}.linux-amd64.tar.gz")
        try:
            self.runner.run(["rm", "-rf", str(s.go_root)], sudo=True)
            self.runner.run(["tar", "-C", str(s.go_root.parent), "-xzf", str(tarball)], sudo=True)
        except CommandError as e:
            raise InstallerError(f"Failed to extract Go: {e}", step="go")
        finally:
            tarball.unlink(missing_ok=True)
        try:
            ensure_profile_line(s.profile, f"export PATH=$PATH:{s.go_root}/bin:$HOME/go/bin")
            s.bin_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InstallerError(f"Failed to set up Go environment: {e}", step="go")
        logger.info(f"Go version: {self.runner.output([str(s.go_binary), 'version'], env=self.build_env())}")

    def install_packages(self):
        banner(logger, "Updating system packages")
        env = {"DEBIAN_FRONTEND": "noninteractive"}
        try:
            self.runner.run(["apt", "update"], sudo=True, env=env)
            self.runner.run(["apt", "upgrade", "-y"], sudo=True, env=env)
        except CommandError as e:
            raise InstallerError(f"Failed to update system packages: {e}", step="apt")
        logger.info("Installing necessary dependencies")
        try:
            self.runner.run(["apt", "install", "-y", *self.settings.apt_packages], sudo=True, env=env)
        except CommandError as e:
            raise InstallerError(f"Failed to install dependencies: {e}", step="apt")

    def install_geth(self):
        s = self.settings
        banner(logger, "Setting up Story-Geth instance")
        workdir = s.home / "bin"
        shutil.rmtree(workdir, ignore_errors=True)
        tarball = self.download(s.geth_url, workdir / f"{s.geth_release}.tar.gz")
        try:
            safe_extract(tarball, workdir)
        except (tarfile.TarError, OSError) as e:
            raise InstallerError(f"Failed to extract Geth binary: {e}", step="geth")
        try:
            s.bin_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(workdir / s.geth_release / "geth"), str(s.geth_binary))
            s.geth_binary.chmod(0o755)
            s.story_home.mkdir(parents=True, exist_ok=True)
            s.geth_home.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InstallerError(f"Failed to install Geth binary: {e}", step="geth")

    def install_story(self):
        s = self.settings
        banner(logger, "Setting up Story instance")
        src = s.home / "story"
        shutil.rmtree(src, ignore_errors=True)
        env = self.build_env()
        try:
            self.runner.run(["git", "clone", s.story_repo, str(src)])
            self.runner.run(["git", "checkout", s.story_version], cwd=src)
        except CommandError as e:
            raise InstallerError(f"Failed to fetch Story {s.story_version}: {e}", step="story")
        try:
            self.runner.run([str(s.go_binary), "build", "-o", "story", "./client"], cwd=src, env=env)
        except CommandError as e:
            raise InstallerError(f"Failed to build Story binary: {e}", step="story")
        try:
            s.bin_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(src / "story"), str(s.story_binary))
        except OSError as e:
            raise InstallerError(f"Failed to move Story binary: {e}", step="story")

    def init_node(self):
        s = self.settings
        banner(logger, "Initializing Story node")
        try:
            self.runner.run([str(s.story_binary), "init", "--moniker", s.moniker, "--network", s.network], env=self.build_env())
        except CommandError as e:
            raise InstallerError(f"Failed to initialize Story node: {e}", step="init")

        logger.info("Fetching genesis and address book files")
        if s.genesis_json.is_file():
            try:
                actual = sha256_of(s.genesis_json)
            except OSError as e:
                raise InstallerError(f"Failed to read {s.genesis_json}: {e}", step="init")
            if actual == s.genesis_sha256:
                logger.info(f"Genesis hash OK: {actual}")
            else:
                logger.warning(f"[WARN] Genesis hash is {actual}, must be: {s.genesis_sha256}")
        else:
            logger.warning(f"[WARN] {s.genesis_json} not found after init")
        self.download(s.addrbook_url, s.addrbook_json)

    def configure(self):
        s = self.settings
        banner(logger, "Configuring P2P settings and ports")
        apply_rules(s.config_toml, consensus_config_rules(s, self.public_ip()), backup_suffix=".bak")
        apply_rules(s.story_toml, story_config_rules(s), backup_suffix=".bak")

    def register_services(self):
        banner(logger, "Generating systemd service files")
        for desc in (geth_descriptor(self.settings), story_descriptor(self.settings)):
            self.registrar.register(desc)

    def summary(self) -> str:
        s = self.settings
        rows = [
            ["moniker", s.moniker],
            ["chain id", s.chain_id],
            ["p2p port", s.port(26656)],
            ["rpc port", s.port(26657)],
            ["geth http port", s.port(8545)],
            ["services", f"{s.story_service}, {s.geth_service}"],
        ]
        return tabulate(rows, tablefmt="simple")

    def run(self, moniker: Optional[str] = None, port: Optional[str] = None):
        banner(logger, "Initializing node installation")
        self.collect_inputs(moniker, port)
        self.install_go()
        self.install_packages()
        self.install_geth()
        self.install_story()
        self.init_node()
        self.configure()
        self.register_services()

        banner(logger, "Retrieving blockchain snapshot")
        try:
            self.settings.geth_data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InstallerError(f"Failed to create {self.settings.geth_data_dir}: {e}", step="snapshot")
        self.snapshot()
        print(self.summary())
