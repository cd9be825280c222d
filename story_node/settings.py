import dataclasses
import getpass
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from story_node.errors import InstallerError

# base ports rewritten by the port prefix, per config file
CONSENSUS_PORTS = (26656, 26657, 26658, 26660)
STORY_TOML_PORTS = (1317, 8551)


@dataclass(frozen=True)
class Mirror:
    key: str
    label: str
    story_url: str
    geth_url: str


DEFAULT_MIRRORS = {
    "1": Mirror(
        key="1",
        label="Source 1 (Archive, full snapshot)",
        story_url="https://share102.utsa.tech/story/story_testnet.tar.lz4",
        geth_url="https://share102.utsa.tech/story/story_geth_testnet.tar.lz4",
    ),
    "2": Mirror(
        key="2",
        label="Source 2 (Pruned)",
        story_url="https://share106-7.utsa.tech/story/story_testnet.tar.lz4",
        geth_url="https://share106-7.utsa.tech/story/story_geth_testnet.tar.lz4",
    ),
}


@dataclass
class NodeSettings:
    """Everything the installer needs to know; passed explicitly to every component"""

    home: Path = field(default_factory=Path.home)
    user: str = field(default_factory=getpass.getuser)
    moniker: str = ""
    port_prefix: str = "26"

    chain_id: str = "iliad-0"
    network: str = "iliad"
    go_version: str = "1.22.3"
    go_root: Path = Path("/usr/local/go")
    geth_release: str = "geth-linux-amd64-0.9.3-b224fdf"
    geth_base_url: str = "https://story-geth-binaries.s3.us-west-1.amazonaws.com/geth-public"
    story_repo: str = "https://github.com/piplabs/story"
    story_version: str = "v0.11.0"
    seeds: str = "90161a7f82ce5dbfbed1a2a9d40d4103730cff0f@5.9.87.231:26656"
    peers: str = "6a07e2f396519b55ea05f195bac7800b451983c0@story-seed.mandragora.io:26656"
    addrbook_url: str = "https://share102.utsa.tech/story/addrbook.json"
    genesis_sha256: str = "18ab598bbaefaa5af5e998abe14e8660ff6fa3c63a9453f5f40f472b213ed091"
    reference_status_url: str = "https://t-story.archive.rpc.utsa.tech/status"
    public_ip_url: str = "https://eth0.me"
    apt_packages: List[str] = field(default_factory=lambda: [
        "curl", "git", "wget", "htop", "tmux", "jq", "make", "lz4", "unzip", "bc",
    ])

    story_service: str = "story"
    geth_service: str = "story-geth"
    unit_dir: Path = Path("/etc/systemd/system")
    use_sudo: bool = True
    poll_interval: float = 5.0
    http_timeout: float = 30.0
    mirrors: Dict[str, Mirror] = field(default_factory=lambda: dict(DEFAULT_MIRRORS))

    # derived paths

    @property
    def bin_dir(self) -> Path:
        return self.home / "go" / "bin"

    @property
    def go_binary(self) -> Path:
        return self.go_root / "bin" / "go"

    @property
    def story_binary(self) -> Path:
        return self.bin_dir / "story"

    @property
    def geth_binary(self) -> Path:
        return self.bin_dir / "geth"

    @property
    def story_home(self) -> Path:
        return self.home / ".story" / "story"

    @property
    def geth_home(self) -> Path:
        return self.home / ".story" / "geth"

    @property
    def geth_data_dir(self) -> Path:
        return self.geth_home / self.network / "geth"

    @property
    def story_data_dir(self) -> Path:
        return self.story_home / "data"

    @property
    def chaindata_dir(self) -> Path:
        return self.geth_data_dir / "chaindata"

    @property
    def config_toml(self) -> Path:
        return self.story_home / "config" / "config.toml"

    @property
    def story_toml(self) -> Path:
        return self.story_home / "config" / "story.toml"

    @property
    def genesis_json(self) -> Path:
        return self.story_home / "config" / "genesis.json"

    @property
    def addrbook_json(self) -> Path:
        return self.story_home / "config" / "addrbook.json"

    @property
    def signing_state(self) -> Path:
        return self.story_data_dir / "priv_validator_state.json"

    @property
    def signing_state_backup(self) -> Path:
        return self.story_home / "priv_validator_state.json.backup"

    @property
    def profile(self) -> Path:
        return self.home / ".bash_profile"

    def port(self, base_port: int) -> int:
        """Port `base_port` moved under the configured prefix, e.g. 26656 -> 17656 for prefix 17"""
        return int(f"{self.port_prefix}{str(base_port)[-3:]}")

    @property
    def geth_url(self) -> str:
        return f"{self.geth_base_url}/{self.geth_release}.tar.gz"

    @property
    def go_url(self) -> str:
        return f"https://golang.org/dl/go{self.go_version}.linux-amd64.tar.gz"


def validate_port_prefix(value: str) -> str:
    """Accept 1-2 digit prefixes whose shifted ports stay within 1..65535, dropping a leading zero"""
    value = (value or "").strip()
    if not re.fullmatch(r"[0-9]{1,2}", value) or int(value) == 0:
        raise InstallerError(f"invalid port prefix {value!r}: expected a number between 1 and 64 (default 26)")
    value = str(int(value))
    shifted = [int(f"{value}{str(p)[-3:]}") for p in CONSENSUS_PORTS + STORY_TOML_PORTS]
    if max(shifted) > 65535:
        raise InstallerError(f"invalid port prefix {value!r}: shifted ports would exceed 65535")
    return value


def _coerce(name: str, value: Any, current: Any) -> Any:
    if name == "mirrors":
        mirrors = {}
        for key, entry in (value or {}).items():
            entry = dict(entry)
            mirrors[str(key)] = Mirror(
                key=str(key),
                label=entry.get("label", f"Source {key}"),
                story_url=entry["story_url"],
                geth_url=entry["geth_url"],
            )
        return mirrors
    if isinstance(current, Path):
        return Path(os.path.expanduser(str(value)))
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, str) and not isinstance(value, str):
        return str(value)
    return value


def apply_overrides(settings: NodeSettings, overrides: Mapping[str, Any]) -> NodeSettings:
    known = {f.name: f for f in dataclasses.fields(settings)}
    unknown = sorted(set(overrides) - set(known))
    if unknown:
        raise InstallerError(f"unknown settings key(s): {', '.join(unknown)}")
    changes = {name: _coerce(name, value, getattr(settings, name)) for name, value in overrides.items()}
    return dataclasses.replace(settings, **changes)


def load_settings(path: Optional[Path] = None, **overrides) -> NodeSettings:
    """Defaults, then the YAML file (if any), then explicit keyword overrides"""
    settings = NodeSettings()
    if path is not None:
        path = Path(path).expanduser()
        if not path.is_file():
            raise InstallerError(f"settings file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise InstallerError(f"could not parse {path}: {e}")
        if not isinstance(data, dict):
            raise InstallerError(f"{path} must contain a mapping of settings")
        settings = apply_overrides(settings, data)
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        settings = apply_overrides(settings, overrides)
    return settings


# shell profile persistence

def read_exports(profile: Path) -> Dict[str, str]:
    env = {}
    if profile.exists():
        for line in profile.read_text().splitlines():
            if line.startswith("export ") and "=" in line:
                k, v = line.replace("export ", "", 1).split("=", 1)
                env[k.strip()] = v.strip().strip('"')
    return env


def upsert_exports(profile: Path, updates: Mapping[str, str]):
    """Set `export KEY="value"` lines in place, appending the ones not present yet"""
    text = profile.read_text() if profile.is_file() else ""
    for key, value in updates.items():
        line = f'export {key}="{value}"'
        pattern = re.compile(rf"^\s*export\s+{re.escape(key)}\s*=.*$", re.M)
        if pattern.search(text):
            text = pattern.sub(lambda _m: line, text)
        else:
            text = (text.rstrip("\n") + "\n" if text else "") + line + "\n"
    profile.parent.mkdir(parents=True, exist_ok=True)
    profile.write_text(text)


def ensure_profile_line(profile: Path, line: str) -> bool:
    """Append `line` unless the profile already has it"""
    text = profile.read_text() if profile.is_file() else ""
    if line in text.splitlines():
        return False
    profile.parent.mkdir(parents=True, exist_ok=True)
    profile.write_text((text.rstrip("\n") + "\n" if text else "") + line + "\n")
    return True
