import io
import tarfile
from pathlib import Path

import pytest
import requests

from story_node.config_patcher import apply_rules, read_value
from story_node.errors import InstallerError
from story_node.installer import NodeInstaller, consensus_config_rules, safe_extract, story_config_rules
from story_node.services import ServiceController, ServiceRegistrar
from tests.helpers import FakeRunner

CONFIG_TOML = """\
proxy_app = "tcp://127.0.0.1:26658"
moniker = "mynode"

[rpc]
laddr = "tcp://127.0.0.1:26657"

[p2p]
laddr = "tcp://0.0.0.0:26656"
external_address = ""
seeds = ""
persistent_peers = ""

[tx_index]
indexer = "kv"

[instrumentation]
prometheus = false
prometheus_listen_addr = ":26660"
"""

STORY_TOML = """\
engine-endpoint = "http://localhost:8551"
api-address = "127.0.0.1:1317"
"""


def geth_tarball(release):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        data = b"#!/bin/sh\necho geth\n"
        info = tarfile.TarInfo(f"{release}/geth")
        info.size = len(data)
        info.mode = 0o755
        tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeResponse:
    def __init__(self, body=b"", status_code=200):
        self.body = body
        self.status_code = status_code
        self.text = body.decode("utf-8", "replace")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]


class FakeSession:
    def __init__(self, routes):
        self.routes = routes
        self.urls = []

    def get(self, url, **kwargs):
        self.urls.append(url)
        body = self.routes.get(url)
        if body is None:
            return FakeResponse(status_code=404)
        return FakeResponse(body)


class BuildRunner(FakeRunner):
    """FakeRunner whose git clone and go build leave the files behind"""

    def run(self, command, args=None, **kwargs):
        cp = super().run(command, args, **kwargs)
        cmd = list(command)
        if cmd[:2] == ["git", "clone"]:
            Path(cmd[-1]).mkdir(parents=True, exist_ok=True)
        elif cmd[1:2] == ["build"]:
            Path(kwargs["cwd"], "story").write_text("binary")
        return cp


@pytest.fixture
def initialized(settings):
    """Config files as `story init` leaves them"""
    settings.config_toml.parent.mkdir(parents=True)
    settings.config_toml.write_text(CONFIG_TOML)
    settings.story_toml.write_text(STORY_TOML)
    return settings


@pytest.fixture
def no_port_probe(monkeypatch):
    monkeypatch.setattr("story_node.installer.ports_in_use", lambda ports: [])


def make_installer(settings, runner, session, answers=("mynode", "17")):
    answers = list(answers)
    snapshots = []
    registrar = ServiceRegistrar(runner, ServiceController(runner), settings.unit_dir, use_sudo=False)
    installer = NodeInstaller(
        settings,
        runner,
        registrar,
        snapshot=lambda: snapshots.append(True),
        session=session,
        prompt=lambda _msg: answers.pop(0),
    )
    return installer, snapshots


def routes_for(settings):
    return {
        settings.go_url: b"go-tarball",
        settings.geth_url: geth_tarball(settings.geth_release),
        settings.addrbook_url: b'{"addrs": []}',
        settings.public_ip_url: b"203.0.113.7\n",
    }


def test_consensus_rules_produce_expected_config(initialized):
    s = initialized
    s.port_prefix = "17"

    apply_rules(s.config_toml, consensus_config_rules(s, "203.0.113.7"))
    text = s.config_toml.read_text()

    assert 'proxy_app = "tcp://127.0.0.1:17658"' in text
    assert read_value(s.config_toml, "laddr", section="rpc") == "tcp://127.0.0.1:17657"
    assert read_value(s.config_toml, "laddr", section="p2p") == "tcp://0.0.0.0:17656"
    assert read_value(s.config_toml, "external_address") == "203.0.113.7:17656"
    assert read_value(s.config_toml, "seeds", section="p2p") == s.seeds
    assert read_value(s.config_toml, "persistent_peers", section="p2p") == s.peers
    assert read_value(s.config_toml, "indexer") == "null"
    assert "prometheus = true" in text
    assert 'prometheus_listen_addr = ":17660"' in text


def test_consensus_rules_without_public_ip_leave_external_address(initialized):
    apply_rules(initialized.config_toml, consensus_config_rules(initialized, None))
    assert read_value(initialized.config_toml, "external_address") == ""


def test_story_rules_shift_ports(initialized):
    initialized.port_prefix = "17"
    apply_rules(initialized.story_toml, story_config_rules(initialized))
    assert initialized.story_toml.read_text() == (
        'engine-endpoint = "http://localhost:17551"\napi-address = "127.0.0.1:17317"\n'
    )


def test_full_install_flow(initialized, no_port_probe):
    s = initialized
    runner = BuildRunner()
    session = FakeSession(routes_for(s))
    installer, snapshots = make_installer(s, runner, session)

    installer.run()

    assert s.moniker == "mynode"
    assert s.port_prefix == "17"
    profile = s.profile.read_text()
    assert 'export MONIKER="mynode"' in profile
    assert 'export STORY_PORT="17"' in profile
    assert "/usr/local/go/bin" in profile

    assert s.geth_binary.read_bytes().startswith(b"#!/bin/sh")
    assert s.addrbook_json.read_text() == '{"addrs": []}'
    assert read_value(s.config_toml, "external_address") == "203.0.113.7:17656"
    assert (s.config_toml.parent / "config.toml.bak").read_text() == CONFIG_TOML

    commands = [" ".join(c) for c in runner.calls]
    assert any(c.startswith("apt install -y curl git wget") for c in commands)
    assert f"git clone {s.story_repo} {s.home / 'story'}" in commands
    assert f"git checkout {s.story_version}" in commands
    assert f"{s.story_binary} init --moniker mynode --network iliad" in commands
    assert commands[-6:] == [
        "systemctl daemon-reload", "systemctl enable story-geth", "systemctl restart story-geth",
        "systemctl daemon-reload", "systemctl enable story", "systemctl restart story",
    ]
    assert sorted(p.name for p in s.unit_dir.iterdir()) == ["story-geth.service", "story.service"]
    assert "--http.port 17545" in (s.unit_dir / "story-geth.service").read_text()
    assert snapshots == [True]
    assert s.geth_data_dir.is_dir()


def test_build_failure_is_fatal(initialized, no_port_probe):
    s = initialized
    runner = FakeRunner(fail=[[str(s.go_binary), "build"]])
    installer, snapshots = make_installer(s, runner, FakeSession(routes_for(s)))

    with pytest.raises(InstallerError, match="Failed to build Story binary"):
        installer.run()

    assert snapshots == []
    assert not s.unit_dir.exists()


def test_download_failure_is_fatal(initialized, runner, no_port_probe):
    routes = routes_for(initialized)
    del routes[initialized.geth_url]
    installer, _ = make_installer(initialized, runner, FakeSession(routes))

    with pytest.raises(InstallerError, match="Failed to download"):
        installer.run()


def test_invalid_port_prefix_stops_before_any_command(initialized, runner, no_port_probe):
    installer, _ = make_installer(initialized, runner, FakeSession({}), answers=("mynode", "abc"))

    with pytest.raises(InstallerError):
        installer.run()
    assert runner.calls == []


def test_empty_port_answer_means_default(initialized, runner, no_port_probe):
    installer, _ = make_installer(initialized, runner, FakeSession({}), answers=("mynode", ""))
    installer.collect_inputs()
    assert initialized.port_prefix == "26"


def test_busy_ports_only_warn(initialized, runner, monkeypatch, caplog):
    monkeypatch.setattr("story_node.installer.ports_in_use", lambda ports: [17656])
    installer, _ = make_installer(initialized, runner, FakeSession({}))

    installer.collect_inputs()

    assert initialized.port_prefix == "17"
    assert "17656" in caplog.text


def test_safe_extract_rejects_escaping_paths(tmp_path):
    archive = tmp_path / "evil.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        info = tarfile.TarInfo("../outside")
        info.size = 0
        tar.addfile(info, io.BytesIO(b""))

    with pytest.raises(InstallerError):
        safe_extract(archive, tmp_path / "out")


def test_unwritable_profile_is_an_installer_error(initialized, runner, no_port_probe):
    initialized.profile.mkdir(parents=True)
    installer, _ = make_installer(initialized, runner, FakeSession({}))

    with pytest.raises(InstallerError) as excinfo:
        installer.collect_inputs()
    assert excinfo.value.step == "profile"
    assert runner.calls == []


def test_geth_install_failure_is_an_installer_error(initialized, runner):
    s = initialized
    s.bin_dir.parent.mkdir(parents=True)
    s.bin_dir.write_text("not a directory")
    installer, _ = make_installer(s, runner, FakeSession(routes_for(s)))

    with pytest.raises(InstallerError) as excinfo:
        installer.install_geth()
    assert excinfo.value.step == "geth"
