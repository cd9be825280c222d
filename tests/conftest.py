"""Pytest configuration and shared fixtures."""

import pytest

from story_node.settings import NodeSettings
from tests.helpers import FakeController, FakeRunner


@pytest.fixture
def settings(tmp_path):
    return NodeSettings(
        home=tmp_path / "home",
        user="validator",
        unit_dir=tmp_path / "systemd",
        use_sudo=False,
        poll_interval=0,
    )


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def node_tree(settings):
    """A node home as left by `story init` plus a synced geth datadir"""
    settings.story_data_dir.mkdir(parents=True)
    settings.signing_state.write_text('{"height": "1234", "round": 0, "step": 3}\n')
    (settings.story_data_dir / "blockstore.db").mkdir()
    settings.chaindata_dir.mkdir(parents=True)
    (settings.chaindata_dir / "000001.ldb").write_text("old")
    return settings
