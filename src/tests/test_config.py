from __future__ import annotations

import pytest

from raftsim.core.config import RaftConfig, Settings
from raftsim.raft.errors import InvalidConfig


def test_presets():
    visual = RaftConfig.visual()
    assert (visual.min_message_delay, visual.max_message_delay) == (1000, 1500)
    assert visual.rpc_timeout == 5000
    assert (visual.min_election_timeout, visual.max_election_timeout) == (10000, 20000)
    assert visual.heartbeat_interval == 3000
    assert visual.batch_size == 1

    assert RaftConfig.preset("realistic") == RaftConfig()
    with pytest.raises(InvalidConfig):
        RaftConfig.preset("turbo")


@pytest.mark.parametrize(
    "changes",
    [
        {"min_message_delay": -1},
        {"max_message_delay": 10, "min_message_delay": 20},
        {"rpc_timeout": 0},
        {"min_election_timeout": 500, "max_election_timeout": 400},
        {"heartbeat_interval": 0},
        {"batch_size": 0},
    ],
)
def test_invalid_config_is_rejected(changes):
    with pytest.raises(InvalidConfig):
        RaftConfig().with_changes(**changes)


def test_config_is_immutable():
    cfg = RaftConfig()
    with pytest.raises(AttributeError):
        cfg.batch_size = 5  # type: ignore[misc]
    assert cfg.with_changes(batch_size=5).batch_size == 5
    assert cfg.batch_size == 1


def test_settings_load_from_env(monkeypatch):
    monkeypatch.setenv("NUM_SERVERS", "3")
    monkeypatch.setenv("PRESET", "visual")
    monkeypatch.setenv("SEED", "42")
    monkeypatch.setenv("AUTOSTART", "false")
    monkeypatch.setenv("HEARTBEAT_INTERVAL", "2500")
    monkeypatch.setenv("BATCH_SIZE", "4")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    s = Settings.load()
    assert s.num_servers == 3
    assert s.seed == 42
    assert s.autostart is False
    assert s.log_level == "DEBUG"
    assert s.raft.heartbeat_interval == 2500
    assert s.raft.batch_size == 4
    assert s.raft.min_election_timeout == 10000


def test_settings_defaults(monkeypatch):
    for name in ("NUM_SERVERS", "PRESET", "SEED", "AUTOSTART", "EVENT_HISTORY", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    for name in RaftConfig().as_dict():
        monkeypatch.delenv(name.upper(), raising=False)

    s = Settings.load()
    assert s.num_servers == 5
    assert s.seed is None
    assert s.autostart is True
    assert s.raft == RaftConfig.realistic()


@pytest.mark.parametrize(
    "changes",
    [
        {"batch_size": 2.5},
        {"batch_size": True},
        {"rpc_timeout": "fast"},
        {"heartbeat_interval": None},
    ],
)
def test_wrong_types_are_rejected(changes):
    with pytest.raises(InvalidConfig):
        RaftConfig().with_changes(**changes)


def test_float_timings_are_accepted():
    cfg = RaftConfig().with_changes(min_message_delay=12.5, max_message_delay=20.0)
    assert cfg.min_message_delay == 12.5
