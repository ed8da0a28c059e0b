from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace

from raftsim.raft.errors import InvalidConfig


def _env(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v != "" else default


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "1" if default else "0").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class RaftConfig:
    """Timing knobs of the simulation, all durations in milliseconds."""

    min_message_delay: float = 50
    max_message_delay: float = 100
    rpc_timeout: float = 250
    min_election_timeout: float = 750
    max_election_timeout: float = 1200
    heartbeat_interval: float = 200
    batch_size: int = 1

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidConfig(f"{f.name} must be a number, got {value!r}")
        if not isinstance(self.batch_size, int):
            raise InvalidConfig(f"batch_size must be an integer, got {self.batch_size!r}")
        if self.min_message_delay < 0:
            raise InvalidConfig("min_message_delay must be >= 0")
        if self.max_message_delay < self.min_message_delay:
            raise InvalidConfig("max_message_delay must be >= min_message_delay")
        if self.rpc_timeout <= 0:
            raise InvalidConfig("rpc_timeout must be > 0")
        if self.min_election_timeout <= 0:
            raise InvalidConfig("min_election_timeout must be > 0")
        if self.max_election_timeout < self.min_election_timeout:
            raise InvalidConfig("max_election_timeout must be >= min_election_timeout")
        if self.heartbeat_interval <= 0:
            raise InvalidConfig("heartbeat_interval must be > 0")
        if self.batch_size < 1:
            raise InvalidConfig("batch_size must be >= 1")

    @staticmethod
    def visual() -> "RaftConfig":
        # slowed down so every message can be followed by eye
        return RaftConfig(
            min_message_delay=1000,
            max_message_delay=1500,
            rpc_timeout=5000,
            min_election_timeout=10000,
            max_election_timeout=20000,
            heartbeat_interval=3000,
            batch_size=1,
        )

    @staticmethod
    def realistic() -> "RaftConfig":
        return RaftConfig()

    @staticmethod
    def preset(name: str) -> "RaftConfig":
        presets = {"visual": RaftConfig.visual, "realistic": RaftConfig.realistic}
        try:
            return presets[name]()
        except KeyError:
            raise InvalidConfig(f"unknown preset {name!r}, expected one of {sorted(presets)}") from None

    def with_changes(self, **changes) -> "RaftConfig":
        return replace(self, **changes)

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class Settings:
    num_servers: int
    seed: int | None
    autostart: bool
    event_history: int
    log_level: str
    raft: RaftConfig

    @staticmethod
    def load() -> "Settings":
        seed_raw = _env("SEED", "")
        base = RaftConfig.preset(_env("PRESET", "realistic"))

        overrides: dict = {}
        for f in fields(RaftConfig):
            raw = os.getenv(f.name.upper())
            if raw is None or raw == "":
                continue
            overrides[f.name] = int(raw) if f.name == "batch_size" else float(raw)

        return Settings(
            num_servers=int(_env("NUM_SERVERS", "5")),
            seed=int(seed_raw) if seed_raw else None,
            autostart=_env_bool("AUTOSTART", True),
            event_history=int(_env("EVENT_HISTORY", "1000")),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            raft=base.with_changes(**overrides) if overrides else base,
        )
