from __future__ import annotations

import asyncio
import time
from typing import Callable

import httpx
import pytest

from raftsim.core.config import RaftConfig, Settings
from raftsim.main import create_app
from raftsim.raft.clock import VirtualClock
from raftsim.raft.cluster import RaftCluster
from raftsim.raft.events import EventRecorder
from raftsim.raft.node import RaftNode
from raftsim.raft.types import EventKind, LogEntry, NodeState, RaftEvent

# message delays well below the election timeout: min_election_timeout > 2 * max_message_delay + rpc_timeout
FAST = RaftConfig(
    min_message_delay=10,
    max_message_delay=20,
    rpc_timeout=60,
    min_election_timeout=150,
    max_election_timeout=300,
    heartbeat_interval=40,
    batch_size=1,
)


class SafetyMonitor:
    """Listens to cluster events and records violations of the Raft safety properties."""

    def __init__(self, cluster: RaftCluster):
        self.cluster = cluster
        self.leaders_by_term: dict[int, set[str]] = {}
        self.committed: dict[int, LogEntry] = {}
        self.violations: list[str] = []
        cluster.events.subscribe(self)

    def __call__(self, event: RaftEvent) -> None:
        if event.kind == EventKind.BECAME_LEADER:
            leaders = self.leaders_by_term.setdefault(event.term, set())
            leaders.add(event.node_id)
            if len(leaders) > 1:
                self.violations.append(f"two leaders in term {event.term}: {sorted(leaders)}")
        elif event.kind in (EventKind.COMMITTED, EventKind.RECEIVED_APPEND_ENTRIES):
            self._check_committed_prefix(self.cluster.node(event.node_id))

    def _check_committed_prefix(self, node: RaftNode) -> None:
        for index in range(1, node.commit_index + 1):
            entry = node.log[index - 1]
            known = self.committed.setdefault(index, entry)
            if known != entry:
                self.violations.append(f"{node.id}: committed entry {index} changed from {known} to {entry}")

    def assert_ok(self) -> None:
        assert self.violations == []
        assert_log_matching(self.cluster)


def assert_log_matching(cluster: RaftCluster) -> None:
    nodes = cluster.nodes
    for i, a in enumerate(nodes):
        for b in nodes[i + 1:]:
            for index in range(min(len(a.log), len(b.log)), 0, -1):
                if a.log[index - 1].term == b.log[index - 1].term:
                    assert a.log[:index] == b.log[:index], f"log matching broken between {a.id} and {b.id}"
                    break


def run_until(clock: VirtualClock, predicate: Callable[[], bool], timeout: float, desc: str = "condition") -> float:
    """Fire timers one by one until ``predicate`` holds. Returns the simulated time."""
    deadline = clock.now() + timeout
    while not predicate():
        next_at = clock.next_deadline()
        if next_at is None or next_at > deadline:
            raise AssertionError(f"Timeout waiting for {desc} (t={clock.now():.1f})")
        clock.step()
    return clock.now()


def wait_for_leader(cluster: RaftCluster, timeout: float = 20 * FAST.max_election_timeout) -> RaftNode:
    run_until(cluster.clock, lambda: bool(cluster.leaders()), timeout, desc="a leader")
    return cluster.leader()


def wait_for_replication(cluster: RaftCluster, nodes: list[RaftNode], index: int, timeout: float = 2000) -> None:
    def _replicated():
        reference = nodes[0].log
        return all(n.commit_index >= index and n.log == reference for n in nodes)

    run_until(cluster.clock, _replicated, timeout, desc=f"entry {index} committed on {[n.id for n in nodes]}")


def sent_messages(recorder: EventRecorder, node_id: str, type_: str | None = None) -> list[dict]:
    return [
        e.payload["message"]
        for e in recorder.of_kind(EventKind.SENT_MESSAGE, node_id)
        if type_ is None or e.payload["message"]["type"] == type_
    ]


def running(cluster: RaftCluster) -> list[RaftNode]:
    return [n for n in cluster.nodes if n.state != NodeState.STOPPED]


async def wait_until(
    predicate,
    timeout: float = 8.0,
    interval: float = 0.05,
    desc: str = "condition",
):
    start = time.monotonic()
    while time.monotonic() - start < timeout:
        if await predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError(f"Timeout waiting for {desc}")


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def make_cluster(clock: VirtualClock):
    def factory(n: int = 3, seed: int = 1, config: RaftConfig = FAST) -> RaftCluster:
        return RaftCluster(n, config, clock=clock, seed=seed)

    return factory


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder(maxlen=None)


@pytest.fixture
def settings() -> Settings:
    return Settings(num_servers=3, seed=7, autostart=False, event_history=5000, log_level="INFO", raft=FAST)


@pytest.fixture
async def api(settings: Settings, clock: VirtualClock):
    app = create_app(settings, clock=clock)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://raftsim") as c:
        yield app, c
