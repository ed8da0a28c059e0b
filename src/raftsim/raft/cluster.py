from __future__ import annotations

import logging
import random
from typing import Sequence

from raftsim.core.config import RaftConfig

from .clock import Clock, VirtualClock
from .errors import ClusterRunningError, InvalidClusterSize, NoLeaderError, UnknownNodeError
from .events import EventStream
from .node import RaftNode
from .types import NodeSnapshot, NodeState

logger = logging.getLogger("raft.cluster")


class RaftCluster:
    """A fixed set of nodes, every one a peer of every other one.

    The cluster only wires and drives nodes; consensus lives in ``RaftNode``.
    """

    def __init__(
        self,
        number_of_servers: int,
        config: RaftConfig | None = None,
        *,
        clock: Clock | None = None,
        events: EventStream | None = None,
        seed: int | None = None,
        names: Sequence[str] | None = None,
    ):
        if isinstance(number_of_servers, bool) or not isinstance(number_of_servers, int):
            raise InvalidClusterSize(f"number_of_servers must be an integer, got {number_of_servers!r}")
        if number_of_servers < 1:
            raise InvalidClusterSize(f"a cluster needs at least one server, got {number_of_servers}")

        if names is None:
            names = [f"s{i}" for i in range(1, number_of_servers + 1)]
        names = list(names)
        if len(names) != number_of_servers:
            raise InvalidClusterSize(f"got {len(names)} names for {number_of_servers} servers")
        if len(set(names)) != len(names):
            raise ValueError(f"server names must be unique: {names}")

        self.config = config if config is not None else RaftConfig()
        self.clock = clock if clock is not None else VirtualClock()
        self.events = events if events is not None else EventStream()
        self.seed = seed

        # one generator per node so that a node's timing does not depend on its neighbours' activity
        master = random.Random(seed)
        self._nodes: dict[str, RaftNode] = {
            name: RaftNode(
                name,
                self.config,
                self.clock,
                events=self.events,
                rng=random.Random(master.getrandbits(64)),
            )
            for name in names
        }

        for node in self._nodes.values():
            node.init([other for other in self._nodes.values() if other is not node])

        logger.info("cluster_created servers=%s seed=%s", number_of_servers, seed)

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self):
        return iter(self._nodes.values())

    def __repr__(self) -> str:
        return f"RaftCluster(servers={list(self._nodes)})"

    @property
    def nodes(self) -> list[RaftNode]:
        return list(self._nodes.values())

    def node(self, node_id: str) -> RaftNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise UnknownNodeError(node_id) from None

    def start(self) -> None:
        for node in self._nodes.values():
            node.start()

    def stop(self) -> None:
        for node in self._nodes.values():
            node.stop()

    @property
    def running(self) -> bool:
        return any(node.state != NodeState.STOPPED for node in self._nodes.values())

    def leaders(self) -> list[RaftNode]:
        return [node for node in self._nodes.values() if node.state == NodeState.LEADER]

    def leader(self) -> RaftNode | None:
        """The leader with the highest term; an old leader may not have heard of the new one yet."""
        leaders = self.leaders()
        if not leaders:
            return None
        return max(leaders, key=lambda node: node.term)

    def request(self, value: str) -> tuple[str, int]:
        leader = self.leader()
        if leader is None:
            raise NoLeaderError()
        return leader.id, leader.request(value)

    def configure(self, config: RaftConfig) -> None:
        if self.running:
            raise ClusterRunningError("timing configuration can only change while every node is stopped")
        self.config = config
        for node in self._nodes.values():
            node.config = config
        logger.info("cluster_configured %s", " ".join(f"{k}={v}" for k, v in config.as_dict().items()))

    def snapshot(self) -> list[NodeSnapshot]:
        return [node.snapshot() for node in self._nodes.values()]
