from __future__ import annotations


class RaftError(Exception):
    """Base class for every error raised by the simulator."""


class InvalidConfig(RaftError, ValueError):
    pass


class InvalidClusterSize(RaftError, ValueError):
    pass


class NotLeaderError(RaftError):
    """Client request sent to a node that is not the leader."""

    def __init__(self, node_id: str | None, leader_id: str | None, message: str | None = None):
        self.node_id = node_id
        self.leader_id = leader_id
        if message is None:
            if leader_id is not None:
                message = f"node {node_id} is not the leader; current leader is {leader_id}"
            else:
                message = f"node {node_id} is not the leader; no leader known"
        super().__init__(message)


class NoLeaderError(NotLeaderError):
    def __init__(self, message: str = "no leader elected"):
        super().__init__(node_id=None, leader_id=None, message=message)


class NodeAlreadyInitialized(RaftError):
    pass


class NodeRunningError(RaftError):
    pass


class ClusterRunningError(RaftError):
    pass


class UnknownNodeError(RaftError, KeyError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(node_id)

    def __str__(self) -> str:
        return f"unknown node {self.node_id!r}"


class InvariantViolation(RaftError, AssertionError):
    pass
