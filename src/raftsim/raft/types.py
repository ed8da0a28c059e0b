from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class NodeState(str, Enum):
    FOLLOWER = "follower"
    CANDIDATE = "candidate"
    LEADER = "leader"
    STOPPED = "stopped"


class LogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    term: int
    value: str


class _Message(BaseModel):
    id: str
    source: str
    dest: str
    term: int


class RequestVote(_Message):
    type: Literal["RequestVote"] = "RequestVote"
    last_log_term: int
    last_log_index: int


class RequestVoteResponse(_Message):
    type: Literal["RequestVoteResponse"] = "RequestVoteResponse"
    granted: bool


class AppendEntries(_Message):
    type: Literal["AppendEntries"] = "AppendEntries"
    prev_index: int
    prev_term: int
    entries: list[LogEntry] = Field(default_factory=list)
    commit_index: int


class AppendEntriesResponse(_Message):
    type: Literal["AppendEntriesResponse"] = "AppendEntriesResponse"
    success: bool
    match_index: int


RaftMessage = Annotated[
    Union[RequestVote, RequestVoteResponse, AppendEntries, AppendEntriesResponse],
    Field(discriminator="type"),
]


class EventKind(str, Enum):
    SENT_MESSAGE = "sent_message"
    CLEARED_ELECTION_TIMEOUT = "cleared_election_timeout"
    SET_ELECTION_TIMEOUT = "set_election_timeout"
    STARTED_NEW_ELECTION = "started_new_election"
    STEPPED_DOWN = "stepped_down"
    VOTED = "voted"
    RECEIVED_VOTE = "received_vote"
    BECAME_LEADER = "became_leader"
    RECEIVED_APPEND_ENTRIES = "received_append_entries"
    STARTED = "started"
    STOPPED = "stopped"
    LOG_REQUESTED = "log_requested"
    COMMITTED = "committed"


class RaftEvent(BaseModel):
    seq: int = 0
    kind: EventKind
    node_id: str
    time: float
    term: int
    state: NodeState
    payload: dict[str, Any] = Field(default_factory=dict)


class PeerSnapshot(BaseModel):
    peer_id: str
    vote_granted: bool
    match_index: int
    next_index: int


class NodeSnapshot(BaseModel):
    id: str
    state: NodeState
    term: int
    voted_for: str | None
    leader_id: str | None
    log: list[LogEntry]
    commit_index: int
    peers: list[PeerSnapshot]


class RequestValue(BaseModel):
    value: str


class RedirectHint(BaseModel):
    leader_id: str | None
    message: str


class ConfigUpdate(BaseModel):
    """Body of ``PUT /cluster/config``: every timing knob, in milliseconds."""

    model_config = ConfigDict(extra="forbid")

    min_message_delay: float
    max_message_delay: float
    rpc_timeout: float
    min_election_timeout: float
    max_election_timeout: float
    heartbeat_interval: float
    batch_size: int
