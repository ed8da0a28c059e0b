from __future__ import annotations

import itertools
import logging
import random
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator, assert_never

from raftsim.core.config import RaftConfig

from .clock import Clock, TimerHandle, VirtualClock
from .errors import InvariantViolation, NodeAlreadyInitialized, NodeRunningError, NotLeaderError
from .events import EventStream
from .link import PeerLink
from .types import (
    AppendEntries,
    AppendEntriesResponse,
    EventKind,
    LogEntry,
    NodeSnapshot,
    NodeState,
    PeerSnapshot,
    RaftEvent,
    RaftMessage,
    RequestVote,
    RequestVoteResponse,
)

logger = logging.getLogger("raft")


@dataclass
class PeerView:
    """What a node knows about one of its peers. Replication fields only matter while leader."""

    peer_id: str
    link: PeerLink
    vote_granted: bool = False
    match_index: int = 0
    next_index: int = 1
    heartbeat_timer: TimerHandle | None = None

    def cancel_heartbeat(self) -> None:
        if self.heartbeat_timer is not None:
            self.heartbeat_timer.cancel()
            self.heartbeat_timer = None

    def snapshot(self) -> PeerSnapshot:
        return PeerSnapshot(
            peer_id=self.peer_id,
            vote_granted=self.vote_granted,
            match_index=self.match_index,
            next_index=self.next_index,
        )


class RaftNode:
    """A single Raft server driven entirely by timers and simulated messages.

    The log is 1-indexed: ``log[0]`` in Python holds protocol index 1, and index 0
    is the "before the log" sentinel whose term is 0.

    All handlers are plain callbacks invoked by the clock, never concurrently.
    Event listeners run inside those handlers and must not call back into the node.
    """

    def __init__(
        self,
        node_id: str,
        config: RaftConfig | None = None,
        clock: Clock | None = None,
        *,
        events: EventStream | None = None,
        rng: random.Random | None = None,
    ):
        self.id = node_id
        self.config = config if config is not None else RaftConfig()
        self.clock = clock if clock is not None else VirtualClock()
        self.events = events if events is not None else EventStream()
        self._rng = rng if rng is not None else random.Random()

        self.state = NodeState.STOPPED
        self.term = 1
        self.voted_for: str | None = None
        self.leader_id: str | None = None
        self.log: list[LogEntry] = []
        self.commit_index = 0
        self.peers: dict[str, PeerView] = {}

        self._initialized = False
        self._election_timer: TimerHandle | None = None
        self._rpc_timers: dict[str, TimerHandle] = {}
        self._message_seq = itertools.count(1)

    def __repr__(self) -> str:
        return (
            f"RaftNode(id={self.id!r}, state={self.state.value}, term={self.term}, "
            f"log_len={len(self.log)}, commit_index={self.commit_index})"
        )

    # ---------- log helpers ----------

    @property
    def last_log_index(self) -> int:
        return len(self.log)

    @property
    def last_log_term(self) -> int:
        return self.term_at(len(self.log))

    def term_at(self, index: int) -> int:
        if index < 1 or index > len(self.log):
            return 0
        return self.log[index - 1].term

    @property
    def quorum(self) -> int:
        # strict majority of the whole cluster, self included
        return (len(self.peers) + 1) // 2 + 1

    # ---------- control API ----------

    def init(self, peers: Iterable["RaftNode"]) -> None:
        if self._initialized:
            raise NodeAlreadyInitialized(f"node {self.id} already has its peers wired")
        if self.state != NodeState.STOPPED:
            raise NodeRunningError(f"node {self.id} must be wired before start()")

        table: dict[str, PeerView] = {}
        for peer in peers:
            if peer.id == self.id:
                raise ValueError(f"node {self.id} cannot be its own peer")
            link = PeerLink(peer, self.clock, lambda: self.config, self._rng)
            table[peer.id] = PeerView(peer_id=peer.id, link=link)

        self.peers = table
        self._initialized = True

    def start(self) -> None:
        if self.state != NodeState.STOPPED:
            return
        # term, vote and log survive a restart; only the role is volatile
        self.state = NodeState.FOLLOWER
        self.leader_id = None
        logger.info("started node=%s term=%s log_len=%s", self.id, self.term, len(self.log))
        self._reload_election_timeout()
        self._emit(EventKind.STARTED)

    def stop(self) -> None:
        if self.state == NodeState.STOPPED:
            return
        self.state = NodeState.STOPPED
        self.leader_id = None

        if self._election_timer is not None:
            self._election_timer.cancel()
            self._election_timer = None
        for peer in self.peers.values():
            peer.cancel_heartbeat()
        for timer in self._rpc_timers.values():
            timer.cancel()
        self._rpc_timers.clear()

        logger.info("stopped node=%s term=%s", self.id, self.term)
        self._emit(EventKind.STOPPED)

    def request(self, value: str) -> int:
        """Append a client value to the leader's log and return its index."""
        if self.state != NodeState.LEADER:
            logger.warning(
                "request_rejected node=%s state=%s leader_hint=%s", self.id, self.state.value, self.leader_id
            )
            raise NotLeaderError(self.id, self.leader_id)

        with self._checked():
            self.log.append(LogEntry(term=self.term, value=value))
            index = len(self.log)
            logger.info("log_requested node=%s term=%s index=%s", self.id, self.term, index)
            self._emit(EventKind.LOG_REQUESTED, index=index, value=value)
            # a lone leader is its own majority
            self._advance_commit_index()
        return index

    def force_trigger_election(self) -> None:
        with self._checked():
            self._handle_election_timeout()

    def receive(self, message: RaftMessage) -> None:
        timer = self._rpc_timers.pop(message.id, None)
        if timer is not None:
            timer.cancel()

        if self.state == NodeState.STOPPED:
            return

        logger.debug(
            "receive node=%s type=%s id=%s from=%s term=%s", self.id, message.type, message.id, message.source, message.term
        )

        with self._checked():
            if message.term > self.term:
                logger.info(
                    "higher_term node=%s term=%s incoming=%s from=%s", self.id, self.term, message.term, message.source
                )
                self._step_down(message.term)

            match message:
                case RequestVote():
                    self._handle_request_vote(message)
                case RequestVoteResponse():
                    self._handle_request_vote_response(message)
                case AppendEntries():
                    self._handle_append_entries(message)
                case AppendEntriesResponse():
                    self._handle_append_entries_response(message)
                case _:
                    assert_never(message)

    def snapshot(self) -> NodeSnapshot:
        return NodeSnapshot(
            id=self.id,
            state=self.state,
            term=self.term,
            voted_for=self.voted_for,
            leader_id=self.leader_id,
            log=list(self.log),
            commit_index=self.commit_index,
            peers=[peer.snapshot() for peer in self.peers.values()],
        )

    # ---------- elections ----------

    def _on_election_timeout(self) -> None:
        self._election_timer = None
        with self._checked():
            self._handle_election_timeout()

    def _handle_election_timeout(self) -> None:
        if self.state in (NodeState.STOPPED, NodeState.LEADER):
            return

        logger.info("election_timeout node=%s term=%s state=%s", self.id, self.term, self.state.value)
        self.term += 1
        self.voted_for = self.id
        self.leader_id = None
        self.state = NodeState.CANDIDATE
        self._reload_election_timeout()

        for peer in self.peers.values():
            peer.vote_granted = False
            peer.match_index = 0
            peer.next_index = 1

        self._emit(EventKind.STARTED_NEW_ELECTION)

        for peer_id in self.peers:
            self._send_request_vote(peer_id)

        self._check_votes()

    def _step_down(self, term: int) -> None:
        was = self.state
        self.state = NodeState.FOLLOWER
        self.term = term
        self.voted_for = None
        self.leader_id = None
        for peer in self.peers.values():
            peer.cancel_heartbeat()
        self._reload_election_timeout()

        logger.info("stepped_down node=%s term=%s was=%s", self.id, term, was.value)
        self._emit(EventKind.STEPPED_DOWN, previous_state=was.value)

    def _send_request_vote(self, peer_id: str) -> None:
        message = RequestVote(
            id=self._next_message_id(),
            source=self.id,
            dest=peer_id,
            term=self.term,
            last_log_term=self.last_log_term,
            last_log_index=self.last_log_index,
        )
        self._send(message, timeout=self.config.rpc_timeout)

    def _handle_request_vote(self, message: RequestVote) -> None:
        up_to_date = message.last_log_term > self.last_log_term or (
            message.last_log_term == self.last_log_term and message.last_log_index >= self.last_log_index
        )

        granted = False
        if self.term == message.term and self.voted_for in (None, message.source) and up_to_date:
            granted = True
            self.voted_for = message.source
            self._reload_election_timeout()
            logger.info("voted node=%s term=%s candidate=%s", self.id, self.term, message.source)
            self._emit(EventKind.VOTED, candidate=message.source)

        self._send(
            RequestVoteResponse(
                id=message.id,
                source=self.id,
                dest=message.source,
                term=self.term,
                granted=granted,
            )
        )

    def _handle_request_vote_response(self, message: RequestVoteResponse) -> None:
        if self.state != NodeState.CANDIDATE or self.term != message.term:
            return
        peer = self.peers.get(message.source)
        if peer is None:
            return

        peer.vote_granted = message.granted
        self._emit(EventKind.RECEIVED_VOTE, source=message.source, granted=message.granted)
        self._check_votes()

    def _check_votes(self) -> None:
        if self.state != NodeState.CANDIDATE:
            return
        granted = 1 + sum(1 for peer in self.peers.values() if peer.vote_granted)
        if granted >= self.quorum:
            self._become_leader(granted)

    def _become_leader(self, votes: int) -> None:
        self.state = NodeState.LEADER
        self.leader_id = self.id
        self._clear_election_timeout()

        logger.info("became_leader node=%s term=%s votes=%s quorum=%s", self.id, self.term, votes, self.quorum)
        self._emit(EventKind.BECAME_LEADER, votes=votes)

        for peer_id, peer in self.peers.items():
            peer.next_index = len(self.log) + 1
            self._send_append_entries(peer_id)

    # ---------- replication ----------

    def _send_append_entries(self, peer_id: str) -> None:
        peer = self.peers.get(peer_id)
        if peer is None:
            return

        prev_index = peer.next_index - 1
        last_index = min(prev_index + self.config.batch_size, len(self.log))
        if peer.match_index + 1 < peer.next_index:
            # peer has not confirmed prev_index yet: probe without entries
            last_index = prev_index

        message = AppendEntries(
            id=self._next_message_id(),
            source=self.id,
            dest=peer_id,
            term=self.term,
            prev_index=prev_index,
            prev_term=self.term_at(prev_index),
            entries=self.log[prev_index:last_index],
            commit_index=min(self.commit_index, last_index),
        )
        self._send(message, timeout=self.config.rpc_timeout)

    def _handle_append_entries(self, message: AppendEntries) -> None:
        success = False
        match_index = 0

        if self.term == message.term:
            if self.state != NodeState.FOLLOWER:
                logger.info("follow_leader node=%s term=%s leader=%s was=%s", self.id, self.term, message.source, self.state.value)
            self.state = NodeState.FOLLOWER
            self.leader_id = message.source
            self._reload_election_timeout()

            if message.prev_index == 0 or (
                message.prev_index <= len(self.log) and self.term_at(message.prev_index) == message.prev_term
            ):
                success = True
                index = message.prev_index
                for entry in message.entries:
                    index += 1
                    if self.term_at(index) != entry.term:
                        if index <= len(self.log):
                            logger.info(
                                "truncate_log node=%s term=%s from_index=%s dropped=%s",
                                self.id, self.term, index, len(self.log) - index + 1,
                            )
                        del self.log[index - 1:]
                        self.log.append(entry)

                match_index = index
                self._set_commit_index(max(self.commit_index, message.commit_index))

            self._emit(
                EventKind.RECEIVED_APPEND_ENTRIES,
                source=message.source,
                success=success,
                entries=len(message.entries),
            )

        self._send(
            AppendEntriesResponse(
                id=message.id,
                source=self.id,
                dest=message.source,
                term=self.term,
                success=success,
                match_index=match_index,
            )
        )

    def _handle_append_entries_response(self, message: AppendEntriesResponse) -> None:
        if self.state != NodeState.LEADER or self.term != message.term:
            return
        peer = self.peers.get(message.source)
        if peer is None:
            return

        if message.success:
            # max(): responses can arrive out of order
            peer.match_index = max(peer.match_index, message.match_index)
            peer.next_index = message.match_index + 1
            self._advance_commit_index()
        else:
            peer.next_index = max(1, peer.next_index - 1)
            logger.debug("append_rejected node=%s peer=%s next_index=%s", self.id, peer.peer_id, peer.next_index)

        if peer.next_index <= len(self.log):
            self._send_append_entries(peer.peer_id)
        else:
            peer.cancel_heartbeat()
            peer.heartbeat_timer = self.clock.call_later(
                self.config.heartbeat_interval, self._on_heartbeat_timeout, peer.peer_id
            )

    def _advance_commit_index(self) -> None:
        matches = sorted([peer.match_index for peer in self.peers.values()] + [len(self.log)])
        n = matches[-self.quorum]
        # entries from older terms are only committed indirectly (Raft §5.4.2)
        if self.state == NodeState.LEADER and self.term_at(n) == self.term:
            self._set_commit_index(max(self.commit_index, n))

    def _set_commit_index(self, value: int) -> None:
        if value <= self.commit_index:
            return
        old = self.commit_index
        self.commit_index = value
        logger.info("commit_index_advanced node=%s term=%s old=%s new=%s", self.id, self.term, old, value)
        self._emit(EventKind.COMMITTED, old=old, new=value)

    def _on_heartbeat_timeout(self, peer_id: str) -> None:
        peer = self.peers.get(peer_id)
        if peer is not None:
            peer.heartbeat_timer = None
        if self.state != NodeState.LEADER:
            return
        with self._checked():
            self._send_append_entries(peer_id)

    # ---------- timers and transport ----------

    def _reload_election_timeout(self) -> None:
        if self._election_timer is not None:
            self._election_timer.cancel()
        cfg = self.config
        delay = cfg.min_election_timeout + self._rng.random() * (cfg.max_election_timeout - cfg.min_election_timeout)
        self._election_timer = self.clock.call_later(delay, self._on_election_timeout)
        self._emit(EventKind.SET_ELECTION_TIMEOUT, delay=delay)

    def _clear_election_timeout(self) -> None:
        if self._election_timer is not None:
            self._election_timer.cancel()
            self._election_timer = None
        self._emit(EventKind.CLEARED_ELECTION_TIMEOUT)

    def _send(self, message: RaftMessage, timeout: float = 0) -> None:
        peer = self.peers.get(message.dest)
        if peer is None:
            logger.debug("drop_message node=%s type=%s to=%s reason=unknown_peer", self.id, message.type, message.dest)
            return

        delay = peer.link.transmit(message)
        self._emit(EventKind.SENT_MESSAGE, message=message.model_dump(), delay=delay)

        if timeout > 0:
            self._rpc_timers[message.id] = self.clock.call_later(timeout, self._on_message_timeout, message)

    def _on_message_timeout(self, message: RaftMessage) -> None:
        self._rpc_timers.pop(message.id, None)
        with self._checked():
            self._handle_message_timeout(message)

    def _handle_message_timeout(self, message: RaftMessage) -> None:
        if self.state == NodeState.STOPPED:
            return
        # responses are never retried, the requester asks again
        if isinstance(message, (RequestVoteResponse, AppendEntriesResponse)):
            return
        # a newer term started meanwhile, this round is over
        if message.term != self.term:
            return

        logger.debug("rpc_timeout node=%s type=%s id=%s to=%s", self.id, message.type, message.id, message.dest)
        if isinstance(message, RequestVote) and self.state == NodeState.CANDIDATE:
            self._send_request_vote(message.dest)
        elif isinstance(message, AppendEntries) and self.state == NodeState.LEADER:
            self._send_append_entries(message.dest)

    def _next_message_id(self) -> str:
        return f"{self.id}-{next(self._message_seq)}"

    def _emit(self, kind: EventKind, **payload) -> None:
        self.events.publish(
            RaftEvent(
                kind=kind,
                node_id=self.id,
                time=self.clock.now(),
                term=self.term,
                state=self.state,
                payload=payload,
            )
        )

    @contextmanager
    def _checked(self) -> Iterator[None]:
        prev_term = self.term
        prev_commit_index = self.commit_index
        prev_log = list(self.log)

        yield

        if self.term < prev_term:
            raise InvariantViolation(f"node {self.id}: term went back from {prev_term} to {self.term}")
        if self.commit_index < prev_commit_index:
            raise InvariantViolation(
                f"node {self.id}: commit index went back from {prev_commit_index} to {self.commit_index}"
            )
        if self.commit_index > len(self.log):
            raise InvariantViolation(
                f"node {self.id}: commit index {self.commit_index} beyond log length {len(self.log)}"
            )
        if self.state == NodeState.LEADER and self.log[: len(prev_log)] != prev_log:
            raise InvariantViolation(f"node {self.id}: leader log is not append-only")
