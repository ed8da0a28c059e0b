from __future__ import annotations

import pytest

from raftsim.raft.errors import NoLeaderError, NotLeaderError
from raftsim.raft.types import NodeState

from .conftest import FAST, wait_for_leader, wait_for_replication


def test_no_quorum_no_commit(make_cluster):
    cluster = make_cluster(3, seed=9)
    cluster.start()
    leader = wait_for_leader(cluster)
    # stop everyone but the leader
    for node in cluster:
        if node is not leader:
            node.stop()

    index = leader.request("lonely")
    cluster.clock.advance(20 * FAST.heartbeat_interval)
    assert leader.state == NodeState.LEADER
    assert leader.commit_index < index

    # bring the others back and the entry commits
    cluster.start()
    wait_for_replication(cluster, cluster.nodes, index)
    assert all(n.log[index - 1].value == "lonely" for n in cluster)


def test_minority_cannot_elect(make_cluster):
    cluster = make_cluster(5, seed=13)
    cluster.nodes[0].start()
    cluster.nodes[1].start()

    cluster.clock.advance(30 * FAST.max_election_timeout)
    assert cluster.leaders() == []
    with pytest.raises(NoLeaderError):
        cluster.request("x")
    # candidates kept retrying with fresh terms
    assert max(n.term for n in cluster.nodes[:2]) > 2


def test_request_on_follower_names_leader(make_cluster):
    cluster = make_cluster(3, seed=10)
    cluster.start()
    leader = wait_for_leader(cluster)
    cluster.clock.advance(2 * FAST.heartbeat_interval)
    follower = next(n for n in cluster if n is not leader)

    with pytest.raises(NotLeaderError) as exc:
        follower.request("x")
    assert exc.value.leader_id == leader.id
    assert follower.log == []


def test_half_of_even_cluster_cannot_commit(make_cluster):
    cluster = make_cluster(4, seed=14)
    cluster.start()
    leader = wait_for_leader(cluster)
    followers = [n for n in cluster if n is not leader]
    for node in followers[:2]:
        node.stop()

    index = leader.request("half")
    cluster.clock.advance(20 * FAST.heartbeat_interval)
    assert followers[2].log[index - 1].value == "half"
    assert leader.commit_index < index

    cluster.start()
    wait_for_replication(cluster, cluster.nodes, index)
