from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import PlainTextResponse

from raftsim.core.config import RaftConfig
from raftsim.raft.cluster import RaftCluster
from raftsim.raft.errors import ClusterRunningError, InvalidConfig, NotLeaderError, UnknownNodeError
from raftsim.raft.events import EventRecorder
from raftsim.raft.node import RaftNode
from raftsim.raft.types import ConfigUpdate, RedirectHint, RequestValue


logger = logging.getLogger("api")


def build_router(cluster: RaftCluster, recorder: EventRecorder) -> APIRouter:
    r = APIRouter()

    def _node(node_id: str) -> RaftNode:
        try:
            return cluster.node(node_id)
        except UnknownNodeError as e:
            raise HTTPException(status_code=404, detail=str(e))

    def _not_leader(e: NotLeaderError) -> HTTPException:
        logger.warning("request_not_leader node=%s leader_hint=%s", e.node_id, e.leader_id)
        return HTTPException(
            status_code=409,
            detail=RedirectHint(leader_id=e.leader_id, message=str(e)).model_dump(),
        )

    @r.get("/health")
    async def health():
        return {"ok": True, "servers": len(cluster), "running": cluster.running}

    @r.get("/cluster/state")
    async def cluster_state():
        leader = cluster.leader()
        return {
            "time": cluster.clock.now(),
            "leader_id": leader.id if leader else None,
            "nodes": [s.model_dump(mode="json") for s in cluster.snapshot()],
        }

    @r.post("/cluster/start")
    async def cluster_start():
        cluster.start()
        return {"ok": True}

    @r.post("/cluster/stop")
    async def cluster_stop():
        cluster.stop()
        return {"ok": True}

    @r.get("/cluster/config")
    async def cluster_config():
        return cluster.config.as_dict()

    @r.put("/cluster/config")
    async def cluster_configure(body: ConfigUpdate):
        try:
            cfg = RaftConfig(**body.model_dump())
        except InvalidConfig as e:
            raise HTTPException(status_code=422, detail=str(e))
        try:
            cluster.configure(cfg)
        except ClusterRunningError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return cfg.as_dict()

    @r.post("/cluster/request")
    async def cluster_request(body: RequestValue):
        try:
            leader_id, index = cluster.request(body.value)
        except NotLeaderError as e:
            raise _not_leader(e)
        return {"ok": True, "leader_id": leader_id, "index": index}

    @r.get("/nodes/{node_id}/state")
    async def node_state(node_id: str):
        return _node(node_id).snapshot().model_dump(mode="json")

    @r.post("/nodes/{node_id}/start")
    async def node_start(node_id: str):
        _node(node_id).start()
        return {"ok": True}

    @r.post("/nodes/{node_id}/stop")
    async def node_stop(node_id: str):
        _node(node_id).stop()
        return {"ok": True}

    @r.post("/nodes/{node_id}/force_election")
    async def node_force_election(node_id: str):
        node = _node(node_id)
        node.force_trigger_election()
        return {"ok": True, "state": node.state.value, "term": node.term}

    @r.post("/nodes/{node_id}/request")
    async def node_request(node_id: str, body: RequestValue):
        node = _node(node_id)
        try:
            index = node.request(body.value)
        except NotLeaderError as e:
            raise _not_leader(e)
        return {"ok": True, "index": index}

    @r.get("/events")
    async def events(after: int = 0, limit: int | None = Query(default=None, ge=1)):
        return [e.model_dump(mode="json") for e in recorder.since(after=after, limit=limit)]

    @r.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        lines = []
        for st in cluster.snapshot():
            lines += [
                f'raft_term{{node="{st.id}"}} {st.term}',
                f'raft_commit_index{{node="{st.id}"}} {st.commit_index}',
                f'raft_log_len{{node="{st.id}"}} {len(st.log)}',
                f'raft_state{{node="{st.id}",state="{st.state.value}"}} 1',
            ]
        return "\n".join(lines) + "\n"

    return r
