from __future__ import annotations

import logging

from fastapi import FastAPI

from raftsim.api.router import build_router
from raftsim.core.config import Settings
from raftsim.raft.clock import AsyncioClock, Clock
from raftsim.raft.cluster import RaftCluster
from raftsim.raft.events import EventRecorder


def create_app(settings: Settings | None = None, clock: Clock | None = None) -> FastAPI:
    s = settings if settings is not None else Settings.load()
    logging.basicConfig(
        level=s.log_level,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    cluster = RaftCluster(
        s.num_servers,
        s.raft,
        clock=clock if clock is not None else AsyncioClock(),
        seed=s.seed,
    )
    recorder = EventRecorder(maxlen=s.event_history)
    cluster.events.subscribe(recorder)

    app = FastAPI(title="raftsim", version="0.1.0")
    app.state.cluster = cluster
    app.state.recorder = recorder
    app.include_router(build_router(cluster, recorder))

    @app.on_event("startup")
    async def _startup():
        if s.autostart:
            cluster.start()

    @app.on_event("shutdown")
    async def _shutdown():
        cluster.stop()

    return app


app = create_app()
