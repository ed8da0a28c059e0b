from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING, Callable

from raftsim.core.config import RaftConfig

from .clock import Clock
from .types import RaftMessage

if TYPE_CHECKING:
    from .node import RaftNode

logger = logging.getLogger("raft.link")


class PeerLink:
    """One direction of the simulated mesh: delivers messages to ``target``.

    Every message gets an independent delay, so two messages between the same
    pair of nodes may arrive out of order. Nothing is ever lost; the sender's
    RPC timeout stands in for loss.
    """

    def __init__(
        self,
        target: "RaftNode",
        clock: Clock,
        config: Callable[[], RaftConfig],
        rng: random.Random,
    ):
        self.target = target
        self._clock = clock
        self._config = config
        self._rng = rng

    @property
    def target_id(self) -> str:
        return self.target.id

    def delay(self) -> float:
        cfg = self._config()
        return cfg.min_message_delay + self._rng.random() * (cfg.max_message_delay - cfg.min_message_delay)

    def transmit(self, message: RaftMessage) -> float:
        delay = self.delay()
        self._clock.call_later(delay, self.target.receive, message)
        logger.debug(
            "transmit type=%s id=%s from=%s to=%s term=%s delay=%.1f",
            message.type, message.id, message.source, message.dest, message.term, delay,
        )
        return delay
