"""Live orchestrators, one per space."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from conductor.events import EventBus
from conductor.orchestrator import Orchestrator
from conductor.space import Space
from conductor.storage import SpaceStorage

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[Space], Orchestrator]


class OrchestratorRegistry:
    """Owns the space id -> Orchestrator map.

    `get_or_create` resumes a saved space from storage when it is not live yet.
    Access is serialized with an asyncio.Lock so two requests for the same new
    space share one orchestrator.
    """

    def __init__(
        self,
        storage: SpaceStorage | None = None,
        factory: OrchestratorFactory | None = None,
        event_bus: EventBus | None = None,
    ):
        self.storage = storage
        self.event_bus = event_bus
        self._factory = factory or (lambda space: Orchestrator(space, storage=self.storage))
        self._live: dict[str, Orchestrator] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(self, space_id: str | None = None, goal: str = "", name: str | None = None) -> Orchestrator:
        async with self._lock:
            if space_id and space_id in self._live:
                return self._live[space_id]

            space = None
            if space_id and self.storage:
                try:
                    saved = await self.storage.get_space(space_id)
                except Exception as e:
                    logger.warning(f"Could not load space {space_id}: {e}")
                    saved = None
                if saved:
                    space = Space.from_dict(saved, event_bus=self.event_bus)
                    logger.info(f"Resumed space {space_id} from storage")

            if space is None:
                space = Space(goal=goal, name=name, id=space_id, event_bus=self.event_bus)
                logger.info(f"Created space {space.id}")

            orchestrator = self._factory(space)
            self._live[space.id] = orchestrator
            return orchestrator

    async def get(self, space_id: str) -> Orchestrator | None:
        async with self._lock:
            return self._live.get(space_id)

    async def evict(self, space_id: str) -> bool:
        """Drop a live orchestrator. Its plan run and workflow runs are cancelled; saved state is kept."""
        async with self._lock:
            orchestrator = self._live.pop(space_id, None)
        if orchestrator is None:
            return False
        orchestrator.abort()
        orchestrator.space.close_workflows()
        logger.info(f"Evicted space {space_id}")
        return True

    async def list(self) -> list[str]:
        async with self._lock:
            return list(self._live)

    async def clear(self):
        async with self._lock:
            live, self._live = self._live, {}
        for orchestrator in live.values():
            orchestrator.abort()
            orchestrator.space.close_workflows()
