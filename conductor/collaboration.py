"""Collaboration — shared context and multi-agent planning for a space."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping

from conductor.config import MAX_CONCURRENCY
from conductor.message_bus import MessageBus, MessageListener
from conductor.models import Message, utcnow
from conductor.plan import Plan
from conductor.scheduler import AgentResolver, ParallelExecutionEngine, ParallelTask
from conductor.task import Task

logger = logging.getLogger(__name__)

_PLAN_LINE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*\S)")


@dataclass(frozen=True)
class ContextSnapshot:
    """Read-only view of the shared context at one point in time."""

    space_id: str
    data: Mapping[str, Any]
    updated_by: str | None
    updated_at: Any

    def to_dict(self) -> dict:
        return {
            "space_id": self.space_id,
            "data": dict(self.data),
            "updated_by": self.updated_by,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class SharedContext:
    """Key/value notes agents leave for each other. Last write wins."""

    space_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    updated_by: str | None = None
    updated_at: Any = None

    def update(self, agent_id: str, updates: dict[str, Any]):
        self.data.update(updates)
        self.updated_by = agent_id
        self.updated_at = utcnow()

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def snapshot(self) -> ContextSnapshot:
        return ContextSnapshot(
            space_id=self.space_id,
            data=MappingProxyType(dict(self.data)),
            updated_by=self.updated_by,
            updated_at=self.updated_at,
        )


class CollaborationManager:
    """Mailboxes plus shared context for the agents of one space."""

    def __init__(self, space_id: str = "", message_bus: MessageBus | None = None):
        self.space_id = space_id
        self.bus = message_bus or MessageBus()
        self.context = SharedContext(space_id=space_id)

    def register_agent(self, agent_id: str):
        self.bus.register(agent_id)

    def send_message(self, from_id: str, to_id: str, content: str, metadata: dict[str, Any] | None = None) -> Message:
        return self.bus.send(from_id, to_id, content, metadata)

    def get_messages(self, agent_id: str) -> list[Message]:
        return self.bus.receive(agent_id)

    def subscribe(self, agent_id: str, callback: MessageListener) -> Callable[[], None]:
        return self.bus.on_message(agent_id, callback)

    def update_context(self, agent_id: str, updates: dict[str, Any]):
        self.context.update(agent_id, updates)
        logger.debug(f"Shared context updated by {agent_id}: {list(updates)}")

    def get_context(self) -> ContextSnapshot:
        return self.context.snapshot()

    def get_context_value(self, key: str, default: Any = None) -> Any:
        return self.context.get(key, default)


@dataclass
class CollaborativePlan:
    plan: Plan
    assignments: dict[str, list[str]]
    failures: dict[str, str] = field(default_factory=dict)


class CollaborativePlanner:
    """Asks several agents for their part of a plan at once and merges the proposals."""

    def __init__(
        self,
        resolve_agent: AgentResolver,
        collaboration: CollaborationManager,
        max_concurrency: int = MAX_CONCURRENCY,
    ):
        self.collaboration = collaboration
        self._engine = ParallelExecutionEngine(resolve_agent, max_concurrency)

    async def create_collaborative_plan(self, goal: str, agent_ids: list[str]) -> CollaborativePlan:
        shared = json.dumps(dict(self.collaboration.get_context().data), indent=2, default=str)
        planning_tasks = [
            ParallelTask(
                id=f"plan-{agent_id}",
                agent_id=agent_id,
                prompt=(
                    f"We need to create a collaborative plan for: {goal}\n\n"
                    f"Shared context: {shared}\n\n"
                    f"You are one of {len(agent_ids)} agents working together. "
                    "Propose your part of the plan as a list of steps and identify dependencies on other agents."
                ),
                # Earlier agents get higher priority
                priority=len(agent_ids) - i,
                metadata={
                    "planning_session": True,
                    "goal": goal,
                    "other_agents": [a for a in agent_ids if a != agent_id],
                },
            )
            for i, agent_id in enumerate(agent_ids)
        ]

        results = await self._engine.execute_parallel(planning_tasks)
        proposals = {r.agent_id: r.response.text for r in results if r.ok and r.response}
        failures = {r.agent_id: r.error for r in results if not r.ok}
        for agent_id, error in failures.items():
            logger.warning(f"Agent {agent_id} could not contribute to the plan: {error}")

        # Keep the caller's agent order, not completion order
        plan = self.merge_proposals(goal, [(a, proposals[a]) for a in agent_ids if a in proposals])
        return CollaborativePlan(plan=plan, assignments=self.assign_tasks(plan, agent_ids), failures=failures)

    @staticmethod
    def merge_proposals(goal: str, proposals: list[tuple[str, str]]) -> Plan:
        """Turn bulleted or numbered lines from each proposal into tasks owned by its author."""
        plan = Plan(goal=goal, metadata={"collaborative": True})
        for agent_id, text in proposals:
            for line in text.splitlines():
                match = _PLAN_LINE.match(line)
                if not match:
                    continue
                step = match.group(1).strip()
                plan.add_task(Task(
                    id=f"task_{len(plan.tasks) + 1}",
                    title=step[:80],
                    description=step,
                    assigned_to=agent_id,
                ))
        return plan

    @staticmethod
    def assign_tasks(plan: Plan, agent_ids: list[str]) -> dict[str, list[str]]:
        assignments: dict[str, list[str]] = {agent_id: [] for agent_id in agent_ids}
        for task in plan.tasks:
            owner = task.assigned_to or (agent_ids[0] if agent_ids else None)
            if owner is not None:
                assignments.setdefault(owner, []).append(task.id)
        return assignments
