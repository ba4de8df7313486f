"""Space — the persistent workspace a group of agents shares for one goal."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from conductor.collaboration import CollaborationManager
from conductor.errors import AgentNotFoundError
from conductor.events import EventBus
from conductor.message_bus import MessageBus
from conductor.mission import Mission
from conductor.models import AgentInfo, format_timestamp, generate_id, parse_timestamp, utcnow
from conductor.plan import Plan
from conductor.storage import ArtifactInfo
from conductor.worker import WorkerAgent

if TYPE_CHECKING:
    from conductor.workflow import WorkflowEngine

logger = logging.getLogger(__name__)


class Space:
    """Holds a space's agents, mission, plan, artifacts and conversation.

    `plan` is the plan last executed (or executing). `pending_plan` is a plan
    produced in plan mode that is waiting for the user's approval.
    """

    def __init__(
        self,
        goal: str = "",
        name: str | None = None,
        id: str | None = None,
        event_bus: EventBus | None = None,
        message_bus: MessageBus | None = None,
    ):
        self.id = id or generate_id()
        self.goal = goal
        self.name = name or (goal[:60] if goal else self.id)
        self.agents: dict[str, WorkerAgent] = {}
        self.mission: Mission | None = Mission(title=self.name, description=goal) if goal else None
        self.plan: Plan | None = None
        self.pending_plan: Plan | None = None
        self.artifacts: dict[str, ArtifactInfo] = {}
        self.history: list[dict] = []
        self.event_bus = event_bus or EventBus()
        self.collaboration = CollaborationManager(self.id, message_bus)
        # graph id -> engine; live only, not serialized
        self.workflows: dict[str, WorkflowEngine] = {}
        self.created_at: datetime = utcnow()
        self.updated_at: datetime = utcnow()

    # -- agents --------------------------------------------------------------

    def register_agent(self, agent: WorkerAgent) -> WorkerAgent:
        if agent.id in self.agents:
            logger.info(f"Replacing agent {agent.id} in space {self.id}")
        self.agents[agent.id] = agent
        self.collaboration.register_agent(agent.id)
        self._touch()
        return agent

    def remove_agent(self, agent_id: str) -> bool:
        removed = self.agents.pop(agent_id, None) is not None
        if removed:
            self._touch()
        return removed

    def get_agent(self, agent_id: str) -> WorkerAgent | None:
        return self.agents.get(agent_id)

    def require_agent(self, agent_id: str) -> WorkerAgent:
        agent = self.agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def agent_catalog(self) -> list[AgentInfo]:
        return [a.info for a in self.agents.values()]

    # -- state ---------------------------------------------------------------

    def set_plan(self, plan: Plan):
        self.plan = plan
        if self.mission and not self.mission.is_finished():
            self.mission.set_plan(plan)
        self._touch()

    def add_message(self, role: str, content: str, **metadata: Any):
        entry = {"role": role, "content": content}
        if metadata:
            entry["metadata"] = metadata
        self.history.append(entry)
        self._touch()

    def add_artifact(self, info: ArtifactInfo):
        self.artifacts[info.id] = info
        self._touch()

    # -- workflows -----------------------------------------------------------

    def add_workflow(self, engine: WorkflowEngine):
        self.workflows[engine.graph.id] = engine
        self._touch()

    def find_execution(self, context_id: str) -> WorkflowEngine | None:
        for engine in self.workflows.values():
            if engine.get_status(context_id) is not None:
                return engine
        return None

    def close_workflows(self) -> int:
        """Cancel every running or paused workflow run. Returns how many were cancelled."""
        cancelled = 0
        for engine in self.workflows.values():
            for context_id in engine.active_contexts():
                if engine.cancel_execution(context_id):
                    cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} workflow run(s) in space {self.id}")
        return cancelled

    def summary(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "goal": self.goal,
            "agents": len(self.agents),
            "messages": len(self.history),
            "artifacts": len(self.artifacts),
            "progress": self.plan.get_progress_summary().to_dict() if self.plan else None,
            "has_pending_plan": self.pending_plan is not None,
            "updated_at": format_timestamp(self.updated_at),
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "goal": self.goal,
            "agents": [a.info.to_dict() for a in self.agents.values()],
            "mission": self.mission.to_dict() if self.mission else None,
            "plan": self.plan.to_dict() if self.plan else None,
            "pending_plan": self.pending_plan.to_dict() if self.pending_plan else None,
            "artifacts": [a.to_dict() for a in self.artifacts.values()],
            "history": list(self.history),
            "shared_context": self.collaboration.get_context().to_dict(),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict, event_bus: EventBus | None = None) -> Space:
        """Restore a saved space. Agents are not serialized and must be registered again."""
        space = cls(goal=data.get("goal", ""), name=data.get("name"), id=data["id"], event_bus=event_bus)
        space.mission = Mission.from_dict(data["mission"]) if data.get("mission") else None
        space.plan = Plan.from_dict(data["plan"]) if data.get("plan") else None
        if space.mission and space.mission.plan and space.plan:
            # Saved twice, but it is one plan
            space.mission.plan = space.plan
        space.pending_plan = Plan.from_dict(data["pending_plan"]) if data.get("pending_plan") else None
        space.artifacts = {a["id"]: ArtifactInfo.from_dict(a) for a in data.get("artifacts", [])}
        space.history = list(data.get("history", []))
        shared = (data.get("shared_context") or {}).get("data")
        if shared:
            space.collaboration.update_context("restore", shared)
        space.created_at = parse_timestamp(data.get("created_at")) or utcnow()
        space.updated_at = parse_timestamp(data.get("updated_at")) or utcnow()
        return space

    def _touch(self):
        self.updated_at = utcnow()
