"""Exception types raised by Conductor."""

from __future__ import annotations


class ConductorError(Exception):
    """Base class for all Conductor errors."""


class InvalidTransitionError(ConductorError, ValueError):
    """A Task or Mission was asked to change state from a state that does not allow it."""

    def __init__(self, entity: str, entity_id: str, current: str, action: str):
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} {entity} {entity_id} in status '{current}'")


class AgentNotFoundError(ConductorError, KeyError):
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} not found")

    def __str__(self) -> str:
        return self.args[0]


class ToolNotFoundError(ConductorError, KeyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool '{name}'")

    def __str__(self) -> str:
        return self.args[0]


class WorkflowError(ConductorError):
    """Malformed graph or unknown graph/context."""


class WorkflowStateError(WorkflowError):
    """Operation not allowed in the context's current status."""


class ConditionError(ConductorError):
    """A condition rule could not be evaluated."""


class StructuredOutputError(ConductorError):
    """A model reply could not be parsed into the requested schema."""

    def __init__(self, message: str, raw_text: str | None = None):
        self.raw_text = raw_text
        super().__init__(message)


class ContextBudgetError(ConductorError):
    """Messages do not fit in the model's context window even after compression."""


class StorageError(ConductorError):
    """A persistence adapter failed to read or write."""
