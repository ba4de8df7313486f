"""ToolContext — the runtime context passed to every tool implementation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from conductor.events import EventBus
    from conductor.message_bus import MessageBus


class ToolContext:
    """Runtime context available to all tool implementations.

    Identifies the space and the agent (or workflow run) making the call and
    gives read access to workflow variables.
    """

    def __init__(
        self,
        space_id: str = "",
        agent_id: str = "",
        execution_id: str | None = None,
        variables: dict[str, Any] | None = None,
        message_bus: "MessageBus | None" = None,
        event_bus: "EventBus | None" = None,
    ):
        self.space_id = space_id
        self.agent_id = agent_id
        self.execution_id = execution_id
        self.variables = variables if variables is not None else {}
        self.message_bus = message_bus
        self.event_bus = event_bus

    def emit(self, event_type: str, **data: Any):
        """Emit an event via the event bus."""
        if self.event_bus:
            self.event_bus.emit_simple(event_type, self.agent_id or self.space_id, **data)

    def send(self, to_id: str, content: str, **metadata: Any):
        """Post a message on behalf of the calling agent."""
        if self.message_bus:
            self.message_bus.send(self.agent_id, to_id, content, metadata)
