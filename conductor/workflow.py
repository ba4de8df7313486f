"""Workflow engine — walks an execution graph of typed nodes with pause/resume.

A graph is a list of nodes linked by `next` pointers. The engine walks it
depth-first from the start node, merging every node's output into the run's
variables under the node's id. `human_input` nodes pause the run until
`resume_workflow()` supplies the missing input. A `parallel` node runs each
branch until that branch's own chain ends, then continues at its own `next`.

Condition nodes take a structured rule instead of code:

    {"var": "score", "op": "gte", "value": 0.8}
    {"all": [rule, ...]}   {"any": [rule, ...]}   {"not": rule}
    "approved"             (truthiness of a variable)

Prompts and tool arguments may reference variables as ``{{name}}`` or
``{{node_id.field}}``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Annotated, Any, Callable, Literal, Mapping, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from conductor.errors import AgentNotFoundError, ConditionError, ToolNotFoundError, WorkflowError, WorkflowStateError
from conductor.events import EventBus
from conductor.models import CancellationToken, generate_id
from conductor.tools.context import ToolContext

if TYPE_CHECKING:
    from conductor.tools.registry import ToolRegistry
    from conductor.worker import WorkerAgent

logger = logging.getLogger(__name__)


class WorkflowEvent:
    NODE_START = "nodeStart"
    NODE_COMPLETE = "nodeComplete"
    EXECUTION_PAUSED = "executionPaused"
    EXECUTION_COMPLETE = "executionComplete"
    EXECUTION_FAILED = "executionFailed"
    EXECUTION_CANCELLED = "executionCancelled"


# ---------------------------------------------------------------------------
# Graph definition
# ---------------------------------------------------------------------------


class _Config(BaseModel):
    # Accept both snake_case and the camelCase used by JSON graph files
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class AgentNodeConfig(_Config):
    agent_id: str
    prompt: str
    system: str | None = None
    temperature: float | None = None


class ToolNodeConfig(_Config):
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ConditionNodeConfig(_Config):
    rule: dict[str, Any] | str | bool = Field(validation_alias=AliasChoices("rule", "expression"))
    yes: str | None = None
    no: str | None = None


class InputField(_Config):
    name: str
    type: str = "string"
    description: str = ""


class HumanInputNodeConfig(_Config):
    prompt: str = ""
    timeout: int | None = None
    required_fields: list[InputField] = Field(default_factory=list)


class ParallelNodeConfig(_Config):
    branches: list[str]
    mode: Literal["wait_all", "race"] = "wait_all"


class _Node(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str = ""
    description: str = ""
    next: str | list[str] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def next_ids(self) -> list[str]:
        if self.next is None:
            return []
        return [self.next] if isinstance(self.next, str) else list(self.next)

    def first_next(self) -> str | None:
        ids = self.next_ids()
        return ids[0] if ids else None


class StartNode(_Node):
    type: Literal["start"] = "start"
    config: dict[str, Any] = Field(default_factory=dict)


class EndNode(_Node):
    type: Literal["end"] = "end"
    config: dict[str, Any] = Field(default_factory=dict)


class AgentNode(_Node):
    type: Literal["agent"] = "agent"
    config: AgentNodeConfig


class ToolNode(_Node):
    type: Literal["tool"] = "tool"
    config: ToolNodeConfig


class ConditionNode(_Node):
    type: Literal["condition"] = "condition"
    config: ConditionNodeConfig


class HumanInputNode(_Node):
    type: Literal["human_input"] = "human_input"
    config: HumanInputNodeConfig = Field(default_factory=HumanInputNodeConfig)


class ParallelNode(_Node):
    type: Literal["parallel"] = "parallel"
    config: ParallelNodeConfig


ExecutionNode = Annotated[
    Union[StartNode, EndNode, AgentNode, ToolNode, ConditionNode, HumanInputNode, ParallelNode],
    Field(discriminator="type"),
]


class ExecutionGraph(BaseModel):
    id: str = Field(default_factory=generate_id)
    name: str = ""
    description: str = ""
    # Older graph files call this list "steps"
    nodes: list[ExecutionNode] = Field(validation_alias=AliasChoices("nodes", "steps"))
    variables: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def get_node(self, node_id: str) -> _Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise WorkflowError(f"Node {node_id} not found in graph {self.id}")

    def entry_node(self) -> _Node:
        for node in self.nodes:
            if isinstance(node, StartNode):
                return node
        return self.nodes[0]

    def validate_references(self):
        ids = [n.id for n in self.nodes]
        if not ids:
            raise WorkflowError(f"Execution graph {self.id} has no nodes")
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise WorkflowError(f"Duplicate node ids in graph {self.id}: {sorted(duplicates)}")
        known = set(ids)
        for node in self.nodes:
            refs = node.next_ids()
            if isinstance(node, ConditionNode):
                refs += [r for r in (node.config.yes, node.config.no) if r]
            if isinstance(node, ParallelNode):
                refs += node.config.branches
            missing = [r for r in refs if r not in known]
            if missing:
                raise WorkflowError(f"Node {node.id} references unknown node(s): {missing}")


def parse_graph(data: ExecutionGraph | Mapping[str, Any]) -> ExecutionGraph:
    if isinstance(data, ExecutionGraph):
        graph = data
    else:
        try:
            graph = ExecutionGraph.model_validate(data)
        except ValidationError as e:
            raise WorkflowError(f"Invalid execution graph: {e}") from e
    graph.validate_references()
    return graph


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------


@dataclass
class NodeResult:
    node_id: str
    status: str  # completed | failed
    output: Any = None
    error: str | None = None
    start_time: float = field(default_factory=time.time)
    end_time: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "status": self.status,
            "output": self.output,
            "error": self.error,
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


@dataclass
class ExecutionContext:
    graph_id: str
    id: str = field(default_factory=generate_id)
    mission_id: str | None = None
    task_id: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    history: list[NodeResult] = field(default_factory=list)
    current_node_id: str | None = None
    status: str = "pending"  # pending | running | paused | completed | failed | cancelled
    input: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def is_finished(self) -> bool:
        return self.status in ("completed", "failed", "cancelled")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "graph_id": self.graph_id,
            "mission_id": self.mission_id,
            "task_id": self.task_id,
            "variables": self.variables,
            "history": [h.to_dict() for h in self.history],
            "current_node_id": self.current_node_id,
            "status": self.status,
            "input": self.input,
            "output": self.output,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# ---------------------------------------------------------------------------
# Variables and conditions
# ---------------------------------------------------------------------------

_MISSING = object()
_PLACEHOLDER = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


def lookup(variables: Mapping[str, Any], path: str) -> Any:
    """Resolve `path` (a key, or dotted keys into nested dicts). Returns _MISSING when absent."""
    if path in variables:
        return variables[path]
    value: Any = variables
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return _MISSING
    return value


def substitute(template: str, variables: Mapping[str, Any]) -> str:
    """Replace {{name}} placeholders. Unknown names become empty strings."""

    def _replace(match: re.Match) -> str:
        value = lookup(variables, match.group(1))
        return "" if value is _MISSING or value is None else str(value)

    return _PLACEHOLDER.sub(_replace, template)


def resolve_arguments(value: Any, variables: Mapping[str, Any]) -> Any:
    """Substitute placeholders through nested dicts and lists.

    A string that is exactly one placeholder keeps the variable's own type.
    """
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value.strip())
        if whole:
            resolved = lookup(variables, whole.group(1))
            return None if resolved is _MISSING else resolved
        return substitute(value, variables)
    if isinstance(value, dict):
        return {k: resolve_arguments(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_arguments(v, variables) for v in value]
    return value


def _operand(value: Any, variables: Mapping[str, Any]) -> Any:
    if isinstance(value, dict) and set(value) == {"var"}:
        resolved = lookup(variables, value["var"])
        return None if resolved is _MISSING else resolved
    return value


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
    "in": lambda a, b: a in b,
    "not_in": lambda a, b: a not in b,
    "contains": lambda a, b: b in a,
    "truthy": lambda a, _: bool(a),
    "falsy": lambda a, _: not a,
}


def evaluate_rule(rule: Any, variables: Mapping[str, Any]) -> bool:
    """Evaluate a structured condition rule. Raises ConditionError on malformed rules."""
    if isinstance(rule, bool):
        return rule
    if isinstance(rule, str):
        value = lookup(variables, rule)
        return value is not _MISSING and bool(value)
    if not isinstance(rule, dict):
        raise ConditionError(f"Unsupported rule type: {type(rule).__name__}")

    if "all" in rule:
        return all(evaluate_rule(r, variables) for r in rule["all"])
    if "any" in rule:
        return any(evaluate_rule(r, variables) for r in rule["any"])
    if "not" in rule:
        return not evaluate_rule(rule["not"], variables)

    if "var" not in rule:
        raise ConditionError(f"Rule needs 'var', 'all', 'any' or 'not': {rule}")
    value = lookup(variables, rule["var"])
    op = rule.get("op", "truthy")
    if op == "exists":
        return value is not _MISSING
    if value is _MISSING:
        value = None
    comparator = _OPERATORS.get(op)
    if comparator is None:
        raise ConditionError(f"Unknown operator '{op}'")
    try:
        return bool(comparator(value, _operand(rule.get("value"), variables)))
    except TypeError as e:
        raise ConditionError(f"Cannot apply '{op}' to {value!r}: {e}") from e


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

AgentLookup = Union[Mapping[str, "WorkerAgent"], Callable[[str], "WorkerAgent | None"]]


class WorkflowEngine:
    """Runs one workflow graph; any number of runs (contexts) may be live at once."""

    def __init__(
        self,
        graph: ExecutionGraph | Mapping[str, Any] | None = None,
        agents: AgentLookup | None = None,
        tools: "ToolRegistry | None" = None,
        event_bus: EventBus | None = None,
        keep_finished: int = 100,
    ):
        self.graph: ExecutionGraph | None = None
        if agents is None:
            self._resolve_agent: Callable[[str], Any] = lambda _id: None
        elif isinstance(agents, Mapping):
            self._resolve_agent = agents.get
        else:
            self._resolve_agent = agents
        self.tools = tools
        self.event_bus = event_bus or EventBus()
        self._keep_finished = keep_finished
        self._contexts: dict[str, ExecutionContext] = {}
        self._finished: OrderedDict[str, ExecutionContext] = OrderedDict()
        self._tokens: dict[str, CancellationToken] = {}
        if graph is not None:
            self.register_workflow(graph)

    # -- definition ----------------------------------------------------------

    def register_workflow(self, graph: ExecutionGraph | Mapping[str, Any]) -> ExecutionGraph:
        """Install the graph this engine runs. Refused while runs of the current graph are live."""
        parsed = parse_graph(graph)
        if self._contexts and self.graph is not None and self.graph.id != parsed.id:
            raise WorkflowStateError(
                f"Cannot replace graph {self.graph.id} while {len(self._contexts)} execution(s) are live"
            )
        self.graph = parsed
        logger.info(f"Registered workflow {parsed.id} ({len(parsed.nodes)} nodes)")
        return parsed

    def on(self, event_type: str, callback: Callable[..., Any]) -> Callable[[], None]:
        return self.event_bus.on(event_type, callback)

    # -- runs ----------------------------------------------------------------

    async def start_workflow(
        self,
        input: dict[str, Any] | None = None,
        graph_id: str | None = None,
        mission_id: str | None = None,
        task_id: str | None = None,
    ) -> str:
        """Start a run and walk it until it completes, fails or pauses. Returns the context id."""
        graph = self._require_graph(graph_id)
        input = dict(input or {})
        entry = graph.entry_node()
        ctx = ExecutionContext(
            graph_id=graph.id,
            mission_id=mission_id,
            task_id=task_id,
            variables={**graph.variables, **input},
            input=input,
            current_node_id=entry.id,
            status="running",
        )
        self._contexts[ctx.id] = ctx
        self._tokens[ctx.id] = CancellationToken()
        logger.info(f"Workflow {graph.id} started: context {ctx.id}")
        await self._run(ctx, entry.id)
        return ctx.id

    async def resume_workflow(self, context_id: str, input: dict[str, Any] | None = None):
        """Continue a paused run with the human's input."""
        ctx = self._contexts.get(context_id) or self._finished.get(context_id)
        if ctx is None:
            raise WorkflowError(f"Execution context {context_id} not found")
        if ctx.status != "paused":
            raise WorkflowStateError(f"Execution context {context_id} is not paused")

        input = dict(input or {})
        node = self._require_graph(ctx.graph_id).get_node(ctx.current_node_id)
        if isinstance(node, HumanInputNode):
            missing = [f.name for f in node.config.required_fields if f.name not in input]
            if missing:
                raise WorkflowError(f"Missing required input field(s) for {node.id}: {missing}")

        ctx.variables.update(input)
        ctx.variables[node.id] = input
        ctx.history.append(NodeResult(node_id=node.id, status="completed", output=input))
        ctx.status = "running"
        self._touch(ctx)
        self._emit(WorkflowEvent.NODE_COMPLETE, ctx, node_id=node.id, output=input)
        logger.info(f"Workflow context {context_id} resumed at {node.id}")
        await self._run(ctx, node.first_next())

    def cancel_execution(self, context_id: str) -> bool:
        """Cancel a running or paused run. In-flight node work finishes but its result is dropped."""
        ctx = self._contexts.get(context_id)
        if ctx is None or ctx.status not in ("running", "paused"):
            return False
        ctx.status = "cancelled"
        self._touch(ctx)
        token = self._tokens.get(context_id)
        if token:
            token.cancel("execution cancelled")
        self._emit(WorkflowEvent.EXECUTION_CANCELLED, ctx)
        self._retire(ctx)
        logger.info(f"Workflow context {context_id} cancelled")
        return True

    def get_status(self, context_id: str) -> str | None:
        ctx = self._contexts.get(context_id) or self._finished.get(context_id)
        return ctx.status if ctx else None

    def get_context(self, context_id: str) -> ExecutionContext | None:
        """A copy of the run's state; mutating it does not affect the run."""
        ctx = self._contexts.get(context_id) or self._finished.get(context_id)
        if ctx is None:
            return None
        return replace(ctx, variables=dict(ctx.variables), history=list(ctx.history), input=dict(ctx.input))

    def active_contexts(self) -> list[str]:
        return list(self._contexts)

    # -- walking -------------------------------------------------------------

    async def _run(self, ctx: ExecutionContext, start_id: str | None):
        root = self._tokens.get(ctx.id) or CancellationToken()
        try:
            state = await self._walk(ctx, start_id, (root,))
        except Exception as e:
            if ctx.status == "cancelled":
                logger.info(f"Workflow context {ctx.id} raised after cancellation: {e}")
                return
            ctx.status = "failed"
            ctx.error = str(e)
            self._touch(ctx)
            logger.error(f"Workflow context {ctx.id} failed at {ctx.current_node_id}: {e}", exc_info=True)
            self._emit(WorkflowEvent.EXECUTION_FAILED, ctx, node_id=ctx.current_node_id, error=str(e))
            self._retire(ctx)
            return

        if state == "paused" or ctx.status != "running":
            return
        ctx.status = "completed"
        ctx.output = dict(ctx.variables)
        self._touch(ctx)
        self._emit(WorkflowEvent.EXECUTION_COMPLETE, ctx, output=ctx.output)
        self._retire(ctx)
        logger.info(f"Workflow context {ctx.id} completed")

    async def _walk(self, ctx: ExecutionContext, node_id: str | None, tokens: tuple[CancellationToken, ...]) -> str:
        """Follow `next` pointers from `node_id`. Returns 'done', 'paused' or 'stopped'."""
        graph = self._require_graph(ctx.graph_id)
        current = node_id
        while current:
            if ctx.status != "running" or any(t.cancelled for t in tokens):
                return "stopped"

            node = graph.get_node(current)
            ctx.current_node_id = node.id
            self._touch(ctx)
            self._emit(WorkflowEvent.NODE_START, ctx, node_id=node.id, node_type=node.type)

            if isinstance(node, HumanInputNode):
                ctx.status = "paused"
                self._emit(
                    WorkflowEvent.EXECUTION_PAUSED, ctx,
                    node_id=node.id,
                    reason="human_input",
                    prompt=substitute(node.config.prompt, ctx.variables),
                    required_fields=[f.model_dump() for f in node.config.required_fields],
                    timeout=node.config.timeout,
                )
                logger.info(f"Workflow context {ctx.id} paused for input at {node.id}")
                return "paused"

            started = time.time()
            try:
                output, next_id, state = await self._execute_node(ctx, node, tokens)
            except Exception as e:
                if self._live(ctx, tokens):
                    ctx.history.append(NodeResult(node.id, "failed", error=str(e), start_time=started))
                raise

            if not self._live(ctx, tokens):
                return "stopped"
            ctx.history.append(NodeResult(node.id, "completed", output=output, start_time=started))
            self._emit(WorkflowEvent.NODE_COMPLETE, ctx, node_id=node.id, output=output)
            if state != "done":
                return state
            current = next_id
        return "done"

    async def _execute_node(
        self, ctx: ExecutionContext, node: _Node, tokens: tuple[CancellationToken, ...]
    ) -> tuple[Any, str | None, str]:
        """Run one node. Returns (output, next node id, walk state)."""
        if isinstance(node, StartNode):
            return None, node.first_next(), "done"

        if isinstance(node, EndNode):
            return None, None, "done"

        if isinstance(node, AgentNode):
            agent = self._resolve_agent(node.config.agent_id)
            if agent is None:
                raise AgentNotFoundError(node.config.agent_id)
            response = await agent.invoke(
                substitute(node.config.prompt, ctx.variables),
                metadata={
                    "workflow_id": ctx.graph_id,
                    "context_id": ctx.id,
                    "node_id": node.id,
                    "system": node.config.system,
                    "temperature": node.config.temperature,
                },
                cancel_token=tokens[-1],
            )
            if self._live(ctx, tokens):
                ctx.variables[node.id] = response.text
            return response.text, node.first_next(), "done"

        if isinstance(node, ToolNode):
            if self.tools is None or not self.tools.has(node.config.tool_name):
                raise ToolNotFoundError(node.config.tool_name)
            arguments = resolve_arguments(node.config.arguments, ctx.variables)
            tool_context = ToolContext(execution_id=ctx.id, variables=ctx.variables, event_bus=self.event_bus)
            result = await self.tools.call(node.config.tool_name, arguments, tool_context)
            if self._live(ctx, tokens):
                ctx.variables[node.id] = result
            return result, node.first_next(), "done"

        if isinstance(node, ConditionNode):
            try:
                passed = evaluate_rule(node.config.rule, ctx.variables)
            except ConditionError as e:
                logger.warning(f"Condition {node.id} could not be evaluated, taking 'no' branch: {e}")
                passed = False
            target = node.config.yes if passed else node.config.no
            ctx.variables[node.id] = passed
            return {"result": passed, "branch": target}, target, "done"

        if isinstance(node, ParallelNode):
            states = await self._run_branches(ctx, node, tokens)
            ctx.variables[node.id] = states
            state = "paused" if "paused" in states.values() else "done"
            return states, node.first_next(), state

        raise WorkflowError(f"Unsupported node type: {node.type}")

    async def _run_branches(
        self, ctx: ExecutionContext, node: ParallelNode, tokens: tuple[CancellationToken, ...]
    ) -> dict[str, str]:
        branch_ids = node.config.branches
        branch_tokens = [CancellationToken() for _ in branch_ids]
        futures = {
            asyncio.create_task(self._walk(ctx, branch_id, (*tokens, token))): branch_id
            for branch_id, token in zip(branch_ids, branch_tokens)
        }
        if not futures:
            return {}

        if node.config.mode == "wait_all":
            try:
                results = await asyncio.gather(*futures)
            except Exception:
                for token in branch_tokens:
                    token.cancel("sibling branch failed")
                raise
            return dict(zip(futures.values(), results))

        done, pending = await asyncio.wait(futures, return_when=asyncio.FIRST_COMPLETED)
        # Losers stop at their next node boundary
        for token in branch_tokens:
            token.cancel("race won by another branch")
        for future in pending:
            future.add_done_callback(_log_abandoned_branch)
        winner = next(iter(done))
        states = {futures[f]: "abandoned" for f in pending}
        states[futures[winner]] = winner.result()
        return states

    # -- helpers -------------------------------------------------------------

    def _require_graph(self, graph_id: str | None = None) -> ExecutionGraph:
        if self.graph is None or (graph_id is not None and graph_id != self.graph.id):
            raise WorkflowError(f"Execution graph {graph_id or '(none)'} not found")
        return self.graph

    def _emit(self, event_type: str, ctx: ExecutionContext, **data: Any):
        self.event_bus.emit_simple(event_type, ctx.id, context_id=ctx.id, **data)

    def _live(self, ctx: ExecutionContext, tokens: tuple[CancellationToken, ...]) -> bool:
        """False once the run has finished or this walk was told to stop; late results are dropped."""
        return not ctx.is_finished() and not any(t.cancelled for t in tokens)

    def _touch(self, ctx: ExecutionContext):
        ctx.updated_at = time.time()

    def _retire(self, ctx: ExecutionContext):
        """Move a finished run out of the live set, keeping a bounded history for status queries."""
        self._contexts.pop(ctx.id, None)
        self._tokens.pop(ctx.id, None)
        self._finished[ctx.id] = ctx
        while len(self._finished) > self._keep_finished:
            self._finished.popitem(last=False)


def _log_abandoned_branch(future: asyncio.Future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.warning(f"Abandoned parallel branch failed after losing the race: {error}")
