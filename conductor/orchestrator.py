"""Orchestrator — decides whether a request needs a team, then runs one.

The protocol is four steps, each usable on its own:

    analyze_request()            does this need a plan, and which tasks?
    create_plan_from_analysis()  suggested tasks -> Plan with dependency edges
    execute_plan()               run the plan on worker agents (PlanExecutor)
    synthesize_results()         merge worker outputs into one answer

`Orchestrator` wires them to a Space and adds the three chat modes:
ask (answer directly), plan (build a plan and wait for approval) and agent
(plan, execute and synthesize in one go).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Sequence

from pydantic import Field

from conductor.config import ARTIFACT_THRESHOLD, DEFAULT_MODEL, MAX_CONCURRENCY, RECENT_MESSAGE_WINDOW
from conductor.context import budget_for_model, compress_messages, recent_window, validate_context
from conductor.errors import AgentNotFoundError, ContextBudgetError
from conductor.models import AgentInfo, DelegationEvent
from conductor.plan import Plan
from conductor.planner import OutputSchema, Planner, ReplanAction, ReplanCheck, SuggestedTask, agent_catalog, plan_from_tasks
from conductor.providers.base import ModelProvider
from conductor.providers.factory import create_provider
from conductor.scheduler import AgentResolver, ExecutionOutcome, PlanExecutor, preview
from conductor.space import Space
from conductor.storage import ArtifactInfo, SpaceStorage
from conductor.task import Task, TaskStatus

logger = logging.getLogger(__name__)

MODES = ("ask", "plan", "agent")

EMPTY_REQUEST = "I didn't receive any message content. Please provide a request or question."
EMPTY_PLAN_REQUEST = "I didn't receive any message content. Please provide a request to create a plan for."


# ---------------------------------------------------------------------------
# Step 1: analysis
# ---------------------------------------------------------------------------


class RequestAnalysis(OutputSchema):
    needs_plan: bool = Field(
        description="Whether this request needs to be broken into multiple tasks for different agents"
    )
    reasoning: str = Field(description="Brief explanation of why a plan is or isn't needed")
    suggested_tasks: list[SuggestedTask] = Field(
        default_factory=list, description="Tasks to create if needs_plan is true"
    )

    @property
    def has_plan(self) -> bool:
        return self.needs_plan and bool(self.suggested_tasks)


ANALYSIS_SYSTEM_PROMPT = """You analyze user requests and determine if they need multi-agent orchestration.

Available agents:
{agents}

Guidelines:
- Simple questions or single-domain tasks: needs_plan = false
- Complex requests requiring research + writing: needs_plan = true
- Requests spanning multiple domains: needs_plan = true
- Requests that could benefit from specialized expertise: needs_plan = true

When creating tasks:
- Each task should be assigned to the most appropriate agent
- Use dependencies to ensure proper execution order
- Keep tasks focused and actionable"""


async def analyze_request(provider: ModelProvider, message: str, agents: Sequence[AgentInfo]) -> RequestAnalysis:
    """Ask the model whether `message` needs a plan. Provider and parse errors propagate."""
    analysis = await provider.generate_object(
        RequestAnalysis,
        prompt=message,
        system=ANALYSIS_SYSTEM_PROMPT.format(agents=agent_catalog(agents) or "(none)"),
    )
    if analysis.needs_plan and not analysis.suggested_tasks:
        logger.info("Analysis asked for a plan but suggested no tasks; answering directly")
    return analysis


# ---------------------------------------------------------------------------
# Step 2-3: plan and execute
# ---------------------------------------------------------------------------


def create_plan_from_analysis(goal: str, tasks: Sequence[SuggestedTask]) -> Plan:
    return plan_from_tasks(goal, tasks)


async def execute_plan(
    plan: Plan,
    resolve_agent: AgentResolver,
    on_event: Callable[[DelegationEvent], Any] | None = None,
    **executor_options: Any,
) -> ExecutionOutcome:
    """Run every runnable task of `plan`. Returns results keyed by task id plus artifact ids."""
    executor = PlanExecutor(resolve_agent, on_event=on_event, **executor_options)
    return await executor.execute(plan)


# ---------------------------------------------------------------------------
# Step 4: synthesis
# ---------------------------------------------------------------------------


class Synthesis(OutputSchema):
    text: str = Field(description="The final synthesized response")


SYNTHESIS_SYSTEM_PROMPT = """You are {name}, synthesizing results from multiple agents to answer the user's request.

Your role:
- Combine the insights from all agents into a coherent response
- Credit the agents that contributed to each part
- Highlight key findings and recommendations
- Be concise but comprehensive"""


def summarize_results(plan: Plan, results: dict[str, str], agent_names: dict[str, str] | None = None) -> str:
    """Completed task outputs, grouped by the worker that produced them."""
    names = agent_names or {}
    completed = plan.get_tasks_by_status(TaskStatus.COMPLETED)
    workers: list[str] = []
    for task in completed:
        if task.assigned_to not in workers:
            workers.append(task.assigned_to)

    sections = []
    for worker in workers:
        for task in completed:
            if task.assigned_to != worker:
                continue
            by = names.get(worker, worker) if worker else "unassigned"
            output = results.get(task.id) or task.result or "No result"
            sections.append(f"## {task.title} (by {by})\n{output}")

    failed = plan.get_tasks_by_status(TaskStatus.FAILED)
    if failed:
        sections.append("## Tasks that failed\n" + "\n".join(f"- {t.title}: {t.error}" for t in failed))
    return "\n\n".join(sections)


async def synthesize_results(
    provider: ModelProvider,
    plan: Plan,
    results: dict[str, str],
    request: str,
    agent_names: dict[str, str] | None = None,
    name: str = "the orchestrator",
) -> str:
    summary = summarize_results(plan, results, agent_names)
    synthesis = await provider.generate_object(
        Synthesis,
        prompt=(
            f"Original request: {request}\n\n"
            f"Results from agents:\n{summary}\n\n"
            "Synthesize these results into a final response for the user."
        ),
        system=SYNTHESIS_SYSTEM_PROMPT.format(name=name),
    )
    return synthesis.text


def format_plan_for_approval(plan: Plan, reasoning: str) -> str:
    lines = [
        "## Plan Created\n",
        f"**Goal:** {plan.goal}\n",
        f"**Reasoning:** {reasoning}\n",
        f"### Tasks ({len(plan.tasks)})\n",
    ]
    for task in plan.tasks:
        deps = f" (depends on: {', '.join(d.task_id for d in task.dependencies)})" if task.dependencies else ""
        lines.append(f"{task.id}. **{task.title}** → `{task.assigned_to or 'unassigned'}`{deps}")
        lines.append(f"   {task.description}\n")
    lines.append("\n---")
    lines.append("To execute this plan, send a message in agent mode with `execute_plan: true`.")
    lines.append("Or modify the tasks and re-submit.")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


@dataclass
class OrchestrationResult:
    text: str
    mode: str
    plan: Plan | None = None
    events: list[DelegationEvent] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    results: dict[str, str] = field(default_factory=dict)
    analysis: RequestAnalysis | None = None
    blocked: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "mode": self.mode,
            "plan": self.plan.to_dict() if self.plan else None,
            "events": [e.to_dict() for e in self.events],
            "artifacts": list(self.artifacts),
            "results": dict(self.results),
            "analysis": self.analysis.model_dump() if self.analysis else None,
            "blocked": self.blocked,
            "error": self.error,
        }


class Orchestrator:
    """Runs the chat modes for one Space."""

    def __init__(
        self,
        space: Space,
        provider: ModelProvider | None = None,
        storage: SpaceStorage | None = None,
        model: str = DEFAULT_MODEL,
        name: str = "Conductor",
        max_concurrency: int = MAX_CONCURRENCY,
        artifact_threshold: int = ARTIFACT_THRESHOLD,
        window: int = RECENT_MESSAGE_WINDOW,
    ):
        self.space = space
        self._provider = provider
        self.storage = storage
        self.model = model
        self.name = name
        self.max_concurrency = max_concurrency
        self.artifact_threshold = artifact_threshold
        self.window = window
        self._executor: PlanExecutor | None = None

    @property
    def provider(self) -> ModelProvider:
        if self._provider is None:
            self._provider = create_provider(self.model)
        return self._provider

    @property
    def system_prompt(self) -> str:
        prompt = f"You are {self.name}, the coordinator of the workspace '{self.space.name}'."
        if self.space.goal:
            prompt += f" The workspace goal is: {self.space.goal}"
        return prompt

    def get_available_agents(self) -> list[AgentInfo]:
        return self.space.agent_catalog()

    # -- entry points --------------------------------------------------------

    async def handle(
        self,
        messages: list[dict],
        mode: str = "agent",
        requested_agent: str | None = None,
        execute_plan: bool = False,
        system: str | None = None,
    ) -> OrchestrationResult:
        result: OrchestrationResult | None = None
        async for item in self.stream(messages, mode, requested_agent, execute_plan, system):
            if isinstance(item, OrchestrationResult):
                result = item
        return result

    async def stream(
        self,
        messages: list[dict],
        mode: str = "agent",
        requested_agent: str | None = None,
        execute_plan: bool = False,
        system: str | None = None,
    ) -> AsyncIterator[DelegationEvent | OrchestrationResult]:
        """Yield delegation events as they happen, then the final OrchestrationResult."""
        if mode not in MODES:
            logger.warning(f"Unknown chat mode '{mode}', falling back to ask")
            mode = "ask"
        logger.info(f"[{self.space.id}] chat mode: {mode}")

        content = last_user_content(messages)
        if content:
            self.space.add_message("user", content, mode=mode)

        if mode == "ask":
            handler = self._ask(messages, system)
        elif mode == "plan":
            handler = self._plan(content)
        else:
            handler = self._agent(messages, content, requested_agent, execute_plan, system)

        result = None
        async for item in handler:
            if isinstance(item, OrchestrationResult):
                result = item
            else:
                yield item

        self.space.add_message("assistant", result.text, mode=mode)
        await self.save_space()
        yield result

    # -- modes ---------------------------------------------------------------

    async def _ask(self, messages: list[dict], system: str | None):
        yield OrchestrationResult(text=await self._answer_directly(messages, system), mode="ask")

    async def _plan(self, content: str):
        if not content.strip():
            logger.warning("Empty user content in plan mode")
            yield OrchestrationResult(text=EMPTY_PLAN_REQUEST, mode="plan")
            return

        analysis, error = await self._analyze(content, "planning")
        if error:
            yield OrchestrationResult(text=error, mode="plan", error=error)
            return
        if not analysis.has_plan:
            yield OrchestrationResult(
                text=(
                    "This request can be answered directly without multi-agent orchestration.\n\n"
                    f"Reasoning: {analysis.reasoning}\n\n"
                    "Would you like me to answer directly? (Use ask mode for direct answers.)"
                ),
                mode="plan",
                analysis=analysis,
            )
            return

        plan = create_plan_from_analysis(content, analysis.suggested_tasks)
        self.space.pending_plan = plan
        await self._save_plan(plan)
        yield OrchestrationResult(
            text=format_plan_for_approval(plan, analysis.reasoning),
            mode="plan",
            plan=plan,
            analysis=analysis,
        )

    async def _agent(
        self,
        messages: list[dict],
        content: str,
        requested_agent: str | None,
        execute_plan: bool,
        system: str | None,
    ):
        if requested_agent:
            async for item in self._delegate(messages, content, requested_agent, system):
                yield item
            return

        if execute_plan and self.space.pending_plan is not None:
            logger.info("Executing approved plan")
            plan = self.space.pending_plan
            self.space.pending_plan = None
            async for item in self._run_plan(plan, plan.goal, prefix=f"## Plan: {plan.goal}\n\n"):
                yield item
            return

        if not content.strip():
            logger.warning("Empty user content, nothing to analyze")
            yield OrchestrationResult(text=EMPTY_REQUEST, mode="agent")
            return

        agents = self.get_available_agents()
        if not agents:
            logger.warning(f"No agents registered in space {self.space.id}")

        analysis, error = await self._analyze(content, "multi-agent orchestration")
        if error:
            yield OrchestrationResult(text=error, mode="agent", error=error)
            return

        logger.info(
            f"Analysis: needs_plan={analysis.needs_plan}, tasks={len(analysis.suggested_tasks)} "
            f"({analysis.reasoning[:80]})"
        )
        if not analysis.has_plan:
            text = await self._answer_directly(messages, system)
            yield OrchestrationResult(text=text, mode="agent", analysis=analysis)
            return

        plan = create_plan_from_analysis(content, analysis.suggested_tasks)
        async for item in self._run_plan(plan, content, analysis=analysis):
            yield item

    async def _delegate(self, messages: list[dict], content: str, requested_agent: str, system: str | None):
        target = requested_agent.strip().lower()
        if target in (self.name.lower(), "orchestrator", "self"):
            yield OrchestrationResult(text=await self._answer_directly(messages, system), mode="agent")
            return

        agent = self.space.get_agent(requested_agent.strip())
        if agent is None:
            raise AgentNotFoundError(requested_agent)

        logger.info(f"Direct delegation to '{agent.id}'")
        task = Task(id=f"direct_{int(time.time() * 1000)}", title="Direct request", description=content,
                    assigned_to=agent.id)
        started = self._direct_event(task, agent.name, "started")
        yield started

        window = recent_window(messages, self.window)
        try:
            response = await agent.invoke(
                content,
                context=window[:-1] if window and window[-1].get("role") == "user" else window,
                metadata={"space_id": self.space.id, "delegation_type": "direct"},
            )
        except Exception as e:
            logger.error(f"Direct delegation to {agent.id} failed: {e}", exc_info=True)
            failed = self._direct_event(task, agent.name, "failed", error=str(e))
            yield failed
            yield OrchestrationResult(
                text=f"Agent {agent.name} failed: {e}", mode="agent", events=[started, failed], error=str(e)
            )
            return

        completed = self._direct_event(task, agent.name, "completed", result=preview(response.text),
                                       tool_calls=tuple(response.tool_calls))
        yield completed
        yield OrchestrationResult(text=response.text, mode="agent", events=[started, completed])

    # -- plan execution ------------------------------------------------------

    async def _run_plan(self, plan: Plan, request: str, analysis: RequestAnalysis | None = None, prefix: str = ""):
        self.space.set_plan(plan)
        await self._save_plan(plan)

        executor = PlanExecutor(
            self.space.get_agent,
            max_concurrency=self.max_concurrency,
            artifact_threshold=self.artifact_threshold,
            artifact_store=self._store_artifact,
            event_bus=self.space.event_bus,
            metadata={"space_id": self.space.id},
        )
        self._executor = executor
        try:
            async for event in executor.stream(plan):
                yield event
        finally:
            self._executor = None
        outcome = executor.outcome
        await self._save_plan(plan)

        result = OrchestrationResult(
            text="",
            mode="agent",
            plan=plan,
            events=list(outcome.events),
            artifacts=list(outcome.artifacts),
            results=dict(outcome.results),
            analysis=analysis,
            blocked=outcome.blocked,
        )
        names = {a.id: a.name for a in self.get_available_agents()}
        try:
            final = await synthesize_results(self.provider, plan, outcome.results, request, names, self.name)
        except Exception as e:
            # The tasks already ran; report instead of re-running them
            logger.error(f"Synthesis failed: {e}", exc_info=True)
            result.error = str(e)
            final = (
                f"The tasks finished but the results could not be synthesized ({e}).\n\n"
                + summarize_results(plan, outcome.results, names)
            )
        if outcome.blocked:
            final += f"\n\nSome tasks could not run because their dependencies failed: {', '.join(outcome.blocked_task_ids)}"
        result.text = prefix + final
        yield result

    def cancel_task(self, task_id: str) -> bool:
        return self._executor.cancel_task(task_id) if self._executor else False

    def abort(self) -> bool:
        if self._executor is None:
            return False
        self._executor.abort()
        return True

    # -- planning helpers ----------------------------------------------------

    async def create_plan(self, goal: str) -> Plan:
        """Generate a prioritized plan for `goal` without running it. It becomes the pending plan."""
        plan = await Planner(self.provider).create_plan(goal, self.get_available_agents())
        self.space.pending_plan = plan
        await self._save_plan(plan)
        return plan

    async def check_replan_needed(self, completed_task: Task, plan: Plan | None = None) -> ReplanCheck:
        return await Planner(self.provider).check_replan_needed(self._require_plan(plan), completed_task)

    async def replan(self, reason: str, plan: Plan | None = None) -> ReplanAction:
        plan = self._require_plan(plan)
        action = await Planner(self.provider).replan(plan, reason)
        await self._save_plan(plan)
        return action

    def _require_plan(self, plan: Plan | None) -> Plan:
        plan = plan or self.space.plan or self.space.pending_plan
        if plan is None:
            raise ValueError(f"Space {self.space.id} has no plan")
        return plan

    # -- internals -----------------------------------------------------------

    async def _analyze(self, content: str, purpose: str) -> tuple[RequestAnalysis | None, str | None]:
        try:
            return await analyze_request(self.provider, content, self.get_available_agents()), None
        except Exception as e:
            logger.error(f"Request analysis failed: {e}", exc_info=True)
            return None, (
                "**Error analyzing request**\n\n"
                f"The model failed to analyze your request for {purpose}.\n\n"
                f"**Error:** {e}\n\n"
                "**Tip:** Try ask mode for a direct response, or simplify your request."
            )

    async def _answer_directly(self, messages: list[dict], system: str | None) -> str:
        system = system or self.system_prompt
        window = recent_window(messages, self.window)
        budget = budget_for_model(self.provider.model, system)
        window = compress_messages(window, budget)
        check = validate_context(window, budget)
        if not check.valid:
            logger.warning(f"Context rejected: {check.reason}")
            raise ContextBudgetError(check.reason)
        response = await self.provider.generate(messages=window, system=system)
        return response.text or ""

    async def _store_artifact(self, artifact_id: str, task: Task, text: str):
        content = text.encode("utf-8")
        info = ArtifactInfo(
            id=artifact_id,
            name=f"{task.title}.md",
            mime_type="text/markdown",
            size_bytes=len(content),
            task_id=task.id,
            metadata={"agent_id": task.assigned_to},
        )
        self.space.add_artifact(info)
        if self.storage:
            try:
                await self.storage.save_artifact(self.space.id, info, content)
            except Exception as e:
                logger.warning(f"Could not persist artifact {artifact_id}: {e}")

    async def _save_plan(self, plan: Plan):
        if self.storage:
            try:
                await self.storage.save_plan(self.space.id, plan.to_dict())
            except Exception as e:
                logger.warning(f"Could not persist plan for space {self.space.id}: {e}")

    async def save_space(self):
        if self.storage:
            try:
                await self.storage.save_space(self.space.id, self.space.to_dict())
            except Exception as e:
                logger.warning(f"Could not persist space {self.space.id}: {e}")

    def _direct_event(self, task: Task, agent_name: str, status: str, **fields: Any) -> DelegationEvent:
        event = DelegationEvent(
            task_id=task.id,
            task_title=task.title,
            agent_id=task.assigned_to or "",
            agent_name=agent_name,
            status=status,
            **fields,
        )
        self.space.event_bus.emit_delegation(event)
        return event


def last_user_content(messages: list[dict]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return text_content(message.get("content"))
    return ""


def text_content(content: Any) -> str:
    """Plain text of a message body: a string, or a list of parts with `text`."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return str(content)
