"""Scheduler — runs a plan's tasks on worker agents, as parallel as dependencies allow."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable

from conductor.config import ARTIFACT_THRESHOLD, MAX_CONCURRENCY, RESULT_PREVIEW_CHARS
from conductor.models import CancellationToken, DelegationEvent, ToolCallRecord
from conductor.plan import Plan
from conductor.task import Task, TaskStatus
from conductor.worker import WorkerAgent, WorkerResponse

if TYPE_CHECKING:
    from conductor.events import EventBus

logger = logging.getLogger(__name__)

AgentResolver = Callable[[str], "WorkerAgent | None"]
ArtifactStore = Callable[[str, Task, str], Awaitable[Any]]
EventCallback = Callable[[DelegationEvent], Any]


def preview(text: str, limit: int = RESULT_PREVIEW_CHARS) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def build_task_prompt(plan: Plan, task: Task) -> str:
    """The task description, prefixed with the outputs of its completed dependencies."""
    sections = []
    for dep in task.dependencies:
        dep_task = plan.get_task(dep.task_id)
        if dep_task and dep_task.status == TaskStatus.COMPLETED and dep_task.result:
            sections.append(f'\n[Result from "{dep_task.title}"]:\n{dep_task.result}\n')
    if not sections:
        return task.description
    context = "".join(sections)
    return f"Context from previous work:\n{context}\n\nYour task: {task.description}"


@dataclass
class ExecutionOutcome:
    results: dict[str, str] = field(default_factory=dict)
    artifacts: list[str] = field(default_factory=list)
    events: list[DelegationEvent] = field(default_factory=list)
    blocked: bool = False
    blocked_task_ids: list[str] = field(default_factory=list)
    aborted: bool = False

    def to_dict(self) -> dict:
        return {
            "results": dict(self.results),
            "artifacts": list(self.artifacts),
            "events": [e.to_dict() for e in self.events],
            "blocked": self.blocked,
            "blocked_task_ids": list(self.blocked_task_ids),
            "aborted": self.aborted,
        }


@dataclass
class _Attempt:
    response: WorkerResponse | None = None
    error: BaseException | None = None


class PlanExecutor:
    """Dispatches actionable tasks to their assigned workers.

    Only the coroutine running `execute()` changes task state. Worker calls
    run as separate asyncio tasks and hand their result back; at most
    `max_concurrency` of them are in flight at once.
    """

    def __init__(
        self,
        resolve_agent: AgentResolver,
        max_concurrency: int = MAX_CONCURRENCY,
        artifact_threshold: int = ARTIFACT_THRESHOLD,
        artifact_store: ArtifactStore | None = None,
        on_event: EventCallback | None = None,
        event_bus: "EventBus | None" = None,
        metadata: dict[str, Any] | None = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._resolve_agent = resolve_agent
        self.max_concurrency = max_concurrency
        self.artifact_threshold = artifact_threshold
        self._artifact_store = artifact_store
        self._on_event = on_event
        self._event_bus = event_bus
        self.metadata = dict(metadata or {})

        self._plan: Plan | None = None
        self._running: dict[str, asyncio.Task] = {}
        self._agents: dict[str, WorkerAgent] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._dispatched: set[str] = set()
        self._closed: set[str] = set()
        self._sinks: list[asyncio.Queue] = []
        self._wakeup = asyncio.Event()
        self._stopping = False
        self.outcome: ExecutionOutcome | None = None

    # -- public --------------------------------------------------------------

    async def execute(self, plan: Plan, priorities: dict[str, int] | None = None) -> ExecutionOutcome:
        """Run `plan` until nothing is in flight and nothing more can start."""
        self._plan = plan
        self._stopping = False
        self._dispatched = set()
        self._closed = set()
        outcome = ExecutionOutcome()
        self.outcome = outcome
        ranks = priorities or {}

        logger.info(f"Executing plan '{plan.goal[:60]}' ({len(plan.tasks)} tasks, max {self.max_concurrency} concurrent)")

        while True:
            # A dispatch can fail on the spot (unknown agent), so re-read the frontier each time
            while not self._stopping and len(self._running) < self.max_concurrency:
                frontier = self._frontier(plan, ranks)
                if not frontier:
                    break
                self._dispatch(plan, frontier[0], outcome)

            if not self._running:
                break

            waiter = asyncio.ensure_future(self._wakeup.wait())
            done, _ = await asyncio.wait({*self._running.values(), waiter}, return_when=asyncio.FIRST_COMPLETED)
            if not waiter.done():
                waiter.cancel()
            self._wakeup.clear()

            for task_id, future in list(self._running.items()):
                if future in done:
                    del self._running[task_id]
                    self._tokens.pop(task_id, None)
                    await self._apply(plan, task_id, future.result(), outcome)

        pending = plan.get_tasks_by_status(TaskStatus.PENDING)
        if pending and not self._stopping:
            outcome.blocked = True
            outcome.blocked_task_ids = [t.id for t in pending]
            logger.warning(
                f"Plan blocked: {len(pending)} pending task(s) have unmet dependencies: "
                f"{', '.join(outcome.blocked_task_ids)}"
            )
        outcome.aborted = self._stopping
        return outcome

    async def stream(self, plan: Plan, priorities: dict[str, int] | None = None) -> AsyncIterator[DelegationEvent]:
        """Run `plan`, yielding delegation events as they happen. The result lands on `self.outcome`."""
        queue: asyncio.Queue = asyncio.Queue()
        done_marker = object()
        self._sinks.append(queue)
        runner = asyncio.create_task(self.execute(plan, priorities))
        runner.add_done_callback(lambda _: queue.put_nowait(done_marker))
        try:
            while True:
                item = await queue.get()
                if item is done_marker:
                    break
                yield item
            runner.result()
        finally:
            self._sinks.remove(queue)

    def cancel_task(self, task_id: str) -> bool:
        """Stop tracking a task and mark it cancelled. The worker call itself is not interrupted.

        A task that had already started gets a closing `failed` event with
        error "cancelled".
        """
        future = self._running.pop(task_id, None)
        token = self._tokens.pop(task_id, None)
        if token:
            token.cancel(f"Task {task_id} cancelled")

        task = self._plan.get_task(task_id) if self._plan else None
        if task is None or task.is_finished():
            return future is not None
        started = task_id in self._dispatched and task_id not in self._closed
        self._plan.update_task_status(task_id, TaskStatus.CANCELLED)
        self._dispatched.add(task_id)
        if started and self.outcome is not None:
            self._emit(self.outcome, self._event(task, self._agents.pop(task_id, None), "failed", error="cancelled"))
        self._wakeup.set()
        logger.info(f"Task {task_id} cancelled")
        return True

    def abort(self):
        """Stop dispatching and cancel everything in flight. Pending tasks stay pending."""
        self._stopping = True
        for task_id in list(self._running):
            self.cancel_task(task_id)
        self._wakeup.set()

    def active_task_count(self) -> int:
        return len(self._running)

    # -- internals -----------------------------------------------------------

    def _frontier(self, plan: Plan, ranks: dict[str, int]) -> list[Task]:
        completed = plan.completed_ids()
        ready = [
            t for t in plan.tasks
            if t.id not in self._dispatched and plan.is_actionable(t, completed)
        ]
        # sorted() is stable, so ties keep plan order
        return sorted(ready, key=lambda t: -ranks.get(t.id, t.priority_rank))

    def _dispatch(self, plan: Plan, task: Task, outcome: ExecutionOutcome):
        self._dispatched.add(task.id)
        agent = self._resolve_agent(task.assigned_to) if task.assigned_to else None

        plan.update_task_status(task.id, TaskStatus.RUNNING)
        self._emit(outcome, self._event(task, agent, "started"))

        if agent is None:
            error = f"Agent {task.assigned_to} not found" if task.assigned_to else "No agent assigned"
            logger.error(f"Task {task.id} failed: {error}")
            plan.update_task_status(task.id, TaskStatus.FAILED, error)
            self._emit(outcome, self._event(task, None, "failed", error=error))
            return

        logger.info(f"Launching {agent.name} on task {task.id}: {task.title[:60]}")
        token = CancellationToken()
        metadata = {
            **self.metadata,
            **task.metadata,
            "task_id": task.id,
            "task_title": task.title,
            "delegated_from": "orchestrator",
        }
        self._agents[task.id] = agent
        self._tokens[task.id] = token
        self._running[task.id] = asyncio.create_task(
            self._invoke(agent, build_task_prompt(plan, task), metadata, token)
        )

    async def _invoke(
        self, agent: WorkerAgent, prompt: str, metadata: dict[str, Any], token: CancellationToken
    ) -> _Attempt:
        try:
            return _Attempt(response=await agent.invoke(prompt, metadata=metadata, cancel_token=token))
        except Exception as e:
            return _Attempt(error=e)

    async def _apply(self, plan: Plan, task_id: str, attempt: _Attempt, outcome: ExecutionOutcome):
        task = plan.get_task(task_id)
        agent = self._agents.pop(task_id, None)
        if task is None:
            return
        if task.status != TaskStatus.RUNNING:
            # Moved out of RUNNING behind the executor's back, e.g. blocked on the plan
            self._close_started(outcome, task, agent)
            return

        if attempt.error is not None or attempt.response is None:
            error = str(attempt.error) if attempt.error is not None else "Worker returned no response"
            logger.error(f"Task {task_id} failed: {error}", exc_info=attempt.error)
            plan.update_task_status(task_id, TaskStatus.FAILED, error)
            self._emit(outcome, self._event(task, agent, "failed", error=error))
            return

        text = attempt.response.text or ""
        artifact_id = None
        if len(text) > self.artifact_threshold:
            artifact_id = await self._store_artifact(task, text)
            if task.status != TaskStatus.RUNNING:
                logger.info(f"Task {task_id} left RUNNING while its artifact was stored; result dropped")
                self._close_started(outcome, task, agent)
                return

        plan.update_task_status(task_id, TaskStatus.COMPLETED, text)
        outcome.results[task_id] = text
        if artifact_id:
            outcome.artifacts.append(artifact_id)
        logger.info(f"Task {task_id} completed by {agent.name if agent else task.assigned_to}")
        self._emit(
            outcome,
            self._event(
                task, agent, "completed",
                result=preview(text),
                artifact_id=artifact_id,
                tool_calls=tuple(attempt.response.tool_calls),
            ),
        )

    async def _store_artifact(self, task: Task, text: str) -> str:
        artifact_id = f"artifact_{task.id}_{int(time.time() * 1000)}"
        if self._artifact_store:
            try:
                await self._artifact_store(artifact_id, task, text)
            except Exception as e:
                logger.warning(f"Could not store artifact {artifact_id}: {e}")
        return artifact_id

    def _event(
        self,
        task: Task,
        agent: WorkerAgent | None,
        status: str,
        result: str | None = None,
        artifact_id: str | None = None,
        error: str | None = None,
        tool_calls: tuple[ToolCallRecord, ...] = (),
    ) -> DelegationEvent:
        return DelegationEvent(
            task_id=task.id,
            task_title=task.title,
            agent_id=task.assigned_to or "",
            agent_name=agent.name if agent else (task.assigned_to or "unassigned"),
            status=status,
            result=result,
            artifact_id=artifact_id,
            error=error,
            tool_calls=tool_calls,
        )

    def _close_started(self, outcome: ExecutionOutcome, task: Task, agent: WorkerAgent | None):
        """Emit the closing event for a started task unless one was already sent."""
        if task.id not in self._closed:
            self._emit(outcome, self._event(task, agent, "failed", error=task.status.value))

    def _emit(self, outcome: ExecutionOutcome, event: DelegationEvent):
        if event.status in ("completed", "failed"):
            self._closed.add(event.task_id)
        outcome.events.append(event)
        for sink in self._sinks:
            sink.put_nowait(event)
        if self._event_bus:
            self._event_bus.emit_delegation(event)
        if self._on_event:
            try:
                self._on_event(event)
            except Exception as e:
                logger.error(f"Delegation event callback failed: {e}", exc_info=True)


# ---------------------------------------------------------------------------
# Batch execution (no dependencies)
# ---------------------------------------------------------------------------


@dataclass
class ParallelTask:
    id: str
    agent_id: str
    prompt: str
    context: list[dict] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    priority: int = 0


@dataclass
class ParallelExecutionResult:
    task_id: str
    agent_id: str
    response: WorkerResponse | None = None
    error: str | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class ParallelExecutionEngine:
    """Runs independent prompts on workers with a bounded sliding window.

    Every task settles: failures are captured on the result instead of
    stopping the batch. Results come back in completion order; tasks
    cancelled while in flight are left out.
    """

    def __init__(self, resolve_agent: AgentResolver, max_concurrency: int = MAX_CONCURRENCY):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._resolve_agent = resolve_agent
        self.max_concurrency = max_concurrency
        self._active: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._cancelled: set[str] = set()

    async def execute_parallel(self, tasks: list[ParallelTask]) -> list[ParallelExecutionResult]:
        queue = sorted(tasks, key=lambda t: -t.priority)
        results: list[ParallelExecutionResult] = []
        in_flight: set[asyncio.Task] = set()
        next_index = 0

        while next_index < len(queue) or in_flight:
            while next_index < len(queue) and len(in_flight) < self.max_concurrency:
                ptask = queue[next_index]
                next_index += 1
                token = CancellationToken()
                future = asyncio.create_task(self._run(ptask, token))
                in_flight.add(future)
                self._active[ptask.id] = future
                self._tokens[ptask.id] = token

            done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for future in done:
                result = future.result()
                self._active.pop(result.task_id, None)
                self._tokens.pop(result.task_id, None)
                if result.task_id in self._cancelled:
                    self._cancelled.discard(result.task_id)
                    logger.info(f"Dropping result of cancelled parallel task {result.task_id}")
                    continue
                results.append(result)

        return results

    def cancel_task(self, task_id: str) -> bool:
        """Signal a running task and drop its result. The call itself keeps running."""
        token = self._tokens.pop(task_id, None)
        if token:
            token.cancel(f"Task {task_id} cancelled")
        if self._active.pop(task_id, None) is None:
            return False
        self._cancelled.add(task_id)
        return True

    def active_task_count(self) -> int:
        return len(self._active)

    async def _run(self, ptask: ParallelTask, token: CancellationToken) -> ParallelExecutionResult:
        start = time.monotonic()
        agent = self._resolve_agent(ptask.agent_id)
        if agent is None:
            return ParallelExecutionResult(ptask.id, ptask.agent_id, error=f"Agent {ptask.agent_id} not found")
        try:
            response = await agent.invoke(
                ptask.prompt, context=ptask.context, metadata=ptask.metadata, cancel_token=token
            )
        except Exception as e:
            logger.error(f"Parallel task {ptask.id} on {ptask.agent_id} failed: {e}")
            return ParallelExecutionResult(
                ptask.id, ptask.agent_id, error=str(e), duration=time.monotonic() - start
            )
        return ParallelExecutionResult(ptask.id, ptask.agent_id, response=response, duration=time.monotonic() - start)
