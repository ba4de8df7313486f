"""FastAPI server — HTTP and websocket surface over spaces and their orchestrators."""

from __future__ import annotations

import json
import logging
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from conductor.config import BASE_DIR, DEFAULT_MODEL, SERVER_HOST, SERVER_PORT
from conductor.errors import (
    AgentNotFoundError,
    ContextBudgetError,
    InvalidTransitionError,
    StorageError,
    StructuredOutputError,
    WorkflowError,
    WorkflowStateError,
)
from conductor.orchestrator import Orchestrator, OrchestrationResult
from conductor.registry import OrchestratorRegistry
from conductor.storage import LocalSpaceStorage
from conductor.tools.registry import ToolRegistry
from conductor.worker import LLMWorker
from conductor.workflow import WorkflowEngine

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Conductor", version="0.1", description="Multi-agent orchestration engine")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

registry = OrchestratorRegistry(storage=LocalSpaceStorage(BASE_DIR))
tool_registry = ToolRegistry()


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@app.exception_handler(AgentNotFoundError)
async def _agent_not_found(request: Request, exc: AgentNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def _invalid_transition(request: Request, exc: InvalidTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(WorkflowStateError)
async def _workflow_state(request: Request, exc: WorkflowStateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(WorkflowError)
async def _workflow_error(request: Request, exc: WorkflowError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ContextBudgetError)
async def _context_budget(request: Request, exc: ContextBudgetError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StructuredOutputError)
async def _structured_output(request: Request, exc: StructuredOutputError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(StorageError)
async def _storage_error(request: Request, exc: StorageError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------


class CreateSpaceRequest(BaseModel):
    goal: str = ""
    name: str | None = None
    id: str | None = None


class RegisterAgentRequest(BaseModel):
    id: str
    name: str | None = None
    description: str = ""
    system: str | None = None
    model: str = DEFAULT_MODEL


class ChatMessage(BaseModel):
    role: str
    content: Any = ""


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)
    mode: str = "agent"
    requested_agent: str | None = None
    execute_plan: bool = False
    system: str | None = None


class PlanRequest(BaseModel):
    goal: str


class ReplanRequest(BaseModel):
    reason: str


class StartWorkflowRequest(BaseModel):
    input: dict[str, Any] = Field(default_factory=dict)
    mission_id: str | None = None
    task_id: str | None = None


class ResumeWorkflowRequest(BaseModel):
    input: dict[str, Any] = Field(default_factory=dict)


class SendMessageRequest(BaseModel):
    from_id: str = "human"
    to_id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class UpdateContextRequest(BaseModel):
    agent_id: str = "human"
    updates: dict[str, Any]


# ---------------------------------------------------------------------------
# Spaces
# ---------------------------------------------------------------------------


@app.post("/spaces")
async def create_space(req: CreateSpaceRequest) -> dict:
    if req.id and await registry.get(req.id):
        raise HTTPException(status_code=409, detail=f"Space {req.id} already exists")
    orchestrator = await registry.get_or_create(req.id, goal=req.goal, name=req.name)
    await orchestrator.save_space()
    logger.info(f"Space {orchestrator.space.id} ready: {req.goal[:80]}")
    return orchestrator.space.summary()


@app.get("/spaces")
async def list_spaces() -> list[dict]:
    summaries = []
    for space_id in await registry.list():
        orchestrator = await registry.get(space_id)
        if orchestrator:
            summaries.append(orchestrator.space.summary())
    return summaries


@app.get("/spaces/{space_id}")
async def get_space(space_id: str) -> dict:
    orchestrator = await _get_orchestrator(space_id)
    return orchestrator.space.to_dict()


@app.delete("/spaces/{space_id}")
async def delete_space(space_id: str) -> dict:
    evicted = await registry.evict(space_id)
    deleted = await registry.storage.delete_space(space_id) if registry.storage else False
    if not evicted and not deleted:
        raise HTTPException(status_code=404, detail=f"Space {space_id} not found")
    return {"status": "deleted", "id": space_id}


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


@app.post("/spaces/{space_id}/agents")
async def register_agent(space_id: str, req: RegisterAgentRequest) -> dict:
    orchestrator = await _get_orchestrator(space_id)
    worker = LLMWorker(
        id=req.id,
        name=req.name,
        description=req.description,
        system=req.system,
        model=req.model,
        registry=tool_registry,
    )
    orchestrator.space.register_agent(worker)
    return worker.info.to_dict()


@app.get("/spaces/{space_id}/agents")
async def list_agents(space_id: str) -> list[dict]:
    orchestrator = await _get_orchestrator(space_id)
    return [info.to_dict() for info in orchestrator.get_available_agents()]


@app.delete("/spaces/{space_id}/agents/{agent_id}")
async def remove_agent(space_id: str, agent_id: str) -> dict:
    orchestrator = await _get_orchestrator(space_id)
    if not orchestrator.space.remove_agent(agent_id):
        raise AgentNotFoundError(agent_id)
    return {"status": "removed", "id": agent_id}


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@app.post("/spaces/{space_id}/chat")
async def chat(space_id: str, req: ChatRequest) -> dict:
    orchestrator = await _get_orchestrator(space_id)
    result = await orchestrator.handle(
        [m.model_dump() for m in req.messages],
        mode=req.mode,
        requested_agent=req.requested_agent,
        execute_plan=req.execute_plan,
        system=req.system,
    )
    return result.to_dict()


@app.post("/spaces/{space_id}/chat/stream")
async def chat_stream(space_id: str, req: ChatRequest) -> StreamingResponse:
    """Newline-delimited JSON: one line per delegation event, then the result."""
    orchestrator = await _get_orchestrator(space_id)

    async def lines():
        async for item in orchestrator.stream(
            [m.model_dump() for m in req.messages],
            mode=req.mode,
            requested_agent=req.requested_agent,
            execute_plan=req.execute_plan,
            system=req.system,
        ):
            if isinstance(item, OrchestrationResult):
                yield json.dumps({"type": "result", **item.to_dict()}, default=str) + "\n"
            else:
                yield json.dumps(item.to_dict(), default=str) + "\n"

    return StreamingResponse(lines(), media_type="application/x-ndjson")


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@app.get("/spaces/{space_id}/plan")
async def get_plan(space_id: str) -> dict:
    space = (await _get_orchestrator(space_id)).space
    return {
        "plan": space.plan.to_dict() if space.plan else None,
        "pending_plan": space.pending_plan.to_dict() if space.pending_plan else None,
    }


@app.post("/spaces/{space_id}/plan")
async def create_plan(space_id: str, req: PlanRequest) -> dict:
    orchestrator = await _get_orchestrator(space_id)
    plan = await orchestrator.create_plan(req.goal)
    return plan.to_dict()


@app.post("/spaces/{space_id}/plan/execute")
async def execute_pending_plan(space_id: str) -> dict:
    orchestrator = await _get_orchestrator(space_id)
    if orchestrator.space.pending_plan is None:
        raise HTTPException(status_code=409, detail="No plan is waiting for approval")
    result = await orchestrator.handle([], mode="agent", execute_plan=True)
    return result.to_dict()


@app.post("/spaces/{space_id}/plan/replan")
async def replan(space_id: str, req: ReplanRequest) -> dict:
    orchestrator = await _get_orchestrator(space_id)
    try:
        action = await orchestrator.replan(req.reason)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return action.model_dump()


@app.post("/spaces/{space_id}/tasks/{task_id}/cancel")
async def cancel_task(space_id: str, task_id: str) -> dict:
    orchestrator = await _get_orchestrator(space_id)
    if not orchestrator.cancel_task(task_id):
        raise HTTPException(status_code=404, detail=f"Task {task_id} is not running")
    return {"status": "cancelled", "id": task_id}


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


@app.post("/spaces/{space_id}/workflows")
async def register_workflow(space_id: str, graph: dict[str, Any]) -> dict:
    space = (await _get_orchestrator(space_id)).space
    engine = space.workflows.get(graph.get("id", ""))
    if engine is None:
        engine = WorkflowEngine(agents=space.get_agent, tools=tool_registry, event_bus=space.event_bus)
    parsed = engine.register_workflow(graph)
    space.add_workflow(engine)
    return {"id": parsed.id, "name": parsed.name, "nodes": len(parsed.nodes)}


@app.get("/spaces/{space_id}/workflows")
async def list_workflows(space_id: str) -> list[dict]:
    space = (await _get_orchestrator(space_id)).space
    return [
        {"id": graph_id, "name": engine.graph.name, "active": engine.active_contexts()}
        for graph_id, engine in space.workflows.items()
    ]


@app.post("/spaces/{space_id}/workflows/{graph_id}/start")
async def start_workflow(space_id: str, graph_id: str, req: StartWorkflowRequest) -> dict:
    engine = await _get_engine(space_id, graph_id)
    context_id = await engine.start_workflow(req.input, mission_id=req.mission_id, task_id=req.task_id)
    return engine.get_context(context_id).to_dict()


@app.get("/spaces/{space_id}/executions/{context_id}")
async def get_execution(space_id: str, context_id: str) -> dict:
    engine = await _find_execution(space_id, context_id)
    return engine.get_context(context_id).to_dict()


@app.post("/spaces/{space_id}/executions/{context_id}/resume")
async def resume_execution(space_id: str, context_id: str, req: ResumeWorkflowRequest) -> dict:
    engine = await _find_execution(space_id, context_id)
    await engine.resume_workflow(context_id, req.input)
    return engine.get_context(context_id).to_dict()


@app.post("/spaces/{space_id}/executions/{context_id}/cancel")
async def cancel_execution(space_id: str, context_id: str) -> dict:
    engine = await _find_execution(space_id, context_id)
    if not engine.cancel_execution(context_id):
        raise HTTPException(status_code=409, detail=f"Execution {context_id} is not running or paused")
    return {"status": "cancelled", "id": context_id}


# ---------------------------------------------------------------------------
# Mailbox and shared context
# ---------------------------------------------------------------------------


@app.post("/spaces/{space_id}/messages")
async def send_message(space_id: str, req: SendMessageRequest) -> dict:
    collaboration = (await _get_orchestrator(space_id)).space.collaboration
    message = collaboration.send_message(req.from_id, req.to_id, req.content, req.metadata)
    return message.to_dict()


@app.get("/spaces/{space_id}/agents/{agent_id}/messages")
async def receive_messages(space_id: str, agent_id: str, peek: bool = False) -> list[dict]:
    collaboration = (await _get_orchestrator(space_id)).space.collaboration
    messages = collaboration.bus.peek(agent_id) if peek else collaboration.get_messages(agent_id)
    return [m.to_dict() for m in messages]


@app.get("/spaces/{space_id}/context")
async def get_shared_context(space_id: str) -> dict:
    collaboration = (await _get_orchestrator(space_id)).space.collaboration
    return collaboration.get_context().to_dict()


@app.patch("/spaces/{space_id}/context")
async def update_shared_context(space_id: str, req: UpdateContextRequest) -> dict:
    collaboration = (await _get_orchestrator(space_id)).space.collaboration
    collaboration.update_context(req.agent_id, req.updates)
    return collaboration.get_context().to_dict()


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------


@app.get("/spaces/{space_id}/artifacts")
async def list_artifacts(space_id: str) -> list[dict]:
    space = (await _get_orchestrator(space_id)).space
    return [a.to_dict() for a in space.artifacts.values()]


@app.get("/spaces/{space_id}/artifacts/{artifact_id}")
async def get_artifact(space_id: str, artifact_id: str) -> Response:
    await _get_orchestrator(space_id)
    found = await registry.storage.get_artifact(space_id, artifact_id) if registry.storage else None
    if found is None:
        raise HTTPException(status_code=404, detail=f"Artifact {artifact_id} not found")
    info, content = found
    return Response(content=content, media_type=info.mime_type)


# ---------------------------------------------------------------------------
# Events (WebSocket + Polling)
# ---------------------------------------------------------------------------


@app.websocket("/spaces/{space_id}/events")
async def event_stream(websocket: WebSocket, space_id: str):
    """WebSocket stream of space events."""
    await websocket.accept()
    orchestrator = await registry.get(space_id)
    if not orchestrator:
        await websocket.close(code=4004, reason="Space not found")
        return

    bus = orchestrator.space.event_bus
    queue = bus.subscribe()
    try:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        bus.unsubscribe(queue)


@app.get("/spaces/{space_id}/events")
async def get_events(space_id: str, limit: int = 50, offset: int = 0) -> list[dict]:
    """Get recent events (polling fallback)."""
    orchestrator = await _get_orchestrator(space_id)
    events = orchestrator.space.event_bus.recent(limit=limit, offset=offset)
    return [e.to_dict() for e in events]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _get_orchestrator(space_id: str) -> Orchestrator:
    orchestrator = await registry.get(space_id)
    if orchestrator:
        return orchestrator
    if registry.storage:
        try:
            saved = await registry.storage.get_space(space_id)
        except StorageError as e:
            logger.warning(f"Could not look up space {space_id}: {e}")
            saved = None
        if saved:
            return await registry.get_or_create(space_id)
    raise HTTPException(status_code=404, detail=f"Space {space_id} not found")


async def _get_engine(space_id: str, graph_id: str) -> WorkflowEngine:
    engine = (await _get_orchestrator(space_id)).space.workflows.get(graph_id)
    if not engine:
        raise HTTPException(status_code=404, detail=f"Workflow {graph_id} not found")
    return engine


async def _find_execution(space_id: str, context_id: str) -> WorkflowEngine:
    engine = (await _get_orchestrator(space_id)).space.find_execution(context_id)
    if engine:
        return engine
    raise HTTPException(status_code=404, detail=f"Execution {context_id} not found")


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------


def main():
    """Start the Conductor server."""
    print(f"Starting Conductor server on {SERVER_HOST}:{SERVER_PORT}")
    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT, log_level="info")


if __name__ == "__main__":
    main()
