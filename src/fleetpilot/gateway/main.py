# SPDX-License-Identifier: Apache-2.0
"""File: src/fleetpilot/gateway/main.py

Project: fleetpilot

Description:
    FastAPI application exposing the orchestrator's event stream and the
    human confirmation control surface.

Endpoints:
- GET  /healthz
- POST /v1/chat/stream                                  (server-sent events)
- POST /v1/sessions/{session_id}/plan/confirm|reject
- POST /v1/sessions/{session_id}/steps/{step_index}/confirm|reject

Notes:
- Every SSE frame is ``event: <type>`` plus one JSON `AgentEvent` on its
  ``data:`` line. A client disconnect closes the event iterator, which
  cancels the turn.
- `CoreError` renders as an RFC 7807 problem-detail response.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from fleetpilot import __version__
from fleetpilot.agents.definitions import AgentDefinitionRegistry
from fleetpilot.config import AgenticConfigService
from fleetpilot.exceptions import CoreError
from fleetpilot.model_gateway.base import LLMMessage, Role
from fleetpilot.model_gateway.router import ProviderRouter
from fleetpilot.orchestrator.engine import OrchestratorEngine
from fleetpilot.orchestrator.request import OrchestratorRequest
from fleetpilot.planning.plan import ExecutionPlan
from fleetpilot.runtime.confirmation import ConfirmationManager
from fleetpilot.runtime.registry import ToolRegistry
from fleetpilot.tools import register_builtin_tools, register_delegation_tools

logger = logging.getLogger(__name__)

GATEWAY_HOST = os.getenv("GATEWAY_HOST", "0.0.0.0")
GATEWAY_PORT = int(os.getenv("GATEWAY_PORT", "8080"))

app_state: Dict[str, Any] = {}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("fleetpilot gateway starting up...")

    config = AgenticConfigService()
    providers = ProviderRouter()
    tools = ToolRegistry()
    fleet = await register_builtin_tools(tools)
    confirmations = ConfirmationManager()
    agents = AgentDefinitionRegistry()

    engine = OrchestratorEngine(
        config=config,
        providers=providers,
        tools=tools,
        agents=agents,
        confirmations=confirmations,
    )
    await register_delegation_tools(tools, engine.background, agents)
    app_state["confirmations"] = confirmations
    app_state["engine"] = engine
    logger.info(f"Orchestrator ready with tools: {', '.join(tools.names())}")

    yield

    logger.info("fleetpilot gateway shutting down...")
    await engine.background.shutdown()
    await providers.shutdown()
    await fleet.client.aclose()
    app_state.clear()


app = FastAPI(
    title="fleetpilot",
    description="Agentic orchestration for fleet operations.",
    version=__version__,
    lifespan=lifespan,
)


# --- dependencies ---------------------------------------------------------

def get_engine() -> OrchestratorEngine:
    engine: Optional[OrchestratorEngine] = app_state.get("engine")
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Startup in progress")
    return engine


def get_confirmations() -> ConfirmationManager:
    manager: Optional[ConfirmationManager] = app_state.get("confirmations")
    if manager is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Startup in progress")
    return manager


# --- schemas ----------------------------------------------------------------

class ChatMessage(BaseModel):
    role: Role
    content: str = ""


class ChatStreamRequest(BaseModel):
    message: str = Field(min_length=1)
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    history: List[ChatMessage] = Field(default_factory=list)
    target_hosts: List[str] = Field(default_factory=list)
    provider: Optional[str] = None
    model: Optional[str] = None
    skip_planning: bool = False
    execution_plan: Optional[ExecutionPlan] = None
    plan_confirmed: bool = False

    def to_orchestrator_request(self) -> OrchestratorRequest:
        data: Dict[str, Any] = dict(
            message=self.message,
            user_id=self.user_id,
            history=[LLMMessage(role=m.role.value, content=m.content) for m in self.history],
            target_hosts=self.target_hosts,
            provider=self.provider,
            model=self.model,
            skip_planning=self.skip_planning,
            execution_plan=self.execution_plan,
            plan_confirmed=self.plan_confirmed,
        )
        if self.session_id:
            data["session_id"] = self.session_id
        return OrchestratorRequest(**data)


class ConfirmationResponse(BaseModel):
    session_id: str
    step_index: Optional[int] = None
    resolved: bool


# --- endpoints --------------------------------------------------------------

@app.get("/healthz", tags=["Health"])
def healthz() -> Dict[str, str]:
    return {"status": "ok"}


async def _sse(events: AsyncIterator[Any]) -> AsyncIterator[str]:
    try:
        async for event in events:
            yield f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"
    finally:
        await events.aclose()


@app.post("/v1/chat/stream", tags=["Chat"], summary="Run one turn and stream its events")
async def chat_stream(body: ChatStreamRequest, engine: OrchestratorEngine = Depends(get_engine)) -> StreamingResponse:
    request = body.to_orchestrator_request()
    logger.info(f"Starting turn for session {request.session_id}")
    return StreamingResponse(
        _sse(engine.process(request)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Session-ID": request.session_id},
    )


@app.post("/v1/sessions/{session_id}/plan/confirm", response_model=ConfirmationResponse, tags=["Confirmations"])
async def confirm_plan(session_id: str, manager: ConfirmationManager = Depends(get_confirmations)) -> ConfirmationResponse:
    return ConfirmationResponse(session_id=session_id, resolved=manager.confirm_plan(session_id))


@app.post("/v1/sessions/{session_id}/plan/reject", response_model=ConfirmationResponse, tags=["Confirmations"])
async def reject_plan(session_id: str, manager: ConfirmationManager = Depends(get_confirmations)) -> ConfirmationResponse:
    return ConfirmationResponse(session_id=session_id, resolved=manager.reject_plan(session_id))


@app.post(
    "/v1/sessions/{session_id}/steps/{step_index}/confirm",
    response_model=ConfirmationResponse,
    tags=["Confirmations"],
)
async def confirm_checkpoint(
    session_id: str, step_index: int, manager: ConfirmationManager = Depends(get_confirmations)
) -> ConfirmationResponse:
    return ConfirmationResponse(
        session_id=session_id,
        step_index=step_index,
        resolved=manager.confirm_checkpoint(session_id, step_index),
    )


@app.post(
    "/v1/sessions/{session_id}/steps/{step_index}/reject",
    response_model=ConfirmationResponse,
    tags=["Confirmations"],
)
async def reject_checkpoint(
    session_id: str, step_index: int, manager: ConfirmationManager = Depends(get_confirmations)
) -> ConfirmationResponse:
    return ConfirmationResponse(
        session_id=session_id,
        step_index=step_index,
        resolved=manager.reject_checkpoint(session_id, step_index),
    )


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_problem_detail(),
        media_type="application/problem+json",
    )


def run() -> None:
    """Console entry point: loads `.env`, configures logging and serves the app."""
    load_dotenv()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    uvicorn.run(app, host=GATEWAY_HOST, port=GATEWAY_PORT)
