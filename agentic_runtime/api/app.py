"""FastAPI application exposing the agent over HTTP with an SSE event stream."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.responses import StreamingResponse

from ..errors import ConfigError, TurnInProgressError
from ..events import EventStream, EventType, QueueSink, encode_sse
from ..orchestrator import Agent, WorkspaceContext
from ..provider_errors import ProviderError
from .models import (
    CancelResponse,
    ErrorResponse,
    PlanModeRequest,
    PlanModeResponse,
    ProcessList,
    StreamRequest,
)

logger = logging.getLogger(__name__)


def create_app(agent: Agent) -> FastAPI:
    app = FastAPI(title="Agentic Runtime", version="0.1.0")

    def get_agent() -> Agent:
        return agent

    def resolve_workspace(svc: Agent, workspace: Optional[str]) -> WorkspaceContext:
        try:
            return svc.get_or_create_workspace_context(workspace)
        except ConfigError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    async def run_turn(svc: Agent, payload: StreamRequest, sink: QueueSink) -> None:
        events = EventStream(sink)
        try:
            await svc.respond(payload.content, sink, workspace=payload.workspace)
        except ProviderError as exc:
            logger.warning("provider %s error: %s", exc.provider, exc)
            await events.emit(EventType.PROVIDER_ERROR, exc.to_payload())
        except TurnInProgressError as exc:
            await events.emit(EventType.ERROR, {"message": str(exc)})
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("stream request failed")
            await events.emit(EventType.ERROR, {"message": str(exc)})
        else:
            await events.emit(EventType.COMPLETE, {"status": "done"})
        finally:
            await sink.close()

    async def event_payloads(svc: Agent, payload: StreamRequest) -> AsyncIterator[bytes]:
        sink = QueueSink()
        task = asyncio.ensure_future(run_turn(svc, payload, sink))
        try:
            async for event in sink.drain():
                yield encode_sse(event)
        finally:
            if not task.done():
                svc.cancel_request()
                task.cancel()

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post(
        "/api/stream",
        responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    )
    async def stream(payload: StreamRequest, svc: Agent = Depends(get_agent)):
        if not payload.content:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="content is required")
        if svc.has_in_flight_request():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="another request is already running")
        resolve_workspace(svc, payload.workspace)
        return StreamingResponse(
            event_payloads(svc, payload),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/api/cancel", response_model=CancelResponse)
    async def cancel(svc: Agent = Depends(get_agent)):
        return CancelResponse(canceled=svc.cancel_request())

    @app.get("/api/state", responses={400: {"model": ErrorResponse}})
    async def state(workspace: Optional[str] = None, svc: Agent = Depends(get_agent)) -> Dict[str, Any]:
        context = resolve_workspace(svc, workspace)
        return svc.snapshot(context.root)

    @app.post("/api/plan-mode", response_model=PlanModeResponse, responses={400: {"model": ErrorResponse}})
    async def plan_mode(payload: PlanModeRequest, svc: Agent = Depends(get_agent)):
        context = resolve_workspace(svc, payload.workspace)
        svc.set_plan_mode(context.root, payload.enabled)
        return PlanModeResponse(plan_mode=context.plan_mode, workspace=context.root)

    @app.get("/api/processes", response_model=ProcessList, responses={400: {"model": ErrorResponse}})
    async def processes(workspace: Optional[str] = None, svc: Agent = Depends(get_agent)):
        context = resolve_workspace(svc, workspace)
        jobs = [job.view() for job in context.toolbox.supervisor.list_jobs()]
        return ProcessList(workspace=context.root, jobs=jobs)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await agent.shutdown()

    return app
