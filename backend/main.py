"""FastAPI application exposing the debate endpoints."""
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from config import (
    get_log_level,
    get_orchestrator_config,
    get_pg_conn_str,
    use_ag2_normalizer,
    use_in_memory_storage,
)
from debate.agents import AG2AgentGateway
from debate.errors import InvalidProposition, InvalidTransition
from debate.normalizer import build_ag2_normalizer
from debate.persistence import InMemoryDebateStorage, PostgresDebateStorage
from debate.service import DebateSupervisor
from debate.state import InterventionType, Speaker

logging.basicConfig(
    level=get_log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Global supervisor (created on first request)
_supervisor: Optional[DebateSupervisor] = None


def build_supervisor() -> DebateSupervisor:
    """Create the supervisor with storage chosen from the environment."""
    if use_in_memory_storage():
        storage = InMemoryDebateStorage()
        logger.info("Using in-memory debate storage")
    else:
        storage = PostgresDebateStorage(get_pg_conn_str())
        logger.info("Using PostgreSQL debate storage")

    return DebateSupervisor(
        storage=storage,
        agent_factory=lambda session: AG2AgentGateway(),
        config=get_orchestrator_config(),
        normalizer=build_ag2_normalizer() if use_ag2_normalizer() else None,
    )


def get_supervisor() -> DebateSupervisor:
    global _supervisor
    if _supervisor is None:
        _supervisor = build_supervisor()
    return _supervisor


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    if _supervisor is not None:
        stopped = await _supervisor.stop_all("Server shutdown")
        logger.info(f"Stopped {stopped} running debate(s) on shutdown")
        await _supervisor.storage.close()


app = FastAPI(title="Debate Orchestrator", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class CreateDebateRequest(BaseModel):
    proposition: str
    proposition_context: Optional[Dict[str, Any]] = None
    flow_mode: Optional[Literal["auto", "step"]] = None


class StopDebateRequest(BaseModel):
    reason: Optional[str] = None


class InterventionRequest(BaseModel):
    type: InterventionType
    content: str = Field(..., min_length=1)
    directed_to: Optional[Speaker] = None


def _http_error(exc: Exception) -> HTTPException:
    """Map debate errors onto HTTP status codes."""
    if isinstance(exc, InvalidProposition):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, InvalidTransition):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=404, detail=str(exc))
    logger.exception("Unhandled debate error: %s", exc)
    return HTTPException(status_code=500, detail="Internal server error")


@app.post("/debates", status_code=201)
async def create_debate(
    req: CreateDebateRequest,
    supervisor: DebateSupervisor = Depends(get_supervisor),
) -> dict[str, Any]:
    """Create a debate and start running it in the background."""
    try:
        session = await supervisor.create_debate(req.proposition, req.proposition_context, req.flow_mode)
        await supervisor.start_debate(session["id"])
        return await supervisor.get_session(session["id"])
    except Exception as exc:
        raise _http_error(exc) from exc


@app.get("/debates")
async def list_running_debates(supervisor: DebateSupervisor = Depends(get_supervisor)) -> dict[str, list[str]]:
    return {"running": supervisor.running_debate_ids()}


@app.get("/debates/{debate_id}")
async def get_debate(debate_id: str, supervisor: DebateSupervisor = Depends(get_supervisor)) -> dict[str, Any]:
    try:
        return await supervisor.get_session(debate_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/debates/{debate_id}/pause")
async def pause_debate(debate_id: str, supervisor: DebateSupervisor = Depends(get_supervisor)) -> dict[str, Any]:
    try:
        return await supervisor.pause(debate_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/debates/{debate_id}/resume")
async def resume_debate(debate_id: str, supervisor: DebateSupervisor = Depends(get_supervisor)) -> dict[str, Any]:
    try:
        return await supervisor.resume(debate_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/debates/{debate_id}/stop")
async def stop_debate(
    debate_id: str,
    req: Optional[StopDebateRequest] = None,
    supervisor: DebateSupervisor = Depends(get_supervisor),
) -> dict[str, Any]:
    try:
        return await supervisor.stop(debate_id, req.reason if req else None)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/debates/{debate_id}/continue")
async def continue_debate(debate_id: str, supervisor: DebateSupervisor = Depends(get_supervisor)) -> dict[str, bool]:
    """Release a step-mode debate waiting after its last utterance."""
    try:
        return {"continued": supervisor.continue_debate(debate_id)}
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/debates/{debate_id}/interventions")
async def submit_intervention(
    debate_id: str,
    req: InterventionRequest,
    supervisor: DebateSupervisor = Depends(get_supervisor),
) -> dict[str, Any]:
    try:
        return await supervisor.submit_intervention(debate_id, req.type, req.content, req.directed_to)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.get("/debates/{debate_id}/transcript")
async def get_transcript(debate_id: str, supervisor: DebateSupervisor = Depends(get_supervisor)) -> dict[str, Any]:
    try:
        return await supervisor.get_transcript(debate_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.get("/debates/{debate_id}/stream")
async def stream_debate(debate_id: str, supervisor: DebateSupervisor = Depends(get_supervisor)):
    """Server-Sent Events for a live debate."""
    try:
        await supervisor.get_session(debate_id)
    except Exception as exc:
        raise _http_error(exc) from exc

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for event in supervisor.stream_events(debate_id):
                yield f"data: {json.dumps(event, default=str)}\n\n"
        except Exception as e:
            error_msg = str(e) or f"{type(e).__name__}: {repr(e)}"
            logger.exception("Error during streaming: %s", error_msg)
            yield f"data: {json.dumps({'type': 'error', 'message': error_msg})}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@app.get("/storage-info")
async def get_storage_info() -> dict[str, str]:
    """Return whether debates are kept in memory or in PostgreSQL."""
    mode = "memory" if use_in_memory_storage() else "postgres"
    return {
        "mode": mode,
        "persistent": str(mode == "postgres").lower(),
        "description": (
            "In-memory storage (debates will be lost on restart)"
            if mode == "memory"
            else "PostgreSQL database (debates persist across restarts)"
        ),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
