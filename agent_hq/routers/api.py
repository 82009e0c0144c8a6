"""API routers for session discovery, watching and interactive control."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from agent_hq.dependencies import get_controller, get_repository, get_tailer
from agent_hq.errors import ExecutableNotFoundError, ForkFailedError, SessionNotFoundError, SpawnError
from agent_hq.models import Message, SendMode, Session
from agent_hq.repositories.sessions import SessionRepository
from agent_hq.services.process_controller import ProcessController
from agent_hq.sync.tailer import SessionTailer

logger = logging.getLogger("agent_hq.api")


class TakeControlRequest(BaseModel):
    workingDir: str = ""


class SendMessageRequest(BaseModel):
    text: str
    mode: SendMode = "queue"


class ForkRequest(BaseModel):
    workingDir: str = ""


class ControlResponse(BaseModel):
    sessionId: str
    success: bool
    isControlled: bool


class ForkResponse(BaseModel):
    sessionId: str
    forkedFrom: str


class WatchResponse(BaseModel):
    running: bool


def _working_dir_for(repository: SessionRepository, session_id: str, requested: str) -> str:
    if requested:
        return requested
    try:
        return repository.get_session(session_id).workingDirectory or ""
    except SessionNotFoundError:
        return ""


# ── Sessions ────────────────────────────────────────────────────────

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@sessions_router.get("", response_model=list[Session])
async def list_sessions(
    refresh: bool = Query(False, description="Re-scan the transcript tree before listing"),
    repository: SessionRepository = Depends(get_repository),
):
    if refresh:
        return await repository.discover()
    return repository.list_sessions()


@sessions_router.get("/{session_id}", response_model=Session)
async def get_session(session_id: str, repository: SessionRepository = Depends(get_repository)):
    try:
        return repository.get_session(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")


@sessions_router.get("/{session_id}/messages", response_model=list[Message])
async def get_session_messages(session_id: str, repository: SessionRepository = Depends(get_repository)):
    try:
        return await repository.get_messages(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")


# ── Control ─────────────────────────────────────────────────────────

@sessions_router.post("/{session_id}/control", response_model=ControlResponse)
async def take_control(
    session_id: str,
    body: TakeControlRequest,
    repository: SessionRepository = Depends(get_repository),
    controller: ProcessController = Depends(get_controller),
):
    working_dir = _working_dir_for(repository, session_id, body.workingDir)
    success = await controller.take_control(session_id, working_dir)
    if success:
        repository.set_controlled(session_id, True)
    return ControlResponse(
        sessionId=session_id,
        success=success,
        isControlled=controller.is_controlled(session_id),
    )


@sessions_router.delete("/{session_id}/control", response_model=ControlResponse)
async def release_control(
    session_id: str,
    repository: SessionRepository = Depends(get_repository),
    controller: ProcessController = Depends(get_controller),
):
    await controller.release(session_id)
    repository.set_controlled(session_id, False)
    return ControlResponse(sessionId=session_id, success=True, isControlled=False)


@sessions_router.post("/{session_id}/messages")
async def send_message(
    session_id: str,
    body: SendMessageRequest,
    controller: ProcessController = Depends(get_controller),
):
    delivered = await controller.send_message(session_id, body.text, body.mode)
    return {"sessionId": session_id, "delivered": delivered}


@sessions_router.post("/{session_id}/fork", response_model=ForkResponse)
async def fork_session(
    session_id: str,
    body: ForkRequest,
    repository: SessionRepository = Depends(get_repository),
    controller: ProcessController = Depends(get_controller),
):
    working_dir = _working_dir_for(repository, session_id, body.workingDir)
    try:
        new_id = await controller.fork(session_id, working_dir)
    except ExecutableNotFoundError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except ForkFailedError as exc:
        logger.error(f"Fork failed for {session_id}: {exc}")
        raise HTTPException(
            status_code=502,
            detail={"message": exc.message, "exitCode": exc.exit_code},
        )
    except SpawnError as exc:
        raise HTTPException(status_code=502, detail=exc.message)
    return ForkResponse(sessionId=new_id, forkedFrom=session_id)


# ── Watching ────────────────────────────────────────────────────────

watch_router = APIRouter(prefix="/api/watch", tags=["watch"])


@watch_router.post("/start", response_model=WatchResponse)
async def start_watching(tailer: SessionTailer = Depends(get_tailer)):
    await tailer.start()
    return WatchResponse(running=tailer.is_running)


@watch_router.post("/stop", response_model=WatchResponse)
async def stop_watching(tailer: SessionTailer = Depends(get_tailer)):
    await tailer.stop()
    return WatchResponse(running=tailer.is_running)
