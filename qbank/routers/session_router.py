from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from typing import List, Optional
import asyncio
import json
import logging
import os

from ..auth_bearer import CurrentUser, get_current_user
from ..dependencies import get_orchestrator, get_queue_service, get_registry, get_session_store
from ..models.events import to_sse
from ..models.schemas import (
    ExtractedQuestionResponse, PageMeta, SessionCreateRequest, SessionListResponse,
    JobStatusResponse, SessionResponse, SessionStartedResponse,
)
from ..services.errors import InvalidRequestError, SessionNotFound, StreamBusyError, StreamOverflowError
from ..services.event_channel import ActiveSession, SessionRegistry
from ..services.extraction_orchestrator import ExtractionOrchestrator
from ..services.session_store import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["Sessions"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def _create_session(store: SessionStore, request: SessionCreateRequest, user: CurrentUser):
    try:
        return store.create(
            file_name=request.file_name or os.path.basename(request.document_ref) or "document.pdf",
            document_ref=request.document_ref,
            subject=request.subject,
            start_page=request.start_page,
            num_pages=request.num_pages,
            created_by=user.id,
        )
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _launch(registry: SessionRegistry, orchestrator: ExtractionOrchestrator, session_id: int) -> ActiveSession:
    active = registry.open(session_id)

    async def runner(a: ActiveSession):
        await orchestrator.run(a.session_id, a.channel, a.cancel_event)

    registry.launch(active, runner)
    return active


def _sse_stream(registry: SessionRegistry, session_id: int, events):
    async def generate():
        try:
            async for event in events:
                yield to_sse(event)
        except StreamOverflowError as e:
            logger.warning(f"Stream consumer for session {session_id} dropped: {e}")
            yield f"data: {json.dumps({'type': 'stream_error', 'message': str(e)})}\n\n"
        finally:
            registry.release(session_id)

    return StreamingResponse(generate(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("", response_model=SessionStartedResponse, status_code=202)
async def create_session(
    request: SessionCreateRequest,
    detached: bool = False,
    user: CurrentUser = Depends(get_current_user),
    store: SessionStore = Depends(get_session_store),
    registry: SessionRegistry = Depends(get_registry),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
    queue_service=Depends(get_queue_service),
):
    """Create an upload session and start extracting it"""
    try:
        session = await asyncio.to_thread(_create_session, store, request, user)

        if detached and queue_service is not None:
            try:
                job_id = queue_service.enqueue_extraction(session.id)
                return SessionStartedResponse(
                    session_id=session.id,
                    status="queued",
                    message="Extraction queued for background processing",
                    job_id=job_id,
                )
            except Exception as e:
                logger.warning(f"Queueing session {session.id} failed, running in-process: {e}")

        _launch(registry, orchestrator, session.id)
        return SessionStartedResponse(
            session_id=session.id,
            status=session.status,
            message="Extraction started",
            events_url=f"/sessions/{session.id}/events",
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating upload session: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start session: {str(e)}")


@router.post("/stream")
async def create_session_stream(
    request: SessionCreateRequest,
    user: CurrentUser = Depends(get_current_user),
    store: SessionStore = Depends(get_session_store),
    registry: SessionRegistry = Depends(get_registry),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
):
    """Create an upload session and stream its events in the response"""
    session = await asyncio.to_thread(_create_session, store, request, user)
    # the task only starts at the next await, so the subscription precedes the first event
    active = _launch(registry, orchestrator, session.id)
    return _sse_stream(registry, session.id, active.channel.subscribe())


@router.get("/{session_id}/events")
async def session_events(
    session_id: int,
    user: CurrentUser = Depends(get_current_user),
    store: SessionStore = Depends(get_session_store),
    registry: SessionRegistry = Depends(get_registry),
):
    """Attach to the live event stream of a running session"""
    active = registry.get(session_id)
    if active is None:
        try:
            session = await asyncio.to_thread(store.get, session_id)
        except SessionNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        raise HTTPException(
            status_code=409,
            detail=f"Session {session_id} has no live event stream (status: {session.status})",
        )
    try:
        events = active.channel.subscribe()
    except StreamBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _sse_stream(registry, session_id, events)


@router.post("/{session_id}/cancel")
async def cancel_session(
    session_id: int,
    user: CurrentUser = Depends(get_current_user),
    store: SessionStore = Depends(get_session_store),
    registry: SessionRegistry = Depends(get_registry),
):
    """Request cooperative cancellation; the current page is finished first"""
    try:
        session = await asyncio.to_thread(store.get, session_id)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    active = registry.get(session_id)
    if session.status in ("completed", "failed") or active is None or active.task.done():
        raise HTTPException(status_code=409, detail=f"Session {session_id} is not running (status: {session.status})")

    registry.cancel(session_id)
    return {"success": True, "session_id": session_id, "message": "Cancellation requested"}


@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
def get_job_status(
    job_id: str,
    user: CurrentUser = Depends(get_current_user),
    queue_service=Depends(get_queue_service),
):
    """Status of a detached extraction job"""
    try:
        if queue_service is None:
            raise HTTPException(status_code=503, detail="Queue service is not available")

        status_info = queue_service.get_job_status(job_id)
        if not status_info:
            raise HTTPException(status_code=404, detail="Job not found")

        return JobStatusResponse(**status_info)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error getting job status for {job_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to get job status: {str(e)}")


@router.get("", response_model=SessionListResponse)
def list_sessions(
    status: Optional[str] = None,
    page: int = Query(1),
    limit: int = Query(20),
    user: CurrentUser = Depends(get_current_user),
    store: SessionStore = Depends(get_session_store),
):
    """Upload history, newest first. Teachers see their own sessions, admins see all."""
    try:
        result = store.list(
            status=status,
            page=page,
            limit=limit,
            created_by=None if user.role == "admin" else user.id,
        )
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return SessionListResponse(
        data=[SessionResponse.model_validate(s) for s in result.items],
        meta=PageMeta(page=result.page, limit=result.limit, total=result.total, total_pages=result.total_pages),
    )


@router.get("/{session_id}", response_model=SessionResponse)
def get_session(
    session_id: int,
    user: CurrentUser = Depends(get_current_user),
    store: SessionStore = Depends(get_session_store),
):
    try:
        return SessionResponse.model_validate(store.get(session_id))
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{session_id}/questions", response_model=List[ExtractedQuestionResponse])
def get_session_questions(
    session_id: int,
    user: CurrentUser = Depends(get_current_user),
    store: SessionStore = Depends(get_session_store),
):
    try:
        return [ExtractedQuestionResponse.model_validate(q) for q in store.questions_of(session_id)]
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
