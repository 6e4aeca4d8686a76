from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
import logging

from ..auth_bearer import CurrentUser, get_current_user
from ..dependencies import get_paper_service
from ..models.schemas import (
    GeneratedPaperResponse, PageMeta, PaperListResponse, PaperRequest, PaperResponse, PaperSaveRequest, PaperUpdate,
)
from ..services.errors import InvalidRequestError, PaperNotFound
from ..services.paper_service import PaperService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/papers", tags=["Papers"])


async def _generate(paper_service: PaperService, request: PaperRequest, model_version: str) -> GeneratedPaperResponse:
    try:
        return await paper_service.generate(request, model_version)
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error generating {model_version} paper for {request.subject}: {e}")
        raise HTTPException(status_code=500, detail=f"Paper generation failed: {str(e)}")


@router.post("/generate", response_model=GeneratedPaperResponse)
async def generate_paper(
    request: PaperRequest,
    user: CurrentUser = Depends(get_current_user),
    paper_service: PaperService = Depends(get_paper_service),
):
    """Single broad retrieval (v1)"""
    return await _generate(paper_service, request, "v1")


@router.post("/generate-v1.5", response_model=GeneratedPaperResponse)
async def generate_paper_v1_5(
    request: PaperRequest,
    user: CurrentUser = Depends(get_current_user),
    paper_service: PaperService = Depends(get_paper_service),
):
    """Retrieval diversified over the bank's topic/tag permutations"""
    return await _generate(paper_service, request, "v1.5")


@router.post("/generate-v2", response_model=GeneratedPaperResponse)
async def generate_paper_v2(
    request: PaperRequest,
    user: CurrentUser = Depends(get_current_user),
    paper_service: PaperService = Depends(get_paper_service),
):
    """Keyword-diversified retrieval that stops once the paper scores well enough"""
    return await _generate(paper_service, request, "v2")


@router.post("", response_model=PaperResponse, status_code=201)
def save_paper(
    request: PaperSaveRequest,
    user: CurrentUser = Depends(get_current_user),
    paper_service: PaperService = Depends(get_paper_service),
):
    try:
        return PaperResponse.model_validate(paper_service.save(request, created_by=user.id))
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error saving paper '{request.title}': {e}")
        raise HTTPException(status_code=500, detail=f"Failed to save paper: {str(e)}")


@router.get("", response_model=PaperListResponse)
def list_papers(
    status: Optional[str] = None,
    page: int = Query(1),
    limit: int = Query(20),
    user: CurrentUser = Depends(get_current_user),
    paper_service: PaperService = Depends(get_paper_service),
):
    try:
        result = paper_service.list(
            status=status,
            page=page,
            limit=limit,
            created_by=None if user.role == "admin" else user.id,
        )
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return PaperListResponse(
        data=[PaperResponse.model_validate(p) for p in result.items],
        meta=PageMeta(page=result.page, limit=result.limit, total=result.total, total_pages=result.total_pages),
    )


@router.get("/{paper_id}", response_model=PaperResponse)
def get_paper(
    paper_id: int,
    user: CurrentUser = Depends(get_current_user),
    paper_service: PaperService = Depends(get_paper_service),
):
    try:
        return PaperResponse.model_validate(paper_service.get(paper_id))
    except PaperNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.patch("/{paper_id}", response_model=PaperResponse)
def update_paper(
    paper_id: int,
    request: PaperUpdate,
    user: CurrentUser = Depends(get_current_user),
    paper_service: PaperService = Depends(get_paper_service),
):
    """Edit a saved paper's details, question list or status"""
    try:
        return PaperResponse.model_validate(paper_service.update(paper_id, request))
    except PaperNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating paper {paper_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to update paper: {str(e)}")


@router.delete("/{paper_id}")
def delete_paper(
    paper_id: int,
    user: CurrentUser = Depends(get_current_user),
    paper_service: PaperService = Depends(get_paper_service),
):
    try:
        paper_service.delete(paper_id)
        return {"success": True, "message": f"Paper {paper_id} deleted"}
    except PaperNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{paper_id}/duplicate", response_model=PaperResponse, status_code=201)
def duplicate_paper(
    paper_id: int,
    user: CurrentUser = Depends(get_current_user),
    paper_service: PaperService = Depends(get_paper_service),
):
    """Copy a paper as a new draft owned by the caller"""
    try:
        return PaperResponse.model_validate(paper_service.duplicate(paper_id, created_by=user.id))
    except PaperNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
