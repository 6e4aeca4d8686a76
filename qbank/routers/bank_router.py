from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
import logging

from ..auth_bearer import CurrentUser, get_current_user
from ..dependencies import get_bank_service
from ..models.schemas import (
    BankEntryCreate, BankEntryListResponse, BankEntryResponse, BankEntryUpdate, BankStatsResponse,
    FilterOptionsResponse, PageMeta, PromoteRequest, PromotionResponse, SimilarEntryResponse,
    SimilarSearchRequest, SimilarSearchResponse,
)
from ..services.bank_service import BankService
from ..services.errors import EntryNotFound, InvalidRequestError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bank", tags=["Question Bank"])


@router.post("/promote", response_model=PromotionResponse)
async def promote_questions(
    request: PromoteRequest,
    user: CurrentUser = Depends(get_current_user),
    bank: BankService = Depends(get_bank_service),
):
    """Move extracted questions into the indexed question bank"""
    try:
        results = await bank.promote(request, created_by=user.id)
        return PromotionResponse(data=results)
    except EntryNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error promoting questions {request.question_ids}: {e}")
        raise HTTPException(status_code=500, detail=f"Promotion failed: {str(e)}")


@router.get("/entries", response_model=BankEntryListResponse)
def browse_entries(
    subject: Optional[str] = None,
    chapter: Optional[str] = None,
    difficulty: Optional[str] = None,
    tag: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1),
    limit: int = Query(20),
    user: CurrentUser = Depends(get_current_user),
    bank: BankService = Depends(get_bank_service),
):
    """Browse the bank, newest first"""
    try:
        result = bank.browse(
            subject=subject, chapter=chapter, difficulty=difficulty, tag=tag, search=search, page=page, limit=limit,
        )
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return BankEntryListResponse(
        data=[BankEntryResponse.model_validate(e) for e in result.items],
        meta=PageMeta(page=result.page, limit=result.limit, total=result.total, total_pages=result.total_pages),
    )


@router.post("/search", response_model=SimilarSearchResponse)
async def search_similar(
    request: SimilarSearchRequest,
    user: CurrentUser = Depends(get_current_user),
    bank: BankService = Depends(get_bank_service),
):
    """Semantic search by free text, or for questions similar to an existing entry"""
    try:
        matches = await bank.search_similar(
            query=request.query,
            entry_id=request.entry_id,
            subject=request.subject,
            difficulty=request.difficulty,
            top_k=request.top_k,
        )
        return SimilarSearchResponse(data=[
            SimilarEntryResponse(
                **BankEntryResponse.model_validate(entry).model_dump(), similarity_score=round(score, 4)
            )
            for entry, score in matches
        ])
    except EntryNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error searching the bank: {e}")
        raise HTTPException(status_code=500, detail=f"Search failed: {str(e)}")


@router.get("/filter-options", response_model=FilterOptionsResponse)
def get_filter_options(
    user: CurrentUser = Depends(get_current_user),
    bank: BankService = Depends(get_bank_service),
):
    return FilterOptionsResponse(**bank.filter_options())


@router.get("/stats", response_model=BankStatsResponse)
def get_stats(
    user: CurrentUser = Depends(get_current_user),
    bank: BankService = Depends(get_bank_service),
):
    return BankStatsResponse(**bank.stats())


@router.post("/entries", response_model=BankEntryResponse, status_code=201)
async def create_entry(
    request: BankEntryCreate,
    user: CurrentUser = Depends(get_current_user),
    bank: BankService = Depends(get_bank_service),
):
    try:
        return BankEntryResponse.model_validate(await bank.create(request, created_by=user.id))
    except InvalidRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating bank entry: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to create entry: {str(e)}")


@router.patch("/entries/{entry_id}", response_model=BankEntryResponse)
async def update_entry(
    entry_id: int,
    request: BankEntryUpdate,
    user: CurrentUser = Depends(get_current_user),
    bank: BankService = Depends(get_bank_service),
):
    """Edit an entry's classification; text and options are immutable"""
    try:
        return BankEntryResponse.model_validate(await bank.update(entry_id, request))
    except EntryNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating bank entry {entry_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to update entry: {str(e)}")


@router.delete("/entries/{entry_id}")
async def delete_entry(
    entry_id: int,
    user: CurrentUser = Depends(get_current_user),
    bank: BankService = Depends(get_bank_service),
):
    """Remove an entry from the bank and its index"""
    try:
        await bank.delete(entry_id)
        return {"success": True, "message": f"Bank entry {entry_id} deleted"}
    except EntryNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error deleting bank entry {entry_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to delete entry: {str(e)}")


@router.get("/entries/{entry_id}", response_model=BankEntryResponse)
def get_entry(
    entry_id: int,
    user: CurrentUser = Depends(get_current_user),
    bank: BankService = Depends(get_bank_service),
):
    try:
        return BankEntryResponse.model_validate(bank.get(entry_id))
    except EntryNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
