"""Accessors for the services held on ``app.state``."""

from fastapi import Request

from .services.bank_service import BankService
from .services.event_channel import SessionRegistry
from .services.extraction_orchestrator import ExtractionOrchestrator
from .services.paper_service import PaperService
from .services.session_store import SessionStore


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_orchestrator(request: Request) -> ExtractionOrchestrator:
    return request.app.state.orchestrator


def get_queue_service(request: Request):
    return request.app.state.queue_service


def get_bank_service(request: Request) -> BankService:
    return request.app.state.bank_service


def get_paper_service(request: Request) -> PaperService:
    return request.app.state.paper_service
