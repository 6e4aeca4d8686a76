import asyncio
import datetime
import httpx
import logging
from typing import Dict, Any, Optional

from .. import config
from ..database import Base, make_engine, make_session_factory
from ..models.events import CompleteEvent, ErrorEvent
from .document_service import DocumentStore
from .extraction_client import LLMExtractionClient
from .extraction_orchestrator import ExtractionOrchestrator
from .session_store import SessionStore

logger = logging.getLogger(__name__)


def build_orchestrator() -> ExtractionOrchestrator:
    engine = make_engine(config.DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    return ExtractionOrchestrator(
        store=SessionStore(make_session_factory(engine)),
        documents=DocumentStore(),
        client=LLMExtractionClient(),
    )


def process_extraction_session(session_id: int) -> Dict[str, Any]:
    """
    Background job: run an upload session to completion.

    Events are written to the log instead of a stream. The job result
    summarises the terminal event and is also posted to WEBHOOK_URL.
    """
    logger.info(f"Starting detached extraction for session {session_id}")
    result = asyncio.run(_process_session_async(build_orchestrator(), session_id))
    if config.WEBHOOK_URL:
        asyncio.run(_send_webhook_notification(config.WEBHOOK_URL, result))
    return result


async def _process_session_async(orchestrator: ExtractionOrchestrator, session_id: int) -> Dict[str, Any]:
    result = {"session_id": session_id, "success": False, "total_questions": 0, "page_errors": []}
    async for event in orchestrator.stream(session_id):
        logger.debug(f"Session {session_id} event: {event.model_dump_json()}")
        if event.type == "page_error":
            result["page_errors"].append({"page_num": event.page_num, "error": event.error})
        elif isinstance(event, CompleteEvent):
            result["success"] = True
            result["total_questions"] = event.total_questions
        elif isinstance(event, ErrorEvent):
            result["error_message"] = event.message
            result["details"] = event.details
    result["timestamp"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
    return result


async def _send_webhook_notification(
    webhook_url: str,
    payload: Dict[str, Any],
    max_retries: int = 3,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    backoff: float = 1.0,
) -> bool:
    """Post the job result, retrying with exponential backoff (1s, 2s, ...)."""
    session_id = payload.get("session_id")
    async with httpx.AsyncClient(timeout=httpx.Timeout(30.0), transport=transport) as client:
        logger.info(f"Sending webhook notification to {webhook_url}")
        for attempt in range(max_retries):
            try:
                response = await client.post(webhook_url, json=payload)
                if response.status_code == 200:
                    logger.info(f"Successfully sent webhook for session {session_id}")
                    return True
                logger.warning(f"Webhook returned status {response.status_code} for session {session_id}")
            except httpx.HTTPError as e:
                logger.warning(f"Webhook attempt {attempt + 1} failed for session {session_id}: {e}")

            if attempt < max_retries - 1:
                await asyncio.sleep(backoff * 2 ** attempt)

    logger.error(f"Failed to send webhook after {max_retries} attempts for session {session_id}")
    return False
