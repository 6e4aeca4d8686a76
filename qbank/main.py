from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from . import config
from .database import Base, make_engine, make_session_factory
from .routers import bank_router, paper_router, session_router
from .services.bank_service import BankService
from .services.document_service import DocumentStore
from .services.event_channel import SessionRegistry
from .services.extraction_orchestrator import ExtractionOrchestrator
from .services.paper_engine import PaperEngine
from .services.paper_service import PaperService
from .services.session_store import SessionStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


def create_app(
    session_factory=None,
    index=None,
    extraction_client=None,
    documents=None,
    evaluator=None,
    enable_queue: bool = True,
) -> FastAPI:
    """
    Build the API. Collaborators that are not passed in are created from
    configuration at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting question bank service...")
        factory = session_factory
        if factory is None:
            engine = make_engine(config.DATABASE_URL)
            Base.metadata.create_all(bind=engine)
            factory = make_session_factory(engine)

        bank_index = index
        if bank_index is None:
            from .services.vector_service import ChromaQuestionBankIndex
            bank_index = ChromaQuestionBankIndex()

        client = extraction_client
        if client is None:
            from .services.extraction_client import LLMExtractionClient
            client = LLMExtractionClient()

        queue_service = None
        if enable_queue:
            try:
                from .services.queue_service import QueueService
                queue_service = QueueService()
            except Exception as e:
                logger.warning(f"Queue service initialization failed: {e}")
                logger.warning("Detached sessions will run in-process")

        store = SessionStore(factory)
        bank_service = BankService(factory, bank_index)
        app.state.session_store = store
        app.state.registry = SessionRegistry(buffer_size=config.EVENT_BUFFER_SIZE)
        app.state.orchestrator = ExtractionOrchestrator(store, documents or DocumentStore(), client)
        app.state.queue_service = queue_service
        app.state.bank_service = bank_service
        app.state.paper_service = PaperService(factory, PaperEngine(bank_index, evaluator=evaluator), bank_service)
        logger.info("Question bank service started successfully")

        yield

        logger.info("Shutting down question bank service...")
        await app.state.registry.shutdown()

    app = FastAPI(
        title="Question Bank Service",
        description="Extracts questions from PDF question banks and assembles balanced exam papers",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(session_router.router)
    app.include_router(bank_router.router)
    app.include_router(paper_router.router)

    @app.get("/")
    async def root():
        """Root endpoint with API information"""
        return {
            "message": "Question Bank Service API",
            "version": "1.0.0",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "sessions": "/sessions",
                "session_stream": "/sessions/stream",
                "session_events": "/sessions/{session_id}/events",
                "job_status": "/sessions/jobs/{job_id}/status",
                "promote": "/bank/promote",
                "bank_entries": "/bank/entries",
                "bank_search": "/bank/search",
                "bank_stats": "/bank/stats",
                "generate_paper": "/papers/generate",
                "generate_paper_v1_5": "/papers/generate-v1.5",
                "generate_paper_v2": "/papers/generate-v2",
                "papers": "/papers",
            },
        }

    @app.get("/health")
    async def health_check():
        """Global health check endpoint"""
        queue_service = getattr(app.state, "queue_service", None)
        queue_status = "not_configured"
        if queue_service is not None:
            try:
                queue_service.get_queue_info()
                queue_status = "operational"
            except Exception as e:
                logger.warning(f"Queue service check failed: {e}")
                queue_status = "unavailable"

        return {
            "status": "healthy",
            "message": "Question bank service is running",
            "services": {
                "api": "operational",
                "openai_configured": bool(config.OPENAI_API_KEY),
                "queue_service": queue_status,
            },
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "qbank.main:app",
        host=config.HOST,
        port=config.PORT,
        reload=True,
        log_level=config.LOG_LEVEL.lower()
    )
