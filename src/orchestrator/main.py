"""Orchestrator - FastAPI Application.

The Orchestrator provides:
- Chat API for the web front-end
- Retrieval chat over Bedrock knowledge bases
- Direct knowledge base queries
- Session memory management
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.auth import create_credential_provider
from shared.config import Settings, get_settings
from shared.errors import (
    AuthError,
    ChatCoreError,
    GenerationError,
    InputValidationError,
    RemoteServiceError,
    RetrievalError,
)
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.models import (
    KnowledgeBaseSummary,
    RetrievedDocument,
    RetrieveAndGenerateResult,
)
from kb_client.gateway import KnowledgeBaseGateway
from orchestrator.chains import get_chain, get_conversational_retrieval_qa_chain
from orchestrator.llm import ModelFactory
from orchestrator.memory import MemoryManager
from orchestrator.retrievers import get_knowledge_base_retriever

logger = get_logger(__name__)

ERROR_STATUS = {
    InputValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AuthError: status.HTTP_401_UNAUTHORIZED,
    RetrievalError: status.HTTP_502_BAD_GATEWAY,
    GenerationError: status.HTTP_502_BAD_GATEWAY,
    RemoteServiceError: status.HTTP_502_BAD_GATEWAY,
}


# Request/Response Models
class ChatRequest(BaseModel):
    """Chat request from frontend."""
    message: str = Field(..., description="User message")
    session_id: Optional[str] = Field(default=None, description="Existing session ID")


class KnowledgeBaseChatRequest(ChatRequest):
    """Retrieval chat request over one knowledge base."""
    knowledge_base_id: str
    return_source_documents: Optional[bool] = None


class ChatResponse(BaseModel):
    """Chat response to frontend."""
    session_id: str
    response: str
    source_documents: Optional[list[RetrievedDocument]] = None


class QueryRequest(BaseModel):
    """Direct knowledge base query."""
    query: str
    session_id: Optional[str] = None


class KnowledgeBaseListResponse(BaseModel):
    """List of knowledge bases."""
    knowledge_bases: list[KnowledgeBaseSummary]


class RetrieveResponse(BaseModel):
    """Documents from a direct retrieve."""
    documents: list[RetrievedDocument]


class HealthResponse(BaseModel):
    """Health check response."""
    model_config = ConfigDict(protected_namespaces=())

    status: str
    model_id: str
    session_count: int


class Services:
    """Components shared by all requests."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.credentials = create_credential_provider(settings.aws)
        self.models = ModelFactory(settings.model, settings.aws, self.credentials)
        self.memory = MemoryManager(
            max_turns=settings.api.max_turns,
            session_ttl_minutes=settings.api.session_ttl_minutes
        )
        self.gateway = KnowledgeBaseGateway(
            self.credentials,
            region=settings.aws.region,
            model_arn=settings.retrieval.generation_model_arn,
            number_of_results=settings.retrieval.direct_retrieve_k
        )


async def cleanup_sessions_task(manager: MemoryManager, interval: int = 300):
    """Background task to clean up expired sessions."""
    while True:
        await asyncio.sleep(interval)
        try:
            await manager.cleanup_expired()
        except Exception as e:
            logger.error("Session cleanup failed", error=str(e))


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create the FastAPI application; settings default to get_settings()."""
    app_settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        setup_logging(
            app_settings.log_level,
            json_output=app_settings.environment == "production",
            library_log_level=app_settings.library_log_level
        )

        logger.info("Starting Orchestrator", model_id=app_settings.model.model_id)
        app.state.services = Services(app_settings)

        cleanup_task = asyncio.create_task(cleanup_sessions_task(
            app.state.services.memory,
            app_settings.api.cleanup_interval_seconds
        ))

        yield

        logger.info("Shutting down Orchestrator")
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass

    app = FastAPI(
        title="Bedrock Chat Orchestrator",
        description="Conversation and retrieval chat over Amazon Bedrock",
        version="0.1.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        clear_context()
        bind_context(request_id=str(uuid.uuid4()), path=request.url.path)
        return await call_next(request)

    @app.exception_handler(ChatCoreError)
    async def chat_core_error_handler(request: Request, exc: ChatCoreError):
        status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
        logger.error("Request failed", error_type=type(exc).__name__, error=str(exc))
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "detail": str(exc)}
        )

    def services(request: Request) -> Services:
        return request.app.state.services

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(request: Request):
        """Health check endpoint."""
        svc = services(request)
        return HealthResponse(
            status="healthy",
            model_id=svc.settings.model.model_id,
            session_count=svc.memory.get_stats()["total_sessions"]
        )

    @app.post("/chat", response_model=ChatResponse, tags=["Chat"])
    async def chat(body: ChatRequest, request: Request):
        """Plain chat with running history."""
        svc = services(request)
        session_id = body.session_id or str(uuid.uuid4())
        bind_context(session_id=session_id)

        async with svc.memory.session_lock(session_id):
            memory = await svc.memory.get_or_create(session_id)
            model = await svc.models.get_model()
            chain = get_chain(model, memory)
            result = await chain.call({"input": body.message})

        return ChatResponse(session_id=session_id, response=result["response"])

    @app.post("/chat/knowledge-base", response_model=ChatResponse, tags=["Chat"])
    async def chat_knowledge_base(body: KnowledgeBaseChatRequest, request: Request):
        """Retrieval-augmented chat over a knowledge base."""
        svc = services(request)
        session_id = body.session_id or str(uuid.uuid4())
        bind_context(session_id=session_id, knowledge_base_id=body.knowledge_base_id)

        return_sources = body.return_source_documents
        if return_sources is None:
            return_sources = svc.settings.retrieval.return_source_documents

        async with svc.memory.session_lock(session_id):
            memory = await svc.memory.get_or_create(session_id)
            model = await svc.models.get_model()
            retriever = await get_knowledge_base_retriever(
                body.knowledge_base_id, svc.credentials, svc.settings.aws
            )
            chain = await get_conversational_retrieval_qa_chain(
                model,
                retriever,
                memory,
                retrieval=svc.settings.retrieval,
                persona=svc.settings.persona,
                return_source_documents=return_sources
            )
            result = await chain.call({"question": body.message})

        return ChatResponse(
            session_id=session_id,
            response=result["text"],
            source_documents=result.get("source_documents")
        )

    @app.get("/knowledge-bases", response_model=KnowledgeBaseListResponse, tags=["Knowledge Bases"])
    async def list_knowledge_bases(request: Request):
        """List knowledge bases; transient service errors are retried."""
        svc = services(request)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(svc.settings.api.kb_list_retry_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(RemoteServiceError),
            reraise=True
        ):
            with attempt:
                knowledge_bases = await svc.gateway.list_knowledge_bases()

        return KnowledgeBaseListResponse(knowledge_bases=knowledge_bases)

    @app.post(
        "/knowledge-bases/{knowledge_base_id}/retrieve-and-generate",
        response_model=RetrieveAndGenerateResult,
        tags=["Knowledge Bases"]
    )
    async def retrieve_and_generate(knowledge_base_id: str, body: QueryRequest, request: Request):
        """Managed retrieve-and-generate; pass session_id to continue a conversation."""
        return await services(request).gateway.retrieve_and_generate(
            body.session_id, knowledge_base_id, body.query
        )

    @app.post(
        "/knowledge-bases/{knowledge_base_id}/retrieve",
        response_model=RetrieveResponse,
        tags=["Knowledge Bases"]
    )
    async def retrieve(knowledge_base_id: str, body: QueryRequest, request: Request):
        """Retrieve documents without generation."""
        documents = await services(request).gateway.retrieve(knowledge_base_id, body.query)
        return RetrieveResponse(documents=documents)

    @app.delete("/sessions/{session_id}", tags=["Sessions"])
    async def delete_session(session_id: str, request: Request):
        """Forget a session's memory."""
        deleted = await services(request).memory.delete(session_id)
        if not deleted:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Session not found"
            )
        return {"status": "deleted"}

    return app


app = create_app()


def main():
    """Run the Orchestrator server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
