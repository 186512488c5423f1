"""
banking_orchestrator/app.py

FastAPI application for the banking conversation orchestrator.
Main entry point for the chat API.

Conversations live in process memory only: restarting the service forgets
every conversation.
"""

from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .agent.orchestrator import ConversationOrchestrator
from .clients.mock_bank_client import MockBankClient
from .clients.rag_client import HttpRAGBackend, InMemoryRAGBackend, RAGConnector
from .config import OrchestratorSettings, load_settings
from .context.session_manager import SessionRegistry
from .errors import ConfigurationError, OrchestratorError, ValidationError
from .gemini_llm_client import GeminiLLMClient
from .logging_config import get_logger, setup_logging
from .schemas.api_models import ChatRequest, ChatResponse, DeleteResponse
from .tools.registry import build_tool_registry

logger = get_logger("banking_orchestrator.app")

API_DESCRIPTION = (
    "Multi-turn banking assistant. Conversation state is held in memory for the lifetime "
    "of the process and is not persisted."
)


async def build_orchestrator(app: FastAPI, settings: OrchestratorSettings) -> ConversationOrchestrator:
    """
    Startup wiring:
     - Gemini LLM client (absent when no API key is configured)
     - mock bank, knowledge-base connector and tool registry
     - session registry and the ConversationOrchestrator
    """
    llm_client: Optional[GeminiLLMClient] = None
    try:
        llm_client = GeminiLLMClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            embed_model=settings.gemini_embed_model,
        )
    except ConfigurationError as e:
        logger.error("%s Chat requests will fail until a key is provided.", e)

    rag: Optional[RAGConnector] = None
    if settings.rag_base_url:
        rag = RAGConnector(
            HttpRAGBackend(settings.rag_base_url, timeout=settings.tool_timeout_seconds),
            default_top_k=settings.rag_default_top_k,
            default_threshold=settings.rag_default_threshold,
        )
        logger.info("Knowledge base: remote RAG service at %s", settings.rag_base_url)
    elif llm_client is not None:
        backend = InMemoryRAGBackend(embedder=llm_client.embed)
        if settings.knowledge_base_path:
            try:
                await backend.load_markdown(settings.knowledge_base_path)
            except (OSError, OrchestratorError) as e:
                logger.exception("Failed to load knowledge base %s: %s", settings.knowledge_base_path, e)
        rag = RAGConnector(
            backend,
            default_top_k=settings.rag_default_top_k,
            default_threshold=settings.rag_default_threshold,
        )
        logger.info("Knowledge base: in-memory index with %d section(s)", len(backend))
    app.state.rag = rag

    tools = build_tool_registry(MockBankClient(), rag, timeout=settings.tool_timeout_seconds)
    logger.info("Startup: registered %d tools: %s", len(tools.names), ", ".join(tools.names))

    return ConversationOrchestrator(
        llm_client,
        tools,
        sessions=SessionRegistry(settings.session_timeout_minutes),
        intent_confidence_threshold=settings.intent_confidence_threshold,
        model_timeout_seconds=settings.model_timeout_seconds,
        max_tool_rounds=settings.max_tool_rounds,
        busy_policy=settings.session_busy_policy,
    )


def create_app(
    settings: Optional[OrchestratorSettings] = None,
    orchestrator: Optional[ConversationOrchestrator] = None,
) -> FastAPI:
    settings = settings or load_settings()

    app = FastAPI(title="Banking Conversation Orchestrator", version="1.0.0", description=API_DESCRIPTION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.rag = None

    @app.on_event("startup")
    async def startup_event():
        if app.state.orchestrator is None:
            setup_logging(settings.log_dir, settings.log_level)
            app.state.orchestrator = await build_orchestrator(app, settings)
        logger.info("Orchestrator started. Gemini model=%s", settings.gemini_model)
        logger.info("=" * 80)

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("=" * 80)
        logger.info("ORCHESTRATOR SHUTDOWN")
        orch: Optional[ConversationOrchestrator] = app.state.orchestrator
        if orch is not None:
            await orch.sessions.teardown()
        rag: Optional[RAGConnector] = app.state.rag
        if rag is not None:
            try:
                await rag.close()
            except Exception as e:
                logger.exception("Error closing RAG connector: %s", e)
        logger.info("Orchestrator shutdown complete.")
        logger.info("=" * 80)

    @app.get("/")
    async def root():
        return {"message": "Banking Conversation Orchestrator API", "status": "running"}

    @app.get("/api/health")
    async def health_check():
        return {"status": "healthy"}

    @app.post("/api/chat", response_model=ChatResponse)
    async def chat(request: ChatRequest):
        logger.info("API Request: POST /api/chat | conversation=%s user=%s", request.conversation_id, request.user_id)
        if not request.conversation_id or not request.user_id or not request.message:
            return JSONResponse(status_code=400, content={"error": "conversationId, userId and message are required"})

        orch: ConversationOrchestrator = app.state.orchestrator
        try:
            result = await orch.process_message(request.conversation_id, request.user_id, request.message)
        except ValidationError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        except ConfigurationError as e:
            logger.error("Chat request rejected: %s", e)
            return JSONResponse(status_code=500, content={"error": "API key not configured"})
        except Exception as e:
            logger.exception("Chat request failed: %s", e)
            return JSONResponse(status_code=500, content={"error": "Internal server error"})

        return ChatResponse(response=result.response, context=result.context.model_dump(mode="json"))

    @app.delete("/api/chat", response_model=DeleteResponse)
    async def delete_chat(conversationId: Optional[str] = None):
        logger.info("API Request: DELETE /api/chat | conversation=%s", conversationId)
        if not conversationId or not conversationId.strip():
            return JSONResponse(status_code=400, content={"error": "conversationId is required"})
        orch: ConversationOrchestrator = app.state.orchestrator
        await orch.clear_conversation(conversationId)
        return DeleteResponse(success=True)

    @app.get("/api/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str) -> Dict[str, Any]:
        orch: ConversationOrchestrator = app.state.orchestrator
        snapshot = orch.get_conversation(conversation_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return snapshot.model_dump(mode="json")

    return app


app = create_app()
