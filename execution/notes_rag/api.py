"""
FastAPI Backend for Notes RAG

REST endpoints for note upload, file management, chats and the streaming
agent chat. Every endpoint except /api/health requires a tenant, resolved
from a session JWT (Authorization: Bearer) or an API key (x-api-key).

Run with: uvicorn execution.notes_rag.api:app --host 0.0.0.0 --port 8000
"""

import os
import time
import logging
import threading
from uuid import UUID
from typing import Optional
from collections import defaultdict
from contextlib import closing

from fastapi import FastAPI, HTTPException, UploadFile, File, Depends, Header, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv

from . import __version__
from .agent import NotesAgent, validate_messages, MODEL_ERROR_NOTICE
from .api_models import (
    ChatRequest,
    UploadResponse,
    FileInfo, FilesResponse, DeleteFilesResponse,
    ChatCreate, ChatInfo, MessageCreate, MessageInfo,
    ReferencedFilesResponse,
    HealthResponse,
)
from .auth import verify_session_jwt
from .citation import collect_cited_names, group_referenced_files, source_name_variants
from .ingestion import UploadValidationError, validate_upload
from .tools import NotesToolkit

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Notes RAG API",
    description="Agentic retrieval over personal markdown notes",
    version=__version__,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Error responses: every error body is {"error": "..."}
# =============================================================================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return JSONResponse(status_code=400, content={"error": "; ".join(problems) or "Invalid request"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {type(exc).__name__}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# =============================================================================
# Rate Limiting
# =============================================================================

class RateLimiter:
    """Simple in-memory rate limiter using sliding window."""

    def __init__(self, max_requests: int = 60, window_seconds: int = 60):
        self._max_requests = max_requests
        self._window = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def is_allowed(self, key: str) -> bool:
        """Check if request is allowed for the given key."""
        now = time.time()
        window_start = now - self._window

        with self._lock:
            self._requests[key] = [t for t in self._requests[key] if t > window_start]
            if len(self._requests[key]) >= self._max_requests:
                return False
            self._requests[key].append(now)
            return True


_rate_limiter = RateLimiter(
    max_requests=int(os.getenv("RATE_LIMIT_RPM", "60")),
    window_seconds=60,
)


# =============================================================================
# Service Container - lazily built, shared across requests
# =============================================================================

class ServiceContainer:
    """Singleton holding the store, embedding service, chat model and pipeline."""

    def __init__(self):
        self._store = None
        self._embeddings = None
        self._model = None
        self._pipeline = None

    def get_embeddings(self):
        if self._embeddings is None:
            from .embeddings import get_embedding_service
            self._embeddings = get_embedding_service()
        return self._embeddings

    def get_store(self):
        if self._store is None:
            from .vector_store import VectorStore
            store = VectorStore(self.get_embeddings())
            store.connect()
            store.initialize_schema()
            self._store = store
        return self._store

    def get_model(self):
        if self._model is None:
            from .llm_client import ChatModel
            self._model = ChatModel()
        return self._model

    def get_pipeline(self):
        if self._pipeline is None:
            from .ingestion import IngestionPipeline
            self._pipeline = IngestionPipeline(self.get_store())
        return self._pipeline


_container = ServiceContainer()


# =============================================================================
# Authentication dependency
# =============================================================================

def get_tenant_id(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
) -> str:
    """Resolve the requesting tenant or reject with 401."""
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        try:
            session = verify_session_jwt(token)
        except RuntimeError as e:
            logger.error(f"Session verification unavailable: {e}")
            session = None
        if session:
            return session["tenant_id"]

    if x_api_key:
        result = _container.get_store().validate_api_key(x_api_key)
        if result:
            return result["tenant_id"]

    raise HTTPException(status_code=401, detail="Unauthorized")


def check_rate_limit(tenant_id: str = Depends(get_tenant_id)) -> None:
    """FastAPI dependency that enforces rate limiting per tenant."""
    if not _rate_limiter.is_allowed(tenant_id):
        raise HTTPException(status_code=429, detail="Rate limit exceeded. Try again later.")


def _require_chat(store, chat_id: str, tenant_id: str) -> dict:
    chat = store.get_chat(chat_id, tenant_id)
    if chat is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    return chat


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    try:
        _container.get_store()
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(status="ok", version=__version__, database=db_status)


@app.post("/api/chat", dependencies=[Depends(check_rate_limit)])
def chat(request: ChatRequest, tenant_id: str = Depends(get_tenant_id)):
    """
    Streamed agent turn.

    The response body is plain text: the answer as it is generated, ending
    with the sources block when notes were cited. A failure mid-stream ends
    the body with an inline ``[Error: ...]`` notice.
    """
    store = _container.get_store()
    messages = [{"role": m.role, "content": m.content} for m in request.messages]
    chat_id = str(request.chat_id) if request.chat_id else None

    if chat_id:
        _require_chat(store, chat_id, tenant_id)
        new_message = messages[-1]
        if new_message["role"] != "user":
            raise HTTPException(status_code=400, detail="The last message must be a user message")
        prior = store.get_messages(chat_id, tenant_id)
        history = [{"role": m["role"], "content": m["content"]} for m in prior] + [new_message]
    else:
        history = messages

    try:
        history = validate_messages(history)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if chat_id:
        store.add_message(chat_id, tenant_id, "user", history[-1]["content"])

    model = _container.get_model()
    agent = NotesAgent(NotesToolkit(store, model, tenant_id), model)
    store.log_audit(tenant_id, "chat", resource=chat_id, details={"messages": len(history)})

    def generate():
        result = None
        try:
            with closing(agent.stream_turn(history)) as events:
                for event in events:
                    if event.type == "token":
                        yield event.data
                    elif event.type == "error":
                        yield f"\n\n[Error: {event.data}]"
                    elif event.type == "done":
                        result = event.data
        except Exception as e:
            logger.error(f"Chat turn failed: {type(e).__name__}: {e}")
            yield f"\n\n[Error: {MODEL_ERROR_NOTICE}]"

        if chat_id and result is not None and result.answer:
            try:
                store.add_message(
                    chat_id,
                    tenant_id,
                    "assistant",
                    result.answer,
                    sources=[s.to_dict() for s in result.sources],
                )
            except Exception as e:
                logger.error(f"Failed to save assistant message for chat {chat_id}: {e}")

    return StreamingResponse(
        generate(),
        media_type="text/plain; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


@app.post("/api/upload", response_model=UploadResponse, dependencies=[Depends(check_rate_limit)])
def upload_note(
    file: UploadFile = File(...),
    tenant_id: str = Depends(get_tenant_id),
):
    """Upload a markdown note, chunk it and index it."""
    try:
        text = validate_upload(file.filename, file.content_type, file.file.read())
    except UploadValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    source_name = os.path.basename(file.filename or "") or "untitled.md"
    store = _container.get_store()
    result = _container.get_pipeline().ingest(source_name, text, tenant_id)

    if result.total_chunks == 0:
        raise HTTPException(status_code=400, detail="File appears to be empty after processing")

    store.log_audit(
        tenant_id,
        "upload",
        resource=source_name,
        details=result.to_dict(),
    )

    if not result.success:
        raise HTTPException(
            status_code=500,
            detail=(
                f"Failed to process {source_name}: stored {result.chunks_inserted} "
                f"of {result.total_chunks} chunks before an error occurred"
            ),
        )

    return UploadResponse(
        success=True,
        file_name=source_name,
        chunks_inserted=result.chunks_inserted,
        message=f"Successfully processed {source_name} into {result.chunks_inserted} chunks",
    )


@app.get("/api/files", response_model=FilesResponse)
def list_files(tenant_id: str = Depends(get_tenant_id)):
    """List the tenant's uploaded notes, most recently updated first."""
    rows = _container.get_store().list_sources(tenant_id)
    return FilesResponse(files=[
        FileInfo(
            source=row["source"],
            file_name=row["file_name"],
            chunk_count=row["chunk_count"],
            first_uploaded=row["first_uploaded"],
            last_updated=row["last_updated"],
            embedding_ids=row["chunk_ids"],
        )
        for row in rows
    ])


@app.delete("/api/files", response_model=DeleteFilesResponse)
def delete_file(
    source: Optional[str] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
):
    """Delete every chunk of one note (tenant-isolated)."""
    if not source:
        raise HTTPException(status_code=400, detail="Source parameter is required")

    store = _container.get_store()
    try:
        deleted = store.delete_by_source(source, tenant_id)
    except Exception as e:
        logger.error(f"Delete of {source} failed: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to delete {source}")

    store.log_audit(tenant_id, "delete_source", resource=source, details={"deleted": deleted})
    return DeleteFilesResponse(
        success=True,
        deleted_count=deleted,
        source=source,
        message=f"Deleted {deleted} chunk(s) for {source}",
    )


# =============================================================================
# Chats
# =============================================================================

@app.post("/api/chats", response_model=ChatInfo)
def create_chat(body: ChatCreate, tenant_id: str = Depends(get_tenant_id)):
    return ChatInfo(**_container.get_store().create_chat(tenant_id, body.title))


@app.get("/api/chats", response_model=list[ChatInfo])
def list_chats(tenant_id: str = Depends(get_tenant_id)):
    return [ChatInfo(**c) for c in _container.get_store().list_chats(tenant_id)]


@app.delete("/api/chats/{chat_id}")
def delete_chat(chat_id: UUID, tenant_id: str = Depends(get_tenant_id)):
    if not _container.get_store().delete_chat(str(chat_id), tenant_id):
        raise HTTPException(status_code=404, detail="Chat not found")
    return {"success": True, "chatId": str(chat_id)}


@app.get("/api/chats/{chat_id}/messages", response_model=list[MessageInfo])
def get_chat_messages(chat_id: UUID, tenant_id: str = Depends(get_tenant_id)):
    store = _container.get_store()
    _require_chat(store, str(chat_id), tenant_id)
    return [MessageInfo(**m) for m in store.get_messages(str(chat_id), tenant_id)]


@app.post("/api/chats/{chat_id}/messages", response_model=MessageInfo)
def add_chat_message(chat_id: UUID, body: MessageCreate, tenant_id: str = Depends(get_tenant_id)):
    store = _container.get_store()
    message = store.add_message(str(chat_id), tenant_id, body.role, body.content, sources=body.sources)
    if message is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    return MessageInfo(**message)


@app.get("/api/chats/{chat_id}/referenced-files", response_model=ReferencedFilesResponse)
def get_referenced_files(chat_id: UUID, tenant_id: str = Depends(get_tenant_id)):
    """Notes cited in a chat, with the cited chunks flagged."""
    store = _container.get_store()
    chat_id = str(chat_id)
    _require_chat(store, chat_id, tenant_id)

    message_sources = [
        m["sources"] for m in store.get_messages(chat_id, tenant_id)
        if m["role"] == "assistant" and m.get("sources")
    ]
    names = collect_cited_names(message_sources)
    if not names:
        return ReferencedFilesResponse(files=[])

    chunks = store.get_source_chunks(tenant_id, source_name_variants(names))
    return ReferencedFilesResponse(files=group_referenced_files(chunks, message_sources))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
