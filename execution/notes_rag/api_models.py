"""
Pydantic models for the Notes RAG FastAPI backend.

Fields are snake_case in Python and camelCase on the wire.
"""

from uuid import UUID
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatMessage(CamelModel):
    """One message of the conversation history."""
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., max_length=20000)


class ChatRequest(CamelModel):
    """Request body for the chat endpoint."""
    messages: list[ChatMessage] = Field(..., min_length=1)
    chat_id: Optional[UUID] = None


class UploadResponse(CamelModel):
    """Response body for note upload."""
    success: bool
    file_name: str
    chunks_inserted: int
    message: str


class FileInfo(CamelModel):
    """Aggregate information about one uploaded note."""
    source: str
    file_name: str
    chunk_count: int
    first_uploaded: Optional[str] = None
    last_updated: Optional[str] = None
    embedding_ids: list[str] = []


class FilesResponse(CamelModel):
    files: list[FileInfo]


class DeleteFilesResponse(CamelModel):
    """Response body for deleting a note's chunks."""
    success: bool
    deleted_count: int
    source: str
    message: str


class ChatCreate(CamelModel):
    title: str = Field(default="New Chat", min_length=1, max_length=200)


class ChatInfo(CamelModel):
    id: str
    title: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class MessageCreate(CamelModel):
    """Request body for appending a message to a chat."""
    role: Literal["user", "assistant", "system"]
    content: str = Field(..., max_length=50000)
    sources: Optional[list[dict]] = None


class MessageInfo(CamelModel):
    id: str
    chat_id: str
    role: str
    content: str
    sources: Optional[list[dict]] = None
    created_at: Optional[str] = None


class ReferencedChunk(CamelModel):
    id: str
    content: str
    chunk_index: Optional[int] = None
    is_referenced: bool


class ReferencedFile(CamelModel):
    source: str
    chunks: list[ReferencedChunk]


class ReferencedFilesResponse(CamelModel):
    files: list[ReferencedFile]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
