"""
Notes RAG - Agentic retrieval over personal markdown notes

This module provides:
- Markdown ingestion with overlapping, whitespace-aligned chunks
- Tenant-scoped pgvector storage and cosine search
- A tool-calling agent (search, summarize, gap analysis, entity extraction)
  whose answers cite only notes the search tool actually returned
- A FastAPI backend with a streamed chat endpoint (see api.py)
"""

from .chunker import TextChunker, chunk_text
from .embeddings import OpenAIEmbeddingService, get_embedding_service
from .vector_store import VectorStore, ChunkMetadata, SearchResult
from .ingestion import IngestionPipeline, IngestionResult
from .tools import NotesToolkit
from .agent import NotesAgent, AgentResult

__all__ = [
    "TextChunker",
    "chunk_text",
    "OpenAIEmbeddingService",
    "get_embedding_service",
    "VectorStore",
    "ChunkMetadata",
    "SearchResult",
    "IngestionPipeline",
    "IngestionResult",
    "NotesToolkit",
    "NotesAgent",
    "AgentResult",
]

__version__ = "0.1.0"
