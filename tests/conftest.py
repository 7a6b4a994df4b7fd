"""
Shared fixtures and test utilities for Notes RAG tests.

Provides mock services and sample notes so that all tests can run without
API keys, a database, or external network access.
"""

import re
import sys
import uuid
import hashlib
from pathlib import Path

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

TENANT_A = "user_alice"
TENANT_B = "user_bob"

# ---------------------------------------------------------------------------
# Sample notes
# ---------------------------------------------------------------------------
SAMPLE_NOTE = """---
title: Quarterly planning
tags: [planning, q3]
---
# Q3 Planning Meeting

Attendees: Alice Chen, Bob Martinez and Priya Nair from the Platform team.

## Decisions

We agreed to migrate the billing service to the new queue before the end of
September. Bob owns the migration plan and will share a draft by August 12.

## Open items

- Confirm the budget for the load-testing cluster with Finance.
- Priya to review the on-call rotation for the holiday period.
"""

RECIPE_NOTE = """# Sourdough

Feed the starter the night before. Mix 500g flour with 350g water and rest
for an hour before adding salt. Bake at 250C with the lid on for 20 minutes.
"""


@pytest.fixture
def sample_note():
    return SAMPLE_NOTE


@pytest.fixture
def recipe_note():
    return RECIPE_NOTE


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic bag-of-words embeddings -- never calls external APIs."""

    def __init__(self, dimensions=1536):
        self._dimensions = dimensions
        self.calls = []

    def embed(self, text, input_type="document"):
        self.calls.append((input_type, text))
        vector = [0.0] * self._dimensions
        for word in re.findall(r"\w+", text.lower()):
            h = int(hashlib.sha256(word.encode()).hexdigest()[:8], 16)
            vector[h % self._dimensions] += 1.0
        return vector

    def embed_query(self, query):
        return self.embed(query, input_type="query")

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService()


# ---------------------------------------------------------------------------
# Mock vector store (no database needed)
# ---------------------------------------------------------------------------

class MockVectorStore:
    """In-memory stand-in for VectorStore with real tenant filtering."""

    def __init__(self, embedding_service=None):
        self.embeddings = embedding_service or MockEmbeddingService()
        self.rows = []
        self.search_calls = []

    def insert(self, content, tenant_id, metadata):
        from execution.notes_rag.vector_store import ChunkMetadata
        if not isinstance(metadata, ChunkMetadata):
            metadata = ChunkMetadata.from_dict(metadata)
        embedding = self.embeddings.embed(content)
        chunk_id = str(uuid.uuid4())
        self.rows.append({
            "id": chunk_id,
            "tenant_id": tenant_id,
            "content": content,
            "embedding": embedding,
            "metadata": metadata,
        })
        return chunk_id

    def search(self, query, top_k=None, tenant_id=None):
        from execution.notes_rag.embeddings import cosine_similarity
        from execution.notes_rag.vector_store import SearchResult, distance_to_similarity
        self.search_calls.append({"query": query, "top_k": top_k, "tenant_id": tenant_id})
        query_embedding = self.embeddings.embed_query(query)
        scored = []
        for seq, row in enumerate(self.rows):
            if tenant_id and row["tenant_id"] != tenant_id:
                continue
            # pgvector cosine distance is 1 - cosine similarity
            score = distance_to_similarity(1.0 - cosine_similarity(query_embedding, row["embedding"]))
            scored.append((-score, seq, row, score))
        scored.sort(key=lambda item: (item[0], item[1]))
        return [
            SearchResult(chunk_id=row["id"], content=row["content"], metadata=row["metadata"], score=score)
            for _, _, row, score in scored[:top_k or 5]
        ]

    def delete_by_source(self, source, tenant_id):
        before = len(self.rows)
        self.rows = [
            r for r in self.rows
            if not (r["tenant_id"] == tenant_id and r["metadata"].label == source)
        ]
        return before - len(self.rows)

    def chunks_for(self, tenant_id):
        return [r for r in self.rows if r["tenant_id"] == tenant_id]


@pytest.fixture
def mock_vector_store(mock_embedding_service):
    return MockVectorStore(mock_embedding_service)


# ---------------------------------------------------------------------------
# Scripted chat model
# ---------------------------------------------------------------------------

class ScriptedChatModel:
    """
    Replays a fixed sequence of model steps.

    Each step is a ModelReply (or a plain string for a text-only reply); its
    content is streamed in small pieces before the reply itself is yielded.
    generate_text returns ``generated`` (or raises it when it is an exception).
    """

    def __init__(self, steps=None, generated="", piece_size=7):
        self.steps = list(steps or [])
        self.generated = generated
        self.piece_size = piece_size
        self.stream_calls = []
        self.stream_timeouts = []
        self.closed_streams = 0
        self.prompts = []

    def stream(self, messages, tools=None, timeout=None):
        from execution.notes_rag.llm_client import ModelReply
        self.stream_calls.append([dict(m) for m in messages])
        self.stream_timeouts.append(timeout)
        if not self.steps:
            raise AssertionError("ScriptedChatModel ran out of steps")
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, str):
            step = ModelReply(content=step)
        try:
            for i in range(0, len(step.content), self.piece_size):
                yield step.content[i:i + self.piece_size]
            yield step
        finally:
            self.closed_streams += 1

    def generate_text(self, prompt, system=None, timeout=None):
        self.prompts.append(prompt)
        if isinstance(self.generated, Exception):
            raise self.generated
        return self.generated


@pytest.fixture
def scripted_model():
    return ScriptedChatModel()
