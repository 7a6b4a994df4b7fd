"""
Ingestion Pipeline for Notes RAG

Turns a markdown note into stored chunks:

    raw text -> strip front-matter -> chunk -> insert (embed + persist)

Inserts run in bounded parallel windows. Chunk indexes are fixed before any
insert is dispatched, so they always follow document order. Ingestion is
at-least-once: when an insert fails the pipeline stops, reports how many
chunks made it, and leaves them in place.
"""

import os
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .chunker import TextChunker, ChunkConfig
from .vector_store import ChunkMetadata

logger = logging.getLogger(__name__)

MARKDOWN_CONTENT_TYPES = ("text/markdown", "text/x-markdown")


class IngestionError(Exception):
    """An ingest stopped part-way; ``chunks_inserted`` chunks were stored."""

    def __init__(self, message: str, source: str, chunks_inserted: int = 0, total_chunks: int = 0):
        super().__init__(message)
        self.source = source
        self.chunks_inserted = chunks_inserted
        self.total_chunks = total_chunks


class UploadValidationError(ValueError):
    """Raised when an uploaded file is not UTF-8 markdown."""


@dataclass
class IngestionConfig:
    """Configuration for the ingestion pipeline."""
    max_concurrency: int = field(default_factory=lambda: int(os.getenv("INGEST_MAX_CONCURRENCY", "4")))
    file_pattern: str = "*.md"


@dataclass
class IngestionResult:
    """Outcome of ingesting one source."""
    source: str
    chunks_inserted: int = 0
    total_chunks: int = 0
    chunk_ids: list[str] = field(default_factory=list)
    error: Optional[IngestionError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "chunks_inserted": self.chunks_inserted,
            "total_chunks": self.total_chunks,
            "success": self.success,
            "error": str(self.error) if self.error else None,
        }


def validate_upload(filename: Optional[str], content_type: Optional[str], data: bytes) -> str:
    """
    Check an uploaded file and decode it.

    Args:
        filename: Client-supplied file name
        content_type: Client-supplied MIME type
        data: Raw file bytes

    Returns:
        The decoded text

    Raises:
        UploadValidationError: not markdown, or not UTF-8 text
    """
    name = (filename or "").lower()
    mime = (content_type or "").split(";")[0].strip().lower()
    if not name.endswith(".md") and mime not in MARKDOWN_CONTENT_TYPES:
        raise UploadValidationError("Only markdown (.md) files are supported")

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        raise UploadValidationError("File must be UTF-8 encoded text")
    if "\x00" in text:
        raise UploadValidationError("File must be UTF-8 encoded text")

    return text.lstrip("\ufeff")


class IngestionPipeline:
    """
    Chunks and stores notes for one tenant at a time.

    Usage:
        pipeline = IngestionPipeline(store)
        result = pipeline.ingest("meeting.md", text, tenant_id="user_123")
    """

    def __init__(
        self,
        store,
        chunker: Optional[TextChunker] = None,
        config: Optional[IngestionConfig] = None,
    ):
        self.store = store
        self.chunker = chunker or TextChunker(ChunkConfig())
        self.config = config or IngestionConfig()

    def ingest(
        self,
        source_name: str,
        raw_text: str,
        tenant_id: str,
        on_complete: Optional[Callable[[IngestionResult], None]] = None,
    ) -> IngestionResult:
        """
        Chunk ``raw_text`` and insert every chunk under ``source_name``.

        Args:
            source_name: Logical document name (stored as source and fileName)
            raw_text: Note text, front-matter included
            tenant_id: Owning tenant
            on_complete: Called once with the result, success or not

        Returns:
            IngestionResult; ``error`` is set when an insert failed
        """
        chunks = self.chunker.chunk(raw_text)
        result = IngestionResult(source=source_name, total_chunks=len(chunks))

        if chunks:
            self._insert_chunks(chunks, source_name, tenant_id, result)

        if result.success:
            logger.info(f"Ingested {source_name}: {result.chunks_inserted} chunks")
        else:
            logger.error(f"Ingestion of {source_name} stopped: {result.error}")

        if on_complete is not None:
            on_complete(result)
        return result

    def ingest_or_raise(self, source_name: str, raw_text: str, tenant_id: str) -> int:
        """Like :meth:`ingest` but raises IngestionError instead of returning it."""
        result = self.ingest(source_name, raw_text, tenant_id)
        if result.error is not None:
            raise result.error
        return result.chunks_inserted

    def _insert_chunks(
        self,
        chunks: list[str],
        source_name: str,
        tenant_id: str,
        result: IngestionResult,
    ) -> None:
        total = len(chunks)
        uploaded_at = datetime.now(timezone.utc).isoformat()
        jobs = [
            (
                content,
                ChunkMetadata(
                    source=source_name,
                    file_name=source_name,
                    chunk_index=i,
                    total_chunks=total,
                    uploaded_at=uploaded_at,
                ),
            )
            for i, content in enumerate(chunks)
        ]

        workers = max(1, min(self.config.max_concurrency, total))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            for window_start in range(0, total, workers):
                window = jobs[window_start:window_start + workers]
                futures = [
                    executor.submit(self.store.insert, content, tenant_id, metadata)
                    for content, metadata in window
                ]

                first_error = None
                for future in futures:
                    try:
                        result.chunk_ids.append(future.result())
                        result.chunks_inserted += 1
                    except Exception as e:
                        if first_error is None:
                            first_error = e

                if first_error is not None:
                    result.error = IngestionError(
                        f"Failed while ingesting {source_name} after "
                        f"{result.chunks_inserted} of {total} chunks: {first_error}",
                        source=source_name,
                        chunks_inserted=result.chunks_inserted,
                        total_chunks=total,
                    )
                    result.error.__cause__ = first_error
                    return

    def ingest_directory(self, directory: str, tenant_id: str) -> list[IngestionResult]:
        """
        Ingest every markdown file below ``directory``.

        Source names are paths relative to ``directory``. A failing file is
        reported in its result and does not stop the remaining files.
        """
        root = Path(directory)
        if not root.is_dir():
            raise FileNotFoundError(f"Directory not found: {directory}")

        files = sorted(root.rglob(self.config.file_pattern))
        logger.info(f"Found {len(files)} markdown files in {root}")

        results = []
        for path in files:
            source_name = path.relative_to(root).as_posix()
            try:
                text = validate_upload(path.name, None, path.read_bytes())
            except UploadValidationError as e:
                error = IngestionError(f"Skipped {source_name}: {e}", source=source_name)
                results.append(IngestionResult(source=source_name, error=error))
                logger.warning(str(error))
                continue
            results.append(self.ingest(source_name, text, tenant_id))
        return results
