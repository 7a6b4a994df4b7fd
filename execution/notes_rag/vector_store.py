"""
Vector Store with PostgreSQL + pgvector

Stores note chunks with their embeddings and performs tenant-scoped cosine
similarity search. Every statement that reads or mutates tenant data filters
on tenant_id.

Also owns the small relational side of the app: chat transcripts, API keys
and the audit log.
"""

import os
import json
import logging
import hashlib
import secrets
import uuid
from typing import Optional
from dataclasses import dataclass, field
from contextlib import contextmanager

try:
    import psycopg2
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

logger = logging.getLogger(__name__)

# Source label of a chunk row; legacy rows only carry fileName
SOURCE_LABEL_SQL = "COALESCE(metadata->>'source', metadata->>'fileName')"

MESSAGE_ROLES = ("user", "assistant", "system")


@dataclass
class VectorStoreConfig:
    """Configuration for vector store."""
    connection_string: Optional[str] = None
    table_name: str = "note_chunks"
    embedding_dimensions: int = 1536
    default_top_k: int = field(default_factory=lambda: int(os.getenv("SEARCH_TOP_K", "5")))
    hnsw_m: int = 16
    hnsw_ef_construction: int = 64
    # Connection pooling settings
    pool_min_connections: int = 2
    pool_max_connections: int = 20
    use_pooling: bool = True  # Set to False for simple single-connection mode


@dataclass
class ChunkMetadata:
    """
    Typed chunk metadata as stored in the JSONB ``metadata`` column.

    ``from_dict`` is the single place where stored keys are interpreted:
    ``source`` falls back to the legacy ``fileName`` key, and ``chunkIndex``
    may have been written as a string by older ingestors.
    """
    source: Optional[str] = None
    file_name: Optional[str] = None
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    uploaded_at: Optional[str] = None

    @property
    def label(self) -> str:
        return self.source or self.file_name or "unknown"

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ChunkMetadata":
        data = data or {}
        file_name = data.get("fileName")
        return cls(
            source=data.get("source") or file_name,
            file_name=file_name,
            chunk_index=_as_int(data.get("chunkIndex")),
            total_chunks=_as_int(data.get("totalChunks")),
            uploaded_at=data.get("uploadedAt"),
        )

    def to_dict(self) -> dict:
        data = {
            "source": self.source,
            "fileName": self.file_name,
            "chunkIndex": self.chunk_index,
            "totalChunks": self.total_chunks,
            "uploadedAt": self.uploaded_at,
        }
        return {k: v for k, v in data.items() if v is not None}


def _as_int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class SearchResult:
    """A single search result with score in [0, 1]."""
    chunk_id: str
    content: str
    metadata: ChunkMetadata
    score: float

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "score": self.score,
        }


def distance_to_similarity(distance: float) -> float:
    """Map pgvector cosine distance (0..2) onto a similarity in [0, 1]."""
    return min(1.0, max(0.0, 1.0 - float(distance) / 2.0))


def _is_uuid(value) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _iso(value) -> Optional[str]:
    return value.isoformat() if hasattr(value, "isoformat") else value


class VectorStore:
    """
    PostgreSQL vector store with pgvector.

    Features:
    - Cosine similarity search (HNSW index)
    - Multi-tenant isolation via tenant_id
    - Chat transcript storage
    - API keys and audit log
    """

    def __init__(self, embedding_service, config: Optional[VectorStoreConfig] = None):
        """
        Initialize vector store.

        Args:
            embedding_service: Service exposing embed(text) / embed_query(text)
            config: Optional configuration. Uses env vars if not provided.
        """
        self.embeddings = embedding_service
        self.config = config or VectorStoreConfig()
        self._conn = None
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/notes_rag"
        )

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        if psycopg2 is None:
            raise ImportError(
                "psycopg2 not installed. Run: pip install psycopg2-binary"
            )
        from psycopg2.extras import RealDictCursor

        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                conn = self._pool.getconn()
                try:
                    with conn.cursor() as cur:
                        cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                    conn.commit()
                finally:
                    self._pool.putconn(conn)

                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(
                    self._connection_string,
                    cursor_factory=RealDictCursor
                )
                self._conn.autocommit = False

                with self._conn.cursor() as cur:
                    cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                    self._conn.commit()

                logger.info("Connected to PostgreSQL with pgvector (single connection)")

        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        """Get a database connection (from pool or single connection)."""
        if self._pool:
            return self._pool.getconn()

        if self._conn is not None and self._conn.closed:
            logger.warning("Connection closed, reconnecting...")
            self.connect()

        return self._conn

    def _release_connection(self, conn):
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn)

    def _ensure_connection(self):
        """Ensure we have a connection (pool or single) and return it."""
        if not self._conn and not self._pool:
            self.connect()

        try:
            return self._get_connection()
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            logger.warning("Database error in _ensure_connection, retrying after reconnect...")
            self.connect()
            return self._get_connection()

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a database connection.

        Usage:
            with store.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        conn = self._ensure_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        for attempt in range(2):
            conn = self._ensure_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.close()
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # Schema
    # =========================================================================

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        table = self.config.table_name
        schema_sql = f"""
        -- Note chunks with embeddings
        CREATE TABLE IF NOT EXISTS {table} (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            seq BIGSERIAL,
            tenant_id TEXT NOT NULL,
            content TEXT NOT NULL CHECK (length(content) > 0),
            embedding VECTOR({self.config.embedding_dimensions}) NOT NULL,
            metadata JSONB NOT NULL DEFAULT '{{}}',
            created_at TIMESTAMPTZ DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_{table}_tenant
            ON {table}(tenant_id);
        CREATE INDEX IF NOT EXISTS idx_{table}_tenant_source
            ON {table}(tenant_id, ({SOURCE_LABEL_SQL}));
        CREATE INDEX IF NOT EXISTS idx_{table}_embedding
            ON {table}
            USING hnsw (embedding vector_cosine_ops)
            WITH (m = {self.config.hnsw_m}, ef_construction = {self.config.hnsw_ef_construction});

        -- Chat transcripts
        CREATE TABLE IF NOT EXISTS chats (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT 'New Chat',
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_chats_tenant
            ON chats(tenant_id, updated_at DESC);

        CREATE TABLE IF NOT EXISTS chat_messages (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            chat_id UUID NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
            role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
            content TEXT NOT NULL,
            sources JSONB,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_chat_messages_chat
            ON chat_messages(chat_id, created_at);

        -- API keys for programmatic access
        CREATE TABLE IF NOT EXISTS api_keys (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            key_hash VARCHAR(64) NOT NULL UNIQUE,
            tenant_id TEXT NOT NULL,
            name VARCHAR(100),
            is_active BOOLEAN DEFAULT TRUE,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            last_used_at TIMESTAMPTZ
        );

        -- Audit log
        CREATE TABLE IF NOT EXISTS audit_log (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL,
            action VARCHAR(50) NOT NULL,
            resource TEXT,
            details JSONB,
            created_at TIMESTAMPTZ DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_audit_tenant_time
            ON audit_log(tenant_id, created_at DESC);
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
                conn.commit()

        try:
            self._execute_with_retry(_op, "initialize_schema")
            logger.info("Schema initialized successfully")
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise

    # =========================================================================
    # Chunks
    # =========================================================================

    def insert(self, content: str, tenant_id: str, metadata) -> str:
        """
        Embed and persist one chunk.

        The embedding is computed before any SQL runs, so an embedding failure
        leaves no row behind.

        Args:
            content: Non-empty chunk text
            tenant_id: Owning tenant
            metadata: ChunkMetadata or a dict in stored (camelCase) form

        Returns:
            The new chunk id
        """
        if not content or not content.strip():
            raise ValueError("Chunk content must be non-empty")
        if not tenant_id:
            raise ValueError("tenant_id is required")
        if not isinstance(metadata, ChunkMetadata):
            metadata = ChunkMetadata.from_dict(metadata)

        embedding = self.embeddings.embed(content)

        sql = f"""
        INSERT INTO {self.config.table_name} (tenant_id, content, embedding, metadata)
        VALUES (%s, %s, %s::vector, %s)
        RETURNING id
        """
        params = (tenant_id, content, embedding, json.dumps(metadata.to_dict()))

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                conn.commit()
            return str(row["id"])

        return self._execute_with_retry(_op, "insert")

    def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        tenant_id: Optional[str] = None,
    ) -> list[SearchResult]:
        """
        Semantic search using cosine distance.

        Args:
            query: Query text (embedded here)
            top_k: Number of results; defaults to config.default_top_k
            tenant_id: Restrict to this tenant's chunks

        Returns:
            Results in descending similarity; equal distances keep insertion order
        """
        top_k = top_k or self.config.default_top_k
        query_embedding = self.embeddings.embed_query(query)

        filters = []
        filter_params = []
        if tenant_id:
            filters.append("tenant_id = %s")
            filter_params.append(tenant_id)
        where_clause = f"WHERE {' AND '.join(filters)}" if filters else ""

        sql = f"""
        SELECT id, content, metadata, embedding <=> %s::vector AS distance
        FROM {self.config.table_name}
        {where_clause}
        ORDER BY distance ASC, seq ASC
        LIMIT %s
        """
        params = [query_embedding] + filter_params + [top_k]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()

            return [
                SearchResult(
                    chunk_id=str(row["id"]),
                    content=row["content"],
                    metadata=ChunkMetadata.from_dict(row["metadata"]),
                    score=distance_to_similarity(row["distance"]),
                )
                for row in rows
            ]

        return self._execute_with_retry(_op, "search")

    def delete_by_source(self, source: str, tenant_id: str) -> int:
        """
        Delete every chunk of one source for one tenant.

        Returns:
            Number of rows removed (0 when nothing matched)
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        sql = f"""
        DELETE FROM {self.config.table_name}
        WHERE tenant_id = %s AND {SOURCE_LABEL_SQL} = %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, source))
                deleted = cur.rowcount
                conn.commit()
            logger.info(f"Deleted {deleted} chunks for source {source}")
            return deleted

        return self._execute_with_retry(_op, "delete_by_source")

    def list_sources(self, tenant_id: str) -> list[dict]:
        """List a tenant's sources with chunk counts, most recently updated first."""
        sql = f"""
        SELECT
            {SOURCE_LABEL_SQL} AS source,
            MAX(metadata->>'fileName') AS file_name,
            COUNT(*) AS chunk_count,
            MIN(created_at) AS first_uploaded,
            MAX(created_at) AS last_updated,
            array_agg(id::text ORDER BY seq) AS chunk_ids
        FROM {self.config.table_name}
        WHERE tenant_id = %s
        GROUP BY {SOURCE_LABEL_SQL}
        ORDER BY MAX(created_at) DESC
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                rows = cur.fetchall()

            return [
                {
                    "source": row["source"] or "unknown",
                    "file_name": row["file_name"] or row["source"] or "unknown",
                    "chunk_count": int(row["chunk_count"]),
                    "first_uploaded": _iso(row["first_uploaded"]),
                    "last_updated": _iso(row["last_updated"]),
                    "chunk_ids": list(row["chunk_ids"] or []),
                }
                for row in rows
            ]

        return self._execute_with_retry(_op, "list_sources")

    def get_source_chunks(self, tenant_id: str, sources: list[str]) -> list[dict]:
        """Fetch all chunks of the given sources for one tenant, in document order."""
        if not sources:
            return []

        sql = f"""
        SELECT id, content, metadata
        FROM {self.config.table_name}
        WHERE tenant_id = %s AND {SOURCE_LABEL_SQL} = ANY(%s)
        ORDER BY {SOURCE_LABEL_SQL}, seq
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, list(sources)))
                rows = cur.fetchall()
            return [
                {
                    "id": str(row["id"]),
                    "content": row["content"],
                    "metadata": ChunkMetadata.from_dict(row["metadata"]),
                }
                for row in rows
            ]

        return self._execute_with_retry(_op, "get_source_chunks")

    # =========================================================================
    # Chat transcripts
    # =========================================================================

    @staticmethod
    def _chat_row(row) -> dict:
        return {
            "id": str(row["id"]),
            "title": row["title"],
            "created_at": _iso(row["created_at"]),
            "updated_at": _iso(row["updated_at"]),
        }

    @staticmethod
    def _message_row(row) -> dict:
        return {
            "id": str(row["id"]),
            "chat_id": str(row["chat_id"]),
            "role": row["role"],
            "content": row["content"],
            "sources": row["sources"],
            "created_at": _iso(row["created_at"]),
        }

    def create_chat(self, tenant_id: str, title: str = "New Chat") -> dict:
        """Create a new chat for a tenant."""
        sql = """
        INSERT INTO chats (tenant_id, title)
        VALUES (%s, %s)
        RETURNING id, title, created_at, updated_at
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id, title))
                row = cur.fetchone()
                conn.commit()
            return self._chat_row(row)

        return self._execute_with_retry(_op, "create_chat")

    def list_chats(self, tenant_id: str) -> list[dict]:
        """List all chats for a tenant, newest first."""
        sql = """
        SELECT id, title, created_at, updated_at
        FROM chats
        WHERE tenant_id = %s
        ORDER BY updated_at DESC
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (tenant_id,))
                rows = cur.fetchall()
            return [self._chat_row(row) for row in rows]

        return self._execute_with_retry(_op, "list_chats")

    def get_chat(self, chat_id: str, tenant_id: str) -> Optional[dict]:
        """Return the chat if it belongs to the tenant, else None."""
        if not _is_uuid(chat_id):
            return None
        sql = """
        SELECT id, title, created_at, updated_at
        FROM chats
        WHERE id = %s::uuid AND tenant_id = %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (chat_id, tenant_id))
                row = cur.fetchone()
            return self._chat_row(row) if row else None

        return self._execute_with_retry(_op, "get_chat")

    def delete_chat(self, chat_id: str, tenant_id: str) -> bool:
        """Delete a chat and its messages (tenant-isolated)."""
        if not _is_uuid(chat_id):
            return False

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM chats WHERE id = %s::uuid AND tenant_id = %s",
                    (chat_id, tenant_id),
                )
                deleted = cur.rowcount > 0
                conn.commit()
            return deleted

        return self._execute_with_retry(_op, "delete_chat")

    def add_message(
        self,
        chat_id: str,
        tenant_id: str,
        role: str,
        content: str,
        sources: Optional[list] = None,
    ) -> Optional[dict]:
        """
        Append a message to a chat owned by the tenant.

        Returns:
            The stored message, or None if the chat does not belong to the tenant
        """
        if role not in MESSAGE_ROLES:
            raise ValueError(f"Invalid message role: {role}")
        if not _is_uuid(chat_id):
            return None

        sql = """
        INSERT INTO chat_messages (chat_id, role, content, sources)
        SELECT c.id, %s, %s, %s
        FROM chats c
        WHERE c.id = %s::uuid AND c.tenant_id = %s
        RETURNING id, chat_id, role, content, sources, created_at
        """
        sources_json = json.dumps(sources) if sources else None

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (role, content, sources_json, chat_id, tenant_id))
                row = cur.fetchone()
                if row:
                    cur.execute(
                        "UPDATE chats SET updated_at = NOW() WHERE id = %s::uuid",
                        (chat_id,),
                    )
                conn.commit()
            return self._message_row(row) if row else None

        return self._execute_with_retry(_op, "add_message")

    def get_messages(self, chat_id: str, tenant_id: str) -> list[dict]:
        """Get all messages for a chat (verified by tenant_id)."""
        if not _is_uuid(chat_id):
            return []
        sql = """
        SELECT m.id, m.chat_id, m.role, m.content, m.sources, m.created_at
        FROM chat_messages m
        JOIN chats c ON c.id = m.chat_id
        WHERE m.chat_id = %s::uuid AND c.tenant_id = %s
        ORDER BY m.created_at ASC
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (chat_id, tenant_id))
                rows = cur.fetchall()
            return [self._message_row(row) for row in rows]

        return self._execute_with_retry(_op, "get_messages")

    # =========================================================================
    # API keys and audit
    # =========================================================================

    def create_api_key(self, tenant_id: str, name: str = "Default") -> str:
        """
        Create a new API key for a tenant.

        Returns:
            The raw API key (only shown once, store securely!)
        """
        raw_key = f"nrag_{secrets.token_urlsafe(32)}"
        key_hash = hashlib.sha256(raw_key.encode()).hexdigest()

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO api_keys (key_hash, tenant_id, name) VALUES (%s, %s, %s)",
                    (key_hash, tenant_id, name),
                )
                conn.commit()

        self._execute_with_retry(_op, "create_api_key")
        logger.info(f"API key created for tenant {tenant_id}")
        return raw_key

    def validate_api_key(self, api_key: str) -> Optional[dict]:
        """
        Validate an API key and return tenant info.

        Returns:
            Dict with tenant_id and name if valid; None if invalid
        """
        key_hash = hashlib.sha256(api_key.encode()).hexdigest()

        sql = """
        UPDATE api_keys
        SET last_used_at = NOW()
        WHERE key_hash = %s AND is_active = TRUE
        RETURNING tenant_id, name
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (key_hash,))
                row = cur.fetchone()
                conn.commit()
            if row:
                return {"tenant_id": row["tenant_id"], "name": row["name"]}
            return None

        try:
            return self._execute_with_retry(_op, "validate_api_key")
        except Exception as e:
            logger.error(f"API key validation failed: {e}")
            return None

    def log_audit(
        self,
        tenant_id: str,
        action: str,
        resource: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        """
        Record an action in the audit log.

        Args:
            tenant_id: The tenant performing the action
            action: Action type (chat, upload, delete_source, ...)
            resource: Affected resource, e.g. a source name
            details: Additional details as JSON
        """
        sql = """
        INSERT INTO audit_log (tenant_id, action, resource, details)
        VALUES (%s, %s, %s, %s)
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (
                    tenant_id,
                    action,
                    resource,
                    json.dumps(details) if details else None,
                ))
                conn.commit()

        try:
            self._execute_with_retry(_op, "log_audit")
        except Exception as e:
            # Don't fail operations due to audit logging errors
            logger.warning(f"Audit logging failed: {e}")
