"""
Per-agent memory index.

Each agent owns one growing memory document (``MEMORY.md``) and one SQLite
index next to it. The index holds line-aligned chunks of the document, their
optional embeddings and a full-text table. Search merges full-text and vector
hits and falls back to the most recent chunks when both come up empty.
"""

from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Set
import asyncio
import json
import sqlite3
import time

import aiosqlite
import structlog

from gateway.domain.context.memory.chunking import DocumentChunk, chunk_document, content_hash
from gateway.domain.context.memory.embeddings import EmbeddingProvider
from gateway.domain.context.memory.schema import ensure_memory_index_schema
from gateway.domain.context.memory.vector_memory_store import VectorMemoryStore
from gateway.domain.context.memory.watcher import MemoryFileWatcher
from gateway.domain.errors import AccessDeniedError, MemoryStoreCorruptionError
from gateway.domain.models.memory import MemorySearchResult
from gateway.infrastructure.config.settings import MemorySettings

logger = structlog.get_logger(__name__)

MEMORY_FILE_NAME = "MEMORY.md"
INDEX_FILE_NAME = "memory_index.db"

_CORRUPTION_MARKERS = (
    "database disk image is malformed",
    "file is not a database",
)


def is_corruption_error(error: BaseException) -> bool:
    """True for SQLite errors that mean the index file itself is unusable"""

    if not isinstance(error, sqlite3.DatabaseError):
        return False
    if getattr(error, "sqlite_errorname", None) in ("SQLITE_CORRUPT", "SQLITE_NOTADB"):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _CORRUPTION_MARKERS)


class MemoryIndexManager:
    """Maintains and searches the chunk index of one agent's memory document"""

    def __init__(
        self,
        agent_id: str,
        agent_dir: Path,
        embedding_provider: Optional[EmbeddingProvider] = None,
        settings: Optional[MemorySettings] = None
    ):
        self.agent_id = agent_id
        self.agent_dir = Path(agent_dir).resolve()
        self.memory_path = self.agent_dir / MEMORY_FILE_NAME
        self.db_path = self.agent_dir / INDEX_FILE_NAME
        self.embedding_provider = embedding_provider
        self.settings = settings or MemorySettings()

        self.vector_store = VectorMemoryStore()
        self.fts_available = False
        self.rebuilt = False
        self._initialized = False
        self._sync_lock = asyncio.Lock()
        self._watcher: Optional[MemoryFileWatcher] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def embedding_model(self) -> str:
        return self.embedding_provider.model if self.embedding_provider else "local"

    def _connect(self):
        return aiosqlite.connect(self.db_path)

    async def _create_schema(self):
        try:
            async with self._connect() as db:
                self.fts_available = await ensure_memory_index_schema(db)
        except sqlite3.DatabaseError as e:
            if is_corruption_error(e):
                raise MemoryStoreCorruptionError(str(e)) from e
            raise

    async def initialize(self, watch: bool = True):
        """
        Open the index, rebuilding it from scratch if the file is corrupt.

        Recovery deletes the index, recreates the schema and runs a forced sync
        before returning. A failed rebuild is logged and leaves the manager
        usable; searches return nothing until a later sync succeeds.
        """

        if self._initialized:
            return

        self.agent_dir.mkdir(parents=True, exist_ok=True)

        try:
            await self._create_schema()
        except MemoryStoreCorruptionError as e:
            logger.error(
                "Database corruption detected, rebuilding index",
                agent_id=self.agent_id,
                db_path=str(self.db_path),
                error=str(e)
            )
            await self._rebuild()
        else:
            await self.sync()

        self._initialized = True
        if watch:
            self.start_watcher()

    async def _rebuild(self):
        self.rebuilt = True
        try:
            self._delete_index_files()
            await self._create_schema()
            await self.sync(force=True)
        except (sqlite3.Error, OSError, MemoryStoreCorruptionError) as e:
            logger.error("Failed to rebuild corrupt index", agent_id=self.agent_id, error=str(e))

    def _delete_index_files(self):
        for suffix in ("", "-wal", "-shm", "-journal"):
            candidate = self.db_path.with_name(self.db_path.name + suffix)
            if candidate.exists():
                candidate.unlink()

    def start_watcher(self):
        if self._watcher is not None:
            return
        try:
            self._watcher = MemoryFileWatcher(
                self.agent_dir,
                MEMORY_FILE_NAME,
                self.sync,
                debounce_seconds=self.settings.sync_debounce_seconds
            )
            self._watcher.start()
        except OSError as e:
            self._watcher = None
            logger.error("Failed to start watcher", agent_id=self.agent_id, error=str(e))

    async def close(self):
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        self._initialized = False

    async def sync(self, force: bool = False) -> bool:
        """
        Re-index the memory document.

        Returns True when the index was rewritten and False when there was
        nothing to do (no document, or an unchanged hash without ``force``).
        """

        async with self._sync_lock:
            if not self.memory_path.exists():
                return False

            stat = self.memory_path.stat()
            content = self.memory_path.read_text(encoding="utf-8", errors="replace")
            file_hash = content_hash(content)

            async with self._connect() as db:
                cursor = await db.execute("SELECT hash FROM files WHERE path = ?", (MEMORY_FILE_NAME,))
                row = await cursor.fetchone()

            if not force and row and row[0] == file_hash:
                return False

            logger.info("Syncing memory", agent_id=self.agent_id, path=str(self.memory_path), force=force)

            chunks = chunk_document(content, self.settings.chunk_size_chars)
            embeddings = await self._embed_chunks(chunks)
            await self._replace_chunks(chunks, embeddings, file_hash, int(stat.st_mtime * 1000), stat.st_size)

            logger.info("Sync complete", agent_id=self.agent_id, chunks=len(chunks))
            return True

    async def _embed_chunks(self, chunks: List[DocumentChunk]) -> List[List[float]]:
        if self.embedding_provider is None:
            if chunks:
                logger.warning("No embedding provider configured, skipping embeddings", agent_id=self.agent_id)
            return [[] for _ in chunks]

        embeddings = []
        for chunk in chunks:
            try:
                embeddings.append(await self.embedding_provider.embed_one(chunk.text))
            except Exception as e:
                logger.error(
                    "Embedding failed for chunk",
                    agent_id=self.agent_id,
                    start_line=chunk.start_line,
                    error=str(e)
                )
                embeddings.append([])
        return embeddings

    async def _replace_chunks(
        self,
        chunks: List[DocumentChunk],
        embeddings: List[List[float]],
        file_hash: str,
        mtime: int,
        size: int
    ):
        model = self.embedding_model
        chunk_rows = []
        fts_rows = []
        for chunk, embedding in zip(chunks, embeddings):
            updated_at = int(time.time() * 1000)
            chunk_rows.append((
                chunk.id, MEMORY_FILE_NAME, chunk.start_line, chunk.end_line,
                chunk.hash, model, chunk.text, json.dumps(embedding), updated_at
            ))
            fts_rows.append((chunk.text, chunk.id, MEMORY_FILE_NAME, model, chunk.start_line, chunk.end_line))

        # The DELETEs open an implicit transaction that the commit closes
        async with self._connect() as db:
            try:
                await db.execute("DELETE FROM chunks WHERE path = ?", (MEMORY_FILE_NAME,))
                if self.fts_available:
                    await db.execute("DELETE FROM chunks_fts WHERE path = ?", (MEMORY_FILE_NAME,))
                await db.executemany(
                    """
                    INSERT INTO chunks (id, path, source, start_line, end_line, hash, model, text, embedding, updated_at)
                    VALUES (?, ?, 'memory', ?, ?, ?, ?, ?, ?, ?)
                    """,
                    chunk_rows
                )
                if self.fts_available:
                    await db.executemany(
                        """
                        INSERT INTO chunks_fts (text, id, path, source, model, start_line, end_line)
                        VALUES (?, ?, ?, 'memory', ?, ?, ?)
                        """,
                        fts_rows
                    )
                await db.execute(
                    "INSERT OR REPLACE INTO files (path, source, hash, mtime, size) VALUES (?, 'memory', ?, ?, ?)",
                    (MEMORY_FILE_NAME, file_hash, mtime, size)
                )
                await db.commit()
            except sqlite3.Error:
                await db.rollback()
                raise

    def schedule_sync(self, force: bool = False) -> asyncio.Task:
        """Run a sync in the background; failures are logged"""

        async def _run():
            try:
                await self.sync(force=force)
            except Exception as e:
                logger.error("Background sync failed", agent_id=self.agent_id, error=str(e))

        task = asyncio.create_task(_run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def search(self, query: str, limit: int = 5) -> List[MemorySearchResult]:
        keyword_rows = await self._keyword_search(query, limit * 2)
        vector_rows = await self._vector_search(query, limit)

        merged: Dict[str, MemorySearchResult] = {}
        for row in vector_rows:
            merged[row["id"]] = MemorySearchResult(**row)
        for row in keyword_rows:
            if row["id"] not in merged:
                merged[row["id"]] = MemorySearchResult(**row, score=self.settings.keyword_score)

        results = sorted(merged.values(), key=lambda r: r.score, reverse=True)[:limit]
        if results:
            return results

        return await self._recent_chunks(limit)

    async def _keyword_search(self, query: str, limit: int) -> List[Dict[str, Any]]:
        if not self.fts_available:
            return []

        phrase = '"' + query.replace('"', '""') + '"'
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT id, path, text, start_line, end_line
                    FROM chunks_fts
                    WHERE chunks_fts MATCH ?
                    ORDER BY rank
                    LIMIT ?
                    """,
                    (phrase, limit)
                )
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            logger.warning("Full-text search failed", agent_id=self.agent_id, error=str(e))
            return []

        return [_normalize_row(dict(row)) for row in rows]

    async def _vector_search(self, query: str, limit: int) -> List[Dict[str, Any]]:
        if self.embedding_provider is None:
            return []

        try:
            query_vector = await self.embedding_provider.embed_one(query)
            if not query_vector:
                return []
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute("SELECT id, path, text, start_line, end_line, embedding FROM chunks")
                rows = await cursor.fetchall()
        except Exception as e:
            logger.warning("Vector search failed", agent_id=self.agent_id, error=str(e))
            return []

        ranked = self.vector_store.rank(query_vector, [dict(row) for row in rows], limit)
        return [_normalize_row(row) for row in ranked]

    async def _recent_chunks(self, limit: int) -> List[MemorySearchResult]:
        try:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT id, path, text, start_line, end_line
                    FROM chunks
                    ORDER BY updated_at DESC, end_line DESC
                    LIMIT ?
                    """,
                    (limit,)
                )
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            logger.warning("Recent chunk lookup failed", agent_id=self.agent_id, error=str(e))
            return []

        return [
            MemorySearchResult(**_normalize_row(dict(row)), score=self.settings.fallback_score)
            for row in rows
        ]

    async def read_file(self, rel_path: str, from_line: Optional[int] = None, line_count: Optional[int] = None) -> str:
        """Return a 1-based line slice of a file inside the agent directory"""

        candidate = Path(rel_path)
        target = (candidate if candidate.is_absolute() else self.agent_dir / candidate).resolve()
        try:
            target.relative_to(self.agent_dir)
        except ValueError:
            raise AccessDeniedError(rel_path)

        if not target.is_file():
            return ""

        lines = target.read_text(encoding="utf-8", errors="replace").split("\n")
        start = max((from_line or 1) - 1, 0)
        count = line_count or len(lines)
        return "\n".join(lines[start:start + count])

    def append_entry(self, text: str, category: str = "general") -> str:
        """Append a dated bullet to the memory document and return it"""

        entry = f"\n- [{date.today().isoformat()}] ({category}): {text}"
        self.agent_dir.mkdir(parents=True, exist_ok=True)
        with open(self.memory_path, "a", encoding="utf-8") as f:
            f.write(entry)
        return entry


def _normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    # FTS5 returns UNINDEXED columns as stored; line numbers may come back as text
    row["start_line"] = int(row["start_line"])
    row["end_line"] = int(row["end_line"])
    return row
