import aiosqlite
import structlog

logger = structlog.get_logger(__name__)

FILES_TABLE = """
CREATE TABLE IF NOT EXISTS files (
    path TEXT PRIMARY KEY,
    source TEXT NOT NULL DEFAULT 'memory',
    hash TEXT NOT NULL,
    mtime INTEGER NOT NULL,
    size INTEGER NOT NULL
)
"""

CHUNKS_TABLE = """
CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    path TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'memory',
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    hash TEXT NOT NULL,
    model TEXT NOT NULL,
    text TEXT NOT NULL,
    embedding TEXT NOT NULL,
    updated_at INTEGER NOT NULL
)
"""

CHUNKS_FTS_TABLE = """
CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
    text,
    id UNINDEXED,
    path UNINDEXED,
    source UNINDEXED,
    model UNINDEXED,
    start_line UNINDEXED,
    end_line UNINDEXED
)
"""


async def ensure_memory_index_schema(db: aiosqlite.Connection) -> bool:
    """
    Create the index tables if missing.

    Returns False when the full-text table could not be created (SQLite built
    without FTS5); keyword search is then unavailable but the index still works.
    """

    await db.execute(FILES_TABLE)
    await db.execute(CHUNKS_TABLE)
    await db.execute("CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path)")
    await db.execute("CREATE INDEX IF NOT EXISTS idx_chunks_updated_at ON chunks(updated_at)")

    fts_available = True
    try:
        await db.execute(CHUNKS_FTS_TABLE)
    except aiosqlite.OperationalError as e:
        if "fts5" not in str(e).lower():
            raise
        logger.error("Failed to create FTS table", error=str(e))
        fts_available = False

    # Touch the schema so a malformed file fails here rather than on first search
    cursor = await db.execute("PRAGMA quick_check")
    row = await cursor.fetchone()
    if row and row[0] != "ok":
        raise aiosqlite.DatabaseError(f"database disk image is malformed: {row[0]}")

    await db.commit()
    return fts_available
