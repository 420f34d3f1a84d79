"""Database initialization and helpers for SiteChat.

SQLite database for storing:
- Pipelines and their JSON settings
- Indexed chunks with their embeddings (float32 blobs)

Vectors are also held in FAISS for search (see rag/store_faiss.py); SQLite
is the source of truth the FAISS indexes are rebuilt from.
"""
import hashlib
import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import structlog

from sitechat import config
from sitechat.models import EmbeddedChunk

logger = structlog.get_logger()


def get_connection(db_path: Path = None) -> sqlite3.Connection:
    """Get a connection to the SQLite database.

    Returns:
        sqlite3.Connection with row_factory set to sqlite3.Row
    """
    conn = sqlite3.connect(db_path or config.DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def init_database(db_path: Path = None) -> None:
    """Initialize the database schema.

    Creates tables if they don't exist:
    - pipelines: named knowledge bases with settings
    - chunks: chunk text, citation metadata and embedding per pipeline
    """
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS pipelines (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                settings_json TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # One row per chunk; identical (pipeline, url, content) is stored once
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pipeline_id TEXT NOT NULL,
                url TEXT NOT NULL,
                title TEXT,
                content TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                total_chunks INTEGER NOT NULL,
                content_hash TEXT NOT NULL,
                embedding BLOB NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(pipeline_id, url, content_hash)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_chunks_pipeline_url
            ON chunks(pipeline_id, url)
        """)

        conn.commit()
        logger.info("database_initialized", db_path=str(db_path or config.DB_PATH))

    except Exception as e:
        conn.rollback()
        logger.error("database_init_failed", error=str(e))
        raise
    finally:
        conn.close()


def _pipeline_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "settings": json.loads(row["settings_json"]) if row["settings_json"] else {},
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def create_pipeline(
    name: Optional[str] = None,
    description: Optional[str] = None,
    settings: Optional[Dict[str, Any]] = None,
    db_path: Path = None,
) -> Dict[str, Any]:
    """Create a pipeline.

    Args:
        name: Display name (defaults to "Pipeline N")
        description: Optional description
        settings: Optional settings dict

    Returns:
        The created pipeline as a dict
    """
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        if not name:
            cursor.execute("SELECT COUNT(*) FROM pipelines")
            name = f"Pipeline {cursor.fetchone()[0] + 1}"

        pipeline_id = uuid.uuid4().hex
        now = _now()
        cursor.execute("""
            INSERT INTO pipelines (id, name, description, settings_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            pipeline_id,
            name,
            description,
            json.dumps(settings or {}),
            now,
            now,
        ))

        conn.commit()
        logger.info("pipeline_created", pipeline_id=pipeline_id, name=name)

        return {
            "id": pipeline_id,
            "name": name,
            "description": description,
            "settings": settings or {},
            "created_at": now,
            "updated_at": now,
        }

    except Exception as e:
        conn.rollback()
        logger.error("pipeline_create_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_pipeline(pipeline_id: str, db_path: Path = None) -> Optional[Dict[str, Any]]:
    """Get a pipeline by ID, or None if it does not exist."""
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM pipelines WHERE id = ?", (pipeline_id,)
        ).fetchone()
        return _pipeline_from_row(row) if row else None
    finally:
        conn.close()


def update_pipeline_settings(
    pipeline_id: str, settings: Dict[str, Any], db_path: Path = None
) -> Optional[Dict[str, Any]]:
    """Merge settings into a pipeline's stored settings.

    Returns:
        The updated pipeline, or None if it does not exist
    """
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        row = cursor.execute(
            "SELECT settings_json FROM pipelines WHERE id = ?", (pipeline_id,)
        ).fetchone()
        if row is None:
            return None

        merged = json.loads(row["settings_json"]) if row["settings_json"] else {}
        merged.update(settings)

        cursor.execute(
            "UPDATE pipelines SET settings_json = ?, updated_at = ? WHERE id = ?",
            (json.dumps(merged), _now(), pipeline_id),
        )
        conn.commit()
        logger.info("pipeline_settings_updated", pipeline_id=pipeline_id, keys=sorted(settings))

    except Exception as e:
        conn.rollback()
        logger.error("pipeline_settings_update_failed", pipeline_id=pipeline_id, error=str(e))
        raise
    finally:
        conn.close()

    return get_pipeline(pipeline_id, db_path)


def rename_pipeline(pipeline_id: str, name: str, db_path: Path = None) -> bool:
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            "UPDATE pipelines SET name = ?, updated_at = ? WHERE id = ?",
            (name, _now(), pipeline_id),
        )
        conn.commit()
        return cursor.rowcount > 0
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def insert_chunks(
    pipeline_id: str, chunks: List[EmbeddedChunk], db_path: Path = None
) -> List[Tuple[int, EmbeddedChunk]]:
    """Insert embedded chunks, skipping rows that are already stored.

    Args:
        pipeline_id: Owning pipeline
        chunks: Chunks with embeddings

    Returns:
        (row_id, chunk) pairs for the chunks that were not already stored
    """
    conn = get_connection(db_path)
    cursor = conn.cursor()
    inserted: List[Tuple[int, EmbeddedChunk]] = []

    try:
        now = _now()
        for embedded in chunks:
            chunk = embedded.chunk
            cursor.execute("""
                INSERT OR IGNORE INTO chunks (
                    pipeline_id, url, title, content, chunk_index, total_chunks,
                    content_hash, embedding, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                pipeline_id,
                chunk.url,
                chunk.title,
                chunk.content,
                chunk.chunk_index,
                chunk.total_chunks,
                content_hash(chunk.content),
                np.asarray(embedded.embedding, dtype=np.float32).tobytes(),
                now,
            ))
            if cursor.rowcount == 1:
                inserted.append((cursor.lastrowid, embedded))

        conn.commit()
        logger.debug(
            "chunks_inserted",
            pipeline_id=pipeline_id,
            inserted=len(inserted),
            duplicates=len(chunks) - len(inserted),
        )
        return inserted

    except Exception as e:
        conn.rollback()
        logger.error("chunk_insert_failed", pipeline_id=pipeline_id, error=str(e))
        raise
    finally:
        conn.close()


def get_embeddings(pipeline_id: str, db_path: Path = None) -> Tuple[List[int], Optional[np.ndarray]]:
    """Load all chunk IDs and embeddings for a pipeline.

    Returns:
        Tuple of (chunk_ids, float32 matrix), the matrix is None when the
        pipeline has no chunks
    """
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT id, embedding FROM chunks WHERE pipeline_id = ? ORDER BY id",
            (pipeline_id,),
        ).fetchall()
    finally:
        conn.close()

    if not rows:
        return [], None

    ids = [row["id"] for row in rows]
    matrix = np.vstack([np.frombuffer(row["embedding"], dtype=np.float32) for row in rows])
    return ids, matrix


def get_chunks_by_ids(chunk_ids: List[int], db_path: Path = None) -> Dict[int, Dict[str, Any]]:
    """Get chunk rows by ID.

    Returns:
        Dict mapping chunk ID to row dict (embedding excluded)
    """
    if not chunk_ids:
        return {}

    conn = get_connection(db_path)
    try:
        placeholders = ",".join("?" * len(chunk_ids))
        rows = conn.execute(f"""
            SELECT id, url, title, content, chunk_index, total_chunks
            FROM chunks WHERE id IN ({placeholders})
        """, chunk_ids).fetchall()
        return {row["id"]: dict(row) for row in rows}
    finally:
        conn.close()


def list_indexed_urls(pipeline_id: str, db_path: Path = None) -> List[Dict[str, Any]]:
    """List distinct URLs with their chunk counts, most recently indexed first."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute("""
            SELECT url, MAX(title) AS title, COUNT(*) AS chunk_count,
                   MAX(created_at) AS last_indexed
            FROM chunks
            WHERE pipeline_id = ?
            GROUP BY url
            ORDER BY last_indexed DESC, url
        """, (pipeline_id,)).fetchall()
        return [dict(row) for row in rows]
    finally:
        conn.close()


def count_chunks(pipeline_id: str, db_path: Path = None) -> int:
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE pipeline_id = ?", (pipeline_id,)
        ).fetchone()
        return row[0]
    finally:
        conn.close()


def delete_chunks_by_url_prefix(
    pipeline_id: str, url_prefix: str, db_path: Path = None
) -> List[int]:
    """Delete every chunk whose URL starts with url_prefix.

    Returns:
        IDs of the deleted chunks
    """
    conn = get_connection(db_path)
    cursor = conn.cursor()

    try:
        rows = cursor.execute(
            "SELECT id FROM chunks WHERE pipeline_id = ? AND substr(url, 1, ?) = ?",
            (pipeline_id, len(url_prefix), url_prefix),
        ).fetchall()
        chunk_ids = [row["id"] for row in rows]

        if chunk_ids:
            cursor.execute(
                "DELETE FROM chunks WHERE pipeline_id = ? AND substr(url, 1, ?) = ?",
                (pipeline_id, len(url_prefix), url_prefix),
            )
        conn.commit()

        logger.info(
            "chunks_deleted_by_prefix",
            pipeline_id=pipeline_id,
            url_prefix=url_prefix,
            deleted=len(chunk_ids),
        )
        return chunk_ids

    except Exception as e:
        conn.rollback()
        logger.error("chunk_delete_failed", pipeline_id=pipeline_id, error=str(e))
        raise
    finally:
        conn.close()
