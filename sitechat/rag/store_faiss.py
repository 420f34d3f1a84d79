"""FAISS-backed chunk store for semantic search.

Handles:
- Persisting chunks and embeddings in SQLite
- A per-pipeline FAISS inner-product index over L2-normalized vectors,
  so search scores are cosine similarities
- Lazy index rebuilds from SQLite after a restart
"""
from pathlib import Path
from typing import Any, Dict, List, Optional

import faiss
import numpy as np
import structlog

from sitechat import config, db
from sitechat.models import EmbeddedChunk, RetrievedChunk

logger = structlog.get_logger()


def _as_matrix(vectors: List[List[float]]) -> np.ndarray:
    matrix = np.array(vectors, dtype=np.float32)
    if matrix.ndim != 2:
        raise ValueError(f"Expected a list of vectors, got array of shape {matrix.shape}")
    faiss.normalize_L2(matrix)
    return matrix


class FAISSChunkStore:
    """Chunk storage with exact cosine-similarity search per pipeline."""

    def __init__(self, db_path: Path = None, insert_batch_size: int = None):
        """Initialize the chunk store.

        Args:
            db_path: SQLite database path (default from config)
            insert_batch_size: Rows written per database transaction
        """
        self.db_path = db_path or config.DB_PATH
        self.insert_batch_size = insert_batch_size or config.INSERT_BATCH_SIZE
        self._indexes: Dict[str, Optional[faiss.Index]] = {}

        db.init_database(self.db_path)

    def _get_index(self, pipeline_id: str) -> Optional[faiss.Index]:
        """Return the pipeline's index, rebuilding it from SQLite on first use."""
        if pipeline_id in self._indexes:
            return self._indexes[pipeline_id]

        chunk_ids, matrix = db.get_embeddings(pipeline_id, self.db_path)
        index = None
        if matrix is not None:
            faiss.normalize_L2(matrix)
            index = self._new_index(matrix.shape[1])
            index.add_with_ids(matrix, np.array(chunk_ids, dtype=np.int64))
            logger.info(
                "faiss_index_rebuilt",
                pipeline_id=pipeline_id,
                dimension=index.d,
                vector_count=index.ntotal,
            )

        self._indexes[pipeline_id] = index
        return index

    @staticmethod
    def _new_index(dimension: int) -> faiss.Index:
        # Exact search is fine at the scale of a crawled site
        return faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))

    async def insert_chunks(self, pipeline_id: str, chunks: List[EmbeddedChunk]) -> int:
        """Store embedded chunks and add their vectors to the index.

        Rows are written in batches; chunks already stored with identical
        (url, content) are skipped.

        Args:
            pipeline_id: Owning pipeline
            chunks: Chunks with embeddings

        Returns:
            Number of newly stored chunks

        Raises:
            ValueError: If embedding dimensions are inconsistent
        """
        if not chunks:
            return 0

        index = self._get_index(pipeline_id)
        dimension = index.d if index is not None else len(chunks[0].embedding)
        for embedded in chunks:
            if len(embedded.embedding) != dimension:
                raise ValueError(
                    f"Embedding dimension mismatch: expected {dimension}, "
                    f"got {len(embedded.embedding)}"
                )

        if index is None:
            index = self._new_index(dimension)
            self._indexes[pipeline_id] = index

        stored = 0
        for offset in range(0, len(chunks), self.insert_batch_size):
            batch = chunks[offset : offset + self.insert_batch_size]
            inserted = db.insert_chunks(pipeline_id, batch, self.db_path)
            if not inserted:
                continue

            ids = np.array([row_id for row_id, _ in inserted], dtype=np.int64)
            index.add_with_ids(_as_matrix([e.embedding for _, e in inserted]), ids)
            stored += len(inserted)

        logger.info(
            "chunks_stored",
            pipeline_id=pipeline_id,
            stored=stored,
            skipped=len(chunks) - stored,
            total_vectors=index.ntotal,
        )
        return stored

    async def similarity_search(
        self, pipeline_id: str, embedding: List[float], limit: int
    ) -> List[RetrievedChunk]:
        """Find the chunks most similar to a query embedding.

        Args:
            pipeline_id: Pipeline to search
            embedding: Query vector
            limit: Maximum number of results

        Returns:
            RetrievedChunks ordered by descending similarity

        Raises:
            ValueError: If the query dimension does not match the index
        """
        index = self._get_index(pipeline_id)
        if index is None or index.ntotal == 0 or limit <= 0:
            return []

        if len(embedding) != index.d:
            raise ValueError(
                f"Query dimension mismatch: expected {index.d}, got {len(embedding)}"
            )

        k = min(limit, index.ntotal)
        scores, ids = index.search(_as_matrix([embedding]), k)

        hits = [
            (int(chunk_id), float(score))
            for chunk_id, score in zip(ids[0].tolist(), scores[0].tolist())
            if chunk_id != -1
        ]
        rows = db.get_chunks_by_ids([chunk_id for chunk_id, _ in hits], self.db_path)

        results = []
        for chunk_id, score in hits:
            row = rows.get(chunk_id)
            if row is None:
                continue
            results.append(
                RetrievedChunk(
                    chunk_id=chunk_id,
                    url=row["url"],
                    title=row["title"] or "",
                    content=row["content"],
                    similarity=score,
                    chunk_index=row["chunk_index"],
                    total_chunks=row["total_chunks"],
                )
            )

        logger.debug(
            "vector_search_completed",
            pipeline_id=pipeline_id,
            requested=limit,
            results_found=len(results),
        )
        return results

    async def list_distinct_urls(self, pipeline_id: str) -> List[Dict[str, Any]]:
        return db.list_indexed_urls(pipeline_id, self.db_path)

    async def count_chunks(self, pipeline_id: str) -> int:
        return db.count_chunks(pipeline_id, self.db_path)

    async def delete_by_url_prefix(self, pipeline_id: str, url_prefix: str) -> int:
        """Delete all chunks whose URL starts with url_prefix.

        Returns:
            Number of chunks deleted
        """
        chunk_ids = db.delete_chunks_by_url_prefix(pipeline_id, url_prefix, self.db_path)

        index = self._indexes.get(pipeline_id)
        if index is not None and chunk_ids:
            index.remove_ids(np.array(chunk_ids, dtype=np.int64))

        return len(chunk_ids)

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the loaded indexes."""
        return {
            "db_path": str(self.db_path),
            "loaded_pipelines": len(self._indexes),
            "vector_count": sum(
                index.ntotal for index in self._indexes.values() if index is not None
            ),
        }
