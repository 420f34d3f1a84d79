"""Retriever for semantic search over indexed pages.

Handles:
- Query embedding generation
- FAISS similarity search with an enlarged candidate pool for reranking
- Reranking with similarity-order fallback
- Context and citation formatting
"""
from typing import List

import structlog

from sitechat import config
from sitechat.llm_client import InferenceClient
from sitechat.models import FallbackOutcome, RetrievedChunk, Source, TieredResult
from sitechat.rag.embedder import Embedder
from sitechat.rag.reranker import rerank_with_fallback
from sitechat.rag.sanitize import sanitize_context
from sitechat.rag.store_faiss import FAISSChunkStore

logger = structlog.get_logger()

CONTEXT_SEPARATOR = "\n\n---\n\n"
MIN_TRUNCATED_PART_CHARS = 200


def format_context(chunks: List[RetrievedChunk], max_chars: int = None) -> str:
    """Format selected chunks as the generation context.

    Each chunk is rendered as "[title] (relevance: X.X%)" followed by its
    sanitized text; parts keep the selection order and the whole context
    stays within max_chars.

    Args:
        chunks: Selected chunks, best first
        max_chars: Maximum total characters (default config.CONTEXT_MAX_CHARS)

    Returns:
        Context string ready for the prompt
    """
    max_chars = max_chars or config.CONTEXT_MAX_CHARS
    context_parts = []
    total_chars = 0

    for chunk in chunks:
        part = (
            f"[{chunk.title or 'Unknown source'}] "
            f"(relevance: {chunk.relevance * 100:.1f}%)\n"
            f"{sanitize_context(chunk.content, max_chars)}"
        )
        if context_parts:
            part = CONTEXT_SEPARATOR + part

        # Check if adding this would exceed max_chars
        if total_chars + len(part) > max_chars:
            remaining = max_chars - total_chars
            if remaining > MIN_TRUNCATED_PART_CHARS:
                context_parts.append(part[:remaining])
            break

        context_parts.append(part)
        total_chars += len(part)

    context = "".join(context_parts)

    logger.debug("context_formatted", num_chunks=len(context_parts), total_chars=len(context))

    return context


def build_sources(chunks: List[RetrievedChunk]) -> List[Source]:
    return [Source.from_chunk(chunk) for chunk in chunks]


class Retriever:
    """Semantic retriever for the answer engine."""

    def __init__(
        self,
        store: FAISSChunkStore,
        embedder: Embedder,
        client: InferenceClient,
        candidate_multiplier: int = None,
    ):
        """Initialize the retriever.

        Args:
            store: Chunk store to search
            embedder: Embedder for queries
            client: Inference client used for reranking
            candidate_multiplier: Candidate pool size relative to top_n when reranking
        """
        self.store = store
        self.embedder = embedder
        self.client = client
        self.candidate_multiplier = (
            candidate_multiplier or config.RERANK_CANDIDATE_MULTIPLIER
        )

    async def embed_query(self, query: str) -> List[float]:
        return await self.embedder.embed_query(query)

    async def search(
        self,
        pipeline_id: str,
        query_embedding: List[float],
        top_n: int,
        use_reranking: bool,
    ) -> List[RetrievedChunk]:
        """Fetch similarity-ordered candidates.

        When reranking, top_n * candidate_multiplier candidates are fetched
        so the reranker has something to choose from.
        """
        limit = top_n * self.candidate_multiplier if use_reranking else top_n
        candidates = await self.store.similarity_search(pipeline_id, query_embedding, limit)

        logger.info(
            "candidates_retrieved",
            pipeline_id=pipeline_id,
            limit=limit,
            found=len(candidates),
            top_similarity=candidates[0].similarity if candidates else None,
        )
        return candidates

    async def select(
        self,
        query: str,
        candidates: List[RetrievedChunk],
        top_n: int,
        use_reranking: bool,
    ) -> TieredResult[List[RetrievedChunk]]:
        """Pick the final top_n chunks, reranked when enabled."""
        if not use_reranking:
            return TieredResult(candidates[:top_n], FallbackOutcome.PRIMARY)

        result = await rerank_with_fallback(self.client, query, candidates, top_n)
        logger.info(
            "candidates_selected",
            outcome=result.outcome.value,
            selected=len(result.value),
        )
        return result

    async def retrieve(
        self,
        pipeline_id: str,
        query: str,
        top_n: int = None,
        use_reranking: bool = True,
    ) -> List[RetrievedChunk]:
        """Embed, search and select in one call.

        Returns:
            Up to top_n chunks, best first

        Raises:
            EmbeddingError: If the query cannot be embedded
        """
        top_n = top_n or config.DEFAULT_TOP_N
        query_embedding = await self.embed_query(query)
        candidates = await self.search(pipeline_id, query_embedding, top_n, use_reranking)
        if not candidates:
            return []
        result = await self.select(query, candidates, top_n, use_reranking)
        return result.value
