"""Rerank retrieved chunks, falling back to similarity order on failure."""
from typing import List

import structlog

from sitechat.llm_client import InferenceClient
from sitechat.models import FallbackOutcome, RetrievedChunk, TieredResult

logger = structlog.get_logger()


async def rerank_with_fallback(
    client: InferenceClient,
    query: str,
    candidates: List[RetrievedChunk],
    top_n: int,
) -> TieredResult[List[RetrievedChunk]]:
    """Reorder candidates with the rerank service.

    Args:
        client: Inference client
        query: User question
        candidates: Chunks in similarity order
        top_n: Number of chunks to keep

    Returns:
        TieredResult tagged primary (service order, out-of-range indices
        dropped) or fallback (the first top_n candidates). Rerank failures
        are logged and never raised.
    """
    if not candidates:
        return TieredResult([], FallbackOutcome.PRIMARY)

    fallback = TieredResult(candidates[:top_n], FallbackOutcome.FALLBACK)

    try:
        results = await client.rerank(
            query, [chunk.content for chunk in candidates], top_n
        )
    except Exception as e:
        logger.warning(
            "rerank_failed_using_similarity_order",
            error=str(e),
            candidate_count=len(candidates),
        )
        return fallback

    reranked: List[RetrievedChunk] = []
    seen = set()
    for result in results:
        try:
            index = int(result["index"])
            score = float(result["relevance_score"])
        except (KeyError, TypeError, ValueError):
            continue
        if not 0 <= index < len(candidates) or index in seen:
            continue
        seen.add(index)
        reranked.append(candidates[index].with_rerank_score(score))

    if not reranked:
        logger.warning(
            "rerank_empty_using_similarity_order",
            result_count=len(results),
            candidate_count=len(candidates),
        )
        return fallback

    return TieredResult(reranked[:top_n], FallbackOutcome.PRIMARY)
