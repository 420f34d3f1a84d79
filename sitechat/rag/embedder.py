"""Batched, sanitized embedding of chunk text."""
from typing import AsyncIterator, List

import structlog

from sitechat import config
from sitechat.errors import EmbeddingError
from sitechat.llm_client import InferenceClient
from sitechat.rag.sanitize import sanitize_for_embedding

logger = structlog.get_logger()


class Embedder:
    """Embeds texts in small sequential batches."""

    def __init__(self, client: InferenceClient, batch_size: int = None):
        self.client = client
        self.batch_size = batch_size or config.EMBED_BATCH_SIZE

    async def embed_batches(self, texts: List[str]) -> AsyncIterator[List[List[float]]]:
        """Embed texts batch by batch.

        Batches run one after another; the next request is only sent once
        the previous batch has returned.

        Args:
            texts: Raw texts, sanitized before sending

        Yields:
            Vectors for each batch, in input order

        Raises:
            EmbeddingError: If any batch fails; later batches are not sent
        """
        total = len(texts)
        for offset in range(0, total, self.batch_size):
            batch = [
                sanitize_for_embedding(text)
                for text in texts[offset : offset + self.batch_size]
            ]
            try:
                vectors = await self.client.embeddings(batch)
            except EmbeddingError:
                logger.error(
                    "embedding_batch_failed",
                    offset=offset,
                    batch_size=len(batch),
                    total=total,
                )
                raise

            logger.debug(
                "embedding_batch_completed",
                embedded=min(offset + len(batch), total),
                total=total,
            )
            yield vectors

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed all texts and return one vector per text."""
        vectors: List[List[float]] = []
        async for batch in self.embed_batches(texts):
            vectors.extend(batch)
        return vectors

    async def embed_query(self, query: str) -> List[float]:
        vectors = await self.embed([query])
        return vectors[0]
