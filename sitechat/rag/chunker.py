"""Text chunking with overlap for the indexing pipeline.

Implements character-based chunking to avoid tokenizer dependencies. The
output depends only on (text, chunk_size, overlap), so re-chunking after a
settings change is reproducible.
"""
from typing import Iterable, List
import structlog

from sitechat import config
from sitechat.models import CrawledPage, IndexableChunk

logger = structlog.get_logger()


class TextChunker:
    """Character-based text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
        min_chunk_chars: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum window size in characters (default from config)
            chunk_overlap: Characters shared by neighbouring windows (default from config)
            min_chunk_chars: Chunks shorter than this are dropped as noise
        """
        self.chunk_size = chunk_size or config.DEFAULT_CHUNK_SIZE
        self.chunk_overlap = (
            config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        )
        self.min_chunk_chars = min_chunk_chars or config.MIN_CHUNK_CHARS

        # Validate parameters
        if self.chunk_overlap < 0:
            raise ValueError(f"Overlap ({self.chunk_overlap}) must not be negative")
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )

    def chunk_text(self, text: str) -> List[str]:
        """Split text into overlapping chunks.

        Each window is cut at the last paragraph break past its midpoint,
        else at the last sentence break past its midpoint, else at the raw
        offset. A remaining tail shorter than half a chunk is folded into
        the previous chunk.

        Args:
            text: Text to chunk

        Returns:
            Ordered list of chunk strings, each at least min_chunk_chars long
        """
        if not text:
            return []

        text_length = len(text)
        half_chunk = self.chunk_size / 2
        chunks: List[str] = []
        start = 0

        while start < text_length:
            end = start + self.chunk_size
            if end < text_length:
                end = self._find_boundary(text, start, end)

            chunks.append(text[start:end].strip())

            if end >= text_length:
                break

            # Move to next chunk with overlap
            next_start = end - self.chunk_overlap
            if next_start <= start:
                next_start = end

            # Avoid creating tiny final chunks
            if text_length - next_start < half_chunk:
                tail = text[end:].strip()
                if tail:
                    chunks[-1] = f"{chunks[-1]} {tail}"
                break

            start = next_start

        kept = [chunk for chunk in chunks if len(chunk) >= self.min_chunk_chars]

        logger.debug(
            "text_chunked",
            text_length=text_length,
            chunk_count=len(kept),
            dropped=len(chunks) - len(kept),
        )

        return kept

    def _find_boundary(self, text: str, start: int, end: int) -> int:
        """Pick the cut position for the window text[start:end]."""
        midpoint = start + self.chunk_size / 2

        paragraph_break = text.rfind("\n\n", start, end)
        if paragraph_break > midpoint:
            return paragraph_break

        sentence_break = text.rfind(". ", start, end)
        if sentence_break > midpoint:
            return sentence_break + 1

        return end

    def prepare_for_indexing(self, pages: Iterable[CrawledPage]) -> List[IndexableChunk]:
        """Chunk every page and number the chunks per page.

        Args:
            pages: Crawled pages in crawl order

        Returns:
            Flat list of IndexableChunk objects
        """
        indexable: List[IndexableChunk] = []
        for page in pages:
            texts = self.chunk_text(page.content)
            for chunk_index, content in enumerate(texts):
                indexable.append(
                    IndexableChunk(
                        url=page.url,
                        title=page.title,
                        content=content,
                        chunk_index=chunk_index,
                        total_chunks=len(texts),
                    )
                )
        return indexable

    def get_chunk_stats(self, chunks: List[str]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: Chunk strings

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }


def chunk_text(text: str, chunk_size: int, overlap: int) -> List[str]:
    """Chunk text with explicit sizes (convenience function)."""
    return TextChunker(chunk_size=chunk_size, chunk_overlap=overlap).chunk_text(text)


def effective_overlap(chunk_size: int, overlap: int = None) -> int:
    """Clamp the configured overlap so it stays below the chunk size."""
    overlap = config.CHUNK_OVERLAP if overlap is None else overlap
    if overlap >= chunk_size:
        return chunk_size // 5
    return overlap


def prepare_for_indexing(
    pages: Iterable[CrawledPage], chunk_size: int, overlap: int
) -> List[IndexableChunk]:
    """Chunk crawled pages with explicit sizes (convenience function)."""
    chunker = TextChunker(chunk_size=chunk_size, chunk_overlap=overlap)
    return chunker.prepare_for_indexing(pages)
