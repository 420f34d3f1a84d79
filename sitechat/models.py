"""Domain models for crawling, indexing and answering."""
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from sitechat import config

T = TypeVar("T")


@dataclass(frozen=True)
class CrawledPage:
    """A page that survived extraction during a crawl."""

    url: str
    title: str
    content: str


@dataclass(frozen=True)
class IndexableChunk:
    """A bounded slice of a page's text, the unit of embedding."""

    url: str
    title: str
    content: str
    chunk_index: int
    total_chunks: int


@dataclass(frozen=True)
class EmbeddedChunk:
    chunk: IndexableChunk
    embedding: List[float]


@dataclass(frozen=True)
class CrawlProgress:
    crawled: int
    total: Optional[int]
    current_url: Optional[str] = None


class JobStatus(str, Enum):
    INDEXING = "indexing"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class IndexingJob:
    """Progress record for one (pipeline, source URL) indexing run.

    Status only moves forward: indexing -> complete | error.
    """

    pipeline_id: str
    source_url: str
    status: JobStatus = JobStatus.INDEXING
    progress: str = "Starting crawl..."
    pages_indexed: int = 0
    chunks_created: int = 0
    message: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status is JobStatus.INDEXING

    def complete(self, progress: str) -> None:
        self._finish(JobStatus.COMPLETE)
        self.progress = progress

    def fail(self, progress: str, message: Optional[str] = None) -> None:
        self._finish(JobStatus.ERROR)
        self.progress = progress
        self.message = message or progress

    def _finish(self, status: JobStatus) -> None:
        if self.status is not JobStatus.INDEXING:
            raise RuntimeError(
                f"Job already finished with status '{self.status.value}'"
            )
        self.status = status
        self.finished_at = datetime.now(timezone.utc)

    def snapshot(self) -> Dict[str, Any]:
        """Serializable view for progress-polling clients."""
        return {
            "status": self.status.value,
            "progress": self.progress,
            "pages_indexed": self.pages_indexed,
            "chunks_created": self.chunks_created,
            "message": self.message,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(frozen=True)
class RetrievedChunk:
    """A stored chunk returned by similarity search.

    ``rerank_score`` is set once the chunk has passed through the reranker;
    identity fields never change.
    """

    chunk_id: int
    url: str
    title: str
    content: str
    similarity: float
    chunk_index: int = 0
    total_chunks: int = 1
    rerank_score: Optional[float] = None

    @property
    def relevance(self) -> float:
        if self.rerank_score is not None:
            return self.rerank_score
        return self.similarity

    def with_rerank_score(self, score: float) -> "RetrievedChunk":
        return replace(self, rerank_score=score)


@dataclass(frozen=True)
class Source:
    """Citation shown next to an answer."""

    url: str
    title: str
    snippet: str

    @classmethod
    def from_chunk(cls, chunk: RetrievedChunk) -> "Source":
        content = chunk.content
        snippet = content[: config.SNIPPET_CHARS]
        if len(content) > config.SNIPPET_CHARS:
            snippet += "..."
        return cls(url=chunk.url, title=chunk.title or "Unknown", snippet=snippet)

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "title": self.title, "snippet": self.snippet}


class AnswerEventType(str, Enum):
    STEP = "step"
    SOURCES = "sources"
    TEXT = "text"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class AnswerEvent:
    """One lifecycle signal of a streamed answer."""

    type: AnswerEventType
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def step(cls, name: str) -> "AnswerEvent":
        return cls(AnswerEventType.STEP, {"step": name})

    @classmethod
    def sources(cls, sources: List[Source]) -> "AnswerEvent":
        return cls(AnswerEventType.SOURCES, {"sources": [s.to_dict() for s in sources]})

    @classmethod
    def text(cls, content: str) -> "AnswerEvent":
        return cls(AnswerEventType.TEXT, {"content": content})

    @classmethod
    def done(cls) -> "AnswerEvent":
        return cls(AnswerEventType.DONE)

    @classmethod
    def error(cls, message: str) -> "AnswerEvent":
        return cls(AnswerEventType.ERROR, {"message": message})

    @property
    def is_terminal(self) -> bool:
        return self.type in (AnswerEventType.DONE, AnswerEventType.ERROR)

    def to_sse(self) -> str:
        return f"event: {self.type.value}\ndata: {json.dumps(self.data)}\n\n"


@dataclass(frozen=True)
class AnswerResult:
    answer: str
    sources: List[Source]

    def to_dict(self) -> Dict[str, Any]:
        return {"answer": self.answer, "sources": [s.to_dict() for s in self.sources]}


class FallbackOutcome(str, Enum):
    """Which tier of a two-tier strategy produced a result."""

    PRIMARY = "primary"
    FALLBACK = "fallback"
    BOTH_FAILED = "both_failed"


@dataclass(frozen=True)
class TieredResult(Generic[T]):
    value: T
    outcome: FallbackOutcome


@dataclass(frozen=True)
class PipelineSettings:
    chunk_size: int = config.DEFAULT_CHUNK_SIZE
    max_pages: int = config.DEFAULT_MAX_PAGES
    top_n: int = config.DEFAULT_TOP_N
    use_reranking: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PipelineSettings":
        """Build settings from stored JSON, ignoring unknown keys."""
        data = data or {}
        defaults = cls()
        return cls(
            chunk_size=int(data.get("chunk_size", defaults.chunk_size)),
            max_pages=int(data.get("max_pages", defaults.max_pages)),
            top_n=int(data.get("top_n", defaults.top_n)),
            use_reranking=bool(data.get("use_reranking", defaults.use_reranking)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_size": self.chunk_size,
            "max_pages": self.max_pages,
            "top_n": self.top_n,
            "use_reranking": self.use_reranking,
        }
