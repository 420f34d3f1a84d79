"""Indexing orchestrator: crawl, chunk, embed and store a web source.

Each (pipeline, URL) indexing run is tracked as an IndexingJob in a job
store; clients poll the job for progress while it runs in the background.
"""
import asyncio
import hashlib
import re
from pathlib import Path
from typing import Any, Dict, Optional, Set, Tuple
from urllib.parse import urlparse

import structlog

from sitechat import config, db
from sitechat.errors import (
    IndexingConflictError,
    InvalidRequestError,
    PipelineNotFoundError,
    SiteChatError,
)
from sitechat.models import (
    CrawledPage,
    EmbeddedChunk,
    IndexingJob,
    JobStatus,
    PipelineSettings,
)
from sitechat.rag.chunker import TextChunker, effective_overlap
from sitechat.rag.crawler import Crawler
from sitechat.rag.embedder import Embedder
from sitechat.rag.jobs import InMemoryJobStore, JobStore, job_key
from sitechat.rag.store_faiss import FAISSChunkStore

logger = structlog.get_logger()

NO_CONTENT_PROGRESS = "Could not extract content from this URL"
NO_CONTENT_MESSAGE = (
    f"{NO_CONTENT_PROGRESS}. The page may be protected, require "
    "authentication, or use JavaScript rendering that we couldn't process."
)
DIRECT_TEXT_TITLE = "Direct text input"

DEFAULT_PIPELINE_NAME = re.compile(r"^Pipeline \d+$")


def pipeline_name_from_url(url: str) -> str:
    """Derive a display name such as "Heroku Docs" from a source URL."""
    hostname = urlparse(url).hostname or ""
    if hostname.startswith("www."):
        hostname = hostname[len("www."):]
    if not hostname:
        return "Documentation"

    parts = hostname.split(".")
    # devcenter.heroku.com -> heroku
    main_part = parts[-2] if len(parts) > 2 else parts[0]
    return f"{main_part[:1].upper()}{main_part[1:]} Docs"


def validate_source_url(url: str) -> None:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise InvalidRequestError("url must be an absolute http(s) URL")


class IndexingService:
    """Runs indexing jobs and answers progress queries."""

    def __init__(
        self,
        store: FAISSChunkStore,
        crawler: Crawler,
        embedder: Embedder,
        job_store: JobStore = None,
        db_path: Path = None,
        chunk_overlap: int = None,
        retention_seconds: float = None,
    ):
        """Initialize the indexing service.

        Args:
            store: Chunk store
            crawler: Site crawler
            embedder: Batched embedder
            job_store: Job registry (default: process-local)
            db_path: SQLite path for pipeline lookups (default from config)
            chunk_overlap: Chunk overlap (default from config)
            retention_seconds: How long finished jobs stay visible
        """
        self.store = store
        self.crawler = crawler
        self.embedder = embedder
        self.job_store = job_store if job_store is not None else InMemoryJobStore()
        self.db_path = db_path or store.db_path
        self.chunk_overlap = (
            config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        )
        self.retention_seconds = (
            config.JOB_RETENTION_SECONDS
            if retention_seconds is None
            else retention_seconds
        )
        self._tasks: Set[asyncio.Task] = set()

    def _get_pipeline(self, pipeline_id: str) -> Dict[str, Any]:
        pipeline = db.get_pipeline(pipeline_id, self.db_path)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return pipeline

    def resolve_settings(
        self,
        pipeline_id: str,
        max_pages: Optional[int] = None,
        chunk_size: Optional[int] = None,
    ) -> Tuple[int, int, int]:
        """Return the (max_pages, chunk_size, chunk_overlap) a job would use.

        Explicit values win over the pipeline's stored settings; the overlap
        is clamped below the chunk size.
        """
        settings = PipelineSettings.from_dict(self._get_pipeline(pipeline_id)["settings"])
        max_pages = max_pages or settings.max_pages
        chunk_size = chunk_size or settings.chunk_size
        return max_pages, chunk_size, effective_overlap(chunk_size, self.chunk_overlap)

    async def start_indexing(
        self,
        pipeline_id: str,
        url: str,
        max_pages: Optional[int] = None,
        chunk_size: Optional[int] = None,
        wait: bool = False,
    ) -> IndexingJob:
        """Start indexing a URL into a pipeline.

        Args:
            pipeline_id: Target pipeline
            url: Start URL of the crawl
            max_pages: Page limit (default from pipeline settings)
            chunk_size: Chunk size (default from pipeline settings)
            wait: Run the job inline and return once it has finished

        Returns:
            The job record; it keeps changing while the job runs

        Raises:
            InvalidRequestError: If the URL is not an absolute http(s) URL
            PipelineNotFoundError: If the pipeline does not exist
            IndexingConflictError: If the same URL is already being indexed
        """
        validate_source_url(url)
        max_pages, chunk_size, _ = self.resolve_settings(pipeline_id, max_pages, chunk_size)

        key = job_key(pipeline_id, url)
        current = self.job_store.get(key)
        if current is not None and current.is_active:
            raise IndexingConflictError(pipeline_id, url)

        job = IndexingJob(pipeline_id=pipeline_id, source_url=url)
        if not self.job_store.compare_and_swap(key, current, job):
            # Another request claimed the key between get and swap
            raise IndexingConflictError(pipeline_id, url)

        logger.info(
            "indexing_job_started",
            pipeline_id=pipeline_id,
            url=url,
            max_pages=max_pages,
            chunk_size=chunk_size,
            wait=wait,
        )

        if wait:
            await self._run_job(key, job, max_pages, chunk_size)
        else:
            task = asyncio.create_task(self._run_job(key, job, max_pages, chunk_size))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return job

    def _publish(self, key: str, job: IndexingJob) -> None:
        # Shared stores hold copies, so every change is written back
        self.job_store.set(key, job)

    def _schedule_expiry(self, key: str, job: IndexingJob) -> None:
        loop = asyncio.get_running_loop()
        loop.call_later(
            self.retention_seconds, self.job_store.compare_and_swap, key, job, None
        )

    async def _run_job(
        self, key: str, job: IndexingJob, max_pages: int, chunk_size: int
    ) -> None:
        """Execute one job; failures end up on the job record, never raised."""
        first_source = False
        try:
            first_source = await self.store.count_chunks(job.pipeline_id) == 0
            await self._index_source(key, job, max_pages, chunk_size)
        except asyncio.CancelledError:
            job.fail("Indexing cancelled")
            raise
        except SiteChatError as e:
            logger.error(
                "indexing_job_failed",
                pipeline_id=job.pipeline_id,
                url=job.source_url,
                error=e.message,
            )
            job.fail("Indexing failed", message=e.message)
        except Exception as e:
            logger.exception(
                "indexing_job_crashed",
                pipeline_id=job.pipeline_id,
                url=job.source_url,
                error=str(e),
            )
            job.fail("Indexing failed", message="Unexpected error while indexing")
        finally:
            self._publish(key, job)
            self._schedule_expiry(key, job)

        logger.info(
            "indexing_job_finished",
            pipeline_id=job.pipeline_id,
            url=job.source_url,
            status=job.status.value,
            pages_indexed=job.pages_indexed,
            chunks_created=job.chunks_created,
        )

        if job.status is JobStatus.COMPLETE and first_source:
            await self._maybe_rename_pipeline(job.pipeline_id, job.source_url)

    async def _index_source(
        self, key: str, job: IndexingJob, max_pages: int, chunk_size: int
    ) -> None:
        # Step 1: crawl
        job.progress = "Crawling pages..."
        self._publish(key, job)

        pages = []
        async for event in self.crawler.crawl_events(job.source_url, max_pages):
            if isinstance(event, CrawledPage):
                pages.append(event)
            else:
                job.pages_indexed = event.crawled
                job.progress = f"Crawled {event.crawled}/{event.total or '?'} pages"
            self._publish(key, job)

        job.pages_indexed = len(pages)
        if not pages:
            job.fail(NO_CONTENT_PROGRESS, message=NO_CONTENT_MESSAGE)
            return

        # Step 2: chunk
        job.progress = "Preparing chunks..."
        self._publish(key, job)

        chunker = TextChunker(
            chunk_size=chunk_size,
            chunk_overlap=effective_overlap(chunk_size, self.chunk_overlap),
        )
        chunks = chunker.prepare_for_indexing(pages)
        logger.info(
            "pages_chunked",
            pipeline_id=job.pipeline_id,
            pages=len(pages),
            **chunker.get_chunk_stats([c.content for c in chunks]),
        )

        # Step 3: embed
        job.progress = "Generating embeddings..."
        self._publish(key, job)

        embeddings = []
        async for vectors in self.embedder.embed_batches([c.content for c in chunks]):
            embeddings.extend(vectors)
            job.chunks_created = len(embeddings)
            job.progress = f"Embedded {len(embeddings)}/{len(chunks)} chunks"
            self._publish(key, job)

        # Step 4: store
        job.progress = "Storing in database..."
        self._publish(key, job)

        await self.store.insert_chunks(
            job.pipeline_id,
            [EmbeddedChunk(chunk, vector) for chunk, vector in zip(chunks, embeddings)],
        )

        job.chunks_created = len(chunks)
        job.complete(f"Indexed {len(pages)} pages, created {len(chunks)} chunks")

    async def _maybe_rename_pipeline(self, pipeline_id: str, url: str) -> None:
        """Give a default-named pipeline a name derived from its first source.

        Only called when the pipeline held no chunks before this job.
        """
        try:
            pipeline = db.get_pipeline(pipeline_id, self.db_path)
            if pipeline is None or not DEFAULT_PIPELINE_NAME.match(pipeline["name"]):
                return

            new_name = pipeline_name_from_url(url)
            db.rename_pipeline(pipeline_id, new_name, self.db_path)
            logger.info("pipeline_auto_renamed", pipeline_id=pipeline_id, name=new_name)
        except Exception as e:
            logger.warning("pipeline_auto_rename_failed", pipeline_id=pipeline_id, error=str(e))

    def get_progress(self, pipeline_id: str, url: str) -> Optional[IndexingJob]:
        return self.job_store.get(job_key(pipeline_id, url))

    async def delete_indexed(self, pipeline_id: str, url: str) -> int:
        """Delete every chunk indexed under a URL prefix.

        Returns:
            Number of chunks deleted
        """
        if not url:
            raise InvalidRequestError("url is required")
        self._get_pipeline(pipeline_id)
        return await self.store.delete_by_url_prefix(pipeline_id, url)

    async def index_text(
        self, pipeline_id: str, text: str, title: Optional[str] = None
    ) -> Dict[str, Any]:
        """Index a block of text directly, without crawling.

        The text is stored under a synthetic text:// URL derived from its
        content, so indexing the same text twice adds nothing.

        Returns:
            Dict with the synthetic url and chunks_created

        Raises:
            EmbeddingError: If embedding fails
        """
        if not text or not text.strip():
            raise InvalidRequestError("text is required")

        pipeline = self._get_pipeline(pipeline_id)
        settings = PipelineSettings.from_dict(pipeline["settings"])

        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
        url = f"text://{pipeline_id}/{digest}"
        page = CrawledPage(url=url, title=title or DIRECT_TEXT_TITLE, content=text)

        chunker = TextChunker(
            chunk_size=settings.chunk_size,
            chunk_overlap=effective_overlap(settings.chunk_size, self.chunk_overlap),
        )
        chunks = chunker.prepare_for_indexing([page])

        if chunks:
            embeddings = await self.embedder.embed([c.content for c in chunks])
            await self.store.insert_chunks(
                pipeline_id,
                [EmbeddedChunk(chunk, vector) for chunk, vector in zip(chunks, embeddings)],
            )

        logger.info("text_indexed", pipeline_id=pipeline_id, url=url, chunks=len(chunks))
        return {"url": url, "title": page.title, "chunks_created": len(chunks)}

    async def indexed_status(self, pipeline_id: str) -> Dict[str, Any]:
        """List indexed URLs with chunk counts and the pipeline's chunk total."""
        self._get_pipeline(pipeline_id)
        urls = await self.store.list_distinct_urls(pipeline_id)
        return {
            "indexed_urls": [
                {
                    "url": entry["url"],
                    "title": entry["title"],
                    "chunk_count": entry["chunk_count"],
                    "last_indexed": entry["last_indexed"],
                }
                for entry in urls
            ],
            "total_chunks": await self.store.count_chunks(pipeline_id),
        }

    async def wait_for_jobs(self) -> None:
        """Wait for all background jobs to finish (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
