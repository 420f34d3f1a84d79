"""Wiring of the indexing and answering components."""
from dataclasses import dataclass
from pathlib import Path

import httpx

from sitechat.llm_client import InferenceClient
from sitechat.rag.answer import AnswerEngine
from sitechat.rag.crawler import Crawler, PageFetcher
from sitechat.rag.embedder import Embedder
from sitechat.rag.extractor import ContentExtractor, ReaderClient
from sitechat.rag.ingest import IndexingService
from sitechat.rag.jobs import JobStore
from sitechat.rag.retriever import Retriever
from sitechat.rag.store_faiss import FAISSChunkStore


@dataclass
class Services:
    store: FAISSChunkStore
    client: InferenceClient
    indexing: IndexingService
    engine: AnswerEngine

    @property
    def db_path(self) -> Path:
        return self.store.db_path


def build_services(
    db_path: Path = None,
    inference_transport: httpx.AsyncBaseTransport = None,
    web_transport: httpx.AsyncBaseTransport = None,
    job_store: JobStore = None,
    retention_seconds: float = None,
) -> Services:
    """Create the component graph.

    Args:
        db_path: SQLite path (default from config)
        inference_transport: httpx transport for the inference services
        web_transport: httpx transport for page fetches and the reader service
        job_store: Job registry (default: process-local)
        retention_seconds: How long finished jobs stay visible

    Returns:
        Services bundle shared by the API and the CLI
    """
    store = FAISSChunkStore(db_path=db_path)
    client = InferenceClient(transport=inference_transport)
    embedder = Embedder(client)

    crawler = Crawler(
        fetcher=PageFetcher(transport=web_transport),
        extractor=ContentExtractor(reader=ReaderClient(transport=web_transport)),
    )
    indexing = IndexingService(
        store,
        crawler,
        embedder,
        job_store=job_store,
        retention_seconds=retention_seconds,
    )
    engine = AnswerEngine(Retriever(store, embedder, client), client)

    return Services(store=store, client=client, indexing=indexing, engine=engine)
