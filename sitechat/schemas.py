"""Request bodies accepted by the HTTP API."""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class SettingsUpdate(BaseModel):
    """Partial pipeline settings; omitted fields keep their stored value."""
    chunk_size: Optional[int] = Field(default=None, ge=200, le=4000)
    max_pages: Optional[int] = Field(default=None, ge=1, le=500)
    top_n: Optional[int] = Field(default=None, ge=1, le=20)
    use_reranking: Optional[bool] = None


class CreatePipelineRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    settings: Optional[SettingsUpdate] = None


class IndexRequest(BaseModel):
    """Start indexing a web source."""
    url: str = Field(..., min_length=1, description="Start URL of the crawl")
    max_pages: Optional[int] = Field(default=None, ge=1, le=500)
    chunk_size: Optional[int] = Field(default=None, ge=200, le=4000)
    sync: bool = Field(default=False, description="Wait for the job to finish")


class TextDocumentRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=200_000)
    title: Optional[str] = Field(default=None, max_length=200)


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Ask a question against a pipeline."""
    message: str = Field(..., min_length=1, max_length=2000)
    history: List[ChatTurn] = Field(default_factory=list, max_length=20)
    stream: bool = True
    top_n: Optional[int] = Field(default=None, ge=1, le=20)
    use_reranking: Optional[bool] = None


class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    top_k: int = Field(default=5, ge=1, le=50)
    rerank: bool = True
