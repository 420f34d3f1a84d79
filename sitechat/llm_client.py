"""HTTP client for the hosted inference services (chat, embeddings, rerank)."""
import json
from typing import AsyncIterator, Dict, List, Optional

import httpx
import structlog

from sitechat import config
from sitechat.errors import EmbeddingError, GenerationError, RerankError

logger = structlog.get_logger()


class InferenceClient:
    """Async client for OpenAI-compatible chat/embeddings and Cohere-style rerank.

    Each capability may live behind its own base URL and API key.
    """

    def __init__(
        self,
        chat_url: str = None,
        chat_key: str = None,
        embedding_url: str = None,
        embedding_key: str = None,
        rerank_url: str = None,
        rerank_key: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None,
    ):
        """Initialize inference client.

        Args:
            chat_url: Chat completions base URL (defaults to config.INFERENCE_URL)
            chat_key: Chat API key
            embedding_url: Embeddings base URL (defaults to config.EMBEDDING_URL)
            embedding_key: Embeddings API key
            rerank_url: Rerank base URL (defaults to config.RERANKING_URL)
            rerank_key: Rerank API key
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.chat_url = (chat_url or config.INFERENCE_URL).rstrip("/")
        self.chat_key = chat_key if chat_key is not None else config.INFERENCE_KEY
        self.embedding_url = (embedding_url or config.EMBEDDING_URL).rstrip("/")
        self.embedding_key = (
            embedding_key if embedding_key is not None else config.EMBEDDING_KEY
        )
        self.rerank_url = (rerank_url or config.RERANKING_URL).rstrip("/")
        self.rerank_key = rerank_key if rerank_key is not None else config.RERANKING_KEY
        self.timeout = timeout or config.INFERENCE_TIMEOUT
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    @staticmethod
    def _headers(api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def embeddings(self, texts: List[str], model: str = None) -> List[List[float]]:
        """Generate embeddings for a batch of texts.

        Args:
            texts: Texts to embed
            model: Model to use (defaults to config.EMBEDDING_MODEL)

        Returns:
            One vector per input text, in input order

        Raises:
            EmbeddingError: On transport errors, non-2xx responses or a
                malformed response body
        """
        model = model or config.EMBEDDING_MODEL
        payload = {"model": model, "input": texts}

        try:
            async with self._client() as client:
                logger.debug("embedding_request", model=model, batch_size=len(texts))

                response = await client.post(
                    f"{self.embedding_url}/v1/embeddings",
                    json=payload,
                    headers=self._headers(self.embedding_key),
                )
        except httpx.HTTPError as e:
            logger.error("embedding_http_error", error=str(e))
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(
                "embedding_request_rejected",
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise EmbeddingError(f"Embedding failed ({response.status_code})")

        try:
            items = response.json()["data"]
            if all("index" in item for item in items):
                items = sorted(items, key=lambda item: item["index"])
            vectors = [item["embedding"] for item in items]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError("Embedding response was malformed") from e

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding service returned {len(vectors)} vectors for {len(texts)} texts"
            )

        return vectors

    async def rerank(
        self,
        query: str,
        documents: List[str],
        top_n: int,
        model: str = None,
    ) -> List[Dict]:
        """Rank documents against a query.

        Returns:
            List of {"index", "relevance_score"} dicts, best first

        Raises:
            RerankError: On any failure, including a malformed body
        """
        model = model or config.RERANK_MODEL
        payload = {
            "model": model,
            "query": query,
            "documents": documents,
            "top_n": top_n,
        }

        try:
            async with self._client() as client:
                logger.debug("rerank_request", model=model, document_count=len(documents))

                response = await client.post(
                    f"{self.rerank_url}/v1/rerank",
                    json=payload,
                    headers=self._headers(self.rerank_key),
                )
                response.raise_for_status()
                results = response.json()["results"]
        except httpx.HTTPError as e:
            logger.error("rerank_http_error", error=str(e))
            raise RerankError(f"Rerank request failed: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            raise RerankError("Rerank response was malformed") from e

        if not isinstance(results, list):
            raise RerankError("Rerank response was malformed")

        return results

    def _chat_payload(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str],
        stream: bool,
        temperature: Optional[float],
    ) -> Dict:
        payload = {
            "model": model or config.CHAT_MODEL,
            "messages": messages,
            "stream": stream,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Send a non-streaming chat completion request.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to config.CHAT_MODEL)
            temperature: Sampling temperature

        Returns:
            The assistant message content

        Raises:
            GenerationError: On API errors
        """
        payload = self._chat_payload(messages, model, False, temperature)

        try:
            async with self._client() as client:
                logger.info(
                    "chat_request",
                    model=payload["model"],
                    message_count=len(messages),
                    stream=False,
                )

                response = await client.post(
                    f"{self.chat_url}/v1/chat/completions",
                    json=payload,
                    headers=self._headers(self.chat_key),
                )
                response.raise_for_status()
                content = response.json()["choices"][0]["message"]["content"]
        except httpx.HTTPError as e:
            logger.error(
                "chat_http_error",
                error=str(e),
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise GenerationError(f"Generation request failed: {e}") from e
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GenerationError("Generation response was malformed") from e

        logger.info("chat_response", model=payload["model"], response_length=len(content))
        return content

    async def stream_chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat completion as text fragments.

        Closing the generator closes the upstream HTTP response.

        Yields:
            Non-empty content deltas in arrival order

        Raises:
            GenerationError: On API errors, before or during the stream
        """
        payload = self._chat_payload(messages, model, True, temperature)
        fragments = 0

        try:
            async with self._client() as client:
                logger.info(
                    "chat_request",
                    model=payload["model"],
                    message_count=len(messages),
                    stream=True,
                )

                async with client.stream(
                    "POST",
                    f"{self.chat_url}/v1/chat/completions",
                    json=payload,
                    headers=self._headers(self.chat_key),
                ) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        logger.error(
                            "chat_stream_rejected",
                            status_code=response.status_code,
                            body=body[:300].decode("utf-8", "replace"),
                        )
                        raise GenerationError(
                            f"Generation failed ({response.status_code})"
                        )

                    async for line in response.aiter_lines():
                        content = parse_stream_line(line)
                        if content:
                            fragments += 1
                            yield content
        except httpx.HTTPError as e:
            logger.error("chat_stream_http_error", error=str(e), fragments=fragments)
            raise GenerationError(f"Generation stream failed: {e}") from e

        logger.info("chat_stream_completed", model=payload["model"], fragments=fragments)


def parse_stream_line(line: str) -> Optional[str]:
    """Extract the content delta from one server-sent-events line.

    Accepts both "data: {...}" and "data:{...}" framings; ignores the
    [DONE] sentinel and lines that are not valid JSON.
    """
    if not line.startswith("data:"):
        return None

    data = line[len("data:"):].strip()
    if not data or data == "[DONE]":
        return None

    try:
        chunk = json.loads(data)
        return chunk["choices"][0]["delta"].get("content")
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        logger.debug("chat_stream_line_skipped", line=line[:100])
        return None
