"""Answer engine: retrieve context and generate a cited answer.

The streaming path reports its lifecycle as AnswerEvents so clients can show
progress (embedding, searching, reranking, generating) before text arrives.
"""
from contextlib import aclosing
from typing import AsyncIterator, Dict, List, Optional

import structlog

from sitechat import config
from sitechat.errors import SiteChatError
from sitechat.llm_client import InferenceClient
from sitechat.models import AnswerEvent, AnswerResult, RetrievedChunk
from sitechat.rag.retriever import Retriever, build_sources, format_context

logger = structlog.get_logger()

RAG_SYSTEM_PROMPT = """You are a helpful AI assistant that answers questions based on the provided context.

Instructions:
1. Answer the question based ONLY on the provided context
2. If the context doesn't contain enough information, say so clearly
3. Be concise and accurate
4. When citing sources, mention the page title if available

Context will be provided in the following format:
<context>
[Source title] (relevance: X%)
Content from the source...
</context>"""

NO_INFORMATION_ANSWER = "I don't have any information about that in my knowledge base."

UNEXPECTED_ERROR_MESSAGE = "Failed to generate a response"


def build_messages(
    query: str,
    context: str,
    history: Optional[List[Dict[str, str]]] = None,
) -> List[Dict[str, str]]:
    """Build the chat messages for a grounded answer.

    Args:
        query: User question
        context: Formatted context
        history: Earlier user/assistant turns, oldest first

    Returns:
        System prompt, history, then the context-bearing user message
    """
    messages = [{"role": "system", "content": RAG_SYSTEM_PROMPT}]
    for turn in history or []:
        if turn.get("role") in ("user", "assistant") and turn.get("content"):
            messages.append({"role": turn["role"], "content": turn["content"]})
    messages.append(
        {"role": "user", "content": f"Context:\n{context}\n\nQuestion: {query}"}
    )
    return messages


class AnswerEngine:
    """Retrieval-augmented answering over one pipeline's chunks."""

    def __init__(self, retriever: Retriever, client: InferenceClient):
        self.retriever = retriever
        self.client = client

    async def stream_answer(
        self,
        pipeline_id: str,
        query: str,
        top_n: int = None,
        use_reranking: bool = True,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> AsyncIterator[AnswerEvent]:
        """Answer a question as a stream of lifecycle events.

        Order: step(embedding), step(searching), step(reranking) when
        enabled, sources, step(generating), text fragments, done. With no
        candidates the stream is sources([]), a fixed text and done, and
        generation is never called. A failure ends the stream with a single
        error event; text already yielded stays yielded.

        Closing the returned generator early closes the upstream generation
        request as well.
        """
        top_n = top_n or config.DEFAULT_TOP_N
        fragments = 0

        try:
            yield AnswerEvent.step("embedding")
            query_embedding = await self.retriever.embed_query(query)

            yield AnswerEvent.step("searching")
            candidates = await self.retriever.search(
                pipeline_id, query_embedding, top_n, use_reranking
            )

            if not candidates:
                logger.info("answer_no_candidates", pipeline_id=pipeline_id)
                yield AnswerEvent.sources([])
                yield AnswerEvent.text(NO_INFORMATION_ANSWER)
                yield AnswerEvent.done()
                return

            if use_reranking:
                yield AnswerEvent.step("reranking")
            selected = (
                await self.retriever.select(query, candidates, top_n, use_reranking)
            ).value

            yield AnswerEvent.sources(build_sources(selected))

            yield AnswerEvent.step("generating")
            messages = build_messages(query, format_context(selected), history)

            async with aclosing(self.client.stream_chat(messages)) as stream:
                async for fragment in stream:
                    fragments += 1
                    yield AnswerEvent.text(fragment)

            logger.info(
                "answer_stream_completed",
                pipeline_id=pipeline_id,
                sources=len(selected),
                fragments=fragments,
            )
            yield AnswerEvent.done()

        except SiteChatError as e:
            logger.error(
                "answer_stream_failed",
                pipeline_id=pipeline_id,
                error=e.message,
                fragments=fragments,
            )
            yield AnswerEvent.error(e.message)
        except Exception as e:
            logger.exception(
                "answer_stream_crashed",
                pipeline_id=pipeline_id,
                error=str(e),
                fragments=fragments,
            )
            yield AnswerEvent.error(UNEXPECTED_ERROR_MESSAGE)

    async def answer(
        self,
        pipeline_id: str,
        query: str,
        top_n: int = None,
        use_reranking: bool = True,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> AnswerResult:
        """Answer a question in one response.

        Raises:
            EmbeddingError: If the query cannot be embedded
            GenerationError: If generation fails
        """
        selected = await self.retriever.retrieve(pipeline_id, query, top_n, use_reranking)
        if not selected:
            return AnswerResult(answer=NO_INFORMATION_ANSWER, sources=[])

        messages = build_messages(query, format_context(selected), history)
        text = await self.client.chat(messages)

        logger.info("answer_completed", pipeline_id=pipeline_id, sources=len(selected))
        return AnswerResult(answer=text, sources=build_sources(selected))

    async def search(
        self,
        pipeline_id: str,
        query: str,
        top_k: int = None,
        rerank: bool = True,
    ) -> List[RetrievedChunk]:
        """Retrieve the best chunks for a query without generating an answer."""
        return await self.retriever.retrieve(pipeline_id, query, top_k, rerank)
