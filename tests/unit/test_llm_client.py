import json

import httpx
import pytest

from sitechat.errors import EmbeddingError, GenerationError, RerankError
from sitechat.llm_client import InferenceClient, parse_stream_line
from tests.fakes import FakeInference, hash_embedding


def make_client(handler, **kwargs) -> InferenceClient:
    return InferenceClient(
        chat_url="https://chat.test",
        chat_key="chat-key",
        embedding_url="https://embed.test/",
        embedding_key="embed-key",
        rerank_url="https://rerank.test",
        rerank_key="rerank-key",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_embeddings_posts_to_embedding_service():
    requests = []

    def handler(request):
        requests.append(request)
        return FakeInference().handler(request)

    client = make_client(handler)
    vectors = await client.embeddings(["alpha", "beta"], model="embed-model")

    assert vectors == [hash_embedding("alpha"), hash_embedding("beta")]
    request = requests[0]
    assert str(request.url) == "https://embed.test/v1/embeddings"
    assert request.headers["authorization"] == "Bearer embed-key"
    assert json.loads(request.content) == {"model": "embed-model", "input": ["alpha", "beta"]}


@pytest.mark.asyncio
async def test_embeddings_are_returned_in_input_order():
    def handler(request):
        data = [
            {"index": 1, "embedding": [0.0, 1.0]},
            {"index": 0, "embedding": [1.0, 0.0]},
        ]
        return httpx.Response(200, json={"data": data})

    vectors = await make_client(handler).embeddings(["first", "second"])

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="down"),
        httpx.Response(200, json={"unexpected": True}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]}),
    ],
    ids=["server-error", "missing-data", "invalid-json", "count-mismatch"],
)
async def test_embedding_failures_raise(response):
    client = make_client(lambda request: response)

    with pytest.raises(EmbeddingError):
        await client.embeddings(["one", "two"])


@pytest.mark.asyncio
async def test_embedding_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(EmbeddingError):
        await make_client(handler).embeddings(["one"])


@pytest.mark.asyncio
async def test_rerank_sends_query_and_documents():
    requests = []

    def handler(request):
        requests.append(json.loads(request.content))
        return httpx.Response(
            200, json={"results": [{"index": 1, "relevance_score": 0.9}]}
        )

    results = await make_client(handler).rerank("deploy", ["a", "b"], top_n=1)

    assert results == [{"index": 1, "relevance_score": 0.9}]
    assert requests[0]["query"] == "deploy"
    assert requests[0]["documents"] == ["a", "b"]
    assert requests[0]["top_n"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="busy"),
        httpx.Response(200, json={"results": "nope"}),
        httpx.Response(200, json={}),
    ],
    ids=["server-error", "not-a-list", "missing-results"],
)
async def test_rerank_failures_raise(response):
    with pytest.raises(RerankError):
        await make_client(lambda request: response).rerank("q", ["a"], top_n=1)


@pytest.mark.asyncio
async def test_chat_returns_message_content():
    fake = FakeInference()
    client = make_client(fake.handler)

    answer = await client.chat([{"role": "user", "content": "hi"}], temperature=0.2)

    assert answer == "Deploys use the CLI."
    assert fake.chat_requests[0]["stream"] is False
    assert fake.chat_requests[0]["temperature"] == 0.2


@pytest.mark.asyncio
async def test_chat_error_raises_generation_error():
    fake = FakeInference()
    fake.fail_chat = True

    with pytest.raises(GenerationError):
        await make_client(fake.handler).chat([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_stream_chat_yields_fragments_from_both_framings():
    fake = FakeInference()
    fake.chat_fragments = ["One ", "two ", "three."]
    client = make_client(fake.handler)

    fragments = [
        fragment
        async for fragment in client.stream_chat([{"role": "user", "content": "count"}])
    ]

    assert fragments == ["One ", "two ", "three."]
    assert fake.chat_requests[0]["stream"] is True
    assert "temperature" not in fake.chat_requests[0]


@pytest.mark.asyncio
async def test_stream_chat_rejected_before_stream_raises():
    fake = FakeInference()
    fake.fail_chat = True
    client = make_client(fake.handler)

    with pytest.raises(GenerationError, match="500"):
        async for _ in client.stream_chat([{"role": "user", "content": "hi"}]):
            pass


def test_parse_stream_line():
    chunk = json.dumps({"choices": [{"delta": {"content": "hey"}}]})

    assert parse_stream_line(f"data: {chunk}") == "hey"
    assert parse_stream_line(f"data:{chunk}") == "hey"
    assert parse_stream_line("data: [DONE]") is None
    assert parse_stream_line("data: {broken") is None
    assert parse_stream_line(": keep-alive") is None
    assert parse_stream_line("") is None
    assert parse_stream_line('data: {"choices": [{"delta": {}}]}') is None
