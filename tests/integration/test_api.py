import asyncio
import json

import pytest

from sitechat.main import create_app

START_URL = "https://docs.example.com/"


def parse_sse(body: str):
    """Split a text/event-stream body into (event, data) pairs."""
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.split("\n"))
        events.append((lines["event"], json.loads(lines["data"])))
    return events


@pytest.fixture
def client(services):
    return create_app(services).test_client()


class TestPipelines:
    """Pipeline creation, lookup and settings."""

    @pytest.mark.asyncio
    async def test_create_with_defaults(self, client):
        response = await client.post("/api/pipelines")

        assert response.status_code == 201
        data = await response.get_json()
        assert data["name"] == "Pipeline 1"
        assert data["settings"] == {
            "chunk_size": 1000,
            "max_pages": 20,
            "top_n": 5,
            "use_reranking": True,
        }

    @pytest.mark.asyncio
    async def test_create_and_get(self, client):
        response = await client.post(
            "/api/pipelines",
            json={"name": "Handbook", "settings": {"top_n": 3}},
        )
        pipeline_id = (await response.get_json())["id"]

        response = await client.get(f"/api/pipelines/{pipeline_id}")

        assert response.status_code == 200
        data = await response.get_json()
        assert data["name"] == "Handbook"
        assert data["settings"]["top_n"] == 3
        assert data["settings"]["max_pages"] == 20

    @pytest.mark.asyncio
    async def test_update_settings(self, client, pipeline):
        response = await client.patch(
            f"/api/pipelines/{pipeline['id']}/settings",
            json={"max_pages": 5, "use_reranking": False},
        )

        assert response.status_code == 200
        settings = (await response.get_json())["settings"]
        assert settings["max_pages"] == 5
        assert settings["use_reranking"] is False
        assert settings["chunk_size"] == 1000

    @pytest.mark.asyncio
    async def test_invalid_settings_are_rejected(self, client, pipeline):
        response = await client.patch(
            f"/api/pipelines/{pipeline['id']}/settings", json={"top_n": 0}
        )

        assert response.status_code == 400
        assert (await response.get_json())["error"].startswith("top_n:")

    @pytest.mark.asyncio
    async def test_unknown_pipeline_is_404(self, client):
        response = await client.get("/api/pipelines/missing")

        assert response.status_code == 404
        assert (await response.get_json())["error"] == "Pipeline 'missing' was not found"

    @pytest.mark.asyncio
    async def test_unknown_route_is_json_404(self, client):
        response = await client.get("/api/nothing-here")

        assert response.status_code == 404
        assert await response.get_json() == {"error": "Not found"}


class TestIndexing:
    """Indexing jobs, progress polling, deletion and status."""

    @pytest.mark.asyncio
    async def test_background_indexing_and_progress(self, client, services, pipeline, docs_site):
        response = await client.post(
            f"/api/pipelines/{pipeline['id']}/index", json={"url": START_URL}
        )

        assert response.status_code == 202
        assert await response.get_json() == {
            "status": "indexing",
            "message": f"Started indexing {START_URL}",
        }

        await services.indexing.wait_for_jobs()

        response = await client.get(
            f"/api/pipelines/{pipeline['id']}/index/progress",
            query_string={"url": START_URL},
        )
        progress = await response.get_json()
        assert progress["status"] == "complete"
        assert progress["pages_indexed"] == 3
        assert progress["chunks_created"] >= 3

    @pytest.mark.asyncio
    async def test_sync_indexing_returns_final_job(self, client, pipeline, docs_site):
        response = await client.post(
            f"/api/pipelines/{pipeline['id']}/index",
            json={"url": START_URL, "sync": True, "max_pages": 2},
        )

        assert response.status_code == 200
        job = await response.get_json()
        assert job["status"] == "complete"
        assert job["pages_indexed"] == 2
        assert job["progress"].startswith("Indexed 2 pages")

    @pytest.mark.asyncio
    async def test_duplicate_request_conflicts(self, client, services, pipeline, docs_site):
        docs_site.gate = asyncio.Event()
        path = f"/api/pipelines/{pipeline['id']}/index"

        first = await client.post(path, json={"url": START_URL})
        second = await client.post(path, json={"url": START_URL})

        assert first.status_code == 202
        assert second.status_code == 409
        assert await second.get_json() == {"error": "This URL is already being indexed"}

        docs_site.gate.set()
        await services.indexing.wait_for_jobs()

    @pytest.mark.asyncio
    async def test_failed_crawl_is_reported_through_progress(self, client, services, pipeline):
        url = "https://unreachable.example.com/"
        await client.post(f"/api/pipelines/{pipeline['id']}/index", json={"url": url})
        await services.indexing.wait_for_jobs()

        response = await client.get(
            f"/api/pipelines/{pipeline['id']}/index/progress", query_string={"url": url}
        )

        progress = await response.get_json()
        assert progress["status"] == "error"
        assert progress["progress"] == "Could not extract content from this URL"
        assert progress["message"].startswith("Could not extract content from this URL.")

    @pytest.mark.asyncio
    async def test_progress_for_unknown_url(self, client, pipeline):
        response = await client.get(
            f"/api/pipelines/{pipeline['id']}/index/progress",
            query_string={"url": "https://never.example.com/"},
        )

        assert await response.get_json() == {"status": "not_found"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [{}, {"url": ""}, {"url": "docs.example.com"}, {"url": START_URL, "max_pages": 0}],
    )
    async def test_invalid_index_requests(self, client, pipeline, body):
        response = await client.post(f"/api/pipelines/{pipeline['id']}/index", json=body)

        assert response.status_code == 400
        assert "error" in await response.get_json()

    @pytest.mark.asyncio
    async def test_non_json_body_is_rejected(self, client, pipeline):
        response = await client.post(
            f"/api/pipelines/{pipeline['id']}/index",
            data="url=https://docs.example.com/",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        assert response.status_code == 400
        assert await response.get_json() == {"error": "Request body must be a JSON object"}

    @pytest.mark.asyncio
    async def test_indexing_unknown_pipeline_is_404(self, client):
        response = await client.post("/api/pipelines/missing/index", json={"url": START_URL})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_status_and_delete(self, client, pipeline, docs_site):
        base = f"/api/pipelines/{pipeline['id']}"
        await client.post(f"{base}/index", json={"url": START_URL, "sync": True})

        status = await (await client.get(f"{base}/status")).get_json()
        assert len(status["indexed_urls"]) == 3
        assert {"url", "title", "chunk_count", "last_indexed"} == set(status["indexed_urls"][0])

        response = await client.delete(
            f"{base}/index", query_string={"url": "https://docs.example.com/api"}
        )
        deleted = await response.get_json()
        assert deleted["status"] == "deleted"
        assert deleted["chunks_deleted"] >= 1

        after = await (await client.get(f"{base}/status")).get_json()
        assert after["total_chunks"] == status["total_chunks"] - deleted["chunks_deleted"]

    @pytest.mark.asyncio
    async def test_delete_requires_url(self, client, pipeline):
        response = await client.delete(f"/api/pipelines/{pipeline['id']}/index")

        assert response.status_code == 400
        assert await response.get_json() == {"error": "url is required"}

    @pytest.mark.asyncio
    async def test_index_text_document(self, client, pipeline):
        response = await client.post(
            f"/api/pipelines/{pipeline['id']}/documents/text",
            json={"text": "Refunds are processed within five business days of the request. " * 3,
                  "title": "Refunds"},
        )

        assert response.status_code == 201
        data = await response.get_json()
        assert data["title"] == "Refunds"
        assert data["chunks_created"] == 1
        assert data["url"].startswith("text://")


class TestChat:
    """Streaming and non-streaming answers plus search."""

    @pytest.mark.asyncio
    async def test_streamed_answer_events(self, client, pipeline, docs_site):
        base = f"/api/pipelines/{pipeline['id']}"
        await client.post(f"{base}/index", json={"url": START_URL, "sync": True})

        response = await client.post(f"{base}/chat", json={"message": "How do I deploy?"})

        assert response.status_code == 200
        assert response.headers["Content-Type"].startswith("text/event-stream")
        events = parse_sse(await response.get_data(as_text=True))
        assert [name for name, _ in events] == [
            "step", "step", "step", "sources", "step", "text", "text", "done",
        ]
        assert events[0][1] == {"step": "embedding"}
        assert "".join(data["content"] for name, data in events if name == "text") == (
            "Deploys use the CLI."
        )

    @pytest.mark.asyncio
    async def test_pipeline_settings_drive_chat(self, client, services, pipeline, docs_site, fake_inference):
        base = f"/api/pipelines/{pipeline['id']}"
        await client.post(f"{base}/index", json={"url": START_URL, "sync": True})
        await client.patch(f"{base}/settings", json={"use_reranking": False, "top_n": 1})

        response = await client.post(f"{base}/chat", json={"message": "How do I deploy?"})
        events = parse_sse(await response.get_data(as_text=True))

        assert {"step": "reranking"} not in [data for name, data in events if name == "step"]
        sources = [data for name, data in events if name == "sources"][0]["sources"]
        assert len(sources) == 1
        assert fake_inference.rerank_calls == []

    @pytest.mark.asyncio
    async def test_generation_failure_is_an_error_event(self, client, pipeline, docs_site, fake_inference):
        base = f"/api/pipelines/{pipeline['id']}"
        await client.post(f"{base}/index", json={"url": START_URL, "sync": True})
        fake_inference.fail_chat = True

        response = await client.post(f"{base}/chat", json={"message": "How do I deploy?"})
        events = parse_sse(await response.get_data(as_text=True))

        assert response.status_code == 200
        assert events[-1] == ("error", {"message": "Generation failed (500)"})

    @pytest.mark.asyncio
    async def test_non_streaming_answer(self, client, pipeline, docs_site):
        base = f"/api/pipelines/{pipeline['id']}"
        await client.post(f"{base}/index", json={"url": START_URL, "sync": True})

        response = await client.post(
            f"{base}/chat",
            json={
                "message": "How do I deploy?",
                "stream": False,
                "history": [{"role": "user", "content": "Hi"}],
            },
        )

        data = await response.get_json()
        assert data["answer"] == "Deploys use the CLI."
        assert data["sources"]
        assert {"url", "title", "snippet"} == set(data["sources"][0])

    @pytest.mark.asyncio
    async def test_non_streaming_generation_failure_is_502(self, client, pipeline, docs_site, fake_inference):
        base = f"/api/pipelines/{pipeline['id']}"
        await client.post(f"{base}/index", json={"url": START_URL, "sync": True})
        fake_inference.fail_chat = True

        response = await client.post(f"{base}/chat", json={"message": "Hi?", "stream": False})

        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_empty_message_is_rejected(self, client, pipeline):
        response = await client.post(f"/api/pipelines/{pipeline['id']}/chat", json={"message": ""})

        assert response.status_code == 400
        assert (await response.get_json())["error"].startswith("message:")

    @pytest.mark.asyncio
    async def test_chat_on_unknown_pipeline_is_404(self, client):
        response = await client.post("/api/pipelines/missing/chat", json={"message": "Hi?"})

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_search(self, client, pipeline, docs_site):
        base = f"/api/pipelines/{pipeline['id']}"
        await client.post(f"{base}/index", json={"url": START_URL, "sync": True})

        response = await client.post(
            f"{base}/search", json={"query": "authentication", "top_k": 2}
        )

        data = await response.get_json()
        assert data["query"] == "authentication"
        assert data["total_results"] == len(data["results"]) == 2
        result = data["results"][0]
        assert {"content", "source", "score", "similarity", "metadata"} == set(result)
        assert {"title", "chunk_index", "total_chunks"} == set(result["metadata"])


class TestHealth:
    @pytest.mark.asyncio
    async def test_live(self, client):
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert await response.get_json() == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_ready_checks_database(self, client):
        response = await client.get("/health/ready")

        assert response.status_code == 200
        data = await response.get_json()
        assert data["status"] == "healthy"
        assert data["database"] is True
