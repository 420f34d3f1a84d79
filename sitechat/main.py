"""Main Quart application for SiteChat."""
import logging
from typing import Any, Dict, Optional

import structlog
from pydantic import BaseModel, ValidationError
from quart import Blueprint, Quart, current_app, jsonify, request

from sitechat import config, db
from sitechat.errors import InvalidRequestError, PipelineNotFoundError, SiteChatError
from sitechat.models import PipelineSettings
from sitechat.schemas import (
    ChatRequest,
    CreatePipelineRequest,
    IndexRequest,
    SearchRequest,
    SettingsUpdate,
    TextDocumentRequest,
)
from sitechat.services import Services, build_services

# Configure structured logging
logging.basicConfig(level=config.LOG_LEVEL, format="%(message)s")
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = structlog.get_logger()

api = Blueprint("api", __name__)


def _services() -> Services:
    return current_app.config["SERVICES"]


async def _parse_body(model: type[BaseModel], required: bool = True) -> BaseModel:
    """Validate the JSON request body against a pydantic model."""
    data = await request.get_json(silent=True)
    if data is None:
        if required:
            raise InvalidRequestError("Request body must be a JSON object")
        data = {}
    if not isinstance(data, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return model.model_validate(data)


def _get_pipeline(pipeline_id: str) -> Dict[str, Any]:
    pipeline = db.get_pipeline(pipeline_id, _services().db_path)
    if pipeline is None:
        raise PipelineNotFoundError(pipeline_id)
    return pipeline


def _pipeline_response(pipeline: Dict[str, Any]) -> Dict[str, Any]:
    return {
        **pipeline,
        "settings": PipelineSettings.from_dict(pipeline["settings"]).to_dict(),
    }


def _required_url_arg() -> str:
    url = request.args.get("url")
    if not url:
        raise InvalidRequestError("url is required")
    return url


@api.route("/api/pipelines", methods=["POST"])
async def create_pipeline():
    """Create a pipeline.

    Expects JSON body (all fields optional):
    {
        "name": "My Docs",          // defaults to "Pipeline N"
        "description": "...",
        "settings": {"chunk_size": 1000, "max_pages": 20, "top_n": 5, "use_reranking": true}
    }
    """
    body = await _parse_body(CreatePipelineRequest, required=False)
    settings = body.settings.model_dump(exclude_none=True) if body.settings else {}

    pipeline = db.create_pipeline(
        name=body.name,
        description=body.description,
        settings=settings,
        db_path=_services().db_path,
    )
    return jsonify(_pipeline_response(pipeline)), 201


@api.route("/api/pipelines/<pipeline_id>", methods=["GET"])
async def get_pipeline(pipeline_id: str):
    return jsonify(_pipeline_response(_get_pipeline(pipeline_id)))


@api.route("/api/pipelines/<pipeline_id>/settings", methods=["PATCH"])
async def update_settings(pipeline_id: str):
    """Update pipeline settings; omitted fields are left unchanged."""
    body = await _parse_body(SettingsUpdate)

    pipeline = db.update_pipeline_settings(
        pipeline_id, body.model_dump(exclude_none=True), _services().db_path
    )
    if pipeline is None:
        raise PipelineNotFoundError(pipeline_id)

    return jsonify(_pipeline_response(pipeline))


@api.route("/api/pipelines/<pipeline_id>/index", methods=["POST"])
async def start_indexing(pipeline_id: str):
    """Start indexing a URL.

    Expects JSON body:
    {
        "url": "https://docs.example.com/",
        "max_pages": 20,     // optional, defaults to pipeline setting
        "sync": false        // optional, wait for completion
    }

    Returns:
        202 with {"status": "indexing", "message"} when started in background
        200 with the job snapshot when sync is true
        409 if the same URL is already being indexed
    """
    body = await _parse_body(IndexRequest)

    job = await _services().indexing.start_indexing(
        pipeline_id,
        body.url,
        max_pages=body.max_pages,
        chunk_size=body.chunk_size,
        wait=body.sync,
    )

    if body.sync:
        return jsonify(job.snapshot())

    return jsonify({
        "status": "indexing",
        "message": f"Started indexing {body.url}",
    }), 202


@api.route("/api/pipelines/<pipeline_id>/index/progress", methods=["GET"])
async def indexing_progress(pipeline_id: str):
    """Poll indexing progress for ?url=..."""
    job = _services().indexing.get_progress(pipeline_id, _required_url_arg())
    if job is None:
        return jsonify({"status": "not_found"})
    return jsonify(job.snapshot())


@api.route("/api/pipelines/<pipeline_id>/index", methods=["DELETE"])
async def delete_indexed(pipeline_id: str):
    """Remove everything indexed under ?url=... (prefix match)."""
    deleted = await _services().indexing.delete_indexed(pipeline_id, _required_url_arg())
    return jsonify({"status": "deleted", "chunks_deleted": deleted})


@api.route("/api/pipelines/<pipeline_id>/documents/text", methods=["POST"])
async def index_text(pipeline_id: str):
    body = await _parse_body(TextDocumentRequest)
    result = await _services().indexing.index_text(pipeline_id, body.text, body.title)
    return jsonify(result), 201


@api.route("/api/pipelines/<pipeline_id>/status", methods=["GET"])
async def pipeline_status(pipeline_id: str):
    return jsonify(await _services().indexing.indexed_status(pipeline_id))


@api.route("/api/pipelines/<pipeline_id>/chat", methods=["POST"])
async def chat(pipeline_id: str):
    """Answer a question from the pipeline's indexed content.

    Expects JSON body:
    {
        "message": "How do I deploy?",
        "history": [{"role": "user", "content": "..."}],  // optional
        "stream": true                                      // optional
    }

    Returns:
        text/event-stream of step/sources/text/done/error events when
        streaming, else JSON {"answer", "sources"}
    """
    body = await _parse_body(ChatRequest)
    settings = PipelineSettings.from_dict(_get_pipeline(pipeline_id)["settings"])

    top_n = body.top_n or settings.top_n
    use_reranking = (
        settings.use_reranking if body.use_reranking is None else body.use_reranking
    )
    history = [turn.model_dump() for turn in body.history]
    engine = _services().engine

    logger.info(
        "chat_request_received",
        pipeline_id=pipeline_id,
        message_length=len(body.message),
        stream=body.stream,
        top_n=top_n,
        use_reranking=use_reranking,
    )

    if not body.stream:
        result = await engine.answer(
            pipeline_id, body.message, top_n, use_reranking, history
        )
        return jsonify(result.to_dict())

    async def event_stream():
        events = engine.stream_answer(
            pipeline_id, body.message, top_n, use_reranking, history
        )
        try:
            async for event in events:
                yield event.to_sse().encode("utf-8")
        finally:
            await events.aclose()

    return event_stream(), 200, {
        "Content-Type": "text/event-stream",
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
    }


@api.route("/api/pipelines/<pipeline_id>/search", methods=["POST"])
async def search(pipeline_id: str):
    """Retrieve the most relevant chunks without generating an answer."""
    body = await _parse_body(SearchRequest)
    _get_pipeline(pipeline_id)

    chunks = await _services().engine.search(
        pipeline_id, body.query, body.top_k, body.rerank
    )
    results = [
        {
            "content": chunk.content,
            "source": chunk.url,
            "score": chunk.relevance,
            "similarity": chunk.similarity,
            "metadata": {
                "title": chunk.title,
                "chunk_index": chunk.chunk_index,
                "total_chunks": chunk.total_chunks,
            },
        }
        for chunk in chunks
    ]
    return jsonify({"results": results, "query": body.query, "total_results": len(results)})


@api.route("/health/ready")
async def health_ready():
    """Readiness probe - check if app can serve requests.

    Checks:
    - SQLite database is reachable
    - Inference credentials are configured
    """
    checks = {
        "status": "healthy",
        "database": False,
        "inference_configured": bool(config.INFERENCE_KEY),
    }

    try:
        conn = db.get_connection(_services().db_path)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
        checks["database"] = True
    except Exception as e:
        logger.error("health_check_failed", error=str(e))
        checks["status"] = "unhealthy"
        checks["error"] = str(e)
        return jsonify(checks), 503

    return jsonify(checks), 200


@api.route("/health/live")
async def health_live():
    """Liveness probe - check if app is running."""
    return jsonify({"status": "alive"}), 200


def create_app(services: Optional[Services] = None) -> Quart:
    """Create the Quart application.

    Args:
        services: Prebuilt component graph; built from config on startup
            when omitted

    Returns:
        Configured Quart app
    """
    app = Quart(__name__)
    app.config["SERVICES"] = services
    app.register_blueprint(api)

    @app.before_serving
    async def startup():
        if app.config["SERVICES"] is None:
            app.config["SERVICES"] = build_services()
        logger.info("app_started", db_path=str(app.config["SERVICES"].db_path))

    @app.errorhandler(SiteChatError)
    async def sitechat_error(error: SiteChatError):
        if error.status_code >= 500:
            logger.error("request_failed", error=error.message, error_type=type(error).__name__)
        return jsonify({"error": error.message}), error.status_code

    @app.errorhandler(ValidationError)
    async def validation_error(error: ValidationError):
        first = error.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "body"
        return jsonify({"error": f"{field}: {first['msg']}"}), 400

    @app.errorhandler(404)
    async def not_found(error):
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    async def internal_error(error):
        """Handle 500 errors."""
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500

    return app


app = create_app()


if __name__ == "__main__":
    # For development - use hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
