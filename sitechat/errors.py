"""Exception hierarchy shared by the indexing and answer layers.

The API layer maps these to HTTP status codes; everything below it raises
them with a short, user-presentable message.
"""


class SiteChatError(Exception):
    """Base class for all SiteChat errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(SiteChatError):
    """Missing or malformed request fields."""

    status_code = 400


class PipelineNotFoundError(SiteChatError):
    status_code = 404

    def __init__(self, pipeline_id: str):
        super().__init__(f"Pipeline '{pipeline_id}' was not found")
        self.pipeline_id = pipeline_id


class IndexingConflictError(SiteChatError):
    """An indexing job for the same pipeline and URL is already running."""

    status_code = 409

    def __init__(self, pipeline_id: str, url: str):
        super().__init__("This URL is already being indexed")
        self.pipeline_id = pipeline_id
        self.url = url


class EmbeddingError(SiteChatError):
    status_code = 502


class RerankError(SiteChatError):
    status_code = 502


class GenerationError(SiteChatError):
    status_code = 502
