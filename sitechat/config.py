"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("SITECHAT_DATA_DIR", str(BASE_DIR / "data")))

# Ensure data directory exists
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Database
DB_PATH = DATA_DIR / "sitechat.sqlite"

# Inference services (OpenAI-compatible chat/embeddings, Cohere-style rerank)
INFERENCE_URL = os.getenv("INFERENCE_URL", "https://us.inference.heroku.com")
INFERENCE_KEY = os.getenv("INFERENCE_KEY", "")
CHAT_MODEL = os.getenv("CHAT_MODEL", "claude-4-5-sonnet")

EMBEDDING_URL = os.getenv("EMBEDDING_URL", INFERENCE_URL)
EMBEDDING_KEY = os.getenv("EMBEDDING_KEY", INFERENCE_KEY)
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "cohere-embed-multilingual")

RERANKING_URL = os.getenv("RERANKING_URL", INFERENCE_URL)
RERANKING_KEY = os.getenv("RERANKING_KEY", INFERENCE_KEY)
RERANK_MODEL = os.getenv("RERANK_MODEL", "cohere-rerank-3-5")

INFERENCE_TIMEOUT = float(os.getenv("INFERENCE_TIMEOUT", "60.0"))

# Readability fallback for JS-heavy pages
READER_BASE_URL = os.getenv("READER_BASE_URL", "https://r.jina.ai")
READER_TIMEOUT = float(os.getenv("READER_TIMEOUT", "30.0"))

# Crawler
CRAWL_USER_AGENT = os.getenv(
    "CRAWL_USER_AGENT", "Mozilla/5.0 (compatible; SiteChatBot/1.0)"
)
CRAWL_TIMEOUT = float(os.getenv("CRAWL_TIMEOUT", "15.0"))
DEFAULT_MAX_PAGES = int(os.getenv("DEFAULT_MAX_PAGES", "20"))
MIN_PAGE_CHARS = 50

# Chunking (character-based to avoid tokenizer inconsistencies)
DEFAULT_CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))
MIN_CHUNK_CHARS = 50

# Embedding
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "3"))  # small payloads pass upstream WAF
EMBED_MAX_CHARS = int(os.getenv("EMBED_MAX_CHARS", "2000"))
INSERT_BATCH_SIZE = int(os.getenv("INSERT_BATCH_SIZE", "100"))

# Retrieval
DEFAULT_TOP_N = int(os.getenv("DEFAULT_TOP_N", "5"))
RERANK_CANDIDATE_MULTIPLIER = int(os.getenv("RERANK_CANDIDATE_MULTIPLIER", "4"))
CONTEXT_MAX_CHARS = int(os.getenv("CONTEXT_MAX_CHARS", "4000"))
SNIPPET_CHARS = 200

# Indexing jobs
JOB_RETENTION_SECONDS = float(os.getenv("JOB_RETENTION_SECONDS", "300"))

# Junk-content heuristics (empirically tuned, override per deployment)
JUNK_LARGE_HTML_CHARS = int(os.getenv("JUNK_LARGE_HTML_CHARS", "100000"))
JUNK_MIN_TEXT_RATIO = float(os.getenv("JUNK_MIN_TEXT_RATIO", "0.05"))
JUNK_NAV_WINDOW_CHARS = int(os.getenv("JUNK_NAV_WINDOW_CHARS", "500"))
JUNK_NAV_KEYWORD_THRESHOLD = int(os.getenv("JUNK_NAV_KEYWORD_THRESHOLD", "4"))
MIN_PRIMARY_CONTENT_CHARS = 200
MIN_READER_CONTENT_CHARS = 100

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
