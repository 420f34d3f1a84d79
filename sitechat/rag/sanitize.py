"""Text scrubbing applied before text leaves for the inference services.

The hosted inference gateway sits behind a web application firewall that
rejects payloads resembling code or markup, so both embedding inputs and
generation context are stripped of such patterns first.
"""
import re
from typing import List, Pattern, Tuple

from sitechat import config

# (pattern, replacement) pairs, applied in order
_EMBEDDING_RULES: List[Tuple[Pattern, str]] = [
    (re.compile(r"https?://\S+"), ""),
    (re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), ""),
    # JSX-style attributes: className={...}
    (re.compile(r"\w+\s*=\s*\{[^}]*\}"), ""),
    # arrow functions and call-like name(...)
    (re.compile(r"\([^)]*\)\s*=>"), ""),
    (re.compile(r"\w+\([^)]*\)"), ""),
    (re.compile(r"\{[^}]*\}"), " "),
    (re.compile(r"<[^>]*>"), " "),
    (re.compile(r"\[[^\]]*\]"), " "),
    (re.compile(r"`+"), " "),
    (
        re.compile(
            r"\b(const|let|var|function|return|import|export|class|interface|type)\b"
        ),
        "",
    ),
]

_CONTEXT_RULES: List[Tuple[Pattern, str]] = [
    (re.compile(r"https?://\S+"), ""),
    (re.compile(r"<[^>]*>"), " "),
    (re.compile(r"\{[^}]*\}"), " "),
    (re.compile(r"\[[^\]]*\]"), " "),
    (re.compile(r"`+"), " "),
    (re.compile(r"(import|export|function|const)\s+", re.IGNORECASE), ""),
    (re.compile(r"=>"), ""),
]

_WHITESPACE = re.compile(r"\s+")


def _apply(text: str, rules: List[Tuple[Pattern, str]], max_chars: int) -> str:
    for pattern, replacement in rules:
        text = pattern.sub(replacement, text)
    return _WHITESPACE.sub(" ", text).strip()[:max_chars]


def sanitize_for_embedding(text: str, max_chars: int = None) -> str:
    """Strip code-like patterns from text sent to the embedding service.

    Args:
        text: Raw chunk text
        max_chars: Truncation limit (default config.EMBED_MAX_CHARS)

    Returns:
        Single-line text with URLs, emails, markup and code keywords removed
    """
    return _apply(text, _EMBEDDING_RULES, max_chars or config.EMBED_MAX_CHARS)


def sanitize_context(text: str, max_chars: int = None) -> str:
    """Strip markup from chunk text before it is placed in the chat context."""
    return _apply(text, _CONTEXT_RULES, max_chars or config.CONTEXT_MAX_CHARS)
