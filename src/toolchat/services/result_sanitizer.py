"""
Tool result sanitization.

Filters large, low-value content out of tool results while keeping the
fields a model needs to reason about them. The serialised output of
``sanitize_tool_result`` never exceeds MAX_RESULT_BYTES and is never larger
than its input.
"""

import base64
import json
import logging
import math
import re
import time
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Set

from toolchat.lib.metrics import get_metrics_collector


logger = logging.getLogger(__name__)

MAX_STRING_LENGTH = 2000
MAX_ARRAY_ITEMS = 10
MAX_OBJECT_DEPTH = 5
MAX_OBJECT_FIELDS = 50
LARGE_FIELD_THRESHOLD = 100
MAX_RESULT_BYTES = 24000
REPORT_THRESHOLD_BYTES = 10000
MAX_VISITED_NODES = 10000

DEPTH_MARKER = "[max_depth_reached]"
CIRCULAR_MARKER = "[circular_reference]"
BUDGET_MARKER = "[node_budget_exhausted]"
TRUNCATION_SUFFIX = "...[truncated]"

BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/=]{100,}$")
HTML_PATTERN = re.compile(r"<[^>]+>")
LONG_URL_PATTERN = re.compile(r"^https?://.{50,}$")
TITLE_PATTERN = re.compile(r"<title[^>]*>([^<]+)</title>", re.IGNORECASE)
SCRIPT_PATTERN = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
STYLE_PATTERN = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
LINK_PATTERN = re.compile(r"<a[^>]+href=[\"']([^\"']+)[\"'][^>]*>([^<]*)</a>", re.IGNORECASE)
WHITESPACE_PATTERN = re.compile(r"\s+")

BINARY_KEY_INDICATORS = ("encoded", "binary", "blob", "data:", "base64", "attachment")

# Field names that usually carry bulky payloads
LARGE_CONTENT_FIELDS = frozenset({
    "html", "htmlcontent", "rawhtml", "content", "body", "data", "encoded",
    "base64", "binary", "blob", "attachment", "file", "screenshot", "image",
    "pdf", "document", "raw", "full",
})

# Field names kept verbatim (up to MAX_STRING_LENGTH)
ESSENTIAL_FIELDS = frozenset({
    "id", "title", "name", "type", "status", "error", "message", "url",
    "link", "href", "email", "subject", "from", "to", "timestamp", "date",
    "time", "count", "total", "success",
})


def estimate_tokens(content: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(content) / 4)


def serialize(value: Any) -> str:
    """Serialise a tool value the way it is handed to the model."""
    return json.dumps(value, ensure_ascii=False, default=str)


def serialized_size(value: Any) -> int:
    """Size in bytes of the serialised value."""
    return len(serialize(value).encode("utf-8"))


def _preview(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _truncate(text: str, limit: int = MAX_STRING_LENGTH) -> str:
    """Cut ``text`` so that it plus the truncation marker fits in ``limit``."""
    if len(text) <= limit:
        return text
    return text[:limit - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def looks_encoded(value: str) -> bool:
    """Strict binary/base64/long-URL heuristic applied to any string."""
    if len(value) < LARGE_FIELD_THRESHOLD:
        return False
    return bool(
        BASE64_PATTERN.match(value)
        or LONG_URL_PATTERN.match(value)
        or value.startswith("data:")
    )


def _is_large_encoded_content(value: str) -> bool:
    if len(value) < LARGE_FIELD_THRESHOLD:
        return False
    return looks_encoded(value) or "data:" in value or "base64," in value


def summarize_html(html: str) -> Dict[str, Any]:
    """Reduce an HTML document to title, preview, word count and a few links."""
    title_match = TITLE_PATTERN.search(html)
    title = _truncate(title_match.group(1).strip()) if title_match else None

    text = SCRIPT_PATTERN.sub("", html)
    text = STYLE_PATTERN.sub("", text)
    text = HTML_PATTERN.sub(" ", text)
    text = WHITESPACE_PATTERN.sub(" ", text).strip()

    links = []
    for match in LINK_PATTERN.finditer(html):
        if len(links) >= 5:
            break
        links.append({
            "href": _truncate(match.group(1), 500),
            "text": _truncate(match.group(2).strip(), 200),
        })

    return {
        "type": "html_summary",
        "title": title,
        "textPreview": _preview(text, 300),
        "wordCount": len(text.split()),
        "links": links,
        "originalSize": len(html),
        "tokensEstimate": estimate_tokens(html),
    }


def summarize_large_string(value: str) -> Dict[str, Any]:
    """Pick the summary shape that matches the string's content."""
    if HTML_PATTERN.search(value):
        return summarize_html(value)

    if _is_large_encoded_content(value):
        return {
            "type": "encoded_content",
            "format": "data_url" if value.startswith("data:") else "base64",
            "size": len(value),
            "preview": _preview(value, 50),
            "tokensEstimate": estimate_tokens(value),
        }

    return {
        "type": "text_summary",
        "preview": _preview(value, 500),
        "wordCount": len(value.split()),
        "characterCount": len(value),
        "tokensEstimate": estimate_tokens(value),
    }


def _summarize_bytes(value: bytes) -> Dict[str, Any]:
    return {
        "type": "encoded_content",
        "format": "binary",
        "size": len(value),
        "preview": base64.b64encode(bytes(value[:36])).decode("ascii") + "...",
        "tokensEstimate": estimate_tokens(base64.b64encode(bytes(value)).decode("ascii")),
    }


def _smaller(original: str, summary: Dict[str, Any]) -> Any:
    """Use the summary only when it actually saves space."""
    return summary if serialized_size(summary) < serialized_size(original) else original


def _is_large_field(key: str) -> bool:
    lowered = key.lower()
    return lowered in LARGE_CONTENT_FIELDS or any(
        indicator in lowered for indicator in BINARY_KEY_INDICATORS
    )


def _sanitize_string(value: str, key: str) -> Any:
    if key.lower() in ESSENTIAL_FIELDS:
        return _truncate(value)

    if _is_large_field(key):
        if len(value) > LARGE_FIELD_THRESHOLD:
            return _smaller(value, summarize_large_string(value))
        return value

    if len(value) > MAX_STRING_LENGTH or looks_encoded(value):
        return _smaller(value, summarize_large_string(value))

    return value


class _Walk:
    """Recursive sanitisation state for one call."""

    def __init__(self):
        self.ancestors: Set[int] = set()
        self.visited = 0

    def sanitize(self, value: Any, key: str, depth: int) -> Any:
        if depth > MAX_OBJECT_DEPTH:
            return DEPTH_MARKER

        if value is None:
            return None

        self.visited += 1
        if self.visited > MAX_VISITED_NODES:
            return BUDGET_MARKER

        if isinstance(value, str):
            return _sanitize_string(value, key)

        if isinstance(value, (bytes, bytearray)):
            return _smaller(serialize(value), _summarize_bytes(value))

        if isinstance(value, Mapping):
            return self._container(value, key, depth, self._sanitize_mapping)

        if isinstance(value, (list, tuple)):
            return self._container(value, key, depth, self._sanitize_sequence)

        return value

    def _container(self, value, key, depth, handler):
        marker = id(value)
        if marker in self.ancestors:
            return CIRCULAR_MARKER
        self.ancestors.add(marker)
        try:
            return handler(value, key, depth)
        finally:
            self.ancestors.discard(marker)

    def _sanitize_sequence(self, value, key: str, depth: int) -> List[Any]:
        items = [
            self.sanitize(item, f"{key}[{index}]", depth + 1)
            for index, item in enumerate(value[:MAX_ARRAY_ITEMS])
        ]
        if len(value) > MAX_ARRAY_ITEMS:
            items.append(f"[{len(value) - MAX_ARRAY_ITEMS} more items truncated...]")
        return items

    def _sanitize_mapping(self, value: Mapping, key: str, depth: int) -> Dict[str, Any]:
        sanitized: Dict[str, Any] = {}
        total = len(value)
        for count, (field_key, field_value) in enumerate(value.items()):
            if count >= MAX_OBJECT_FIELDS:
                sanitized["[additional_fields]"] = f"{total - count} more fields truncated"
                break
            field_name = field_key if isinstance(field_key, str) else str(field_key)
            sanitized[field_name] = self.sanitize(field_value, field_name, depth + 1)
        return sanitized


def sanitize_value(value: Any, key: str = "root", depth: int = 0) -> Any:
    """Sanitise one value in the context of its field name and nesting depth."""
    return _Walk().sanitize(value, key, depth)


def _try_serialize(value: Any) -> Optional[str]:
    try:
        return serialize(value)
    except (TypeError, ValueError, RecursionError):
        return None


def _safe_repr(value: Any) -> str:
    try:
        return repr(value)
    except Exception:
        return f"<unrepresentable {type(value).__name__}>"


def _oversize_summary(serialized: str) -> Dict[str, Any]:
    return {
        "type": "text_summary",
        "preview": _preview(serialized, 500),
        "wordCount": len(serialized.split()),
        "characterCount": len(serialized),
        "tokensEstimate": estimate_tokens(serialized),
    }


def _fallback(result: Any, original_json: Optional[str]) -> Dict[str, Any]:
    flat = original_json if original_json is not None else _safe_repr(result)
    limit = MAX_STRING_LENGTH * 2
    return {
        "type": "sanitization_error",
        "error": "Failed to sanitize result",
        "fallback": flat[:limit] + (TRUNCATION_SUFFIX if len(flat) > limit else ""),
    }


def sanitize_tool_result(result: Any, tool_name: Optional[str] = None) -> Any:
    """Sanitise a complete tool result. Never raises.

    Args:
        result: Raw tool result, usually decoded JSON
        tool_name: Tool slug used for logging

    Returns:
        A JSON-compatible value within MAX_RESULT_BYTES
    """
    if result is None:
        return None

    label = tool_name or "unknown"
    started = time.perf_counter()
    original_json = _try_serialize(result)

    try:
        sanitized = sanitize_value(result, "root", 0)
        sanitized_json = serialize(sanitized)
    except Exception:
        logger.exception(f"[{label}] Sanitization failed, using flat fallback")
        return _fallback(result, original_json)

    original_bytes = len(original_json.encode("utf-8")) if original_json is not None else None
    sanitized_bytes = len(sanitized_json.encode("utf-8"))

    if (
        original_bytes is not None
        and sanitized_bytes > original_bytes
        and original_bytes <= MAX_RESULT_BYTES
    ):
        # Markers cost more than the tiny values they replaced
        sanitized = json.loads(original_json)
        sanitized_json = original_json
        sanitized_bytes = original_bytes

    if sanitized_bytes > MAX_RESULT_BYTES:
        sanitized = _oversize_summary(sanitized_json)
        sanitized_bytes = serialized_size(sanitized)

    if original_bytes is None or original_bytes > REPORT_THRESHOLD_BYTES:
        reduction = (
            f"{(original_bytes - sanitized_bytes) / original_bytes * 100:.1f}%"
            if original_bytes else "n/a"
        )
        logger.info(
            f"[{label}] Tool result sanitized",
            extra={
                "sanitizer": {
                    "tool": label,
                    "original_size": original_bytes,
                    "sanitized_size": sanitized_bytes,
                    "reduction": reduction,
                    "original_tokens": estimate_tokens(original_json) if original_json else None,
                    "sanitized_tokens": estimate_tokens(serialize(sanitized)),
                    "processing_ms": round((time.perf_counter() - started) * 1000, 2),
                }
            }
        )
        get_metrics_collector().record_sanitization(label, original_bytes or sanitized_bytes, sanitized_bytes)

    return sanitized


def get_sanitization_stats(original: Any, sanitized: Any) -> Dict[str, Any]:
    """Compare sizes and token estimates before and after sanitisation."""
    original_str = _try_serialize(original) or _safe_repr(original)
    sanitized_str = serialize(sanitized)
    original_size = len(original_str)
    sanitized_size = len(sanitized_str)
    reduction = (original_size - sanitized_size) / original_size * 100 if original_size else 0.0

    return {
        "originalSize": original_size,
        "sanitizedSize": sanitized_size,
        "reduction": f"{reduction:.1f}%",
        "originalTokens": estimate_tokens(original_str),
        "sanitizedTokens": estimate_tokens(sanitized_str),
        "tokenReduction": estimate_tokens(original_str) - estimate_tokens(sanitized_str),
    }
