"""
Per-tool response extractors.

Known tools get a compact, purpose-built summary of their payload; every
other tool, and any extractor that fails, goes through the generic result
sanitizer. Adding a tool is a matter of decorating an extractor with
``@register_parser("TOOL_SLUG")``.
"""

import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional

from toolchat.services.result_sanitizer import (
    MAX_RESULT_BYTES,
    MAX_STRING_LENGTH,
    sanitize_tool_result,
    serialize,
    serialized_size,
)


logger = logging.getLogger(__name__)

ToolParser = Callable[[Mapping], Any]

TOOL_PARSERS: Dict[str, ToolParser] = {}

MAX_RESULT_ITEMS = 10
DEFAULT_TOOL_ERROR = "Tool execution failed"


def register_parser(tool_slug: str) -> Callable[[ToolParser], ToolParser]:
    """Register an extractor for one exact tool slug."""
    def decorator(func: ToolParser) -> ToolParser:
        TOOL_PARSERS[tool_slug] = func
        return func
    return decorator


def _dig(value: Any, *keys: str) -> Any:
    """Follow nested mapping keys, returning None on the first miss."""
    for key in keys:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _clip(value: Any, limit: int) -> Any:
    return value[:limit] if isinstance(value, str) else value


def failure_payload(result: Mapping) -> Dict[str, Any]:
    """Minimal payload for a tool that reported unsuccessful execution."""
    error = result.get("error") or DEFAULT_TOOL_ERROR
    message = error if isinstance(error, str) else serialize(error)
    return {"successful": False, "error": message[:MAX_STRING_LENGTH]}


# YouTube

def _youtube_items(result: Mapping) -> List[Any]:
    items = _dig(result, "data", "response_data", "items")
    if items is None:
        items = _dig(result, "data", "items")
    return _as_list(items)


@register_parser("YOUTUBE_SEARCH_YOU_TUBE")
def parse_youtube_search(result: Mapping) -> Dict[str, Any]:
    items = [
        {
            "videoId": _dig(item, "id", "videoId"),
            "title": _dig(item, "snippet", "title"),
            "description": _clip(_dig(item, "snippet", "description"), 200),
            "channelTitle": _dig(item, "snippet", "channelTitle"),
            "publishedAt": _dig(item, "snippet", "publishedAt"),
            "thumbnailUrl": _dig(item, "snippet", "thumbnails", "high", "url"),
        }
        for item in _youtube_items(result)[:MAX_RESULT_ITEMS]
    ]
    return {"successful": True, "data": {"items": items}}


@register_parser("YOUTUBE_VIDEO_DETAILS")
def parse_youtube_video_details(result: Mapping) -> Dict[str, Any]:
    items = _youtube_items(result)
    if not items:
        return {"successful": True, "data": {"error": "No video details found"}}

    video = items[0]
    return {
        "successful": True,
        "data": {
            "video": {
                "id": _dig(video, "id"),
                "title": _dig(video, "snippet", "title"),
                "description": _clip(_dig(video, "snippet", "description"), 1000),
                "channelTitle": _dig(video, "snippet", "channelTitle"),
                "publishedAt": _dig(video, "snippet", "publishedAt"),
                "duration": _dig(video, "contentDetails", "duration"),
                "viewCount": _dig(video, "statistics", "viewCount"),
                "likeCount": _dig(video, "statistics", "likeCount"),
                "commentCount": _dig(video, "statistics", "commentCount"),
                "tags": _as_list(_dig(video, "snippet", "tags"))[:MAX_RESULT_ITEMS],
                "thumbnailUrl": _dig(video, "snippet", "thumbnails", "high", "url"),
            }
        },
    }


@register_parser("YOUTUBE_LOAD_CAPTIONS")
def parse_youtube_captions(result: Mapping) -> Dict[str, Any]:
    captions = _dig(result, "data", "response_data")
    if captions is None:
        captions = {}
    return {
        "successful": True,
        "data": sanitize_tool_result(captions, "YOUTUBE_LOAD_CAPTIONS"),
    }


# Notion

def _rich_text(value: Any) -> str:
    fragments = []
    for item in _as_list(value):
        text = _dig(item, "plain_text")
        if text is None:
            text = _dig(item, "text", "content")
        if isinstance(text, str):
            fragments.append(text)
    return "".join(fragments)


def _block_text(block: Mapping) -> str:
    block_type = block.get("type")
    body = block.get(block_type) if isinstance(block_type, str) else None
    if not isinstance(body, Mapping):
        return ""
    if "rich_text" in body:
        return _rich_text(body["rich_text"])
    if "title" in body and isinstance(body["title"], str):
        return body["title"]
    if "caption" in body:
        return _rich_text(body["caption"])
    if "url" in body and isinstance(body["url"], str):
        return body["url"]
    return ""


@register_parser("NOTION_FETCH_BLOCK_CONTENTS")
def parse_notion_block_contents(result: Mapping) -> Dict[str, Any]:
    blocks = _dig(result, "data", "block_child_data", "results")
    if blocks is None:
        blocks = _dig(result, "data", "results")
    flattened = [
        {
            "id": block.get("id"),
            "type": block.get("type"),
            "text": _block_text(block),
            "hasChildren": bool(block.get("has_children")),
        }
        for block in _as_list(blocks)
        if isinstance(block, Mapping)
    ]
    return {
        "successful": True,
        "data": {
            "blocks": flattened,
            "hasMore": bool(_dig(result, "data", "block_child_data", "has_more")),
        },
    }


# Reddit

@register_parser("REDDIT_SEARCH_ACROSS_SUBREDDITS")
def parse_reddit_search(result: Mapping) -> Dict[str, Any]:
    children = _dig(result, "data", "search_results", "data", "children")
    if children is None:
        children = _dig(result, "data", "posts")

    posts = []
    for child in _as_list(children):
        post = child.get("data", child) if isinstance(child, Mapping) else None
        if not isinstance(post, Mapping) or not post.get("selftext"):
            continue
        posts.append({
            "title": post.get("title"),
            "subreddit": post.get("subreddit_name_prefixed") or post.get("subreddit"),
            "author": post.get("author"),
            "selftext": _clip(post.get("selftext"), 500),
            "score": post.get("score"),
            "numComments": post.get("num_comments"),
            "permalink": post.get("permalink"),
            "createdUtc": post.get("created_utc"),
        })
        if len(posts) >= MAX_RESULT_ITEMS:
            break

    return {"successful": True, "data": {"posts": posts}}


def parse_tool_response(tool_slug: str, toolkit_slug: Optional[str], raw_result: Any) -> Any:
    """Reduce a raw tool result to what the model needs to reason about it.

    Args:
        tool_slug: Exact slug of the executed tool
        toolkit_slug: Toolkit the tool belongs to, used for diagnostics
        raw_result: Result returned by the tool executor

    Returns:
        A compact, JSON-compatible result. Never raises.
    """
    if raw_result is None:
        return None

    if isinstance(raw_result, Mapping) and raw_result.get("successful") is False:
        logger.info(f"Tool {tool_slug} reported failure", extra={"toolkit": toolkit_slug})
        return failure_payload(raw_result)

    parser = TOOL_PARSERS.get(tool_slug)
    if parser is None:
        logger.debug(f"No specific parser for {tool_slug}, using generic sanitization")
        return sanitize_tool_result(raw_result, tool_slug)

    try:
        parsed = parser(raw_result)
    except Exception:
        logger.warning(
            f"Failed to parse {tool_slug} response, falling back to sanitization",
            exc_info=True
        )
        return sanitize_tool_result(raw_result, tool_slug)

    if serialized_size(parsed) > MAX_RESULT_BYTES:
        return sanitize_tool_result(parsed, tool_slug)
    return parsed
