"""System prompt composition."""

from typing import Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel

from toolchat.lib.config import ChatConfig
from toolchat.models import toolkit_of


DEFAULT_PERSONA = "You are a friendly assistant! Keep your responses concise and helpful."

NOTION_GUIDANCE = """
**Notion Tool Guidelines:**
- when creating pages DO NOT use icons '
- When creating pages, always specify a clear, descriptive title
- Use proper Notion block types (heading, paragraph, bulleted_list_item, etc.)
- For page content, structure information hierarchically with headings
- When adding content to existing pages, check the current structure first using NOTION_FETCH_BLOCK_CONTENTS
- Always use page_id (not database_id) when adding content to specific pages
- Content should be properly formatted for Notion's rich text format
- IMPORTANT: When calling NOTION_ADD_PAGE_CONTENT, ensure the 'content' parameter is an array of block objects, not a single block or plain text
- Each block should have a 'type' field and a corresponding object with that type name containing the content"""

REDDIT_GUIDANCE = """
**Reddit Tool Guidelines:**
- Use specific subreddit names when searching (e.g., "r/programming" not just "programming")
- Search queries should be descriptive and include relevant keywords
- When retrieving posts, focus on those with substantial selftext content
- Respect Reddit's content and be mindful of context when summarizing posts"""

YOUTUBE_GUIDANCE = """
**YouTube Tool Guidelines:**
- Use descriptive search terms that match video titles or topics
- When getting video details, focus on key information like title, description, stats
- For captions, specify the correct video ID format
- Consider video duration and view count when recommending content"""

GITHUB_GUIDANCE = """
**GitHub Tool Guidelines:**
- Use proper repository formats: owner/repo-name
- When searching code, use specific file extensions and keywords
- Respect rate limits and API usage guidelines
- Focus on recent and relevant repositories when possible"""

GMAIL_GUIDANCE = """
**Gmail Tool Guidelines:**
- Be concise and professional in email composition
- Use clear subject lines that reflect the email content
- When searching emails, use specific keywords or date ranges
- Respect privacy and only access information that's explicitly requested"""

APIFY_GUIDANCE = """
**Apify Tool Guidelines:**
- use this actor to scrape youtube https://console.apify.com/actors/h7sDV53CddomktSi5/input
- always run the run actor sync get dataset items tool to scrape the data
"""

# Ordered: guidance blocks are emitted in registry order
TOOLKIT_GUIDANCE: List[Tuple[Tuple[str, ...], str]] = [
    (("NOTION",), NOTION_GUIDANCE),
    (("REDDIT",), REDDIT_GUIDANCE),
    (("YOUTUBE",), YOUTUBE_GUIDANCE),
    (("GITHUB",), GITHUB_GUIDANCE),
    (("GMAIL", "GOOGLEMAIL"), GMAIL_GUIDANCE),
    (("APIFY",), APIFY_GUIDANCE),
]


class RequestHints(BaseModel):
    """Coarse geolocation of the request origin."""

    latitude: Optional[str] = None
    longitude: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], config: Optional[ChatConfig] = None) -> "RequestHints":
        """Read hints from the edge proxy's geolocation headers."""
        config = config or ChatConfig()
        return cls(
            latitude=headers.get(config.latitude_header),
            longitude=headers.get(config.longitude_header),
            city=headers.get(config.city_header),
            country=headers.get(config.country_header),
        )


def render_request_hints(hints: RequestHints) -> str:
    def show(value: Optional[str]) -> str:
        return value if value is not None else "unknown"

    return (
        "About the origin of user's request:\n"
        f"- lat: {show(hints.latitude)}\n"
        f"- lon: {show(hints.longitude)}\n"
        f"- city: {show(hints.city)}\n"
        f"- country: {show(hints.country)}\n"
    )


def tool_guidance(enabled_tool_slugs: Iterable[str]) -> str:
    """Guidance for every known toolkit among the enabled tools."""
    toolkits = {toolkit_of(slug) for slug in enabled_tool_slugs}
    blocks = [
        guidance
        for names, guidance in TOOLKIT_GUIDANCE
        if any(name in toolkits for name in names)
    ]
    if not blocks:
        return ""
    return "\n\n**Available Tool Guidelines:**\n" + "\n".join(blocks)


def compose_system_prompt(
    persona: Optional[str],
    request_hints: RequestHints,
    enabled_tool_slugs: Iterable[str] = ()
) -> str:
    """Build the system prompt for one turn.

    Persona (or the default persona), then the request-origin block, then
    guidance for known toolkits. Pure and deterministic.
    """
    base = persona or DEFAULT_PERSONA
    return f"{base}\n\n{render_request_hints(request_hints)}{tool_guidance(enabled_tool_slugs)}"
