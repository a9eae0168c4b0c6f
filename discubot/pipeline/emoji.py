"""
Emoji Conversion

Slack-style ``:code:`` emoji to Unicode, and ``🔗 URL`` text to Notion rich
text with a real link.
"""

import re
from typing import Any, Dict, List

EMOJI_MAP: Dict[str, str] = {
    ":white_check_mark:": "✅",
    ":heavy_check_mark:": "✔️",
    ":link:": "🔗",
    ":eyes:": "👀",
    ":hourglass:": "⏳",
    ":hourglass_flowing_sand:": "⏳",
    ":robot:": "🤖",
    ":robot_face:": "🤖",
    ":x:": "❌",
    ":arrows_counterclockwise:": "🔄",
    ":warning:": "⚠️",
    ":fire:": "🔥",
    ":sparkles:": "✨",
    ":thumbsup:": "👍",
    ":+1:": "👍",
    ":thumbsdown:": "👎",
    ":-1:": "👎",
    ":rocket:": "🚀",
    ":bulb:": "💡",
    ":memo:": "📝",
    ":pencil:": "✏️",
    ":pushpin:": "📌",
    ":calendar:": "📅",
    ":clock1:": "🕐",
    ":bell:": "🔔",
    ":star:": "⭐",
    ":heart:": "❤️",
    ":question:": "❓",
    ":exclamation:": "❗",
    ":point_right:": "👉",
    ":point_left:": "👈",
    ":100:": "💯",
}

EMOJI_PATTERN = re.compile(r":[a-z0-9_+\-]+:")

LINK_PATTERN = re.compile(r"(?:🔗|:link:)\s*(https?://\S+)")


def convert_slack_emojis(text: str) -> str:
    """Replace known ``:code:`` emoji; unknown codes are left as written."""
    if not text:
        return text
    return EMOJI_PATTERN.sub(lambda m: EMOJI_MAP.get(m.group(0), m.group(0)), text)


def _item(content: str, url: str = "") -> Dict[str, Any]:
    item: Dict[str, Any] = {"type": "text", "text": {"content": content}}
    if url:
        item["text"]["link"] = {"url": url}
        item["annotations"] = {"color": "blue"}
    return item


def parse_content_with_links(text: str) -> List[Dict[str, Any]]:
    """
    Notion rich text for ``text``, with emoji converted and every
    ``🔗 URL`` turned into a clickable link.

    Example:
        parse_content_with_links(":white_check_mark: Created :link: https://notion.so/p")
        # [✅ Created ] [🔗 ] [https://notion.so/p -> link]
    """
    if not text:
        return []
    converted = convert_slack_emojis(text)

    items: List[Dict[str, Any]] = []
    last = 0
    for match in LINK_PATTERN.finditer(converted):
        if match.start() > last:
            items.append(_item(converted[last:match.start()]))
        url = match.group(1)
        items.append(_item("🔗 "))
        items.append(_item(url, url))
        last = match.end()
    if last < len(converted):
        items.append(_item(converted[last:]))
    return items
