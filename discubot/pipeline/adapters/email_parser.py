"""
Email Parser

Parses Figma notification emails (Mailgun's parsed-message fields) to
extract comment text, file key, comment id, links and metadata.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html.parser import HTMLParser
from typing import Any, Dict, List, Optional

logger = logging.getLogger("discubot.pipeline.adapters.email_parser")

FILE_KEY_PATTERNS = [
    re.compile(r"figma\.com/file/([a-zA-Z0-9]+)"),
    re.compile(r"figma\.com/design/([a-zA-Z0-9]+)"),
    re.compile(r"figma\.com/proto/([a-zA-Z0-9]+)"),
    # CDN images carry the file id
    re.compile(r"api-cdn\.figma\.com/resize/images/(\d+)/"),
    # FigJam
    re.compile(r"figma\.com/board/([a-zA-Z0-9]+)"),
]

SENDER_KEY_PATTERN = re.compile(r"comments-([a-zA-Z0-9]+)@", re.IGNORECASE)

COMMENT_ID_PATTERNS = [
    re.compile(r"[#&?]comment[-_]?id=(\d+)", re.IGNORECASE),
    re.compile(r"#(\d+)(?:$|[&?])"),
]

# Subject looks like: 'Jane commented on "Homepage v2"'
FILE_NAME_PATTERN = re.compile(r"[\"“](.+?)[\"”]")

_COMMENT_CLASSES = ("comment-body", "comment-text")
_SKIP_TAGS = {"script", "style", "head", "title"}


@dataclass
class ParsedEmail:
    text: str
    html: Optional[str] = None
    file_key: Optional[str] = None
    comment_id: Optional[str] = None
    author: Optional[str] = None
    links: List[str] = field(default_factory=list)
    subject: Optional[str] = None
    timestamp: Optional[datetime] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    email_type: str = "unknown"  # "comment", "invitation", "unknown"


class _EmailHTMLParser(HTMLParser):
    """Collects visible text, the comment block, paragraphs and links."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.links: List[str] = []
        self.priority_links: List[str] = []
        self.all_text: List[str] = []
        self.comment_text: List[str] = []
        self.paragraphs: List[str] = []
        self._skip_depth = 0
        self._comment_depth = 0
        self._p_depth = 0
        self._current_p: List[str] = []
        self._stack: List[str] = []

    def handle_starttag(self, tag, attrs):
        attrs = dict(attrs)
        if tag in ("br", "img", "hr", "meta", "link", "input"):
            self._handle_void(tag, attrs)
            return
        self._stack.append(tag)
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        classes = (attrs.get("class") or "").split()
        is_comment = any(c in _COMMENT_CLASSES for c in classes) or (
            tag == "td" and any("comment" in c for c in classes)
        )
        if self._comment_depth or is_comment:
            self._comment_depth += 1
        if tag == "p":
            self._p_depth += 1
        if tag == "a":
            href = attrs.get("href") or ""
            if href.startswith("http"):
                self.links.append(href)

    def handle_startendtag(self, tag, attrs):
        self._handle_void(tag, dict(attrs))

    def _handle_void(self, tag, attrs):
        if tag == "br":
            self.handle_data("\n")
        if tag == "img":
            src = attrs.get("src") or ""
            if src.startswith("http") and "figma.com" in src:
                # Comment-location images are the most reliable file reference
                if "commentx=" in src and "commenty=" in src:
                    self.priority_links.append(src)
                else:
                    self.links.append(src)

    def handle_endtag(self, tag):
        if tag not in self._stack:
            return
        while self._stack:
            open_tag = self._stack.pop()
            if open_tag in _SKIP_TAGS:
                self._skip_depth -= 1
            if self._comment_depth:
                self._comment_depth -= 1
            if open_tag == "p":
                self._p_depth -= 1
                if self._p_depth == 0:
                    text = "".join(self._current_p).strip()
                    if text:
                        self.paragraphs.append(text)
                    self._current_p = []
            if open_tag == tag:
                break

    def handle_data(self, data):
        if self._skip_depth:
            return
        self.all_text.append(data)
        if self._comment_depth:
            self.comment_text.append(data)
        if self._p_depth:
            self._current_p.append(data)

    def result_links(self) -> List[str]:
        return list(dict.fromkeys([*self.priority_links, *self.links]))


def _collapse(text: str) -> str:
    lines = [re.sub(r"[ \t\r\f\v]+", " ", line).strip() for line in text.split("\n")]
    return "\n".join(line for line in lines if line).strip()


def extract_text_from_html(html: str) -> str:
    """Comment block first, then first paragraph, then all visible text."""
    parser = _EmailHTMLParser()
    parser.feed(html)
    parser.close()
    comment = _collapse("".join(parser.comment_text))
    if comment:
        return comment
    if parser.paragraphs:
        return _collapse(parser.paragraphs[0])
    return _collapse("".join(parser.all_text))


def extract_links_from_html(html: str) -> List[str]:
    parser = _EmailHTMLParser()
    parser.feed(html)
    parser.close()
    return parser.result_links()


def extract_file_key_from_url(url: str) -> Optional[str]:
    for pattern in FILE_KEY_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def extract_comment_id(links: List[str]) -> Optional[str]:
    for link in links:
        if "figma.com" not in link:
            continue
        for pattern in COMMENT_ID_PATTERNS:
            match = pattern.search(link)
            if match:
                return match.group(1)
    return None


def determine_email_type(subject: str) -> str:
    subject_lower = (subject or "").lower()
    if any(word in subject_lower for word in ("commented", "comment", "mentioned you", "replied")):
        return "comment"
    if any(word in subject_lower for word in ("invited", "invitation", "shared")):
        return "invitation"
    return "unknown"


def _parse_timestamp(raw: Any) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def parse_email(email_data: Dict[str, Any]) -> ParsedEmail:
    """
    Parse Mailgun's parsed-message fields.

    Expected keys: ``subject``, ``from``, ``recipient``, ``body-html``,
    ``body-plain``, ``stripped-text``, ``timestamp``.
    """
    html = email_data.get("body-html") or ""
    plain = email_data.get("stripped-text") or email_data.get("body-plain") or ""

    text = plain.strip() or (extract_text_from_html(html) if html else "")
    links = extract_links_from_html(html) if html else []

    # The sender address is the most reliable file key source:
    # comments-<FILEKEY>@email.figma.com
    file_key = None
    sender = email_data.get("from") or ""
    match = SENDER_KEY_PATTERN.search(sender)
    if match:
        file_key = match.group(1)
        logger.debug("File key %s from sender address", file_key)
    if not file_key:
        for link in links:
            file_key = extract_file_key_from_url(link)
            if file_key:
                logger.debug("File key %s from link", file_key)
                break

    return ParsedEmail(
        text=text,
        html=html or None,
        file_key=file_key,
        author=sender or None,
        links=links,
        subject=email_data.get("subject"),
        timestamp=_parse_timestamp(email_data.get("timestamp")),
    )


def parse_figma_email(email_data: Dict[str, Any]) -> ParsedEmail:
    """parse_email plus Figma-specific metadata"""
    parsed = parse_email(email_data)

    figma_links = [link for link in parsed.links if "figma.com" in link]
    file_url = next(
        (l for l in figma_links if any(p in l for p in ("/file/", "/design/", "/proto/", "/board/"))),
        None,
    )
    if file_url:
        parsed.file_key = parsed.file_key or extract_file_key_from_url(file_url)
    parsed.file_url = file_url
    parsed.comment_id = extract_comment_id(parsed.links)
    parsed.email_type = determine_email_type(parsed.subject or "")

    if parsed.subject:
        match = FILE_NAME_PATTERN.search(parsed.subject)
        if match:
            parsed.file_name = match.group(1)

    return parsed


def author_display_name(sender: str) -> str:
    """'Jane Doe <jane@x.com>' -> 'Jane Doe'; bare addresses pass through."""
    sender = (sender or "").strip()
    match = re.match(r'^"?([^"<]+?)"?\s*<[^>]+>$', sender)
    if match:
        return match.group(1).strip()
    return sender


def recipient_slug(recipient: str) -> Optional[str]:
    """Local part of the recipient address, lower-cased."""
    if not recipient:
        return None
    address = recipient.split(",")[0].strip()
    match = re.search(r"<([^>]+)>", address)
    if match:
        address = match.group(1)
    local, sep, _ = address.partition("@")
    if not sep or not local.strip():
        return None
    return local.strip().lower()
