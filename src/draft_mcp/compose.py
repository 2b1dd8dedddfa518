"""
Draft Composition
=================

Building RFC822 drafts, pulling bodies back out of raw sources, and the
head/tail split used when a revision must keep a quoted original intact.

INV-GLOBAL-04: Nothing in this module logs.
"""

from __future__ import annotations

import email
import email.policy
import email.utils
import html
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.header import decode_header
from email.message import EmailMessage, Message

from bs4 import BeautifulSoup, Tag

from contracts import DraftContent, DraftHeaders

STABLE_ID_PREFIX = "mcp-draft-"

# Quote boundaries in document order of preference; the first one found in
# the document wins, whichever selector matched it.
QUOTE_SELECTORS = (
    "div.moz-cite-prefix",
    "blockquote[type=cite]",
    "#divRplyFwdMsg",
    "div.gmail_quote",
)

PLAIN_QUOTE_PATTERNS = (
    re.compile(r"^-{2,}\s*Original Message\s*-{2,}[ \t]*\r?$", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^On .{1,200}wrote:[ \t]*\r?$", re.MULTILINE),
    re.compile(r"^>", re.MULTILINE),
)

_TOKEN_CLEAN_RE = re.compile(r"[^a-z0-9._-]+")
_REPLY_PREFIX_RE = re.compile(r"^\s*re:", re.IGNORECASE)


# =============================================================================
# IDENTIFIERS
# =============================================================================

def sanitize_token(token: str) -> str:
    """Lowercase a caller key into something safe inside a Message-ID."""
    cleaned = _TOKEN_CLEAN_RE.sub("-", str(token or "").lower())
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return cleaned[:120]


def make_stable_id(token: str, domain: str) -> str:
    return f"{STABLE_ID_PREFIX}{token}@{domain or 'localhost'}"


def normalize_stable_id(value: str | None) -> str:
    """Message-ID without whitespace or angle brackets."""
    return (value or "").strip().strip("<>").strip()


# =============================================================================
# RENDERING
# =============================================================================

def text_to_html(text: str) -> str:
    """Escape plain text into a single paragraph, newlines as <br>."""
    normalized = (text or "").replace("\r\n", "\n").replace("\r", "\n")
    return "<p>" + html.escape(normalized, quote=False).replace("\n", "<br>") + "</p>"


def wrap_html_document(fragment: str) -> str:
    if "<html" in fragment.lower():
        return fragment
    return (
        '<!DOCTYPE html><html><head><meta http-equiv="Content-Type" '
        'content="text/html; charset=utf-8"></head><body>'
        f"{fragment}</body></html>"
    )


def reply_subject(subject: str) -> str:
    subject = subject or ""
    return subject if _REPLY_PREFIX_RE.match(subject) else f"Re: {subject}"


def quote_original_html(
    *, author: str, date: datetime | None, stable_id: str, body_text: str, body_html: str
) -> str:
    """Cite prefix plus blockquote, the shape mail clients produce for replies."""
    date_str = date.strftime("%m/%d/%Y, %I:%M %p") if date else ""
    prefix = (
        f'<div class="moz-cite-prefix">On {html.escape(date_str)}, '
        f"{html.escape(author or '')} wrote:<br></div>"
    )
    cite = f"mid:{stable_id}" if stable_id else ""
    if body_html:
        inner = _body_inner_html(body_html)
    else:
        inner = f"<pre>{html.escape(body_text or '', quote=False)}</pre>"
    return f'{prefix}<blockquote type="cite" cite="{html.escape(cite)}">{inner}</blockquote>'


def render_draft(content: DraftContent, *, when: datetime | None = None) -> bytes:
    """Serialize a draft to RFC822 bytes with CRLF line endings."""
    headers = content.headers
    msg = EmailMessage()
    if headers.from_addr:
        msg["From"] = headers.from_addr
    if headers.to:
        msg["To"] = headers.to
    if headers.cc:
        msg["Cc"] = headers.cc
    msg["Subject"] = headers.subject or ""
    msg["Date"] = email.utils.format_datetime(when or datetime.now(timezone.utc))
    if content.message_id:
        msg["Message-ID"] = f"<{normalize_stable_id(content.message_id)}>"
    if headers.in_reply_to:
        msg["In-Reply-To"] = f"<{normalize_stable_id(headers.in_reply_to)}>"
    if headers.references:
        msg["References"] = " ".join(f"<{normalize_stable_id(r)}>" for r in headers.references)
    msg["X-Mozilla-Draft-Info"] = "internal/draft; vcard=0; receipt=0; DSN=0; uuencode=0"

    if content.is_html:
        msg.set_content(content.body or "", subtype="html", charset="utf-8")
    else:
        body = (content.body or "").replace("\r\n", "\n").replace("\r", "\n")
        msg.set_content(body, subtype="plain", charset="utf-8")

    return msg.as_bytes(policy=email.policy.SMTP)


# =============================================================================
# PARSING
# =============================================================================

@dataclass(frozen=True)
class MessageBody:
    """Decoded text and HTML parts of a message."""
    text: str
    html: str

    @property
    def is_html(self) -> bool:
        return bool(self.html)

    def editable(self) -> str:
        """The representation a compose surface would edit."""
        return self.html or self.text

    def searchable(self) -> str:
        """Plain text used for fragment matching."""
        if self.text:
            return self.text
        return html_to_text(self.html)


def decode_header_value(header: str | None) -> str:
    """Decode RFC 2047 encoded header."""
    if not header:
        return ""

    decoded_parts = []
    for part, charset in decode_header(str(header)):
        if isinstance(part, bytes):
            decoded_parts.append(part.decode(charset or "utf-8", errors="replace"))
        else:
            decoded_parts.append(part)
    return "".join(decoded_parts)


def parse_message(raw: bytes) -> Message:
    return email.message_from_bytes(raw, policy=email.policy.compat32)


def extract_body(raw: bytes) -> MessageBody:
    """First text/plain and text/html parts, attachments skipped."""
    msg = parse_message(raw)
    body_plain = ""
    body_html = ""

    if msg.is_multipart():
        for part in msg.walk():
            content_type = part.get_content_type()
            content_disp = str(part.get("Content-Disposition", ""))

            if "attachment" in content_disp:
                continue
            if content_type == "text/plain" and not body_plain:
                body_plain = _decode_payload(part)
            elif content_type == "text/html" and not body_html:
                body_html = _decode_payload(part)
    else:
        content_type = msg.get_content_type()
        if content_type == "text/plain":
            body_plain = _decode_payload(msg)
        elif content_type == "text/html":
            body_html = _decode_payload(msg)

    return MessageBody(text=body_plain, html=body_html)


def _decode_payload(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if payload is None:
        return ""

    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def extract_headers(raw: bytes) -> DraftHeaders:
    """Addressing headers of an existing message, used when revising it."""
    msg = parse_message(raw)
    references = tuple(
        normalize_stable_id(ref) for ref in str(msg.get("References", "") or "").split() if ref
    )
    in_reply_to = normalize_stable_id(msg.get("In-Reply-To")) or None
    return DraftHeaders(
        to=decode_header_value(msg.get("To")),
        subject=decode_header_value(msg.get("Subject")),
        cc=decode_header_value(msg.get("Cc")),
        from_addr=decode_header_value(msg.get("From")),
        in_reply_to=in_reply_to,
        references=references,
    )


def html_to_text(markup: str) -> str:
    if not markup:
        return ""
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup.find_all(["script", "style", "head"]):
        tag.decompose()
    text = soup.get_text("\n")
    text = text.replace("\r\n", "\n")
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _body_inner_html(markup: str) -> str:
    soup = BeautifulSoup(markup, "html.parser")
    if soup.body is not None:
        return soup.body.decode_contents()
    return markup


# =============================================================================
# HEAD / TAIL SPLIT
# =============================================================================

@dataclass(frozen=True)
class ContentSplit:
    """
    Two-region split of existing draft content.

    preamble: document scaffolding before the editable region (structured
              documents only, otherwise empty)
    head:     region to be replaced
    tail:     region kept verbatim, starting at the quote boundary
    """
    preamble: str
    head: str
    tail: str
    marker: str | None
    structured: bool

    @property
    def boundary(self) -> int:
        """Offset of the quote boundary in the original content."""
        return len(self.preamble) + len(self.head)

    def splice(self, new_head: str) -> str:
        if self.marker is None:
            return new_head
        return self.preamble + new_head + self.tail


def split_quoted(content: str, *, is_html: bool) -> ContentSplit:
    """
    Split content at the first quote-boundary marker.

    HTML is parsed into a document and the marker located as a node; the
    offset comes from the parser's source positions so the tail is an exact
    slice of the input. Plain text falls back to line markers. Without any
    marker the whole content is the head.
    """
    content = content or ""
    if is_html:
        structured = _split_structured(content)
        if structured is not None:
            return structured
        return ContentSplit(preamble="", head=content, tail="", marker=None, structured=True)

    best: tuple[int, str] | None = None
    for pattern in PLAIN_QUOTE_PATTERNS:
        match = pattern.search(content)
        if match and (best is None or match.start() < best[0]):
            best = (match.start(), pattern.pattern)
    if best is None:
        return ContentSplit(preamble="", head=content, tail="", marker=None, structured=False)
    offset, marker = best
    return ContentSplit(
        preamble="", head=content[:offset], tail=content[offset:], marker=marker, structured=False
    )


def _split_structured(content: str) -> ContentSplit | None:
    soup = BeautifulSoup(content, "html.parser")

    best: tuple[int, str] | None = None
    for selector in QUOTE_SELECTORS:
        for node in soup.select(selector):
            offset = _source_offset(content, node)
            if offset is None:
                continue
            if best is None or offset < best[0]:
                best = (offset, selector)
            break

    if best is None:
        return None
    offset, selector = best

    body_start = 0
    if soup.body is not None:
        body_offset = _source_offset(content, soup.body)
        if body_offset is not None and body_offset < offset:
            close = content.find(">", body_offset)
            if 0 <= close < offset:
                body_start = close + 1

    return ContentSplit(
        preamble=content[:body_start],
        head=content[body_start:offset],
        tail=content[offset:],
        marker=selector,
        structured=True,
    )


def _source_offset(content: str, node: Tag) -> int | None:
    """Character offset of a tag's '<' from html.parser line/column info."""
    line = getattr(node, "sourceline", None)
    column = getattr(node, "sourcepos", None)
    if line is None or column is None:
        return None
    lines = content.split("\n")
    offset = sum(len(text) + 1 for text in lines[: line - 1]) + column
    if not content.startswith("<", offset):
        return None
    return offset
