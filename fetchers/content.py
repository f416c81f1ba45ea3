"""Turn a fetched body into the representation the caller asked for"""
import json
import re
from dataclasses import dataclass
from typing import Optional

import structlog
from bs4 import BeautifulSoup
from markdownify import markdownify

logger = structlog.get_logger()

OUTPUT_FORMATS = ("html", "json", "txt", "markdown", "plaintext")

_BLANK_LINES_RE = re.compile(r"\n\s*\n+")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")


@dataclass
class Rendered:
    success: bool
    text: str
    error: Optional[str] = None


def unwrap_pre_payload(content: str) -> str:
    """
    Recover a raw payload a browser wrapped in HTML.

    Chromium renders JSON, XML and plain-text responses inside a <pre> element
    of a generated document; the text of that element is the original body.
    """
    lowered = content[:2000].lower()
    if "<pre" not in lowered or "<html" not in lowered:
        return content

    soup = BeautifulSoup(content, "html.parser")
    body = soup.body
    pre_tag = soup.find("pre")
    if pre_tag is None or body is None:
        return content

    # Only unwrap when the <pre> is the whole document, not a code sample on a page
    if len(body.get_text(strip=True)) != len(pre_tag.get_text(strip=True)):
        return content

    logger.debug("extracted_payload_from_pre_wrapper")
    return pre_tag.get_text()


def validate_json(text: str) -> Rendered:
    try:
        json.loads(text)
    except (json.JSONDecodeError, ValueError) as e:
        preview = f"{text[:100]}..." if len(text) > 100 else text
        message = f'Invalid JSON: {e}. Text preview: "{preview}", length: {len(text)}'
        logger.warning("json_parse_error", error=str(e), text_length=len(text))
        return Rendered(success=False, text=text, error=message)
    return Rendered(success=True, text=text)


def _strip_non_content(html: str) -> BeautifulSoup:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "template", "svg"]):
        tag.decompose()
    return soup


def html_to_markdown(html: str) -> str:
    soup = _strip_non_content(html)
    markdown = markdownify(str(soup), heading_style="ATX", bullets="-")
    return _BLANK_LINES_RE.sub("\n\n", markdown).strip()


def html_to_text(html: str) -> str:
    soup = _strip_non_content(html)
    text = soup.get_text("\n")
    text = _TRAILING_SPACE_RE.sub("\n", text)
    lines = [line.strip() for line in text.splitlines()]
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()


def render(content: str, output: str, from_browser: bool = False) -> Rendered:
    """
    Render a fetched body.

    Args:
        content: Body as returned by a transport.
        output: One of OUTPUT_FORMATS.
        from_browser: Body came from page.content() and may be a <pre> wrapper.
    """
    if output not in OUTPUT_FORMATS:
        raise ValueError(f"Unknown output format {output!r}")

    if output == "html":
        return Rendered(success=True, text=content)

    if output in ("json", "txt"):
        payload = unwrap_pre_payload(content) if from_browser else content
        if output == "json":
            return validate_json(payload)
        return Rendered(success=True, text=payload)

    if output == "markdown":
        return Rendered(success=True, text=html_to_markdown(content))

    return Rendered(success=True, text=html_to_text(content))
