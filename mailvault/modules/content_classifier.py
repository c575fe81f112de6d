"""
Content Classification Module
Pure mapping from a parsed message to its stored content type and attachment flag
"""

from typing import NamedTuple

from .models import ContentType, ParsedMessage


class Classification(NamedTuple):
    content_type: ContentType
    has_attachments: bool


def classify_content_type(body_html: str) -> ContentType:
    """HTML when a non-empty HTML body exists, PLAIN otherwise"""
    return ContentType.HTML if body_html and body_html.strip() else ContentType.PLAIN


def classify(message: ParsedMessage) -> Classification:
    """
    Example:
        >>> classify(parsed_with_html_and_pdf)
        Classification(content_type=<ContentType.HTML: 'HTML'>, has_attachments=True)
    """
    return Classification(
        content_type=classify_content_type(message.body_html),
        has_attachments=bool(message.attachments),
    )
