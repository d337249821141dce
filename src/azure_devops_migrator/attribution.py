"""Build migrated comment text with an attribution line."""

from __future__ import annotations

import datetime as dt
import html
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Comment


def format_timestamp(iso_timestamp: str) -> str:
    """Format ISO 8601 timestamp to human-readable format.

    Args:
        iso_timestamp: ISO 8601 formatted timestamp string

    Returns:
        Formatted timestamp (e.g., "2024-01-15 10:30:45Z").
        Returns original value if parsing fails.
    """
    if not iso_timestamp:
        return iso_timestamp

    try:
        timestamp_dt = dt.datetime.fromisoformat(iso_timestamp)
        formatted = timestamp_dt.isoformat(sep=" ", timespec="seconds")
        return formatted.replace("+00:00", "Z")
    except (ValueError, AttributeError):
        return iso_timestamp


def attribution_line(comment: Comment) -> str:
    """Return the plain-text line naming the original author and time of a comment."""
    author = comment.author or "unknown author"
    line = f"Originally posted by {author}"
    if comment.created_at:
        line += f" on {format_timestamp(comment.created_at)}"
    return line


def build_comment_body(comment: Comment, processed_text: str | None = None) -> str:
    """Build the target comment text: attribution line followed by the comment body.

    Args:
        comment: Source comment
        processed_text: Body with attachment references already rewritten (if any)

    Returns:
        HTML comment text for the target work item
    """
    header = html.escape(attribution_line(comment), quote=False)
    body = processed_text if processed_text is not None else comment.text
    return f"<p><em>{header}</em></p>\n{body}"
