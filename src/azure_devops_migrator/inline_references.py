"""Rewriting of attachment references embedded in rich text.

Descriptions and comments are HTML (or markdown) that may point at source
attachments directly, e.g. ``<img src="https://dev.azure.com/org/proj/_apis/
wit/attachments/<guid>?fileName=a.png">``. Three shapes are recognised:

1. Well-formed ``<img>`` tags with a quoted ``src``
2. ``<img>`` tags whose ``src`` quote is never closed (seen in pasted markup)
3. Bare links, in markdown ``[x](url)`` or plain text

Only the URL is substituted; the surrounding markup is kept byte for byte.
"""

from __future__ import annotations

import html
import logging
import re
from typing import TYPE_CHECKING, Final
from urllib.parse import parse_qs, urlsplit

from .attachments import transfer_attachment
from .exceptions import MigrationError
from .relations import GUID_PATTERN

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .orchestrator import SyncSession
    from .protocols import WorkItemStore

logger: logging.Logger = logging.getLogger(__name__)

_ATTACHMENT_PATH: Final[str] = rf"/_apis/wit/attachments/(?P<guid>{GUID_PATTERN})"

WELL_FORMED_IMG_RE = re.compile(
    rf"""<img\b[^>]*?\bsrc\s*=\s*(?P<quote>["'])(?P<url>[^"'<>]*?{_ATTACHMENT_PATH}[^"'<>]*)(?P=quote)""",
    re.IGNORECASE,
)
MALFORMED_IMG_RE = re.compile(
    rf"""<img\b[^>]*?\bsrc\s*=\s*["']?(?P<url>[^"'\s<>]*?{_ATTACHMENT_PATH}[^"'\s<>]*)(?=[\s>]|$)""",
    re.IGNORECASE,
)
BARE_LINK_RE = re.compile(
    rf"""(?P<url>https?://[^\s"'<>()\[\]]+?{_ATTACHMENT_PATH}[^\s"'<>()\[\]]*)""",
    re.IGNORECASE,
)

REFERENCE_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (WELL_FORMED_IMG_RE, MALFORMED_IMG_RE, BARE_LINK_RE)


def find_attachment_references(text: str) -> dict[str, str]:
    """Return every referenced attachment GUID (lowercase) with the first URL seen for it."""
    references: dict[str, str] = {}
    for pattern in REFERENCE_PATTERNS:
        for match in pattern.finditer(text):
            references.setdefault(match.group("guid").lower(), match.group("url"))
    return references


def _guids_in(url: str) -> list[str]:
    return [m.group(1).lower() for m in re.finditer(f"({GUID_PATTERN})", url)]


def filename_from_url(url: str, default: str) -> str:
    """Return the ``fileName`` query parameter of an attachment URL, or ``default``."""
    params = parse_qs(urlsplit(html.unescape(url)).query)
    values = params.get("fileName") or params.get("filename")
    return values[0] if values and values[0] else default


def _target_url(source_url: str, guid: str, mapped_url: str) -> str:
    """Build the replacement URL, keeping the source query string when the target has none."""
    if "?" in mapped_url:
        return mapped_url
    start = source_url.lower().find(guid) + len(guid)
    suffix = source_url[start:]
    return f"{mapped_url}{suffix}" if suffix.startswith("?") else mapped_url


def replace_references(text: str, attachment_map: dict[str, str]) -> str:
    """Substitute mapped attachment URLs in all three pattern classes.

    Unmapped references are left untouched.
    """

    def _substitute(match: re.Match[str]) -> str:
        guid = match.group("guid").lower()
        mapped = attachment_map.get(guid)
        if mapped is None:
            return match.group(0)
        url = match.group("url")
        offset = match.start("url") - match.start(0)
        whole = match.group(0)
        return f"{whole[:offset]}{_target_url(url, guid, mapped)}{whole[offset + len(url):]}"

    for pattern in REFERENCE_PATTERNS:
        text = pattern.sub(_substitute, text)
    return text


def mask_references(text: str) -> str:
    """Blank out every attachment URL, keeping the surrounding markup.

    A source comment and its migrated copy differ only in these URLs, so the
    masked forms compare equal.
    """

    def _blank(match: re.Match[str]) -> str:
        whole = match.group(0)
        start = match.start("url") - match.start(0)
        return f"{whole[:start]}{whole[start + len(match.group('url')):]}"

    for pattern in REFERENCE_PATTERNS:
        text = pattern.sub(_blank, text)
    return text


class InlineReferenceRewriter:
    """Maps inline attachment references in rich text onto the target project."""

    _source: WorkItemStore
    _target: WorkItemStore
    upload_missing: bool

    def __init__(self, source: WorkItemStore, target: WorkItemStore, *, upload_missing: bool = True) -> None:
        """
        Args:
            source: Store the referenced attachments live in
            target: Store to upload inline-only attachments to
            upload_missing: Download and upload attachments that are referenced
                inline but were never attached to the record
        """
        self._source = source
        self._target = target
        self.upload_missing = upload_missing

    def _is_source_url(self, url: str) -> bool:
        """Only URLs of the source organization are source references."""
        return html.unescape(url).lower().startswith(self._source.org_url.rstrip("/").lower() + "/")

    def rewrite(
        self,
        text: str,
        attachment_map: dict[str, str],
        session: SyncSession,
        context: str = "",
        *,
        owned_urls: Iterable[str] = (),
        uploads: dict[str, str] | None = None,
    ) -> str:
        """Rewrite source attachment URLs in ``text`` to their target URLs.

        ``attachment_map`` is extended with any inline-only attachment that
        gets uploaded, and ``uploads`` (when given) receives its target URL and
        file name. Attachments whose GUID appears in ``attachment_map`` values
        or ``owned_urls`` already belong to the target and are never treated
        as source references; with both projects in one organization the
        URL prefix alone cannot tell them apart.

        The input string itself is returned when nothing was replaced, so
        callers can compare to decide whether to update.
        """
        if not text:
            return text

        known_targets = {g for url in [*attachment_map.values(), *owned_urls] for g in _guids_in(url)}
        references = {
            guid: url
            for guid, url in find_attachment_references(text).items()
            if guid not in known_targets and self._is_source_url(url)
        }
        if not references:
            return text

        if self.upload_missing:
            for guid, url in references.items():
                if guid in attachment_map:
                    continue
                filename = filename_from_url(url, default=guid)
                try:
                    attachment_map[guid] = transfer_attachment(self._source, self._target, guid, filename)
                    session.stats.inline_attachments_uploaded += 1
                    if uploads is not None:
                        uploads[attachment_map[guid]] = filename
                except MigrationError as e:
                    ctx = f" in {context}" if context else ""
                    logger.warning(f"Failed to migrate inline attachment {filename}{ctx}: {e}")
                    session.stats.errors.append(f"inline attachment {guid}{ctx}: {e}")

        rewritten = replace_references(text, attachment_map)
        return text if rewritten == text else rewritten
