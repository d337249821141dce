"""Comment history migration."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .attribution import build_comment_body
from .exceptions import MigrationError
from .inline_references import mask_references

if TYPE_CHECKING:
    from .inline_references import InlineReferenceRewriter
    from .orchestrator import SyncSession
    from .protocols import WorkItemStore

logger: logging.Logger = logging.getLogger(__name__)


class CommentSynchronizer:
    """Replays the comment history of a source work item onto its target copy."""

    _source: WorkItemStore
    _target: WorkItemStore
    _rewriter: InlineReferenceRewriter

    def __init__(self, source: WorkItemStore, target: WorkItemStore, rewriter: InlineReferenceRewriter) -> None:
        self._source = source
        self._target = target
        self._rewriter = rewriter

    def sync(
        self,
        source_id: int,
        target_id: int,
        attachment_map: dict[str, str],
        session: SyncSession,
    ) -> int:
        """Copy comments oldest-first, skipping those already on the target.

        A source comment counts as already migrated when its raw text equals a
        target comment, or when a target comment is its attributed body with
        only the attachment URLs differing.

        Returns:
            Number of comments added to the target
        """
        stats = session.stats
        try:
            source_comments = self._source.get_comments(source_id)
            target_comments = self._target.get_comments(target_id)
        except MigrationError as e:
            logger.warning(f"Could not list comments for work item {source_id}: {e}")
            stats.errors.append(f"comments of work item {source_id}: {e}")
            return 0

        existing_texts = {c.text for c in target_comments}
        existing_bodies = {mask_references(c.text) for c in target_comments}
        migrated = 0

        for comment in source_comments:
            if comment.text in existing_texts or mask_references(build_comment_body(comment)) in existing_bodies:
                stats.comments_skipped += 1
                logger.debug(f"Comment {comment.id} of work item {source_id} already migrated")
                continue

            processed = self._rewriter.rewrite(
                comment.text, attachment_map, session, context=f"work item {source_id} comment {comment.id}"
            )
            body = build_comment_body(comment, processed)
            try:
                created = self._target.add_comment(target_id, body)
            except MigrationError as e:
                logger.warning(f"Failed to migrate comment {comment.id} of work item {source_id}: {e}")
                stats.errors.append(f"comment {comment.id} of work item {source_id}: {e}")
                continue

            existing_texts.add(created.text or body)
            existing_bodies.add(mask_references(created.text or body))
            migrated += 1
            stats.comments_created += 1
            logger.debug(f"Migrated comment {comment.id} by {comment.author or 'unknown author'}")

        return migrated
