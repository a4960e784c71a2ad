# backend/callintel/services/review_service.py
import logging
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from callintel.core.exceptions import ValidationError, ConflictError
from callintel.models.models import CallReview, utcnow
from callintel.security.audit_logger import AuditLogger
from callintel.services.call_session_store import CallSessionStore

logger = logging.getLogger(__name__)

REVIEW_FIELDS = ("internal_notes", "tags", "follow_up_action")


def normalize_tags(tags: Optional[List[str]]) -> List[str]:
    """Strip, drop empties and de-duplicate while keeping order."""
    seen = []
    for tag in tags or []:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


def changed_fields(review: CallReview, values: dict) -> List[str]:
    """Review fields whose new value differs from the stored one (empty and None are equal)."""
    changed = []
    for name in REVIEW_FIELDS:
        before = getattr(review, name) or None
        after = values[name] or None
        if before != after:
            changed.append(name)
    return changed


class ReviewService:
    """Human review annotations, one per call session."""

    def __init__(self, session_factory: async_sessionmaker, store: CallSessionStore, audit: AuditLogger):
        self.session_factory = session_factory
        self.store = store
        self.audit = audit

    async def add_review(
        self,
        restaurant_id: str,
        call_session_id: uuid.UUID,
        reviewed_by: str,
        internal_notes: Optional[str] = None,
        tags: Optional[List[str]] = None,
        follow_up_action: Optional[str] = None
    ) -> CallReview:
        """Create or wholesale replace the review of a session.

        The review and its audit entry commit together. A missing or foreign
        session raises NotFoundError before anything is written.
        """
        if not reviewed_by or not str(reviewed_by).strip():
            raise ValidationError("reviewed_by is required")

        values = {
            "internal_notes": internal_notes,
            "tags": normalize_tags(tags),
            "follow_up_action": follow_up_action,
        }

        # A concurrent first review can win the unique index; retry as an update
        for _ in range(2):
            async with self.session_factory() as db:
                await self.store.get(db, call_session_id, restaurant_id)

                result = await db.execute(
                    select(CallReview).where(CallReview.call_session_id == call_session_id)
                )
                review = result.scalar_one_or_none()
                created = review is None
                now = utcnow()

                if created:
                    changed = [name for name in REVIEW_FIELDS if values[name]]
                    review = CallReview(id=uuid.uuid4(), call_session_id=call_session_id, created_at=now)
                    db.add(review)
                else:
                    changed = changed_fields(review, values)

                review.reviewed_by = reviewed_by
                review.reviewed_at = now
                review.internal_notes = values["internal_notes"]
                review.tags = values["tags"]
                review.follow_up_action = values["follow_up_action"]
                review.updated_at = now

                await self.audit.record(
                    db,
                    restaurant_id=restaurant_id,
                    actor_id=reviewed_by,
                    action="review_created" if created else "review_updated",
                    entity_type="call_session",
                    entity_id=call_session_id,
                    details={"review_id": str(review.id), "fields": changed}
                )

                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.info(f"Concurrent review on session {call_session_id}, retrying as update")
                    continue

                logger.info(f"Review saved for session {call_session_id} by {reviewed_by}")
                return review

        raise ConflictError("Review could not be saved due to concurrent updates")
