# backend/callintel/services/query_service.py
"""
Read side of the pipeline: filtered session listing, session details and
analytics aggregates. Every query is scoped to one restaurant and phone
numbers are masked on the way out.
"""

import logging
import statistics
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callintel.core.config import Settings
from callintel.core.exceptions import NotFoundError, ValidationError
from callintel.models.models import CallSession, CallTranscript, CallInsights, CallReview, ensure_utc
from callintel.schemas.schemas import (
    SessionFilters,
    CallSessionListItem,
    CallSessionListResponse,
    CallSessionResponse,
    CallSessionDetailsResponse,
    TranscriptResponse,
    InsightsResponse,
    ReviewResponse,
    AnalyticsSummaryResponse,
    DurationPercentiles,
    IntentCount,
)

logger = logging.getLogger(__name__)


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def duration_percentiles(durations: List[int]) -> DurationPercentiles:
    if not durations:
        return DurationPercentiles()
    if len(durations) == 1:
        value = float(durations[0])
        return DurationPercentiles(p50=value, p90=value, p95=value)

    cuts = statistics.quantiles(durations, n=100, method="inclusive")
    return DurationPercentiles(
        p50=round(cuts[49], 2),
        p90=round(cuts[89], 2),
        p95=round(cuts[94], 2)
    )


class QueryService:
    def __init__(self, session_factory: async_sessionmaker, settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.settings.DEFAULT_LIST_LIMIT
        return max(1, min(limit, self.settings.MAX_LIST_LIMIT))

    @staticmethod
    def clamp_offset(offset: Optional[int]) -> int:
        if offset is None:
            return 0
        return max(0, offset)

    def _validate_taxonomy(self, filters: SessionFilters) -> None:
        checks = (
            ("intent", filters.intent, self.settings.ALLOWED_INTENTS),
            ("outcome", filters.outcome, self.settings.ALLOWED_OUTCOMES),
            ("sentiment", filters.sentiment, self.settings.ALLOWED_SENTIMENTS),
        )
        for name, value, allowed in checks:
            if value is not None and value not in allowed:
                raise ValidationError(
                    f"Unknown {name} '{value}'; expected one of: {', '.join(allowed)}"
                )

    @staticmethod
    def _window(date_from: Optional[datetime], date_to: Optional[datetime]) -> list:
        if date_from and date_to and date_from > date_to:
            raise ValidationError("'from' must not be after 'to'")
        conditions = []
        if date_from is not None:
            conditions.append(CallSession.started_at >= date_from)
        if date_to is not None:
            conditions.append(CallSession.started_at <= date_to)
        return conditions

    async def list_sessions(self, restaurant_id: str, filters: Optional[SessionFilters] = None) -> CallSessionListResponse:
        """List a restaurant's call sessions, newest first."""
        if not restaurant_id:
            raise ValidationError("Restaurant ID is required")

        filters = filters or SessionFilters()
        self._validate_taxonomy(filters)
        limit = self.clamp_limit(filters.limit)
        offset = self.clamp_offset(filters.offset)

        conditions = [CallSession.restaurant_id == restaurant_id]
        conditions += self._window(ensure_utc(filters.date_from), ensure_utc(filters.date_to))

        if filters.intent:
            conditions.append(CallInsights.intent_primary == filters.intent)
        if filters.outcome:
            conditions.append(CallInsights.outcome == filters.outcome)
        if filters.sentiment:
            conditions.append(CallInsights.sentiment == filters.sentiment)
        if filters.duration_min is not None:
            conditions.append(CallSession.duration_seconds >= filters.duration_min)
        if filters.duration_max is not None:
            conditions.append(CallSession.duration_seconds <= filters.duration_max)
        if filters.reviewed is True:
            conditions.append(CallReview.reviewed_at.is_not(None))
        elif filters.reviewed is False:
            conditions.append(or_(CallReview.id.is_(None), CallReview.reviewed_at.is_(None)))

        search = (filters.search or "").strip()
        if search:
            pattern = f"%{escape_like(search)}%"
            conditions.append(or_(
                CallTranscript.transcript_text.ilike(pattern, escape="\\"),
                CallInsights.summary.ilike(pattern, escape="\\")
            ))

        def joined(stmt):
            # Insights, review and transcript are at most one row per session
            stmt = (
                stmt.outerjoin(CallInsights, CallInsights.call_session_id == CallSession.id)
                .outerjoin(CallReview, CallReview.call_session_id == CallSession.id)
            )
            if search:
                stmt = stmt.outerjoin(CallTranscript, CallTranscript.call_session_id == CallSession.id)
            return stmt.where(*conditions)

        async with self.session_factory() as db:
            total = await db.scalar(
                joined(select(func.count(CallSession.id)).select_from(CallSession))
            )
            result = await db.execute(
                joined(select(CallSession, CallInsights, CallReview).select_from(CallSession))
                .order_by(CallSession.started_at.desc(), CallSession.id.desc())
                .limit(limit)
                .offset(offset)
            )
            rows = result.all()

        return CallSessionListResponse(
            sessions=[CallSessionListItem.from_row(session, insights, review) for session, insights, review in rows],
            total=total or 0,
            limit=limit,
            offset=offset
        )

    async def get_session_details(self, session_id: uuid.UUID, restaurant_id: str) -> CallSessionDetailsResponse:
        """Session with transcript, insights and review, read in one statement."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(CallSession, CallTranscript, CallInsights, CallReview)
                .select_from(CallSession)
                .outerjoin(CallTranscript, CallTranscript.call_session_id == CallSession.id)
                .outerjoin(CallInsights, CallInsights.call_session_id == CallSession.id)
                .outerjoin(CallReview, CallReview.call_session_id == CallSession.id)
                .where(CallSession.id == session_id, CallSession.restaurant_id == restaurant_id)
            )
            row = result.first()

        if row is None:
            raise NotFoundError("Call session not found")

        session, transcript, insights, review = row
        return CallSessionDetailsResponse(
            session=CallSessionResponse.from_model(session),
            transcript=TranscriptResponse.model_validate(transcript) if transcript is not None else None,
            insights=InsightsResponse.model_validate(insights) if insights is not None else None,
            review=ReviewResponse.model_validate(review) if review is not None else None
        )

    async def _breakdown(self, db: AsyncSession, column, conditions) -> Dict[str, int]:
        result = await db.execute(
            select(column, func.count())
            .select_from(CallSession)
            .join(CallInsights, CallInsights.call_session_id == CallSession.id)
            .where(*conditions, column.is_not(None))
            .group_by(column)
        )
        return {key: count for key, count in result.all()}

    async def get_analytics_summary(
        self,
        restaurant_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> AnalyticsSummaryResponse:
        """Aggregate call statistics for a restaurant over an inclusive window."""
        if not restaurant_id:
            raise ValidationError("Restaurant ID is required")

        date_from, date_to = ensure_utc(date_from), ensure_utc(date_to)
        conditions = [CallSession.restaurant_id == restaurant_id] + self._window(date_from, date_to)

        async with self.session_factory() as db:
            total_calls, avg_duration = (await db.execute(
                select(func.count(CallSession.id), func.avg(CallSession.duration_seconds))
                .where(*conditions)
            )).one()

            durations = list((await db.scalars(
                select(CallSession.duration_seconds)
                .where(*conditions, CallSession.duration_seconds.is_not(None))
            )).all())

            status_rows = await db.execute(
                select(CallSession.status, func.count())
                .where(*conditions)
                .group_by(CallSession.status)
            )
            status_breakdown = {status: count for status, count in status_rows.all()}

            outcome_breakdown = await self._breakdown(db, CallInsights.outcome, conditions)
            sentiment_breakdown = await self._breakdown(db, CallInsights.sentiment, conditions)
            intent_breakdown = await self._breakdown(db, CallInsights.intent_primary, conditions)

            avg_quality = await db.scalar(
                select(func.avg(CallInsights.quality_score))
                .select_from(CallSession)
                .join(CallInsights, CallInsights.call_session_id == CallSession.id)
                .where(*conditions)
            )

            reviewed_calls = await db.scalar(
                select(func.count(CallReview.id))
                .select_from(CallSession)
                .join(CallReview, CallReview.call_session_id == CallSession.id)
                .where(*conditions, CallReview.reviewed_at.is_not(None))
            ) or 0

        top_intents = sorted(intent_breakdown.items(), key=lambda item: (-item[1], item[0]))
        top_intents = top_intents[:self.settings.ANALYTICS_TOP_INTENTS]

        return AnalyticsSummaryResponse(
            total_calls=total_calls,
            completed_calls=outcome_breakdown.get("success", 0),
            abandoned_calls=outcome_breakdown.get("abandoned", 0),
            average_duration=round(float(avg_duration), 2) if avg_duration is not None else 0.0,
            duration_percentiles=duration_percentiles(durations),
            outcome_breakdown=outcome_breakdown,
            sentiment_breakdown=sentiment_breakdown,
            intent_breakdown=intent_breakdown,
            top_intents=[IntentCount(intent=intent, count=count) for intent, count in top_intents],
            status_breakdown=status_breakdown,
            average_quality_score=round(float(avg_quality), 2) if avg_quality is not None else None,
            reviewed_calls=reviewed_calls,
            review_coverage=round(reviewed_calls / total_calls * 100, 2) if total_calls else 0.0,
            date_from=date_from,
            date_to=date_to
        )
