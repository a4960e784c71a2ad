# backend/callintel/services/call_session_store.py
"""
Call Session Store

Tenant-scoped access to call sessions and their pipeline artifacts. The only
way a session's ``status`` changes is ``advance_state``, a conditional UPDATE
guarded on the expected current state.
"""

import logging
import uuid
from typing import Dict, FrozenSet, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from callintel.core.exceptions import ConflictError, NotFoundError, PreconditionError
from callintel.models.models import (
    CallSession, CallTranscript, CallInsights, CallSessionStatus, utcnow
)
from callintel.schemas.schemas import SttResult, AnalysisResult

logger = logging.getLogger(__name__)

S = CallSessionStatus

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    S.RECEIVED.value: frozenset({S.TRANSCRIPT_PENDING.value}),
    S.TRANSCRIPT_PENDING.value: frozenset({S.TRANSCRIPT_READY.value, S.TRANSCRIPT_FAILED.value}),
    S.TRANSCRIPT_FAILED.value: frozenset({S.TRANSCRIPT_PENDING.value}),
    S.TRANSCRIPT_READY.value: frozenset({S.ANALYZING.value}),
    S.ANALYZING.value: frozenset({S.COMPLETED.value, S.ANALYSIS_FAILED.value}),
    S.ANALYSIS_FAILED.value: frozenset({S.ANALYZING.value}),
    S.COMPLETED.value: frozenset(),
}


def _value(status) -> str:
    return status.value if isinstance(status, CallSessionStatus) else str(status)


def is_allowed_transition(from_status, to_status) -> bool:
    return _value(to_status) in ALLOWED_TRANSITIONS.get(_value(from_status), frozenset())


class CallSessionStore:
    """Persistence for CallSession, CallTranscript and CallInsights.

    Methods take the caller's ``AsyncSession`` and never commit, so several
    store calls can form one all-or-nothing unit of work.
    """

    async def get(self, db: AsyncSession, session_id: uuid.UUID, restaurant_id: str) -> CallSession:
        """Load a session owned by ``restaurant_id``.

        A session that exists under another tenant is reported exactly like a
        missing one.
        """
        result = await db.execute(
            select(CallSession).where(
                CallSession.id == session_id,
                CallSession.restaurant_id == restaurant_id
            )
        )
        call_session = result.scalar_one_or_none()
        if call_session is None:
            raise NotFoundError("Call session not found")
        return call_session

    async def find_by_provider_call(
        self,
        db: AsyncSession,
        provider: str,
        provider_call_id: str
    ) -> Optional[CallSession]:
        result = await db.execute(
            select(CallSession).where(
                CallSession.provider == provider,
                CallSession.provider_call_id == provider_call_id
            )
        )
        return result.scalar_one_or_none()

    async def advance_state(
        self,
        db: AsyncSession,
        session_id: uuid.UUID,
        from_expected,
        to
    ) -> None:
        """Move a session from ``from_expected`` to ``to`` or change nothing.

        Raises:
            PreconditionError: the pair is not an allowed transition
            ConflictError: the stored status is no longer ``from_expected``
        """
        from_value, to_value = _value(from_expected), _value(to)
        if not is_allowed_transition(from_value, to_value):
            raise PreconditionError(
                f"Transition {from_value} -> {to_value} is not allowed"
            )

        result = await db.execute(
            update(CallSession)
            .where(CallSession.id == session_id, CallSession.status == from_value)
            .values(status=to_value, updated_at=utcnow())
        )
        if result.rowcount == 0:
            logger.info(f"State guard lost for session {session_id}: expected {from_value}")
            raise ConflictError(
                f"Call session is no longer in state {from_value}",
                context={"session_id": str(session_id), "expected": from_value, "target": to_value}
            )

        logger.debug(f"Session {session_id}: {from_value} -> {to_value}")

    async def get_transcript(self, db: AsyncSession, session_id: uuid.UUID) -> Optional[CallTranscript]:
        result = await db.execute(
            select(CallTranscript).where(CallTranscript.call_session_id == session_id)
        )
        return result.scalar_one_or_none()

    async def upsert_transcript(
        self,
        db: AsyncSession,
        session_id: uuid.UUID,
        stt: SttResult,
        stt_provider: str
    ) -> CallTranscript:
        """Write the session's transcript, replacing any earlier one."""
        transcript = await self.get_transcript(db, session_id)
        transcript_json = {"turns": [turn.model_dump() for turn in stt.turns]}

        if transcript is None:
            transcript = CallTranscript(call_session_id=session_id)
            db.add(transcript)

        transcript.transcript_text = stt.text
        transcript.transcript_json = transcript_json
        transcript.language = stt.language or "en"
        transcript.stt_provider = stt_provider
        transcript.stt_confidence = stt.confidence
        transcript.updated_at = utcnow()
        return transcript

    async def upsert_insights(
        self,
        db: AsyncSession,
        session_id: uuid.UUID,
        analysis: AnalysisResult
    ) -> CallInsights:
        """Write the session's insights, replacing any earlier ones."""
        result = await db.execute(
            select(CallInsights).where(CallInsights.call_session_id == session_id)
        )
        insights = result.scalar_one_or_none()
        if insights is None:
            insights = CallInsights(call_session_id=session_id)
            db.add(insights)

        insights.summary = analysis.summary
        insights.intent_primary = analysis.intent_primary
        insights.intents_secondary = list(analysis.intents_secondary)
        insights.outcome = analysis.outcome
        insights.sentiment = analysis.sentiment
        insights.friction_points = list(analysis.friction_points)
        insights.improvement_suggestions = list(analysis.improvement_suggestions)
        insights.extracted_entities = dict(analysis.extracted_entities)
        insights.quality_score = analysis.quality_score
        insights.analysis_raw = analysis.raw
        insights.updated_at = utcnow()
        return insights
