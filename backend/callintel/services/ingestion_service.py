# backend/callintel/services/ingestion_service.py
"""
Ingestion of call sessions delivered by the voice-AI webhook.

A delivery is upserted by (provider, provider_call_id) so retried webhooks do
not create duplicate sessions. When the provider already transcribed the call
the transcript is stored directly; otherwise a recording URL starts the
transcription stage.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from callintel.core.config import Settings
from callintel.core.exceptions import ConversationPipelineError, ValidationError, ConflictError
from callintel.models.models import CallSession, CallSessionStatus, ensure_utc, utcnow
from callintel.schemas.schemas import CallWebhookPayload, SttResult, TranscriptTurn
from callintel.security.audit_logger import AuditLogger
from callintel.security.pii import mask_phone_number
from callintel.services.call_session_store import CallSessionStore
from callintel.services.job_orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)

S = CallSessionStatus

SPEAKER_ALIASES = {
    "ai": "agent",
    "assistant": "agent",
    "bot": "agent",
    "agent": "agent",
    "user": "caller",
    "customer": "caller",
    "caller": "caller",
}
_LINE_SPEAKER = re.compile(r"^\s*([A-Za-z][A-Za-z _-]{0,19}):\s*(.*)$")


def _speaker(label: Any) -> str:
    label = str(label or "").strip().lower()
    return SPEAKER_ALIASES.get(label, label or "unknown")


def _seconds(value: Any) -> Optional[float]:
    return float(value) if isinstance(value, (int, float)) else None


def normalize_transcript(raw: Any, language: str = "en") -> Optional[SttResult]:
    """Normalize a provider transcript into text plus speaker turns.

    Accepts plain text (``"AI: hello\\nUser: hi"``), a list of chat-style
    messages (``{"role", "content"}`` or ``{"role", "message"}``), or a dict
    with ``turns``. Returns None when nothing usable remains.
    """
    turns: List[TranscriptTurn] = []

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        for line in text.splitlines():
            if not line.strip():
                continue
            match = _LINE_SPEAKER.match(line)
            if match and match.group(2).strip():
                turns.append(TranscriptTurn(speaker=_speaker(match.group(1)), text=match.group(2).strip()))
            else:
                turns.append(TranscriptTurn(speaker="unknown", text=line.strip()))
        return SttResult(text=text, turns=turns, language=language)

    if isinstance(raw, dict):
        raw_turns = raw.get("turns") or []
        for turn in raw_turns:
            if isinstance(turn, dict) and str(turn.get("text") or "").strip():
                turns.append(TranscriptTurn(
                    speaker=_speaker(turn.get("speaker")),
                    start=_seconds(turn.get("start")),
                    end=_seconds(turn.get("end")),
                    text=str(turn["text"]).strip()
                ))
    elif isinstance(raw, list):
        for message in raw:
            if not isinstance(message, dict):
                continue
            role = str(message.get("role") or "").lower()
            if role == "system":
                continue
            content = str(message.get("content") or message.get("message") or "").strip()
            if not content:
                continue
            start = _seconds(message.get("secondsFromStart", message.get("start")))
            end = _seconds(message.get("end"))
            if end is None and start is not None and isinstance(message.get("duration"), (int, float)):
                end = start + message["duration"] / 1000.0
            turns.append(TranscriptTurn(speaker=_speaker(role), start=start, end=end, text=content))
    else:
        return None

    if not turns:
        return None

    text = "\n".join(f"{turn.speaker}: {turn.text}" for turn in turns)
    return SttResult(text=text, turns=turns, language=language)


@dataclass
class IngestionResult:
    session: CallSession
    created: bool
    job_id: Optional[uuid.UUID] = None


class IngestionService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: CallSessionStore,
        orchestrator: JobOrchestrator,
        audit: AuditLogger,
        settings: Settings
    ):
        self.session_factory = session_factory
        self.store = store
        self.orchestrator = orchestrator
        self.audit = audit
        self.settings = settings

    async def ingest_call(self, payload: CallWebhookPayload) -> IngestionResult:
        """Upsert the session for a webhook delivery and start the pipeline."""
        payload = payload.model_copy(update={
            "started_at": ensure_utc(payload.started_at),
            "ended_at": ensure_utc(payload.ended_at),
        })
        if payload.ended_at is not None and payload.ended_at < payload.started_at:
            raise ValidationError("ended_at must not be before started_at")

        duration = payload.duration_seconds
        if duration is None and payload.ended_at is not None:
            duration = int((payload.ended_at - payload.started_at).total_seconds())

        call_session, created = await self._upsert_session(payload, duration)

        job_id = None
        if call_session.status == S.RECEIVED.value:
            stt = normalize_transcript(payload.transcript) if payload.transcript is not None else None
            if stt is not None:
                job_id = await self._store_provider_transcript(call_session, stt, payload.provider)
            elif call_session.audio_url and self.settings.AUTO_TRANSCRIBE:
                try:
                    job_id = await self.orchestrator.enqueue_transcription(
                        call_session.id, call_session.restaurant_id
                    )
                    call_session.status = S.TRANSCRIPT_PENDING.value
                except ConversationPipelineError as e:
                    logger.warning(f"⚠️ Transcription not enqueued for session {call_session.id}: {e.detail}")

        return IngestionResult(session=call_session, created=created, job_id=job_id)

    async def _upsert_session(self, payload: CallWebhookPayload, duration: Optional[int]):
        for _ in range(2):
            async with self.session_factory() as db:
                call_session = await self.store.find_by_provider_call(
                    db, payload.provider, payload.provider_call_id
                )
                created = call_session is None

                if created:
                    call_session = CallSession(
                        id=uuid.uuid4(),
                        restaurant_id=payload.restaurant_id,
                        provider=payload.provider,
                        provider_call_id=payload.provider_call_id,
                        direction=payload.direction.value,
                        from_number=payload.from_number,
                        to_number=payload.to_number,
                        started_at=payload.started_at,
                        ended_at=payload.ended_at,
                        duration_seconds=duration,
                        status=S.RECEIVED.value,
                        audio_url=payload.audio_url,
                        call_metadata=dict(payload.metadata)
                    )
                    db.add(call_session)
                else:
                    if call_session.restaurant_id != payload.restaurant_id:
                        # The first delivery owns the session; nothing about it is returned
                        logger.warning(
                            f"Rejected webhook for {payload.provider}:{payload.provider_call_id}: "
                            f"restaurant {payload.restaurant_id} does not own this call"
                        )
                        raise ConflictError("Provider call id is already registered")
                    if payload.ended_at is not None:
                        call_session.ended_at = payload.ended_at
                    if duration is not None:
                        call_session.duration_seconds = duration
                    if payload.audio_url:
                        call_session.audio_url = payload.audio_url
                    if payload.from_number and not call_session.from_number:
                        call_session.from_number = payload.from_number
                    if payload.to_number and not call_session.to_number:
                        call_session.to_number = payload.to_number
                    call_session.call_metadata = {**(call_session.call_metadata or {}), **payload.metadata}
                    call_session.updated_at = utcnow()

                await self.audit.record(
                    db,
                    restaurant_id=call_session.restaurant_id,
                    actor_id=None,
                    action="call_ingested" if created else "call_updated",
                    entity_type="call_session",
                    entity_id=call_session.id,
                    details={
                        "provider": payload.provider,
                        "provider_call_id": payload.provider_call_id,
                        "from_number": mask_phone_number(payload.from_number),
                    }
                )

                try:
                    await db.commit()
                except IntegrityError:
                    # Duplicate delivery raced us to the insert
                    await db.rollback()
                    continue

                logger.info(
                    f"📞 {'Created' if created else 'Updated'} call session {call_session.id} "
                    f"from {payload.provider} call {payload.provider_call_id}"
                )
                return call_session, created

        raise ConflictError("Call session could not be stored due to concurrent deliveries")

    async def _store_provider_transcript(
        self,
        call_session: CallSession,
        stt: SttResult,
        provider: str
    ) -> Optional[uuid.UUID]:
        """Store a transcript the telephony provider already produced."""
        async with self.session_factory() as db:
            try:
                await self.store.advance_state(db, call_session.id, S.RECEIVED, S.TRANSCRIPT_PENDING)
                await self.store.upsert_transcript(db, call_session.id, stt, provider)
                await self.store.advance_state(db, call_session.id, S.TRANSCRIPT_PENDING, S.TRANSCRIPT_READY)
            except ConflictError:
                # A concurrent delivery already moved the session on
                logger.info(f"Session {call_session.id} already left received; transcript not stored")
                return None
            await db.commit()

        call_session.status = S.TRANSCRIPT_READY.value
        logger.info(f"✅ Stored {provider} transcript for session {call_session.id}")

        if not self.settings.AUTO_ANALYZE:
            return None
        try:
            job_id = await self.orchestrator.enqueue_analysis(call_session.id, call_session.restaurant_id)
            call_session.status = S.ANALYZING.value
            return job_id
        except ConversationPipelineError as e:
            logger.warning(f"⚠️ Analysis not enqueued for session {call_session.id}: {e.detail}")
            return None
