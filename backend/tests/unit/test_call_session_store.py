import uuid
import pytest
from sqlalchemy import select

from callintel.core.exceptions import ConflictError, NotFoundError, PreconditionError
from callintel.models.models import CallSession, CallSessionStatus, CallTranscript
from callintel.schemas.schemas import SttResult, TranscriptTurn
from callintel.services.call_session_store import (
    CallSessionStore, ALLOWED_TRANSITIONS, is_allowed_transition
)

S = CallSessionStatus


class TestTransitionTable:

    @pytest.mark.parametrize("from_status,to_status", [
        (S.RECEIVED, S.TRANSCRIPT_PENDING),
        (S.TRANSCRIPT_PENDING, S.TRANSCRIPT_READY),
        (S.TRANSCRIPT_PENDING, S.TRANSCRIPT_FAILED),
        (S.TRANSCRIPT_FAILED, S.TRANSCRIPT_PENDING),
        (S.TRANSCRIPT_READY, S.ANALYZING),
        (S.ANALYZING, S.COMPLETED),
        (S.ANALYZING, S.ANALYSIS_FAILED),
        (S.ANALYSIS_FAILED, S.ANALYZING),
    ])
    def test_allowed(self, from_status, to_status):
        assert is_allowed_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        (S.RECEIVED, S.ANALYZING),
        (S.RECEIVED, S.TRANSCRIPT_READY),
        (S.TRANSCRIPT_PENDING, S.ANALYZING),
        (S.COMPLETED, S.ANALYZING),
        (S.COMPLETED, S.RECEIVED),
        (S.TRANSCRIPT_READY, S.TRANSCRIPT_PENDING),
    ])
    def test_rejected(self, from_status, to_status):
        assert not is_allowed_transition(from_status, to_status)

    def test_completed_is_terminal(self):
        assert ALLOWED_TRANSITIONS[S.COMPLETED.value] == frozenset()

    def test_analyzing_only_reachable_from_ready_or_retry(self):
        sources = {src for src, targets in ALLOWED_TRANSITIONS.items() if S.ANALYZING.value in targets}
        assert sources == {S.TRANSCRIPT_READY.value, S.ANALYSIS_FAILED.value}


class TestCallSessionStore:

    @pytest.fixture
    def store(self):
        return CallSessionStore()

    @pytest.mark.asyncio
    async def test_get_is_tenant_scoped(self, store, session_factory, make_call_session):
        call = await make_call_session(restaurant_id="rest-1")

        async with session_factory() as db:
            found = await store.get(db, call.id, "rest-1")
            assert found.id == call.id

            with pytest.raises(NotFoundError):
                await store.get(db, call.id, "rest-2")

            with pytest.raises(NotFoundError):
                await store.get(db, uuid.uuid4(), "rest-1")

    @pytest.mark.asyncio
    async def test_advance_state_moves_forward(self, store, session_factory, make_call_session):
        call = await make_call_session()

        async with session_factory() as db:
            await store.advance_state(db, call.id, S.RECEIVED, S.TRANSCRIPT_PENDING)
            await db.commit()

        async with session_factory() as db:
            status = await db.scalar(select(CallSession.status).where(CallSession.id == call.id))
        assert status == S.TRANSCRIPT_PENDING.value

    @pytest.mark.asyncio
    async def test_advance_state_conflict_changes_nothing(self, store, session_factory, make_call_session):
        call = await make_call_session(status=S.TRANSCRIPT_READY.value)

        async with session_factory() as db:
            with pytest.raises(ConflictError):
                await store.advance_state(db, call.id, S.TRANSCRIPT_PENDING, S.TRANSCRIPT_FAILED)
            await db.commit()

        async with session_factory() as db:
            status = await db.scalar(select(CallSession.status).where(CallSession.id == call.id))
        assert status == S.TRANSCRIPT_READY.value

    @pytest.mark.asyncio
    async def test_advance_state_rejects_illegal_pair_before_touching_db(self, store):
        db = object()  # never used
        with pytest.raises(PreconditionError):
            await store.advance_state(db, uuid.uuid4(), S.RECEIVED, S.ANALYZING)

    @pytest.mark.asyncio
    async def test_upsert_transcript_overwrites(self, store, session_factory, make_call_session):
        call = await make_call_session(status=S.TRANSCRIPT_PENDING.value)
        first = SttResult(text="first", turns=[TranscriptTurn(speaker="caller", text="first")])
        second = SttResult(text="second", turns=[TranscriptTurn(speaker="agent", text="second")], confidence=0.5)

        async with session_factory() as db:
            await store.upsert_transcript(db, call.id, first, "deepgram")
            await db.commit()
        async with session_factory() as db:
            await store.upsert_transcript(db, call.id, second, "deepgram")
            await db.commit()

        async with session_factory() as db:
            rows = (await db.execute(
                select(CallTranscript).where(CallTranscript.call_session_id == call.id)
            )).scalars().all()

        assert len(rows) == 1
        assert rows[0].transcript_text == "second"
        assert rows[0].transcript_json == {
            "turns": [{"speaker": "agent", "start": None, "end": None, "text": "second"}]
        }
        assert rows[0].stt_confidence == 0.5
