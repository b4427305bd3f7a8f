"""
Turn pipeline and the operations exposed to callers.

A turn runs, under the session's lock:
    load + ownership check -> hydrate memory/progress -> extract ->
    close or synthesize -> fold into memory/progress -> persist pair ->
    (complete session when closing).

Persistence is the source of truth. Memory and progress are caches; when a
turn cannot be persisted, both are evicted so the next access rebuilds.
"""
from __future__ import annotations

import random
import time
from typing import Any

from .closing import pick_closing_line, should_close
from .config import DB_PATH, EMPTY_SESSION_GRACE_S, MAX_UTTERANCE_CHARS, POLICY_PATH, RISK_ALERT_THRESHOLD
from .errors import AuthorizationError, CompanionError, NotFoundError, PersistenceError, SessionClosedError, ValidationError
from .extractor import StructuredExtractor
from .llm import TextGenerator, initialize_generator
from .memory_store import SessionLocks, SessionMemoryStore, rebuild_memory, record_exchange
from .metrics import MetricsCollector
from .models import Assessment, Message, Session, SessionReview, SessionStatus, TurnResult, utcnow_iso
from .observability import bound_context, get_logger
from .policy import ConversationPolicy, load_policy
from .progress import ProgressAggregator
from .review import SessionReviewer
from .storage import ConversationRepository, SqliteConversationStore
from .synthesizer import SOURCE_CLOSING, ResponseSynthesizer, SynthesizedReply

logger = get_logger(__name__)

PREVIEW_CHARS = 100


def validate_utterance(utterance: Any) -> str:
    if not isinstance(utterance, str):
        raise ValidationError("utterance must be text")
    text = utterance.strip()
    if not text:
        raise ValidationError("utterance must not be empty")
    if len(text) > MAX_UTTERANCE_CHARS:
        raise ValidationError(f"utterance exceeds {MAX_UTTERANCE_CHARS} characters")
    return text


def _preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    flat = " ".join(str(text or "").split())
    if len(flat) <= limit:
        return flat
    return flat[: limit - 3].rstrip() + "..."


class ConversationService:
    def __init__(
        self,
        repository: ConversationRepository,
        generator: TextGenerator | None,
        *,
        memory_store: SessionMemoryStore | None = None,
        progress: ProgressAggregator | None = None,
        policy: ConversationPolicy | None = None,
        rng: random.Random | None = None,
        metrics: MetricsCollector | None = None,
        extractor: StructuredExtractor | None = None,
        synthesizer: ResponseSynthesizer | None = None,
        reviewer: SessionReviewer | None = None,
    ):
        self.repository = repository
        self.policy = policy or load_policy(None)
        self.memory_store = memory_store or SessionMemoryStore(repository.find_session_by_id)
        self.progress = progress or ProgressAggregator()
        self.rng = rng or random.Random()
        self.metrics = metrics
        self.extractor = extractor or StructuredExtractor(generator)
        self.synthesizer = synthesizer or ResponseSynthesizer(generator, self.policy)
        self.reviewer = reviewer or SessionReviewer(generator)
        self.locks = SessionLocks()

    # ------------------------------------------------------------------
    # Session access
    # ------------------------------------------------------------------

    def _owned_session(self, session_id: str, owner: str) -> Session:
        session = self.repository.find_session_by_id(session_id)
        if session is None:
            raise NotFoundError(f"session {session_id} not found")
        if session.owner_id != owner:
            logger.warning("session_access_denied", session_id=session_id)
            raise AuthorizationError(f"session {session_id} belongs to another owner")
        return session

    def create_session(self, owner: str, session_id: str | None = None) -> str:
        if not isinstance(owner, str) or not owner.strip():
            raise ValidationError("owner must not be blank")
        session = self.repository.create_session(owner.strip(), session_id)
        return session.session_id

    # ------------------------------------------------------------------
    # Turn pipeline
    # ------------------------------------------------------------------

    def _is_crisis(self, utterance: str, assessment: Assessment) -> bool:
        high_risk = assessment.risk_score is not None and assessment.risk_score >= RISK_ALERT_THRESHOLD
        if high_risk:
            logger.warning("high_risk_turn", risk_score=assessment.risk_score, emotion=assessment.emotion)
        return high_risk or self.policy.detects_crisis(utterance)

    def _evict(self, session_id: str):
        self.memory_store.evict(session_id)
        self.progress.evict(session_id)

    def send_turn(self, session_id: str, owner: str, utterance: Any) -> TurnResult:
        text = validate_utterance(utterance)
        started = time.perf_counter()
        try:
            result = self._run_turn(session_id, owner, text)
        except CompanionError:
            self._record_metrics(started, success=False)
            raise
        self._record_metrics(
            started,
            success=True,
            reply_source=result.reply_source,
            extraction_status=result.assessment.extraction_status.value,
            conversation_complete=result.conversation_complete,
        )
        return result

    def _run_turn(self, session_id: str, owner: str, text: str) -> TurnResult:
        with self.locks.hold(session_id), bound_context(session_id=session_id):
            session = self._owned_session(session_id, owner)
            if session.status != SessionStatus.ACTIVE:
                raise SessionClosedError(f"session {session_id} is {session.status.value}")

            memory = self.memory_store.get(session_id, session)
            self.progress.ensure(session)

            assessment = self.extractor.analyze(text, memory)
            crisis = self._is_crisis(text, assessment)
            closing = not crisis and should_close(text, self.policy)

            if closing:
                reply = SynthesizedReply(pick_closing_line(self.rng, self.policy), SOURCE_CLOSING)
            else:
                reply = self.synthesizer.compose(text, assessment, memory, crisis=crisis)

            record_exchange(memory, text, reply.text)
            self.progress.record_turn(session_id, assessment)

            now = utcnow_iso()
            pair = [
                Message(role="user", content=text, created_at=now),
                Message(
                    role="assistant",
                    content=reply.text,
                    created_at=now,
                    metadata={
                        "assessment": assessment.to_dict(),
                        "technique": assessment.top_technique,
                        "focus": assessment.focus,
                        "risk_score": assessment.risk_score,
                        "reply_source": reply.source,
                        "conversation_complete": closing,
                    },
                ),
            ]
            try:
                self.repository.append_messages(
                    session_id, pair, status=SessionStatus.COMPLETED if closing else None
                )
            except PersistenceError:
                self._evict(session_id)
                logger.error("turn_persist_failed")
                raise

            status = SessionStatus.COMPLETED if closing else SessionStatus.ACTIVE
            logger.info(
                "turn_completed",
                reply_source=reply.source,
                extraction_status=assessment.extraction_status.value,
                crisis=crisis,
                conversation_complete=closing,
            )
            return TurnResult(
                reply=reply.text,
                assessment=assessment,
                memory_summary=memory.summary(),
                conversation_complete=closing,
                status=status,
                reply_source=reply.source,
            )

    def _record_metrics(self, started: float, **fields):
        if self.metrics is None:
            return
        self.metrics.record_turn((time.perf_counter() - started) * 1000.0, **fields)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_history(self, session_id: str, owner: str) -> dict[str, Any]:
        session = self._owned_session(session_id, owner)
        memory = self.memory_store.get(session_id, session)
        self.progress.ensure(session)
        progress = self.progress.summarize(session_id)
        return {
            "session_id": session.session_id,
            "status": session.status.value,
            "messages": [m.to_dict() for m in session.messages],
            "memory_summary": memory.summary(),
            "progress_summary": progress.to_dict() if progress else None,
        }

    def list_sessions(self, owner: str) -> list[dict[str, Any]]:
        rows = []
        for session in self.repository.list_sessions(owner):
            # Listing rebuilds uncached sessions without pulling them into the LRU.
            if session.session_id in self.memory_store:
                memory = self.memory_store.get(session.session_id, session)
            else:
                memory = rebuild_memory(session)
            last = session.messages[-1].content if session.messages else ""
            rows.append(
                {
                    "session_id": session.session_id,
                    "status": session.status.value,
                    "created_at": session.created_at,
                    "message_count": len(session.messages),
                    "last_message_preview": _preview(last),
                    "degenerate": session.is_degenerate,
                    "memory_summary": memory.summary(),
                }
            )
        return rows

    def review_session(self, session_id: str, owner: str) -> SessionReview:
        with bound_context(session_id=session_id):
            session = self._owned_session(session_id, owner)
            memory = self.memory_store.get(session_id, session)
            review = self.reviewer.review(session, memory)
            logger.info("session_reviewed", generated=review.generated)
            return review

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_empty_sessions(self, older_than_s: int = EMPTY_SESSION_GRACE_S) -> int:
        return self.repository.purge_empty_sessions(older_than_s)

    def close(self):
        close = getattr(self.repository, "close", None)
        if callable(close):
            close()


def build_service(
    db_path: str | None = None,
    *,
    generator: TextGenerator | None = None,
    metrics: MetricsCollector | None = None,
) -> ConversationService:
    """Wires the default store, configured generator and policy file."""
    store = SqliteConversationStore(db_path or DB_PATH)
    if generator is None:
        generator = initialize_generator()
    return ConversationService(
        store,
        generator,
        policy=load_policy(POLICY_PATH),
        metrics=metrics,
    )
