"""
Process-local session memory.

``SessionMemoryStore`` is a get-or-rebuild cache: a hit returns the shared
instance, a miss replays the session's persisted messages into a fresh
SessionMemory. Nothing in here is authoritative; evicting an entry (or the
whole cache) only costs a rebuild on the next access.
"""
from __future__ import annotations

import re
import threading
from collections import OrderedDict
from contextlib import contextmanager
from typing import Callable

from .config import (
    MEMORY_CACHE_MAX_SESSIONS,
    PROGRESS_STEP_PER_TURN,
    TRUST_NAME_DISCLOSURE_BONUS,
)
from .errors import NotFoundError
from .models import Assessment, Session, SessionMemory
from .observability import get_logger

logger = get_logger(__name__)

SessionLoader = Callable[[str], "Session | None"]

_NAME_PATTERNS = (
    re.compile(r"\bmy name is\s+([a-z][a-z'\-]{1,30})\b", re.IGNORECASE),
    # Only a capitalized word counts after "call me" or "I'm", otherwise "call me later" would be a name.
    re.compile(r"\b[Cc]all me\s+([A-Z][a-z'\-]{1,30})\b"),
    re.compile(r"\b[Ii](?:'|’)?m\s+([A-Z][a-z'\-]{1,30})\b"),
)
_NOT_NAMES = {
    "a", "an", "the", "so", "not", "just", "really", "very", "still", "also", "always", "never",
    "feeling", "fine", "okay", "ok", "good", "sad", "tired", "anxious", "here", "sorry", "done",
    "back", "going", "trying", "scared", "stressed", "worried", "happy", "lost", "glad", "afraid",
    "sure", "from", "in", "at", "on", "crazy", "stupid", "lazy", "overwhelmed", "exhausted",
    "later", "when", "anytime", "tomorrow", "tonight", "today", "anymore", "if", "whenever", "now",
    "soon", "again", "maybe", "please", "out", "up", "names", "whatever", "that", "it",
}
_NAME_SCAN_CHARS = 2048


def extract_display_name(text: str) -> str | None:
    """Returns the first self-introduced name ("my name is X", "call me X", "I'm X"), if any."""
    sample = str(text or "")[:_NAME_SCAN_CHARS]
    for pattern in _NAME_PATTERNS:
        match = pattern.search(sample)
        if match and match.group(1).lower() not in _NOT_NAMES:
            return match.group(1).strip("'-").capitalize()
    return None


def _note_user_text(memory: SessionMemory, user_text: str):
    if memory.preferences.display_name:
        return
    name = extract_display_name(user_text)
    if name:
        memory.preferences.display_name = name
        memory.context.trust = min(100, memory.context.trust + TRUST_NAME_DISCLOSURE_BONUS)


def record_exchange(memory: SessionMemory, user_text: str, reply: str):
    """Folds one completed turn (user text + assistant reply) into memory."""
    _note_user_text(memory, user_text)
    memory.recent_turns.append({"role": "user", "content": user_text})
    memory.recent_turns.append({"role": "assistant", "content": reply})
    memory.turn_count += 1
    memory.context.progress = min(100, memory.context.progress + PROGRESS_STEP_PER_TURN)
    memory.trim()


def rebuild_memory(session: Session) -> SessionMemory:
    """Replays persisted messages, in order, into a fresh SessionMemory."""
    memory = SessionMemory(session_id=session.session_id)
    for index, message in enumerate(session.messages):
        memory.recent_turns.append({"role": message.role, "content": message.content})
        if message.role == "user":
            _note_user_text(memory, message.content)
            continue
        metadata = message.metadata
        if not metadata or "assessment" not in metadata:
            continue
        raw = metadata.get("assessment")
        if not isinstance(raw, dict):
            logger.warning("memory_rebuild_skipped_message", session_id=session.session_id, index=index)
            continue
        assessment = Assessment.from_metadata(raw)
        if assessment.carries_signal:
            memory.absorb_assessment(assessment)

    pairs = len(session.messages) // 2
    memory.turn_count = pairs
    memory.context.progress = min(100, pairs * PROGRESS_STEP_PER_TURN)
    memory.trim()
    return memory


class SessionMemoryStore:
    """LRU cache of SessionMemory keyed by session id, rebuilt from persistence on a miss."""

    def __init__(self, loader: SessionLoader, max_sessions: int = MEMORY_CACHE_MAX_SESSIONS):
        self._loader = loader
        self._max = max(1, int(max_sessions))
        self._cache: OrderedDict[str, SessionMemory] = OrderedDict()
        self._lock = threading.Lock()

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._cache

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def get(self, session_id: str, session: Session | None = None) -> SessionMemory:
        with self._lock:
            cached = self._cache.get(session_id)
            if cached is not None:
                self._cache.move_to_end(session_id)
                return cached

        if session is None:
            session = self._loader(session_id)
            if session is None:
                raise NotFoundError(f"session {session_id} not found")
        memory = rebuild_memory(session)
        logger.info(
            "session_memory_rebuilt",
            session_id=session_id,
            messages=len(session.messages),
            emotions=len(memory.emotions),
            progress=memory.context.progress,
        )

        with self._lock:
            # Another thread may have rebuilt the same session meanwhile; keep the first one.
            existing = self._cache.get(session_id)
            if existing is not None:
                self._cache.move_to_end(session_id)
                return existing
            self._cache[session_id] = memory
            while len(self._cache) > self._max:
                evicted, _ = self._cache.popitem(last=False)
                logger.info("session_memory_evicted", session_id=evicted, reason="capacity")
        return memory

    def evict(self, session_id: str):
        with self._lock:
            self._cache.pop(session_id, None)

    def clear(self):
        with self._lock:
            self._cache.clear()


class SessionLocks:
    """One re-entrant lock per session id; serializes a session's read-modify-write turn."""

    def __init__(self):
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def for_session(self, session_id: str):
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[session_id] = lock
            return lock

    @contextmanager
    def hold(self, session_id: str):
        lock = self.for_session(session_id)
        with lock:
            yield
