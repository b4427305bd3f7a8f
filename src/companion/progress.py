"""Per-session progress accumulator, rebuildable from persisted assessments."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Sequence

from .models import Assessment, Message, ProgressSummary, Session
from .observability import get_logger

logger = get_logger(__name__)

TREND_BASELINE = "baseline"
TREND_IMPROVING = "improving"
TREND_STABLE = "stable"
TREND_WORSENING = "worsening"
TREND_DELTA = 2


@dataclass
class _Accumulator:
    intensities: list[int] = field(default_factory=list)
    techniques: list[str] = field(default_factory=list)


def trend_label(first: int, last: int, samples: int) -> str:
    if samples < 2:
        return TREND_BASELINE
    delta = last - first
    if delta <= -TREND_DELTA:
        return TREND_IMPROVING
    if delta >= TREND_DELTA:
        return TREND_WORSENING
    return TREND_STABLE


class ProgressAggregator:
    def __init__(self):
        self._sessions: dict[str, _Accumulator] = {}
        self._lock = threading.Lock()

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def record_turn(self, session_id: str, assessment: Assessment):
        """Adds one assessed turn; fallback assessments carry no signal and are ignored."""
        if not assessment.carries_signal:
            return
        with self._lock:
            acc = self._sessions.setdefault(session_id, _Accumulator())
            acc.intensities.append(int(assessment.intensity))
            acc.techniques.extend(assessment.techniques)

    def summarize(self, session_id: str) -> ProgressSummary | None:
        with self._lock:
            acc = self._sessions.get(session_id)
            if acc is None or not acc.intensities:
                return None
            intensities = list(acc.intensities)
            techniques = set(acc.techniques)
        return ProgressSummary(
            session_count=len(intensities),
            mean_intensity=round(sum(intensities) / len(intensities), 2),
            distinct_techniques=len(techniques),
            trend=trend_label(intensities[0], intensities[-1], len(intensities)),
        )

    def rebuild(self, session_id: str, messages: Sequence[Message]):
        """Replaces the accumulator with one derived from the session's assistant metadata."""
        acc = _Accumulator()
        for message in messages:
            raw = (message.metadata or {}).get("assessment") if message.role == "assistant" else None
            if not isinstance(raw, dict):
                continue
            assessment = Assessment.from_metadata(raw)
            if assessment.carries_signal:
                acc.intensities.append(int(assessment.intensity))
                acc.techniques.extend(assessment.techniques)
        with self._lock:
            self._sessions[session_id] = acc
        logger.info("progress_rebuilt", session_id=session_id, turns=len(acc.intensities))

    def ensure(self, session: Session):
        if session.session_id not in self:
            self.rebuild(session.session_id, session.messages)

    def evict(self, session_id: str):
        with self._lock:
            self._sessions.pop(session_id, None)

    def clear(self):
        with self._lock:
            self._sessions.clear()
