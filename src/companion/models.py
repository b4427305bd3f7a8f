"""
Domain records shared by the turn pipeline.

Session and Message mirror what the conversation store persists. Assessment,
SessionMemory and ProgressSummary are derived values that can always be rebuilt
from persisted message metadata.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .config import (
    MEMORY_EMOTION_LIMIT,
    MEMORY_PATTERN_LIMIT,
    MEMORY_RECENT_TURN_LIMIT,
    MEMORY_TECHNIQUE_LIMIT,
    MEMORY_TOPIC_LIMIT,
    TRUST_BASELINE,
)

DEFAULT_EMOTION = "neutral"
DEFAULT_INTENSITY = 5
DEFAULT_TECHNIQUES = ("active_listening",)
DEFAULT_FOCUS = "emotional_support"
REQUIRED_ASSESSMENT_FIELDS = ("emotion", "intensity", "themes", "distortions", "techniques", "focus")

# Accepted spellings per field, first match wins. Includes the camelCase keys of the older analysis payload.
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "emotion": ("emotion", "primary_emotion", "emotionalState", "emotional_state"),
    "intensity": ("intensity", "emotion_intensity"),
    "themes": ("themes", "main_thoughts", "mainThoughts"),
    "distortions": ("distortions", "cognitive_distortions", "cognitiveDistortions"),
    "techniques": ("techniques", "recommended_techniques", "recommendedApproach"),
    "focus": ("focus", "therapeutic_focus", "therapeuticFocus"),
    "risk_score": ("risk_score", "riskLevel", "risk_level"),
    "progress_indicators": ("progress_indicators", "progressIndicators"),
}
_LIST_ITEM_LIMIT = 8
_LABEL_MAX_CHARS = 40
_THEME_MAX_CHARS = 120


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class ExtractionStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FALLBACK = "fallback"


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

@dataclass
class Message:
    role: str
    content: str
    created_at: str = field(default_factory=utcnow_iso)
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at,
            "metadata": self.metadata,
        }


@dataclass
class Session:
    session_id: str
    owner_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: str = field(default_factory=utcnow_iso)
    messages: list[Message] = field(default_factory=list)

    @property
    def is_degenerate(self) -> bool:
        """True when no message carries non-empty content."""
        return not any((m.content or "").strip() for m in self.messages)


# ---------------------------------------------------------------------------
# Assessment and per-field coercion
# ---------------------------------------------------------------------------

def _pick(payload: dict[str, Any], name: str) -> tuple[bool, Any]:
    for key in _FIELD_ALIASES.get(name, (name,)):
        if key in payload:
            return True, payload[key]
    return False, None


def _identifier(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.strip().lower()).strip("_")


def _coerce_label(value: Any) -> tuple[str | None, bool]:
    if not isinstance(value, str):
        return None, False
    label = " ".join(value.split()).lower()[:_LABEL_MAX_CHARS].strip()
    return (label, True) if label else (None, False)


def _coerce_intensity(value: Any) -> tuple[int | None, bool]:
    if isinstance(value, bool):
        return None, False
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None, False
    if isinstance(value, (int, float)):
        return min(10, max(1, int(round(value)))), True
    return None, False


def _coerce_text_list(value: Any, *, as_identifiers: bool = False) -> tuple[list[str] | None, bool]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return None, False
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        text = " ".join(item.split())
        if as_identifiers:
            text = _identifier(text)
        else:
            text = text[:_THEME_MAX_CHARS]
        if text and text not in out:
            out.append(text)
        if len(out) >= _LIST_ITEM_LIMIT:
            break
    if value and not out:
        return None, False
    return out, True


def _coerce_risk(value: Any) -> tuple[float | None, bool]:
    if value is None:
        return None, True
    if isinstance(value, bool):
        return None, False
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None, False
    if isinstance(value, (int, float)):
        return min(5.0, max(0.0, float(value))), True
    return None, False


@dataclass
class Assessment:
    emotion: str = DEFAULT_EMOTION
    intensity: int = DEFAULT_INTENSITY
    themes: list[str] = field(default_factory=list)
    distortions: list[str] = field(default_factory=list)
    techniques: list[str] = field(default_factory=lambda: list(DEFAULT_TECHNIQUES))
    focus: str = DEFAULT_FOCUS
    risk_score: float | None = None
    progress_indicators: list[str] = field(default_factory=list)
    extraction_status: ExtractionStatus = ExtractionStatus.FALLBACK
    defaulted_fields: list[str] = field(default_factory=list)

    @property
    def top_technique(self) -> str:
        return self.techniques[0] if self.techniques else DEFAULT_TECHNIQUES[0]

    @property
    def carries_signal(self) -> bool:
        return self.extraction_status != ExtractionStatus.FALLBACK

    @classmethod
    def fallback(cls) -> "Assessment":
        return cls(
            extraction_status=ExtractionStatus.FALLBACK,
            defaulted_fields=list(REQUIRED_ASSESSMENT_FIELDS),
        )

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Assessment":
        """
        Builds an Assessment from a decoded payload, one field at a time.
        Missing or wrong-typed required fields take their default and are listed
        in ``defaulted_fields``; the rest of the payload is kept.
        """
        defaulted: list[str] = []

        def resolve(name, coercer, default, required=True):
            present, raw = _pick(payload, name)
            if present:
                value, ok = coercer(raw)
                if ok and value is not None:
                    return value
                if ok and value is None and not required:
                    return None
            if required:
                defaulted.append(name)
            return default

        emotion = resolve("emotion", _coerce_label, DEFAULT_EMOTION)
        intensity = resolve("intensity", _coerce_intensity, DEFAULT_INTENSITY)
        themes = resolve("themes", _coerce_text_list, [])
        distortions = resolve(
            "distortions", lambda v: _coerce_text_list(v, as_identifiers=True), []
        )
        techniques = resolve(
            "techniques", lambda v: _coerce_text_list(v, as_identifiers=True), list(DEFAULT_TECHNIQUES)
        )
        if not techniques:
            techniques = list(DEFAULT_TECHNIQUES)
            defaulted.append("techniques")
        focus_label = resolve("focus", _coerce_label, DEFAULT_FOCUS)
        risk_score = resolve("risk_score", _coerce_risk, None, required=False)
        indicators = resolve("progress_indicators", _coerce_text_list, [], required=False)

        status = ExtractionStatus.PARTIAL if defaulted else ExtractionStatus.COMPLETE
        return cls(
            emotion=emotion,
            intensity=intensity,
            themes=themes,
            distortions=distortions,
            techniques=techniques,
            focus=_identifier(focus_label) or DEFAULT_FOCUS,
            risk_score=risk_score,
            progress_indicators=indicators,
            extraction_status=status,
            defaulted_fields=defaulted,
        )

    @classmethod
    def from_metadata(cls, data: dict[str, Any]) -> "Assessment":
        """Restores a persisted assessment; the stored status wins over re-derivation."""
        assessment = cls.from_payload(data)
        try:
            assessment.extraction_status = ExtractionStatus(data.get("extraction_status"))
        except ValueError:
            pass
        stored_defaults = data.get("defaulted_fields")
        if isinstance(stored_defaults, list):
            assessment.defaulted_fields = [str(x) for x in stored_defaults]
        return assessment

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["extraction_status"] = self.extraction_status.value
        return data


# ---------------------------------------------------------------------------
# Derived per-session state
# ---------------------------------------------------------------------------

@dataclass
class UserPreferences:
    display_name: str | None = None
    communication_style: str = "conversational"
    tone: str = "warm"


@dataclass
class MemoryContext:
    last_emotion: str = DEFAULT_EMOTION
    last_technique: str | None = None
    progress: int = 0
    trust: int = TRUST_BASELINE


def _distinct_recent(items: list[str], limit: int) -> list[str]:
    out: list[str] = []
    for item in reversed(items):
        if item not in out:
            out.append(item)
        if len(out) >= limit:
            break
    out.reverse()
    return out


@dataclass
class SessionMemory:
    session_id: str
    emotions: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    techniques: list[str] = field(default_factory=list)
    patterns: list[str] = field(default_factory=list)
    recent_turns: list[dict[str, str]] = field(default_factory=list)
    preferences: UserPreferences = field(default_factory=UserPreferences)
    context: MemoryContext = field(default_factory=MemoryContext)
    turn_count: int = 0

    def absorb_assessment(self, assessment: Assessment):
        """Folds one assessment into the tracked lists, then trims them."""
        self.emotions.append(assessment.emotion)
        self.topics.extend(assessment.themes[:2])
        self.patterns.extend(assessment.distortions)
        self.techniques.append(assessment.top_technique)
        self.context.last_emotion = assessment.emotion
        self.context.last_technique = assessment.top_technique
        self.trim()

    def trim(self):
        # Oldest entries go first.
        self.emotions[:] = self.emotions[-MEMORY_EMOTION_LIMIT:]
        self.topics[:] = self.topics[-MEMORY_TOPIC_LIMIT:]
        self.techniques[:] = self.techniques[-MEMORY_TECHNIQUE_LIMIT:]
        self.patterns[:] = self.patterns[-MEMORY_PATTERN_LIMIT:]
        self.recent_turns[:] = self.recent_turns[-MEMORY_RECENT_TURN_LIMIT:]

    def window(self, limit: int) -> list[dict[str, str]]:
        return list(self.recent_turns[-max(1, int(limit)):])

    def summary(self) -> dict[str, Any]:
        return {
            "recent_emotions": list(self.emotions[-5:]),
            "recent_topics": _distinct_recent(self.topics, 5),
            "techniques": _distinct_recent(self.techniques, 5),
            "patterns": _distinct_recent(self.patterns, 5),
            "display_name": self.preferences.display_name,
            "communication_style": self.preferences.communication_style,
            "last_emotion": self.context.last_emotion,
            "last_technique": self.context.last_technique,
            "progress": self.context.progress,
            "trust": self.context.trust,
            "turn_count": self.turn_count,
        }


@dataclass
class ProgressSummary:
    session_count: int
    mean_intensity: float
    distinct_techniques: int
    trend: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TurnResult:
    reply: str
    assessment: Assessment
    memory_summary: dict[str, Any]
    conversation_complete: bool
    status: SessionStatus
    reply_source: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "reply": self.reply,
            "assessment": self.assessment.to_dict(),
            "memory_summary": self.memory_summary,
            "conversation_complete": self.conversation_complete,
            "status": self.status.value,
            "reply_source": self.reply_source,
        }


@dataclass
class SessionReview:
    themes: list[str] = field(default_factory=list)
    emotional_summary: str = ""
    areas_of_concern: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    progress_indicators: list[str] = field(default_factory=list)
    generated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
