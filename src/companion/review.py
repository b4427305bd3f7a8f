"""Whole-session review: themes, emotional tone, concerns and suggested directions."""
from __future__ import annotations

from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage

from .config import LLM_TIMEOUT_S, REVIEW_MAX_TOKENS, REVIEW_TEMPERATURE
from .errors import ExtractionMalformed, UpstreamUnavailable
from .llm import TextGenerator, complete_with_timeout
from .models import Session, SessionMemory, SessionReview
from .observability import get_logger
from .sanitizer import decode_json_object

logger = get_logger(__name__)

REVIEW_INSTRUCTIONS = """You review a complete supportive conversation using CBT principles.
Return a single JSON object and nothing else:
{
  "themes": ["main issues discussed"],
  "emotional_summary": "brief overall emotional tone",
  "areas_of_concern": ["potential risk or distress points, empty if none"],
  "recommendations": ["suggested supportive directions or techniques"],
  "progress_indicators": ["positive developments"]
}
Do not diagnose. Do not include markdown."""

_TRANSCRIPT_MAX_MESSAGES = 60


def _string_list(value: Any, limit: int = 8) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    out = []
    for item in value:
        if isinstance(item, str) and item.strip():
            out.append(" ".join(item.split()))
        if len(out) >= limit:
            break
    return out


def review_from_memory(memory: SessionMemory) -> SessionReview:
    """Review built only from derived memory, used when generation is unavailable."""
    themes = []
    for topic in reversed(memory.topics):
        if topic not in themes:
            themes.append(topic)
    emotions = memory.emotions[-5:]
    summary = f"Mostly {', '.join(dict.fromkeys(emotions))}." if emotions else ""
    techniques = list(dict.fromkeys(memory.techniques))
    return SessionReview(
        themes=themes[:8],
        emotional_summary=summary,
        areas_of_concern=[],
        recommendations=techniques[:5],
        progress_indicators=[],
        generated=False,
    )


class SessionReviewer:
    def __init__(
        self,
        generator: TextGenerator | None,
        *,
        temperature: float = REVIEW_TEMPERATURE,
        max_tokens: int = REVIEW_MAX_TOKENS,
        timeout_s: float = LLM_TIMEOUT_S,
    ):
        self.generator = generator
        self.temperature = float(temperature)
        self.max_tokens = int(max_tokens)
        self.timeout_s = float(timeout_s)

    def build_prompt(self, session: Session):
        lines = []
        for message in session.messages[-_TRANSCRIPT_MAX_MESSAGES:]:
            role = "User" if message.role == "user" else "Assistant"
            lines.append(f"{role}: {' '.join(message.content.split())}")
        transcript = "\n".join(lines) or "(empty conversation)"
        return [
            SystemMessage(content=REVIEW_INSTRUCTIONS),
            HumanMessage(content=f"Conversation:\n{transcript}"),
        ]

    def review(self, session: Session, memory: SessionMemory) -> SessionReview:
        if not session.messages:
            return review_from_memory(memory)
        try:
            raw = complete_with_timeout(
                self.generator,
                self.build_prompt(session),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout_s=self.timeout_s,
            )
            payload = decode_json_object(raw)
        except (UpstreamUnavailable, ExtractionMalformed) as exc:
            logger.warning("session_review_fallback", session_id=session.session_id, error=str(exc))
            return review_from_memory(memory)

        summary = payload.get("emotional_summary")
        review = SessionReview(
            themes=_string_list(payload.get("themes")),
            emotional_summary=" ".join(summary.split()) if isinstance(summary, str) else "",
            areas_of_concern=_string_list(payload.get("areas_of_concern")),
            recommendations=_string_list(payload.get("recommendations")),
            progress_indicators=_string_list(payload.get("progress_indicators")),
            generated=True,
        )
        if review.areas_of_concern:
            logger.warning(
                "session_review_concerns",
                session_id=session.session_id,
                concerns=review.areas_of_concern,
            )
        return review
