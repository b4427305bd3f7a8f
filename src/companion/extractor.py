"""Structured assessment of a single user utterance."""
from __future__ import annotations

from langchain_core.messages import HumanMessage, SystemMessage

from .config import EXTRACTION_CONTEXT_TURNS, EXTRACTION_MAX_TOKENS, EXTRACTION_TEMPERATURE, LLM_TIMEOUT_S
from .errors import ExtractionMalformed, UpstreamUnavailable
from .llm import TextGenerator, complete_with_timeout
from .models import Assessment, SessionMemory
from .observability import get_logger
from .sanitizer import decode_json_object

logger = get_logger(__name__)

EXTRACTION_INSTRUCTIONS = """You analyze one message from a supportive conversation using CBT principles.
Respond with a single JSON object and nothing else. No markdown, no explanations.

Schema:
{
  "emotion": "one lowercase word for the primary emotion (e.g. anxious, sad, angry, hopeful, calm, neutral)",
  "intensity": "integer 1-10, how strongly it is felt",
  "themes": ["short phrases for the main thoughts or concerns, most important first"],
  "distortions": ["cognitive distortion identifiers in snake_case, e.g. catastrophizing, all_or_nothing, mind_reading"],
  "techniques": ["supportive technique identifiers ranked best first, e.g. grounding, cognitive_reframing, breathing_exercise, behavioral_activation, active_listening"],
  "focus": "snake_case label for what the reply should focus on",
  "risk_score": "number 0-5 where 0 = no risk cues and 5 = explicit crisis language"
}
Use [] for lists with nothing to report."""


def _render_window(turns: list[dict[str, str]]) -> str:
    if not turns:
        return "(no earlier messages)"
    lines = []
    for turn in turns:
        role = "User" if turn.get("role") == "user" else "Assistant"
        clipped = " ".join(str(turn.get("content", "")).split())
        if len(clipped) > 220:
            clipped = clipped[:220].rsplit(" ", 1)[0] + "..."
        lines.append(f"{role}: {clipped}")
    return "\n".join(lines)


class StructuredExtractor:
    def __init__(
        self,
        generator: TextGenerator | None,
        *,
        context_turns: int = EXTRACTION_CONTEXT_TURNS,
        temperature: float = EXTRACTION_TEMPERATURE,
        max_tokens: int = EXTRACTION_MAX_TOKENS,
        timeout_s: float = LLM_TIMEOUT_S,
    ):
        self.generator = generator
        self.context_turns = max(1, int(context_turns))
        self.temperature = float(temperature)
        self.max_tokens = int(max_tokens)
        self.timeout_s = float(timeout_s)

    def build_prompt(self, utterance: str, memory: SessionMemory):
        window = _render_window(memory.window(self.context_turns))
        return [
            SystemMessage(content=EXTRACTION_INSTRUCTIONS),
            HumanMessage(content=f"Recent conversation:\n{window}\n\nMessage to analyze:\n{utterance.strip()}"),
        ]

    def analyze(self, utterance: str, memory: SessionMemory) -> Assessment:
        """
        Returns a fully populated Assessment and never raises.

        Total failure (generator error, timeout, undecodable or non-object output)
        yields the default Assessment. A decodable object keeps every field that
        coerces cleanly and defaults only the rest. Any non-fallback result is
        folded into ``memory``.
        """
        try:
            raw = complete_with_timeout(
                self.generator,
                self.build_prompt(utterance, memory),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout_s=self.timeout_s,
            )
            payload = decode_json_object(raw)
        except UpstreamUnavailable as exc:
            logger.warning("extraction_upstream_unavailable", session_id=memory.session_id, error=str(exc))
            return Assessment.fallback()
        except ExtractionMalformed as exc:
            logger.warning("extraction_malformed", session_id=memory.session_id, error=str(exc))
            return Assessment.fallback()

        assessment = Assessment.from_payload(payload)
        if assessment.defaulted_fields:
            logger.info(
                "extraction_fields_defaulted",
                session_id=memory.session_id,
                fields=assessment.defaulted_fields,
            )
        memory.absorb_assessment(assessment)
        return assessment
