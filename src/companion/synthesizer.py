"""
Reply synthesis.

Builds a layered prompt (policy, memory, assessment, conversation window,
utterance), generates, then runs the output through the sanitizer. The
denylist check decides between model text and the fixed safe fallback; the
prompt rules are never trusted on their own.
"""
from __future__ import annotations

from dataclasses import dataclass

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from .config import (
    LLM_TIMEOUT_S,
    RESPONSE_CONTEXT_TURNS,
    RESPONSE_MAX_SENTENCES_PER_PARAGRAPH,
    RESPONSE_MAX_TOKENS,
    RESPONSE_TEMPERATURE,
)
from .errors import UpstreamUnavailable
from .llm import TextGenerator, complete_with_timeout
from .models import Assessment, SessionMemory
from .observability import get_logger
from .policy import DEFAULT_POLICY, ConversationPolicy
from .sanitizer import (
    contains_unsafe_content,
    remove_persona_leaks,
    segment_paragraphs,
    soften_directives,
    to_plain_prose,
)

logger = get_logger(__name__)

SOURCE_MODEL = "model"
SOURCE_FALLBACK = "fallback"
SOURCE_SAFETY_FALLBACK = "safety_fallback"
SOURCE_CRISIS_FALLBACK = "crisis_fallback"
SOURCE_CLOSING = "closing"


@dataclass(frozen=True)
class SynthesizedReply:
    text: str
    source: str


def _distinct_tail(items: list[str], limit: int = 5) -> list[str]:
    out: list[str] = []
    for item in reversed(items):
        if item and item not in out:
            out.append(item)
        if len(out) >= limit:
            break
    out.reverse()
    return out


def render_memory(memory: SessionMemory) -> str:
    lines = ["What you remember about this conversation:"]
    if memory.preferences.display_name:
        lines.append(f"- They asked to be called {memory.preferences.display_name}.")
    lines.append(f"- Preferred style: {memory.preferences.tone}, {memory.preferences.communication_style}.")
    themes = _distinct_tail(memory.topics)
    if themes:
        lines.append(f"- Recent themes: {', '.join(themes)}.")
    emotions = _distinct_tail(memory.emotions)
    if emotions:
        lines.append(f"- Recent emotions: {', '.join(emotions)}.")
    techniques = _distinct_tail(memory.techniques)
    if techniques:
        lines.append(f"- Techniques already offered: {', '.join(techniques)}. Vary your suggestions.")
    patterns = _distinct_tail(memory.patterns, 3)
    if patterns:
        lines.append(f"- Thinking patterns noticed: {', '.join(patterns)}.")
    lines.append(f"- Rapport (trust) {memory.context.trust}/100, progress {memory.context.progress}/100.")
    return "\n".join(lines)


def render_assessment(assessment: Assessment) -> str:
    lines = [
        "Assessment of the new message:",
        f"- Emotion: {assessment.emotion} (intensity {assessment.intensity}/10).",
    ]
    if assessment.themes:
        lines.append(f"- Themes: {'; '.join(assessment.themes)}.")
    if assessment.distortions:
        lines.append(f"- Possible distortions: {', '.join(assessment.distortions)}.")
    lines.append(f"- Suggested techniques, best first: {', '.join(assessment.techniques)}.")
    lines.append(f"- Focus: {assessment.focus}.")
    return "\n".join(lines)


class ResponseSynthesizer:
    def __init__(
        self,
        generator: TextGenerator | None,
        policy: ConversationPolicy = DEFAULT_POLICY,
        *,
        context_turns: int = RESPONSE_CONTEXT_TURNS,
        temperature: float = RESPONSE_TEMPERATURE,
        max_tokens: int = RESPONSE_MAX_TOKENS,
        timeout_s: float = LLM_TIMEOUT_S,
        max_sentences_per_paragraph: int = RESPONSE_MAX_SENTENCES_PER_PARAGRAPH,
    ):
        self.generator = generator
        self.policy = policy
        self.context_turns = max(1, int(context_turns))
        self.temperature = float(temperature)
        self.max_tokens = int(max_tokens)
        self.timeout_s = float(timeout_s)
        self.max_sentences_per_paragraph = max(1, int(max_sentences_per_paragraph))

    def build_prompt(self, utterance: str, assessment: Assessment, memory: SessionMemory, *, crisis: bool = False):
        rules = self.policy.render_rules()
        if crisis:
            rules = f"{rules}\n\n{self.policy.crisis_protocol_notice}"
        messages = [
            SystemMessage(content=rules),
            SystemMessage(content=render_memory(memory)),
            SystemMessage(content=render_assessment(assessment)),
        ]
        for turn in memory.window(self.context_turns):
            content = str(turn.get("content", "")).strip()
            if not content:
                continue
            if turn.get("role") == "user":
                messages.append(HumanMessage(content=content))
            else:
                messages.append(AIMessage(content=content))
        messages.append(HumanMessage(content=utterance.strip()))
        return messages

    def postprocess(self, raw: str, *, crisis: bool = False) -> SynthesizedReply | None:
        """Applies the fixed clean-up order; returns None when nothing speakable is left."""
        text = segment_paragraphs(to_plain_prose(raw), self.max_sentences_per_paragraph)
        if not text:
            return None
        if contains_unsafe_content(text, self.policy):
            logger.warning("reply_safety_substituted")
            return SynthesizedReply(self.policy.safe_fallback, SOURCE_SAFETY_FALLBACK)
        text = soften_directives(remove_persona_leaks(text, self.policy), self.policy).strip()
        if not any(ch.isalnum() for ch in text):
            return None
        if crisis and not any(marker in text.lower() for marker in self.policy.support_resource_markers):
            text = f"{text}\n\n{self.policy.crisis_support_line}"
        return SynthesizedReply(text, SOURCE_MODEL)

    def _fallback(self, crisis: bool) -> SynthesizedReply:
        if crisis:
            return SynthesizedReply(self.policy.crisis_fallback, SOURCE_CRISIS_FALLBACK)
        return SynthesizedReply(self.policy.warm_fallback, SOURCE_FALLBACK)

    def compose(
        self,
        utterance: str,
        assessment: Assessment,
        memory: SessionMemory,
        *,
        crisis: bool = False,
    ) -> SynthesizedReply:
        try:
            raw = complete_with_timeout(
                self.generator,
                self.build_prompt(utterance, assessment, memory, crisis=crisis),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout_s=self.timeout_s,
            )
        except UpstreamUnavailable as exc:
            logger.warning("reply_upstream_unavailable", session_id=memory.session_id, error=str(exc))
            return self._fallback(crisis)

        reply = self.postprocess(raw, crisis=crisis)
        if reply is None:
            logger.warning("reply_empty_after_cleanup", session_id=memory.session_id)
            return self._fallback(crisis)
        return reply

    def respond(
        self,
        utterance: str,
        assessment: Assessment,
        memory: SessionMemory,
        *,
        crisis: bool = False,
    ) -> str:
        return self.compose(utterance, assessment, memory, crisis=crisis).text
