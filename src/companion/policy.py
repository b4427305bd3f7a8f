"""
Conversation policy document.

The persona and topic-boundary rules, the phrase lists used by the heuristic
classifiers and the fixed fallback texts are data, versioned together, so the
post-generation filters do not depend on the model following its instructions.
A JSON file named by POLICY_PATH may override any field.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, fields, replace
from functools import cached_property
from pathlib import Path
from typing import Any

from .observability import get_logger

logger = get_logger(__name__)


PERSONA_RULES = (
    "You are Leo, a warm, caring, down-to-earth companion who feels like a trusted friend.",
    "Speak naturally and casually, with compassion, gentle reflection and open-ended questions.",
    "Keep replies short: 3 to 6 sentences, plain prose, no lists, headings or markdown.",
    "Open with varied, natural empathy and never repeat the same opening phrase twice in a row.",
    "When the person shares a struggle, offer 1 to 3 simple, optional ideas, framed as invitations.",
    "End with one gentle open question, except when the person says goodbye, thanks you or seems done.",
    "Never describe yourself as an AI, a bot, a therapist or a counselor.",
)

TOPIC_BOUNDARY_RULES = (
    "Only talk about feelings, stress, school and exams, sleep, anxiety, low mood, motivation, relationships and self-care.",
    "For anything else (news, tech, politics, facts, homework answers, finance, sports) decline kindly and redirect "
    "to how the person is feeling or what is on their mind.",
    "Never give a diagnosis, name or label a condition, or give medical, medication or legal advice or directives.",
    "Never describe, discuss or hint at methods of self-harm or suicide.",
)

CRISIS_RULES = (
    "If the person mentions hopelessness, self-harm or not wanting to live: respond with brief, genuine empathy, "
    "then explicitly and without judgment encourage them to reach out right now to someone they trust or to a "
    "crisis line. Do not continue with techniques or exercises in that reply.",
)

CRISIS_PROTOCOL_NOTICE = (
    "Crisis protocol is active for this reply: brief empathy, an explicit encouragement to contact a trusted "
    "person or a crisis line now, and no technique suggestions."
)

CLOSING_PATTERNS = (
    r"^(?:ok(?:ay)?[,!.\s]+)?(?:thanks|thank you|thx|ty|cheers)\b",
    r"^(?:bye|goodbye|good night|goodnight|see you|see ya|talk (?:to you )?(?:later|soon)|take care)\b",
    r"^(?:that'?s all|that'?s it for (?:now|today)|i'?m done|i'?m good now|i'?m okay now|that helps?)"
    r"(?:\s*[.!,]|\s*$| for (?:now|today)\b| (?:a lot|so much)\b)",
    r"\b(?:thanks|thank you|bye|goodbye|see you|talk (?:to you )?later|take care)\s*[.!]*\s*$",
    r"\bi (?:feel|am feeling|'m feeling) (?:a (?:lot|bit) |much |so much )?better(?: now)?\s*[.!]*\s*$",
)

CLOSING_PHRASES = (
    "bye", "goodbye", "thanks", "thank you", "i'm done", "that's all", "talk later",
    "see you", "i feel better", "i'm good now", "done for today", "thanks leo",
    "appreciate it", "i'm okay now",
)

CLOSING_LINES = (
    "Take care, really glad we talked today.",
    "You're welcome. I'm here anytime you need me.",
    "Thanks for sharing. Be gentle with yourself.",
    "Anytime. Rest well and come back when you want.",
    "Proud of you for opening up. See you soon.",
    "Glad I could listen. Take good care.",
)

CRISIS_PATTERNS = (
    r"\b(?:kill|hurt|harm|cut) (?:myself|me)\b",
    r"\bsuicid\w*\b",
    r"\bend (?:it all|my life|things)\b",
    r"\b(?:want|wanna|wish) (?:to|i could|i was|i were) (?:die|dead|disappear)\b",
    r"\b(?:don'?t|do not) want to (?:live|be alive|wake up)\b",
    r"\bno (?:reason|point) (?:to|in) (?:live|living|going on)\b",
    r"\bbetter off (?:dead|without me)\b",
    r"\bself[- ]harm\w*\b",
    r"\b(?:done with|tired of) (?:life|living|everything)\b",
    r"\bcan['’]?t (?:go on|keep going)\b",
)

UNSAFE_PATTERNS = (
    r"\bprescri(?:be|bed|bing|ption)\b",
    r"\b\d+(?:\.\d+)?\s?(?:mg|milligrams?|ml)\b",
    r"\b(?:dosage|dose of|lethal dose|fatal dose)\b",
    r"\boverdos(?:e|ed|es|ing)\b",
    r"\b(?:i|we) (?:would |can )?diagnose you\b",
    r"\byour diagnosis is\b",
    r"\byou (?:have|are suffering from|probably have|clearly have)\s+(?:clinical |major |severe )?"
    r"(?:depression|bipolar|ptsd|ocd|adhd|schizophrenia|an? [a-z]+ disorder|[a-z]+ disorder)\b",
    r"\bhow to (?:kill|hurt|harm|cut) (?:yourself|myself|oneself)\b",
    r"\b(?:hang|hanging|slit|slitting) (?:yourself|your wrists?)\b",
    r"\bways to (?:die|end (?:it|your life))\b",
)

MEDICATION_TERMS = (
    "sertraline", "zoloft", "fluoxetine", "prozac", "escitalopram", "lexapro", "citalopram",
    "paroxetine", "venlafaxine", "bupropion", "wellbutrin", "xanax", "alprazolam", "lorazepam",
    "ativan", "diazepam", "valium", "clonazepam", "klonopin", "lithium", "quetiapine", "seroquel",
    "adderall", "ritalin", "zolpidem", "ambien", "benzodiazepines",
)

PERSONA_LEAK_PATTERNS = (
    r"\bas an ai(?: language model| assistant| model)?\s*,?\s*",
    r"\bas (?:your|a) (?:therapist|counselor|counsellor|psychologist|doctor)\s*,?\s*",
    r"\bi'?m (?:just |only )?an ai(?: language model| assistant| model)?\s*(?:,|and|but)?\s*",
    r"\bi am (?:just |only )?an ai(?: language model| assistant| model)?\s*(?:,|and|but)?\s*",
)

DIRECTIVE_SOFTENERS = (
    (r"\byou should\b", "you might consider"),
    (r"\byou need to\b", "you might try to"),
    (r"\byou must\b", "you could try to"),
    (r"\byou have to\b", "it might help to"),
)

SUPPORT_RESOURCE_MARKERS = ("trust", "crisis", "hotline", "helpline", "emergency", "988")

WARM_FALLBACK = "I'm here with you. What's been on your mind?"

SAFE_FALLBACK = (
    "I want to be careful here. I can't offer medical advice, diagnoses or medication guidance, "
    "but I'm really glad you're talking to me.\n\n"
    "If things feel heavy right now, please reach out to someone you trust or a crisis line. "
    "What's been weighing on you most?"
)

CRISIS_SUPPORT_LINE = (
    "Please reach out to someone you trust or a crisis hotline right now. You deserve real support, "
    "and I'm still here to listen."
)

CRISIS_FALLBACK = (
    "This feels really heavy right now, and I'm glad you told me.\n\n" + CRISIS_SUPPORT_LINE
)


@dataclass(frozen=True)
class ConversationPolicy:
    version: str = "2026.1"
    persona_name: str = "Leo"
    persona_rules: tuple[str, ...] = PERSONA_RULES
    topic_boundary_rules: tuple[str, ...] = TOPIC_BOUNDARY_RULES
    crisis_rules: tuple[str, ...] = CRISIS_RULES
    crisis_protocol_notice: str = CRISIS_PROTOCOL_NOTICE
    closing_patterns: tuple[str, ...] = CLOSING_PATTERNS
    closing_phrases: tuple[str, ...] = CLOSING_PHRASES
    closing_lines: tuple[str, ...] = CLOSING_LINES
    crisis_patterns: tuple[str, ...] = CRISIS_PATTERNS
    unsafe_patterns: tuple[str, ...] = UNSAFE_PATTERNS
    medication_terms: tuple[str, ...] = MEDICATION_TERMS
    persona_leak_patterns: tuple[str, ...] = PERSONA_LEAK_PATTERNS
    directive_softeners: tuple[tuple[str, str], ...] = DIRECTIVE_SOFTENERS
    support_resource_markers: tuple[str, ...] = SUPPORT_RESOURCE_MARKERS
    warm_fallback: str = WARM_FALLBACK
    safe_fallback: str = SAFE_FALLBACK
    crisis_support_line: str = CRISIS_SUPPORT_LINE
    crisis_fallback: str = CRISIS_FALLBACK

    @cached_property
    def closing_res(self) -> tuple[re.Pattern, ...]:
        return tuple(re.compile(p) for p in self.closing_patterns)

    @cached_property
    def crisis_res(self) -> tuple[re.Pattern, ...]:
        return tuple(re.compile(p, re.IGNORECASE) for p in self.crisis_patterns)

    @cached_property
    def unsafe_res(self) -> tuple[re.Pattern, ...]:
        terms = "|".join(re.escape(t) for t in self.medication_terms)
        compiled = [re.compile(p, re.IGNORECASE) for p in self.unsafe_patterns]
        if terms:
            compiled.append(re.compile(rf"\b(?:{terms})\b", re.IGNORECASE))
        return tuple(compiled)

    @cached_property
    def persona_leak_res(self) -> tuple[re.Pattern, ...]:
        return tuple(re.compile(p, re.IGNORECASE) for p in self.persona_leak_patterns)

    def render_rules(self) -> str:
        lines = [f"Conversation policy v{self.version}."]
        lines.append("Persona:")
        lines.extend(f"- {rule}" for rule in self.persona_rules)
        lines.append("Topic boundaries:")
        lines.extend(f"- {rule}" for rule in self.topic_boundary_rules)
        lines.append("Crisis handling:")
        lines.extend(f"- {rule}" for rule in self.crisis_rules)
        return "\n".join(lines)

    def detects_crisis(self, text: str) -> bool:
        sample = str(text or "")[:4096]
        return any(pattern.search(sample) for pattern in self.crisis_res)


DEFAULT_POLICY = ConversationPolicy()


def _coerce_field(name: str, value: Any) -> Any:
    if name == "directive_softeners":
        return tuple((str(a), str(b)) for a, b in value)
    if isinstance(value, list):
        return tuple(str(v) for v in value)
    return str(value)


def load_policy(path: str | Path | None = None) -> ConversationPolicy:
    """Returns the default policy with any fields overridden by a JSON document."""
    if not path:
        return DEFAULT_POLICY
    policy_path = Path(path)
    with open(policy_path, "r", encoding="utf-8") as fh:
        overrides = json.load(fh)
    if not isinstance(overrides, dict):
        raise ValueError(f"Policy file {policy_path} must contain a JSON object")

    known = {f.name for f in fields(ConversationPolicy)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        logger.warning("policy_unknown_fields_ignored", path=str(policy_path), fields=unknown)
    updates = {k: _coerce_field(k, v) for k, v in overrides.items() if k in known}
    policy = replace(DEFAULT_POLICY, **updates)
    logger.info("policy_loaded", path=str(policy_path), version=policy.version, overridden=sorted(updates))
    return policy
