"""Heuristic detection of a conversation reaching its natural close."""
from __future__ import annotations

import random
import re

from .policy import DEFAULT_POLICY, ConversationPolicy

MAX_CLASSIFIER_INPUT_CHARS = 512


def normalize_utterance(text: str) -> str:
    lowered = str(text or "")[:MAX_CLASSIFIER_INPUT_CHARS].strip().lower()
    lowered = lowered.replace("’", "'").replace("‘", "'")
    return re.sub(r"\s+", " ", lowered)


def _phrase_matches(text: str, phrase: str) -> bool:
    escaped = re.escape(phrase)
    if " " in phrase:
        # A multi-word phrase must end the message or open it as its own clause.
        return bool(
            re.match(rf"{escaped}(?:$|\s*[.!,]|\s+(?:for (?:now|today)|now|so much|a lot)\b)", text)
            or re.search(rf"\b{escaped}[\s.!,]*$", text)
        )
    return bool(
        re.match(rf"{escaped}\b", text)
        or re.search(rf"\b{escaped}[\s.!,]*$", text)
    )


def should_close(utterance: str, policy: ConversationPolicy = DEFAULT_POLICY) -> bool:
    text = normalize_utterance(utterance)
    if not text:
        return False
    if any(pattern.search(text) for pattern in policy.closing_res):
        return True
    return any(_phrase_matches(text, phrase) for phrase in policy.closing_phrases)


def pick_closing_line(rng: random.Random, policy: ConversationPolicy = DEFAULT_POLICY) -> str:
    return rng.choice(policy.closing_lines)
