"""
Pure text helpers for model output.

Two jobs: turning generated text into clean, speakable prose, and cleaning the
structured payloads the extractor and reviewer ask for. Nothing here calls out.
"""
from __future__ import annotations

import json
import re
from typing import Any

from .errors import ExtractionMalformed
from .policy import ConversationPolicy

_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL | re.IGNORECASE)
_FENCE_OPEN_RE = re.compile(r"```[a-zA-Z0-9_-]*[ \t]*\n?")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s*", flags=re.MULTILINE)
_BLOCKQUOTE_RE = re.compile(r"^\s*>\s?", flags=re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*(?:[-*+•]|\d{1,2}[.)])\s+", flags=re.MULTILINE)
_RULE_RE = re.compile(r"^\s*(?:[-*_]\s*){3,}$", flags=re.MULTILINE)
_TABLE_SEPARATOR_RE = re.compile(r"^\s*\|?(?:\s*:?-{2,}:?\s*\|)+\s*:?-{0,}:?\s*\|?\s*$", flags=re.MULTILINE)
_TABLE_PIPE_RE = re.compile(r"\s*\|\s*")
_BOLD_RE = re.compile(r"(\*\*|__)(.+?)\1", flags=re.DOTALL)
_ITALIC_RE = re.compile(r"(?<![\w*])([*_])(?!\s)(.+?)(?<!\s)\1(?![\w*])")
_INLINE_CODE_RE = re.compile(r"`([^`]*)`")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_STRAY_MARKERS_RE = re.compile(r"[*#`]+")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?…][\"')\]])\s+|(?<=[.!?…])\s+")
_SENTENCE_START_RE = re.compile(r"(^|[.!?]\s+)([a-z])")
_TERMINAL_PUNCTUATION = (".", "!", "?", "…")


def strip_reasoning(text: str) -> str:
    return _THINK_RE.sub("", str(text or ""))


def clean_json_payload(raw: str) -> str:
    """Strips reasoning tags, code fences, control characters and prose around a JSON object."""
    text = strip_reasoning(raw)
    text = _FENCE_OPEN_RE.sub("", text).replace("```", "")
    text = _CONTROL_CHARS_RE.sub("", text).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        text = text[start:end + 1]
    return text.strip()


def decode_json_object(raw: str) -> dict[str, Any]:
    cleaned = clean_json_payload(raw)
    if not cleaned:
        raise ExtractionMalformed("empty payload")
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ExtractionMalformed(f"invalid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ExtractionMalformed(f"expected a JSON object, got {type(payload).__name__}")
    return payload


def to_plain_prose(text: str) -> str:
    """Removes markdown artifacts (emphasis, headings, bullets, tables, fences) and keeps the words."""
    cleaned = strip_reasoning(text)
    cleaned = _FENCE_OPEN_RE.sub("", cleaned).replace("```", "")
    cleaned = _CONTROL_CHARS_RE.sub("", cleaned)
    cleaned = _TABLE_SEPARATOR_RE.sub("", cleaned)
    cleaned = _RULE_RE.sub("", cleaned)
    cleaned = _HEADING_RE.sub("", cleaned)
    cleaned = _BLOCKQUOTE_RE.sub("", cleaned)
    cleaned = _BULLET_RE.sub("", cleaned)
    cleaned = _LINK_RE.sub(r"\1", cleaned)
    cleaned = _BOLD_RE.sub(r"\2", cleaned)
    cleaned = _ITALIC_RE.sub(r"\2", cleaned)
    cleaned = _INLINE_CODE_RE.sub(r"\1", cleaned)
    cleaned = "\n".join(_TABLE_PIPE_RE.sub(" ", line).strip() for line in cleaned.splitlines())
    cleaned = _STRAY_MARKERS_RE.sub("", cleaned)
    return cleaned.strip()


def ensure_terminal_punctuation(text: str) -> str:
    stripped = text.rstrip()
    if not stripped:
        return stripped
    core = stripped.rstrip("\"')]")
    if core.endswith(_TERMINAL_PUNCTUATION):
        return stripped
    return stripped.rstrip(",;:- ") + "."


def split_sentences(text: str) -> list[str]:
    flat = " ".join(str(text or "").split())
    if not flat:
        return []
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(flat) if s.strip()]


def segment_paragraphs(text: str, max_sentences: int = 3) -> str:
    """Regroups prose into short paragraphs, each ending with terminal punctuation."""
    sentences = split_sentences(text)
    size = max(1, int(max_sentences))
    paragraphs = []
    for i in range(0, len(sentences), size):
        paragraph = ensure_terminal_punctuation(" ".join(sentences[i:i + size]))
        if paragraph:
            paragraphs.append(paragraph)
    return "\n\n".join(paragraphs)


def contains_unsafe_content(text: str, policy: ConversationPolicy) -> bool:
    sample = str(text or "")
    return any(pattern.search(sample) for pattern in policy.unsafe_res)


def _capitalize_sentence_starts(text: str) -> str:
    return _SENTENCE_START_RE.sub(lambda m: m.group(1) + m.group(2).upper(), text)


def remove_persona_leaks(text: str, policy: ConversationPolicy) -> str:
    cleaned = str(text or "")
    for pattern in policy.persona_leak_res:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    cleaned = re.sub(r" +([,.!?])", r"\1", cleaned)
    paragraphs = [_capitalize_sentence_starts(p.strip().lstrip(",; ")) for p in cleaned.split("\n\n")]
    return "\n\n".join(p for p in paragraphs if p)


def soften_directives(text: str, policy: ConversationPolicy) -> str:
    softened = str(text or "")
    for pattern, replacement in policy.directive_softeners:
        def _swap(match, replacement=replacement):
            if match.group(0)[:1].isupper():
                return replacement[:1].upper() + replacement[1:]
            return replacement
        softened = re.sub(pattern, _swap, softened, flags=re.IGNORECASE)
    return softened
