"""Provider payload normalization.

Every provider (and the managed-recording side channel) reports transcripts in
its own shape. A ``NormalizationRule`` lists, in priority order, where text may
live and which signals mark a segment as final. ``normalize_transcript`` walks
those tables and returns a ``TranscriptEvent`` or ``None``; it never raises.

Adding a provider means adding a table entry to ``RULES``.
"""

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any, Protocol

from domain import providers
from ports.transcriber import TranscriptEvent

logger = logging.getLogger(__name__)

FieldPath = tuple[str | int, ...]

_WHITESPACE = re.compile(r"\s+")
_MISSING = object()


def lookup(payload: Any, path: FieldPath) -> Any:
    current = payload
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, Sequence) or isinstance(current, (str, bytes)):
                return None
            if not -len(current) <= key < len(current):
                return None
            current = current[key]
        else:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key, _MISSING)
            if current is _MISSING:
                return None
    return current


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def collect_text_from_parts(parts: Any) -> str:
    if not isinstance(parts, list):
        return ""
    collected: list[str] = []
    for part in parts:
        if isinstance(part, str):
            value = part
        elif isinstance(part, Mapping) and isinstance(part.get("text"), str):
            value = part["text"]
        elif isinstance(part, Mapping) and isinstance(part.get("formattedText"), str):
            value = part["formattedText"]
        elif isinstance(part, Mapping) and isinstance(part.get("segments"), list):
            value = " ".join(
                segment["text"]
                for segment in part["segments"]
                if isinstance(segment, Mapping) and isinstance(segment.get("text"), str) and segment["text"]
            )
        else:
            value = ""
        if value:
            collected.append(value)
    return " ".join(collected).strip()


class TextCandidate(Protocol):
    def extract(self, payload: Any) -> str | None: ...


class FinalSignal(Protocol):
    def evaluate(self, payload: Any) -> bool: ...


@dataclass(frozen=True)
class TextField:
    path: FieldPath

    def extract(self, payload: Any) -> str | None:
        value = lookup(payload, self.path)
        return value if isinstance(value, str) else None


@dataclass(frozen=True)
class JoinedTokens:
    """Concatenation of token values, e.g. word lists or Rev.ai elements."""

    path: FieldPath
    key: str = "text"
    separator: str = " "

    def extract(self, payload: Any) -> str | None:
        tokens = lookup(payload, self.path)
        if not isinstance(tokens, list):
            return None
        values = [
            token[self.key]
            for token in tokens
            if isinstance(token, Mapping) and isinstance(token.get(self.key), str)
        ]
        return collapse_whitespace(self.separator.join(values))


@dataclass(frozen=True)
class ResultContents:
    """Speechmatics results: punctuation attaches, words get a leading space."""

    path: FieldPath = ("results",)
    word_type: str = "word"

    def extract(self, payload: Any) -> str | None:
        results = lookup(payload, self.path)
        if not isinstance(results, list):
            return None
        buffer = ""
        for result in results:
            content = lookup(result, ("alternatives", 0, "content"))
            if not isinstance(content, str) or not content:
                continue
            if lookup(result, ("type",)) == self.word_type and buffer and not buffer.endswith(" "):
                buffer += " "
            buffer += content
        return buffer.strip()


@dataclass(frozen=True)
class FlattenedParts:
    """Generative responses: list items whose parts carry the text."""

    path: FieldPath
    part_keys: tuple[FieldPath, ...]

    def extract(self, payload: Any) -> str | None:
        items = lookup(payload, self.path)
        if not isinstance(items, list):
            return None
        parts: list[Any] = []
        for item in items:
            for key in self.part_keys:
                nested = lookup(item, key)
                if isinstance(nested, list):
                    parts.extend(nested)
                    break
        return collect_text_from_parts(parts)


@dataclass(frozen=True)
class Flag:
    path: FieldPath
    strict: bool = False

    def evaluate(self, payload: Any) -> bool:
        value = lookup(payload, self.path)
        if self.strict:
            return value is True
        return bool(value)


@dataclass(frozen=True)
class Equals:
    path: FieldPath
    expected: Any

    def evaluate(self, payload: Any) -> bool:
        value = lookup(payload, self.path)
        return value is not None and value == self.expected


@dataclass(frozen=True)
class AllTokensFinal:
    path: FieldPath
    key: str = "is_final"

    def evaluate(self, payload: Any) -> bool:
        tokens = lookup(payload, self.path)
        if not isinstance(tokens, list) or not tokens:
            return False
        return all(isinstance(token, Mapping) and token.get(self.key) is True for token in tokens)


@dataclass(frozen=True)
class AnyTokenFlag:
    path: FieldPath
    keys: tuple[str, ...]

    def evaluate(self, payload: Any) -> bool:
        tokens = lookup(payload, self.path)
        if not isinstance(tokens, list):
            return False
        return any(
            isinstance(token, Mapping) and any(token.get(key) for key in self.keys)
            for token in tokens
        )


@dataclass(frozen=True)
class NormalizationRule:
    text: tuple[TextCandidate, ...]
    final: tuple[FinalSignal, ...] = ()


GENERIC_RULE = NormalizationRule(
    text=(
        TextField(("transcript", "text")),
        TextField(("transcript",)),
        TextField(("text",)),
        TextField(("transcript_text",)),
        TextField(("message",)),
        TextField(("alternatives", 0, "transcript")),
        TextField(("sentences", 0, "text")),
        JoinedTokens(("words",), key="text"),
    ),
    final=(
        Flag(("is_final",)),
        Flag(("final",)),
        Equals(("type",), "transcript.final"),
        Equals(("status",), "final"),
        Equals(("transcript_type",), "final"),
        Flag(("completed",), strict=True),
        AllTokensFinal(("words",), key="is_final"),
    ),
)

RULES: dict[str, NormalizationRule] = {
    providers.DEEPGRAM: NormalizationRule(
        text=(TextField(("channel", "alternatives", 0, "transcript")),),
        final=(Flag(("is_final",)), Flag(("speech_final",)), Flag(("from_finalize",))),
    ),
    providers.ASSEMBLY: NormalizationRule(
        text=(
            TextField(("transcript",)),
            TextField(("transcript", "text")),
            TextField(("transcript", "display_text")),
        ),
        final=(Flag(("end_of_turn",)),),
    ),
    providers.GLADIA: NormalizationRule(
        text=(TextField(("data", "utterance", "text")),),
        final=(Flag(("data", "is_final")),),
    ),
    providers.REVAI: NormalizationRule(
        text=(JoinedTokens(("elements",), key="value", separator=""),),
        final=(Equals(("type",), "final"),),
    ),
    providers.SPEECHMATICS: NormalizationRule(
        text=(ResultContents(("results",)),),
        final=(
            Equals(("message",), "AddTranscript"),
            Equals(("metadata", "transcript"), "final"),
            Flag(("metadata", "is_final"), strict=True),
            AnyTokenFlag(("results",), ("is_eos", "is_final")),
        ),
    ),
    providers.GOOGLE_GENAI: NormalizationRule(
        text=(
            FlattenedParts(("candidates",), (("content", "parts"), ("parts",))),
            FlattenedParts(("output",), (("content",), ("parts",))),
            FlattenedParts(("contents",), (("parts",),)),
        ),
        final=(),
    ),
}


def rule_for(provider: str | None) -> NormalizationRule:
    return RULES.get(provider or "", GENERIC_RULE)


def extract_text(payload: Any, rule: NormalizationRule = GENERIC_RULE) -> str:
    if isinstance(payload, str):
        return payload.strip()
    if isinstance(payload, (int, float)) and not isinstance(payload, bool):
        return str(payload).strip()
    if not isinstance(payload, Mapping):
        return ""
    for candidate in rule.text:
        text = candidate.extract(payload)
        if text and text.strip():
            return text.strip()
    return ""


def is_final(payload: Any, rule: NormalizationRule = GENERIC_RULE) -> bool:
    if not isinstance(payload, Mapping):
        return False
    return any(signal.evaluate(payload) for signal in rule.final)


def normalize_transcript(
    payload: Any,
    rule: NormalizationRule = GENERIC_RULE,
) -> TranscriptEvent | None:
    try:
        text = extract_text(payload, rule)
        if not text:
            return None
        return TranscriptEvent(text=text, is_final=is_final(payload, rule), raw=payload)
    except (TypeError, ValueError, AttributeError, KeyError, IndexError):
        logger.debug("Ignoring unparseable transcript payload", exc_info=True)
        return None


def with_finality(event: TranscriptEvent | None, final: bool) -> TranscriptEvent | None:
    if event is None:
        return None
    return replace(event, is_final=final)
