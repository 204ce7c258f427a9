"""Chunk metadata classifiers: topic tags plus decision/action flags."""

from __future__ import annotations

import re
from collections import Counter
from typing import Protocol


class ChunkClassifier(Protocol):
    """Interface for anything that can tag a chunk's text.

    The keyword implementation below is the default; a model-backed
    classifier can be dropped in without changing the chunk schema.
    """

    def topics(self, text: str) -> list[str]: ...

    def has_decision(self, text: str) -> bool: ...

    def has_action(self, text: str) -> bool: ...


_STOP_WORDS: frozenset[str] = frozenset(
    {
        "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
        "a", "an", "is", "are", "was", "were", "be", "been", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "can", "may", "might",
        "must", "i", "you", "he", "she", "it", "we", "they", "me", "him", "her", "us",
        "them", "this", "that", "these", "those", "user", "assistant", "what", "when",
        "where", "which", "there", "their", "then", "than", "from", "into", "about",
        "just", "also", "some", "your",
    }
)

_WORD_RE = re.compile(r"[\w-]+")

_DECISION_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\b(decided?|decision|chose|choose|concluded?|resolved?|determined?|agreed?)\b", re.IGNORECASE),
    re.compile(r"\b(final decision|conclusion|resolution)\b", re.IGNORECASE),
    re.compile(r"\b(let's go with|we'll use|i'll proceed with)\b", re.IGNORECASE),
    re.compile(r"\b(settled on|opted for)\b", re.IGNORECASE),
]

_ACTION_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\b(todo|to-do|action items?|tasks?|need to|should do|will do|plan to)\b", re.IGNORECASE),
    re.compile(r"\b(implement|build|create|develop|write|fix)\b", re.IGNORECASE),
    re.compile(r"\b(next steps?|follow[\s-]?up|remember to)\b", re.IGNORECASE),
    re.compile(r"\b(schedule|deadline|due date)\b", re.IGNORECASE),
]


class KeywordClassifier:
    """Best-effort keyword heuristics for topics, decisions and actions."""

    def __init__(self, max_topics: int = 3, min_word_length: int = 4) -> None:
        self.max_topics = max_topics
        self.min_word_length = min_word_length

    def topics(self, text: str) -> list[str]:
        """Return the most frequent meaningful words as topic tags.

        Ties keep first-occurrence order. Hyphens become underscores so tags
        stay safe for tag-style filtering.
        """
        words = [
            word.strip("-")
            for word in _WORD_RE.findall(text.lower())
        ]
        meaningful = [
            word
            for word in words
            if len(word) >= self.min_word_length
            and word not in _STOP_WORDS
            and not word.replace("_", "").isdigit()
        ]
        counts = Counter(meaningful)
        return [word.replace("-", "_") for word, _ in counts.most_common(self.max_topics)]

    def has_decision(self, text: str) -> bool:
        return any(p.search(text) for p in _DECISION_PATTERNS)

    def has_action(self, text: str) -> bool:
        return any(p.search(text) for p in _ACTION_PATTERNS)
