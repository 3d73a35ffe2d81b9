"""
Lightweight text analysis for captured conversations.

PatternTextAnalyzer uses regex templates only. The TextAnalyzer interface
lets a model-based extractor replace it without touching the service.
"""

import logging
import math
import re
from abc import ABC, abstractmethod

logger = logging.getLogger("vy_memory.service.analyzer")

MAX_INSIGHTS = 5
MAX_ACTION_ITEMS = 10

# Lines that look like the start of a conversational turn
MESSAGE_MARKERS = [
    re.compile(r'^(user|assistant|system|human|ai):', re.IGNORECASE),
    re.compile(r'^[A-Z][a-z]+:'),
    re.compile(r'^\d+\.'),
    re.compile(r'^-'),
    re.compile(r'^>'),
]

# Captures stop at sentence boundaries: . ! or ? followed by whitespace or the
# end of the text, so "v1.2" stays inside one capture.
SENTENCE_CHAR = r"(?:[^.!?\n]|[.!?](?=\S))"

# (label, pattern); each pattern captures the insight text in group "text".
INSIGHT_PATTERNS = [
    ("learning", re.compile(rf'learn(?:ed|ing|s)\s+(?:that\s+)?(?P<text>{SENTENCE_CHAR}{{10,100}})')),
    ("understanding", re.compile(rf'understands?\s+(?:that\s+)?(?P<text>{SENTENCE_CHAR}{{10,100}})')),
    ("realization", re.compile(rf'realize[ds]?\s+(?:that\s+)?(?P<text>{SENTENCE_CHAR}{{10,100}})')),
    ("preference", re.compile(rf'prefers?\s+(?P<text>{SENTENCE_CHAR}{{5,50}})')),
    ("goal", re.compile(rf'goals?\s+(?:is|are|includes?)\s+(?P<text>{SENTENCE_CHAR}{{10,100}})')),
]

ACTION_PATTERNS = [
    re.compile(rf'(?:need to|should|will|must|have to|going to)\s+({SENTENCE_CHAR}{{5,100}})', re.IGNORECASE),
    re.compile(r'(?:todo|to-do|task):\s*([^\n]{5,100})', re.IGNORECASE),
    re.compile(r'(?:action|next step):\s*([^\n]{5,100})', re.IGNORECASE),
    re.compile(r'\[ ?\]\s+([^\n]{5,100})'),  # Checkbox
]


class TextAnalyzer(ABC):
    """Extracts structure from raw conversation text."""

    @abstractmethod
    def estimate_message_count(self, text: str) -> int:
        pass

    @abstractmethod
    def extract_insights(self, text: str) -> list[str]:
        pass

    @abstractmethod
    def extract_action_items(self, text: str) -> list[str]:
        pass


class PatternTextAnalyzer(TextAnalyzer):
    """Regex-template analyzer. Fast and dependency free, but shallow."""

    def estimate_message_count(self, text: str) -> int:
        """
        Count lines that look like turn markers ("user:", "- ", "1." ...).

        Falls back to one message per three non-empty lines when that
        gives a larger count.
        """
        lines = [line.strip() for line in text.split("\n") if line.strip()]
        marked = sum(
            1 for line in lines
            if any(pattern.match(line) for pattern in MESSAGE_MARKERS)
        )
        return max(marked, math.ceil(len(lines) / 3))

    def extract_insights(self, text: str) -> list[str]:
        """Extract up to 5 labelled insights, e.g. "learning: <text>"."""
        insights = []
        lowered = text.lower()

        for label, pattern in INSIGHT_PATTERNS:
            for match in pattern.finditer(lowered):
                insight = re.sub(r'[.!?]+$', '', match.group("text").strip())
                if len(insight) > 10:
                    insights.append(f"{label}: {insight}")

        return insights[:MAX_INSIGHTS]

    def extract_action_items(self, text: str) -> list[str]:
        """Extract up to 10 distinct action items, scanning line by line."""
        items = []

        for line in text.split("\n"):
            for pattern in ACTION_PATTERNS:
                for match in pattern.finditer(line):
                    action = re.sub(r'[.!?]+$', '', match.group(1).strip())
                    if 5 < len(action) < 100 and action not in items:
                        items.append(action)

        if len(items) > MAX_ACTION_ITEMS:
            logger.debug(f"Found {len(items)} action items, keeping first {MAX_ACTION_ITEMS}")
        return items[:MAX_ACTION_ITEMS]
