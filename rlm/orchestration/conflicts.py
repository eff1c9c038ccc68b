"""Detect disagreement between sub-query answers before synthesis."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field

from .models import ExecutionResult

CONFLICT_MARKERS = (
    "however", "but", "although", "despite", "contrary",
    "disagree", "conflict", "tension", "risk", "concern",
    "alternatively", "on the other hand", "versus", "vs",
    "challenge", "issue", "problem", "limitation", "obstacle",
    "whereas", "unlike", "contrast", "differ", "instead",
)

AGREEMENT_MARKERS = (
    "also", "similarly", "agrees", "confirms", "supports",
    "consistent", "aligns", "reinforces", "validates",
    "likewise", "as well", "in line with", "corroborates",
    "echoes", "mirrors", "matches", "concurs",
)

THEME_STOP_WORDS = frozenset({
    "that", "this", "with", "from", "have", "been",
    "were", "their", "would", "could", "should", "about",
    "which", "there", "these", "those", "being", "other",
    "meeting", "discussed", "mentioned", "noted", "stated",
    "regarding", "related", "based", "according", "following",
})

EXCERPT_LENGTH = 150
MAX_THEMES = 5

_MARKER_PATTERNS = {
    marker: re.compile(rf"\b{re.escape(marker)}\b", re.IGNORECASE)
    for marker in CONFLICT_MARKERS + AGREEMENT_MARKERS
}


def count_markers(text: str, markers: tuple[str, ...]) -> int:
    return sum(len(_MARKER_PATTERNS[m].findall(text)) for m in markers)


def overlap_similarity(text1: str, text2: str) -> float:
    """Jaccard similarity over words longer than three characters."""
    words1 = {w for w in text1.lower().split() if len(w) > 3}
    words2 = {w for w in text2.lower().split() if len(w) > 3}
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


def extract_excerpt(response: str | None, max_length: int = EXCERPT_LENGTH) -> str:
    if not response:
        return ""
    trimmed = response.strip()
    if len(trimmed) <= max_length:
        return trimmed
    cutoff = trimmed.rfind(".", 0, max_length + 1)
    if cutoff > max_length * 0.5:
        return trimmed[:cutoff + 1]
    return trimmed[:max_length] + "..."


@dataclass
class ConflictSide:
    agent_name: str
    perspective: str
    excerpt: str


@dataclass
class Comparison:
    """Relationship between two answers."""

    type: str  # conflict, agreement, neutral
    confidence: float
    source1: ConflictSide
    source2: ConflictSide
    similarity: float
    conflict_score: int
    agreement_score: int


@dataclass
class ConflictAnalysis:
    conflicts: list[Comparison] = field(default_factory=list)
    agreements: list[Comparison] = field(default_factory=list)
    themes: list[str] = field(default_factory=list)
    summary: str | None = None

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def to_dict(self) -> dict:
        return {
            "has_conflicts": self.has_conflicts,
            "conflict_count": len(self.conflicts),
            "agreement_count": len(self.agreements),
            "themes": self.themes,
            "summary": self.summary,
        }


class ConflictDetector:
    """
    Pairwise marker-word and word-overlap analysis.

    A pair is a conflict when conflict markers outweigh agreement markers
    and the answers overlap less than ``agreement_threshold``.
    """

    def __init__(self, agreement_threshold: float = 0.75, min_responses: int = 2):
        self.agreement_threshold = agreement_threshold
        self.min_responses = min_responses

    def analyze(self, results: list[ExecutionResult]) -> ConflictAnalysis:
        if len(results) < self.min_responses:
            return ConflictAnalysis()

        analysis = ConflictAnalysis()
        for i in range(len(results)):
            for j in range(i + 1, len(results)):
                comparison = self.compare(results[i], results[j], i, j)
                if comparison is None:
                    continue
                if comparison.type == "conflict":
                    analysis.conflicts.append(comparison)
                elif comparison.type == "agreement":
                    analysis.agreements.append(comparison)

        analysis.themes = self.extract_themes(analysis.conflicts)
        analysis.summary = self.summarize(analysis)
        return analysis

    def compare(
        self,
        first: ExecutionResult,
        second: ExecutionResult,
        first_index: int = 0,
        second_index: int = 1,
    ) -> Comparison | None:
        text1 = (first.response or "").lower()
        text2 = (second.response or "").lower()
        if not text1.strip() or not text2.strip():
            return None

        conflict_score = count_markers(text1, CONFLICT_MARKERS) + count_markers(text2, CONFLICT_MARKERS)
        agreement_score = count_markers(text1, AGREEMENT_MARKERS) + count_markers(text2, AGREEMENT_MARKERS)
        similarity = overlap_similarity(text1, text2)

        kind = "neutral"
        confidence = 0.5
        if conflict_score > agreement_score and similarity < self.agreement_threshold:
            kind = "conflict"
            confidence = min(1.0, 0.5 + conflict_score * 0.1)
        elif agreement_score > conflict_score or similarity >= self.agreement_threshold:
            kind = "agreement"
            confidence = min(1.0, 0.5 + agreement_score * 0.1 + similarity * 0.3)

        return Comparison(
            type=kind,
            confidence=confidence,
            source1=self._side(first, f"Source {first_index + 1}"),
            source2=self._side(second, f"Source {second_index + 1}"),
            similarity=similarity,
            conflict_score=conflict_score,
            agreement_score=agreement_score,
        )

    @staticmethod
    def _side(result: ExecutionResult, default_name: str) -> ConflictSide:
        return ConflictSide(
            agent_name=result.agent_name or default_name,
            perspective=result.perspective.label if result.perspective else "Default",
            excerpt=extract_excerpt(result.response),
        )

    @staticmethod
    def extract_themes(conflicts: list[Comparison]) -> list[str]:
        """Most frequent longer words across the conflicting excerpts."""
        if not conflicts:
            return []
        text = " ".join(f"{c.source1.excerpt} {c.source2.excerpt}" for c in conflicts).lower()
        counts: Counter[str] = Counter()
        for word in text.split():
            normalized = re.sub(r"[^a-z]", "", word)
            if len(normalized) > 4 and normalized not in THEME_STOP_WORDS:
                counts[normalized] += 1
        return [word for word, _ in counts.most_common(MAX_THEMES)]

    @staticmethod
    def summarize(analysis: ConflictAnalysis) -> str | None:
        parts = []
        if analysis.agreements:
            parts.append(f"{len(analysis.agreements)} point(s) of agreement found")
        if analysis.conflicts:
            parts.append(f"{len(analysis.conflicts)} tension(s) or disagreement(s) detected")
        return "; ".join(parts) or None

    @staticmethod
    def format_for_synthesis(analysis: ConflictAnalysis) -> str:
        """Render conflicts as a block for the synthesis instructions."""
        if not analysis.has_conflicts:
            return ""

        lines = ["**Identified Tensions:**"]
        for index, conflict in enumerate(analysis.conflicts, 1):
            a, b = conflict.source1, conflict.source2
            lines.append("")
            lines.append(f"{index}. {a.perspective} ({a.agent_name}) vs {b.perspective} ({b.agent_name}):")
            lines.append(f'   - View A: "{a.excerpt}"')
            lines.append(f'   - View B: "{b.excerpt}"')

        if analysis.themes:
            lines.append("")
            lines.append(f"Key themes in tensions: {', '.join(analysis.themes)}")

        return "\n".join(lines)
