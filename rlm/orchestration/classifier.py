"""
Query classification.

The decomposer depends only on the QueryClassifier protocol, so the
keyword heuristics here can be swapped for another implementation.
"""

from __future__ import annotations

import re
from typing import Protocol, runtime_checkable

from .models import QueryClassification, QueryComplexity, QueryIntent


@runtime_checkable
class QueryClassifier(Protocol):
    """Anything that maps a query to intent and complexity."""

    def classify(self, query: str) -> QueryClassification:
        ...


class HeuristicClassifier:
    """
    Ordered keyword-pattern classifier.

    The first intent pattern that matches wins; factual is the default, so
    an ambiguous query never fails classification.
    """

    INTENT_PATTERNS: list[tuple[QueryIntent, re.Pattern]] = [
        (QueryIntent.COMPARATIVE, re.compile(r"compare|differ|versus|vs\.?|between", re.IGNORECASE)),
        (QueryIntent.AGGREGATIVE, re.compile(r"all|every|total|combined|across|overall", re.IGNORECASE)),
        (QueryIntent.ANALYTICAL, re.compile(r"pattern|trend|theme|common|recurring|emerge", re.IGNORECASE)),
        (QueryIntent.TEMPORAL, re.compile(r"over time|evolution|change|progress|history", re.IGNORECASE)),
    ]

    EXPLORATORY_PATTERN = re.compile(r"\?.*\?|and also|additionally|furthermore", re.IGNORECASE)
    MEETING_PATTERN = re.compile(r"meeting|session|call|discussion|sync", re.IGNORECASE)
    TIMEFRAME_PATTERN = re.compile(r"last|recent|this week|yesterday|today", re.IGNORECASE)

    SCOPES: dict[QueryComplexity, tuple[int, int]] = {
        QueryComplexity.SIMPLE: (1, 2),
        QueryComplexity.COMPARATIVE: (2, 3),
        QueryComplexity.AGGREGATE: (3, 10),
        QueryComplexity.EXPLORATORY: (1, 5),
    }

    def classify(self, query: str) -> QueryClassification:
        intent = self.detect_intent(query)

        if intent == QueryIntent.COMPARATIVE:
            complexity = QueryComplexity.COMPARATIVE
        elif intent in (QueryIntent.AGGREGATIVE, QueryIntent.ANALYTICAL):
            complexity = QueryComplexity.AGGREGATE
        elif self.EXPLORATORY_PATTERN.search(query):
            complexity = QueryComplexity.EXPLORATORY
        else:
            complexity = QueryComplexity.SIMPLE

        scope_min, scope_max = self.SCOPES[complexity]
        return QueryClassification(
            intent=intent,
            complexity=complexity,
            mentions_meeting=bool(self.MEETING_PATTERN.search(query)),
            mentions_timeframe=bool(self.TIMEFRAME_PATTERN.search(query)),
            scope_min=scope_min,
            scope_max=scope_max,
        )

    def detect_intent(self, query: str) -> QueryIntent:
        for intent, pattern in self.INTENT_PATTERNS:
            if pattern.search(query):
                return intent
        return QueryIntent.FACTUAL
