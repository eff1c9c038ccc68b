"""
Response aggregation.

Merges executor results into one answer: reduce output passes straight
through, a single answer is returned verbatim, and several answers are
synthesized by the completion call with a simple merge as the fallback.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..config.loader import AggregatorConfig
from ..context.store import SECTION_SEPARATOR
from ..exceptions import SynthesisError
from .conflicts import ConflictAnalysis, ConflictDetector
from .models import (
    AggregationResult,
    Decomposition,
    ExecutionReport,
    ExecutionResult,
    QueryIntent,
    SubQueryType,
)

if TYPE_CHECKING:
    from ..llm.protocols import CompletionCall

logger = logging.getLogger(__name__)

NO_RESULTS_RESPONSE = "No results could be gathered from the available meetings."
TRUNCATION_NOTICE = "\n\n...[Response truncated for length]"

SYNTHESIS_PROMPT = """You are synthesizing diverse perspectives to answer: "{query}"

The responses below come from different analytical perspectives analyzing meeting data.

Instructions:
- Combine information coherently from all perspectives
- IMPORTANT: If perspectives disagree, acknowledge the disagreement explicitly
- Present the strongest argument from each side before synthesizing
- Be concise but comprehensive
- Cite which meeting/perspective insights came from
- Use bullet points for lists"""

INTENT_INSTRUCTIONS: dict[QueryIntent, str] = {
    QueryIntent.FACTUAL: "\n- Focus on factual consensus; note any factual disagreements",
    QueryIntent.COMPARATIVE: "\n- Highlight how different perspectives view the comparison",
    QueryIntent.AGGREGATIVE: "\n- Compile items, noting if any perspective flagged concerns",
    QueryIntent.ANALYTICAL: "\n- Present the analytical tension before your synthesis",
    QueryIntent.TEMPORAL: "\n- Note if perspectives disagree on timeline or causation",
}


def jaccard_similarity(text1: str, text2: str) -> float:
    """Word-set Jaccard similarity (lower-cased, whitespace split)."""
    words1 = set(text1.lower().split())
    words2 = set(text2.lower().split())
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


class ResponseAggregator:
    """
    Combine sub-query results into a final answer.

    Example:
        aggregator = ResponseAggregator(config.aggregator)
        result = await aggregator.aggregate(report, plan, call)
        print(aggregator.format_for_display(result))
    """

    def __init__(self, config: AggregatorConfig | None = None):
        self.config = config or AggregatorConfig()
        self.conflict_detector = (
            ConflictDetector(agreement_threshold=self.config.conflict_threshold)
            if self.config.enable_conflict_detection
            else None
        )

    async def aggregate(
        self,
        report: ExecutionReport,
        decomposition: Decomposition,
        call: CompletionCall | None = None,
        context: dict[str, Any] | None = None,
    ) -> AggregationResult:
        """
        Aggregate an execution report.

        Args:
            report: Executor output
            decomposition: The plan that produced it
            call: Completion call for synthesis; without one, results are merged
            context: Caller context passed to the completion call

        Returns:
            AggregationResult
        """
        metadata = self.build_metadata(report, decomposition)

        reduce_result = next(
            (r for r in report.results if r.type == SubQueryType.REDUCE and r.success and r.response),
            None,
        )
        if reduce_result is not None:
            return AggregationResult(
                response=reduce_result.response,
                aggregation_type="map-reduce",
                sources=self._sources(r for r in report.results if r.type == SubQueryType.MAP),
                metadata=metadata,
            )

        successful = [
            r for r in report.results
            if r.success and r.response and r.type != SubQueryType.DEBATE
        ]

        if not successful:
            return AggregationResult(
                response=NO_RESULTS_RESPONSE,
                aggregation_type="none",
                success=False,
                metadata=metadata,
            )

        if len(successful) == 1:
            return AggregationResult(
                response=successful[0].response,
                aggregation_type="single",
                sources=self._sources(successful),
                metadata=metadata,
            )

        if not self.config.enable_llm_synthesis or call is None or self.should_skip_synthesis(successful):
            return self.simple_merge(successful, metadata)

        try:
            return await self.synthesize(successful, decomposition, call, context or {}, metadata)
        except SynthesisError as e:
            logger.warning(f"LLM synthesis failed, falling back to simple merge: {e.message}")
            merged = self.simple_merge(successful, metadata)
            merged.metadata["synthesis_error"] = e.to_dict()
            return merged

    def should_skip_synthesis(self, results: list[ExecutionResult]) -> bool:
        """
        Early stop: few results, or results already near-duplicates of the
        first one on average.
        """
        if len(results) <= self.config.early_stop_max_results:
            return True
        reference = results[0].response or ""
        if not reference:
            return False
        similarities = [jaccard_similarity(reference, r.response or "") for r in results[1:]]
        return sum(similarities) / len(similarities) >= self.config.early_stop_similarity

    async def synthesize(
        self,
        results: list[ExecutionResult],
        decomposition: Decomposition,
        call: CompletionCall,
        context: dict[str, Any],
        metadata: dict[str, Any],
    ) -> AggregationResult:
        analysis = self.detect_conflicts(results)
        conflict_block = (
            self.conflict_detector.format_for_synthesis(analysis)
            if analysis is not None and self.conflict_detector is not None
            else ""
        )

        system_prompt = self.build_synthesis_prompt(
            decomposition.original_query,
            decomposition.classification.intent,
            conflict_block,
        )
        results_context = SECTION_SEPARATOR.join(
            self._labelled(result, index) for index, result in enumerate(results, 1)
        )

        try:
            response = await call(system_prompt, results_context, context)
        except Exception as e:
            raise SynthesisError("Synthesis call failed", details=str(e)) from e

        if not response or not response.strip():
            raise SynthesisError("Synthesis call returned an empty response")

        return AggregationResult(
            response=response,
            aggregation_type="llm-synthesis",
            sources=self._sources(results),
            conflicts=analysis.to_dict() if analysis else None,
            metadata=metadata,
        )

    def detect_conflicts(self, results: list[ExecutionResult]) -> ConflictAnalysis | None:
        if self.conflict_detector is None:
            return None
        analysis = self.conflict_detector.analyze(results)
        if analysis.has_conflicts:
            logger.info(f"Conflict detection: {analysis.summary}")
        return analysis

    @staticmethod
    def build_synthesis_prompt(query: str, intent: QueryIntent, conflict_block: str = "") -> str:
        prompt = SYNTHESIS_PROMPT.format(query=query) + INTENT_INSTRUCTIONS.get(intent, "")
        if conflict_block:
            prompt += f"\n\n---\n{conflict_block}"
            prompt += "\n\nAddress these tensions explicitly in your response."
        return prompt

    def simple_merge(
        self,
        results: list[ExecutionResult],
        metadata: dict[str, Any] | None = None,
    ) -> AggregationResult:
        """Deduplicate, attribute and concatenate without a completion call."""
        deduped = self.deduplicate(results)
        parts = [f"**From {r.agent_name or 'Meeting'}:**\n{r.response}" for r in deduped]
        response = f"Based on {len(results)} meetings:\n\n" + SECTION_SEPARATOR.join(parts)

        return AggregationResult(
            response=self.truncate(response),
            aggregation_type="simple-merge",
            sources=self._sources(results),
            metadata={**(metadata or {}), "merged_count": len(deduped)},
        )

    def deduplicate(self, results: list[ExecutionResult]) -> list[ExecutionResult]:
        """Drop results too similar to one already kept."""
        kept: list[ExecutionResult] = []
        for result in results:
            if any(
                jaccard_similarity(existing.response or "", result.response or "")
                > self.config.deduplication_threshold
                for existing in kept
            ):
                continue
            kept.append(result)
        return kept

    def truncate(self, text: str) -> str:
        if len(text) <= self.config.max_final_length:
            return text
        return text[: self.config.max_final_length - 100] + TRUNCATION_NOTICE

    @staticmethod
    def format_for_display(result: AggregationResult) -> str:
        formatted = result.response
        if len(result.sources) > 1:
            source_list = ", ".join(result.sources)
            if source_list not in formatted:
                formatted += f"\n\n*Sources: {source_list}*"
        return formatted

    @staticmethod
    def build_metadata(report: ExecutionReport, decomposition: Decomposition) -> dict[str, Any]:
        return {
            "original_query": decomposition.original_query,
            "strategy": decomposition.strategy.type.value,
            "execution_time": report.execution_time,
            "total_sub_queries": len(decomposition.sub_queries),
            "successful_queries": sum(1 for r in report.results if r.success),
            "failed_queries": sum(1 for r in report.results if not r.success),
            "failures": [
                {"query_id": r.query_id, "error": r.error} for r in report.results if not r.success
            ],
            "classification": decomposition.classification.to_dict(),
            "depth": report.depth,
            "had_debate_phase": report.had_debate_phase,
            "timestamp": datetime.now().isoformat(),
        }

    @staticmethod
    def _labelled(result: ExecutionResult, index: int) -> str:
        source = result.agent_name or f"Source {index}"
        perspective = f" [{result.perspective.label}]" if result.perspective else ""
        return f"[{source}{perspective}]:\n{result.response}"

    @staticmethod
    def _sources(results) -> list[str]:
        return [r.agent_name for r in results if r.agent_name]
