"""
Query pipeline.

Routes a question through the cache, then decompose -> execute ->
aggregate, falling back to a single combined-context completion when the
decomposed run fails. ``process_with_repl`` instead generates code and
runs it in the sandbox, falling back to ``process``.

Every path returns a PipelineResult; errors never reach the caller.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ..cache import QueryCache
from ..config.loader import PipelineConfig
from ..context.models import AgentDocument, ContextLevel
from ..context.store import ContextStore
from ..exceptions import (
    ExecutionError,
    RecursionDepthExceededError,
    RLMError,
    SandboxExecutionError,
)
from ..memory import BuiltPrompt, MemoryStore, build_prompt
from ..sandbox.channel import SubCallRequest
from ..sandbox.codegen import CodeGenerator, CodeQueryType, classify_code_query
from ..sandbox.runner import SandboxRunner
from .aggregator import ResponseAggregator
from .classifier import QueryClassifier
from .decomposer import QueryDecomposer
from .executor import ANALYSIS_SYSTEM_PROMPT, SubQueryExecutor
from .models import Decomposition, ExecutionReport

if TYPE_CHECKING:
    from ..llm.protocols import CompletionCall

logger = logging.getLogger(__name__)

LEGACY_SYSTEM_PROMPT = """You are a helpful meeting assistant with access to data from multiple meetings.
Use the following meeting data to answer questions accurately and comprehensively."""

MIN_AGENTS_FOR_RLM = 3

COMPLEXITY_INDICATORS = [
    re.compile(r"compare|contrast|differ", re.IGNORECASE),
    re.compile(r"\b(all|every|across)\b", re.IGNORECASE),
    re.compile(r"pattern|trend|theme", re.IGNORECASE),
    re.compile(r"\?.*\?"),  # Multiple questions
]

# Questions answered better by computing over the records than by reading them
REPL_INDICATORS = [
    re.compile(r"\bhow many\b|\bcount\b|\bnumber of\b", re.IGNORECASE),
    re.compile(r"\blist (all|every)\b", re.IGNORECASE),
    re.compile(r"\bwhich meetings?\b", re.IGNORECASE),
    re.compile(r"\b(mention|mentioned|mentions)\b", re.IGNORECASE),
]

REPL_QUERY_TYPES = frozenset({CodeQueryType.SEARCH, CodeQueryType.AGGREGATIVE})

ProgressCallback = Callable[[str, str, dict], Any]


class ResultTier(str, Enum):
    """Which path of the fallback chain produced a result."""

    PRIMARY = "primary"
    FALLBACK = "fallback"
    FAILED = "failed"


@dataclass
class PipelineResult:
    """Answer returned to the caller, tagged with the path that produced it."""

    success: bool
    response: str
    tier: ResultTier
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "response": self.response,
            "tier": self.tier.value,
            "metadata": self.metadata,
        }


def _new_stats() -> dict[str, Any]:
    return {
        "queries_processed": 0,
        "total_sub_queries": 0,
        "avg_execution_time": 0.0,
        "strategies": {},
        "cache_hits": 0,
        "repl_runs": 0,
        "repl_fallbacks": 0,
        "fallbacks": 0,
    }


class RLMPipeline:
    """
    Recursive query pipeline over a document set.

    Example:
        pipeline = RLMPipeline(config.pipeline)
        pipeline.load_agents(records)
        result = await pipeline.process("What did we decide about pricing?", call)
        print(result.response, result.tier)
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        store: ContextStore | None = None,
        cache: QueryCache | None = None,
        memory: MemoryStore | None = None,
        classifier: QueryClassifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or PipelineConfig()
        self.store = store or ContextStore()
        self.decomposer = QueryDecomposer(self.store, self.config.decomposer, classifier)
        self.executor = SubQueryExecutor(self.store, self.config.executor, sleep=sleep)
        self.aggregator = ResponseAggregator(self.config.aggregator)
        self.code_generator = CodeGenerator(self.config.sandbox)

        if cache is None and self.config.cache.enabled:
            cache = QueryCache(self.config.cache)
        self.cache = cache

        if memory is None and self.config.memory.enabled:
            memory = MemoryStore()
        self.memory = memory

        self.sandbox: SandboxRunner | None = None
        self._terminated = False
        self._progress: ProgressCallback | None = None
        self.stats = _new_stats()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def load_agents(self, agents: list[AgentDocument | dict[str, Any]]) -> None:
        """Replace the document set; cached answers are dropped, memory is kept."""
        agents = list(agents)
        self.store.load_agents(agents)
        if self.cache is not None:
            dropped = self.cache.invalidate()
            if dropped:
                logger.info(f"Invalidated {dropped} cached results after reload")
        logger.info(f"Loaded {len(agents)} agents into context store")

    # ------------------------------------------------------------------
    # Standard path
    # ------------------------------------------------------------------

    async def process(
        self,
        query: str,
        call: CompletionCall,
        context: dict[str, Any] | None = None,
    ) -> PipelineResult:
        """
        Answer a query by decomposition, with cache and legacy fallback.

        Args:
            query: User's natural-language question
            call: Completion call ``call(system_prompt, user_prompt, context)``
            context: Caller context passed to every call (``depth`` included)

        Returns:
            PipelineResult tagged primary, fallback or failed
        """
        context = dict(context or {})
        active_ids = self.store.get_active_agent_ids()

        cached = self._cache_get(query, active_ids, "rlm")
        if cached is not None:
            return cached

        started = time.monotonic()
        if not self.config.enable_rlm:
            logger.info("RLM disabled, using legacy processing")
            result = await self._legacy_result(query, call, context, started, ResultTier.PRIMARY)
        else:
            result = await self._process_with_fallback(query, call, context, started)

        if result.success:
            self._cache_set(query, active_ids, "rlm", result)
            self._capture_memory(query, result.response, active_ids)
        return result

    async def _process_with_fallback(
        self,
        query: str,
        call: CompletionCall,
        context: dict[str, Any],
        started: float,
    ) -> PipelineResult:
        try:
            return await self._process_rlm(query, call, context, started)
        except RLMError as e:
            error = e
        except Exception as e:
            error = ExecutionError(f"Unexpected pipeline error: {e}")
            logger.exception("Unexpected error in RLM pipeline")

        logger.error(f"RLM pipeline failed: {error.message}")
        self._notify("pipeline", "error", {"error": error.message})

        if self.config.fallback_to_legacy:
            logger.info("Falling back to legacy processing")
            self.stats["fallbacks"] += 1
            return await self._legacy_result(
                query, call, context, started, ResultTier.FALLBACK,
                extra={"rlm_error": error.to_dict()},
            )

        return PipelineResult(
            success=False,
            response=f"Error processing query: {error.message}",
            tier=ResultTier.FAILED,
            metadata={
                "rlm_enabled": True,
                "error": error.to_dict(),
                "pipeline_time": time.monotonic() - started,
            },
        )

    async def _process_rlm(
        self,
        query: str,
        call: CompletionCall,
        context: dict[str, Any],
        started: float,
    ) -> PipelineResult:
        logger.info(f"Starting pipeline for query: {query[:50]}...")

        self._notify("decompose", "start", {"query": query})
        decomposition = self.decomposer.decompose(query)
        memory_prompt = self._memory_prompt(query, decomposition.relevant_agent_ids)
        decomposition.memory_context = self._injected_memory(memory_prompt)
        self._notify("decompose", "done", {
            "strategy": decomposition.strategy.type.value,
            "sub_queries": len(decomposition.sub_queries),
        })

        self._notify("execute", "start", {"sub_queries": len(decomposition.sub_queries)})
        report = await self.executor.execute(decomposition, call, context)
        self._notify("execute", "done", {
            "succeeded": len(report.successful),
            "failed": len(report.failed),
        })
        if not report.success:
            raise ExecutionError(
                report.error or "Execution failed",
                details="; ".join(f"{e.query_id}: {e.message}" for e in report.log[-5:]) or None,
            )

        self._notify("aggregate", "start", {"results": len(report.results)})
        aggregation = await self.aggregator.aggregate(report, decomposition, call, context)
        self._notify("aggregate", "done", {"type": aggregation.aggregation_type})
        if not aggregation.success:
            raise ExecutionError(aggregation.response)

        elapsed = time.monotonic() - started
        self._update_stats(decomposition, report, elapsed)

        metadata = {
            **aggregation.metadata,
            "rlm_enabled": True,
            "mode": "rlm",
            "aggregation_type": aggregation.aggregation_type,
            "sources": aggregation.sources,
            "conflicts": aggregation.conflicts,
            "pipeline_time": elapsed,
        }
        if memory_prompt is not None:
            metadata["memory_prompt"] = self._memory_metadata(memory_prompt, decomposition.memory_context)

        logger.info(f"Pipeline complete in {elapsed:.2f}s")
        return PipelineResult(
            success=True,
            response=self.aggregator.format_for_display(aggregation),
            tier=ResultTier.PRIMARY,
            metadata=metadata,
        )

    async def _legacy_result(
        self,
        query: str,
        call: CompletionCall,
        context: dict[str, Any],
        started: float,
        tier: ResultTier,
        extra: dict[str, Any] | None = None,
    ) -> PipelineResult:
        metadata = {"rlm_enabled": False, "legacy": True, **(extra or {})}
        try:
            response = await self._legacy_process(query, call, context)
        except Exception as e:
            logger.error(f"Legacy processing failed: {e}")
            metadata["legacy_error"] = str(e)
            metadata["pipeline_time"] = time.monotonic() - started
            return PipelineResult(
                success=False,
                response=f"Error processing query: {e}",
                tier=ResultTier.FAILED,
                metadata=metadata,
            )

        metadata["pipeline_time"] = time.monotonic() - started
        return PipelineResult(success=True, response=response, tier=tier, metadata=metadata)

    async def _legacy_process(
        self,
        query: str,
        call: CompletionCall,
        context: dict[str, Any],
    ) -> str:
        """One completion over the standard view of every active agent."""
        active_ids = self.store.get_active_agent_ids()
        combined = self.store.get_combined_context(active_ids, ContextLevel.STANDARD)
        user_prompt = f"{combined}\n\nQuestion: {query}"

        memory = self._injected_memory(self._memory_prompt(query, active_ids))
        if memory:
            user_prompt = f"Conversation memory:\n{memory}\n\n{user_prompt}"

        response = await call(LEGACY_SYSTEM_PROMPT, user_prompt, context)
        if not response:
            raise ExecutionError("Legacy completion returned an empty response")
        return response

    # ------------------------------------------------------------------
    # Sandbox path
    # ------------------------------------------------------------------

    async def process_with_repl(
        self,
        query: str,
        call: CompletionCall,
        context: dict[str, Any] | None = None,
    ) -> PipelineResult:
        """
        Answer a query by generating code and running it in the sandbox.

        Falls back to ``process`` (tagged fallback) on any sandbox failure,
        and uses ``process`` directly once the pipeline is terminated.
        """
        context = dict(context or {})

        if self._terminated or not self.config.sandbox.enabled:
            logger.info("Sandbox unavailable, using standard pipeline")
            return await self.process(query, call, context)

        active_ids = self.store.get_active_agent_ids()
        cached = self._cache_get(query, active_ids, "repl")
        if cached is not None:
            return cached

        started = time.monotonic()
        try:
            result = await self._process_repl(query, call, context, started)
        except RLMError as e:
            self.stats["repl_fallbacks"] += 1
            logger.warning(f"Sandbox path failed ({e.error_code}): {e.message}")
            self._notify("sandbox", "error", {"error": e.message})
            fallback = await self.process(query, call, context)
            return replace(
                fallback,
                tier=ResultTier.FALLBACK if fallback.success else ResultTier.FAILED,
                metadata={**fallback.metadata, "repl_error": e.to_dict()},
            )

        self._cache_set(query, active_ids, "repl", result)
        self._capture_memory(query, result.response, active_ids)
        return result

    async def _process_repl(
        self,
        query: str,
        call: CompletionCall,
        context: dict[str, Any],
        started: float,
    ) -> PipelineResult:
        depth = int(context.get("depth", 0))
        max_depth = self.config.sandbox.max_depth
        if depth >= max_depth:
            raise RecursionDepthExceededError(depth, max_depth)

        active_ids = self.store.get_active_agent_ids()
        self._notify("codegen", "start", {"query": query})
        generated = await self.code_generator.generate_with_retry(
            query,
            call,
            context,
            agent_names=self.store.get_agent_names(active_ids),
            active_agents=len(active_ids),
        )
        self._notify("codegen", "done", {
            "attempts": generated.attempts,
            "query_type": generated.classification.type.value,
        })

        async def handle_sub_call(request: SubCallRequest) -> str:
            self._notify("sub_lm", "call", {"id": request.id, "depth": request.depth + 1})
            if request.context_slice:
                user_prompt = f"Context:\n{request.context_slice}\n\nQuestion: {request.query}"
            else:
                user_prompt = request.query
            return await call(ANALYSIS_SYSTEM_PROMPT, user_prompt, {**context, "depth": request.depth + 1})

        self._notify("sandbox", "start", {"depth": depth})
        outcome = await self._get_sandbox().run(
            generated.code,
            self.store.get_repl_context(),
            handle_sub_call,
            depth=depth,
        )
        self.stats["repl_runs"] += 1
        self._notify("sandbox", "done", outcome.to_dict())

        if not outcome.success:
            raise outcome.exception or SandboxExecutionError(outcome.error or "Sandbox run failed")

        return PipelineResult(
            success=True,
            response=outcome.answer or "",
            tier=ResultTier.PRIMARY,
            metadata={
                "mode": "repl",
                "code": generated.code,
                "code_attempts": generated.attempts,
                "query_type": generated.classification.type.value,
                "warnings": generated.validation.warnings,
                **outcome.to_dict(),
                "pipeline_time": time.monotonic() - started,
            },
        )

    def _get_sandbox(self) -> SandboxRunner:
        if self.sandbox is None:
            self.sandbox = SandboxRunner(self.config.sandbox, self.code_generator.validator)
        return self.sandbox

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def should_use_rlm(self, query: str, auto: bool = True) -> bool:
        """Decomposition pays off with 3+ active agents or a complex query."""
        if not self.config.enable_rlm:
            return False
        if not auto:
            return True
        if len(self.store.get_active_agent_ids()) >= MIN_AGENTS_FOR_RLM:
            return True
        return any(pattern.search(query) for pattern in COMPLEXITY_INDICATORS)

    def should_use_repl(self, query: str, auto: bool = True) -> bool:
        """Counting, listing and searching questions go to the sandbox."""
        if self._terminated or not self.config.sandbox.enabled:
            return False
        if not auto:
            return True
        if any(pattern.search(query) for pattern in REPL_INDICATORS):
            return True
        classification = classify_code_query(query)
        return classification.type in REPL_QUERY_TYPES and classification.confidence >= 2 / 3

    # ------------------------------------------------------------------
    # Cache and memory
    # ------------------------------------------------------------------

    def _cache_get(self, query: str, active_ids: list[str], mode: str) -> PipelineResult | None:
        if self.cache is None:
            return None
        try:
            hit = self.cache.lookup(query, active_ids, mode)
        except Exception as e:
            logger.warning(f"Cache lookup failed, bypassing cache: {e}")
            return None

        if hit is None:
            return None
        self.stats["cache_hits"] += 1
        self._notify("cache", "hit", {"mode": mode})
        return replace(hit, metadata={**hit.metadata, "cached": True})

    def _cache_set(self, query: str, active_ids: list[str], mode: str, result: PipelineResult) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(self.cache.generate_key(query, active_ids, mode), result)
        except Exception as e:
            logger.warning(f"Cache store failed, bypassing cache: {e}")

    def _capture_memory(self, query: str, response: str, agent_ids: list[str]) -> None:
        if self.memory is None:
            return
        try:
            self.memory.capture_completion(query, response, agent_ids)
        except Exception as e:
            logger.warning(f"Memory capture failed, skipping: {e}")

    def _memory_prompt(self, query: str, agent_ids: list[str]) -> BuiltPrompt | None:
        """Memory-augmented prompt for this turn, or None without memory."""
        if self.memory is None:
            return None
        settings = self.config.memory
        try:
            retrieval = self.memory.retrieve_slices(
                query,
                max_results=settings.max_retrieved_slices,
                max_per_tag=settings.max_per_tag,
                max_per_agent=settings.max_per_agent,
                allowed_agent_ids=agent_ids or None,
            )
            return build_prompt(
                query,
                state_block=self.memory.render_state_block(settings.state_block_token_budget),
                working_window=self.memory.render_working_window(),
                retrieved_slices=retrieval.slices,
            )
        except Exception as e:
            logger.warning(f"Memory prompt build failed, skipping: {e}")
            return None

    def _injected_memory(self, built: BuiltPrompt | None) -> str:
        if built is None or not self.config.memory.inject_into_prompts:
            return ""
        return built.memory_context

    @staticmethod
    def _memory_metadata(built: BuiltPrompt, injected: str) -> dict[str, Any]:
        return {
            "token_estimate": built.token_estimate,
            "token_breakdown": built.token_breakdown,
            "retrieved_slices": built.retrieved_count,
            "injected": bool(injected),
        }

    # ------------------------------------------------------------------
    # Lifecycle and stats
    # ------------------------------------------------------------------

    def set_progress_callback(self, callback: ProgressCallback | None) -> None:
        self._progress = callback

    def _notify(self, step: str, kind: str, details: dict) -> None:
        if self._progress is None:
            return
        try:
            self._progress(step, kind, details)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def _update_stats(self, decomposition: Decomposition, report: ExecutionReport, elapsed: float) -> None:
        stats = self.stats
        stats["queries_processed"] += 1
        stats["total_sub_queries"] += len(decomposition.sub_queries)
        n = stats["queries_processed"]
        stats["avg_execution_time"] = ((n - 1) * stats["avg_execution_time"] + elapsed) / n
        strategy = decomposition.strategy.type.value
        stats["strategies"][strategy] = stats["strategies"].get(strategy, 0) + 1

    def get_stats(self) -> dict:
        return {
            **self.stats,
            "context_store": self.store.get_stats(),
            "cache": self.cache.get_stats() if self.cache is not None else None,
            "memory": self.memory.get_stats() if self.memory is not None else None,
            "sandbox_executions": self.sandbox.executions if self.sandbox is not None else 0,
            "config": self.config.model_dump(),
        }

    def clear_cache(self) -> None:
        if self.cache is not None:
            self.cache.invalidate()

    def reset(self) -> None:
        """Drop documents, cache, memory and stats."""
        self.store.load_agents([])
        self.clear_cache()
        if self.memory is not None:
            self.memory.reset()
        self.stats = _new_stats()

    def terminate(self) -> None:
        """Stop the sandbox; later REPL requests go through ``process``."""
        if self.sandbox is not None:
            self.sandbox.shutdown()
        self._terminated = True
        logger.info("Pipeline sandbox terminated")
