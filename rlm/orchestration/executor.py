"""
Sub-query execution.

Runs a Decomposition's sub-queries against the completion call: a bounded
worker pool for independent sub-queries, dependency-gated reduce and
follow-up phases, an optional debate phase between perspectives, and
retry with exponential backoff around every call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ..config.loader import ExecutorConfig
from ..context.models import ContextLevel
from ..context.store import SECTION_SEPARATOR, ContextStore, estimate_tokens
from ..exceptions import SubQueryError
from .models import (
    Decomposition,
    ExecutionLogEntry,
    ExecutionReport,
    ExecutionResult,
    StrategyType,
    SubQuery,
    SubQueryStatus,
    SubQueryType,
)
from .perspectives import get_role

if TYPE_CHECKING:
    from ..llm.protocols import CompletionCall

logger = logging.getLogger(__name__)

ANALYSIS_SYSTEM_PROMPT = (
    "You are analyzing meeting data to answer a specific question. "
    "Be concise and focus only on information relevant to the question. "
    "If the information is not available in the provided context, say so briefly."
)

UNCERTAINTY_MARKERS = (
    "not sure",
    "unclear",
    "might be",
    "could be",
    "no information",
    "not found",
    "limited data",
)

DEBATE_PROMPT = """You are moderating a structured debate between two analytical perspectives.

**{label1} Position:**
{view1}

**{label2} Position:**
{view2}

Identify:
1. Key points of AGREEMENT between these perspectives
2. Key points of TENSION or DISAGREEMENT
3. Which perspective has the stronger evidence

Be concise (3-5 bullet points total)."""

NO_DEBATE_INSIGHTS = "No significant debates could be generated between perspectives."


def build_user_prompt(question: str, context_text: str, memory_context: str = "") -> str:
    memory = f"Conversation memory:\n{memory_context}\n\n" if memory_context else ""
    return memory + (
        f"Context from meetings:\n{context_text}\n\n"
        f"Question: {question}\n\n"
        "Provide a focused answer based only on the context above."
    )


def needs_followup(response: str | None) -> bool:
    """True when an answer hedges enough to justify a follow-up query."""
    if not response:
        return False
    lowered = response.lower()
    return any(marker in lowered for marker in UNCERTAINTY_MARKERS)


class SubQueryExecutor:
    """
    Executes decomposed sub-queries.

    The executor never raises for a failing sub-query: failures are retried,
    then recorded as failed results in the report. Only the recursion-depth
    ceiling aborts a run, and even that is reported rather than raised.

    Example:
        executor = SubQueryExecutor(store, config.executor)
        report = await executor.execute(plan, call, {"depth": 0})
        for result in report.successful:
            print(result.response)
    """

    def __init__(
        self,
        store: ContextStore,
        config: ExecutorConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.config = config or ExecutorConfig()
        self._sleep = sleep
        self.log: list[ExecutionLogEntry] = []
        self._depth = 0
        self._memory_context = ""

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(
        self,
        decomposition: Decomposition,
        call: CompletionCall,
        context: dict[str, Any] | None = None,
    ) -> ExecutionReport:
        """
        Execute a plan.

        Args:
            decomposition: Plan from the QueryDecomposer
            call: Completion call ``call(system_prompt, user_prompt, context)``
            context: Caller context, passed through to every call; its
                ``depth`` key is the current recursion depth

        Returns:
            ExecutionReport with one result per executed sub-query
        """
        context = dict(context or {})
        depth = int(context.get("depth", 0))
        self._depth = depth
        self._memory_context = decomposition.memory_context
        self.log = []
        strategy = decomposition.strategy.type
        start = time.monotonic()

        if depth >= self.config.max_depth:
            message = f"Maximum recursion depth ({self.config.max_depth}) exceeded"
            self._log("execute", "root", message)
            logger.warning(message)
            return ExecutionReport(
                success=False,
                results=[],
                strategy=strategy,
                error=message,
                depth=depth,
                log=list(self.log),
            )

        self._log("execute", "root", f"started {strategy.value} with {len(decomposition.sub_queries)} sub-queries")

        had_debate = False
        if strategy in (StrategyType.DIRECT, StrategyType.PARALLEL):
            results = await self.execute_parallel(decomposition.sub_queries, call, context)
        elif strategy == StrategyType.MAP_REDUCE:
            results = await self.execute_map_reduce(decomposition, call, context)
        elif strategy == StrategyType.MAP_REDUCE_DEBATE:
            results = await self.execute_map_reduce(decomposition, call, context, with_debate=True)
            had_debate = any(r.type == SubQueryType.DEBATE for r in results)
        elif strategy == StrategyType.ITERATIVE:
            results = await self.execute_iterative(decomposition, call, context)
        else:
            results = await self.execute_parallel(decomposition.sub_queries, call, context)

        elapsed = time.monotonic() - start
        succeeded = sum(1 for r in results if r.success)
        self._log("execute", "root", f"completed: {succeeded}/{len(results)} succeeded in {elapsed:.2f}s")
        logger.info(f"Executed {strategy.value}: {succeeded}/{len(results)} sub-queries succeeded ({elapsed:.2f}s)")

        return ExecutionReport(
            success=succeeded > 0,
            results=results,
            strategy=strategy,
            error=None if succeeded else "All sub-queries failed",
            execution_time=elapsed,
            depth=depth,
            had_debate_phase=had_debate,
            log=list(self.log),
        )

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def execute_parallel(
        self,
        sub_queries: list[SubQuery],
        call: CompletionCall,
        context: dict[str, Any],
    ) -> list[ExecutionResult]:
        """
        Run independent sub-queries through a bounded worker pool.

        Workers pull from a shared cursor, so at most ``max_concurrent``
        completion calls are in flight. Results keep sub-query order.
        """
        runnable = [
            sq for sq in sub_queries
            if sq.type not in (SubQueryType.REDUCE, SubQueryType.FOLLOWUP) and not sq.is_dynamic
        ]
        if not runnable:
            return []

        results: list[ExecutionResult | None] = [None] * len(runnable)
        cursor = 0

        async def worker() -> None:
            nonlocal cursor
            while cursor < len(runnable):
                index = cursor
                cursor += 1
                results[index] = await self.execute_sub_query(runnable[index], call, context)

        pool_size = max(1, min(self.config.max_concurrent, len(runnable)))
        await asyncio.gather(*(worker() for _ in range(pool_size)))

        return [r for r in results if r is not None]

    async def execute_map_reduce(
        self,
        decomposition: Decomposition,
        call: CompletionCall,
        context: dict[str, Any],
        with_debate: bool = False,
    ) -> list[ExecutionResult]:
        phase = "map-reduce-debate" if with_debate else "map-reduce"
        map_queries = [sq for sq in decomposition.sub_queries if sq.type == SubQueryType.MAP]
        reduce_query = next(
            (sq for sq in decomposition.sub_queries if sq.type == SubQueryType.REDUCE), None
        )

        self._log(phase, "map-phase", "started")
        map_results = await self.execute_parallel(map_queries, call, context)
        self._log(phase, "map-phase", "completed")

        debate_result = None
        if with_debate and self.config.enable_debate_phase:
            candidates = [r for r in map_results if r.success and r.response and r.perspective]
            distinct = {r.perspective.id for r in candidates}
            if len(distinct) >= decomposition.debate_min_perspectives:
                self._log(phase, "debate-phase", "started")
                debate_result = await self.execute_debate(candidates, call, context)
                self._log(phase, "debate-phase", "completed")
            else:
                self._log(
                    phase,
                    "debate-phase",
                    f"skipped: {len(distinct)} distinct perspectives "
                    f"(need {decomposition.debate_min_perspectives})",
                )

        results = list(map_results)
        if debate_result is not None:
            results.append(debate_result)

        if reduce_query is None:
            return results

        if not self._dependencies_met(reduce_query, decomposition):
            self._log(phase, reduce_query.id, "dependencies not terminal, reduce not started")
            return results

        self._log(phase, "reduce-phase", "started")
        reduce_context = self.build_reduce_context(map_results, debate_result)

        if self._budget_enforced():
            max_input = self._max_input_tokens()
            tokens = estimate_tokens(reduce_context)
            self._log(phase, reduce_query.id, self._budget_message("reduce", tokens, max_input, tokens > max_input))

        reduce_result = await self._execute_with_retry(
            reduce_query,
            ANALYSIS_SYSTEM_PROMPT,
            build_user_prompt(
                reduce_query.query or decomposition.original_query,
                reduce_context,
                self._memory_context,
            ),
            call,
            context,
            timeout=self.config.reduce_timeout,
        )
        self._log(phase, "reduce-phase", "completed")
        results.append(reduce_result)
        return results

    async def execute_debate(
        self,
        candidates: list[ExecutionResult],
        call: CompletionCall,
        context: dict[str, Any],
    ) -> ExecutionResult:
        """
        Ask the completion call to moderate each configured pair of roles.

        Pairs whose roles are not both present are skipped. A failed pair is
        logged and left out of the insights.
        """
        by_role: dict[str, list[ExecutionResult]] = {}
        for result in candidates:
            by_role.setdefault(result.perspective.id, []).append(result)

        insights: list[str] = []
        tensions: list[str] = []

        for role1, role2 in self.config.debate_pairs:
            if role1 not in by_role or role2 not in by_role:
                continue

            prompt = DEBATE_PROMPT.format(
                label1=self._role_label(role1),
                view1="\n".join(r.response for r in by_role[role1]),
                label2=self._role_label(role2),
                view2="\n".join(r.response for r in by_role[role2]),
            )
            debate_query = SubQuery(
                id=f"debate-{role1}-vs-{role2}",
                type=SubQueryType.DEBATE,
                query=prompt,
                target_agent_ids=[],
            )
            outcome = await self._execute_with_retry(
                debate_query,
                ANALYSIS_SYSTEM_PROMPT,
                prompt,
                call,
                context,
                timeout=self.config.debate_timeout,
            )
            if not outcome.success:
                self._log("debate", f"{role1}-vs-{role2}", f"failed: {outcome.error}")
                continue

            insights.append(f"**{role1} vs {role2}:**\n{outcome.response}")
            lowered = outcome.response.lower()
            if "tension" in lowered or "disagree" in lowered:
                tensions.append(f"{role1} vs {role2}: See debate notes")

        return ExecutionResult(
            query_id="debate",
            type=SubQueryType.DEBATE,
            response="\n\n".join(insights) if insights else NO_DEBATE_INSIGHTS,
            success=True,
            tensions=tuple(tensions),
        )

    async def execute_iterative(
        self,
        decomposition: Decomposition,
        call: CompletionCall,
        context: dict[str, Any],
    ) -> list[ExecutionResult]:
        initial = next(
            (sq for sq in decomposition.sub_queries if sq.type == SubQueryType.EXPLORATORY), None
        )
        followup = next(
            (sq for sq in decomposition.sub_queries if sq.type == SubQueryType.FOLLOWUP), None
        )
        if initial is None:
            return await self.execute_parallel(decomposition.sub_queries, call, context)

        self._log("iterative", initial.id, "started")
        initial_result = await self.execute_sub_query(initial, call, context)
        results = [initial_result]
        self._log("iterative", initial.id, "completed")

        if followup is None:
            return results

        if not initial_result.success or not needs_followup(initial_result.response):
            self._log("iterative", followup.id, "not needed")
            return results

        if not self._dependencies_met(followup, decomposition):
            self._log("iterative", followup.id, "dependencies not terminal, follow-up not started")
            return results

        followup.query = (
            f'Based on the initial finding: "{initial_result.response[:200]}..."\n\n'
            "Please provide more details and check all meetings for related information."
        )
        followup.target_agent_ids = self.store.get_active_agent_ids()
        followup.context_level = ContextLevel.FULL

        self._log("iterative", followup.id, "started")
        results.append(await self.execute_sub_query(followup, call, context))
        self._log("iterative", followup.id, "completed")
        return results

    # ------------------------------------------------------------------
    # Single sub-query
    # ------------------------------------------------------------------

    async def execute_sub_query(
        self,
        sub_query: SubQuery,
        call: CompletionCall,
        context: dict[str, Any],
    ) -> ExecutionResult:
        question = sub_query.query or ""
        context_text = self.resolve_context(sub_query)
        return await self._execute_with_retry(
            sub_query,
            ANALYSIS_SYSTEM_PROMPT,
            build_user_prompt(question, context_text, self._memory_context),
            call,
            context,
            timeout=self.config.timeout,
        )

    def resolve_context(self, sub_query: SubQuery) -> str:
        """
        Document context for a sub-query.

        With budget enforcement on, the store picks per-document detail
        levels (never richer than the sub-query's level) to fit what is
        left of the prompt budget after the question itself.
        """
        if not self._budget_enforced():
            return self.store.get_combined_context(sub_query.target_agent_ids, sub_query.context_level)

        max_input = self._max_input_tokens()
        available = max(
            0,
            max_input - estimate_tokens(sub_query.query) - estimate_tokens(self._memory_context),
        )
        if not available:
            self._log("budget", sub_query.id, self._budget_message("context", 0, max_input, True))
            return ""

        budgeted = self.store.get_context_with_budget(
            token_budget=available,
            agent_ids=sub_query.target_agent_ids,
            max_level=sub_query.context_level,
        )
        self._log(
            "budget",
            sub_query.id,
            self._budget_message("context", budgeted.token_estimate, max_input, bool(budgeted.skipped_agent_ids)),
        )
        return self.store.render_budgeted_context(budgeted)

    def build_reduce_context(
        self,
        map_results: list[ExecutionResult],
        debate_result: ExecutionResult | None = None,
    ) -> str:
        text = SECTION_SEPARATOR.join(
            f"[From {r.source_label}]:\n{r.response}"
            for r in map_results
            if r.success and r.response
        )
        if debate_result is not None and debate_result.response:
            text += f"{SECTION_SEPARATOR}**DEBATE INSIGHTS:**\n{debate_result.response}"
            if debate_result.tensions:
                text += "\n\n**KEY TENSIONS:**\n" + "\n".join(f"- {t}" for t in debate_result.tensions)
        return text

    async def _execute_with_retry(
        self,
        sub_query: SubQuery,
        system_prompt: str,
        user_prompt: str,
        call: CompletionCall,
        context: dict[str, Any],
        timeout: float | None = None,
    ) -> ExecutionResult:
        """
        One sub-query through the state machine with retries.

        Each attempt is raced against the timeout; retries back off
        exponentially from retry_base_delay and run sequentially.
        """
        timeout = timeout or self.config.timeout
        attempts = self.config.retry_attempts + 1
        error: SubQueryError | None = None

        for attempt in range(attempts):
            sub_query.transition(SubQueryStatus.EXECUTING)
            try:
                response = await asyncio.wait_for(
                    call(system_prompt, user_prompt, context),
                    timeout=timeout,
                )
                sub_query.transition(SubQueryStatus.SUCCEEDED)
                return self._result(sub_query, response=response, success=True, attempts=attempt + 1)
            except asyncio.TimeoutError:
                error = SubQueryError(sub_query.id, f"timed out after {timeout}s", attempt + 1)
            except Exception as e:
                error = SubQueryError(sub_query.id, str(e) or type(e).__name__, attempt + 1)

            self._log("retry", sub_query.id, f"attempt {attempt + 1} failed: {error.message}")

            if attempt < attempts - 1:
                sub_query.transition(SubQueryStatus.FAILED_RETRY)
                await self._sleep(self.config.retry_base_delay * (2 ** attempt))

        sub_query.transition(SubQueryStatus.FAILED_FINAL)
        logger.warning(f"Sub-query {sub_query.id} failed after {attempts} attempts: {error.message}")
        return self._result(sub_query, response=None, success=False, error=error.message, attempts=attempts)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _result(
        sub_query: SubQuery,
        response: str | None,
        success: bool,
        error: str | None = None,
        attempts: int = 1,
    ) -> ExecutionResult:
        return ExecutionResult(
            query_id=sub_query.id,
            type=sub_query.type,
            response=response,
            success=success,
            error=error,
            agent_ids=tuple(sub_query.target_agent_ids),
            agent_name=sub_query.agent_name,
            perspective=sub_query.perspective,
            depends_on=tuple(sub_query.depends_on),
            attempts=attempts,
        )

    @staticmethod
    def _dependencies_met(sub_query: SubQuery, decomposition: Decomposition) -> bool:
        for dependency_id in sub_query.depends_on:
            dependency = decomposition.get(dependency_id)
            if dependency is not None and not dependency.is_terminal:
                return False
        return True

    @staticmethod
    def _role_label(role_id: str) -> str:
        role = get_role(role_id)
        return role.label if role else role_id

    def _budget_enforced(self) -> bool:
        return bool(self.config.enforce_prompt_budget and self.config.prompt_token_budget)

    def _max_input_tokens(self) -> int:
        return max(0, self.config.prompt_token_budget - self.config.prompt_token_reserve)

    @staticmethod
    def _budget_message(scope: str, tokens: int, max_tokens: int, trimmed: bool) -> str:
        status = "trimmed" if trimmed else "ok"
        return f"Prompt budget ({scope}): {tokens}/{max_tokens} tokens ({status})."

    def _log(self, phase: str, query_id: str, message: str) -> None:
        entry = ExecutionLogEntry(phase=phase, query_id=query_id, message=message, depth=self._depth)
        self.log.append(entry)
        logger.debug(f"[{phase}] {query_id}: {message}")
