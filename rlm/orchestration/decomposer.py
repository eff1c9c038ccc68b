"""Query decomposition into targeted sub-queries.

Classifies a query, picks the documents worth asking, chooses an execution
strategy and emits the sub-query plan the executor runs.
"""

from __future__ import annotations

import logging

from ..config.loader import DecomposerConfig
from ..context.models import AgentDocument, ContextLevel
from ..context.store import ContextStore
from .classifier import HeuristicClassifier, QueryClassifier
from .models import (
    Decomposition,
    QueryClassification,
    QueryComplexity,
    QueryIntent,
    Strategy,
    StrategyType,
    SubQuery,
    SubQueryType,
)
from .perspectives import assign_roles, select_roles_for_query

logger = logging.getLogger(__name__)

MAX_PARALLEL_SUB_QUERIES = 3
ITERATIVE_INITIAL_AGENTS = 3

MAP_TEMPLATES: dict[QueryIntent, str] = {
    QueryIntent.FACTUAL: "Extract any relevant facts or decisions related to: {query}",
    QueryIntent.AGGREGATIVE: "List all items related to: {query}",
    QueryIntent.ANALYTICAL: "Identify patterns or themes related to: {query}",
    QueryIntent.TEMPORAL: "Note any timeline or progression related to: {query}",
    QueryIntent.COMPARATIVE: "Summarize the key points about: {query}",
}

REDUCE_TEMPLATES: dict[QueryIntent, str] = {
    QueryIntent.FACTUAL: "Based on the gathered information, answer: {query}",
    QueryIntent.AGGREGATIVE: "Combine and organize all the gathered items for: {query}",
    QueryIntent.ANALYTICAL: "Synthesize the patterns found across meetings for: {query}",
    QueryIntent.TEMPORAL: "Create a timeline or progression summary for: {query}",
    QueryIntent.COMPARATIVE: "Compare and contrast the findings for: {query}",
}


def create_map_query(query: str, intent: QueryIntent) -> str:
    template = MAP_TEMPLATES.get(intent, "Find information about: {query}")
    return template.format(query=query)


def create_reduce_query(query: str, intent: QueryIntent) -> str:
    template = REDUCE_TEMPLATES.get(intent, "Synthesize the findings to answer: {query}")
    return template.format(query=query)


def create_agent_query(query: str, agent: AgentDocument) -> str:
    return f'Regarding the "{agent.display_name}" meeting: {query}'


class QueryDecomposer:
    """
    Turns a user query into a Decomposition.

    Target documents always come from the store's active set, so every
    sub-query's target ids are a subset of the active ids at plan time.

    Example:
        decomposer = QueryDecomposer(store)
        plan = decomposer.decompose("What are all the decisions across every meeting?")
        plan.strategy.type  # StrategyType.MAP_REDUCE
    """

    def __init__(
        self,
        store: ContextStore,
        config: DecomposerConfig | None = None,
        classifier: QueryClassifier | None = None,
    ):
        self.store = store
        self.config = config or DecomposerConfig()
        self.classifier = classifier or HeuristicClassifier()

    def classify(self, query: str) -> QueryClassification:
        return self.classifier.classify(query)

    def decompose(self, query: str) -> Decomposition:
        """
        Build the sub-query plan for a query.

        Args:
            query: The user's natural-language question

        Returns:
            Decomposition with classification, strategy and sub-queries
        """
        classification = self.classify(query)
        targets = self.select_targets(query, classification)
        strategy = self.determine_strategy(classification, targets)
        sub_queries = self.generate_sub_queries(query, classification, strategy, targets)

        logger.info(
            f"Decomposed query ({classification.intent.value}/{classification.complexity.value}) "
            f"-> {strategy.type.value} with {len(sub_queries)} sub-queries "
            f"over {len(targets)} agents"
        )

        return Decomposition(
            original_query=query,
            classification=classification,
            strategy=strategy,
            relevant_agent_ids=[a.id for a in targets],
            sub_queries=sub_queries,
            total_agents=len(self.store),
            active_agents=len(self.store.get_active_agent_ids()),
            debate_min_perspectives=self.config.debate_min_perspectives,
        )

    def select_targets(
        self,
        query: str,
        classification: QueryClassification,
    ) -> list[AgentDocument]:
        """
        Choose which active documents the plan should touch.

        Aggregate queries cover every active document (ranked by relevance)
        up to max_sub_queries. Everything else uses documents above the
        relevance floor, falling back to the top-ranked active documents
        when none qualify.
        """
        limit = self.config.max_sub_queries

        if classification.complexity == QueryComplexity.AGGREGATE:
            ranked = self.store.query_agents(query, max_results=limit, min_score=0)
            return [s.agent for s in ranked]

        relevant = self.store.query_agents(
            query,
            max_results=limit,
            min_score=self.config.min_relevance_score,
        )
        if relevant:
            return [s.agent for s in relevant]

        fallback = self.store.query_agents(
            query,
            max_results=min(limit, classification.scope_max),
            min_score=0,
        )
        if fallback:
            logger.debug(f"No agents above relevance {self.config.min_relevance_score}, using top {len(fallback)}")
        return [s.agent for s in fallback]

    def determine_strategy(
        self,
        classification: QueryClassification,
        targets: list[AgentDocument],
    ) -> Strategy:
        complexity = classification.complexity
        agent_count = len(targets)

        if complexity == QueryComplexity.SIMPLE and agent_count <= 2:
            return Strategy(
                type=StrategyType.DIRECT,
                reason="Simple query with limited scope",
                parallelization=False,
                estimated_calls=1,
            )

        if complexity == QueryComplexity.COMPARATIVE:
            return Strategy(
                type=StrategyType.PARALLEL,
                reason="Comparative query benefits from parallel agent analysis",
                parallelization=True,
                estimated_calls=min(agent_count, MAX_PARALLEL_SUB_QUERIES),
            )

        if complexity == QueryComplexity.AGGREGATE:
            if self._wants_debate(classification, agent_count):
                return Strategy(
                    type=StrategyType.MAP_REDUCE_DEBATE,
                    reason="Analytical query across enough agents to debate distinct perspectives",
                    parallelization=True,
                    estimated_calls=agent_count + 2,
                )
            return Strategy(
                type=StrategyType.MAP_REDUCE,
                reason="Aggregate query requires gathering from all agents then synthesizing",
                parallelization=True,
                estimated_calls=agent_count + 1,
            )

        if complexity == QueryComplexity.EXPLORATORY:
            return Strategy(
                type=StrategyType.ITERATIVE,
                reason="Exploratory query may need multiple rounds",
                parallelization=False,
                estimated_calls=2,
            )

        return Strategy(
            type=StrategyType.PARALLEL,
            reason="Default parallel strategy for efficiency",
            parallelization=True,
            estimated_calls=min(agent_count, self.config.max_sub_queries),
        )

    def _wants_debate(self, classification: QueryClassification, agent_count: int) -> bool:
        return (
            self.config.enable_perspectives
            and classification.intent == QueryIntent.ANALYTICAL
            and agent_count >= self.config.debate_min_perspectives
        )

    def generate_sub_queries(
        self,
        query: str,
        classification: QueryClassification,
        strategy: Strategy,
        targets: list[AgentDocument],
    ) -> list[SubQuery]:
        if strategy.type == StrategyType.DIRECT:
            return [
                SubQuery(
                    id="sq-0",
                    type=SubQueryType.DIRECT,
                    query=query,
                    target_agent_ids=[a.id for a in targets],
                    context_level=ContextLevel.STANDARD,
                )
            ]

        if strategy.type == StrategyType.PARALLEL:
            return [
                SubQuery(
                    id=f"sq-{index}",
                    type=SubQueryType.DIRECT,
                    query=create_agent_query(query, agent),
                    target_agent_ids=[agent.id],
                    context_level=ContextLevel.STANDARD,
                    agent_name=agent.display_name,
                )
                for index, agent in enumerate(targets[:MAX_PARALLEL_SUB_QUERIES])
            ]

        if strategy.type in (StrategyType.MAP_REDUCE, StrategyType.MAP_REDUCE_DEBATE):
            return self._map_reduce_sub_queries(query, classification, strategy, targets)

        if strategy.type == StrategyType.ITERATIVE:
            return [
                SubQuery(
                    id="sq-initial",
                    type=SubQueryType.EXPLORATORY,
                    query=query,
                    target_agent_ids=[a.id for a in targets[:ITERATIVE_INITIAL_AGENTS]],
                    context_level=ContextLevel.SUMMARY,
                ),
                SubQuery(
                    id="sq-followup",
                    type=SubQueryType.FOLLOWUP,
                    query=None,
                    target_agent_ids=[],
                    context_level=ContextLevel.FULL,
                    priority=2,
                    depends_on=["sq-initial"],
                    is_dynamic=True,
                ),
            ]

        return []

    def _map_reduce_sub_queries(
        self,
        query: str,
        classification: QueryClassification,
        strategy: Strategy,
        targets: list[AgentDocument],
    ) -> list[SubQuery]:
        map_query = create_map_query(query, classification.intent)

        if strategy.type == StrategyType.MAP_REDUCE_DEBATE:
            roles = select_roles_for_query(classification, len(targets))
            assignments = assign_roles(targets, roles, self.config.role_assignment)
        else:
            assignments = [(agent, None) for agent in targets]

        sub_queries = []
        for index, (agent, perspective) in enumerate(assignments):
            text = f"{perspective.prompt_prefix} {map_query}" if perspective else map_query
            sub_queries.append(
                SubQuery(
                    id=f"sq-map-{index}",
                    type=SubQueryType.MAP,
                    query=text,
                    target_agent_ids=[agent.id],
                    context_level=ContextLevel.SUMMARY,
                    agent_name=agent.display_name,
                    perspective=perspective,
                )
            )

        sub_queries.append(
            SubQuery(
                id="sq-reduce",
                type=SubQueryType.REDUCE,
                query=create_reduce_query(query, classification.intent),
                target_agent_ids=[],
                context_level=ContextLevel.SUMMARY,
                priority=2,
                depends_on=[sq.id for sq in sub_queries],
            )
        )
        return sub_queries
