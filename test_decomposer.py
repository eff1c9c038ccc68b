"""
Query Decomposer Tests

Tests for classification, target selection, strategy choice and the
generated sub-query plans.
"""

from meeting_fixtures import sample_agents


def _decomposer(agents=None, **config):
    from rlm.config import DecomposerConfig
    from rlm.context import ContextStore
    from rlm.orchestration import QueryDecomposer

    store = ContextStore()
    store.load_agents(agents if agents is not None else sample_agents())
    return QueryDecomposer(store, DecomposerConfig(**config))


def test_classifier_intents():
    print("=" * 60)
    print("TEST 1: Heuristic classification")
    print("=" * 60)

    from rlm.orchestration import HeuristicClassifier, QueryClassifier, QueryComplexity, QueryIntent

    classifier = HeuristicClassifier()
    assert isinstance(classifier, QueryClassifier)

    cases = [
        ("How does the retro differ from planning?", QueryIntent.COMPARATIVE, QueryComplexity.COMPARATIVE),
        ("What are the total costs?", QueryIntent.AGGREGATIVE, QueryComplexity.AGGREGATE),
        ("What themes emerge?", QueryIntent.ANALYTICAL, QueryComplexity.AGGREGATE),
        ("How has hiring progressed?", QueryIntent.TEMPORAL, QueryComplexity.SIMPLE),
        ("Who owns pricing? And the vendor?", QueryIntent.FACTUAL, QueryComplexity.EXPLORATORY),
        ("Who owns pricing?", QueryIntent.FACTUAL, QueryComplexity.SIMPLE),
    ]
    for query, intent, complexity in cases:
        result = classifier.classify(query)
        print(f"  {query!r}: {result.intent.value}/{result.complexity.value}")
        assert result.intent == intent
        assert result.complexity == complexity

    assert classifier.classify("Summarize the last sync").mentions_meeting
    assert classifier.classify("Summarize the last sync").mentions_timeframe
    print("[PASS] First matching intent wins, factual by default")


def test_comparative_query_runs_in_parallel():
    print("\n" + "=" * 60)
    print("TEST 2: Comparative plan")
    print("=" * 60)

    from rlm.orchestration import StrategyType, SubQueryType

    decomposer = _decomposer([
        {"id": "a", "displayName": "Meeting A", "summary": "Budget talk."},
        {"id": "b", "displayName": "Meeting B", "summary": "Hiring talk."},
    ])
    plan = decomposer.decompose("Compare Meeting A and Meeting B")

    for sub_query in plan.sub_queries:
        print(f"  {sub_query.id}: {sub_query.query}")

    assert plan.strategy.type == StrategyType.PARALLEL
    assert len(plan.sub_queries) == 2
    assert all(sq.type == SubQueryType.DIRECT for sq in plan.sub_queries)
    assert sorted(sq.target_agent_ids[0] for sq in plan.sub_queries) == ["a", "b"]
    assert plan.sub_queries[0].query.startswith('Regarding the "Meeting')
    print("[PASS] One sub-query per compared meeting")


def test_aggregate_query_maps_every_meeting():
    print("\n" + "=" * 60)
    print("TEST 3: Map-reduce plan")
    print("=" * 60)

    from rlm.orchestration import StrategyType, SubQueryType

    decomposer = _decomposer()
    plan = decomposer.decompose("What are all the decisions across every meeting?")

    maps = [sq for sq in plan.sub_queries if sq.type == SubQueryType.MAP]
    reduce = plan.get("sq-reduce")
    print(f"Strategy: {plan.strategy.type.value}, maps: {len(maps)}")

    assert plan.strategy.type == StrategyType.MAP_REDUCE
    assert plan.strategy.estimated_calls == 5
    assert len(maps) == 4
    assert sorted(sq.target_agent_ids[0] for sq in maps) == ["m1", "m2", "m3", "m4"]
    assert all(sq.query.startswith("List all items related to:") for sq in maps)
    assert all(sq.perspective is None for sq in maps)
    assert reduce.type == SubQueryType.REDUCE
    assert reduce.depends_on == [sq.id for sq in maps]
    assert reduce.target_agent_ids == []
    print("[PASS] Four maps and a reduce depending on all of them")


def test_aggregate_plan_caps_at_max_sub_queries():
    print("\n" + "=" * 60)
    print("TEST 4: Map count capped")
    print("=" * 60)

    decomposer = _decomposer(max_sub_queries=2)
    plan = decomposer.decompose("What are all the decisions across every meeting?")

    assert len(plan.relevant_agent_ids) == 2
    assert len(plan.sub_queries) == 3
    print("[PASS] max_sub_queries bounds the map phase")


def test_targets_are_active_agents():
    print("\n" + "=" * 60)
    print("TEST 5: Targets come from the active set")
    print("=" * 60)

    agents = sample_agents()
    agents[2]["enabled"] = False
    decomposer = _decomposer(agents)

    for query in (
        "What are all the decisions across every meeting?",
        "What did the vendor offer?",
        "Who owns pricing? And the vendor?",
    ):
        plan = decomposer.decompose(query)
        active = set(decomposer.store.get_active_agent_ids())
        for sub_query in plan.sub_queries:
            assert set(sub_query.target_agent_ids) <= active
        assert "m3" not in plan.relevant_agent_ids
        print(f"  {query!r}: {plan.relevant_agent_ids}")

    print("[PASS] Disabled meetings never targeted")


def test_simple_query_is_direct():
    print("\n" + "=" * 60)
    print("TEST 6: Direct plan")
    print("=" * 60)

    from rlm.context import ContextLevel
    from rlm.orchestration import StrategyType

    plan = _decomposer().decompose("Who owns the pricing page?")

    assert plan.strategy.type == StrategyType.DIRECT
    assert len(plan.sub_queries) == 1
    sub_query = plan.sub_queries[0]
    assert sub_query.query == "Who owns the pricing page?"
    assert sub_query.target_agent_ids == ["m1"]
    assert sub_query.context_level == ContextLevel.STANDARD
    print("[PASS] Single relevant meeting answered directly")


def test_low_relevance_falls_back_to_top_ranked():
    print("\n" + "=" * 60)
    print("TEST 7: Relevance fallback")
    print("=" * 60)

    plan = _decomposer().decompose("Who owns quantum widgets?")

    print(f"Targets: {plan.relevant_agent_ids}")
    assert 1 <= len(plan.relevant_agent_ids) <= 2
    print("[PASS] Nothing relevant still yields a bounded target set")


def test_exploratory_query_is_iterative():
    print("\n" + "=" * 60)
    print("TEST 8: Iterative plan")
    print("=" * 60)

    from rlm.context import ContextLevel
    from rlm.orchestration import StrategyType, SubQueryType

    plan = _decomposer().decompose("Who owns pricing? And the vendor?")
    initial, followup = plan.sub_queries

    assert plan.strategy.type == StrategyType.ITERATIVE
    assert initial.type == SubQueryType.EXPLORATORY
    assert initial.context_level == ContextLevel.SUMMARY
    assert len(initial.target_agent_ids) <= 3
    assert followup.type == SubQueryType.FOLLOWUP
    assert followup.is_dynamic and followup.query is None
    assert followup.depends_on == ["sq-initial"]
    print("[PASS] Initial pass plus a dynamic follow-up")


def test_analytical_query_gets_perspectives():
    print("\n" + "=" * 60)
    print("TEST 9: Debate plan")
    print("=" * 60)

    from rlm.orchestration import StrategyType, SubQueryType

    plan = _decomposer().decompose("What patterns emerge in our meetings?")
    maps = [sq for sq in plan.sub_queries if sq.type == SubQueryType.MAP]
    roles = [sq.perspective.id for sq in maps]
    print(f"Roles: {roles}")

    assert plan.strategy.type == StrategyType.MAP_REDUCE_DEBATE
    assert roles == ["analyst", "critic", "advocate", "synthesizer"]
    assert maps[0].query.startswith("As an objective analyst")
    print("[PASS] Rotating roles assigned to map sub-queries")

    plain = _decomposer(enable_perspectives=False).decompose("What patterns emerge in our meetings?")
    assert plain.strategy.type == StrategyType.MAP_REDUCE
    print("[PASS] Perspectives can be switched off")


def test_role_assignment_strategies():
    print("\n" + "=" * 60)
    print("TEST 10: Role assignment")
    print("=" * 60)

    from rlm.context import AgentDocument
    from rlm.orchestration import PRIMARY_ROLES, ROLES, assign_roles

    agents = [
        AgentDocument(id="a", displayName="A", suggestedPerspective="historian"),
        AgentDocument(id="b", displayName="B"),
    ]
    roles = [ROLES["critic"], ROLES["advocate"]]

    assert [r.id for _, r in assign_roles(agents, roles, "uniform")] == ["critic", "critic"]
    assert [r.id for _, r in assign_roles(agents, roles, "adaptive")] == ["historian", "advocate"]
    assert [r for _, r in assign_roles(agents, roles, "primary-only")] == list(PRIMARY_ROLES[:2])
    assert assign_roles([], roles) == []
    print("[PASS] uniform, adaptive and primary-only assignment")


def test_custom_classifier():
    """Any object with classify() can drive decomposition."""
    print("\n" + "=" * 60)
    print("TEST 11: Pluggable classifier")
    print("=" * 60)

    from rlm.config import DecomposerConfig
    from rlm.context import ContextStore
    from rlm.orchestration import (
        QueryClassification,
        QueryComplexity,
        QueryDecomposer,
        QueryIntent,
        StrategyType,
    )

    class AlwaysAggregate:
        def classify(self, query):
            return QueryClassification(
                intent=QueryIntent.AGGREGATIVE,
                complexity=QueryComplexity.AGGREGATE,
                scope_min=3,
                scope_max=10,
            )

    store = ContextStore()
    store.load_agents(sample_agents())
    decomposer = QueryDecomposer(store, DecomposerConfig(), classifier=AlwaysAggregate())

    plan = decomposer.decompose("Who owns the pricing page?")
    assert plan.strategy.type == StrategyType.MAP_REDUCE
    print("[PASS] Injected classifier used")


def main():
    """Run all tests."""
    print("\n" + "=" * 60)
    print("QUERY DECOMPOSER TESTS")
    print("=" * 60)

    test_classifier_intents()
    test_comparative_query_runs_in_parallel()
    test_aggregate_query_maps_every_meeting()
    test_aggregate_plan_caps_at_max_sub_queries()
    test_targets_are_active_agents()
    test_simple_query_is_direct()
    test_low_relevance_falls_back_to_top_ranked()
    test_exploratory_query_is_iterative()
    test_analytical_query_gets_perspectives()
    test_role_assignment_strategies()
    test_custom_classifier()

    print("\n" + "=" * 60)
    print("ALL TESTS PASSED!")
    print("=" * 60)


if __name__ == "__main__":
    main()
