"""
Response Aggregator Tests

Tests for reduce passthrough, single answers, deduplicated merges,
synthesis with conflict detection, and the synthesis fallback.
"""

import asyncio

from meeting_fixtures import ScriptedCall, sample_agents

PRICING = "The pricing budget is approved, however finance raised a concern about risk."
HOSTING = "Hosting contract stalled because legal sees an issue and a problem."
ACCESSIBILITY = "Accessibility audit scheduled; designers disagree with the contrast fix."


def _plan(query="What are all the decisions across every meeting?"):
    from rlm.context import ContextStore
    from rlm.orchestration import QueryDecomposer

    store = ContextStore()
    store.load_agents(sample_agents())
    return QueryDecomposer(store).decompose(query)


def _result(query_id, response, agent_name=None, success=True, type=None):
    from rlm.orchestration import ExecutionResult, SubQueryType

    return ExecutionResult(
        query_id=query_id,
        type=type or SubQueryType.DIRECT,
        response=response,
        success=success,
        error=None if success else "failed",
        agent_name=agent_name,
    )


def _report(results):
    from rlm.orchestration import ExecutionReport

    return ExecutionReport(success=any(r.success for r in results), results=results)


def test_reduce_output_passes_through():
    print("=" * 60)
    print("TEST 1: Reduce passthrough")
    print("=" * 60)

    from rlm.orchestration import ResponseAggregator, SubQueryType

    report = _report([
        _result("sq-map-0", "a", "Q1 Planning", type=SubQueryType.MAP),
        _result("sq-map-1", "b", "Retro", type=SubQueryType.MAP),
        _result("sq-reduce", "Combined answer.", type=SubQueryType.REDUCE),
    ])
    call = ScriptedCall()
    result = asyncio.run(ResponseAggregator().aggregate(report, _plan(), call))

    assert result.aggregation_type == "map-reduce"
    assert result.response == "Combined answer."
    assert result.sources == ["Q1 Planning", "Retro"]
    assert call.count == 0
    print("[PASS] Reduce answer returned without another call")


def test_single_success_is_verbatim():
    print("\n" + "=" * 60)
    print("TEST 2: Single answer")
    print("=" * 60)

    from rlm.orchestration import ResponseAggregator, SubQueryType

    report = _report([
        _result("sq-0", "Alice owns pricing.", "Q1 Planning"),
        _result("sq-1", None, "Retro", success=False),
        _result("debate", "Debate notes.", type=SubQueryType.DEBATE),
    ])
    result = asyncio.run(ResponseAggregator().aggregate(report, _plan(), ScriptedCall()))

    assert result.aggregation_type == "single"
    assert result.response == "Alice owns pricing."
    assert result.metadata["failed_queries"] == 1
    assert result.metadata["failures"] == [{"query_id": "sq-1", "error": "failed"}]
    print("[PASS] Debate output excluded, single answer returned verbatim")


def test_no_success_is_none():
    print("\n" + "=" * 60)
    print("TEST 3: Nothing to aggregate")
    print("=" * 60)

    from rlm.orchestration import ResponseAggregator
    from rlm.orchestration.aggregator import NO_RESULTS_RESPONSE

    report = _report([_result("sq-0", None, success=False)])
    result = asyncio.run(ResponseAggregator().aggregate(report, _plan()))

    assert not result.success
    assert result.aggregation_type == "none"
    assert result.response == NO_RESULTS_RESPONSE
    print("[PASS] No successful results reported as a failure")


def test_two_results_skip_synthesis():
    print("\n" + "=" * 60)
    print("TEST 4: Early stop")
    print("=" * 60)

    from rlm.orchestration import ResponseAggregator

    report = _report([
        _result("sq-0", PRICING, "Q1 Planning"),
        _result("sq-1", HOSTING, "Vendor Sync"),
    ])
    call = ScriptedCall()
    result = asyncio.run(ResponseAggregator().aggregate(report, _plan(), call))

    assert result.aggregation_type == "simple-merge"
    assert call.count == 0
    assert "**From Q1 Planning:**" in result.response
    print("[PASS] Two results merged without a synthesis call")


def test_merge_deduplicates():
    print("\n" + "=" * 60)
    print("TEST 5: Deduplicated merge")
    print("=" * 60)

    from rlm.config import AggregatorConfig
    from rlm.orchestration import ResponseAggregator

    report = _report([
        _result("sq-0", "Alice will draft the pricing page by Friday", "Q1 Planning"),
        _result("sq-1", "Alice will draft the pricing page by Friday.", "Retro"),
        _result("sq-2", "Bob compares vendor quotes next week.", "Vendor Sync"),
    ])
    aggregator = ResponseAggregator(AggregatorConfig(enable_llm_synthesis=False))
    result = asyncio.run(aggregator.aggregate(report, _plan(), ScriptedCall()))
    print(result.response)

    assert result.aggregation_type == "simple-merge"
    assert result.metadata["merged_count"] == 2
    assert result.response.startswith("Based on 3 meetings:")
    assert "**From Retro:**" not in result.response
    assert result.sources == ["Q1 Planning", "Retro", "Vendor Sync"]
    print("[PASS] Near-duplicate answers collapsed")


def test_synthesis_with_conflicts():
    print("\n" + "=" * 60)
    print("TEST 6: Synthesis with conflict block")
    print("=" * 60)

    from rlm.orchestration import ResponseAggregator

    report = _report([
        _result("sq-0", PRICING, "Q1 Planning"),
        _result("sq-1", HOSTING, "Vendor Sync"),
        _result("sq-2", ACCESSIBILITY, "Design Review"),
    ])
    call = ScriptedCall(default="Synthesized answer.")
    result = asyncio.run(ResponseAggregator().aggregate(report, _plan(), call, {"depth": 0}))

    system_prompt = call.calls[0]["system_prompt"]
    user_prompt = call.calls[0]["user_prompt"]
    print(f"Conflicts: {result.conflicts}")

    assert result.aggregation_type == "llm-synthesis"
    assert result.response == "Synthesized answer."
    assert 'answer: "What are all the decisions across every meeting?"' in system_prompt
    assert "Compile items" in system_prompt
    assert "**Identified Tensions:**" in system_prompt
    assert "[Q1 Planning]:\n" + PRICING in user_prompt
    assert result.conflicts["has_conflicts"]
    print("[PASS] Tensions passed to the synthesis call")


def test_synthesis_failure_falls_back_to_merge():
    print("\n" + "=" * 60)
    print("TEST 7: Synthesis fallback")
    print("=" * 60)

    from rlm.orchestration import ResponseAggregator

    def failing(system_prompt, user_prompt, context):
        raise RuntimeError("rate limited")

    report = _report([
        _result("sq-0", PRICING, "Q1 Planning"),
        _result("sq-1", HOSTING, "Vendor Sync"),
        _result("sq-2", ACCESSIBILITY, "Design Review"),
    ])
    result = asyncio.run(ResponseAggregator().aggregate(report, _plan(), ScriptedCall(failing)))

    assert result.success
    assert result.aggregation_type == "simple-merge"
    assert result.metadata["synthesis_error"]["error"] == "synthesis_failed"
    assert result.metadata["synthesis_error"]["details"] == "rate limited"
    print("[PASS] Failed synthesis merged instead")

    blank = asyncio.run(ResponseAggregator().aggregate(report, _plan(), ScriptedCall(default="  ")))
    assert blank.aggregation_type == "simple-merge"
    print("[PASS] Blank synthesis merged instead")


def test_truncation():
    print("\n" + "=" * 60)
    print("TEST 8: Final length limit")
    print("=" * 60)

    from rlm.config import AggregatorConfig
    from rlm.orchestration import ResponseAggregator
    from rlm.orchestration.aggregator import TRUNCATION_NOTICE

    report = _report([
        _result("sq-0", PRICING * 3, "Q1 Planning"),
        _result("sq-1", HOSTING * 3, "Vendor Sync"),
        _result("sq-2", ACCESSIBILITY * 3, "Design Review"),
    ])
    aggregator = ResponseAggregator(AggregatorConfig(max_final_length=200, enable_llm_synthesis=False))
    result = asyncio.run(aggregator.aggregate(report, _plan()))

    assert result.response.endswith(TRUNCATION_NOTICE)
    assert len(result.response) == 100 + len(TRUNCATION_NOTICE)
    print("[PASS] Long merges truncated with a notice")


def test_similarity_and_display():
    print("\n" + "=" * 60)
    print("TEST 9: Similarity and display")
    print("=" * 60)

    from rlm.orchestration import AggregationResult, ResponseAggregator, jaccard_similarity

    assert jaccard_similarity("a b c", "A B C") == 1.0
    assert jaccard_similarity("a b", "c d") == 0.0
    assert jaccard_similarity("", "") == 0.0

    shown = ResponseAggregator.format_for_display(
        AggregationResult(response="Answer.", aggregation_type="llm-synthesis", sources=["Retro", "Vendor Sync"])
    )
    assert shown.endswith("*Sources: Retro, Vendor Sync*")
    print("[PASS] Sources appended for multi-source answers")


def main():
    """Run all tests."""
    print("\n" + "=" * 60)
    print("RESPONSE AGGREGATOR TESTS")
    print("=" * 60)

    test_reduce_output_passes_through()
    test_single_success_is_verbatim()
    test_no_success_is_none()
    test_two_results_skip_synthesis()
    test_merge_deduplicates()
    test_synthesis_with_conflicts()
    test_synthesis_failure_falls_back_to_merge()
    test_truncation()
    test_similarity_and_display()

    print("\n" + "=" * 60)
    print("ALL TESTS PASSED!")
    print("=" * 60)


if __name__ == "__main__":
    main()
