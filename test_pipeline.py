"""
Pipeline Tests

End-to-end tests for RLMPipeline: the decomposed path, caching, memory,
the legacy fallback chain, the sandbox path and routing.
"""

import asyncio

from meeting_fixtures import ScriptedCall, no_sleep, sample_agents

AGGREGATE_QUERY = "What are all the decisions across every meeting?"
COUNT_QUERY = "How many meetings mention budget?"


def _pipeline(**sections):
    """Pipeline over the sample meetings with no retries unless overridden."""
    from rlm.config import ExecutorConfig, PipelineConfig
    from rlm.orchestration import RLMPipeline

    sections.setdefault("executor", ExecutorConfig(retry_attempts=0))
    pipeline = RLMPipeline(PipelineConfig(**sections), sleep=no_sleep)
    pipeline.load_agents(sample_agents())
    return pipeline


def test_map_reduce_primary_path():
    print("=" * 60)
    print("TEST 1: Decomposed answer")
    print("=" * 60)

    from rlm.orchestration import ResultTier

    pipeline = _pipeline()
    call = ScriptedCall(default="Decisions:\n- Ship the roadmap")
    result = asyncio.run(pipeline.process(AGGREGATE_QUERY, call))

    print(f"Tier: {result.tier.value}, calls: {call.count}")
    print(result.response)

    assert result.success
    assert result.tier == ResultTier.PRIMARY
    assert call.count == 5
    assert result.response.startswith("Decisions:\n- Ship the roadmap")
    assert "*Sources: " in result.response
    assert result.metadata["mode"] == "rlm"
    assert result.metadata["strategy"] == "map-reduce"
    assert result.metadata["aggregation_type"] == "map-reduce"
    assert "token_breakdown" in result.metadata["memory_prompt"]
    assert result.to_dict()["tier"] == "primary"

    stats = pipeline.get_stats()
    assert stats["queries_processed"] == 1
    assert stats["total_sub_queries"] == 5
    assert stats["strategies"] == {"map-reduce": 1}
    assert stats["memory"]["state_block_size"] == 1
    print("[PASS] Map-reduce answer, stats and memory recorded")


def test_cache_hit_makes_no_calls():
    print("\n" + "=" * 60)
    print("TEST 2: Cache hit")
    print("=" * 60)

    pipeline = _pipeline()
    call = ScriptedCall()

    first = asyncio.run(pipeline.process(AGGREGATE_QUERY, call))
    calls_after_first = call.count
    second = asyncio.run(pipeline.process("  what are ALL the decisions across every meeting ", call))

    print(f"Calls: {calls_after_first} then {call.count}")
    assert call.count == calls_after_first
    assert second.response == first.response
    assert second.metadata["cached"] is True
    assert "cached" not in first.metadata
    assert pipeline.get_stats()["cache_hits"] == 1
    print("[PASS] Repeated query answered from cache")

    from rlm.config import CacheConfig

    fuzzy = _pipeline(cache=CacheConfig(enable_fuzzy_match=True, fuzzy_threshold=0.9))
    asyncio.run(fuzzy.process(AGGREGATE_QUERY, call))
    near = asyncio.run(fuzzy.process("What are all the decisions across every meetings?", call))
    cache_stats = fuzzy.get_stats()["cache"]
    print(f"Fuzzy cache stats: {cache_stats}")
    assert near.metadata["cached"] is True
    assert cache_stats["hits"] == 1
    assert cache_stats["fuzzy_hits"] == 1
    assert cache_stats["misses"] == 1
    assert cache_stats["hit_rate"] == 0.5
    print("[PASS] Near-duplicate counted as one hit, not a miss plus a hit")


def test_reload_invalidates_cache_keeps_memory():
    print("\n" + "=" * 60)
    print("TEST 3: Reload drops cache, keeps memory")
    print("=" * 60)

    pipeline = _pipeline()
    call = ScriptedCall(default="Decisions:\n- Ship the roadmap")
    asyncio.run(pipeline.process(AGGREGATE_QUERY, call))
    slices = len(pipeline.memory.slices)
    calls_before = call.count

    pipeline.load_agents(sample_agents())
    result = asyncio.run(pipeline.process(AGGREGATE_QUERY, call))

    assert call.count > calls_before
    assert "cached" not in result.metadata
    assert len(pipeline.memory.slices) >= slices > 0
    print("[PASS] Reload forced a fresh run without losing memory")


def test_legacy_fallback():
    print("\n" + "=" * 60)
    print("TEST 4: Legacy fallback")
    print("=" * 60)

    from rlm.orchestration import ResultTier
    from rlm.orchestration.pipeline import LEGACY_SYSTEM_PROMPT

    def responder(system_prompt, user_prompt, context):
        if system_prompt == LEGACY_SYSTEM_PROMPT:
            return "Legacy answer."
        raise RuntimeError("sub-query backend down")

    pipeline = _pipeline()
    call = ScriptedCall(responder)
    result = asyncio.run(pipeline.process("Who owns the pricing page?", call))

    print(f"Tier: {result.tier.value}, error: {result.metadata['rlm_error']['message']}")
    assert result.success
    assert result.tier == ResultTier.FALLBACK
    assert result.response == "Legacy answer."
    assert result.metadata["legacy"] is True
    assert result.metadata["rlm_error"]["error"] == "execution_error"
    assert call.calls[-1]["user_prompt"].endswith("Question: Who owns the pricing page?")
    assert "Q1 Planning" in call.calls[-1]["user_prompt"]
    assert pipeline.get_stats()["fallbacks"] == 1
    print("[PASS] Failed decomposition answered by the legacy call")


def test_everything_fails():
    print("\n" + "=" * 60)
    print("TEST 5: Both tiers fail")
    print("=" * 60)

    from rlm.orchestration import ResultTier

    def responder(system_prompt, user_prompt, context):
        raise RuntimeError("backend down")

    pipeline = _pipeline()
    result = asyncio.run(pipeline.process("Who owns the pricing page?", ScriptedCall(responder)))

    assert not result.success
    assert result.tier == ResultTier.FAILED
    assert result.response.startswith("Error processing query:")
    assert result.metadata["legacy_error"] == "backend down"
    assert len(pipeline.cache) == 0
    assert pipeline.memory.slices == []
    print("[PASS] Failure returned, not raised, and never cached")


def test_no_legacy_fallback():
    print("\n" + "=" * 60)
    print("TEST 6: Fallback disabled")
    print("=" * 60)

    from rlm.config import ExecutorConfig, PipelineConfig
    from rlm.orchestration import ResultTier, RLMPipeline

    def responder(system_prompt, user_prompt, context):
        raise RuntimeError("backend down")

    pipeline = RLMPipeline(
        PipelineConfig(fallback_to_legacy=False, executor=ExecutorConfig(retry_attempts=0)),
        sleep=no_sleep,
    )
    pipeline.load_agents(sample_agents())
    call = ScriptedCall(responder)
    result = asyncio.run(pipeline.process("Who owns the pricing page?", call))

    assert result.tier == ResultTier.FAILED
    assert result.metadata["error"]["error"] == "execution_error"
    assert call.count == 1
    print("[PASS] No legacy call when fallback is off")


def test_rlm_disabled_uses_legacy():
    print("\n" + "=" * 60)
    print("TEST 7: RLM disabled")
    print("=" * 60)

    from rlm.orchestration import ResultTier

    pipeline = _pipeline(enable_rlm=False)
    call = ScriptedCall(default="Single answer.")
    result = asyncio.run(pipeline.process(AGGREGATE_QUERY, call))

    assert result.tier == ResultTier.PRIMARY
    assert result.metadata["rlm_enabled"] is False
    assert call.count == 1
    assert not pipeline.should_use_rlm(AGGREGATE_QUERY)
    print("[PASS] One combined-context call")


def _code_responder(code, sub_answer="Sub answer."):
    from rlm.sandbox.codegen import CODE_GENERATION_SYSTEM_PROMPT

    def responder(system_prompt, user_prompt, context):
        if system_prompt == CODE_GENERATION_SYSTEM_PROMPT:
            return f"```python\n{code}\n```"
        return sub_answer

    return responder


def test_repl_path():
    print("\n" + "=" * 60)
    print("TEST 8: Sandbox answer")
    print("=" * 60)

    from rlm.orchestration import ResultTier

    pipeline = _pipeline()
    code = "hits = search_agents('budget')\nFINAL(f'{len(hits)} meetings mention budget')"
    call = ScriptedCall(_code_responder(code))

    try:
        result = asyncio.run(pipeline.process_with_repl(COUNT_QUERY, call))
        cached = asyncio.run(pipeline.process_with_repl(COUNT_QUERY, call))
    finally:
        pipeline.terminate()

    print(f"Answer: {result.response}")
    assert result.tier == ResultTier.PRIMARY
    assert result.response == "1 meetings mention budget"
    assert result.metadata["mode"] == "repl"
    assert result.metadata["answer_type"] == "final"
    assert result.metadata["code_attempts"] == 1
    assert call.count == 1
    assert cached.metadata["cached"] is True
    assert pipeline.get_stats()["repl_runs"] == 1
    assert pipeline.get_stats()["sandbox_executions"] == 1
    print("[PASS] Generated code answered; repeat served from cache")


def test_repl_sub_lm_depth():
    print("\n" + "=" * 60)
    print("TEST 9: sub_lm from the sandbox")
    print("=" * 60)

    from rlm.orchestration.executor import ANALYSIS_SYSTEM_PROMPT

    pipeline = _pipeline()
    code = "FINAL(sub_lm('Summarize the themes', get_all_summaries()))"
    call = ScriptedCall(_code_responder(code, sub_answer="Pricing and hiring."))

    try:
        result = asyncio.run(pipeline.process_with_repl(COUNT_QUERY, call, {"session": "s-1"}))
    finally:
        pipeline.terminate()

    sub_call = call.calls[-1]
    assert result.response == "Pricing and hiring."
    assert result.metadata["sub_lm_calls"] == 1
    assert sub_call["system_prompt"] == ANALYSIS_SYSTEM_PROMPT
    assert sub_call["context"] == {"session": "s-1", "depth": 1}
    assert sub_call["user_prompt"].startswith("Context:\n")
    assert sub_call["user_prompt"].endswith("Question: Summarize the themes")
    print("[PASS] sub_lm ran one level deeper with the caller context")


def test_repl_depth_exceeded_falls_back():
    print("\n" + "=" * 60)
    print("TEST 10: REPL at the depth ceiling")
    print("=" * 60)

    from rlm.orchestration import ResultTier

    pipeline = _pipeline()
    call = ScriptedCall(default="Legacy answer.")
    result = asyncio.run(pipeline.process_with_repl(COUNT_QUERY, call, {"depth": 3}))
    pipeline.terminate()

    print(f"Tier: {result.tier.value}, repl error: {result.metadata['repl_error']['message']}")
    assert result.success
    assert result.tier == ResultTier.FALLBACK
    assert result.metadata["repl_error"]["error"] == "recursion_depth_exceeded"
    assert result.response == "Legacy answer."
    assert call.count == 1
    assert pipeline.get_stats()["repl_fallbacks"] == 1
    assert pipeline.sandbox is None
    print("[PASS] Depth ceiling produced a fallback result, not a hang")


def test_codegen_failure_falls_back():
    print("\n" + "=" * 60)
    print("TEST 11: Code generation failure")
    print("=" * 60)

    from rlm.config import SandboxConfig
    from rlm.orchestration import ResultTier
    from rlm.sandbox.codegen import CODE_GENERATION_SYSTEM_PROMPT

    def responder(system_prompt, user_prompt, context):
        if system_prompt == CODE_GENERATION_SYSTEM_PROMPT:
            return "I would rather not write code."
        return "Budget came up in Q1 Planning."

    pipeline = _pipeline(sandbox=SandboxConfig(max_retries=0))
    result = asyncio.run(pipeline.process_with_repl(COUNT_QUERY, ScriptedCall(responder)))
    pipeline.terminate()

    assert result.success
    assert result.tier == ResultTier.FALLBACK
    assert result.response == "Budget came up in Q1 Planning."
    assert result.metadata["repl_error"]["error"] == "code_generation_failed"
    print("[PASS] Standard pipeline answered after codegen failed")


def test_terminate_routes_to_process():
    print("\n" + "=" * 60)
    print("TEST 12: Terminate")
    print("=" * 60)

    from rlm.orchestration import ResultTier

    pipeline = _pipeline()
    pipeline.terminate()
    call = ScriptedCall(default="Plain answer.")
    result = asyncio.run(pipeline.process_with_repl("Who owns the pricing page?", call))

    assert result.tier == ResultTier.PRIMARY
    assert result.metadata["mode"] == "rlm"
    assert not pipeline.should_use_repl(COUNT_QUERY)
    print("[PASS] Terminated pipeline answers through process()")


def test_routing():
    print("\n" + "=" * 60)
    print("TEST 13: Routing decisions")
    print("=" * 60)

    from rlm.orchestration import RLMPipeline

    pipeline = _pipeline()
    assert pipeline.should_use_rlm("Who owns the pricing page?")

    small = RLMPipeline()
    small.load_agents(sample_agents()[:1])
    assert not small.should_use_rlm("Who owns the pricing page?")
    assert small.should_use_rlm("Compare pricing and hiring")
    assert small.should_use_rlm("Who owns pricing? Who owns hiring?")
    assert small.should_use_rlm("Who owns pricing?", auto=False)

    assert pipeline.should_use_repl(COUNT_QUERY)
    assert pipeline.should_use_repl("List all action items")
    assert not pipeline.should_use_repl("Who owns the pricing page?")
    assert pipeline.should_use_repl("Who owns the pricing page?", auto=False)
    print("[PASS] Indicators route queries to the right path")


def test_progress_callback():
    print("\n" + "=" * 60)
    print("TEST 14: Progress callback")
    print("=" * 60)

    pipeline = _pipeline()
    events = []
    pipeline.set_progress_callback(lambda step, kind, details: events.append((step, kind)))
    asyncio.run(pipeline.process(AGGREGATE_QUERY, ScriptedCall()))

    print(f"Events: {events}")
    assert events == [
        ("decompose", "start"), ("decompose", "done"),
        ("execute", "start"), ("execute", "done"),
        ("aggregate", "start"), ("aggregate", "done"),
    ]

    def broken(step, kind, details):
        raise ValueError("display closed")

    pipeline.set_progress_callback(broken)
    result = asyncio.run(pipeline.process("Who owns the pricing page?", ScriptedCall()))
    assert result.success
    print("[PASS] Progress reported; a failing callback is ignored")


def test_reset():
    print("\n" + "=" * 60)
    print("TEST 15: Reset")
    print("=" * 60)

    pipeline = _pipeline()
    asyncio.run(pipeline.process(AGGREGATE_QUERY, ScriptedCall(default="Decisions:\n- Ship")))
    pipeline.reset()

    stats = pipeline.get_stats()
    assert stats["queries_processed"] == 0
    assert stats["context_store"]["total_agents"] == 0
    assert stats["cache"]["size"] == 0
    assert stats["memory"]["total_slices"] == 0
    assert stats["config"]["executor"]["retry_attempts"] == 0
    print("[PASS] Documents, cache, memory and stats cleared")


def test_memory_reaches_next_turn_prompts():
    print("\n" + "=" * 60)
    print("TEST 16: Memory in later prompts")
    print("=" * 60)

    from rlm.config import MemoryConfig
    from rlm.orchestration.executor import ANALYSIS_SYSTEM_PROMPT

    answer = "Decisions:\n- Adopt the ZEBRAPLAN vendor contract"

    pipeline = _pipeline()
    call = ScriptedCall(default=answer)
    first = asyncio.run(pipeline.process("Who owns the pricing page?", call))
    first_calls = call.count
    second = asyncio.run(pipeline.process("What did the retro decide?", call))
    later = [c for c in call.calls[first_calls:] if c["system_prompt"] == ANALYSIS_SYSTEM_PROMPT]

    print(f"Calls: {first_calls} then {len(later)}")
    assert not any("ZEBRAPLAN" in c["user_prompt"] for c in call.calls[:first_calls])
    assert first.metadata["memory_prompt"]["injected"] is False
    assert later
    assert all(c["user_prompt"].startswith("Conversation memory:\n### State Block") for c in later)
    assert all("ZEBRAPLAN" in c["user_prompt"] for c in later)
    assert second.metadata["memory_prompt"]["injected"] is True
    print("[PASS] Decision from turn 1 included in turn 2 sub-query prompts")

    legacy = _pipeline(enable_rlm=False)
    legacy_call = ScriptedCall(default=answer)
    asyncio.run(legacy.process("Who owns the pricing page?", legacy_call))
    asyncio.run(legacy.process("What did the retro decide?", legacy_call))
    assert "ZEBRAPLAN" not in legacy_call.calls[0]["user_prompt"]
    assert legacy_call.calls[1]["user_prompt"].startswith("Conversation memory:")
    assert "ZEBRAPLAN" in legacy_call.calls[1]["user_prompt"]
    assert legacy_call.calls[1]["user_prompt"].endswith("Question: What did the retro decide?")
    print("[PASS] Legacy prompt carries memory too")

    quiet = _pipeline(memory=MemoryConfig(inject_into_prompts=False))
    quiet_call = ScriptedCall(default=answer)
    asyncio.run(quiet.process("Who owns the pricing page?", quiet_call))
    result = asyncio.run(quiet.process("What did the retro decide?", quiet_call))
    assert not any("ZEBRAPLAN" in c["user_prompt"] for c in quiet_call.calls)
    assert result.metadata["memory_prompt"]["injected"] is False
    assert "State Block" in result.metadata["memory_prompt"]["token_breakdown"]
    print("[PASS] Injection can be switched off; breakdown still reported")


def main():
    """Run all tests."""
    print("\n" + "=" * 60)
    print("PIPELINE TESTS")
    print("=" * 60)

    test_map_reduce_primary_path()
    test_cache_hit_makes_no_calls()
    test_reload_invalidates_cache_keeps_memory()
    test_legacy_fallback()
    test_everything_fails()
    test_no_legacy_fallback()
    test_rlm_disabled_uses_legacy()
    test_repl_path()
    test_repl_sub_lm_depth()
    test_repl_depth_exceeded_falls_back()
    test_codegen_failure_falls_back()
    test_terminate_routes_to_process()
    test_routing()
    test_progress_callback()
    test_reset()
    test_memory_reaches_next_turn_prompts()

    print("\n" + "=" * 60)
    print("ALL TESTS PASSED!")
    print("=" * 60)


if __name__ == "__main__":
    main()
