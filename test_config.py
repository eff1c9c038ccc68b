"""
Configuration System Tests

Tests for the YAML configuration loader and factory functions.
"""

import asyncio
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def test_load_config_from_yaml():
    """Test loading configuration from YAML file."""
    print("=" * 60)
    print("TEST 1: Load configuration from YAML")
    print("=" * 60)

    from rlm.config.loader import load_config_from_yaml

    config_path = Path(__file__).parent / "rlm" / "config" / "models.yaml"

    profile = load_config_from_yaml(config_path, "dev-fast")
    print(f"\nLoaded profile: dev-fast")
    print(f"  LLM backend: {profile.llm.backend}")
    print(f"  LLM model: {profile.llm.model}")
    print(f"  Executor max_concurrent: {profile.pipeline.executor.max_concurrent}")

    assert profile.llm.backend == "openrouter"
    assert profile.pipeline.executor.max_concurrent == 3
    assert profile.pipeline.cache.enable_fuzzy_match is False
    print("\n[PASS] dev-fast profile loaded correctly")

    profile = load_config_from_yaml(config_path, "test")
    print(f"\nLoaded profile: test")
    print(f"  LLM backend: {profile.llm.backend}")
    print(f"  Retry attempts: {profile.pipeline.executor.retry_attempts}")

    assert profile.llm.backend == "mock"
    assert profile.pipeline.executor.retry_attempts == 0
    assert profile.pipeline.sandbox.sub_lm_timeout == 5
    print("\n[PASS] test profile loaded correctly")

    profile = load_config_from_yaml(config_path, "dev-accurate")
    print(f"\nLoaded profile: dev-accurate")
    print(f"  Max sub-queries: {profile.pipeline.decomposer.max_sub_queries}")
    print(f"  Fuzzy threshold: {profile.pipeline.cache.fuzzy_threshold}")

    assert profile.pipeline.decomposer.max_sub_queries == 6
    assert profile.pipeline.cache.enable_fuzzy_match is True
    assert profile.pipeline.cache.fuzzy_threshold == 0.9
    print("\n[PASS] dev-accurate profile loaded correctly")


def test_defaults_fill_missing_sections():
    """Sections absent from a profile fall back to model defaults."""
    print("\n" + "=" * 60)
    print("TEST 2: Defaults for omitted sections")
    print("=" * 60)

    from rlm.config import load_config

    profile = load_config(profile="test")
    pipeline = profile.pipeline

    assert pipeline.aggregator.deduplication_threshold == 0.7
    assert pipeline.aggregator.early_stop_max_results == 2
    assert pipeline.sandbox.max_depth == 3
    assert pipeline.sandbox.max_output_bytes == 10_000
    assert ("advocate", "critic") in [tuple(p) for p in pipeline.executor.debate_pairs]
    print("[PASS] Omitted sections use defaults")

    from rlm.config import DecomposerConfig, ExecutorConfig

    # Each setting has exactly one home
    assert "debate_min_perspectives" in DecomposerConfig.model_fields
    assert "debate_min_perspectives" not in ExecutorConfig.model_fields
    assert "tokens_per_sub_query" not in ExecutorConfig.model_fields
    print("[PASS] Perspective minimum lives only on the decomposer")


def test_load_config_env_fallback():
    """Test loading configuration from environment variables."""
    print("\n" + "=" * 60)
    print("TEST 3: Load configuration from environment (fallback)")
    print("=" * 60)

    from rlm.config.loader import load_config_from_env

    profile = load_config_from_env()
    print(f"\nLoaded from environment:")
    print(f"  LLM backend: {profile.llm.backend}")
    print(f"  LLM base_url: {profile.llm.base_url}")

    assert profile.llm.backend == "openrouter"
    assert profile.llm.base_url
    print("\n[PASS] Environment fallback works correctly")


def test_missing_file_falls_back_to_env(tmp_path):
    """A missing config file is not fatal."""
    print("\n" + "=" * 60)
    print("TEST 4: Missing config file")
    print("=" * 60)

    from rlm.config import load_config

    profile = load_config(profile="test", config_path=tmp_path / "missing.yaml")
    assert profile.llm.backend == "openrouter"
    print("[PASS] Missing file falls back to environment")


def test_env_var_expansion(tmp_path):
    """${VAR} references are expanded from the environment."""
    print("\n" + "=" * 60)
    print("TEST 5: Environment variable expansion")
    print("=" * 60)

    from rlm.config import load_config

    config_file = tmp_path / "models.yaml"
    config_file.write_text(
        "profiles:\n"
        "  custom:\n"
        "    llm:\n"
        "      backend: mock\n"
        "      model: ${RLM_TEST_MODEL}\n"
    )

    os.environ["RLM_TEST_MODEL"] = "vendor/model-x"
    try:
        profile = load_config(profile="custom", config_path=config_file)
    finally:
        del os.environ["RLM_TEST_MODEL"]

    assert profile.llm.model == "vendor/model-x"
    print("[PASS] ${RLM_TEST_MODEL} expanded")


def test_unknown_profile_raises():
    """Test that unknown profile names are reported."""
    print("\n" + "=" * 60)
    print("TEST 6: Unknown profile")
    print("=" * 60)

    from rlm.config import load_config

    try:
        load_config(profile="does-not-exist")
    except KeyError as e:
        print(f"Raised: {e}")
        print("[PASS] Unknown profile raises KeyError")
    else:
        raise AssertionError("Expected KeyError for unknown profile")


def test_load_config_main():
    """Test the main load_config function."""
    print("\n" + "=" * 60)
    print("TEST 7: Main load_config function")
    print("=" * 60)

    from rlm.config import load_config

    profile = load_config(profile="test")
    assert profile.llm.backend == "mock"
    print("\n[PASS] load_config with explicit profile works")

    original = os.environ.get("MODEL_PROFILE")
    os.environ["MODEL_PROFILE"] = "test"
    try:
        profile = load_config()
        print(f"\nLoaded from MODEL_PROFILE=test")
        assert profile.llm.backend == "mock"
        print("\n[PASS] load_config with MODEL_PROFILE works")
    finally:
        if original:
            os.environ["MODEL_PROFILE"] = original
        else:
            del os.environ["MODEL_PROFILE"]


def test_factory_create_llm_provider():
    """Test creating the LLM provider from config."""
    print("\n" + "=" * 60)
    print("TEST 8: Factory - create_llm_provider")
    print("=" * 60)

    from rlm.config import LLMConfig, MockLLMProvider, create_llm_provider, load_config

    profile = load_config(profile="test")
    provider = create_llm_provider(profile.llm)
    print(f"\nCreated mock provider: {type(provider).__name__}")
    assert isinstance(provider, MockLLMProvider)
    print("[PASS] Mock provider created")

    try:
        create_llm_provider(LLMConfig(backend="openrouter", api_key=None))
    except ValueError as e:
        print(f"Missing key rejected: {e}")
        print("[PASS] OpenRouter backend requires api_key")
    else:
        raise AssertionError("Expected ValueError without api_key")


def test_factory_create_from_profile():
    """Test creating provider and pipeline from a profile."""
    print("\n" + "=" * 60)
    print("TEST 9: Factory - create_from_profile")
    print("=" * 60)

    from rlm.config import create_from_profile, load_config
    from rlm.llm import as_completion_call
    from rlm.orchestration import RLMPipeline

    profile = load_config(profile="test")
    provider, pipeline = create_from_profile(profile)

    print(f"\nCreated from 'test' profile:")
    print(f"  Provider: {type(provider).__name__}")
    print(f"  Pipeline: {type(pipeline).__name__}")
    assert isinstance(pipeline, RLMPipeline)
    assert pipeline.config.executor.retry_attempts == 0

    async def run():
        async with provider:
            call = as_completion_call(provider)
            return await call("system", "What happened?", {})

    reply = asyncio.run(run())
    print(f"Mock reply: {reply}")
    assert reply.startswith("[Mock answer to:")
    assert provider.calls[0]["system_prompt"] == "system"
    print("\n[PASS] create_from_profile works correctly")


def test_complete_helper_and_adapter_config():
    """Test the one-shot helper and adapter settings from a profile."""
    print("\n" + "=" * 60)
    print("TEST 10: complete() and OpenRouter adapter settings")
    print("=" * 60)

    from rlm.config import LLMConfig, MockLLMProvider, create_llm_provider
    from rlm.llm import complete

    provider = MockLLMProvider(responses=["Alice owns pricing."])
    reply = asyncio.run(complete("Who owns pricing?", system_prompt="Be brief.", provider=provider))
    assert reply == "Alice owns pricing."
    assert provider.calls == [{"prompt": "Who owns pricing?", "system_prompt": "Be brief."}]
    print("[PASS] complete() delegates to the given provider")

    adapter = create_llm_provider(
        LLMConfig(backend="openrouter", api_key="sk-test", model="openai/gpt-4o-mini",
                  request_timeout=15, max_retries=0)
    )
    assert adapter.request_timeout == 15
    assert adapter.max_retries == 0
    try:
        adapter.client
    except RuntimeError as e:
        print(f"Unopened client rejected: {e}")
    else:
        raise AssertionError("Expected RuntimeError outside 'async with'")
    print("[PASS] Adapter carries timeout and retry settings")


def main():
    """Run all tests."""
    import tempfile

    print("\n" + "=" * 60)
    print("CONFIGURATION SYSTEM TESTS")
    print("=" * 60)

    test_load_config_from_yaml()
    test_defaults_fill_missing_sections()
    test_load_config_env_fallback()
    with tempfile.TemporaryDirectory() as tmp:
        test_missing_file_falls_back_to_env(Path(tmp))
        test_env_var_expansion(Path(tmp))
    test_unknown_profile_raises()
    test_load_config_main()
    test_factory_create_llm_provider()
    test_factory_create_from_profile()
    test_complete_helper_and_adapter_config()

    print("\n" + "=" * 60)
    print("ALL TESTS PASSED!")
    print("=" * 60)


if __name__ == "__main__":
    main()
