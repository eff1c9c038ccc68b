"""Configuration loader with Pydantic validation and env var expansion."""

import logging
import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class LLMConfig(BaseModel):
    """Configuration for the completion backend."""

    backend: Literal["openrouter", "mock"] = "openrouter"
    model: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    temperature: float = 0.3
    max_tokens: int | None = 1200
    request_timeout: float = 120.0
    max_retries: int = 2


class DecomposerConfig(BaseModel):
    """Configuration for query decomposition."""

    max_sub_queries: int = 5
    min_relevance_score: float = 2
    enable_perspectives: bool = True
    role_assignment: Literal["uniform", "rotating", "adaptive", "primary-only"] = "rotating"
    debate_min_perspectives: int = 3


class ExecutorConfig(BaseModel):
    """Configuration for sub-query execution."""

    max_concurrent: int = 3
    max_depth: int = 3
    timeout: float = 30.0  # Seconds per completion call
    reduce_timeout: float = 45.0
    retry_attempts: int = 2
    retry_base_delay: float = 1.0  # Doubles on every retry
    # Debate phase between opposing perspectives
    enable_debate_phase: bool = True  # minimum perspectives comes from DecomposerConfig
    debate_timeout: float = 30.0
    debate_pairs: list[tuple[str, str]] = [
        ("advocate", "critic"),
        ("analyst", "synthesizer"),
        ("pragmatist", "critic"),
    ]
    # Prompt budget enforcement
    enforce_prompt_budget: bool = True
    prompt_token_budget: int = 6000
    prompt_token_reserve: int = 1200


class AggregatorConfig(BaseModel):
    """Configuration for response aggregation."""

    max_final_length: int = 4000
    enable_llm_synthesis: bool = True
    deduplication_threshold: float = 0.7
    early_stop_max_results: int = 2
    early_stop_similarity: float = 0.85
    conflict_threshold: float = 0.6
    enable_conflict_detection: bool = True


class CacheConfig(BaseModel):
    """Configuration for the query cache."""

    enabled: bool = True
    max_entries: int = 50
    default_ttl: float = 300.0  # Seconds
    enable_fuzzy_match: bool = False
    fuzzy_threshold: float = 0.85
    normalize_queries: bool = True


class MemoryConfig(BaseModel):
    """Configuration for the memory store and state block."""

    enabled: bool = True
    state_block_token_budget: int = 600
    max_retrieved_slices: int = 6
    max_per_tag: int = 2
    max_per_agent: int = 2
    inject_into_prompts: bool = True  # False only reports the memory prompt breakdown


class SandboxConfig(BaseModel):
    """Configuration for the sandboxed recursive executor."""

    enabled: bool = True
    max_output_bytes: int = 10_000
    execution_timeout: float = 30.0
    max_depth: int = 3
    sub_lm_timeout: float = 60.0
    host_grace_seconds: float = 5.0  # host-side slack past execution_timeout
    max_code_length: int = 4000
    max_retries: int = 2
    sync_sub_lm: bool = True  # False queues sub_lm calls until the run ends


class PipelineConfig(BaseModel):
    """Configuration for the whole query pipeline."""

    enable_rlm: bool = True
    fallback_to_legacy: bool = True
    decomposer: DecomposerConfig = DecomposerConfig()
    executor: ExecutorConfig = ExecutorConfig()
    aggregator: AggregatorConfig = AggregatorConfig()
    cache: CacheConfig = CacheConfig()
    memory: MemoryConfig = MemoryConfig()
    sandbox: SandboxConfig = SandboxConfig()


class ProfileConfig(BaseModel):
    """Configuration profile containing the backend and pipeline configs."""

    llm: LLMConfig
    pipeline: PipelineConfig = PipelineConfig()


class ConfigFile(BaseModel):
    """Root configuration file structure."""

    profiles: dict[str, ProfileConfig]


def expand_env_vars(value: str) -> str:
    """Expand ${VAR} references in string with environment variables.

    Args:
        value: String potentially containing env var references

    Returns:
        String with env vars expanded
    """
    if not isinstance(value, str):
        return value

    pattern = r"\$\{([^}]+)\}"

    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return re.sub(pattern, replacer, value)


def expand_env_vars_recursive(data):
    """Recursively expand env vars in nested dict/list structures."""
    if isinstance(data, dict):
        return {k: expand_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [expand_env_vars_recursive(item) for item in data]
    elif isinstance(data, str):
        return expand_env_vars(data)
    else:
        return data


def load_config_from_yaml(config_path: Path, profile_name: str) -> ProfileConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config YAML file
        profile_name: Name of profile to load

    Returns:
        ProfileConfig for the requested profile

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValidationError: If config is invalid
        KeyError: If profile doesn't exist
    """
    with open(config_path) as f:
        raw_data = yaml.safe_load(f)

    expanded_data = expand_env_vars_recursive(raw_data)
    config_file = ConfigFile(**expanded_data)

    if profile_name not in config_file.profiles:
        available = ", ".join(config_file.profiles.keys())
        raise KeyError(
            f"Profile '{profile_name}' not found. Available profiles: {available}"
        )

    return config_file.profiles[profile_name]


def load_config_from_env() -> ProfileConfig:
    """Load configuration from environment variables (fallback mode).

    Returns:
        ProfileConfig with an OpenRouter backend and default pipeline settings
    """
    llm = LLMConfig(
        backend="openrouter",
        model=os.environ.get("OPENROUTER_MODEL", "openai/gpt-4o-mini"),
        api_key=os.environ.get("OPENROUTER_API_KEY"),
        base_url=os.environ.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1"),
    )

    pipeline = PipelineConfig(
        enable_rlm=os.environ.get("RLM_ENABLED", "true").lower() != "false",
    )

    return ProfileConfig(llm=llm, pipeline=pipeline)


def load_config(
    profile: str | None = None,
    config_path: Path | None = None,
) -> ProfileConfig:
    """Load configuration from YAML file or environment variables.

    Tries the YAML config file first and falls back to environment
    variables if the file is missing or cannot be parsed.

    Args:
        profile: Profile name to load. If None, uses MODEL_PROFILE env var
                or "dev-fast" as default.
        config_path: Path to config file. If None, uses the models.yaml
                    next to this module.

    Returns:
        ProfileConfig with backend and pipeline configuration

    Raises:
        KeyError: If requested profile doesn't exist
    """
    if profile is None:
        profile = os.environ.get("MODEL_PROFILE", "dev-fast")

    if config_path is None:
        config_path = Path(__file__).parent / "models.yaml"

    if not config_path.exists():
        logger.warning(f"Config file {config_path} not found, using environment variables")
        return load_config_from_env()

    try:
        return load_config_from_yaml(config_path, profile)
    except KeyError:
        raise
    except Exception as e:
        logger.warning(f"Failed to load config from {config_path}: {e}")
        logger.warning("Falling back to environment variables...")
        return load_config_from_env()
