"""Configuration system for the completion backend and query pipeline."""

from .loader import (
    load_config,
    load_config_from_yaml,
    load_config_from_env,
    ProfileConfig,
    LLMConfig,
    PipelineConfig,
    DecomposerConfig,
    ExecutorConfig,
    AggregatorConfig,
    CacheConfig,
    MemoryConfig,
    SandboxConfig,
)
from .factory import (
    MockLLMProvider,
    create_llm_provider,
    create_pipeline,
    create_from_profile,
)

__all__ = [
    # Loader
    "load_config",
    "load_config_from_yaml",
    "load_config_from_env",
    "ProfileConfig",
    "LLMConfig",
    # Pipeline sections
    "PipelineConfig",
    "DecomposerConfig",
    "ExecutorConfig",
    "AggregatorConfig",
    "CacheConfig",
    "MemoryConfig",
    "SandboxConfig",
    # Factory
    "MockLLMProvider",
    "create_llm_provider",
    "create_pipeline",
    "create_from_profile",
]
