"""Configuration settings for the recursive meeting-query engine."""

import logging
import os
from dotenv import load_dotenv

load_dotenv()

# Logging setup
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%H:%M:%S",
)

# OpenRouter
# Models that work well for sub-query answering:
# - anthropic/claude-3-5-haiku (fast, cheap)
# - openai/gpt-4o-mini (balanced)
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_DEFAULT_MODEL = os.getenv("OPENROUTER_DEFAULT_MODEL", "openai/gpt-4o-mini")

# Default profile name when MODEL_PROFILE is not set
DEFAULT_PROFILE = os.getenv("MODEL_PROFILE", "dev-fast")

# Characters per token used by every budget estimate
CHARS_PER_TOKEN = 4
