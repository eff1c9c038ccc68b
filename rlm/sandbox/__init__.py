"""Sandboxed code generation and execution with recursive sub_lm calls."""

from .channel import PENDING_MARKER, SubCallChannel, SubCallRequest
from .codegen import (
    CodeGenerator,
    CodeQueryType,
    GeneratedCode,
    build_code_prompt,
    classify_code_query,
    parse_code_output,
)
from .helpers import bind_helpers, grep, partition
from .runner import SandboxResult, SandboxRunner
from .validator import ALLOWED_MODULES, CodeValidator, ValidationResult

__all__ = [
    # Code generation
    "CodeGenerator",
    "CodeQueryType",
    "GeneratedCode",
    "build_code_prompt",
    "classify_code_query",
    "parse_code_output",
    # Validation
    "ALLOWED_MODULES",
    "CodeValidator",
    "ValidationResult",
    # Execution
    "SandboxResult",
    "SandboxRunner",
    "PENDING_MARKER",
    "SubCallChannel",
    "SubCallRequest",
    # Helpers
    "bind_helpers",
    "grep",
    "partition",
]
