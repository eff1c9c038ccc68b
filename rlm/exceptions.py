"""
Exception hierarchy for the query pipeline.

Every error the pipeline can recover from has its own class so the
fallback chain can tell which tier failed and report it in metadata.
None of these reach the caller of ``RLMPipeline.process``; they are
caught and turned into a tagged ``PipelineResult``.
"""

from __future__ import annotations


class RLMError(Exception):
    """Base exception for all pipeline errors."""

    error_code: str = "rlm_error"

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        """Convert to a metadata-friendly dict."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ExecutionError(RLMError):
    """Raised when a decomposition plan cannot be executed at all."""

    error_code = "execution_error"


class SubQueryError(RLMError):
    """Raised when a single sub-query exhausts its retries."""

    error_code = "sub_query_failed"

    def __init__(self, query_id: str, message: str, attempts: int = 0):
        super().__init__(message, details=f"query_id={query_id} attempts={attempts}")
        self.query_id = query_id
        self.attempts = attempts


class InvalidTransitionError(RLMError):
    """Raised when a sub-query status change breaks the state machine."""

    error_code = "invalid_transition"


class SynthesisError(RLMError):
    """Raised when the LLM synthesis step of aggregation fails."""

    error_code = "synthesis_failed"


class CodeGenerationError(RLMError):
    """Raised when no usable code could be generated for a query."""

    error_code = "code_generation_failed"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message, details=f"attempts={attempts}")
        self.attempts = attempts


class CodeValidationError(RLMError):
    """Raised when generated code uses a disallowed capability."""

    error_code = "code_rejected"

    def __init__(self, errors: list[str]):
        super().__init__("Code validation failed: " + ", ".join(errors))
        self.errors = errors


class SandboxExecutionError(RLMError):
    """Raised when accepted code fails while running in the sandbox."""

    error_code = "sandbox_execution_failed"


class SandboxTimeoutError(SandboxExecutionError):
    """Raised when sandboxed code exceeds its wall-clock limit."""

    error_code = "sandbox_timeout"


class RecursionDepthExceededError(SandboxExecutionError):
    """Raised inside the sandbox when sub_lm nests beyond the max depth."""

    error_code = "recursion_depth_exceeded"

    def __init__(self, depth: int, max_depth: int):
        super().__init__(
            f"Maximum recursion depth ({max_depth}) exceeded",
            details=f"depth={depth}",
        )
        self.depth = depth
        self.max_depth = max_depth


class SubCallTimeoutError(SandboxExecutionError):
    """Raised inside the sandbox when a sub_lm handshake times out."""

    error_code = "sub_call_timeout"

    def __init__(self, timeout: float):
        super().__init__(f"sub_lm call timed out after {timeout:.0f}s")
        self.timeout = timeout
