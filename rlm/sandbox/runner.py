"""
Sandboxed execution of generated code.

Code runs in a dedicated worker thread with a restricted builtins table,
captured print output and a wall-clock deadline enforced by a per-thread
trace hook, backed by a host-side deadline and size checks on range, pow,
``*``, ``**`` and ``<<``. ``sub_lm`` calls inside the code go through a SubCallChannel
to the host event loop.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import json
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from ..config.loader import SandboxConfig
from ..exceptions import (
    CodeValidationError,
    RLMError,
    SandboxExecutionError,
    SandboxTimeoutError,
)
from .channel import PENDING_MARKER, SubCallChannel, SubCallHandler
from .helpers import bind_helpers
from .validator import ALLOWED_MODULES, CodeValidator

logger = logging.getLogger(__name__)

SANDBOX_FILENAME = "<sandbox>"
TRUNCATION_MARKER = "\n...[output truncated]"

# A single builtin call holds the GIL until it returns, so neither the trace
# hook nor the host deadline can stop it. Size checks keep such calls short.
MAX_RANGE_ITEMS = 10_000_000
MAX_SEQUENCE_ITEMS = 10_000_000
MAX_INT_BITS = 1_000_000
CHECKED_BINOP = "_sandbox_binop"

SAFE_BUILTINS = (
    "abs", "all", "any", "bin", "bool", "callable", "chr", "dict", "divmod",
    "enumerate", "filter", "float", "format", "frozenset", "hasattr", "hash",
    "hex", "int", "isinstance", "issubclass", "iter", "len", "list", "map",
    "max", "min", "next", "oct", "ord", "pow", "range", "repr", "reversed",
    "round", "set", "slice", "sorted", "str", "sum", "tuple", "zip",
    "Exception", "ArithmeticError", "AttributeError", "IndexError",
    "KeyError", "LookupError", "RuntimeError", "StopIteration", "TypeError",
    "ValueError", "ZeroDivisionError",
)


class _FinalAnswer(BaseException):
    """Unwinds the sandbox once FINAL or FINAL_VAR has been called."""


@dataclass
class SandboxResult:
    """Outcome of one sandbox run."""

    success: bool
    answer: str | None = None
    answer_type: str | None = None  # final, final_var, stdout, result
    stdout: str = ""
    error: str | None = None
    exception: RLMError | None = None
    sub_lm_calls: int = 0
    execution_time: float = 0.0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "answer_type": self.answer_type,
            "error": self.error,
            "error_code": self.exception.error_code if self.exception else None,
            "sub_lm_calls": self.sub_lm_calls,
            "execution_time": self.execution_time,
        }


class _OutputBuffer:
    def __init__(self, limit: int):
        self.limit = limit
        self.parts: list[str] = []
        self.size = 0
        self.truncated = False

    def write(self, text: str) -> None:
        if self.truncated:
            return
        encoded = len(text.encode("utf-8"))
        if self.size + encoded > self.limit:
            remaining = max(self.limit - self.size, 0)
            self.parts.append(text.encode("utf-8")[:remaining].decode("utf-8", errors="ignore"))
            self.truncated = True
            return
        self.parts.append(text)
        self.size += encoded

    def getvalue(self) -> str:
        text = "".join(self.parts)
        return text + TRUNCATION_MARKER if self.truncated else text


@dataclass
class _RunState:
    output: _OutputBuffer
    final: Any = None
    has_final: bool = False
    final_var: str | None = None
    result: Any = None
    exception: BaseException | None = None
    timed_out: SandboxTimeoutError | None = None
    namespace: dict[str, Any] = field(default_factory=dict)


def _too_large(what: str, size: int, limit: int) -> SandboxExecutionError:
    return SandboxExecutionError(f"{what} of {size} exceeds the sandbox limit of {limit}")


def _bounded_range(*args):
    r = range(*args)
    try:
        size = len(r)
    except OverflowError:
        size = MAX_RANGE_ITEMS + 1
    if size > MAX_RANGE_ITEMS:
        raise _too_large("range", size, MAX_RANGE_ITEMS)
    return r


def _check_int_bits(bits: int) -> None:
    if bits > MAX_INT_BITS:
        raise SandboxExecutionError(
            f"integer result of about {bits} bits exceeds the sandbox limit of {MAX_INT_BITS}"
        )


def _bounded_pow(base, exp, mod=None):
    if mod is None and isinstance(base, int) and isinstance(exp, int) and exp > 0 and abs(base) > 1:
        _check_int_bits(abs(base).bit_length() * exp)
    return pow(base, exp, mod)


def _check_repeat(seq, times) -> None:
    if isinstance(seq, (str, bytes, list, tuple)) and isinstance(times, int):
        size = len(seq) * times
        if size > MAX_SEQUENCE_ITEMS:
            raise _too_large("repeated sequence", size, MAX_SEQUENCE_ITEMS)


def _checked_binop(op: str, left, right):
    if op == "mult":
        _check_repeat(left, right)
        _check_repeat(right, left)
        if isinstance(left, int) and isinstance(right, int):
            _check_int_bits(abs(left).bit_length() + abs(right).bit_length())
        return left * right
    if op == "pow":
        return _bounded_pow(left, right)
    if isinstance(left, int) and isinstance(right, int) and left and right > 0:
        _check_int_bits(abs(left).bit_length() + right)
    return left << right


class _BoundedOps(ast.NodeTransformer):
    """Rewrite ``*``, ``**`` and ``<<`` into size-checked calls."""

    OPS = {ast.Mult: "mult", ast.Pow: "pow", ast.LShift: "lshift"}

    def _call(self, op: str, left: ast.expr, right: ast.expr, node: ast.AST) -> ast.Call:
        call = ast.Call(
            func=ast.Name(id=CHECKED_BINOP, ctx=ast.Load()),
            args=[ast.Constant(op), left, right],
            keywords=[],
        )
        return ast.copy_location(call, node)

    def visit_BinOp(self, node: ast.BinOp):
        self.generic_visit(node)
        op = self.OPS.get(type(node.op))
        if op is None:
            return node
        return self._call(op, node.left, node.right, node)

    def visit_AugAssign(self, node: ast.AugAssign):
        self.generic_visit(node)
        op = self.OPS.get(type(node.op))
        # Only plain names; rewriting x[i] *= n would evaluate x[i] twice.
        if op is None or not isinstance(node.target, ast.Name):
            return node
        load = ast.Name(id=node.target.id, ctx=ast.Load())
        assign = ast.Assign(targets=[node.target], value=self._call(op, load, node.value, node))
        return ast.copy_location(assign, node)


def _restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level or name.split(".")[0] not in ALLOWED_MODULES:
        raise ImportError(f"import of '{name}' is not allowed in the sandbox")
    return builtins.__import__(name, globals, locals, fromlist, level)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, indent=2, default=str)
    return str(value)


class SandboxRunner:
    """
    Run validated code against a context dict.

    Example:
        runner = SandboxRunner(config.sandbox)
        result = await runner.run(code, store.to_python_dict(), handler)
        runner.shutdown()
    """

    def __init__(self, config: SandboxConfig | None = None, validator: CodeValidator | None = None):
        self.config = config or SandboxConfig()
        self.validator = validator or CodeValidator(max_code_length=self.config.max_code_length)
        self.executions = 0
        self.abandoned_workers = 0
        self._executor: ThreadPoolExecutor | None = self._new_executor()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(
            max_workers=self.config.max_depth + 2,
            thread_name_prefix="rlm-sandbox",
        )

    @property
    def is_shut_down(self) -> bool:
        return self._executor is None

    async def run(
        self,
        code: str,
        context_data: dict[str, Any],
        handler: SubCallHandler,
        depth: int = 0,
    ) -> SandboxResult:
        """
        Validate and execute code; never raises for sandbox failures.

        Args:
            code: Generated Python source
            context_data: Dict exposed to the code as ``context``
            handler: Async callable answering sub_lm requests on the host
            depth: Recursion depth of this run

        Returns:
            SandboxResult
        """
        started = time.monotonic()

        if self._executor is None:
            error = SandboxExecutionError("Sandbox has been shut down")
            return SandboxResult(success=False, error=error.message, exception=error)

        try:
            self.validator.validate_or_raise(code)
        except CodeValidationError as e:
            logger.warning(f"Rejected sandbox code: {e.message}")
            return SandboxResult(success=False, error=e.message, exception=e)

        loop = asyncio.get_running_loop()
        channel = SubCallChannel(
            loop if self.config.sync_sub_lm else None,
            timeout=self.config.sub_lm_timeout,
            max_depth=self.config.max_depth,
            start_depth=depth,
            synchronous=self.config.sync_sub_lm,
        )
        server = asyncio.create_task(channel.serve(handler)) if channel.synchronous else None

        self.executions += 1
        future = loop.run_in_executor(
            self._executor, self._execute, code, context_data, channel
        )
        try:
            state = await self._wait_with_deadline(future, channel)
        except SandboxTimeoutError as e:
            self._abandon_worker()
            return SandboxResult(
                success=False,
                error=e.message,
                exception=e,
                sub_lm_calls=channel.call_count,
                execution_time=time.monotonic() - started,
            )
        finally:
            channel.close()
            if server is not None:
                await server

        result = self._resolve(state, channel)
        if channel.pending and result.success:
            resolved = await channel.resolve_pending(handler)
            result.answer = self._merge_pending(result.answer or "", resolved)

        result.sub_lm_calls = channel.call_count
        result.execution_time = time.monotonic() - started
        logger.info(
            f"Sandbox run at depth {depth}: success={result.success}, "
            f"answer_type={result.answer_type}, sub_lm_calls={result.sub_lm_calls}"
        )
        return result

    async def _wait_with_deadline(self, future: asyncio.Future, channel: SubCallChannel) -> _RunState:
        """
        Wait for the worker thread, giving up once the host deadline passes.

        The trace hook only fires in sandbox frames, so time spent inside
        helpers or a blocking call goes unchecked until it returns. The host
        deadline is execution_timeout + host_grace_seconds, extended by time
        the sandbox spends blocked on sub_lm.
        """
        started = time.monotonic()
        limit = self.config.execution_timeout + self.config.host_grace_seconds
        while True:
            remaining = limit + channel.blocked_time() - (time.monotonic() - started)
            if remaining <= 0:
                raise SandboxTimeoutError(
                    f"Execution exceeded {self.config.execution_timeout}s time limit "
                    f"(worker unresponsive after {limit}s)"
                )
            done, _ = await asyncio.wait({future}, timeout=remaining)
            if done:
                return future.result()

    def _abandon_worker(self) -> None:
        """Swap in a fresh pool; a stuck worker thread cannot be killed."""
        self.abandoned_workers += 1
        logger.warning(
            f"Sandbox worker unresponsive past its deadline; replacing pool "
            f"({self.abandoned_workers} abandoned so far)"
        )
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = self._new_executor()

    def _execute(self, code: str, context_data: dict[str, Any], channel: SubCallChannel) -> _RunState:
        state = _RunState(output=_OutputBuffer(self.config.max_output_bytes))
        state.namespace = self._build_namespace(context_data, channel, state)

        tree = ast.parse(code, SANDBOX_FILENAME)
        last_expr = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            last_expr = ast.Expression(body=tree.body.pop().value)
        tree = ast.fix_missing_locations(_BoundedOps().visit(tree))
        if last_expr is not None:
            last_expr = ast.fix_missing_locations(_BoundedOps().visit(last_expr))
        body = compile(tree, SANDBOX_FILENAME, "exec")

        started = time.monotonic()
        limit = self.config.execution_timeout

        def local_trace(frame, event, arg):
            # Time spent blocked on sub_lm does not count against the limit.
            if time.monotonic() - started - channel.blocked_seconds > limit:
                if state.timed_out is None:
                    state.timed_out = SandboxTimeoutError(
                        f"Execution exceeded {limit}s time limit"
                    )
                raise state.timed_out
            return local_trace

        def global_trace(frame, event, arg):
            if frame.f_code.co_filename == SANDBOX_FILENAME:
                return local_trace(frame, event, arg)
            return None

        sys.settrace(global_trace)
        try:
            exec(body, state.namespace)
            if last_expr is not None:
                state.result = eval(compile(last_expr, SANDBOX_FILENAME, "eval"), state.namespace)
        except _FinalAnswer:
            pass
        except Exception as e:
            state.exception = e
        finally:
            sys.settrace(None)
        return state

    def _build_namespace(
        self,
        context_data: dict[str, Any],
        channel: SubCallChannel,
        state: _RunState,
    ) -> dict[str, Any]:
        safe = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
        safe["__import__"] = _restricted_import
        safe["range"] = _bounded_range
        safe["pow"] = _bounded_pow

        def sandbox_print(*args, sep=" ", end="\n", **kwargs):
            state.output.write(sep.join(str(a) for a in args) + end)

        def sub_lm(query, context_slice=None):
            if context_slice is not None and not isinstance(context_slice, str):
                context_slice = _stringify(context_slice)
            return channel.request(query, context_slice)

        def final(answer):
            state.final = answer
            state.has_final = True
            raise _FinalAnswer()

        def final_var(name):
            state.final_var = str(name)
            raise _FinalAnswer()

        safe["print"] = sandbox_print
        namespace = {"__builtins__": safe, "__name__": "sandbox"}
        namespace.update(bind_helpers(context_data))
        namespace.update({
            "sub_lm": sub_lm,
            "FINAL": final,
            "FINAL_VAR": final_var,
            CHECKED_BINOP: _checked_binop,
        })
        return namespace

    @staticmethod
    def _resolve(state: _RunState, channel: SubCallChannel) -> SandboxResult:
        stdout = state.output.getvalue()

        failure: RLMError | None = channel.violation or state.timed_out
        if failure is None and state.exception is not None:
            if isinstance(state.exception, RLMError):
                failure = state.exception
            else:
                failure = SandboxExecutionError(
                    f"{type(state.exception).__name__}: {state.exception}"
                )
        if failure is not None:
            return SandboxResult(success=False, stdout=stdout, error=failure.message, exception=failure)

        if state.has_final:
            return SandboxResult(success=True, answer=_stringify(state.final), answer_type="final", stdout=stdout)

        if state.final_var is not None:
            if state.final_var not in state.namespace:
                error = SandboxExecutionError(f"FINAL_VAR: variable '{state.final_var}' is not defined")
                return SandboxResult(success=False, stdout=stdout, error=error.message, exception=error)
            value = state.namespace[state.final_var]
            return SandboxResult(success=True, answer=_stringify(value), answer_type="final_var", stdout=stdout)

        if stdout.strip():
            return SandboxResult(success=True, answer=stdout.strip(), answer_type="stdout", stdout=stdout)

        if state.result is not None:
            return SandboxResult(success=True, answer=_stringify(state.result), answer_type="result", stdout=stdout)

        error = SandboxExecutionError("Code produced no answer")
        return SandboxResult(success=False, stdout=stdout, error=error.message, exception=error)

    @staticmethod
    def _merge_pending(answer: str, resolved) -> str:
        unplaced = []
        for req in resolved:
            marker = PENDING_MARKER.format(id=req.id)
            text = req.response if req.error is None else f"[Error: {req.error.message}]"
            if marker in answer:
                answer = answer.replace(marker, text or "")
            else:
                unplaced.append(f"[{req.id}] {text}")
        if unplaced:
            answer += "\n\nSub-query results:\n" + "\n".join(unplaced)
        return answer

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
