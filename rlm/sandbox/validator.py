"""Static checks on generated code before it is allowed to run."""

from __future__ import annotations

import ast
from dataclasses import dataclass, field

from ..exceptions import CodeValidationError

# Modules generated code may import; everything else is rejected.
ALLOWED_MODULES = frozenset({
    "re", "json", "math", "collections", "itertools", "functools",
    "statistics", "datetime", "string", "textwrap", "operator",
})

# Named so the rejection message says what capability was asked for.
FORBIDDEN_MODULES: dict[str, str] = {
    "os": "process/file access",
    "sys": "interpreter state",
    "subprocess": "process access",
    "shutil": "file access",
    "pathlib": "file access",
    "io": "file access",
    "tempfile": "file access",
    "glob": "file access",
    "socket": "network access",
    "http": "network access",
    "urllib": "network access",
    "requests": "network access",
    "httpx": "network access",
    "importlib": "dynamic imports",
    "builtins": "interpreter state",
    "inspect": "reflection",
    "gc": "interpreter state",
    "ctypes": "native code",
    "threading": "thread access",
    "multiprocessing": "process access",
    "signal": "process access",
    "pickle": "code loading",
    "marshal": "code loading",
    "asyncio": "event loop access",
}

FORBIDDEN_CALLS: dict[str, str] = {
    "open": "file operations not allowed",
    "exec": "exec() not allowed",
    "eval": "eval() not allowed",
    "compile": "compile() not allowed",
    "__import__": "__import__() not allowed",
    "globals": "globals() not allowed",
    "locals": "locals() not allowed",
    "vars": "vars() not allowed",
    "getattr": "getattr() not allowed",
    "setattr": "setattr() not allowed",
    "delattr": "delattr() not allowed",
    "breakpoint": "breakpoint() not allowed",
    "input": "input() not allowed",
}

FINAL_FUNCTIONS = frozenset({"FINAL", "FINAL_VAR"})


@dataclass
class ValidationResult:
    is_valid: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        if message not in self.errors:
            self.errors.append(message)
        self.is_valid = False


class CodeValidator:
    """
    AST-based rejection of disallowed capabilities.

    Checks imports, calls to dangerous builtins, and any dunder name or
    attribute (the usual route from an object back to the interpreter).
    """

    def __init__(self, max_code_length: int = 4000):
        self.max_code_length = max_code_length

    def validate(self, code: str) -> ValidationResult:
        result = ValidationResult()

        if not code or not code.strip():
            result.add_error("No code to execute")
            return result

        if len(code) > self.max_code_length:
            result.add_error(f"Code exceeds maximum length ({len(code)} > {self.max_code_length})")

        try:
            tree = ast.parse(code)
        except SyntaxError as e:
            result.add_error(f"Syntax error on line {e.lineno}: {e.msg}")
            return result

        calls_final = False
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    self._check_module(alias.name, result)
            elif isinstance(node, ast.ImportFrom):
                if node.level:
                    result.add_error("relative imports not allowed")
                else:
                    self._check_module(node.module or "", result)
            elif isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
                name = node.func.id
                if name in FORBIDDEN_CALLS:
                    result.add_error(FORBIDDEN_CALLS[name])
                if name in FINAL_FUNCTIONS:
                    calls_final = True
            elif isinstance(node, ast.Attribute) and node.attr.startswith("__"):
                result.add_error(f"access to '{node.attr}' not allowed")
            elif isinstance(node, ast.Name) and node.id.startswith("__"):
                result.add_error(f"use of '{node.id}' not allowed")
            elif isinstance(node, (ast.Global, ast.Nonlocal)):
                result.add_error("global/nonlocal statements not allowed")

        if not calls_final:
            result.warnings.append("Code does not call FINAL() or FINAL_VAR() - may not return a result")

        for node in ast.walk(tree):
            if (
                isinstance(node, ast.While)
                and isinstance(node.test, ast.Constant)
                and node.test.value is True
                and not any(isinstance(n, ast.Break) for n in ast.walk(node))
            ):
                result.warnings.append("Potential infinite loop detected")
                break

        return result

    def validate_or_raise(self, code: str) -> ValidationResult:
        result = self.validate(code)
        if not result.is_valid:
            raise CodeValidationError(result.errors)
        return result

    @staticmethod
    def _check_module(name: str, result: ValidationResult) -> None:
        root = name.split(".")[0]
        if root in FORBIDDEN_MODULES:
            result.add_error(f"{root} module import not allowed ({FORBIDDEN_MODULES[root]})")
        elif root not in ALLOWED_MODULES:
            result.add_error(f"{root} module import not allowed")
