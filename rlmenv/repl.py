"""Sandboxed execution of model-generated Python code.

Generated code runs against a namespace that contains only:

* a restricted builtins table (no ``__import__``, ``open``, ``eval``,
  ``exec``, ``getattr``/``setattr``/``vars``),
* plain wrapper functions for the engine operations (never the engine
  object itself),
* namespaces standing in for ``re``, ``json``, ``math``, ``collections`` and
  ``itertools``.  They carry the public functions, classes and constants of
  those modules but never a module object, so no attribute chain reaches
  ``sys``, ``os`` or the real builtins.

Before execution the code is parsed and rejected when it contains ``import``
statements, touches underscore-prefixed attributes or dunder names, or reads
frame and code introspection attributes (``gi_frame``, ``f_globals``, ...).
Those are the usual routes from a function object back to interpreter
internals.  Stronger isolation (containers, seccomp) is the runtime's job.
"""

import ast
import collections
import itertools
import json
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass
from types import ModuleType, SimpleNamespace
from typing import Any

from .errors import SandboxViolationError

# Restricted set of builtins safe for the REPL sandbox.
_SAFE_BUILTINS: dict[str, Any] = {
    # Types and constructors
    "True": True,
    "False": False,
    "None": None,
    "bool": bool,
    "int": int,
    "float": float,
    "str": str,
    "bytes": bytes,
    "list": list,
    "tuple": tuple,
    "dict": dict,
    "set": set,
    "frozenset": frozenset,
    "type": type,
    "slice": slice,
    "range": range,
    # Iteration and comprehension
    "enumerate": enumerate,
    "zip": zip,
    "map": map,
    "filter": filter,
    "reversed": reversed,
    "iter": iter,
    "next": next,
    # Numeric and math
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sum": sum,
    "pow": pow,
    "divmod": divmod,
    # String and representation
    "repr": repr,
    "chr": chr,
    "ord": ord,
    "format": format,
    # Collections and sorting
    "len": len,
    "sorted": sorted,
    "any": any,
    "all": all,
    # Type checking
    "isinstance": isinstance,
    "callable": callable,
    "hasattr": hasattr,
    # Exceptions (needed for try/except)
    "Exception": Exception,
    "ValueError": ValueError,
    "TypeError": TypeError,
    "KeyError": KeyError,
    "IndexError": IndexError,
    "LookupError": LookupError,
    "RuntimeError": RuntimeError,
    "StopIteration": StopIteration,
    "ZeroDivisionError": ZeroDivisionError,
    "ArithmeticError": ArithmeticError,
}

_RE_NAMES = (
    "compile", "escape", "findall", "finditer", "fullmatch", "match", "search",
    "split", "sub", "subn", "error", "Pattern", "Match",
    "A", "ASCII", "I", "IGNORECASE", "M", "MULTILINE", "S", "DOTALL", "X", "VERBOSE",
)
_JSON_NAMES = ("dumps", "loads", "JSONDecodeError")

# Attributes that lead from generators, coroutines, frames and tracebacks to
# the globals of the interpreter running the sandbox.
_BLOCKED_ATTRIBUTES = frozenset(
    {
        "gi_frame", "gi_code", "gi_yieldfrom",
        "cr_frame", "cr_code", "cr_await",
        "ag_frame", "ag_code", "ag_await",
        "f_back", "f_builtins", "f_code", "f_globals", "f_locals",
        "tb_frame", "tb_next",
    }
)


def module_namespace(module: ModuleType, names: Iterable[str] | None = None) -> SimpleNamespace:
    """Copy the public non-module attributes of ``module`` into a namespace.

    Parameters
    ----------
    module : ModuleType
        Source module.
    names : Iterable[str] | None
        Attributes to copy; defaults to every public name.
    """
    if names is None:
        names = [n for n in dir(module) if not n.startswith("_")]
    members = {n: getattr(module, n) for n in names}
    return SimpleNamespace(**{n: v for n, v in members.items() if not isinstance(v, ModuleType)})


def sandbox_modules() -> dict[str, SimpleNamespace]:
    """Fresh module stand-ins for one sandbox (never shared between sessions)."""
    return {
        "re": module_namespace(re, _RE_NAMES),
        "json": module_namespace(json, _JSON_NAMES),
        "math": module_namespace(math),
        "collections": module_namespace(collections),
        "itertools": module_namespace(itertools),
    }


def validate_code(code: str) -> ast.Module:
    """Parse ``code`` and reject constructs the sandbox does not allow.

    Raises
    ------
    SyntaxError
        If the code does not parse.
    SandboxViolationError
        On ``import`` statements, underscore-prefixed or frame/code
        introspection attribute access, or dunder names.
    """
    tree = ast.parse(code, mode="exec")
    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise SandboxViolationError(
                "import statements are not available; use the pre-imported modules "
                "re, json, math, collections, itertools"
            )
        if isinstance(node, ast.Attribute) and (
            node.attr.startswith("_") or node.attr in _BLOCKED_ATTRIBUTES
        ):
            raise SandboxViolationError(f"access to attribute '{node.attr}' is not allowed")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise SandboxViolationError(f"use of name '{node.id}' is not allowed")
    return tree


@dataclass
class REPLResult:
    """Result from REPL execution."""

    output: str
    error: str | None = None
    success: bool = True
    exception: BaseException | None = None


class REPLEnv:
    """Persistent sandbox namespace.

    Variables assigned by one ``execute()`` call stay visible to the next, so
    a session behaves like an interactive REPL.

    Parameters
    ----------
    functions : dict[str, Any]
        Names injected into the namespace (engine operations and constants).
    max_output_length : int
        Maximum length of captured output per execution.
    """

    def __init__(self, functions: dict[str, Any], max_output_length: int = 10000) -> None:
        self.max_output_length = max_output_length
        self.output_buffer: list[str] = []
        modules = sandbox_modules()
        self._internals = frozenset({"__builtins__", "print", *modules, *functions})
        self._namespace: dict[str, Any] = {
            "__builtins__": _SAFE_BUILTINS.copy(),
            **modules,
            **functions,
            "print": self._capture_print,
        }

    def _capture_print(self, *args: Any, **kwargs: Any) -> None:
        """Capture print output to buffer.

        Supports ``sep`` and ``end`` keyword arguments matching the built-in
        ``print()`` signature.  Other keyword arguments are ignored.
        """
        sep_val = kwargs.get("sep")
        end_val = kwargs.get("end")
        sep: str = str(sep_val) if sep_val is not None else " "
        end: str = str(end_val) if end_val is not None else "\n"
        self.output_buffer.append(sep.join(str(arg) for arg in args) + end)

    def write(self, text: str) -> None:
        """Append text to the current execution's output."""
        self.output_buffer.append(text)

    def user_variables(self) -> dict[str, Any]:
        """Names the generated code assigned itself."""
        return {
            k: v
            for k, v in self._namespace.items()
            if k not in self._internals and not k.startswith("_")
        }

    def _collect_output(self) -> str:
        output = "".join(self.output_buffer)
        if len(output) > self.max_output_length:
            output = output[: self.max_output_length] + "\n[...output truncated]"
        return output

    def execute(self, code: str) -> REPLResult:
        """Execute Python code in the sandbox.

        Exceptions raised by the code are returned on the result (``success``
        False, ``exception`` set) rather than propagated; the caller decides
        which of them end the session.
        """
        self.output_buffer = []
        try:
            tree = validate_code(code)
            exec(compile(tree, "<rlm>", "exec"), self._namespace)  # noqa: S102  # nosec B102
        except Exception as e:
            return REPLResult(
                output=self._collect_output(),
                error=f"{type(e).__name__}: {e!s}",
                success=False,
                exception=e,
            )
        return REPLResult(output=self._collect_output())
