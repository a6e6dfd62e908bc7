# waflow/services/sandbox.py
"""
Sandboxed execution of user-authored flow functions.

User code is Python and must define ``handler(input, context)`` (plain or
``async def``). It runs in a freshly spawned process with a reduced builtins
table; the source is rejected up front if it imports modules or reaches for
dunder / frame attributes. The parent waits on a pipe and kills the child once
the time budget is spent, so runaway loops are preempted rather than awaited.

Usage:
    result = await run_user_function(code, input="hi", context={}, timeout_ms=500)
    result.output, result.logs, result.duration_ms
"""
from __future__ import annotations

import ast
import asyncio
import functools
import inspect
import json
import math
import multiprocessing
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import anyio

from waflow.core.config import (
    FUNCTION_DEFAULT_TIMEOUT_MS,
    FUNCTION_MAX_TIMEOUT_MS,
    FUNCTION_MIN_TIMEOUT_MS,
    FUNCTION_STARTUP_TIMEOUT_S,
)
from waflow.core.errors import (
    ExecutionFailureError,
    ExecutionTimeoutError,
    NotAFunctionError,
)
from waflow.core.logging_config import get_flow_logger

log = get_flow_logger("sandbox")

HANDLER_NAME = "handler"

# match/case reads attributes by name without an ast.Attribute node (3.10+)
MATCH_STATEMENT = getattr(ast, "Match", None)

# Attribute names that lead back to frames, code objects or globals
FORBIDDEN_ATTRIBUTES = {
    "f_globals", "f_locals", "f_builtins", "f_back", "f_code",
    "gi_frame", "gi_code", "cr_frame", "cr_code", "ag_frame", "ag_code",
    "tb_frame", "tb_next", "co_code", "format", "format_map", "mro",
}

SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "ascii", "bin", "bool", "bytes", "callable", "chr",
    "dict", "divmod", "enumerate", "filter", "float", "frozenset", "hash",
    "hex", "int", "isinstance", "issubclass", "iter", "len", "list", "map",
    "max", "min", "next", "oct", "ord", "pow", "range", "repr", "reversed",
    "round", "set", "slice", "sorted", "str", "sum", "tuple", "zip",
    "ArithmeticError", "AssertionError", "AttributeError", "Exception",
    "IndexError", "KeyError", "LookupError", "NotImplementedError",
    "OverflowError", "RuntimeError", "StopIteration", "TypeError",
    "ValueError", "ZeroDivisionError",
)


@dataclass
class FunctionRunResult:
    output: Any
    logs: List[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"output": self.output, "logs": self.logs, "duration_ms": self.duration_ms}


def clamp_timeout(timeout_ms: Optional[int]) -> int:
    """Default to 5 s and keep the budget inside [100 ms, 20 s]"""
    if timeout_ms is None:
        return FUNCTION_DEFAULT_TIMEOUT_MS
    try:
        value = int(timeout_ms)
    except (TypeError, ValueError):
        return FUNCTION_DEFAULT_TIMEOUT_MS
    return max(FUNCTION_MIN_TIMEOUT_MS, min(FUNCTION_MAX_TIMEOUT_MS, value))


def stringify_log_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


# ────────────────────────────────────────────
# Static checks
# ────────────────────────────────────────────

def check_source(code: str) -> ast.Module:
    """Parse user code and reject constructs that escape the sandbox."""
    try:
        tree = ast.parse(code, filename="<user-function>")
    except SyntaxError as e:
        raise ExecutionFailureError(f"SyntaxError: {e.msg} (line {e.lineno})")

    for node in ast.walk(tree):
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            raise ExecutionFailureError("Imports are not allowed in functions")
        if MATCH_STATEMENT is not None and isinstance(node, MATCH_STATEMENT):
            raise ExecutionFailureError("match statements are not allowed in functions")
        if isinstance(node, (ast.Global, ast.Nonlocal)) and any(n.startswith("__") for n in node.names):
            raise ExecutionFailureError("Access to dunder names is not allowed")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ExecutionFailureError(f"Access to '{node.id}' is not allowed")
        if isinstance(node, ast.Attribute):
            if node.attr.startswith("_") or node.attr in FORBIDDEN_ATTRIBUTES:
                raise ExecutionFailureError(f"Access to attribute '{node.attr}' is not allowed")
    return tree


# ────────────────────────────────────────────
# Child process
# ────────────────────────────────────────────

def _build_namespace(input_value: Any, context: Dict[str, Any], emit) -> Dict[str, Any]:
    import builtins

    safe_builtins = {name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES}
    # class statements need the class builder
    safe_builtins["__build_class__"] = builtins.__build_class__
    safe_builtins["True"] = True
    safe_builtins["False"] = False
    safe_builtins["None"] = None

    def _log(*args):
        emit(" ".join(stringify_log_value(a) for a in args))

    def _print(*args, sep=" ", end=None, file=None, flush=False):
        emit(sep.join(stringify_log_value(a) for a in args))

    safe_builtins["print"] = _print

    return {
        "__builtins__": safe_builtins,
        "__name__": "user_function",
        "input": input_value,
        "context": context,
        "log": _log,
        "console": SimpleNamespace(log=_log, error=_log, info=_log, warn=_log),
        "json": SimpleNamespace(dumps=json.dumps, loads=json.loads),
        "math": math,
        "datetime": datetime,
        "date": date,
        "timedelta": timedelta,
    }


def _child_main(conn, code: str, input_value: Any, context: Dict[str, Any]) -> None:
    """Entry point of the spawned process. Every outcome is reported over the pipe."""

    def emit(line: str) -> None:
        conn.send(("log", line))

    conn.send(("started",))
    try:
        tree = check_source(code)
        namespace = _build_namespace(input_value, context, emit)
        exec(compile(tree, "<user-function>", "exec"), namespace)

        handler = namespace.get(HANDLER_NAME)
        if not callable(handler):
            conn.send(("error", "not_a_function",
                       "Function code must define handler(input, context)"))
            return

        output = handler(input_value, context)
        if inspect.isawaitable(output):
            output = asyncio.run(_await(output))

        try:
            json.dumps(output)
        except (TypeError, ValueError) as e:
            conn.send(("error", "failure", f"Function output is not JSON serializable: {e}"))
            return

        conn.send(("result", output))
    except ExecutionFailureError as e:
        conn.send(("error", "failure", e.message))
    except BaseException as e:  # user code may raise anything, including SystemExit
        conn.send(("error", "failure", f"{type(e).__name__}: {e}"))
    finally:
        conn.close()


async def _await(awaitable):
    return await awaitable


# ────────────────────────────────────────────
# Parent side
# ────────────────────────────────────────────

def _kill(process) -> None:
    if process.is_alive():
        process.kill()
    process.join(timeout=5)


def run_user_function_blocking(
    code: str,
    input_value: Any = None,
    context: Optional[Dict[str, Any]] = None,
    timeout_ms: Optional[int] = None,
) -> FunctionRunResult:
    """
    Run user code in a child process and wait for its result.

    Raises:
        NotAFunctionError: no callable ``handler`` is defined
        ExecutionTimeoutError: the budget ran out (the child is killed)
        ExecutionFailureError: the code raised or used a forbidden construct
    """
    # Reject obviously bad code before paying for a process
    check_source(code)

    budget_ms = clamp_timeout(timeout_ms)
    mp = multiprocessing.get_context("spawn")
    reader, writer = mp.Pipe(duplex=False)
    process = mp.Process(
        target=_child_main,
        args=(writer, code, input_value, dict(context or {})),
        daemon=True,
    )
    logs: List[str] = []

    process.start()
    writer.close()
    try:
        if not reader.poll(FUNCTION_STARTUP_TIMEOUT_S):
            raise ExecutionFailureError("Function sandbox failed to start")
        reader.recv()  # ("started",)

        started = time.monotonic()
        deadline = started + budget_ms / 1000.0
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not reader.poll(remaining):
                log.warning(f"⏱️ Function exceeded {budget_ms}ms, killing pid={process.pid}")
                raise ExecutionTimeoutError(
                    f"Function timed out after {budget_ms}ms", logs=logs
                )
            try:
                message = reader.recv()
            except EOFError:
                raise ExecutionFailureError("Function process exited unexpectedly", logs=logs)

            kind = message[0]
            if kind == "log":
                logs.append(message[1])
                continue

            duration_ms = int((time.monotonic() - started) * 1000)
            if kind == "result":
                log.debug(f"✅ Function finished in {duration_ms}ms ({len(logs)} log lines)")
                return FunctionRunResult(output=message[1], logs=logs, duration_ms=duration_ms)

            _, error_kind, error_message = message
            if error_kind == "not_a_function":
                raise NotAFunctionError(error_message, logs=logs)
            raise ExecutionFailureError(error_message, logs=logs)
    finally:
        reader.close()
        _kill(process)


async def run_user_function(
    code: str,
    input_value: Any = None,
    context: Optional[Dict[str, Any]] = None,
    timeout_ms: Optional[int] = None,
) -> FunctionRunResult:
    """Async wrapper: the blocking wait happens on a worker thread."""
    return await anyio.to_thread.run_sync(
        functools.partial(run_user_function_blocking, code, input_value, context, timeout_ms)
    )
