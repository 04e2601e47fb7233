"""
gcp-broker: fragment validation and compilation.

Purpose
- Turn an untrusted source fragment into a code object the engine can run, or
  fail with a typed, non-retryable error.

Pipeline
1. Parse (``MalformedSourceError`` with the parser's message on failure).
2. Require at least one ``return`` among the fragment's top-level statements
   (``MissingResultError`` otherwise). Nested returns are not inspected.
3. Reject restricted constructs: dunder names, private attributes and frame or
   code introspection attributes (``LoweringError``).
4. Instrument loops, function bodies, exception handlers and comprehension
   iterables with deadline checkpoints, wrap the body in an ``async def`` and
   compile it (``LoweringError`` on failure).

The whole pipeline is pure: no I/O, no clock reads, no global state.
"""

from __future__ import annotations

import ast
import hashlib
from dataclasses import dataclass
from types import CodeType
from typing import Final

from gcp_broker.sandbox.errors import LoweringError, MalformedSourceError, MissingResultError

FRAGMENT_FILENAME: Final[str] = "<fragment>"
ENTRYPOINT_NAME: Final[str] = "__fragment_main__"
CHECKPOINT_NAME: Final[str] = "__checkpoint__"
ASYNC_CHECKPOINT_NAME: Final[str] = "__checkpoint_async__"
GUARD_ITER_NAME: Final[str] = "__guard_iter__"

FORBIDDEN_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    {
        "ag_await",
        "ag_code",
        "ag_frame",
        "cr_await",
        "cr_code",
        "cr_frame",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "format",
        "format_map",
        "gi_code",
        "gi_frame",
        "gi_yieldfrom",
        "mro",
        "tb_frame",
        "tb_next",
    }
)

_PARSE_FLAGS: Final[int] = ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT
_WRAPPER_TEMPLATE: Final[str] = f"async def {ENTRYPOINT_NAME}():\n    pass\n"


@dataclass(frozen=True, slots=True)
class CompiledFragment:
    """Executable form of a validated fragment."""

    code: CodeType
    entrypoint: str
    source_sha256: str
    line_count: int


def compile_fragment(source: str) -> CompiledFragment:
    """Validate, lower and compile ``source``."""

    if not isinstance(source, str):
        raise MalformedSourceError(f"fragment must be text, got {type(source).__name__}")

    module = parse_fragment(source)
    require_top_level_return(module)
    check_restricted_constructs(module)
    code = lower_fragment(module)
    return CompiledFragment(
        code=code,
        entrypoint=ENTRYPOINT_NAME,
        source_sha256=hashlib.sha256(source.encode("utf-8")).hexdigest(),
        line_count=len(source.splitlines()),
    )


def parse_fragment(source: str) -> ast.Module:
    try:
        parsed = compile(source, FRAGMENT_FILENAME, "exec", flags=_PARSE_FLAGS, dont_inherit=True)
    except SyntaxError as exc:
        raise MalformedSourceError(_describe_syntax_error(exc)) from exc
    except (ValueError, RecursionError, MemoryError) as exc:
        raise MalformedSourceError(str(exc) or type(exc).__name__) from exc
    if not isinstance(parsed, ast.Module):  # pragma: no cover - exec mode always yields Module
        raise MalformedSourceError("fragment did not parse to a module")
    return parsed


def require_top_level_return(module: ast.Module) -> None:
    if not any(isinstance(statement, ast.Return) for statement in module.body):
        raise MissingResultError()


def check_restricted_constructs(module: ast.Module) -> None:
    for node in ast.walk(module):
        violation = _violation_for(node)
        if violation is not None:
            line = getattr(node, "lineno", None)
            where = f" (line {line})" if line is not None else ""
            raise LoweringError(f"{violation}{where}")


def lower_fragment(module: ast.Module) -> CodeType:
    instrumented = _CheckpointInjector().instrument_body(module.body)

    wrapper_module = ast.parse(_WRAPPER_TEMPLATE, filename=FRAGMENT_FILENAME)
    wrapper = wrapper_module.body[0]
    if not isinstance(wrapper, ast.AsyncFunctionDef):  # pragma: no cover - fixed template
        raise LoweringError("wrapper template must define an async function")
    wrapper.body = instrumented
    ast.fix_missing_locations(wrapper_module)

    try:
        return compile(wrapper_module, FRAGMENT_FILENAME, "exec", dont_inherit=True)
    except SyntaxError as exc:
        raise LoweringError(_describe_syntax_error(exc)) from exc
    except (ValueError, TypeError, RecursionError, MemoryError) as exc:
        raise LoweringError(str(exc) or type(exc).__name__) from exc


def _describe_syntax_error(exc: SyntaxError) -> str:
    message = exc.msg or "invalid syntax"
    if exc.lineno is None:
        return message
    if exc.offset is None:
        return f"{message} (line {exc.lineno})"
    return f"{message} (line {exc.lineno}, column {exc.offset})"


def _violation_for(node: ast.AST) -> str | None:
    if isinstance(node, ast.Name) and node.id.startswith("__"):
        return f"use of reserved name {node.id!r} is not allowed"
    if isinstance(node, ast.Attribute):
        if node.attr.startswith("_"):
            return f"access to private attribute {node.attr!r} is not allowed"
        if node.attr in FORBIDDEN_ATTRIBUTES:
            return f"access to attribute {node.attr!r} is not allowed"
    if isinstance(node, (ast.Global, ast.Nonlocal)):
        for name in node.names:
            if name.startswith("__"):
                return f"use of reserved name {name!r} is not allowed"
    if isinstance(node, ast.alias) and node.asname is not None and node.asname.startswith("__"):
        return f"use of reserved name {node.asname!r} is not allowed"
    if isinstance(node, ast.MatchClass):
        for attr in node.kwd_attrs:
            if attr.startswith("_") or attr in FORBIDDEN_ATTRIBUTES:
                return f"access to attribute {attr!r} is not allowed"
    return None


class _CheckpointInjector(ast.NodeTransformer):
    """Insert deadline checkpoints so long-running fragments can be stopped.

    Loops directly inside coroutines get an awaited checkpoint that also yields
    to the event loop; everything else gets the synchronous one.
    """

    def __init__(self) -> None:
        self._async_scopes: list[bool] = [True]

    def instrument_body(self, body: list[ast.stmt]) -> list[ast.stmt]:
        return [self._visit_stmt(statement) for statement in body]

    def _visit_stmt(self, statement: ast.stmt) -> ast.stmt:
        visited = self.visit(statement)
        if not isinstance(visited, ast.stmt):  # pragma: no cover - visitors return statements
            raise LoweringError("statement instrumentation produced a non-statement")
        return visited

    # Scopes -----------------------------------------------------------------

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> ast.AST:
        return self._visit_function(node, is_async=True)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> ast.AST:
        return self._visit_function(node, is_async=False)

    def visit_Lambda(self, node: ast.Lambda) -> ast.AST:
        self._async_scopes.append(False)
        try:
            return self.generic_visit(node)
        finally:
            self._async_scopes.pop()

    def visit_ClassDef(self, node: ast.ClassDef) -> ast.AST:
        self._async_scopes.append(False)
        try:
            return self.generic_visit(node)
        finally:
            self._async_scopes.pop()

    def _visit_function(
        self, node: ast.FunctionDef | ast.AsyncFunctionDef, *, is_async: bool
    ) -> ast.AST:
        self._async_scopes.append(is_async)
        try:
            self.generic_visit(node)
        finally:
            self._async_scopes.pop()
        node.body = [self._sync_checkpoint(node), *node.body]
        return node

    # Loops ------------------------------------------------------------------

    def visit_For(self, node: ast.For) -> ast.AST:
        return self._visit_loop(node)

    def visit_AsyncFor(self, node: ast.AsyncFor) -> ast.AST:
        return self._visit_loop(node)

    def visit_While(self, node: ast.While) -> ast.AST:
        return self._visit_loop(node)

    def _visit_loop(self, node: ast.For | ast.AsyncFor | ast.While) -> ast.AST:
        self.generic_visit(node)
        checkpoint = (
            self._async_checkpoint(node) if self._async_scopes[-1] else self._sync_checkpoint(node)
        )
        node.body = [checkpoint, *node.body]
        return node

    # Handlers ---------------------------------------------------------------

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> ast.AST:
        self.generic_visit(node)
        node.body = [self._sync_checkpoint(node), *node.body]
        return node

    def visit_Try(self, node: ast.Try) -> ast.AST:
        self.generic_visit(node)
        if node.finalbody:
            node.finalbody = [self._sync_checkpoint(node.finalbody[0]), *node.finalbody]
        return node

    def visit_TryStar(self, node: ast.TryStar) -> ast.AST:
        self.generic_visit(node)
        if node.finalbody:
            node.finalbody = [self._sync_checkpoint(node.finalbody[0]), *node.finalbody]
        return node

    # Comprehensions ---------------------------------------------------------

    def visit_comprehension(self, node: ast.comprehension) -> ast.AST:
        self.generic_visit(node)
        if not node.is_async:
            node.iter = ast.copy_location(
                ast.Call(
                    func=ast.Name(id=GUARD_ITER_NAME, ctx=ast.Load()),
                    args=[node.iter],
                    keywords=[],
                ),
                node.iter,
            )
        return node

    # Builders ---------------------------------------------------------------

    @staticmethod
    def _sync_checkpoint(anchor: ast.AST) -> ast.stmt:
        call = ast.Call(func=ast.Name(id=CHECKPOINT_NAME, ctx=ast.Load()), args=[], keywords=[])
        return _located(ast.Expr(value=call), anchor)

    @staticmethod
    def _async_checkpoint(anchor: ast.AST) -> ast.stmt:
        call = ast.Call(
            func=ast.Name(id=ASYNC_CHECKPOINT_NAME, ctx=ast.Load()), args=[], keywords=[]
        )
        return _located(ast.Expr(value=ast.Await(value=call)), anchor)


def _located(statement: ast.stmt, anchor: ast.AST) -> ast.stmt:
    ast.copy_location(statement, anchor)
    ast.fix_missing_locations(statement)
    return statement


__all__ = [
    "ASYNC_CHECKPOINT_NAME",
    "CHECKPOINT_NAME",
    "ENTRYPOINT_NAME",
    "FORBIDDEN_ATTRIBUTES",
    "FRAGMENT_FILENAME",
    "GUARD_ITER_NAME",
    "CompiledFragment",
    "check_restricted_constructs",
    "compile_fragment",
    "lower_fragment",
    "parse_fragment",
    "require_top_level_return",
]
