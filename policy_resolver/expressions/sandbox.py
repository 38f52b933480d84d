"""
Sandboxed evaluation of small attribute expressions.

Expressions are gated on their raw text first (denylist, function-call
whitelist, length and nesting limits) and are never executed when gating
fails. Accepted expressions are parsed with ``ast`` and run by a tree
interpreter that only understands a whitelisted set of nodes; ``eval`` and
``exec`` are never used.
"""

import ast
import asyncio
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Any, List, Mapping, Optional, Tuple, Union

from shared.errors import EvaluationTimeout, SecurityViolation
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .functions import SAFE_FUNCTIONS


DEFAULT_TIMEOUT_MS = 1000
MAX_EXPRESSION_LENGTH = 10000
MAX_NESTING_DEPTH = 10
MAX_EXPONENT = 100
MAX_INTEGER_BITS = 4096
MAX_SEQUENCE_LENGTH = 100000
PARSE_CACHE_SIZE = 1024

BLOCKED_PATTERNS: Tuple[str, ...] = (
    # Dynamic code
    r"\beval\s*\(",
    r"\bexec\s*\(",
    r"\bcompile\s*\(",
    r"Function\s*\(",
    r"new\s+Function",
    r"__import__",
    r"\bimport\b",
    r"\brequire\s*\(",
    r"\blambda\b",
    # Object internals
    r"constructor",
    r"prototype",
    r"__proto__",
    r"__\w+__",
    # Globals and module access
    r"\bglobals\s*\(",
    r"\blocals\s*\(",
    r"\bvars\s*\(",
    r"\bgetattr\s*\(",
    r"\bsetattr\s*\(",
    r"\bopen\s*\(",
    r"\bos\.",
    r"\bsys\.",
    r"\bsubprocess\b",
    r"\bbuiltins\b",
    r"\bprocess\.",
    r"\bglobal\.",
    r"\bglobalThis\b",
    r"\bwindow\.",
    r"\bdocument\.",
    r"localStorage",
    r"sessionStorage",
    # Network
    r"\bfetch\s*\(",
    r"XMLHttpRequest",
    r"\bsocket\b",
    r"\burllib\b",
    r"\brequests\.",
    r"\bhttpx\b",
    # Timers
    r"setTimeout",
    r"setInterval",
    r"\bthreading\b",
    r"\bsleep\s*\(",
)

_BLOCKED = tuple(re.compile(pattern) for pattern in BLOCKED_PATTERNS)
_CALL_PATTERN = re.compile(r"(\w+)\s*\(")
_CALL_KEYWORDS = frozenset({"and", "or", "not", "in", "is", "if", "else"})
_STRING_LITERAL = re.compile(r"(\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*')")
_LOGICAL_CALL = re.compile(r"(^|[(,]\s*)(and|or|not)\s*\(")

_CALL_ALIASES = {"and_": "and", "or_": "or", "not_": "not"}
_ATTRIBUTE_ROOTS = frozenset({"attr", "attributes"})

_ALLOWED_AST_NODES = (
    ast.Expression, ast.BoolOp, ast.BinOp, ast.UnaryOp, ast.Compare, ast.Name,
    ast.Load, ast.Constant, ast.And, ast.Or, ast.Not, ast.Eq, ast.NotEq, ast.Lt,
    ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn, ast.Is, ast.IsNot, ast.Add,
    ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod, ast.Pow, ast.USub,
    ast.UAdd, ast.Call, ast.keyword, ast.Attribute, ast.Subscript, ast.Slice,
    ast.List, ast.Tuple, ast.Dict, ast.IfExp,
)


@dataclass
class ExpressionContext:
    """Values visible to an expression."""
    attributes: Dict[str, Any] = field(default_factory=dict)
    constants: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExpressionResult:
    """Outcome of one evaluation. ``computation_time`` is in milliseconds."""
    value: Any = None
    dependencies: List[str] = field(default_factory=list)
    computation_time: float = 0.0
    cached: bool = False
    security_violations: List[str] = field(default_factory=list)


def nesting_depth(expression: str) -> int:
    """Deepest bracket, paren or brace nesting in the text."""
    depth = 0
    deepest = 0
    for char in expression:
        if char in "([{":
            depth += 1
            deepest = max(deepest, depth)
        elif char in ")]}":
            depth -= 1
    return deepest


def normalize(expression: str) -> str:
    """Rewrite the JavaScript-style operators policy authors use into Python.

    String literals are left untouched.
    """
    parts = _STRING_LITERAL.split(expression)
    for index in range(0, len(parts), 2):
        code = parts[index]
        code = code.replace("===", "==").replace("!==", "!=")
        code = code.replace("&&", " and ").replace("||", " or ")
        code = re.sub(r"!(?!=)", " not ", code)
        code = re.sub(r"\btrue\b", "True", code)
        code = re.sub(r"\bfalse\b", "False", code)
        code = re.sub(r"\bnull\b", "None", code)
        code = _LOGICAL_CALL.sub(lambda m: f"{m.group(1)}{m.group(2)}_(", code)
        parts[index] = code
    return "".join(parts).strip()


class _AttributeView:
    """Read-only attribute mapping that records top-level reads."""

    def __init__(self, attributes: Mapping[str, Any], dependencies: List[str]):
        self._attributes = attributes
        self._dependencies = dependencies

    def read(self, name: str) -> Any:
        if name not in self._dependencies:
            self._dependencies.append(name)
        return self._attributes.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._attributes


class _Interpreter:
    """Walks a validated tree against one evaluation's scope."""

    def __init__(self, context: ExpressionContext, deadline: float):
        self.dependencies: List[str] = []
        self.view = _AttributeView(context.attributes, self.dependencies)
        self.constants = context.constants
        self.deadline = deadline

    def run(self, tree: ast.Expression) -> Any:
        return self.visit(tree.body)

    def visit(self, node: ast.AST) -> Any:
        if time.monotonic() > self.deadline:
            raise EvaluationTimeout("Expression execution timeout")

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            return self._name(node.id)

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result = True
                for value in node.values:
                    result = self.visit(value)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self.visit(value)
                if result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            operand = self.visit(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            return +operand

        if isinstance(node, ast.BinOp):
            return self._binop(node)

        if isinstance(node, ast.Compare):
            left = self.visit(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self.visit(comparator)
                if not _compare(op, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            return self.visit(node.body if self.visit(node.test) else node.orelse)

        if isinstance(node, ast.Attribute):
            return self._member(self.visit(node.value), node.attr)

        if isinstance(node, ast.Subscript):
            base = self.visit(node.value)
            key = self.visit(node.slice)
            if isinstance(base, _AttributeView):
                return base.read(str(key))
            return base[key]

        if isinstance(node, ast.Slice):
            return slice(
                self.visit(node.lower) if node.lower else None,
                self.visit(node.upper) if node.upper else None,
                self.visit(node.step) if node.step else None,
            )

        if isinstance(node, ast.Call):
            return self._call(node)

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self.visit(element) for element in node.elts]

        if isinstance(node, ast.Dict):
            return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}

        raise SecurityViolation(f"Unsupported expression element: {type(node).__name__}")

    def _name(self, name: str) -> Any:
        if name in self.constants:
            return self.constants[name]
        if name in _ATTRIBUTE_ROOTS:
            return self.view
        if name in self.view:
            return self.view.read(name)
        raise SecurityViolation(f"Unknown identifier: {name}")

    def _member(self, base: Any, name: str) -> Any:
        if name.startswith("__"):
            raise SecurityViolation("Dunder attribute access is forbidden")
        if isinstance(base, _AttributeView):
            return base.read(name)
        if isinstance(base, dict):
            return base.get(name)
        raise SecurityViolation(f"Attribute access on {type(base).__name__} is not allowed")

    def _call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name):
            raise SecurityViolation("Only safe functions may be called")

        name = _CALL_ALIASES.get(node.func.id, node.func.id)
        function = SAFE_FUNCTIONS.get(name)
        if function is None:
            raise SecurityViolation(f"Unsafe function call: {name}")

        args = [self.visit(arg) for arg in node.args]
        kwargs = {kw.arg: self.visit(kw.value) for kw in node.keywords}
        return function(*args, **kwargs)

    def _binop(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        op = node.op

        if isinstance(op, ast.Add):
            _check_size(left, right)
            return left + right
        if isinstance(op, ast.Sub):
            return left - right
        if isinstance(op, ast.Mult):
            _check_repeat(left, right)
            _check_product_bits(left, right)
            return left * right
        if isinstance(op, ast.Div):
            return left / right
        if isinstance(op, ast.FloorDiv):
            return left // right
        if isinstance(op, ast.Mod):
            if isinstance(left, str):
                raise SecurityViolation("String formatting is not allowed")
            return left % right
        if isinstance(op, ast.Pow):
            if isinstance(right, (int, float)) and abs(right) > MAX_EXPONENT:
                raise SecurityViolation(f"Exponent too large: {right} > {MAX_EXPONENT}")
            _check_power_bits(left, right)
            return left ** right

        raise SecurityViolation(f"Unsupported operator: {type(op).__name__}")


def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    if isinstance(op, ast.Eq):
        return left == right
    if isinstance(op, ast.NotEq):
        return left != right
    if isinstance(op, ast.Lt):
        return left < right
    if isinstance(op, ast.LtE):
        return left <= right
    if isinstance(op, ast.Gt):
        return left > right
    if isinstance(op, ast.GtE):
        return left >= right
    if isinstance(op, ast.In):
        return left in right
    if isinstance(op, ast.NotIn):
        return left not in right
    if isinstance(op, ast.Is):
        return left is right
    if isinstance(op, ast.IsNot):
        return left is not right
    raise SecurityViolation(f"Unsupported comparison: {type(op).__name__}")


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (str, list, tuple))


def _check_size(left: Any, right: Any) -> None:
    if _is_sequence(left) and _is_sequence(right) and len(left) + len(right) > MAX_SEQUENCE_LENGTH:
        raise SecurityViolation(f"Sequence too large (> {MAX_SEQUENCE_LENGTH})")


def _check_repeat(left: Any, right: Any) -> None:
    for sequence, count in ((left, right), (right, left)):
        if _is_sequence(sequence) and isinstance(count, int) and len(sequence) * count > MAX_SEQUENCE_LENGTH:
            raise SecurityViolation(f"Sequence too large (> {MAX_SEQUENCE_LENGTH})")


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_power_bits(base: Any, exponent: Any) -> None:
    if _is_integer(base) and _is_integer(exponent) and exponent > 0:
        if base.bit_length() * exponent > MAX_INTEGER_BITS:
            raise SecurityViolation(f"Integer result too large (> {MAX_INTEGER_BITS} bits)")


def _check_product_bits(left: Any, right: Any) -> None:
    if _is_integer(left) and _is_integer(right):
        if left.bit_length() + right.bit_length() > MAX_INTEGER_BITS:
            raise SecurityViolation(f"Integer result too large (> {MAX_INTEGER_BITS} bits)")


def _validate_ast(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_AST_NODES):
            raise SecurityViolation(f"Disallowed syntax: {type(node).__name__}")
        if isinstance(node, ast.Attribute) and node.attr.startswith("__"):
            raise SecurityViolation("Dunder attribute access is forbidden")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise SecurityViolation("Dunder name is forbidden")


class ExpressionSandbox:
    """Validates and evaluates expressions against a restricted scope."""

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_length: int = MAX_EXPRESSION_LENGTH,
        max_depth: int = MAX_NESTING_DEPTH,
        metrics: Optional[MetricsCollector] = None
    ):
        self.timeout_ms = timeout_ms
        self.max_length = max_length
        self.max_depth = max_depth
        self.metrics = metrics
        self.logger = get_logger("policy_resolver.sandbox")

        self._parse_cache: Dict[str, ast.Expression] = {}
        self._parse_lock = threading.Lock()

    def validate(self, expression: str) -> List[str]:
        """Run text gating only. An empty list means the expression may execute."""
        violations = []

        for pattern in _BLOCKED:
            if pattern.search(expression):
                violations.append(f"Blocked pattern detected: {pattern.pattern}")

        for match in _CALL_PATTERN.finditer(expression):
            name = match.group(1)
            if name not in SAFE_FUNCTIONS and name not in _CALL_KEYWORDS:
                violations.append(f"Unsafe function call: {name}")

        if len(expression) > self.max_length:
            violations.append("Expression too long (potential DoS)")

        depth = nesting_depth(expression)
        if depth > self.max_depth:
            violations.append(f"Expression nesting too deep: {depth} > {self.max_depth}")

        return violations

    async def evaluate(
        self,
        expression: str,
        context: Union[ExpressionContext, Mapping[str, Any], None] = None,
        timeout_ms: Optional[float] = None
    ) -> ExpressionResult:
        """Evaluate off the event loop under a hard wall-clock timeout."""
        timeout_ms = self.timeout_ms if timeout_ms is None else timeout_ms
        start = time.perf_counter()

        blocked = self._gate(expression, start)
        if blocked:
            return blocked

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._execute, expression, context, timeout_ms, start),
                timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            return self._timed_out(expression, timeout_ms, start)

    def evaluate_sync(
        self,
        expression: str,
        context: Union[ExpressionContext, Mapping[str, Any], None] = None,
        timeout_ms: Optional[float] = None
    ) -> ExpressionResult:
        """Evaluate inline; the deadline is enforced between interpreter steps."""
        timeout_ms = self.timeout_ms if timeout_ms is None else timeout_ms
        start = time.perf_counter()

        blocked = self._gate(expression, start)
        if blocked:
            return blocked

        return self._execute(expression, context, timeout_ms, start)

    def _gate(self, expression: str, start: float) -> Optional[ExpressionResult]:
        violations = self.validate(expression)
        if not violations:
            return None

        self.logger.warning(
            "Expression blocked",
            violations=violations,
            expression_length=len(expression)
        )
        self._record("blocked")
        return ExpressionResult(
            computation_time=_elapsed_ms(start),
            security_violations=violations
        )

    def _execute(
        self,
        expression: str,
        context: Union[ExpressionContext, Mapping[str, Any], None],
        timeout_ms: float,
        start: float
    ) -> ExpressionResult:
        if not isinstance(context, ExpressionContext):
            context = ExpressionContext(attributes=dict(context or {}))

        interpreter = _Interpreter(context, time.monotonic() + timeout_ms / 1000)
        cached = False

        try:
            tree, cached = self._parse(expression)
            value = interpreter.run(tree)
        except EvaluationTimeout:
            return self._timed_out(expression, timeout_ms, start, interpreter.dependencies)
        except SecurityViolation as e:
            self.logger.warning("Expression rejected at runtime", error=e.message)
            self._record("error")
            return ExpressionResult(
                dependencies=interpreter.dependencies,
                computation_time=_elapsed_ms(start),
                cached=cached,
                security_violations=[e.message]
            )
        except Exception as e:
            self.logger.warning("Expression evaluation error", error=str(e))
            self._record("error")
            return ExpressionResult(
                dependencies=interpreter.dependencies,
                computation_time=_elapsed_ms(start),
                cached=cached,
                security_violations=[f"Expression evaluation error: {e}"]
            )

        self._record("success")
        return ExpressionResult(
            value=value,
            dependencies=interpreter.dependencies,
            computation_time=_elapsed_ms(start),
            cached=cached
        )

    def _parse(self, expression: str) -> Tuple[ast.Expression, bool]:
        source = normalize(expression)

        with self._parse_lock:
            tree = self._parse_cache.get(source)
        if tree is not None:
            return tree, True

        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as e:
            raise SecurityViolation(f"Invalid expression syntax: {e.msg}") from e
        _validate_ast(tree)

        with self._parse_lock:
            if len(self._parse_cache) >= PARSE_CACHE_SIZE:
                self._parse_cache.pop(next(iter(self._parse_cache)))
            self._parse_cache[source] = tree
        return tree, False

    def _timed_out(
        self,
        expression: str,
        timeout_ms: float,
        start: float,
        dependencies: Optional[List[str]] = None
    ) -> ExpressionResult:
        self.logger.warning(
            "Expression timed out",
            timeout_ms=timeout_ms,
            expression_length=len(expression)
        )
        self._record("timeout")
        return ExpressionResult(
            dependencies=list(dependencies or []),
            computation_time=_elapsed_ms(start),
            security_violations=[f"Expression execution timeout after {timeout_ms} ms"]
        )

    def _record(self, status: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("expression_evaluations_total", status=status)


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
