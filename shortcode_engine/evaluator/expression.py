"""
Expression Evaluator: restricted arithmetic over fully substituted text.

Behavioral Contract:
- Accepts only numbers, + - * / ( ), commas and the allow-listed functions
  abs, round, floor, ceil, pow, sqrt, min, max (optionally spelled Math.abs etc.)
- Rejects anything else before parsing; never executes host-language code
- Parses into an AST with a Pratt parser and interprets the AST directly
- Results must be finite and within the magnitude ceiling
- Async evaluation runs under a hard timeout
"""

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from shortcode_engine.errors import (
    EvaluationError,
    EvaluationTimeoutError,
    ExpressionSyntaxError,
    ResultOutOfRangeError,
    UnbalancedExpressionError,
    UnsafeExpressionError,
)
from shortcode_engine.models.config import EngineConfig
from shortcode_engine.models.processing import EvaluationResult

logger = logging.getLogger(__name__)


def _js_round(x: float) -> float:
    # Math.round semantics: halves round towards +infinity
    return float(math.floor(x + 0.5))


def _pow(base: float, exponent: float) -> float:
    try:
        return math.pow(base, exponent)
    except OverflowError:
        return math.inf
    except ValueError:
        return math.nan


def _sqrt(x: float) -> float:
    return math.sqrt(x) if x >= 0 else math.nan


# name -> (min args, max args or None for variadic, implementation)
ALLOWED_FUNCTIONS: Dict[str, Tuple[int, Optional[int], Callable[..., float]]] = {
    "abs": (1, 1, lambda x: abs(x)),
    "round": (1, 1, _js_round),
    "floor": (1, 1, lambda x: float(math.floor(x))),
    "ceil": (1, 1, lambda x: float(math.ceil(x))),
    "pow": (2, 2, _pow),
    "sqrt": (1, 1, _sqrt),
    "min": (1, None, lambda *xs: min(xs)),
    "max": (1, None, lambda *xs: max(xs)),
}

_FUNCTION_NAME_PATTERN = re.compile(
    r"(?<![A-Za-z0-9_.])(?:Math\.)?(" + "|".join(ALLOWED_FUNCTIONS) + r")(?=\s*\()"
)
_SAFE_CHARS = re.compile(r"^[0-9+\-*/().,\s]*$")
_EVALUABLE_CHARS = re.compile(r"^[\d+\-*/().\s]+$")
_OPERATOR_CHARS = re.compile(r"[+\-*/()]")

_TOKEN_PATTERN = re.compile(
    r"\s*(?:"
    r"(?P<number>\d+(?:\.\d*)?|\.\d+)"
    r"|(?P<name>(?:Math\.)?[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<op>[+\-*/(),])"
    r")"
)


# --- AST ---

@dataclass(frozen=True)
class NumberNode:
    value: float


@dataclass(frozen=True)
class UnaryNode:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class BinaryNode:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class CallNode:
    name: str
    args: Tuple["Node", ...]


Node = Union[NumberNode, UnaryNode, BinaryNode, CallNode]


# --- Tokenizer ---

@dataclass(frozen=True)
class _Tok:
    kind: str                               # "number" | "name" | "op" | "end"
    text: str
    pos: int


def _tokenize(text: str) -> List[_Tok]:
    tokens = []
    pos = 0
    length = len(text)
    while pos < length:
        if text[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_PATTERN.match(text, pos)
        if not match or match.end() == pos:
            raise UnsafeExpressionError(
                f"Invalid character '{text[pos]}' at position {pos}"
            )
        kind = match.lastgroup
        value = match.group(kind)
        if kind == "name":
            name = value[5:] if value.startswith("Math.") else value
            if name not in ALLOWED_FUNCTIONS:
                raise UnsafeExpressionError(f"Unsupported identifier '{value}'")
            value = name
        tokens.append(_Tok(kind, value, match.start(kind)))
        pos = match.end()
    tokens.append(_Tok("end", "", length))
    return tokens


# --- Pratt parser ---

_BINARY_POWER = {"+": 10, "-": 10, "*": 20, "/": 20}
_PREFIX_POWER = 30


class _Parser:
    def __init__(self, tokens: List[_Tok], max_nesting_depth: int):
        self._tokens = tokens
        self._index = 0
        self._depth = 0
        self._max_depth = max_nesting_depth

    def parse(self) -> Node:
        if self._peek().kind == "end":
            raise ExpressionSyntaxError("Empty expression")
        node = self._expression(0)
        tok = self._peek()
        if tok.kind != "end":
            raise ExpressionSyntaxError(
                f"Unexpected '{tok.text}' at position {tok.pos}"
            )
        return node

    def _peek(self) -> _Tok:
        return self._tokens[self._index]

    def _advance(self) -> _Tok:
        tok = self._tokens[self._index]
        self._index += 1
        return tok

    def _expect(self, text: str) -> None:
        tok = self._advance()
        if tok.kind != "op" or tok.text != text:
            found = tok.text or "end of expression"
            raise ExpressionSyntaxError(f"Expected '{text}' but found '{found}'")

    def _expression(self, min_power: int) -> Node:
        self._depth += 1
        if self._depth > self._max_depth:
            raise ExpressionSyntaxError("Expression is nested too deeply")
        try:
            left = self._prefix()
            while True:
                tok = self._peek()
                power = _BINARY_POWER.get(tok.text) if tok.kind == "op" else None
                if power is None or power <= min_power:
                    return left
                self._advance()
                right = self._expression(power)
                left = BinaryNode(tok.text, left, right)
        finally:
            self._depth -= 1

    def _prefix(self) -> Node:
        tok = self._advance()
        if tok.kind == "number":
            return NumberNode(float(tok.text))
        if tok.kind == "op" and tok.text in ("+", "-"):
            return UnaryNode(tok.text, self._expression(_PREFIX_POWER))
        if tok.kind == "op" and tok.text == "(":
            node = self._expression(0)
            self._expect(")")
            return node
        if tok.kind == "name":
            return self._call(tok)
        found = tok.text or "end of expression"
        raise ExpressionSyntaxError(f"Unexpected '{found}' at position {tok.pos}")

    def _call(self, tok: _Tok) -> Node:
        self._expect("(")
        args: List[Node] = []
        if not (self._peek().kind == "op" and self._peek().text == ")"):
            args.append(self._expression(0))
            while self._peek().kind == "op" and self._peek().text == ",":
                self._advance()
                args.append(self._expression(0))
        self._expect(")")

        min_args, max_args, _ = ALLOWED_FUNCTIONS[tok.text]
        if len(args) < min_args or (max_args is not None and len(args) > max_args):
            raise ExpressionSyntaxError(
                f"Function '{tok.text}' called with {len(args)} argument(s)"
            )
        return CallNode(tok.text, tuple(args))


# --- Interpreter ---

def _interpret(node: Node) -> float:
    if isinstance(node, NumberNode):
        return node.value
    if isinstance(node, UnaryNode):
        value = _interpret(node.operand)
        return -value if node.op == "-" else value
    if isinstance(node, BinaryNode):
        left = _interpret(node.left)
        right = _interpret(node.right)
        if node.op == "+":
            return left + right
        if node.op == "-":
            return left - right
        if node.op == "*":
            return left * right
        if node.op == "/":
            if right == 0:
                raise ResultOutOfRangeError("Division by zero")
            return left / right
        raise ExpressionSyntaxError(f"Unknown operator '{node.op}'")
    if isinstance(node, CallNode):
        _, _, fn = ALLOWED_FUNCTIONS[node.name]
        return fn(*(_interpret(arg) for arg in node.args))
    raise TypeError(f"Unknown expression node: {node!r}")


def check_balanced(text: str) -> None:
    """Raise UnbalancedExpressionError unless every '(' has a matching ')'."""
    depth = 0
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise UnbalancedExpressionError(f"Unbalanced parentheses in: {text.strip()}")
    if depth != 0:
        raise UnbalancedExpressionError(f"Unbalanced parentheses in: {text.strip()}")


def is_evaluable_expression(text: str) -> bool:
    """True if text is plain arithmetic: numbers, operators, parentheses, at least one operator."""
    stripped = text.strip()
    return bool(_EVALUABLE_CHARS.match(stripped)) and bool(_OPERATOR_CHARS.search(stripped))


def format_number(value: float) -> str:
    """Render a number the way it is substituted into text: 7, 2.5, 0.30000000000000004."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int):
        return str(value)
    if math.isfinite(value) and value == int(value) and abs(value) < 1e21:
        return str(int(value))
    text = repr(float(value))
    if "e" in text and math.isfinite(value):
        text = f"{value:.20f}".rstrip("0").rstrip(".")
    return text


class ExpressionEvaluator:
    """
    Safe arithmetic evaluator.

    Only call this with text whose shortcodes have all been substituted.
    """

    def __init__(
        self,
        max_magnitude: float = 1e15,
        max_length: int = 10_000,
        max_nesting_depth: int = 100,
        timeout_seconds: float = 5.0,
        budget_seconds: float = 1.0,
    ):
        self.max_magnitude = max_magnitude
        self.max_length = max_length
        self.max_nesting_depth = max_nesting_depth
        self.timeout_seconds = timeout_seconds
        self.budget_seconds = budget_seconds

    @classmethod
    def from_config(cls, config: EngineConfig) -> "ExpressionEvaluator":
        return cls(
            max_magnitude=config.max_magnitude,
            max_length=config.max_expression_length,
            max_nesting_depth=config.max_nesting_depth,
            timeout_seconds=config.evaluation_timeout_seconds,
            budget_seconds=config.evaluation_budget_seconds,
        )

    def parse(self, text: str) -> Node:
        """Validate and parse text into an AST without evaluating it."""
        if not isinstance(text, str):
            raise EvaluationError("Expression must be a string")
        if len(text) > self.max_length:
            raise UnsafeExpressionError(
                f"Expression exceeds {self.max_length} characters"
            )

        residue = _FUNCTION_NAME_PATTERN.sub("", text)
        if not _SAFE_CHARS.match(residue):
            invalid = sorted(set(re.sub(r"[0-9+\-*/().,\s]", "", residue)))
            raise UnsafeExpressionError(
                f"Expression contains invalid characters: {', '.join(invalid)}"
            )

        check_balanced(text)
        return _Parser(_tokenize(text), self.max_nesting_depth).parse()

    def evaluate(self, text: str) -> float:
        """Evaluate an arithmetic expression. Raises an EvaluationError subclass on failure."""
        tree = self.parse(text)
        try:
            result = _interpret(tree)
        except RecursionError:
            raise ExpressionSyntaxError("Expression is nested too deeply")
        return self.check_range(result)

    async def evaluate_async(self, text: str) -> float:
        """Evaluate in a worker thread under the hard timeout and the soft budget."""
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.evaluate, text),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise EvaluationTimeoutError("Formula execution timeout")

        elapsed = time.perf_counter() - started
        if elapsed > self.budget_seconds:
            raise EvaluationTimeoutError(
                f"Formula execution took too long ({elapsed * 1000:.0f} ms)"
            )
        return result

    async def evaluate_formula(self, text: str) -> EvaluationResult:
        """Formula tester entry point. Never raises; failures are reported in the result."""
        started = time.perf_counter()
        try:
            result = await self.evaluate_async(text)
        except EvaluationError as e:
            logger.debug("Formula evaluation failed for %r: %s", text, e)
            return EvaluationResult(
                success=False,
                error=str(e),
                execution_time_ms=(time.perf_counter() - started) * 1000,
            )
        return EvaluationResult(
            success=True,
            result=result,
            execution_time_ms=(time.perf_counter() - started) * 1000,
        )

    def check_range(self, result: float) -> float:
        if not math.isfinite(result):
            raise ResultOutOfRangeError("Formula result is not a finite number")
        if abs(result) > self.max_magnitude:
            raise ResultOutOfRangeError("Formula result is too large")
        return result
