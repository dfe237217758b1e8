"""
Legacy Lookup Tables: ordered condition strings, first match wins.

Condition grammar:
    condition  := or_expr | "true"
    or_expr    := and_expr ("||" and_expr)*
    and_expr   := comparison ("&&" comparison)*
    comparison := operand (op operand)? | "(" or_expr ")"
    op         := == | === | != | !== | > | >= | < | <=
    operand    := [field:x] | [calc:x] | 'string' | "string" | number | true | false

A condition that cannot be evaluated (unknown syntax, missing value) is
skipped and the next one is tried.
"""

import logging
import re
from typing import Any, Callable, List, Optional, Tuple

from shortcode_engine.errors import ExpressionSyntaxError, ShortcodeError
from shortcode_engine.lookup.formatting import parse_number
from shortcode_engine.models.definitions import LegacyLookupCondition, LegacyLookupTable

logger = logging.getLogger(__name__)

# (kind, name) -> value; raise MissingFieldError when there is none
OperandResolver = Callable[[str, str], Any]

_TOKEN_PATTERN = re.compile(
    r"\s*(?:"
    r"\[(?P<ref_kind>field|calc):(?P<ref_name>[^\]]+)\]"
    r"|'(?P<squote>[^']*)'"
    r"|\"(?P<dquote>[^\"]*)\""
    r"|(?P<number>-?\d+(?:\.\d+)?)"
    r"|(?P<bool>true|false)\b"
    r"|(?P<op>===|!==|==|!=|>=|<=|>|<|&&|\|\||\(|\))"
    r")"
)


def _tokenize(rule: str) -> List[Tuple[str, Any]]:
    tokens: List[Tuple[str, Any]] = []
    pos = 0
    rule = rule.strip()
    while pos < len(rule):
        match = _TOKEN_PATTERN.match(rule, pos)
        if not match or match.end() == pos:
            raise ExpressionSyntaxError(f"Cannot parse condition near '{rule[pos:]}'")
        if match.group("ref_kind"):
            tokens.append(("ref", (match.group("ref_kind"), match.group("ref_name").strip())))
        elif match.group("squote") is not None:
            tokens.append(("literal", match.group("squote")))
        elif match.group("dquote") is not None:
            tokens.append(("literal", match.group("dquote")))
        elif match.group("number") is not None:
            tokens.append(("literal", float(match.group("number"))))
        elif match.group("bool"):
            tokens.append(("literal", match.group("bool") == "true"))
        else:
            tokens.append(("op", match.group("op")))
        pos = match.end()
        while pos < len(rule) and rule[pos].isspace():
            pos += 1
    return tokens


def _loose_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return left == right
    left_num, right_num = parse_number(left), parse_number(right)
    if left_num is not None and right_num is not None and not (
        isinstance(left, str) and isinstance(right, str)
    ):
        return left_num == right_num
    return str(left) == str(right)


def _strict_equals(left: Any, right: Any) -> bool:
    left_is_num = isinstance(left, (int, float)) and not isinstance(left, bool)
    right_is_num = isinstance(right, (int, float)) and not isinstance(right, bool)
    if left_is_num and right_is_num:
        return float(left) == float(right)
    if left_is_num != right_is_num:
        return False
    return left == right


def _compare(op: str, left: Any, right: Any) -> bool:
    if op in ("==", "!="):
        result = _loose_equals(left, right)
        return result if op == "==" else not result
    if op in ("===", "!=="):
        result = _strict_equals(left, right)
        return result if op == "===" else not result

    left_num, right_num = parse_number(left), parse_number(right)
    if left_num is None or right_num is None:
        return False
    if op == ">":
        return left_num > right_num
    if op == ">=":
        return left_num >= right_num
    if op == "<":
        return left_num < right_num
    return left_num <= right_num


class _ConditionParser:
    def __init__(self, tokens: List[Tuple[str, Any]], resolve: OperandResolver):
        self._tokens = tokens
        self._index = 0
        self._resolve = resolve

    def parse(self) -> bool:
        result = self._or()
        if self._index != len(self._tokens):
            raise ExpressionSyntaxError(f"Unexpected '{self._tokens[self._index][1]}' in condition")
        return result

    def _peek_op(self) -> Optional[str]:
        if self._index < len(self._tokens) and self._tokens[self._index][0] == "op":
            return self._tokens[self._index][1]
        return None

    def _or(self) -> bool:
        result = self._and()
        while self._peek_op() == "||":
            self._index += 1
            right = self._and()
            result = result or right
        return result

    def _and(self) -> bool:
        result = self._comparison()
        while self._peek_op() == "&&":
            self._index += 1
            right = self._comparison()
            result = result and right
        return result

    def _comparison(self) -> bool:
        if self._peek_op() == "(":
            self._index += 1
            result = self._or()
            if self._peek_op() != ")":
                raise ExpressionSyntaxError("Missing ')' in condition")
            self._index += 1
            return result

        left = self._operand()
        op = self._peek_op()
        if op in ("==", "===", "!=", "!==", ">", ">=", "<", "<="):
            self._index += 1
            return _compare(op, left, self._operand())
        return bool(left)

    def _operand(self) -> Any:
        if self._index >= len(self._tokens):
            raise ExpressionSyntaxError("Condition ends unexpectedly")
        kind, value = self._tokens[self._index]
        self._index += 1
        if kind == "literal":
            return value
        if kind == "ref":
            return self._resolve(*value)
        raise ExpressionSyntaxError(f"Unexpected '{value}' in condition")


def evaluate_condition_rule(rule: str, resolve: OperandResolver) -> bool:
    """Evaluate one condition string. Raises ShortcodeError when it cannot be evaluated."""
    if rule.strip() == "true":
        return True
    tokens = _tokenize(rule)
    if not tokens:
        raise ExpressionSyntaxError("Empty condition")
    return _ConditionParser(tokens, resolve).parse()


def select_condition(
    table: LegacyLookupTable, resolve: OperandResolver
) -> Optional[LegacyLookupCondition]:
    """First active condition that evaluates true, or None."""
    for condition in table.active_conditions():
        try:
            matched = evaluate_condition_rule(condition.condition_rule, resolve)
        except ShortcodeError as e:
            logger.debug(
                "Skipping condition %r of lookup '%s': %s",
                condition.condition_rule, table.name, e,
            )
            continue
        if matched:
            return condition
    return None
