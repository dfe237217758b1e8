"""Tests for the Expression Evaluator."""

import pytest

from shortcode_engine.errors import (
    EvaluationError,
    EvaluationTimeoutError,
    ExpressionSyntaxError,
    ResultOutOfRangeError,
    UnbalancedExpressionError,
    UnsafeExpressionError,
)
from shortcode_engine.evaluator.expression import (
    BinaryNode,
    CallNode,
    ExpressionEvaluator,
    NumberNode,
    check_balanced,
    format_number,
    is_evaluable_expression,
)
from shortcode_engine.models.config import EngineConfig


class TestArithmetic:
    def setup_method(self):
        self.evaluator = ExpressionEvaluator()

    def test_basic_operations(self):
        assert self.evaluator.evaluate("3 + 4") == 7
        assert self.evaluator.evaluate("10 - 4") == 6
        assert self.evaluator.evaluate("6 * 7") == 42
        assert self.evaluator.evaluate("7 / 2") == 3.5

    def test_precedence_and_associativity(self):
        assert self.evaluator.evaluate("2 + 3 * 4") == 14
        assert self.evaluator.evaluate("(2 + 3) * 4") == 20
        assert self.evaluator.evaluate("10 - 4 - 3") == 3
        assert self.evaluator.evaluate("64 / 4 / 2") == 8

    def test_unary_minus(self):
        assert self.evaluator.evaluate("-2 * 3") == -6
        assert self.evaluator.evaluate("2 * -3") == -6
        assert self.evaluator.evaluate("--4") == 4
        assert self.evaluator.evaluate("+5") == 5

    def test_decimals(self):
        assert self.evaluator.evaluate("0.5 + .25") == 0.75
        assert self.evaluator.evaluate("80 * 2.5 * 40") == 8000

    def test_functions(self):
        assert self.evaluator.evaluate("abs(-3)") == 3
        assert self.evaluator.evaluate("floor(2.7) + ceil(2.1)") == 5
        assert self.evaluator.evaluate("pow(2, 10)") == 1024
        assert self.evaluator.evaluate("sqrt(16)") == 4
        assert self.evaluator.evaluate("min(4, 2, 8)") == 2
        assert self.evaluator.evaluate("max(4, 2, 8)") == 8

    def test_math_prefix(self):
        assert self.evaluator.evaluate("Math.round(2.4) + Math.max(1, 2)") == 4

    def test_round_is_half_up(self):
        assert self.evaluator.evaluate("round(2.5)") == 3
        assert self.evaluator.evaluate("round(-2.5)") == -2

    def test_parse_builds_ast(self):
        tree = self.evaluator.parse("1 + max(2, 3)")
        assert isinstance(tree, BinaryNode)
        assert tree.left == NumberNode(1.0)
        assert isinstance(tree.right, CallNode)
        assert tree.right.name == "max"


class TestRejection:
    def setup_method(self):
        self.evaluator = ExpressionEvaluator()

    def test_rejects_identifiers(self):
        with pytest.raises(UnsafeExpressionError):
            self.evaluator.evaluate("2+__proto__")

    def test_rejects_unknown_function(self):
        with pytest.raises(UnsafeExpressionError):
            self.evaluator.evaluate("2+fetch(1)")

    def test_rejects_disguised_function_name(self):
        with pytest.raises(UnsafeExpressionError):
            self.evaluator.evaluate("xabs(1)")

    def test_invalid_characters_are_named(self):
        with pytest.raises(UnsafeExpressionError) as exc:
            self.evaluator.evaluate("1; 2")
        assert ";" in str(exc.value)

    def test_unbalanced(self):
        with pytest.raises(UnbalancedExpressionError):
            self.evaluator.evaluate("(10*3")
        with pytest.raises(UnbalancedExpressionError):
            self.evaluator.evaluate("10*3)")

    def test_syntax_errors(self):
        with pytest.raises(ExpressionSyntaxError):
            self.evaluator.evaluate("")
        with pytest.raises(ExpressionSyntaxError):
            self.evaluator.evaluate("1 +")
        with pytest.raises(ExpressionSyntaxError):
            self.evaluator.evaluate("1.2.3")
        with pytest.raises(ExpressionSyntaxError):
            self.evaluator.evaluate("min()")
        with pytest.raises(ExpressionSyntaxError):
            self.evaluator.evaluate("pow(2)")

    def test_length_limit(self):
        evaluator = ExpressionEvaluator(max_length=10)
        with pytest.raises(UnsafeExpressionError):
            evaluator.evaluate("1 + 1 + 1 + 1")

    def test_nesting_limit(self):
        evaluator = ExpressionEvaluator(max_nesting_depth=5)
        with pytest.raises(ExpressionSyntaxError):
            evaluator.evaluate("((((((1))))))")

    def test_division_by_zero(self):
        with pytest.raises(ResultOutOfRangeError):
            self.evaluator.evaluate("1 / 0")

    def test_magnitude_ceiling(self):
        with pytest.raises(ResultOutOfRangeError):
            self.evaluator.evaluate("10000000 * 10000000 * 100")

    def test_not_finite(self):
        with pytest.raises(ResultOutOfRangeError):
            self.evaluator.evaluate("sqrt(-1)")

    def test_all_failures_are_evaluation_errors(self):
        for text in ["2+__proto__", "(1", "1 +", "1/0"]:
            with pytest.raises(EvaluationError):
                self.evaluator.evaluate(text)


class TestAsyncEvaluation:
    @pytest.mark.asyncio
    async def test_evaluate_async(self):
        evaluator = ExpressionEvaluator()
        assert await evaluator.evaluate_async("3 + 4") == 7

    @pytest.mark.asyncio
    async def test_budget_exceeded(self):
        evaluator = ExpressionEvaluator(budget_seconds=-1)
        with pytest.raises(EvaluationTimeoutError):
            await evaluator.evaluate_async("1 + 1")

    @pytest.mark.asyncio
    async def test_evaluate_formula_success(self):
        evaluator = ExpressionEvaluator.from_config(EngineConfig())
        result = await evaluator.evaluate_formula("(2 + 3) * 4")
        assert result.success is True
        assert result.result == 20
        assert result.error is None

    @pytest.mark.asyncio
    async def test_evaluate_formula_never_raises(self):
        evaluator = ExpressionEvaluator()
        result = await evaluator.evaluate_formula("(10*3")
        assert result.success is False
        assert result.result is None
        assert "Unbalanced" in result.error

    def test_from_config(self):
        config = EngineConfig(max_magnitude=100, max_nesting_depth=3)
        evaluator = ExpressionEvaluator.from_config(config)
        assert evaluator.max_magnitude == 100
        assert evaluator.max_nesting_depth == 3


class TestHelpers:
    def test_is_evaluable_expression(self):
        assert is_evaluable_expression("3 + 4") is True
        assert is_evaluable_expression("(1)") is True
        assert is_evaluable_expression("7") is False
        assert is_evaluable_expression("Total: 7") is False
        assert is_evaluable_expression("1,5 * 2") is False

    def test_check_balanced(self):
        check_balanced("(1 + (2))")
        with pytest.raises(UnbalancedExpressionError):
            check_balanced(")(")

    def test_format_number(self):
        assert format_number(7.0) == "7"
        assert format_number(2.5) == "2.5"
        assert format_number(-3.0) == "-3"
        assert format_number(0.1 + 0.2) == "0.30000000000000004"
        assert format_number(12) == "12"
