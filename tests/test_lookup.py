"""Tests for the Lookup Rule Engine, legacy condition tables and number formatting."""

from typing import Any, Dict, List, Optional

import pytest

from shortcode_engine.definitions.repository import DefinitionRepository
from shortcode_engine.definitions.store import (
    InMemoryExecutionLog,
    InMemoryFormulaStore,
    InMemoryLookupStore,
    InMemoryReferenceTables,
)
from shortcode_engine.errors import (
    ExpressionSyntaxError,
    LookupActionError,
    LookupNotFoundError,
    MissingFieldError,
    NoRuleMatchedError,
)
from shortcode_engine.execution_log.queue import ExecutionLogQueue
from shortcode_engine.lookup.engine import (
    LookupEngine,
    evaluate_condition,
    evaluate_logic,
    to_number,
)
from shortcode_engine.lookup.formatting import format_locale_number, format_with_unit, parse_number
from shortcode_engine.lookup.legacy import evaluate_condition_rule, select_condition
from shortcode_engine.models.config import NumberFormat
from shortcode_engine.models.definitions import (
    Combinator,
    Condition,
    ConditionLogic,
    ErrorAction,
    Formula,
    FormulaAction,
    LegacyLookupCondition,
    LegacyLookupTable,
    LookupDefault,
    LookupDefinition,
    LookupRule,
    Operator,
    TableLookupAction,
    ValueAction,
)


def _make_rule(
    rule_id: str,
    order_index: int,
    conditions: Optional[List[Condition]] = None,
    action=None,
    combinator: Combinator = Combinator.AND,
    is_active: bool = True,
) -> LookupRule:
    return LookupRule(
        id=rule_id,
        lookup_id="lk1",
        name=f"Rule {rule_id}",
        order_index=order_index,
        condition_logic=ConditionLogic(combinator=combinator, conditions=conditions or []),
        action=action or ValueAction(value=rule_id),
        is_active=is_active,
    )


def _make_heating_engine(
    default: Optional[LookupDefault] = None,
    log_queue: Optional[ExecutionLogQueue] = None,
) -> LookupEngine:
    lookups = InMemoryLookupStore()
    lookups.add_lookup(
        LookupDefinition(id="lk1", name="heating-calculation", title="Heating"),
        rules=[
            _make_rule(
                "oil", 1,
                [Condition(field="heating_type", operator=Operator.EQUALS, value="oil")],
                FormulaAction(formula_text="[calc:energy] * 0.1"),
            ),
            _make_rule(
                "big", 2,
                [Condition(field="area", operator=Operator.GT, value=100)],
                ValueAction(value="large house"),
            ),
            _make_rule(
                "oil-late", 3,
                [Condition(field="heating_type", operator=Operator.EQUALS, value="oil")],
                ValueAction(value="never reached"),
            ),
        ],
        default=default,
    )
    formulas = InMemoryFormulaStore([
        Formula(name="energy", formula_text="[field:area] * 40", unit="kWh"),
    ])
    tables = InMemoryReferenceTables({
        "prices": [{"code": "A1", "price": 12.5}, {"code": "B2", "price": 7}],
    })
    return LookupEngine(DefinitionRepository(formulas, lookups, tables), log_queue)


async def _resolve_identity(text: str) -> str:
    return text


class TestConditions:
    def _check(self, operator: str, expected: Any, actual: Any) -> bool:
        condition = Condition(field="x", operator=operator, value=expected)
        form_data: Dict[str, Any] = {} if actual is None else {"x": actual}
        return evaluate_condition(condition, form_data)

    def test_equals_numeric_coercion(self):
        assert self._check("equals", 80, "80")
        assert self._check("equals", "oil", "oil")
        assert not self._check("equals", "oil", "gas")

    def test_ordering(self):
        assert self._check("gt", 100, 120)
        assert not self._check("gt", 100, 100)
        assert self._check("gte", 100, "100")
        assert self._check("lt", 10, "2,5")
        assert self._check("lte", 10, 10)
        assert not self._check("gt", 100, "many")

    def test_string_operators_case_insensitive(self):
        assert self._check("contains", "OIL", "heavy oil")
        assert self._check("starts_with", "he", "Heavy")
        assert self._check("ends_with", "OIL", "heavy oil")
        assert not self._check("contains", "gas", "heavy oil")

    def test_membership(self):
        assert self._check("in", ["oil", "gas"], "gas")
        assert self._check("in", [1, 2], "2")
        assert not self._check("in", "oil", "oil")
        assert self._check("not_in", ["oil"], "gas")

    def test_missing_value(self):
        assert self._check("not_equals", "oil", None)
        assert self._check("not_in", ["oil"], None)
        assert not self._check("equals", "oil", None)
        assert not self._check("gt", 1, None)

    def test_operator_aliases(self):
        assert Condition(field="x", operator="greater_than_or_equal", value=1).operator == Operator.GTE
        assert Condition(field="x", operator="less_than", value=1).operator == Operator.LT

    def test_logic(self):
        conditions = [
            Condition(field="a", operator="equals", value=1),
            Condition(field="b", operator="equals", value=2),
        ]
        data = {"a": 1, "b": 3}
        assert evaluate_logic(ConditionLogic(combinator="AND", conditions=conditions), data)[0] is False
        assert evaluate_logic(ConditionLogic(combinator="OR", conditions=conditions), data)[0] is True
        matched, details = evaluate_logic(ConditionLogic(), data)
        assert matched is True
        assert details == []

    def test_to_number(self):
        assert to_number("2,5") == 2.5
        assert to_number(3) == 3.0
        assert to_number("") is None
        assert to_number(True) is None
        assert to_number("abc") is None


class TestRuleSelection:
    @pytest.mark.asyncio
    async def test_first_match_wins(self):
        engine = _make_heating_engine()
        selection = await engine.select("heating-calculation", {"heating_type": "oil", "area": 150})
        assert selection.matched_rule_id == "oil"
        assert selection.used_default is False

    @pytest.mark.asyncio
    async def test_order_index_is_authoritative(self):
        lookups = InMemoryLookupStore()
        lookups.add_lookup(
            LookupDefinition(id="lk1", name="ordered"),
            rules=[_make_rule("second", 2), _make_rule("first", 1)],
        )
        engine = LookupEngine(DefinitionRepository(InMemoryFormulaStore(), lookups))
        selection = await engine.select("ordered", {})
        assert selection.matched_rule_id == "first"

    @pytest.mark.asyncio
    async def test_inactive_rules_skipped(self):
        lookups = InMemoryLookupStore()
        lookups.add_lookup(
            LookupDefinition(id="lk1", name="ordered"),
            rules=[_make_rule("off", 1, is_active=False), _make_rule("on", 2)],
        )
        engine = LookupEngine(DefinitionRepository(InMemoryFormulaStore(), lookups))
        assert (await engine.select("ordered", {})).matched_rule_id == "on"

    @pytest.mark.asyncio
    async def test_default_action(self):
        engine = _make_heating_engine(
            default=LookupDefault(lookup_id="lk1", action=ValueAction(value="standard")),
        )
        selection = await engine.select("heating-calculation", {"heating_type": "gas", "area": 50})
        assert selection.used_default is True
        assert selection.matched_rule_id is None
        assert selection.action.value == "standard"

    @pytest.mark.asyncio
    async def test_no_match_no_default(self):
        engine = _make_heating_engine()
        with pytest.raises(NoRuleMatchedError):
            await engine.select("heating-calculation", {"heating_type": "gas"})

    @pytest.mark.asyncio
    async def test_unknown_lookup(self):
        engine = _make_heating_engine()
        with pytest.raises(LookupNotFoundError):
            await engine.select("missing", {})

    @pytest.mark.asyncio
    async def test_debug_evaluations(self):
        engine = _make_heating_engine()
        selection = await engine.select(
            "heating-calculation", {"heating_type": "gas", "area": 150}, debug=True
        )
        assert [e.rule_id for e in selection.evaluations] == ["oil", "big"]
        assert [e.condition_result for e in selection.evaluations] == [False, True]
        details = selection.evaluations[1].condition_details["conditions"][0]
        assert details["actual"] == 150


class TestActions:
    def setup_method(self):
        self.engine = _make_heating_engine()

    @pytest.mark.asyncio
    async def test_value_action(self):
        assert await self.engine.run_action(ValueAction(value=42), {}) == 42

    @pytest.mark.asyncio
    async def test_value_action_missing_value(self):
        with pytest.raises(LookupActionError, match="Value action missing value"):
            await self.engine.run_action(ValueAction(), {})

    @pytest.mark.asyncio
    async def test_table_lookup(self):
        action = TableLookupAction(lookup_table="prices", key_field="code", value_field="price")
        assert await self.engine.run_action(action, {"code": "A1"}) == 12.5

    @pytest.mark.asyncio
    async def test_table_lookup_no_row(self):
        action = TableLookupAction(lookup_table="prices", key_field="code", value_field="price")
        with pytest.raises(LookupActionError, match="No matching record found in prices"):
            await self.engine.run_action(action, {"code": "ZZ"})

    @pytest.mark.asyncio
    async def test_table_lookup_missing_key(self):
        action = TableLookupAction(lookup_table="prices", key_field="code", value_field="price")
        with pytest.raises(LookupActionError, match="Key field 'code' not found"):
            await self.engine.run_action(action, {})

    @pytest.mark.asyncio
    async def test_table_lookup_incomplete_config(self):
        with pytest.raises(LookupActionError, match="missing required configuration"):
            await self.engine.run_action(TableLookupAction(lookup_table="prices"), {"code": "A1"})

    @pytest.mark.asyncio
    async def test_error_action(self):
        with pytest.raises(LookupActionError, match="Unsupported combination"):
            await self.engine.run_action(ErrorAction(message="Unsupported combination"), {})
        with pytest.raises(LookupActionError, match="Lookup resulted in configured error"):
            await self.engine.run_action(ErrorAction(), {})

    @pytest.mark.asyncio
    async def test_formula_unit_from_first_calc(self):
        action = FormulaAction(formula_text="[calc:energy] * 0.1", unit="l")
        assert await self.engine.formula_unit(action) == "kWh"

    @pytest.mark.asyncio
    async def test_formula_unit_fallback(self):
        action = FormulaAction(formula_text="[field:x] * 2", unit="l")
        assert await self.engine.formula_unit(action) == "l"

    @pytest.mark.asyncio
    async def test_format_formula_result(self):
        action = FormulaAction(formula_text="[calc:energy] * 0.1")
        display, numeric = await self.engine.format_formula_result(action, "12345.678")
        assert display == "12\u00a0345,678 kWh"
        assert numeric == 12345.678

    @pytest.mark.asyncio
    async def test_format_non_numeric_result(self):
        action = FormulaAction(formula_text="text")
        assert await self.engine.format_formula_result(action, "n/a") == ("n/a", None)


class TestExecute:
    @pytest.mark.asyncio
    async def test_execute_value(self):
        engine = _make_heating_engine()
        result = await engine.execute(
            "heating-calculation", {"area": 150}, "s1", _resolve_identity, log=False
        )
        assert result.success is True
        assert result.value == "large house"
        assert result.matched_rule_id == "big"
        assert result.debug_info is None

    @pytest.mark.asyncio
    async def test_execute_formula_uses_resolver(self):
        engine = _make_heating_engine()

        async def resolve(text: str) -> str:
            assert text == "[calc:energy] * 0.1"
            return "320"

        result = await engine.execute(
            "heating-calculation", {"heating_type": "oil"}, "s1", resolve, log=False
        )
        assert result.value == "320 kWh"
        assert result.numeric_value == 320

    @pytest.mark.asyncio
    async def test_execute_reports_failures(self):
        engine = _make_heating_engine()
        result = await engine.execute("heating-calculation", {}, "s1", _resolve_identity, log=False)
        assert result.success is False
        assert "No rules matched" in result.error

    @pytest.mark.asyncio
    async def test_execute_debug_info(self):
        engine = _make_heating_engine()
        result = await engine.execute(
            "heating-calculation", {"area": 150}, "s1", _resolve_identity, debug=True, log=False
        )
        assert result.debug_info["lookup_name"] == "heating-calculation"
        assert len(result.debug_info["rules_evaluated"]) == 2
        assert result.debug_info["input_values"] == {"area": 150}

    @pytest.mark.asyncio
    async def test_execute_logs_success_and_failure(self):
        sink = InMemoryExecutionLog()
        queue = ExecutionLogQueue(sink)
        engine = _make_heating_engine(log_queue=queue)

        await engine.execute("heating-calculation", {"area": 150}, "s1", _resolve_identity)
        await engine.execute("heating-calculation", {}, "s1", _resolve_identity)
        await queue.drain()
        await queue.stop()

        assert len(sink.records) == 2
        ok, failed = sink.records
        assert ok.result_value == "large house"
        assert ok.matched_rule_id == "big"
        assert ok.lookup_id == "lk1"
        assert ok.action_type.value == "value"
        assert failed.result_error is not None
        assert failed.result_value is None
        assert failed.id != ok.id


def _make_legacy_table() -> LegacyLookupTable:
    return LegacyLookupTable(
        name="heating-legacy",
        conditions=[
            LegacyLookupCondition(
                condition_order=3,
                condition_rule="true",
                target_shortcode="[calc:default-heating]",
            ),
            LegacyLookupCondition(
                condition_order=1,
                condition_rule="[field:heating_type] == 'oil' && [calc:energy] > 1000",
                target_shortcode="[calc:oil-heating]",
            ),
            LegacyLookupCondition(
                condition_order=2,
                condition_rule="[field:heating_type] === 'gas' || [field:backup] == true",
                target_shortcode="[calc:gas-heating]",
            ),
        ],
    )


def _make_operands(fields: Dict[str, Any], calcs: Optional[Dict[str, Any]] = None):
    calcs = calcs or {}

    def resolve(kind: str, name: str) -> Any:
        source = fields if kind == "field" else calcs
        if name not in source:
            raise MissingFieldError(name)
        return source[name]

    return resolve


class TestLegacyConditions:
    def test_first_true_condition_in_order(self):
        operands = _make_operands({"heating_type": "oil"}, {"energy": 3200})
        condition = select_condition(_make_legacy_table(), operands)
        assert condition.target_shortcode == "[calc:oil-heating]"

    def test_or_branch(self):
        operands = _make_operands({"heating_type": "wood", "backup": True}, {"energy": 10})
        condition = select_condition(_make_legacy_table(), operands)
        assert condition.target_shortcode == "[calc:gas-heating]"

    def test_unevaluable_conditions_skipped(self):
        condition = select_condition(_make_legacy_table(), _make_operands({}))
        assert condition.target_shortcode == "[calc:default-heating]"

    def test_no_match(self):
        table = LegacyLookupTable(
            name="t",
            conditions=[LegacyLookupCondition(condition_rule="1 > 2", target_shortcode="x")],
        )
        assert select_condition(table, _make_operands({})) is None

    def test_loose_and_strict_equality(self):
        operands = _make_operands({"count": 5, "label": "5"})
        assert evaluate_condition_rule("[field:count] == '5'", operands) is True
        assert evaluate_condition_rule("[field:count] === '5'", operands) is False
        assert evaluate_condition_rule("[field:count] === 5", operands) is True
        assert evaluate_condition_rule("[field:label] !== 5", operands) is True

    def test_numeric_comparisons(self):
        operands = _make_operands({"area": "120"})
        assert evaluate_condition_rule("[field:area] >= 120", operands) is True
        assert evaluate_condition_rule("[field:area] < 100", operands) is False

    def test_parentheses_and_precedence(self):
        operands = _make_operands({"a": 1, "b": 2})
        assert evaluate_condition_rule("[field:a] == 2 && [field:b] == 2 || true", operands) is True
        assert evaluate_condition_rule("[field:a] == 2 && ([field:b] == 2 || true)", operands) is False

    def test_syntax_error(self):
        with pytest.raises(ExpressionSyntaxError):
            evaluate_condition_rule("[field:a] ~ 1", _make_operands({"a": 1}))


class TestFormatting:
    def test_fi_fi_defaults(self):
        assert format_locale_number(1234567.891) == "1\u00a0234\u00a0567,891"
        assert format_locale_number(3200) == "3\u00a0200"
        assert format_locale_number(0.5) == "0,5"
        assert format_locale_number(-1500.25) == "\u22121\u00a0500,25"

    def test_fraction_digits_rounded_half_up(self):
        assert format_locale_number(2.0005) == "2,001"
        assert format_locale_number(2.5, NumberFormat(max_fraction_digits=0)) == "3"

    def test_custom_format(self):
        fmt = NumberFormat(decimal_separator=".", group_separator=",", minus_sign="-")
        assert format_locale_number(-12345.5, fmt) == "-12,345.5"

    def test_with_unit(self):
        assert format_with_unit(320, "kWh") == "320 kWh"
        assert format_with_unit(320, None) == "320"

    def test_parse_number(self):
        assert parse_number("3\u00a0200 kWh") == 3200
        assert parse_number("2,5") == 2.5
        assert parse_number("\u22124") == -4
        assert parse_number("abc") is None
        assert parse_number(7) == 7.0
