"""
Lookup Rule Engine: choose an action for a lookup from ordered, conditional rules.

Behavioral Contract:
- Active rules are evaluated in ascending order_index; the first match wins
- No match falls back to the default action; no default is an error
- A missing field value satisfies only not_equals and not_in
- Every execution, successful or not, is submitted to the execution log queue
- Logging never blocks or fails a lookup
"""

import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel

from shortcode_engine.definitions.repository import DefinitionRepository
from shortcode_engine.errors import (
    LookupActionError,
    LookupNotFoundError,
    NoRuleMatchedError,
    ShortcodeError,
)
from shortcode_engine.execution_log.queue import ExecutionLogQueue
from shortcode_engine.lookup.formatting import format_with_unit
from shortcode_engine.models.config import NumberFormat
from shortcode_engine.models.definitions import (
    Action,
    ActionType,
    Combinator,
    Condition,
    ConditionLogic,
    ErrorAction,
    FormulaAction,
    LookupBundle,
    Operator,
    TableLookupAction,
    ValueAction,
)
from shortcode_engine.models.processing import (
    ExecutionRecord,
    LookupExecutionResult,
    RuleEvaluation,
)
from shortcode_engine.parser.shortcodes import first_calc_name
from shortcode_engine.session.store import form_value

logger = logging.getLogger(__name__)

# Resolves a formula text (shortcodes and arithmetic) to its final text
FormulaResolver = Callable[[str], Awaitable[str]]


def to_number(value: Any) -> Optional[float]:
    """Numeric value of a number or a fully numeric string, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip().replace(",", ".")
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            return None
    return None


def _values_equal(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    actual_num, expected_num = to_number(actual), to_number(expected)
    return actual_num is not None and expected_num is not None and actual_num == expected_num


def evaluate_condition(condition: Condition, form_data: Dict[str, Any]) -> bool:
    actual = form_value(form_data, condition.field)
    expected = condition.value
    op = condition.operator

    if actual is None:
        return op in (Operator.NOT_EQUALS, Operator.NOT_IN)

    if op == Operator.EQUALS:
        return _values_equal(actual, expected)
    if op == Operator.NOT_EQUALS:
        return not _values_equal(actual, expected)

    if op in (Operator.GT, Operator.GTE, Operator.LT, Operator.LTE):
        a, b = to_number(actual), to_number(expected)
        if a is None or b is None:
            return False
        if op == Operator.GT:
            return a > b
        if op == Operator.GTE:
            return a >= b
        if op == Operator.LT:
            return a < b
        return a <= b

    if op in (Operator.CONTAINS, Operator.STARTS_WITH, Operator.ENDS_WITH):
        if expected is None:
            return False
        haystack, needle = str(actual).lower(), str(expected).lower()
        if op == Operator.CONTAINS:
            return needle in haystack
        if op == Operator.STARTS_WITH:
            return haystack.startswith(needle)
        return haystack.endswith(needle)

    if op in (Operator.IN, Operator.NOT_IN):
        if not isinstance(expected, list):
            return False
        found = any(_values_equal(actual, item) for item in expected)
        return found if op == Operator.IN else not found

    return False


def evaluate_logic(logic: ConditionLogic, form_data: Dict[str, Any]) -> Tuple[bool, List[dict]]:
    """Evaluate a rule's conditions. Returns the result and one detail entry per condition."""
    details = []
    results = []
    for condition in logic.conditions:
        result = evaluate_condition(condition, form_data)
        results.append(result)
        details.append({
            "field": condition.field,
            "operator": condition.operator.value,
            "expected": condition.value,
            "actual": form_value(form_data, condition.field),
            "result": result,
        })

    if not results:
        return True, details
    if logic.combinator == Combinator.OR:
        return any(results), details
    return all(results), details


class LookupSelection(BaseModel):
    """The action chosen for a lookup and how it was chosen."""

    bundle: LookupBundle
    action: Action
    matched_rule_id: Optional[str] = None
    used_default: bool = False
    evaluations: List[RuleEvaluation] = []


class LookupEngine:
    """
    Rule-based lookup evaluation.

    Formula actions are not resolved here: their text may contain shortcodes,
    which the caller resolves and hands back for formatting.
    """

    def __init__(
        self,
        repository: DefinitionRepository,
        log_queue: Optional[ExecutionLogQueue] = None,
        number_format: Optional[NumberFormat] = None,
    ):
        self.repository = repository
        self.log_queue = log_queue
        self.number_format = number_format or NumberFormat()

    async def select(
        self, name: str, form_data: Dict[str, Any], debug: bool = False
    ) -> LookupSelection:
        """Pick the first matching rule's action, or the default action."""
        bundle = await self.repository.get_lookup_bundle(name)
        if bundle is None:
            raise LookupNotFoundError(name)

        evaluations: List[RuleEvaluation] = []
        for rule in bundle.active_rules():
            matched, details = evaluate_logic(rule.condition_logic, form_data)
            if debug:
                evaluations.append(RuleEvaluation(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    condition_result=matched,
                    condition_details={
                        "combinator": rule.condition_logic.combinator.value,
                        "conditions": details,
                    },
                ))
            if matched:
                logger.debug("Lookup '%s' matched rule '%s'", name, rule.name or rule.id)
                return LookupSelection(
                    bundle=bundle,
                    action=rule.action,
                    matched_rule_id=rule.id,
                    evaluations=evaluations,
                )

        if bundle.default is None:
            raise NoRuleMatchedError(name)

        logger.debug("Lookup '%s' fell back to its default action", name)
        return LookupSelection(
            bundle=bundle,
            action=bundle.default.action,
            used_default=True,
            evaluations=evaluations,
        )

    async def run_action(self, action: Action, form_data: Dict[str, Any]) -> Any:
        """Value of a Value, TableLookup or Error action."""
        if isinstance(action, ValueAction):
            if action.value is None:
                raise LookupActionError("Value action missing value")
            return action.value

        if isinstance(action, TableLookupAction):
            if not (action.lookup_table and action.key_field and action.value_field):
                raise LookupActionError("Lookup table action missing required configuration")
            key = form_value(form_data, action.key_field)
            if key is None:
                raise LookupActionError(f"Key field '{action.key_field}' not found in form data")
            row = await self.repository.fetch_row(action.lookup_table, action.key_field, key)
            if row is None or action.value_field not in row:
                raise LookupActionError(
                    f"No matching record found in {action.lookup_table} "
                    f"for {action.key_field}='{key}'"
                )
            return row[action.value_field]

        if isinstance(action, ErrorAction):
            raise LookupActionError(action.message or "Lookup resulted in configured error")

        raise LookupActionError("Formula actions are resolved by the caller")

    async def formula_unit(self, action: FormulaAction) -> Optional[str]:
        """Unit of the formula behind the first [calc:x] of the text, else the action's unit."""
        calc_name = first_calc_name(action.formula_text)
        if calc_name:
            formula = await self.repository.find_formula(calc_name)
            if formula is not None and formula.unit:
                return formula.unit
        return action.unit

    async def format_formula_result(self, action: FormulaAction, text: str) -> Tuple[str, Optional[float]]:
        """Display text and numeric value of a resolved formula action."""
        numeric = to_number(text)
        if numeric is None:
            return text, None
        unit = await self.formula_unit(action)
        return format_with_unit(numeric, unit, self.number_format), numeric

    async def execute(
        self,
        name: str,
        form_data: Dict[str, Any],
        session_id: str,
        resolve_formula: FormulaResolver,
        debug: bool = False,
        log: bool = True,
    ) -> LookupExecutionResult:
        """Select and run a lookup end to end. Failures are reported, not raised."""
        started = time.perf_counter()
        selection: Optional[LookupSelection] = None
        value: Any = None
        numeric: Optional[float] = None
        error: Optional[str] = None

        try:
            selection = await self.select(name, form_data, debug=debug)
            action = selection.action
            if isinstance(action, FormulaAction):
                if not action.formula_text:
                    raise LookupActionError("Formula action missing formula_text")
                text = await resolve_formula(action.formula_text)
                value, numeric = await self.format_formula_result(action, text)
            else:
                value = await self.run_action(action, form_data)
                numeric = to_number(value)
        except ShortcodeError as e:
            error = str(e)

        elapsed_ms = (time.perf_counter() - started) * 1000
        result = LookupExecutionResult(
            success=error is None,
            value=value,
            numeric_value=numeric,
            error=error,
            matched_rule_id=selection.matched_rule_id if selection else None,
            used_default=selection.used_default if selection else False,
            execution_time_ms=elapsed_ms,
        )
        if debug:
            result.debug_info = {
                "lookup_name": name,
                "rules_evaluated": [e.model_dump(mode="json") for e in selection.evaluations]
                if selection else [],
                "input_values": dict(form_data),
            }
        if log:
            self.record_execution(session_id, name, selection, form_data, value, error, elapsed_ms)
        return result

    def record_execution(
        self,
        session_id: str,
        lookup_name: str,
        selection: Optional[LookupSelection],
        form_data: Dict[str, Any],
        value: Any,
        error: Optional[str],
        execution_time_ms: float,
    ) -> None:
        """Fire-and-forget submission to the execution log."""
        if self.log_queue is None:
            return
        record = ExecutionRecord(
            id=f"exec-{uuid4().hex[:12]}",
            session_id=session_id,
            lookup_id=selection.bundle.definition.id if selection else None,
            lookup_name=lookup_name,
            input_values=dict(form_data),
            matched_rule_id=selection.matched_rule_id if selection else None,
            used_default=selection.used_default if selection else False,
            action_type=ActionType(selection.action.action_type) if selection else None,
            result_value=value if error is None else None,
            result_error=error,
            execution_time_ms=execution_time_ms,
            recorded_at=datetime.utcnow(),
        )
        self.log_queue.submit(record)
