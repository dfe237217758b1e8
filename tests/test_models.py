"""Tests for the data models."""

from datetime import datetime

import pytest
from pydantic import ValidationError

from shortcode_engine.errors import (
    CircularDependencyError,
    EvaluationError,
    MaxDepthExceeded,
    ResultOutOfRangeError,
    ShortcodeError,
)
from shortcode_engine.models import (
    ActionType,
    DependencyRecord,
    EngineConfig,
    ErrorAction,
    FormulaAction,
    LookupDefault,
    LookupRule,
    ProcessedValue,
    ProcessingResult,
    TableLookupAction,
    Token,
    TokenKind,
    ValueAction,
)


class TestTokens:
    def test_tokens_are_hashable_values(self):
        assert Token.calc("a") == Token(kind=TokenKind.CALC, name="a")
        assert len({Token.calc("a"), Token.calc("a"), Token.field("a")}) == 2

    def test_tokens_are_frozen(self):
        token = Token.lookup("x")
        with pytest.raises(ValidationError):
            token.name = "y"

    def test_processed_value(self):
        value = ProcessedValue(
            token=Token.calc("total"),
            kind=TokenKind.CALC,
            raw_text="[field:a] + [field:b]",
            processed_text="7",
            numeric_value=7.0,
            dependencies=["field:a", "field:b"],
            timestamp=datetime.utcnow(),
        )
        assert value.model_dump(mode="json")["token"] == {"kind": "calc", "name": "total"}


class TestActions:
    def test_discriminated_union(self):
        rule = LookupRule.model_validate({
            "id": "r1",
            "lookup_id": "lk1",
            "action": {"action_type": "lookup", "lookup_table": "t", "key_field": "k", "value_field": "v"},
        })
        assert isinstance(rule.action, TableLookupAction)

    def test_each_action_type(self):
        for data, cls in [
            ({"action_type": "value", "value": 3}, ValueAction),
            ({"action_type": "formula", "formula_text": "1 + 1"}, FormulaAction),
            ({"action_type": "error", "message": "no"}, ErrorAction),
        ]:
            default = LookupDefault.model_validate({"lookup_id": "lk1", "action": data})
            assert isinstance(default.action, cls)
            assert ActionType(default.action.action_type)

    def test_unknown_action_type_rejected(self):
        with pytest.raises(ValidationError):
            LookupDefault.model_validate({"lookup_id": "lk1", "action": {"action_type": "script"}})

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            LookupRule.model_validate({
                "id": "r1",
                "lookup_id": "lk1",
                "condition_logic": {"conditions": [{"field": "x", "operator": "matches"}]},
                "action": {"action_type": "value", "value": 1},
            })


class TestConfig:
    def test_defaults(self):
        config = EngineConfig()
        assert config.batch_size == 10
        assert config.max_depth == 10
        assert config.field_dependency_depth == 5
        assert config.definition_cache_ttl_seconds == 300
        assert config.max_magnitude == 1e15
        assert config.strict is False
        assert config.lookup_field_hints == {"menekki": ["valitse"]}
        assert config.number_format.minus_sign == "\u2212"

    def test_bounds(self):
        with pytest.raises(ValidationError):
            EngineConfig(batch_size=0)
        with pytest.raises(ValidationError):
            EngineConfig(max_depth=0)


class TestRecordsAndResults:
    def test_dependency_record_merge(self):
        merged = DependencyRecord(fields={"a"}).merge(
            DependencyRecord(fields={"b"}, calculations={"c"})
        )
        assert merged.fields == {"a", "b"}
        assert merged.calculations == {"c"}

    def test_processing_result_defaults(self):
        result = ProcessingResult(success=True, result="7")
        assert result.errors == {}
        assert result.unresolved == []
        assert result.max_depth_exceeded is False


class TestErrors:
    def test_hierarchy(self):
        assert issubclass(ResultOutOfRangeError, EvaluationError)
        assert issubclass(EvaluationError, ShortcodeError)
        assert issubclass(CircularDependencyError, ShortcodeError)

    def test_messages(self):
        assert str(CircularDependencyError(["calc:a", "calc:b", "calc:a"])) == (
            "Circular dependency detected: calc:a → calc:b → calc:a"
        )
        error = MaxDepthExceeded(10, ["calc:c11"])
        assert str(error) == "Reached maximum dependency depth (10). Unresolved: calc:c11"
