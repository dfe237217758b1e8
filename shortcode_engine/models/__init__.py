"""Shortcode engine data models."""

from shortcode_engine.models.config import EngineConfig, NumberFormat
from shortcode_engine.models.definitions import (
    Action,
    ActionType,
    Combinator,
    Condition,
    ConditionLogic,
    ErrorAction,
    Formula,
    FormulaAction,
    LegacyLookupCondition,
    LegacyLookupTable,
    LookupBundle,
    LookupDefault,
    LookupDefinition,
    LookupRule,
    Operator,
    TableLookupAction,
    ValueAction,
)
from shortcode_engine.models.processing import (
    EvaluationResult,
    ExecutionRecord,
    LookupExecutionResult,
    ProcessingContext,
    ProcessingResult,
    RuleEvaluation,
)
from shortcode_engine.models.session import (
    CalculationEntry,
    DependencyRecord,
    FieldEntry,
    SessionTable,
)
from shortcode_engine.models.tokens import ProcessedValue, Token, TokenKind

__all__ = [
    "Action",
    "ActionType",
    "CalculationEntry",
    "Combinator",
    "Condition",
    "ConditionLogic",
    "DependencyRecord",
    "EngineConfig",
    "ErrorAction",
    "EvaluationResult",
    "ExecutionRecord",
    "FieldEntry",
    "Formula",
    "FormulaAction",
    "LegacyLookupCondition",
    "LegacyLookupTable",
    "LookupBundle",
    "LookupDefault",
    "LookupDefinition",
    "LookupExecutionResult",
    "LookupRule",
    "NumberFormat",
    "Operator",
    "ProcessedValue",
    "ProcessingContext",
    "ProcessingResult",
    "RuleEvaluation",
    "SessionTable",
    "TableLookupAction",
    "Token",
    "TokenKind",
    "ValueAction",
]
