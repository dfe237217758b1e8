"""Definitions: formulas, lookups, rules and their actions, as authored by admins."""

from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator


class Formula(BaseModel):
    """A named arithmetic expression. May reference fields, calculations and lookups."""

    id: Optional[str] = None
    name: str                               # e.g., "Laskennallinen energiantarve (kwh)"
    formula_text: str                       # e.g., "[field:neliot] * [field:huonekorkeus] * 40"
    unit: Optional[str] = None              # e.g., "kWh"
    description: Optional[str] = None
    is_active: bool = True


class Combinator(str, Enum):
    AND = "AND"
    OR = "OR"


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"


# Spellings used by the admin lookup editor
OPERATOR_ALIASES = {
    "greater_than": Operator.GT,
    "greater_than_or_equal": Operator.GTE,
    "less_than": Operator.LT,
    "less_than_or_equal": Operator.LTE,
}


class Condition(BaseModel):
    """A single comparison of a form field against a configured value."""

    field: str
    operator: Operator
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, v):
        if isinstance(v, str):
            return OPERATOR_ALIASES.get(v, v)
        return v


class ConditionLogic(BaseModel):
    """Conditions combined with AND / OR. No conditions means the rule always matches."""

    combinator: Combinator = Field(
        default=Combinator.AND,
        validation_alias=AliasChoices("combinator", "type"),
    )
    conditions: List[Condition] = []


class ActionType(str, Enum):
    VALUE = "value"
    FORMULA = "formula"
    LOOKUP = "lookup"
    ERROR = "error"


class ValueAction(BaseModel):
    """Return a literal value."""
    action_type: Literal["value"] = "value"
    value: Any = None


class FormulaAction(BaseModel):
    """Resolve a formula text, which may itself contain shortcodes."""
    action_type: Literal["formula"] = "formula"
    formula_text: str = ""
    formula_id: Optional[str] = None
    unit: Optional[str] = None


class TableLookupAction(BaseModel):
    """Fetch one value from an external reference table by exact key match."""
    action_type: Literal["lookup"] = "lookup"
    lookup_table: str = ""
    key_field: str = ""
    value_field: str = ""


class ErrorAction(BaseModel):
    """Fail deliberately. Used to guard unsupported input combinations."""
    action_type: Literal["error"] = "error"
    message: Optional[str] = None


Action = Annotated[
    Union[ValueAction, FormulaAction, TableLookupAction, ErrorAction],
    Field(discriminator="action_type"),
]


def _lift_action_config(data: Any) -> Any:
    """Accept the stored `{action_type, action_config}` shape for rules and defaults."""
    if isinstance(data, dict) and "action" not in data and "action_type" in data:
        data = dict(data)
        config = data.pop("action_config", None) or {}
        data["action"] = {"action_type": data.pop("action_type"), **config}
    return data


class LookupDefinition(BaseModel):
    """A named, rule-based lookup."""

    id: str
    name: str                               # e.g., "heating-calculation"
    title: str = ""
    description: Optional[str] = None
    is_active: bool = True


class LookupRule(BaseModel):
    """One ordered rule of a lookup. Lower order_index is evaluated first."""

    id: str
    lookup_id: str
    name: str = ""
    order_index: int = 0
    condition_logic: ConditionLogic = ConditionLogic()
    action: Action
    is_active: bool = True

    @model_validator(mode="before")
    @classmethod
    def _from_stored_shape(cls, data):
        return _lift_action_config(data)


class LookupDefault(BaseModel):
    """Action applied when no rule of a lookup matches."""

    id: Optional[str] = None
    lookup_id: str
    action: Action

    @model_validator(mode="before")
    @classmethod
    def _from_stored_shape(cls, data):
        return _lift_action_config(data)


class LookupBundle(BaseModel):
    """A lookup with its rules and default, as read together from the store."""

    definition: LookupDefinition
    rules: List[LookupRule] = []
    default: Optional[LookupDefault] = None

    def active_rules(self) -> List[LookupRule]:
        """Active rules, lowest order_index first."""
        return sorted(
            (r for r in self.rules if r.is_active),
            key=lambda r: r.order_index,
        )


class LegacyLookupCondition(BaseModel):
    """A row of the older lookup table format: a condition string and a target shortcode."""

    id: Optional[str] = None
    condition_order: int = 0
    condition_rule: str                     # e.g., "[field:heating_type] == 'oil'"
    target_shortcode: str                   # e.g., "[calc:oil-heating-formula]"
    description: Optional[str] = None
    is_active: bool = True


class LegacyLookupTable(BaseModel):
    """Ordered-condition lookup table, consulted when no rule-based lookup exists."""

    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    is_active: bool = True
    conditions: List[LegacyLookupCondition] = []

    def active_conditions(self) -> List[LegacyLookupCondition]:
        """Active conditions, lowest condition_order first."""
        return sorted(
            (c for c in self.conditions if c.is_active),
            key=lambda c: c.condition_order,
        )
