"""Session data: field values, calculation results and dependency records."""

from datetime import datetime
from typing import Any, Dict, Optional, Set

from pydantic import BaseModel

from shortcode_engine.models.tokens import ProcessedValue


class FieldEntry(BaseModel):
    """A form field value as last written for a session."""

    field_name: str                         # Original spelling
    value: Any
    timestamp: datetime


class CalculationEntry(BaseModel):
    """A calculation result as last written for a session."""

    formula_name: str
    value: Any
    unit: Optional[str] = None
    timestamp: datetime


class SessionTable(BaseModel):
    """
    Everything the engine knows about one session.

    `fields` are keyed by lower-cased name, `calculations` by normalized name
    (lower-cased, whitespace as hyphens). `cache` holds
    resolved tokens keyed by token key (e.g. "calc:total").
    """

    session_id: str
    fields: Dict[str, FieldEntry] = {}
    calculations: Dict[str, CalculationEntry] = {}
    cache: Dict[str, ProcessedValue] = {}
    created_at: datetime


class DependencyRecord(BaseModel):
    """What a calculation or lookup reads: field names and other calculation/lookup names."""

    fields: Set[str] = set()
    calculations: Set[str] = set()

    def merge(self, other: "DependencyRecord") -> "DependencyRecord":
        return DependencyRecord(
            fields=self.fields | other.fields,
            calculations=self.calculations | other.calculations,
        )
