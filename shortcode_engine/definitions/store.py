"""
Definition Stores: the read contracts the engine consumes, plus in-memory adapters.

The host application supplies real adapters (database, API). The in-memory
versions back tests, the HTTP app's default engine and local experiments.
"""

from typing import Any, Dict, List, Optional, Protocol

from shortcode_engine.models.definitions import (
    Formula,
    LegacyLookupTable,
    LookupDefault,
    LookupDefinition,
    LookupRule,
)
from shortcode_engine.models.processing import ExecutionRecord


class FormulaStore(Protocol):
    async def get_active_formulas(self) -> List[Formula]: ...


class LookupStore(Protocol):
    async def get_lookup(self, name: str) -> Optional[LookupDefinition]: ...

    async def get_rules(self, lookup_id: str) -> List[LookupRule]: ...

    async def get_default(self, lookup_id: str) -> Optional[LookupDefault]: ...

    async def get_legacy_lookup(self, name: str) -> Optional[LegacyLookupTable]: ...


class ReferenceTableReader(Protocol):
    async def fetch_row(self, table: str, key_field: str, key: Any) -> Optional[dict]: ...


class ExecutionLogSink(Protocol):
    """Receives lookup execution records. `record` may be sync or async."""

    def record(self, record: ExecutionRecord) -> Any: ...


class InMemoryFormulaStore:
    """Formula store backed by a dict keyed by formula name."""

    def __init__(self, formulas: Optional[List[Formula]] = None):
        self._formulas: Dict[str, Formula] = {}
        for formula in formulas or []:
            self.add(formula)

    def add(self, formula: Formula) -> None:
        self._formulas[formula.name] = formula

    def remove(self, name: str) -> bool:
        return self._formulas.pop(name, None) is not None

    async def get_active_formulas(self) -> List[Formula]:
        return [f for f in self._formulas.values() if f.is_active]


class InMemoryLookupStore:
    """Lookup store for rule-based lookups and legacy lookup tables."""

    def __init__(self):
        self._lookups: Dict[str, LookupDefinition] = {}
        self._rules: Dict[str, List[LookupRule]] = {}
        self._defaults: Dict[str, LookupDefault] = {}
        self._legacy: Dict[str, LegacyLookupTable] = {}

    def add_lookup(
        self,
        definition: LookupDefinition,
        rules: Optional[List[LookupRule]] = None,
        default: Optional[LookupDefault] = None,
    ) -> None:
        self._lookups[definition.name] = definition
        self._rules[definition.id] = list(rules or [])
        if default is not None:
            self._defaults[definition.id] = default
        else:
            self._defaults.pop(definition.id, None)

    def add_legacy_table(self, table: LegacyLookupTable) -> None:
        self._legacy[table.name] = table

    async def get_lookup(self, name: str) -> Optional[LookupDefinition]:
        definition = self._lookups.get(name)
        if definition and definition.is_active:
            return definition
        return None

    async def get_rules(self, lookup_id: str) -> List[LookupRule]:
        return list(self._rules.get(lookup_id, []))

    async def get_default(self, lookup_id: str) -> Optional[LookupDefault]:
        return self._defaults.get(lookup_id)

    async def get_legacy_lookup(self, name: str) -> Optional[LegacyLookupTable]:
        table = self._legacy.get(name)
        if table and table.is_active:
            return table
        return None


class InMemoryReferenceTables:
    """Reference tables as lists of row dicts. Keys are compared as strings."""

    def __init__(self, tables: Optional[Dict[str, List[dict]]] = None):
        self._tables: Dict[str, List[dict]] = dict(tables or {})

    def add_table(self, name: str, rows: List[dict]) -> None:
        self._tables[name] = list(rows)

    async def fetch_row(self, table: str, key_field: str, key: Any) -> Optional[dict]:
        for row in self._tables.get(table, []):
            if key_field in row and str(row[key_field]) == str(key):
                return dict(row)
        return None


class InMemoryExecutionLog:
    """Execution log sink that keeps records in a list."""

    def __init__(self):
        self.records: List[ExecutionRecord] = []

    def record(self, record: ExecutionRecord) -> None:
        self.records.append(record)
