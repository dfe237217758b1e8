"""
Definition Repository: cached, read-only access to formulas and lookups.

Behavioral Contract:
- Reads go through the injected TTL cache; expired entries are refetched lazily
- "Not found" answers are cached too, so a missing lookup costs one fetch per TTL
- Store failures surface as DefinitionStoreError
- Reference table rows are never cached
"""

import logging
import re
from typing import Any, List, Optional

from shortcode_engine.definitions.store import (
    FormulaStore,
    LookupStore,
    ReferenceTableReader,
)
from shortcode_engine.definitions.ttl_cache import TTLCache
from shortcode_engine.errors import DefinitionStoreError, LookupActionError
from shortcode_engine.models.definitions import (
    Formula,
    LegacyLookupTable,
    LookupBundle,
)

logger = logging.getLogger(__name__)

_NOT_FOUND = object()
_WHITESPACE = re.compile(r"\s+")


def formula_matches(formula: Formula, name: str) -> bool:
    """Case-insensitive match on the exact name or its hyphenated form."""
    wanted = name.strip().lower()
    candidate = formula.name.lower()
    return candidate == wanted or _WHITESPACE.sub("-", candidate) == wanted


class DefinitionRepository:
    """Read side of the definition stores, shared by every session of an engine."""

    def __init__(
        self,
        formula_store: FormulaStore,
        lookup_store: LookupStore,
        reference_tables: Optional[ReferenceTableReader] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.formula_store = formula_store
        self.lookup_store = lookup_store
        self.reference_tables = reference_tables
        self.cache = cache or TTLCache()

    async def get_formulas(self) -> List[Formula]:
        """All active formulas."""
        cached = self.cache.get("formulas")
        if cached is not None:
            return cached

        try:
            formulas = await self.formula_store.get_active_formulas()
        except Exception as e:
            raise DefinitionStoreError(f"Failed to load formulas: {e}") from e

        formulas = [f for f in formulas if f.is_active]
        self.cache.put("formulas", formulas)
        logger.info("Loaded %d active formulas", len(formulas))
        return formulas

    async def find_formula(self, name: str) -> Optional[Formula]:
        for formula in await self.get_formulas():
            if formula_matches(formula, name):
                return formula
        return None

    async def get_lookup_bundle(self, name: str) -> Optional[LookupBundle]:
        """A rule-based lookup with its rules and default, or None if there is none."""
        key = f"lookup:{name}"
        cached = self.cache.get(key)
        if cached is not None:
            return None if cached is _NOT_FOUND else cached

        try:
            definition = await self.lookup_store.get_lookup(name)
            bundle = None
            if definition is not None and definition.is_active:
                rules = await self.lookup_store.get_rules(definition.id)
                default = await self.lookup_store.get_default(definition.id)
                bundle = LookupBundle(definition=definition, rules=rules, default=default)
        except Exception as e:
            raise DefinitionStoreError(f"Failed to load lookup '{name}': {e}") from e

        self.cache.put(key, bundle if bundle is not None else _NOT_FOUND)
        if bundle is not None:
            logger.info("Loaded lookup '%s' with %d rules", name, len(bundle.rules))
        return bundle

    async def get_legacy_lookup(self, name: str) -> Optional[LegacyLookupTable]:
        key = f"legacy:{name}"
        cached = self.cache.get(key)
        if cached is not None:
            return None if cached is _NOT_FOUND else cached

        try:
            table = await self.lookup_store.get_legacy_lookup(name)
        except Exception as e:
            raise DefinitionStoreError(f"Failed to load lookup table '{name}': {e}") from e

        if table is not None and not table.is_active:
            table = None
        self.cache.put(key, table if table is not None else _NOT_FOUND)
        return table

    async def fetch_row(self, table: str, key_field: str, key: Any) -> Optional[dict]:
        if self.reference_tables is None:
            raise LookupActionError(f"No reference table reader configured for '{table}'")
        try:
            return await self.reference_tables.fetch_row(table, key_field, key)
        except Exception as e:
            raise DefinitionStoreError(
                f"Failed to read reference table '{table}': {e}"
            ) from e

    def clear(self) -> None:
        """Forget every cached definition. The next read refetches."""
        self.cache.clear()
        logger.info("Definition cache cleared")
