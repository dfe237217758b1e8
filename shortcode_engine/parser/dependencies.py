"""
Dependency Extractor: transitive field dependencies of a text.

Follows calc references into formula texts and lookup references into rule
conditions, table lookup keys, formula actions and legacy condition strings,
down to field names.
"""

import logging
from typing import Dict, List, Set, Tuple

from shortcode_engine.definitions.repository import DefinitionRepository
from shortcode_engine.errors import DefinitionStoreError
from shortcode_engine.models.definitions import (
    FormulaAction,
    LegacyLookupTable,
    LookupBundle,
    TableLookupAction,
)
from shortcode_engine.models.tokens import TokenKind
from shortcode_engine.parser.shortcodes import find_tokens

logger = logging.getLogger(__name__)


def lookup_references(bundle: LookupBundle) -> Tuple[Set[str], List[str]]:
    """
    Fields a lookup reads directly, and the formula texts of its formula actions.

    Direct fields are those named by rule conditions and the key fields of
    table lookup actions.
    """
    fields: Set[str] = set()
    texts: List[str] = []
    actions = []
    for rule in bundle.active_rules():
        for condition in rule.condition_logic.conditions:
            fields.add(condition.field)
        actions.append(rule.action)
    if bundle.default is not None:
        actions.append(bundle.default.action)
    for action in actions:
        if isinstance(action, FormulaAction) and action.formula_text:
            texts.append(action.formula_text)
        elif isinstance(action, TableLookupAction) and action.key_field:
            fields.add(action.key_field)
    return fields, texts


def legacy_references(table: LegacyLookupTable) -> List[str]:
    """Condition rules and target shortcodes of a legacy table."""
    texts = []
    for condition in table.active_conditions():
        texts.append(condition.condition_rule)
        texts.append(condition.target_shortcode)
    return texts


class DependencyExtractor:
    """
    Computes which form fields a text ultimately reads.

    `max_depth` counts expansion levels below the text itself: fields named
    directly in the text are always found, and with the default of 5 a field
    five definitions down is still reached.
    """

    def __init__(self, repository: DefinitionRepository, max_depth: int = 5):
        self.repository = repository
        self.max_depth = max_depth

    async def extract_field_dependencies(self, text: str) -> List[str]:
        """
        Field names the text reads, directly or through calculations and lookups.

        Best effort: if a definition cannot be read, the fields found so far are
        returned.
        """
        fields: Dict[str, None] = {}
        visited: Set[str] = set()
        try:
            await self._collect(text, fields, visited, 0)
        except DefinitionStoreError as e:
            logger.warning("Field dependency extraction incomplete: %s", e)
        return list(fields)

    async def _collect(
        self, text: str, fields: Dict[str, None], visited: Set[str], depth: int
    ) -> None:
        if depth > self.max_depth:
            return

        for token in find_tokens(text):
            if token.kind == TokenKind.FIELD:
                fields.setdefault(token.name, None)
                continue

            key = token.key.lower()
            if key in visited:
                continue
            visited.add(key)

            if token.kind == TokenKind.CALC:
                formula = await self.repository.find_formula(token.name)
                if formula is not None:
                    await self._collect(formula.formula_text, fields, visited, depth + 1)
                continue

            bundle = await self.repository.get_lookup_bundle(token.name)
            if bundle is not None:
                condition_fields, texts = lookup_references(bundle)
                for name in sorted(condition_fields):
                    fields.setdefault(name, None)
            else:
                table = await self.repository.get_legacy_lookup(token.name)
                texts = legacy_references(table) if table is not None else []
            for source in texts:
                await self._collect(source, fields, visited, depth + 1)
