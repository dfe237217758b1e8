"""
Dependency Invalidation Tracker: which calculations go stale when an input changes.

Behavioral Contract:
- Dependencies come from explicit registration or lazy discovery (first time only)
- A changed field or calculation queues every dependent name, transitively
- Queued names are evicted from the session's token cache at the same moment
- needs_recalculation is a pure membership check; mark_current removes the name
- Names are compared case-insensitively, with whitespace and hyphens equivalent
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from shortcode_engine.definitions.repository import DefinitionRepository
from shortcode_engine.errors import DefinitionStoreError
from shortcode_engine.models.session import DependencyRecord
from shortcode_engine.models.tokens import TokenKind
from shortcode_engine.parser.dependencies import legacy_references, lookup_references
from shortcode_engine.parser.shortcodes import find_tokens
from shortcode_engine.session.store import SessionStore, normalize_name

logger = logging.getLogger(__name__)


def override_field_names(name: str) -> List[str]:
    """Form field spellings that override a calculation's value."""
    spellings = [name, name.replace("-", "_"), name.replace("_", "-")]
    return list(dict.fromkeys(f"override_{s}" for s in spellings))


def record_from_texts(texts: Iterable[str]) -> DependencyRecord:
    """Fields, calculations and lookups referenced by shortcode texts."""
    fields: Set[str] = set()
    calculations: Set[str] = set()
    for text in texts:
        for token in find_tokens(text):
            if token.kind == TokenKind.FIELD:
                fields.add(token.name)
            else:
                calculations.add(token.name)
    return DependencyRecord(fields=fields, calculations=calculations)


class InvalidationTracker:
    """Tracks dependency records globally and invalidation queues per session."""

    def __init__(
        self,
        sessions: SessionStore,
        repository: Optional[DefinitionRepository] = None,
        lookup_field_hints: Optional[Dict[str, List[str]]] = None,
    ):
        self.sessions = sessions
        self.repository = repository
        self.lookup_field_hints = {
            k.lower(): list(v) for k, v in (lookup_field_hints or {}).items()
        }
        self._registered: Dict[str, DependencyRecord] = {}
        self._discovered: Dict[str, DependencyRecord] = {}
        self._queues: Dict[str, Set[str]] = {}

    # --- Registration and discovery ---

    def register_dependencies(
        self,
        name: str,
        fields: Optional[List[str]] = None,
        calculations: Optional[List[str]] = None,
    ) -> DependencyRecord:
        record = DependencyRecord(fields=set(fields or []), calculations=set(calculations or []))
        self._registered[normalize_name(name)] = record
        logger.debug("Registered dependencies for '%s': %s", name, record.model_dump(mode="json"))
        return record

    def is_discovered(self, name: str) -> bool:
        return normalize_name(name) in self._discovered

    def discover_formula(self, name: str, formula_text: str) -> Optional[DependencyRecord]:
        """Record what a formula reads. No-op after the first call for a name."""
        key = normalize_name(name)
        if key in self._discovered:
            return None
        record = record_from_texts([formula_text])
        record.fields.update(override_field_names(name))
        self._discovered[key] = record
        logger.debug("Discovered dependencies for formula '%s': %s", name, sorted(record.fields))
        return record

    async def discover_lookup(self, name: str) -> Optional[DependencyRecord]:
        """Record what a lookup reads. Falls back to the configured field hints."""
        key = normalize_name(name)
        if key in self._discovered:
            return None

        record = DependencyRecord()
        if self.repository is not None:
            try:
                bundle = await self.repository.get_lookup_bundle(name)
                if bundle is not None:
                    condition_fields, texts = lookup_references(bundle)
                    record = record_from_texts(texts)
                    record.fields.update(condition_fields)
                else:
                    table = await self.repository.get_legacy_lookup(name)
                    if table is not None:
                        record = record_from_texts(legacy_references(table))
            except DefinitionStoreError as e:
                logger.warning("Could not analyze lookup '%s': %s", name, e)

        if not record.fields and not record.calculations:
            hints = self.lookup_field_hints.get(name.lower())
            if not hints:
                return None
            logger.info("Using field hints for lookup '%s': %s", name, hints)
            record = DependencyRecord(fields=set(hints))

        self._discovered[key] = record
        return record

    def dependencies_of(self, name: str) -> DependencyRecord:
        key = normalize_name(name)
        record = DependencyRecord()
        for source in (self._registered, self._discovered):
            if key in source:
                record = record.merge(source[key])
        return record

    def find_dependents(self, changed: str, kind: str = "field") -> List[str]:
        """
        Names that must be recalculated when `changed` changes.

        `kind` is "field" or "calculation". Propagates through calculation edges.
        """
        records: Dict[str, DependencyRecord] = {}
        for source in (self._registered, self._discovered):
            for name, record in source.items():
                records[name] = records[name].merge(record) if name in records else record

        dependents: Dict[str, None] = {}
        if kind == "field":
            target = changed.lower()
            for name, record in records.items():
                if any(f.lower() == target for f in record.fields):
                    dependents[name] = None
            frontier = list(dependents)
        else:
            frontier = [normalize_name(changed)]

        origin = normalize_name(changed) if kind != "field" else None
        while frontier:
            current = frontier.pop(0)
            for name, record in records.items():
                if name in dependents or name == origin:
                    continue
                if any(normalize_name(c) == current for c in record.calculations):
                    dependents[name] = None
                    frontier.append(name)

        return list(dependents)

    # --- Session writes ---

    def store_field(self, session_id: str, name: str, value: Any) -> List[str]:
        """Store a field value. Returns the names queued because it changed."""
        previous = self.sessions.set_field(session_id, name, value)
        if previous is not None and previous.value == value:
            return []
        self._evict_field(session_id, name)
        return self._invalidate(session_id, name, "field")

    def store_calculation(
        self, session_id: str, name: str, value: Any, unit: Optional[str] = None
    ) -> List[str]:
        """Store a calculation result. Returns the names queued because it changed."""
        previous = self.sessions.set_calculation(session_id, name, value, unit)
        if previous is not None and previous.value == value:
            return []
        return self._invalidate(session_id, name, "calculation")

    def update_fields(
        self, session_id: str, form_data: Dict[str, Any], replace: bool = False
    ) -> List[str]:
        """
        Store form values. An empty value clears a stored field.

        With `replace`, form_data is the whole form: stored fields it no longer
        contains are cleared too.
        """
        values: Dict[str, Any] = {
            name: None if value is None or value == "" else value
            for name, value in form_data.items()
        }
        table = self.sessions.get(session_id)
        if replace and table is not None:
            present = {name.lower() for name in form_data}
            for key, entry in list(table.fields.items()):
                if key not in present:
                    values[entry.field_name] = None

        queued: Dict[str, None] = {}
        for name, value in values.items():
            if value is None:
                previous = self.sessions.get_field(session_id, name)
                if previous is None or previous.value is None:
                    continue
            for dependent in self.store_field(session_id, name, value):
                queued.setdefault(dependent, None)
        return list(queued)

    # --- Queue ---

    def needs_recalculation(self, session_id: str, name: str) -> bool:
        return normalize_name(name) in self._queues.get(session_id, set())

    def mark_current(self, session_id: str, name: str) -> None:
        queue = self._queues.get(session_id)
        if queue is not None:
            queue.discard(normalize_name(name))

    def pending(self, session_id: str) -> List[str]:
        return sorted(self._queues.get(session_id, set()))

    def clear_session(self, session_id: str) -> None:
        self._queues.pop(session_id, None)

    def clear(self) -> None:
        """Drop every queue and every discovered record. Explicit registrations stay."""
        self._queues.clear()
        self._discovered.clear()

    def stats(self) -> dict:
        return {
            "registered_dependencies": len(self._registered),
            "autodiscovered_dependencies": len(self._discovered),
            "total_invalidation_queues": len(self._queues),
            "queued_calculations": sum(len(q) for q in self._queues.values()),
        }

    def _invalidate(self, session_id: str, changed: str, kind: str) -> List[str]:
        dependents = self.find_dependents(changed, kind)
        if not dependents:
            return []

        queue = self._queues.setdefault(session_id, set())
        queue.update(dependents)
        self._evict_dependents(session_id, set(dependents))
        logger.info(
            "Queued for recalculation in session %s due to %s '%s': %s",
            session_id, kind, changed, dependents,
        )
        return dependents

    def _evict_dependents(self, session_id: str, names: Set[str]) -> None:
        table = self.sessions.get(session_id)
        if table is None:
            return
        for key, value in list(table.cache.items()):
            if value.token.kind == TokenKind.FIELD:
                continue
            if normalize_name(value.token.name) in names:
                del table.cache[key]

    def _evict_field(self, session_id: str, name: str) -> None:
        table = self.sessions.get(session_id)
        if table is None:
            return
        target = name.lower()
        for key, value in list(table.cache.items()):
            if value.token.kind == TokenKind.FIELD and value.token.name.lower() == target:
                del table.cache[key]
