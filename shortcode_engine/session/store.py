"""
Session Store: per-session field values, calculation results and token cache.

Sessions are created lazily on first reference and removed only when the
caller tears them down. Field and calculation names are case-insensitive.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from shortcode_engine.models.session import CalculationEntry, FieldEntry, SessionTable
from shortcode_engine.models.tokens import ProcessedValue, Token, TokenKind

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: str) -> str:
    """Calculation and lookup names: case-insensitive, whitespace runs equal to a hyphen."""
    return _WHITESPACE.sub("-", name.strip().lower())


def cache_key(token: Token) -> str:
    if token.kind == TokenKind.FIELD:
        return token.key.lower()
    return f"{token.kind.value}:{normalize_name(token.name)}"


def form_value(form_data: Dict[str, Any], name: str) -> Any:
    """Form value by exact key, then by case-insensitive key. None if absent."""
    if name in form_data:
        return form_data[name]
    lowered = name.lower()
    for key, value in form_data.items():
        if key.lower() == lowered:
            return value
    return None


class SessionStore:
    """
    In-memory session tables.
    One instance per engine; sessions never share state.
    """

    def __init__(self):
        self._sessions: Dict[str, SessionTable] = {}

    def get_or_create(self, session_id: str) -> SessionTable:
        table = self._sessions.get(session_id)
        if table is None:
            table = SessionTable(session_id=session_id, created_at=datetime.utcnow())
            self._sessions[session_id] = table
            logger.debug("Created session table %s", session_id)
        return table

    def get(self, session_id: str) -> Optional[SessionTable]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        """Tear down a session. Returns False if it did not exist."""
        return self._sessions.pop(session_id, None) is not None

    def clear(self) -> None:
        self._sessions.clear()

    def session_ids(self) -> List[str]:
        return list(self._sessions)

    # --- Fields ---

    def set_field(self, session_id: str, name: str, value: Any) -> Optional[FieldEntry]:
        """Store a field value. Returns the previous entry, if any."""
        table = self.get_or_create(session_id)
        key = name.lower()
        previous = table.fields.get(key)
        table.fields[key] = FieldEntry(field_name=name, value=value, timestamp=datetime.utcnow())
        return previous

    def get_field(self, session_id: str, name: str) -> Optional[FieldEntry]:
        table = self._sessions.get(session_id)
        if table is None:
            return None
        return table.fields.get(name.lower())

    # --- Calculations ---

    def set_calculation(
        self, session_id: str, name: str, value: Any, unit: Optional[str] = None
    ) -> Optional[CalculationEntry]:
        """Store a calculation result. Returns the previous entry, if any."""
        table = self.get_or_create(session_id)
        key = normalize_name(name)
        previous = table.calculations.get(key)
        table.calculations[key] = CalculationEntry(
            formula_name=name, value=value, unit=unit, timestamp=datetime.utcnow()
        )
        return previous

    def get_calculation(self, session_id: str, name: str) -> Optional[CalculationEntry]:
        table = self._sessions.get(session_id)
        if table is None:
            return None
        return table.calculations.get(normalize_name(name))

    # --- Token cache ---

    def cache_get(self, session_id: str, token: Token) -> Optional[ProcessedValue]:
        table = self._sessions.get(session_id)
        if table is None:
            return None
        return table.cache.get(cache_key(token))

    def cache_put(self, session_id: str, value: ProcessedValue) -> None:
        self.get_or_create(session_id).cache[cache_key(value.token)] = value

    def cache_evict(self, session_id: str, token: Token) -> bool:
        table = self._sessions.get(session_id)
        if table is None:
            return False
        return table.cache.pop(cache_key(token), None) is not None

    def cache_clear(self, session_id: str) -> None:
        table = self._sessions.get(session_id)
        if table is not None:
            table.cache.clear()

    def stats(self, session_id: str) -> dict:
        table = self._sessions.get(session_id)
        if table is None:
            return {"session_id": session_id, "exists": False,
                    "fields": 0, "calculations": 0, "cached_tokens": 0}
        return {
            "session_id": session_id,
            "exists": True,
            "fields": len(table.fields),
            "calculations": len(table.calculations),
            "cached_tokens": len(table.cache),
            "cache_keys": sorted(table.cache),
            "created_at": table.created_at.isoformat(),
        }
