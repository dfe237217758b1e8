"""Tokens: typed shortcode references and the cached values they resolve to."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class TokenKind(str, Enum):
    FIELD = "field"
    CALC = "calc"
    LOOKUP = "lookup"


class Token(BaseModel):
    """A shortcode reference such as `[calc:total]`. Hashable, used as a dict key."""

    model_config = ConfigDict(frozen=True)

    kind: TokenKind
    name: str

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.name}"

    @classmethod
    def field(cls, name: str) -> "Token":
        return cls(kind=TokenKind.FIELD, name=name)

    @classmethod
    def calc(cls, name: str) -> "Token":
        return cls(kind=TokenKind.CALC, name=name)

    @classmethod
    def lookup(cls, name: str) -> "Token":
        return cls(kind=TokenKind.LOOKUP, name=name)

    def __str__(self) -> str:
        return self.key


class ProcessedValue(BaseModel):
    """Session cache entry for one resolved token."""

    token: Token
    kind: TokenKind
    raw_text: str                           # Shortcode or source text, e.g. "[field:a] + [field:b]"
    processed_text: str                     # Substituted, evaluated result, e.g. "7"
    numeric_value: Optional[float] = None   # Plain number behind a formatted lookup result
    dependencies: List[str] = []            # Token keys this value was built from
    timestamp: datetime
