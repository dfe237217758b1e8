"""
Shortcode Parser: find and replace `[field:x]`, `[calc:x]`, `[lookup:x]` and `{x}`.

Names are whitespace-trimmed. The brace form is a field reference. Other
bracketed `[type:x]` text is not a shortcode and is left as it is.
"""

import re
from typing import Dict, Iterator, List, Optional, Set, Tuple

from shortcode_engine.models.tokens import Token, TokenKind

SHORTCODE_PATTERN = re.compile(r"\[(\w+):([^\]]+)\]|\{([^}]+)\}")

_KINDS = {kind.value: kind for kind in TokenKind}


def _token_for(match: "re.Match") -> Optional[Token]:
    kind_text, name, brace_name = match.group(1), match.group(2), match.group(3)
    if brace_name is not None:
        name = brace_name.strip()
        return Token.field(name) if name else None
    kind = _KINDS.get(kind_text.lower())
    name = name.strip()
    if kind is None or not name:
        return None
    return Token(kind=kind, name=name)


def iter_shortcodes(text: str) -> Iterator[Tuple[Token, str]]:
    """Yield (token, matched text) for every shortcode occurrence, in order."""
    for match in SHORTCODE_PATTERN.finditer(text):
        token = _token_for(match)
        if token is not None:
            yield token, match.group(0)


def find_tokens(text: str) -> List[Token]:
    """Distinct tokens in order of first appearance."""
    seen: Dict[Token, None] = {}
    for token, _ in iter_shortcodes(text):
        seen.setdefault(token, None)
    return list(seen)


def extract_dependencies(text: str) -> Set[Token]:
    """Set of tokens referenced by text. Syntax only; nothing is fetched."""
    return set(find_tokens(text))


def has_shortcodes(text: str) -> bool:
    return any(True for _ in iter_shortcodes(text))


def substitute(text: str, values: Dict[Token, str]) -> str:
    """Replace every spelling of each token found in `values`. Others stay as written."""
    if not values:
        return text

    def _replace(match: "re.Match") -> str:
        token = _token_for(match)
        if token is not None and token in values:
            return values[token]
        return match.group(0)

    return SHORTCODE_PATTERN.sub(_replace, text)


def first_calc_name(text: str) -> Optional[str]:
    """Name of the first `[calc:x]` reference in text, if any."""
    for token, _ in iter_shortcodes(text):
        if token.kind == TokenKind.CALC:
            return token.name
    return None
