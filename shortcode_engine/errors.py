"""
Error taxonomy for shortcode resolution and expression evaluation.

Token-level errors are rendered inline as "[Error: <message>]" by the engine;
only the message is shown, so every message is written to be read by an admin.
"""

from typing import List, Optional


class ShortcodeError(Exception):
    """Base class for all engine errors."""
    pass


class MissingFieldError(ShortcodeError):
    """A referenced form field is absent, null or empty."""

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"Field '{field_name}' is required but has no value")


class FormulaNotFoundError(ShortcodeError):
    """No active formula matches the calculation name."""

    def __init__(self, formula_name: str):
        self.formula_name = formula_name
        super().__init__(f"Formula '{formula_name}' not found")


class LookupNotFoundError(ShortcodeError):
    """Neither a rule-based lookup nor a legacy lookup table exists under the name."""

    def __init__(self, lookup_name: str):
        self.lookup_name = lookup_name
        super().__init__(f"Lookup '{lookup_name}' not found or inactive")


class NoRuleMatchedError(ShortcodeError):
    """No rule of a lookup matched and the lookup has no default action."""

    def __init__(self, lookup_name: str):
        self.lookup_name = lookup_name
        super().__init__(
            f"No rules matched for lookup '{lookup_name}' and no default action configured"
        )


class LookupActionError(ShortcodeError):
    """A selected lookup action could not produce a value (or is a configured Error action)."""
    pass


class DefinitionStoreError(ShortcodeError):
    """The formula or lookup store could not be read."""
    pass


class EvaluationError(ShortcodeError):
    """An arithmetic expression could not be evaluated."""
    pass


class UnsafeExpressionError(EvaluationError):
    """The expression contains characters or identifiers outside the allowed grammar."""
    pass


class UnbalancedExpressionError(EvaluationError):
    """Opening and closing parentheses do not match."""
    pass


class ExpressionSyntaxError(EvaluationError):
    """The expression is made of allowed symbols but is not well formed."""
    pass


class EvaluationTimeoutError(EvaluationError):
    """Evaluation exceeded its time budget."""
    pass


class ResultOutOfRangeError(EvaluationError):
    """The result is not finite or exceeds the magnitude ceiling."""
    pass


class CircularDependencyError(ShortcodeError):
    """A token depends on itself, directly or through other tokens."""

    def __init__(self, path: List[str]):
        self.path = path
        super().__init__(f"Circular dependency detected: {' → '.join(path)}")


class MaxDepthExceeded(ShortcodeError):
    """
    Resolution stopped after the configured number of rounds.

    Soft condition: the pass still returns everything it resolved. Used only
    to build the error message reported in strict mode.
    """

    def __init__(self, max_depth: int, unresolved: Optional[List[str]] = None):
        self.max_depth = max_depth
        self.unresolved = unresolved or []
        super().__init__(
            f"Reached maximum dependency depth ({max_depth}). "
            f"Unresolved: {', '.join(self.unresolved) or 'none'}"
        )
