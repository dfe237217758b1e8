"""Engine configuration and number formatting settings."""

from typing import Dict, List

from pydantic import BaseModel, Field


class NumberFormat(BaseModel):
    """Locale number formatting. Defaults match fi-FI."""

    decimal_separator: str = ","
    group_separator: str = "\u00a0"
    minus_sign: str = "\u2212"
    max_fraction_digits: int = Field(ge=0, le=15, default=3)


class EngineConfig(BaseModel):
    """Configuration for the shortcode engine."""

    batch_size: int = Field(ge=1, default=10)
    max_depth: int = Field(ge=1, default=10)            # Resolution rounds per pass
    field_dependency_depth: int = Field(ge=0, default=5)
    definition_cache_ttl_seconds: float = 300.0
    evaluation_timeout_seconds: float = 5.0
    evaluation_budget_seconds: float = 1.0
    max_magnitude: float = 1e15
    max_expression_length: int = 10_000
    max_nesting_depth: int = 100
    strict: bool = False                                # Token failures fail the whole process() call
    enable_execution_log: bool = True
    log_queue_size: int = Field(ge=1, default=1000)
    number_format: NumberFormat = NumberFormat()
    # Field dependencies assumed for lookups whose definition cannot be analyzed
    lookup_field_hints: Dict[str, List[str]] = {"menekki": ["valitse"]}
