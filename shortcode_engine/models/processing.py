"""Processing inputs and outputs exchanged with the host application."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from shortcode_engine.models.definitions import ActionType


class ProcessingContext(BaseModel):
    """Who is asking and what they have entered so far."""

    session_id: str
    form_data: Dict[str, Any] = {}


class ProcessingResult(BaseModel):
    """Outcome of processing one text template."""

    success: bool
    result: Optional[str] = None
    error: Optional[str] = None
    dependencies: List[str] = []            # Field names the text transitively reads
    processed_count: int = 0
    execution_time_ms: float = 0.0
    errors: Dict[str, str] = {}             # token key -> error message
    unresolved: List[str] = []              # token keys left when max depth was reached
    max_depth_exceeded: bool = False


class EvaluationResult(BaseModel):
    """Outcome of evaluating a bare arithmetic expression (formula tester)."""

    success: bool
    result: Optional[float] = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0


class RuleEvaluation(BaseModel):
    """Debug trace entry for one evaluated lookup rule."""

    rule_id: str
    rule_name: str = ""
    condition_result: bool
    condition_details: dict = {}


class LookupExecutionResult(BaseModel):
    """Outcome of executing one lookup."""

    success: bool
    value: Any = None
    numeric_value: Optional[float] = None
    error: Optional[str] = None
    matched_rule_id: Optional[str] = None
    used_default: bool = False
    execution_time_ms: float = 0.0
    debug_info: Optional[dict] = None


class ExecutionRecord(BaseModel):
    """A lookup execution as written to the execution log."""

    id: str
    session_id: str
    lookup_id: Optional[str] = None
    lookup_name: str
    input_values: Dict[str, Any] = {}
    matched_rule_id: Optional[str] = None
    used_default: bool = False
    action_type: Optional[ActionType] = None
    result_value: Any = None
    result_error: Optional[str] = None
    execution_time_ms: float = 0.0
    recorded_at: datetime
