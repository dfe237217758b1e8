"""
Shortcode Engine: the public entry point for the host application.

Wires the definition repository, session store, invalidation tracker, lookup
engine, evaluator and execution log into one object per process.

Behavioral Contract:
- process() never raises; token failures render inline as "[Error: ...]"
- success=False only for catastrophic failures, or in strict mode for any
  token failure or exhausted depth
- Form data handed to process() is the whole form. It is synced into the
  session first, so changed or cleared fields invalidate their dependents
  before anything is resolved
"""

import logging
import time
from typing import Any, Dict, List, Optional
from uuid import uuid4

from shortcode_engine.definitions.repository import DefinitionRepository
from shortcode_engine.definitions.store import (
    ExecutionLogSink,
    FormulaStore,
    InMemoryFormulaStore,
    InMemoryLookupStore,
    LookupStore,
    ReferenceTableReader,
)
from shortcode_engine.definitions.ttl_cache import TTLCache
from shortcode_engine.errors import LookupActionError, MaxDepthExceeded
from shortcode_engine.evaluator.expression import ExpressionEvaluator
from shortcode_engine.execution_log.queue import ExecutionLogQueue
from shortcode_engine.execution_log.store import SQLiteExecutionLog
from shortcode_engine.lookup.engine import LookupEngine
from shortcode_engine.models.config import EngineConfig
from shortcode_engine.models.processing import (
    EvaluationResult,
    LookupExecutionResult,
    ProcessingContext,
    ProcessingResult,
)
from shortcode_engine.parser.dependencies import DependencyExtractor
from shortcode_engine.parser.shortcodes import find_tokens
from shortcode_engine.resolver.resolver import IterativeResolver
from shortcode_engine.session.store import SessionStore
from shortcode_engine.tracking.invalidation import InvalidationTracker

logger = logging.getLogger(__name__)


class ShortcodeEngine:
    """
    Resolves and evaluates shortcode templates per session.

    Stores default to in-memory implementations and the execution log to an
    in-memory SQLite database.
    """

    def __init__(
        self,
        formula_store: Optional[FormulaStore] = None,
        lookup_store: Optional[LookupStore] = None,
        reference_tables: Optional[ReferenceTableReader] = None,
        log_sink: Optional[ExecutionLogSink] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.formula_store = formula_store or InMemoryFormulaStore()
        self.lookup_store = lookup_store or InMemoryLookupStore()
        self.log_sink = log_sink if log_sink is not None else SQLiteExecutionLog()
        self.sessions = SessionStore()
        self.repository = DefinitionRepository(
            self.formula_store,
            self.lookup_store,
            reference_tables,
            cache=TTLCache(),
        )
        self.tracker = InvalidationTracker(self.sessions, self.repository)
        self.configure(config or EngineConfig())

    def configure(self, config: EngineConfig) -> None:
        """Apply a configuration. Sessions, dependency records and cached definitions are kept."""
        self.config = config
        self.repository.cache.ttl_seconds = config.definition_cache_ttl_seconds
        self.tracker.lookup_field_hints = {
            k.lower(): list(v) for k, v in config.lookup_field_hints.items()
        }
        self.evaluator = ExpressionEvaluator.from_config(config)

        previous_queue = getattr(self, "log_queue", None)
        if config.enable_execution_log:
            if previous_queue is not None and previous_queue.maxsize == config.log_queue_size:
                self.log_queue = previous_queue
            else:
                self.log_queue = ExecutionLogQueue(self.log_sink, maxsize=config.log_queue_size)
        else:
            self.log_queue = None
        if previous_queue is not None and previous_queue is not self.log_queue:
            previous_queue.close()

        self.lookup_engine = LookupEngine(self.repository, self.log_queue, config.number_format)
        self.extractor = DependencyExtractor(self.repository, config.field_dependency_depth)
        self.resolver = IterativeResolver(
            self.repository,
            self.sessions,
            self.tracker,
            self.lookup_engine,
            self.evaluator,
            config,
        )

    async def process(self, text: str, context: ProcessingContext) -> ProcessingResult:
        """Resolve every shortcode in text for the context's session."""
        started = time.perf_counter()
        try:
            if not isinstance(text, str):
                raise TypeError(f"Text must be a string, got {type(text).__name__}")

            self.tracker.update_fields(context.session_id, context.form_data, replace=True)

            field_dependencies = await self.extractor.extract_field_dependencies(text)
            result, outcome = await self.resolver.resolve_text(text, context)
        except Exception as e:
            logger.exception("Processing failed for session %s", getattr(context, "session_id", None))
            return ProcessingResult(
                success=False,
                error=f"Processing failed: {e}",
                execution_time_ms=(time.perf_counter() - started) * 1000,
            )

        errors = {token.key: message for token, message in outcome.errors.items()}
        unresolved = [token.key for token in outcome.unresolved]

        success, error = True, None
        if self.config.strict:
            if errors:
                success, error = False, next(iter(errors.values()))
            elif unresolved:
                success, error = False, str(MaxDepthExceeded(self.config.max_depth, unresolved))

        return ProcessingResult(
            success=success,
            result=result,
            error=error,
            dependencies=field_dependencies,
            processed_count=len(find_tokens(text)),
            execution_time_ms=(time.perf_counter() - started) * 1000,
            errors=errors,
            unresolved=unresolved,
            max_depth_exceeded=outcome.max_depth_exceeded,
        )

    async def extract_field_dependencies(self, text: str) -> List[str]:
        return await self.extractor.extract_field_dependencies(text)

    # --- Invalidation ---

    def store_field(self, session_id: str, name: str, value: Any) -> List[str]:
        """Write a field value; returns the calculations queued for recalculation."""
        return self.tracker.store_field(session_id, name, value)

    def register_dependencies(
        self,
        name: str,
        fields: Optional[List[str]] = None,
        calculations: Optional[List[str]] = None,
    ) -> None:
        self.tracker.register_dependencies(name, fields, calculations)

    def needs_recalculation(self, session_id: str, name: str) -> bool:
        return self.tracker.needs_recalculation(session_id, name)

    def mark_current(self, session_id: str, name: str) -> None:
        self.tracker.mark_current(session_id, name)

    def clear_cache(self, session_id: Optional[str] = None) -> None:
        """Clear one session (tables and queue), or every session plus cached definitions."""
        if session_id is not None:
            self.sessions.remove(session_id)
            self.tracker.clear_session(session_id)
            logger.info("Cleared session %s", session_id)
            return
        self.sessions.clear()
        self.tracker.clear()
        self.repository.clear()
        logger.info("Cleared all sessions and cached definitions")

    # --- Admin tools ---

    async def evaluate_formula(self, text: str) -> EvaluationResult:
        return await self.evaluator.evaluate_formula(text)

    async def test_lookup(self, name: str, form_data: Dict[str, Any]) -> LookupExecutionResult:
        """Run a lookup with per-rule debug info. Nothing is logged or kept."""
        context = ProcessingContext(session_id=f"lookup-test-{uuid4().hex[:12]}", form_data=form_data)

        async def resolve_formula(text: str) -> str:
            result, outcome = await self.resolver.resolve_text(text, context)
            if outcome.errors:
                raise LookupActionError(next(iter(outcome.errors.values())))
            return result

        try:
            return await self.lookup_engine.execute(
                name, form_data, context.session_id, resolve_formula, debug=True, log=False
            )
        finally:
            self.sessions.remove(context.session_id)
            self.tracker.clear_session(context.session_id)

    def cache_stats(self, session_id: Optional[str] = None) -> dict:
        stats = {
            "sessions": len(self.sessions.session_ids()),
            "definitions": self.repository.cache.stats(),
            "execution_log": self.log_queue.stats() if self.log_queue else None,
        }
        if session_id is not None:
            stats["session"] = self.sessions.stats(session_id)
            stats["pending_recalculation"] = self.tracker.pending(session_id)
        return stats

    def dependency_stats(self) -> dict:
        return self.tracker.stats()

    async def drain_logs(self) -> None:
        """Wait for queued execution records to reach the sink."""
        if self.log_queue is not None:
            await self.log_queue.drain()

    async def aclose(self) -> None:
        if self.log_queue is not None:
            await self.log_queue.stop()
