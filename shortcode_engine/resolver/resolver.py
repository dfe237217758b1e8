"""
Iterative Resolver: resolve a set of shortcode tokens without recursion.

Behavioral Contract:
- One work queue per pass, drained in batches of `batch_size` for at most
  `max_depth` rounds; tokens of a batch resolve concurrently
- A token whose text needs other tokens waits; its dependencies are queued for
  a later round and it completes as soon as they have all settled
- Each token is resolved at most once per pass
- A token that (indirectly) waits on itself fails with CircularDependencyError,
  and every token waiting on a failed token fails with the same message
- Leftovers after the last round are reported, not raised
- Successful calc and lookup results go to the session cache; failures do not
"""

import asyncio
import logging
import re
import time
from collections import deque
from datetime import datetime
from typing import (
    Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple, Union,
)

from shortcode_engine.definitions.repository import DefinitionRepository
from shortcode_engine.errors import (
    CircularDependencyError,
    EvaluationError,
    FormulaNotFoundError,
    LookupActionError,
    LookupNotFoundError,
    MissingFieldError,
    ShortcodeError,
)
from shortcode_engine.evaluator.expression import (
    ExpressionEvaluator,
    format_number,
    is_evaluable_expression,
)
from shortcode_engine.lookup.engine import LookupEngine, LookupSelection, to_number
from shortcode_engine.lookup.legacy import select_condition
from shortcode_engine.models.config import EngineConfig
from shortcode_engine.models.definitions import FormulaAction
from shortcode_engine.models.processing import ProcessingContext
from shortcode_engine.models.tokens import ProcessedValue, Token, TokenKind
from shortcode_engine.parser.shortcodes import find_tokens, substitute
from shortcode_engine.session.store import SessionStore, form_value
from shortcode_engine.tracking.invalidation import InvalidationTracker, override_field_names

logger = logging.getLogger(__name__)

_PLAIN_NUMBER = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)$")


class _Done:
    """A settled token."""

    def __init__(
        self,
        value: ProcessedValue,
        unit: Optional[str] = None,
        calc_name: Optional[str] = None,
        from_cache: bool = False,
    ):
        self.value = value
        self.unit = unit
        self.calc_name = calc_name          # Canonical formula name, for calc tokens
        self.from_cache = from_cache


class _Failed:
    def __init__(self, error: str):
        self.error = error


class _Wait:
    """A token parked until its dependencies settle."""

    def __init__(
        self,
        deps: List[Token],
        finish: Callable[[Dict[Token, ProcessedValue]], Awaitable[Union[_Done, "_Wait"]]],
        on_fail: Optional[Callable[[str], None]] = None,
    ):
        self.deps = deps
        self.finish = finish
        self.on_fail = on_fail


_Result = Union[_Done, _Failed, _Wait]


class ResolutionOutcome:
    """Everything one pass produced."""

    def __init__(
        self,
        values: Dict[Token, ProcessedValue],
        errors: Dict[Token, str],
        unresolved: List[Token],
        rounds: int,
        cache_hits: int = 0,
    ):
        self.values = values
        self.errors = errors
        self.unresolved = unresolved
        self.rounds = rounds
        self.cache_hits = cache_hits

    @property
    def max_depth_exceeded(self) -> bool:
        return bool(self.unresolved)

    def replacements(self) -> Dict[Token, str]:
        """Display text per token: values as-is, failures as inline error markers."""
        texts = {token: value.processed_text for token, value in self.values.items()}
        for token, message in self.errors.items():
            texts[token] = f"[Error: {message}]"
        return texts


class _PassState:
    def __init__(self):
        self.queue: Deque[Token] = deque()
        self.seen: Set[Token] = set()
        self.settled: Dict[Token, ProcessedValue] = {}
        self.failed: Dict[Token, str] = {}
        self.waiting: Dict[Token, _Wait] = {}
        self.cache_hits = 0

    def enqueue(self, token: Token) -> None:
        if token not in self.seen:
            self.seen.add(token)
            self.queue.append(token)

    def is_final(self, token: Token) -> bool:
        return token in self.settled or token in self.failed


def _numeric_text(value: ProcessedValue) -> str:
    """Text substituted into arithmetic: the plain number when there is one."""
    if value.numeric_value is not None:
        return format_number(value.numeric_value)
    return value.processed_text


def _plain_number(text: str) -> Optional[float]:
    stripped = text.strip()
    if not _PLAIN_NUMBER.match(stripped):
        return None
    return float(stripped)


def _value_text(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return format_number(value)
    return str(value)


class IterativeResolver:
    """Breadth-first, depth-bounded resolution of field, calc and lookup tokens."""

    def __init__(
        self,
        repository: DefinitionRepository,
        sessions: SessionStore,
        tracker: InvalidationTracker,
        lookup_engine: LookupEngine,
        evaluator: ExpressionEvaluator,
        config: Optional[EngineConfig] = None,
    ):
        self.repository = repository
        self.sessions = sessions
        self.tracker = tracker
        self.lookup_engine = lookup_engine
        self.evaluator = evaluator
        self.config = config or EngineConfig()

    async def resolve(self, tokens: Iterable[Token], context: ProcessingContext) -> ResolutionOutcome:
        state = _PassState()
        for token in tokens:
            state.enqueue(token)

        rounds = 0
        while state.queue and rounds < self.config.max_depth:
            rounds += 1
            batch = [state.queue.popleft() for _ in range(min(self.config.batch_size, len(state.queue)))]
            results = await asyncio.gather(*(self._attempt(token, context, state) for token in batch))
            # Applied in batch order so the final state does not depend on completion order
            for token, result in zip(batch, results):
                self._apply(state, token, result, context)
            await self._settle(state, context)

        unresolved = list(state.queue) + list(state.waiting)
        if unresolved:
            logger.warning(
                "Reached maximum dependency depth (%d) in session %s. Unresolved: %s",
                self.config.max_depth, context.session_id, [t.key for t in unresolved],
            )

        return ResolutionOutcome(
            values=state.settled,
            errors=state.failed,
            unresolved=unresolved,
            rounds=rounds,
            cache_hits=state.cache_hits,
        )

    async def resolve_text(
        self, text: str, context: ProcessingContext
    ) -> Tuple[str, ResolutionOutcome]:
        """Resolve every shortcode of a text, substitute, then evaluate pure arithmetic."""
        outcome = await self.resolve(find_tokens(text), context)
        result = substitute(text, outcome.replacements())
        return await self.evaluate_if_arithmetic(result), outcome

    async def evaluate_if_arithmetic(self, text: str) -> str:
        """Best effort: evaluate text that is plain arithmetic, otherwise return it unchanged."""
        if not is_evaluable_expression(text):
            return text
        try:
            return format_number(await self.evaluator.evaluate_async(text))
        except EvaluationError as e:
            logger.debug("Left %r unevaluated: %s", text, e)
            return text

    # --- Pass mechanics ---

    async def _attempt(self, token: Token, context: ProcessingContext, state: _PassState) -> _Result:
        try:
            if token.kind == TokenKind.FIELD:
                return self._resolve_field(token, context)

            cached = self.sessions.cache_get(context.session_id, token)
            if cached is not None and not self.tracker.needs_recalculation(context.session_id, token.name):
                logger.debug("Cache hit for %s in session %s", token.key, context.session_id)
                state.cache_hits += 1
                return _Done(cached, from_cache=True)

            if token.kind == TokenKind.CALC:
                return await self._resolve_calc(token, context)
            return await self._resolve_lookup(token, context)
        except ShortcodeError as e:
            logger.debug("Failed to resolve %s: %s", token.key, e)
            return _Failed(str(e))

    def _apply(self, state: _PassState, token: Token, result: _Result, context: ProcessingContext) -> None:
        if isinstance(result, _Failed):
            state.failed[token] = result.error
            return

        if isinstance(result, _Wait):
            state.waiting[token] = result
            for dep in result.deps:
                state.enqueue(dep)
            return

        state.settled[token] = result.value
        if result.from_cache or token.kind == TokenKind.FIELD:
            return

        session_id = context.session_id
        if token.kind == TokenKind.CALC:
            stored = result.value.numeric_value
            self.tracker.store_calculation(
                session_id,
                result.calc_name or token.name,
                stored if stored is not None else result.value.processed_text,
                result.unit,
            )
        self.tracker.mark_current(session_id, token.name)
        self.sessions.cache_put(session_id, result.value)

    async def _settle(self, state: _PassState, context: ProcessingContext) -> None:
        """Complete waiting tokens whose dependencies are final; fail cycles."""
        while True:
            progressed = False
            for token, wait in list(state.waiting.items()):
                if not all(state.is_final(dep) for dep in wait.deps):
                    continue
                del state.waiting[token]
                progressed = True

                failed_dep = next((dep for dep in wait.deps if dep in state.failed), None)
                if failed_dep is not None:
                    self._fail_waiting(state, token, wait, state.failed[failed_dep])
                    continue

                try:
                    result = await wait.finish({dep: state.settled[dep] for dep in wait.deps})
                except ShortcodeError as e:
                    self._fail_waiting(state, token, wait, str(e))
                    continue
                self._apply(state, token, result, context)

            if progressed:
                continue

            cycle = self._find_cycle(state.waiting)
            if cycle is None:
                return
            error = CircularDependencyError([t.key for t in cycle])
            logger.warning("%s (session %s)", error, context.session_id)
            for token in dict.fromkeys(cycle):
                wait = state.waiting.pop(token, None)
                if wait is not None:
                    self._fail_waiting(state, token, wait, str(error))

    def _fail_waiting(self, state: _PassState, token: Token, wait: _Wait, message: str) -> None:
        state.failed[token] = message
        if wait.on_fail is not None:
            wait.on_fail(message)

    @staticmethod
    def _find_cycle(waiting: Dict[Token, _Wait]) -> Optional[List[Token]]:
        """A path t0 -> ... -> t0 among waiting tokens, if there is one."""
        visiting: List[Token] = []
        on_path: Set[Token] = set()
        done: Set[Token] = set()

        def visit(token: Token) -> Optional[List[Token]]:
            visiting.append(token)
            on_path.add(token)
            for dep in waiting[token].deps:
                if dep not in waiting or dep in done:
                    continue
                if dep in on_path:
                    return visiting[visiting.index(dep):] + [dep]
                found = visit(dep)
                if found:
                    return found
            visiting.pop()
            on_path.discard(token)
            done.add(token)
            return None

        for token in list(waiting):
            if token not in done:
                found = visit(token)
                if found:
                    return found
        return None

    # --- Token kinds ---

    def _resolve_field(self, token: Token, context: ProcessingContext) -> _Done:
        value = form_value(context.form_data, token.name)
        if value is None or value == "":
            raise MissingFieldError(token.name)
        return _Done(self._processed(token, token.key, _value_text(value), numeric=to_number(value)))

    async def _resolve_calc(self, token: Token, context: ProcessingContext) -> _Result:
        formula = await self.repository.find_formula(token.name)
        if formula is not None:
            self.tracker.discover_formula(formula.name, formula.formula_text)

        override = self._override_value(token.name, context.form_data)
        if override is not None:
            logger.debug("Using override value for %s", token.key)
            return _Done(
                self._processed(token, token.key, _value_text(override), numeric=to_number(override)),
                calc_name=token.name,
            )

        if formula is None:
            raise FormulaNotFoundError(token.name)

        deps = find_tokens(formula.formula_text)

        async def finish(values: Dict[Token, ProcessedValue]) -> _Done:
            text = substitute(formula.formula_text, {t: _numeric_text(v) for t, v in values.items()})
            result = await self._evaluate_strict(text)
            return _Done(
                self._processed(
                    token, formula.formula_text, format_number(result),
                    numeric=result, deps=deps,
                ),
                unit=formula.unit,
                calc_name=formula.name,
            )

        if not deps:
            return await finish({})
        return _Wait(deps, finish)

    async def _resolve_lookup(self, token: Token, context: ProcessingContext) -> _Result:
        await self.tracker.discover_lookup(token.name)
        started = time.perf_counter()
        form_data = context.form_data
        selection: Optional[LookupSelection] = None

        def log(value: Any, error: Optional[str]) -> None:
            if self.config.enable_execution_log:
                self.lookup_engine.record_execution(
                    context.session_id, token.name, selection, form_data, value, error,
                    (time.perf_counter() - started) * 1000,
                )

        try:
            selection = await self.lookup_engine.select(token.name, form_data)
        except LookupNotFoundError:
            return await self._resolve_legacy_lookup(token, context)
        except ShortcodeError as e:
            log(None, str(e))
            raise

        action = selection.action
        if not isinstance(action, FormulaAction):
            try:
                value = await self.lookup_engine.run_action(action, form_data)
            except ShortcodeError as e:
                log(None, str(e))
                raise
            log(value, None)
            return _Done(self._processed(token, token.key, _value_text(value), numeric=to_number(value)))

        if not action.formula_text:
            log(None, "Formula action missing formula_text")
            raise LookupActionError("Formula action missing formula_text")

        deps = find_tokens(action.formula_text)

        async def finish(values: Dict[Token, ProcessedValue]) -> _Done:
            text = substitute(action.formula_text, {t: _numeric_text(v) for t, v in values.items()})
            try:
                result_text = await self._evaluate_lenient(text)
                display, numeric = await self.lookup_engine.format_formula_result(action, result_text)
            except ShortcodeError as e:
                log(None, str(e))
                raise
            log(display, None)
            return _Done(self._processed(
                token, action.formula_text, display, numeric=numeric, deps=deps,
            ))

        if not deps:
            return await finish({})
        return _Wait(deps, finish, on_fail=lambda message: log(None, message))

    async def _resolve_legacy_lookup(self, token: Token, context: ProcessingContext) -> _Result:
        table = await self.repository.get_legacy_lookup(token.name)
        if table is None:
            raise LookupNotFoundError(token.name)

        session_id = context.session_id

        def operand(kind: str, name: str) -> Any:
            if kind == "field":
                value = form_value(context.form_data, name)
                if value is None:
                    entry = self.sessions.get_field(session_id, name)
                    value = entry.value if entry is not None else None
                if value is None:
                    raise MissingFieldError(name)
                return value
            entry = self.sessions.get_calculation(session_id, name)
            if entry is None:
                raise LookupActionError(f"Calculation '{name}' not found in session data")
            return entry.value

        condition = select_condition(table, operand)
        if condition is None:
            raise LookupActionError(f"No conditions matched in lookup table '{token.name}'")

        target = condition.target_shortcode
        deps = find_tokens(target)
        logger.debug("Lookup table '%s' selected %r", token.name, target)

        async def finish(values: Dict[Token, ProcessedValue]) -> _Done:
            text = substitute(target, {t: v.processed_text for t, v in values.items()})
            result = await self.evaluate_if_arithmetic(text)
            numeric = to_number(result)
            if numeric is None and len(deps) == 1 and deps[0] in values:
                numeric = values[deps[0]].numeric_value
            return _Done(self._processed(token, target, result, numeric=numeric, deps=deps))

        if not deps:
            return await finish({})
        return _Wait(deps, finish)

    # --- Helpers ---

    @staticmethod
    def _override_value(name: str, form_data: Dict[str, Any]) -> Optional[Any]:
        for key in override_field_names(name):
            value = form_value(form_data, key)
            if value is not None and value != "":
                return value
        return None

    async def _evaluate_strict(self, text: str) -> float:
        """Evaluate a substituted formula. A bare number is accepted as-is."""
        number = _plain_number(text)
        if number is not None:
            return self.evaluator.check_range(number)
        return await self.evaluator.evaluate_async(text.strip())

    async def _evaluate_lenient(self, text: str) -> str:
        number = _plain_number(text)
        if number is not None:
            return format_number(number)
        if is_evaluable_expression(text):
            return format_number(await self.evaluator.evaluate_async(text.strip()))
        return text

    @staticmethod
    def _processed(
        token: Token,
        raw_text: str,
        processed_text: str,
        numeric: Optional[float] = None,
        deps: Optional[List[Token]] = None,
    ) -> ProcessedValue:
        return ProcessedValue(
            token=token,
            kind=token.kind,
            raw_text=raw_text,
            processed_text=processed_text,
            numeric_value=numeric,
            dependencies=[d.key for d in deps or []],
            timestamp=datetime.utcnow(),
        )
