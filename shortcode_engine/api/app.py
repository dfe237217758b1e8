"""
Shortcode Engine API: FastAPI endpoints for the host application.

Exposes:
- Template processing and field dependency discovery
- Formula testing
- Session field writes and recalculation checks
- Cache management
- Lookup testing and execution history
- Engine statistics and configuration
"""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from shortcode_engine.execution_log.store import SQLiteExecutionLog
from shortcode_engine.models.config import EngineConfig
from shortcode_engine.models.processing import ProcessingContext
from shortcode_engine.resolver.engine import ShortcodeEngine


# --- Request Models ---

class ProcessRequest(BaseModel):
    text: str
    session_id: str
    form_data: Dict[str, Any] = {}


class TextRequest(BaseModel):
    text: str


class FieldUpdateRequest(BaseModel):
    fields: Dict[str, Any]


class DependencyRegistrationRequest(BaseModel):
    name: str
    fields: List[str] = []
    calculations: List[str] = []


class LookupTestRequest(BaseModel):
    form_data: Dict[str, Any] = {}


# --- Application Factory ---

def create_app(engine: Optional[ShortcodeEngine] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Shortcode Engine API",
        description="Shortcode resolution and formula evaluation",
        version="0.1.0",
    )

    eng = engine or ShortcodeEngine()
    app.state.engine = eng

    # === PROCESSING ===

    @app.post("/process")
    async def process(req: ProcessRequest):
        """Resolve every shortcode in a text for a session."""
        context = ProcessingContext(session_id=req.session_id, form_data=req.form_data)
        result = await eng.process(req.text, context)
        return result.model_dump(mode="json")

    @app.post("/dependencies/fields")
    async def field_dependencies(req: TextRequest):
        """Form fields a text reads, directly or through calculations and lookups."""
        return {"fields": await eng.extract_field_dependencies(req.text)}

    @app.post("/dependencies")
    def register_dependencies(req: DependencyRegistrationRequest):
        eng.register_dependencies(req.name, req.fields, req.calculations)
        return {"status": "registered", "name": req.name}

    @app.post("/evaluate")
    async def evaluate(req: TextRequest):
        """Formula tester: evaluate a bare arithmetic expression."""
        result = await eng.evaluate_formula(req.text)
        return result.model_dump(mode="json")

    # === SESSIONS ===

    @app.put("/sessions/{session_id}/fields")
    def update_fields(session_id: str, req: FieldUpdateRequest):
        queued: List[str] = []
        for name, value in req.fields.items():
            for dependent in eng.store_field(session_id, name, value):
                if dependent not in queued:
                    queued.append(dependent)
        return {"session_id": session_id, "queued": queued}

    @app.get("/sessions/{session_id}/recalculation/{name}")
    def needs_recalculation(session_id: str, name: str):
        return {
            "session_id": session_id,
            "name": name,
            "needs_recalculation": eng.needs_recalculation(session_id, name),
        }

    @app.post("/sessions/{session_id}/calculations/{name}/current")
    def mark_current(session_id: str, name: str):
        eng.mark_current(session_id, name)
        return {"status": "current", "session_id": session_id, "name": name}

    @app.get("/sessions/{session_id}")
    def session_stats(session_id: str):
        return eng.cache_stats(session_id)

    @app.delete("/sessions/{session_id}")
    def clear_session(session_id: str):
        eng.clear_cache(session_id)
        return {"status": "cleared", "session_id": session_id}

    @app.delete("/cache")
    def clear_cache():
        eng.clear_cache()
        return {"status": "cleared"}

    # === LOOKUPS ===

    @app.post("/lookups/{name}/test")
    async def test_lookup(name: str, req: LookupTestRequest):
        """Run a lookup with per-rule debug output. Nothing is logged."""
        result = await eng.test_lookup(name, req.form_data)
        return result.model_dump(mode="json")

    @app.get("/lookups/{name}/executions")
    async def lookup_executions(name: str):
        if not isinstance(eng.log_sink, SQLiteExecutionLog):
            raise HTTPException(404, "Execution history not available")
        await eng.drain_logs()
        return [r.model_dump(mode="json") for r in eng.log_sink.query_by_lookup(name)]

    # === STATS & CONFIG ===

    @app.get("/stats")
    def stats():
        return {
            "cache": eng.cache_stats(),
            "dependencies": eng.dependency_stats(),
        }

    @app.get("/config")
    def get_config():
        return eng.config.model_dump()

    @app.put("/config")
    def update_config(config: EngineConfig):
        eng.configure(config)
        return config.model_dump()

    return app
