from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from agendasync.ai_client import OpenAICompatibleClient
from agendasync.config_manager import MASK, SECRET_FIELDS, ConfigManager
from agendasync.scheduler import SyncScheduler
from agendasync.state_store import StateStore
from agendasync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    for section, field_name in SECRET_FIELDS:
        has_value = bool(str(config_dict.get(section, {}).get(field_name, "")).strip())
        meta.setdefault(section, {})[field_name] = {"is_masked": has_value}
    return meta


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop blank or masked secrets so they never overwrite stored ones."""
    sanitized = dict(payload)
    for section, field_name in SECRET_FIELDS:
        section_payload = sanitized.get(section)
        if not isinstance(section_payload, dict):
            continue
        section_payload = dict(section_payload)
        value = section_payload.get(field_name)
        if value is not None and str(value).strip() in {"", MASK}:
            if str(current.get(section, {}).get(field_name, "")):
                section_payload.pop(field_name, None)
            else:
                section_payload[field_name] = ""
        if section_payload:
            sanitized[section] = section_payload
        else:
            sanitized.pop(section, None)
    return sanitized


def create_app() -> FastAPI:
    config_path = os.getenv("AGENDASYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("AGENDASYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="AgendaSync Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.get("/api/config/raw")
    def get_config_raw() -> dict[str, Any]:
        raw = app.state.context.config_manager.load().to_dict()
        masked = app.state.context.config_manager.masked()
        return {"config": masked, "meta": _masked_meta(raw)}

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit)}

    @app.post("/api/ai/test")
    def test_ai_connectivity() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        ok, message = OpenAICompatibleClient(config.ai).test_connectivity()
        return {"ok": ok, "message": message}

    @app.get("/api/memory")
    def memory_entries(limit: int = 100, applied: str | None = None) -> dict[str, Any]:
        applied_operation = applied.strip().upper() if applied else None
        entries = app.state.context.state_store.recent_memory_entries(
            limit=limit,
            applied_operation=applied_operation,
        )
        return {"entries": entries}

    @app.get("/api/memory/review")
    def memory_review(limit: int = 100) -> dict[str, Any]:
        return {"entries": app.state.context.state_store.review_entries(limit=limit)}

    @app.delete("/api/memory")
    def reset_memory(confirm: bool = False) -> dict[str, Any]:
        if not confirm:
            raise HTTPException(status_code=400, detail="pass confirm=true to erase history")
        deleted = app.state.context.state_store.clear_memory()
        return {"message": "memory cleared", "deleted": deleted}

    @app.delete("/api/records/{record_id}/marker")
    def reset_record_marker(record_id: str) -> dict[str, Any]:
        if not app.state.context.sync_engine.reset_record(record_id):
            raise HTTPException(status_code=404, detail="record marker not found")
        return {"message": "record marker cleared", "record_id": record_id}

    return app


app = create_app()
