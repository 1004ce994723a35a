from __future__ import annotations

"""
ScanGate - scangate/server.py
-----------------------------
HTTP surface of the scan intake.

1) POST /scans/intake
   - The single authoritative write path (see scangate/intake.py).
   - Malformed payloads get clean 400s; denials are structured JSON bodies
     (403/404), never stack traces.
   - Safe to call twice with the same clientScanId: the second call is
     acknowledged as a duplicate and writes nothing.

2) Read models
   - GET /events/{event_id}/usage        recent usage rows
   - GET /events/{event_id}/usage/stats  dashboard counters

3) Health probes
   - /healthz: liveness (no DB access).
   - /readyz: readiness (touches SQLite to confirm schema presence).

4) DB path
   - Sourced via config_loader.get_db_path() unless create_app() is given one.

Run:
    uvicorn scangate.server:app --host 0.0.0.0 --port 8000
"""

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .config_loader import get_db_path, get_limits_cfg
from .db_schema import ensure_schema
from .intake import ScanIntake
from .models import ScanRequest
from .usage_stats import list_usage, usage_stats

log = logging.getLogger("scangate")
log.setLevel(logging.INFO)


# ------------------------------------------------------------
# Request contract
# ------------------------------------------------------------
class ScanIntakeIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ticket_id: Optional[str] = Field(default=None, alias="ticketId")
    cedula: Optional[str] = None
    control_type_id: str = Field(alias="controlTypeId")
    event_id: str = Field(alias="eventId")
    device: Optional[str] = None
    client_scan_id: Optional[str] = Field(default=None, alias="clientScanId")
    timestamp: Optional[int] = None       # client capture time (ms); informational
    notes: Optional[str] = None

    @field_validator("ticket_id", "cedula", "device", "client_scan_id", "notes", mode="before")
    @classmethod
    def _strip_optional(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        s = str(v).strip()
        return s or None

    @field_validator("control_type_id", "event_id", mode="before")
    @classmethod
    def _strip_required(cls, v: Any) -> str:
        s = str(v if v is not None else "").strip()
        if not s:
            raise ValueError("must be a non-empty string")
        return s

    @model_validator(mode="after")
    def _one_subject(self) -> "ScanIntakeIn":
        if bool(self.ticket_id) == bool(self.cedula):
            raise ValueError("exactly one of ticketId or cedula is required")
        return self

    def to_request(self) -> ScanRequest:
        return ScanRequest(
            control_type_id=self.control_type_id,
            event_id=self.event_id,
            ticket_id=self.ticket_id,
            cedula=self.cedula,
            device=self.device,
            client_scan_id=self.client_scan_id,
            notes=self.notes,
        )


# ------------------------------------------------------------
# App factory
# ------------------------------------------------------------
def create_app(db_path: str | Path | None = None) -> FastAPI:
    resolved = Path(db_path) if db_path else get_db_path()
    limits = get_limits_cfg()

    app = FastAPI(title="ScanGate Intake", version="0.3.0")
    app.state.db_path = resolved
    app.state.intake = ScanIntake(
        resolved,
        cedula_default_max_uses=int(limits.get("cedula_default_max_uses", 0) or 0),
    )
    usage_list_default = int(limits.get("usage_list_default", 100) or 100)

    @app.on_event("startup")
    async def prepare_db() -> None:
        """Ensure schema and emit the configured database path once logging is up."""
        ensure_schema(resolved)
        message = f"db_path={resolved.resolve()}"
        log.info(message)
        logging.getLogger("uvicorn.error").info(message)

    # ------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------
    @app.post("/scans/intake")
    async def scans_intake(payload: Dict[str, Any]):
        """
        Record one scan if the subject is still within its control limit.
          200 -> {success, can_access, usage, current_uses, max_uses, duplicate, ...}
          403 -> {success:false, can_access:false, reason, current_uses, max_uses, error_message, last_usage}
          404 -> unknown ticket / control type (same body shape as 403)
          400 -> malformed payload
        """
        try:
            body = ScanIntakeIn(**payload)
        except ValidationError as ve:
            raise HTTPException(status_code=400, detail=f"invalid scan: {ve.errors(include_url=False)!r}")

        try:
            outcome = await app.state.intake.process(body.to_request())
        except sqlite3.Error as ex:
            log.exception("[INTAKE] database failure")
            raise HTTPException(status_code=503, detail=f"intake unavailable: {type(ex).__name__}")

        return JSONResponse(outcome.to_payload(), status_code=outcome.status_code)

    # ------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------
    @app.get("/events/{event_id}/usage")
    def event_usage(event_id: str, limit: Optional[int] = None, control_type_id: Optional[str] = None):
        rows = list_usage(resolved, event_id, limit=limit or usage_list_default,
                          control_type_id=control_type_id)
        return {"event_id": event_id, "usage": rows}

    @app.get("/events/{event_id}/usage/stats")
    def event_usage_stats(event_id: str, control_type_id: Optional[str] = None):
        return usage_stats(resolved, event_id, control_type_id=control_type_id)

    # ------------------------------------------------------------
    # Health
    # ------------------------------------------------------------
    @app.get("/health")
    def health_alias():
        return {"status": "ok", "service": "scangate-intake"}

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.get("/readyz")
    def readyz():
        try:
            with sqlite3.connect(str(resolved)) as db:
                row = db.execute(
                    "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='control_usage'"
                ).fetchone()
        except sqlite3.Error as ex:
            return JSONResponse({"ready": False, "error": f"{type(ex).__name__}: {ex}"}, status_code=503)
        if not row or not row[0]:
            return JSONResponse({"ready": False, "error": "schema missing"}, status_code=503)
        return {"ready": True, "db_path": str(resolved)}

    return app


app = create_app()
