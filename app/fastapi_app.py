# app/fastapi_app.py
#!/usr/bin/env python3
from __future__ import annotations

import os, json, asyncio
from contextlib import suppress
from typing import Dict, Any, Optional

import yaml
from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Depends, Body, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi  # for custom OpenAPI (Authorize button)
from sqlalchemy.ext.asyncio import AsyncEngine

from incident_core.clustering import ClusterHeatmapGenerator, ClusterParams, HeatmapParams
from incident_core.consensus import VerificationConsensus
from incident_core.distribution import DistributionHub
from incident_core.errors import (
    Conflict, Expired, Forbidden, IncidentServiceError, NotFound, Transient, ValidationError,
)
from incident_core.geojson_export import ExportParams, GeoJsonExporter
from incident_core.hotspots import DensityParams, HotspotAnalyzer, HotspotParams
from incident_core.impact_zones import ImpactZoneAnalyzer, ImpactZoneParams
from incident_core.lifecycle import IncidentLifecycle
from incident_core.logging_utils import setup_logger
from incident_core.params import Checker
from incident_core.predictive import PredictiveModelGenerator, PredictiveParams
from incident_core.records import PerformanceMonitor, iso, utcnow
from incident_core.repository import IncidentRepository, SearchParams
from incident_core.temporal import StatisticsParams, TemporalParams, TemporalPatternAnalyzer

from . import db
from .auth import Identity, require_identity, identity_from_token
from .spatial_store import SpatialStore

load_dotenv()
setup_logger("incident_core", os.getenv("LOG_DIR"))
logger = setup_logger("app", os.getenv("LOG_DIR"))

def load_cfg(p: str) -> Dict[str, Any]:
    if not os.path.exists(p):
        logger.warning("Config %s not found, using defaults", p)
        return {}
    with open(p, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}

app = FastAPI(title="Incident Analytics API", version="1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"]
)

# ---------- State ----------
class State:
    def __init__(self):
        self.cfg: Dict[str, Any] = {}
        self.environment: str = "production"
        self.engine: Optional[AsyncEngine] = None
        self.store: Optional[SpatialStore] = None
        self.repository: Optional[IncidentRepository] = None
        self.hub: Optional[DistributionHub] = None
        self.lifecycle: Optional[IncidentLifecycle] = None
        self.monitor = PerformanceMonitor()
        self.hotspots: Optional[HotspotAnalyzer] = None
        self.clusters: Optional[ClusterHeatmapGenerator] = None
        self.impact: Optional[ImpactZoneAnalyzer] = None
        self.temporal: Optional[TemporalPatternAnalyzer] = None
        self.predictive: Optional[PredictiveModelGenerator] = None
        self.exporter: Optional[GeoJsonExporter] = None
        self.heartbeat_sec: float = 1.0
        self.search_limits: Dict[str, Any] = {}
        self.max_grid_cells: float = 200_000

STATE = State()

def cfg_value(section: str, key: str, default: Any) -> Any:
    return (STATE.cfg.get(section) or {}).get(key, default)

def configure(cfg: Dict[str, Any], url: str) -> None:
    """Wire store, repository, hub and analyzers from a config dict."""
    STATE.cfg = cfg or {}
    STATE.environment = os.getenv("APP_ENV") or STATE.cfg.get("environment", "production")
    STATE.engine = db.make_engine(url)
    STATE.store = SpatialStore(
        db.make_sessionmaker(STATE.engine),
        query_timeout=cfg_value("database", "query_timeout_sec", None),
    )
    STATE.repository = IncidentRepository(STATE.store)
    STATE.hub = DistributionHub(
        region_precision=int(cfg_value("realtime", "region_precision", 10)),
        queue_size=int(cfg_value("realtime", "queue_size", 512)),
        max_region_cells=int(cfg_value("realtime", "max_region_cells", 400)),
    )
    consensus = VerificationConsensus(STATE.repository, quorum=int(cfg_value("verification", "quorum", 3)))
    STATE.lifecycle = IncidentLifecycle(STATE.repository, consensus, STATE.hub)
    STATE.monitor = PerformanceMonitor()
    STATE.hotspots = HotspotAnalyzer(STATE.repository, STATE.monitor)
    STATE.clusters = ClusterHeatmapGenerator(STATE.repository, STATE.store, STATE.monitor)
    STATE.impact = ImpactZoneAnalyzer(STATE.repository, STATE.store, STATE.monitor)
    STATE.temporal = TemporalPatternAnalyzer(STATE.repository, STATE.monitor)
    STATE.predictive = PredictiveModelGenerator(
        STATE.repository, STATE.store,
        min_samples=int(cfg_value("analysis", "prediction_min_samples", 50)),
        monitor=STATE.monitor,
    )
    STATE.exporter = GeoJsonExporter(STATE.repository, STATE.store, STATE.monitor)
    STATE.heartbeat_sec = float(cfg_value("realtime", "heartbeat_sec", 1.0))
    STATE.max_grid_cells = float(cfg_value("analysis", "max_grid_cells", 200_000))
    STATE.search_limits = {
        "default_radius_m": float(cfg_value("search", "default_radius_m", 5000)),
        "max_radius_m": float(cfg_value("search", "max_radius_m", 50000)),
        "max_page_size": int(cfg_value("search", "max_page_size", 100)),
    }

# ---------- Startup ----------
@app.on_event("startup")
async def startup():
    cfg_path = os.getenv("INCIDENT_CFG", "configs/service.yaml")
    cfg = load_cfg(cfg_path)
    url = os.getenv("DATABASE_URL") or (cfg.get("database") or {}).get("url") or db.DATABASE_URL
    configure(cfg, url)
    await db.create_tables(STATE.engine)
    logger.info("Service started (env=%s, db=%s)", STATE.environment, url.split("://", 1)[0])

@app.on_event("shutdown")
async def shutdown():
    if STATE.engine is not None:
        await STATE.engine.dispose()

# ---------- Errors ----------
def _error(status_code: int, code: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "message": message, **extra})

@app.exception_handler(ValidationError)
async def on_validation(request: Request, exc: ValidationError):
    return _error(422, "validation_error", exc.message, details=exc.details)

@app.exception_handler(NotFound)
async def on_not_found(request: Request, exc: NotFound):
    return _error(404, "not_found", str(exc))

@app.exception_handler(Forbidden)
async def on_forbidden(request: Request, exc: Forbidden):
    return _error(403, "forbidden", "Not authorized to perform this action")

@app.exception_handler(Conflict)
async def on_conflict(request: Request, exc: Conflict):
    return _error(409, "conflict", str(exc))

@app.exception_handler(Expired)
async def on_expired(request: Request, exc: Expired):
    return _error(409, "expired", str(exc))

@app.exception_handler(Transient)
async def on_transient(request: Request, exc: Transient):
    return _error(503, "unavailable", str(exc), retryable=True)

@app.exception_handler(IncidentServiceError)
async def on_service_error(request: Request, exc: IncidentServiceError):
    logger.error("Unhandled %s on %s: %s", exc.__class__.__name__, request.url.path, exc)
    if STATE.environment == "development":
        return _error(500, "internal_error", str(exc), type=exc.__class__.__name__)
    return _error(500, "internal_error", "Internal server error")

@app.exception_handler(Exception)
async def on_unexpected(request: Request, exc: Exception):
    logger.exception("Unexpected failure on %s", request.url.path)
    if STATE.environment == "development":
        return _error(500, "internal_error", str(exc), type=exc.__class__.__name__)
    return _error(500, "internal_error", "Internal server error")

# ---------- Routes ----------
@app.get("/health")
async def health():
    try:
        await STATE.store.ping()
        database = "ok"
    except Transient:
        database = "unreachable"
    return {"ok": database == "ok", "database": database, "realtime": STATE.hub.stats(), "timestamp": iso(utcnow())}

@app.get("/incident-types")
async def list_incident_types():
    types = await STATE.repository.list_types()
    return {"incident_types": [t.to_dict() for t in types]}

@app.post("/incidents", status_code=201)
async def create_incident(payload: Dict[str, Any] = Body(...), user: Identity = Depends(require_identity)):
    incident = await STATE.lifecycle.create(payload, user.user_id)
    return {"success": True, "incident": incident.to_dict()}

@app.get("/incidents/search")
async def search_incidents(request: Request):
    params = SearchParams.parse(dict(request.query_params), **STATE.search_limits)
    return await STATE.repository.search(params)

@app.get("/incidents/statistics")
async def incident_statistics(request: Request, user: Identity = Depends(require_identity)):
    return await STATE.temporal.statistics(StatisticsParams.parse(dict(request.query_params)))

@app.get("/incidents/clusters")
async def incident_clusters(request: Request):
    return await STATE.clusters.clusters(ClusterParams.parse(dict(request.query_params)))

@app.get("/incidents/heatmap")
async def incident_heatmap(request: Request):
    params = HeatmapParams.parse(dict(request.query_params), STATE.max_grid_cells)
    return await STATE.clusters.heatmap(params)

@app.get("/incidents/{incident_id}")
async def get_incident(incident_id: int):
    incident = await STATE.lifecycle.get(incident_id)
    return {"incident": incident.to_dict()}

@app.patch("/incidents/{incident_id}")
async def update_incident(incident_id: int, payload: Dict[str, Any] = Body(...),
                          user: Identity = Depends(require_identity)):
    result = await STATE.lifecycle.update(incident_id, payload, user.user_id, user.is_privileged)
    return {"success": True, "incident": result.incident.to_dict(), "changed_fields": result.changed_fields}

@app.delete("/incidents/{incident_id}")
async def delete_incident(incident_id: int, user: Identity = Depends(require_identity)):
    incident = await STATE.lifecycle.delete(incident_id, user.user_id, user.is_privileged)
    return {"success": True, "incident_id": incident.id, "deleted_at": iso(incident.deleted_at)}

@app.post("/incidents/{incident_id}/verify")
async def verify_incident(incident_id: int, user: Identity = Depends(require_identity)):
    outcome = await STATE.lifecycle.verify(incident_id, user.user_id)
    return {
        "success": True,
        "incident_id": outcome.incident_id,
        "verification_count": outcome.verification_count,
        "is_verified": outcome.is_verified,
    }

@app.get("/incidents/{incident_id}/verifications")
async def incident_verifications(incident_id: int, user: Identity = Depends(require_identity)):
    if not user.is_privileged:
        raise Forbidden("Verification records are restricted to administrators")
    return {"incident_id": incident_id, "verifications": await STATE.repository.verifications(incident_id)}

@app.get("/analysis/hotspots")
async def analysis_hotspots(request: Request):
    params = HotspotParams.parse(dict(request.query_params), STATE.max_grid_cells)
    return await STATE.hotspots.generate_hotspots(params)

@app.get("/analysis/impact-zones")
async def analysis_impact_zones(request: Request):
    return await STATE.impact.generate(ImpactZoneParams.parse(dict(request.query_params)))

@app.post("/analysis/impact-zones")
async def analysis_impact_zones_body(payload: Dict[str, Any] = Body(default={})):
    return await STATE.impact.generate(ImpactZoneParams.parse(payload))

@app.get("/analysis/temporal-patterns")
async def analysis_temporal(request: Request):
    return await STATE.temporal.analyze(TemporalParams.parse(dict(request.query_params)))

@app.get("/analysis/predictive")
async def analysis_predictive(request: Request):
    return await STATE.predictive.generate(PredictiveParams.parse(dict(request.query_params)))

@app.get("/analysis/density")
async def analysis_density(request: Request):
    params = DensityParams.parse(dict(request.query_params), STATE.max_grid_cells)
    return await STATE.hotspots.calculate_density(params)

@app.get("/analysis/export/geojson")
async def analysis_export(request: Request):
    return await STATE.exporter.export(ExportParams.parse(dict(request.query_params)))

@app.get("/analysis/performance")
async def analysis_performance():
    return {"metrics": STATE.monitor.summary(), "timestamp": iso(utcnow())}

# ---------- Real-time ----------
async def _pump(ws: WebSocket, outbox: "asyncio.Queue[dict]") -> None:
    """Forward queued events; send a heartbeat whenever the outbox stays idle."""
    while True:
        try:
            e = await asyncio.wait_for(outbox.get(), timeout=STATE.heartbeat_sec)
        except asyncio.TimeoutError:
            e = {"event": "heartbeat", "timestamp": iso(utcnow())}
        await ws.send_text(json.dumps(e))

async def _handle_message(conn_id: str, msg: Dict[str, Any]) -> None:
    hub = STATE.hub
    action = msg.get("action")
    try:
        if action == "ping":
            await hub.send(conn_id, {"event": "pong"})
        elif action == "subscribe_area":
            c = Checker()
            b = msg.get("bounds") or {}
            bounds = c.bounds(b.get("north"), b.get("south"), b.get("east"), b.get("west"))
            if bounds is None:
                c.fail("bounds", "bounds with north, south, east and west are required")
            c.raise_if_errors("Invalid geographic bounds")
            regions = await hub.subscribe_area(conn_id, bounds)
            await hub.send(conn_id, {"event": "area_subscribed", "regions": regions, "bounds": bounds.to_dict()})
        elif action == "unsubscribe_area":
            c = Checker()
            b = msg.get("bounds") or {}
            bounds = c.bounds(b.get("north"), b.get("south"), b.get("east"), b.get("west"))
            c.raise_if_errors("Invalid geographic bounds")
            regions = await hub.unsubscribe_area(conn_id, bounds)
            await hub.send(conn_id, {"event": "area_unsubscribed", "regions": regions})
        elif action in ("focus_incident", "blur_incident"):
            c = Checker()
            incident_id = c.integer("incident_id", msg.get("incident_id"), 1, 2**31 - 1)
            if incident_id is None:
                c.fail("incident_id", "incident_id is required")
            c.raise_if_errors("Invalid incident id")
            if action == "focus_incident":
                channel = await hub.focus(conn_id, incident_id)
                await hub.send(conn_id, {"event": "incident_focused", "incident_id": incident_id, "channel": channel})
            else:
                await hub.blur(conn_id, incident_id)
                await hub.send(conn_id, {"event": "incident_blurred", "incident_id": incident_id})
        else:
            await hub.send(conn_id, {"event": "error", "message": f"Unknown action: {action}"})
    except ValidationError as exc:
        await hub.send(conn_id, {"event": "error", "message": exc.message, "details": exc.details})

@app.websocket("/ws")
async def ws(websocket: WebSocket, token: str = ""):
    try:
        user = identity_from_token(token)
    except HTTPException:
        await websocket.close(code=4401)
        return
    await websocket.accept()
    sub = await STATE.hub.connect(user.user_id)
    sender = asyncio.create_task(_pump(websocket, sub.outbox))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await STATE.hub.send(sub.connection_id, {"event": "error", "message": "Messages must be JSON"})
                continue
            if not isinstance(msg, dict):
                await STATE.hub.send(sub.connection_id, {"event": "error", "message": "Messages must be objects"})
                continue
            await _handle_message(sub.connection_id, msg)
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await sender
        await STATE.hub.disconnect(sub.connection_id)

# ---------- Swagger "Authorize" (Bearer JWT) ----------
SECURED = {
    ("/incidents", "post"),
    ("/incidents/{incident_id}", "patch"),
    ("/incidents/{incident_id}", "delete"),
    ("/incidents/{incident_id}/verify", "post"),
    ("/incidents/statistics", "get"),
    ("/incidents/{incident_id}/verifications", "get"),
}

def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    schema = get_openapi(
        title=app.title,
        version=app.version,
        routes=app.routes,
        description="Geospatial incident analytics and real-time distribution.",
    )

    components = schema.setdefault("components", {}).setdefault("securitySchemes", {})
    components["BearerAuth"] = {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}

    paths = schema.get("paths", {})
    for path, method in SECURED:
        if path in paths and method in paths[path]:
            paths[path][method]["security"] = [{"BearerAuth": []}]

    app.openapi_schema = schema
    return app.openapi_schema

app.openapi = custom_openapi
