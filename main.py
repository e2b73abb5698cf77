"""Webhook endpoint for Docker Registry notifications.

Run with:  uvicorn main:app --port 3030
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from threading import Lock

from fastapi import Depends, FastAPI, Query, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from rpr import db
from rpr.api_models import Notification
from rpr.cluster import ClusterClient
from rpr.reconciler import Reconciler
from rpr.registry import RegistryClient
from rpr.settings import settings

logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG") else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

_reconciler: Reconciler | None = None
_reconciler_lock = Lock()


def get_reconciler() -> Reconciler | None:
    """Process-wide reconciler, built on first use.

    Returns None while the cluster or registry client cannot be constructed;
    the next request tries again.
    """
    global _reconciler
    with _reconciler_lock:
        if _reconciler is None:
            try:
                cluster = ClusterClient.from_settings()
                _reconciler = Reconciler(RegistryClient.from_settings(), cluster)
            except Exception as e:
                db.log_event("ERROR", f"Cannot build reconciler: {type(e).__name__}: {e}")
                return None
        return _reconciler


@asynccontextmanager
async def lifespan(app: FastAPI):
    db.init_db()
    db.log_event("INFO", f"Registry push reconciler started (registry {settings.registry_url})")
    yield
    if _reconciler is not None:
        _reconciler.registry.close()
        _reconciler.cluster.close()


app = FastAPI(title="Registry Push Reconciler", lifespan=lifespan)


@app.post("/event")
async def registry_event(request: Request, reconciler: Reconciler | None = Depends(get_reconciler)) -> dict:
    # The registry posts application/vnd.docker.distribution.events.v1+json, so parse raw bytes.
    raw = await request.body()
    try:
        notification = Notification.model_validate_json(raw)
    except ValidationError as e:
        db.log_event("ERROR", f"Rejected notification with {e.error_count()} validation error(s): {e.errors()[:3]}")
        return {"accepted": False, "results": []}

    if reconciler is None:
        return {"accepted": True, "results": []}

    # Delivery is always acknowledged; outcomes live in the event log.
    try:
        results = await run_in_threadpool(reconciler.handle_all, notification.events)
    except Exception as e:
        logger.exception("Notification processing failed")
        db.log_event("ERROR", f"Notification processing failed: {type(e).__name__}: {e}")
        return {"accepted": True, "results": []}
    return {"accepted": True, "results": [r.as_dict() for r in results]}


@app.get("/events")
def list_events(limit: int = Query(50, ge=1, le=1000)) -> list[dict]:
    return db.latest_events(limit)


@app.get("/reconciliations")
def list_reconciliations(limit: int = Query(50, ge=1, le=1000), workload: str | None = None) -> list[dict]:
    return db.latest_results(limit, workload=workload)


@app.get("/workloads")
def list_workloads(reconciler: Reconciler | None = Depends(get_reconciler)) -> list[dict]:
    if reconciler is None:
        return []
    return [asdict(s) for s in reconciler.runtime.list_statuses()]


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
