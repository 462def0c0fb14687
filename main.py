from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Query

from cdr import db
from cdr.api_models import ManifestRequest, ReconcileRequest, ScopeRequest
from cdr.corrections import render_yaml
from cdr.errors import ConflictError, FatalError, NotFoundError, ReconcileError
from cdr.models import scope_to_dict
from cdr.reconciler import ReconciliationLoop, from_settings
from cdr.registry import LocalRegistry
from cdr.runtime import QueueFull, RuntimeState
from cdr.settings import settings

app = FastAPI(title="Config Drift Reconciler")

runtime = RuntimeState()
loop: ReconciliationLoop | None = None


@app.on_event("startup")
def startup() -> None:
    global loop
    db.init_db()
    loop = from_settings(settings, runtime)
    if not settings.start_loop:
        return
    try:
        loop.start()
    except FatalError:
        # Halted state and message are exposed on /status.
        pass


@app.on_event("shutdown")
def shutdown() -> None:
    if loop is not None and runtime.snapshot()["state"] == "running":
        loop.stop()


def _loop() -> ReconciliationLoop:
    if loop is None:
        raise HTTPException(status_code=503, detail="Reconciler not initialized")
    return loop


def _local_registry() -> LocalRegistry:
    reg = _loop().ctx.registry
    if not isinstance(reg, LocalRegistry):
        raise HTTPException(status_code=400, detail="Registry management is only available for the local registry")
    return reg


@app.get("/health")
def health() -> dict[str, str]:
    st = runtime.snapshot()["state"]
    return {"status": "unhealthy" if st == "halted" else "healthy", "state": st}


@app.get("/status")
def status() -> dict[str, Any]:
    out = runtime.snapshot()
    if loop is not None:
        out["scope"] = loop.ctx.scope.scope
        out["auto_correct"] = loop.ctx.auto_correct
        out["queued"] = len(loop.queue)
        out["in_flight"] = sorted(loop.queue.in_flight())
    return out


@app.get("/reports")
def reports(limit: int = Query(20, ge=1, le=500)) -> list[dict[str, Any]]:
    return db.latest_reports(limit)


@app.get("/reports/latest")
def latest_report() -> dict[str, Any]:
    rep = runtime.last_report()
    if rep is None:
        rows = db.latest_reports(1)
        if not rows:
            raise HTTPException(status_code=404, detail="No reconciliation cycle has run yet")
        rep = rows[0]
    return rep


@app.get("/events")
def events(limit: int = Query(100, ge=1, le=1000), level: str | None = None) -> list[dict[str, Any]]:
    return db.latest_events(limit, level)


@app.get("/scopes")
def scopes() -> list[dict[str, Any]]:
    try:
        rows = _loop().ctx.registry.list_scopes()
    except ReconcileError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    return [scope_to_dict(s) for s in rows]


@app.post("/scopes")
def create_scope(req: ScopeRequest) -> dict[str, Any]:
    reg = _local_registry()
    try:
        if req.clone:
            if not req.upstream:
                raise HTTPException(status_code=400, detail="clone requires an upstream scope")
            s = reg.clone_scope(req.slug, req.upstream)
        else:
            s = reg.create_scope(req.slug, req.upstream)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return scope_to_dict(s)


@app.get("/units")
def units(scope: str | None = None) -> list[dict[str, Any]]:
    lp = _loop()
    try:
        rows = lp.ctx.registry.list_units(scope or lp.ctx.scope.scope)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ReconcileError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    return [
        {
            "id": u.id,
            "slug": u.slug,
            "scope_id": u.scope_id,
            "resource": u.document(lp.ctx.namespace).key,
            "labels": u.labels,
            "upstream_unit_id": u.upstream_unit_id,
            "revision": u.revision,
        }
        for u in rows
    ]


@app.post("/units/import")
def import_units(req: ManifestRequest) -> dict[str, Any]:
    reg = _local_registry()
    try:
        created = reg.import_manifests(req.scope, req.manifests, req.labels)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return {"created": [u.slug for u in created]}


@app.post("/reconcile")
def reconcile(req: ReconcileRequest) -> dict[str, Any]:
    """Queue a pass (serialized with event-driven work), or run a read-only pass now."""
    lp = _loop()
    if req.dry_run:
        report = lp.run_cycle(req.identities, trigger="dry-run", auto_correct=False)
        out = report.to_dict()
        out["patches"] = {p.unit_slug: render_yaml(p) for p in report.plans}
        return out
    if runtime.snapshot()["state"] != "running":
        raise HTTPException(status_code=409, detail="Reconciler is not running")
    try:
        if req.identities:
            queued = sum(1 for key in req.identities if lp.queue.put(key))
        else:
            queued = lp.enqueue_all()
    except QueueFull as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except ReconcileError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    return {"queued": queued}
