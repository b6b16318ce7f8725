from __future__ import annotations

import secrets

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from kar import db
from kar.api_models import ReconcileAllRequest
from kar.errors import PlatformError
from kar.kube_ops import KubePlatform, PlatformClient
from kar.names import AssemblyRef, validate_assembly_name
from kar.reconciler import AssemblyReconciler
from kar.runtime import RuntimeState
from kar.scheduler import ReconcileAllScheduler, ReconcileLoop
from kar.settings import settings

app = FastAPI(title="Kafka Assembly Reconciler")
security = HTTPBasic()
runtime = RuntimeState()

# Set before startup to use another platform client (tests use an in-memory one).
platform: PlatformClient | None = None
_loop: ReconcileLoop | None = None


def get_loop() -> ReconcileLoop:
    global platform, _loop
    if _loop is None:
        if platform is None:
            platform = KubePlatform()
        scheduler = ReconcileAllScheduler(AssemblyReconciler(platform), guard=runtime.lock_for)
        _loop = ReconcileLoop(scheduler, runtime)
    return _loop


def start_loop() -> None:
    get_loop().start()


@app.on_event("startup")
def startup() -> None:
    db.init_db()
    if settings.enable_loop:
        start_loop()


@app.on_event("shutdown")
def shutdown() -> None:
    if _loop is not None:
        _loop.stop()


def get_current_username(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    user_ok = secrets.compare_digest(credentials.username, settings.api_user)
    pass_ok = secrets.compare_digest(credentials.password, settings.api_password)
    if not (user_ok and pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


@app.get("/health")
def health() -> dict:
    return {"status": "healthy"}


@app.get("/assemblies")
def list_assemblies(username: str = Depends(get_current_username)) -> list[dict]:
    results = {r.ref: r for r in runtime.list_results()}
    out = []
    for row in db.list_assemblies():
        ref = AssemblyRef(row.namespace, row.name)
        last = results.pop(ref, None)
        out.append(
            {
                "namespace": row.namespace,
                "name": row.name,
                "known": True,
                "updated_at": row.updated_at,
                "last_result": last.to_dict() if last else None,
            }
        )
    # Assemblies already deleted but still reported by the last sweep.
    for ref, last in sorted(results.items()):
        out.append(
            {"namespace": ref.namespace, "name": ref.name, "known": False, "updated_at": None, "last_result": last.to_dict()}
        )
    return out


@app.post("/assemblies/{namespace}/{name}/reconcile")
def reconcile_assembly(namespace: str, name: str, username: str = Depends(get_current_username)) -> dict:
    try:
        validate_assembly_name(name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    db.log_event("INFO", f"Reconcile requested by {username}", namespace=namespace, assembly=name)
    result = get_loop().reconcile_one(AssemblyRef(namespace, name))
    return result.to_dict()


@app.post("/reconcile-all")
def reconcile_all(req: ReconcileAllRequest | None = None, username: str = Depends(get_current_username)) -> list[dict]:
    namespace = req.namespace if req else None
    selector = req.selector if req else None
    db.log_event("INFO", f"Reconcile-all requested by {username}", namespace=namespace)
    try:
        results = get_loop().sweep(trigger="api", namespace=namespace, selector=selector)
    except PlatformError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [results[ref].to_dict() for ref in sorted(results)]


@app.get("/events")
def events(limit: int = 100, assembly: str | None = None, username: str = Depends(get_current_username)) -> list[dict]:
    return db.latest_events(limit=max(1, min(1000, limit)), assembly=assembly)
