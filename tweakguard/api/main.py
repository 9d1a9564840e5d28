"""
FastAPI surface - apply a loadout, undo it, verify it, list backups.
"""

from fastapi import FastAPI, HTTPException, Depends
from typing import Dict, List, Optional

from .schemas import (
    ApplyRequest,
    UndoRequest,
    VerifyRequest,
    HealthResponse,
    BackupInfo,
    BackupListResponse,
    ReportResponse,
)
from ..core.config import VERSION, debug_enabled, validate_config
from ..core.context import EngineContext, build_context
from ..core.dao import SqliteKeyValueStore
from ..core.db import health_check
from ..core.loadout import Loadout, LoadoutError, load_loadout
from ..core.mutator import as_key
from ..core.orchestrator import FatalTierFailure
from ..core.schema import TweakGuardError
from ..core.verify import expectations_from_tiers, verify
from ..util.logging import audit_event

app = FastAPI(
    title="tweakguard API",
    version=VERSION,
    description="Reversible system configuration changes with backup and undo",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

_context: Optional[EngineContext] = None


def get_context() -> EngineContext:
    """Engine context built from configuration on first use."""
    global _context
    if _context is None:
        _context = build_context()
    return _context


def get_guards() -> Dict[str, bool]:
    """Guard registry for loadouts; the detection layer overrides this."""
    return {}


def _load(ctx: EngineContext, spec, guards: Optional[Dict[str, bool]],
          enable: Optional[List[str]] = None) -> Loadout:
    try:
        loadout = load_loadout(spec, guards, ctx.services(), ctx.boot_config(),
                               ignore_guards=guards is None)
        if enable is not None:
            loadout.enable_only(enable)
    except LoadoutError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return loadout


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(ctx: EngineContext = Depends(get_context)):
    """Check engine health and configuration."""
    issues = validate_config()
    store_health = True
    value_count = None
    if isinstance(ctx.store, SqliteKeyValueStore):
        store_health = health_check(ctx.store.db_path)
        value_count = ctx.store.count_values() if store_health else None

    if not store_health:
        status = "unhealthy"
    elif issues:
        status = "degraded"
    else:
        status = "healthy"

    return HealthResponse(
        status=status,
        version=VERSION,
        store_backend=type(ctx.store).__name__,
        store_health=store_health,
        value_count=value_count,
        backup_dir=str(ctx.backups.backup_dir),
        backup_count=len(ctx.backups.list_backups()),
        config_issues=issues,
    )


@app.get("/backups", response_model=BackupListResponse)
def list_backups_endpoint(key: Optional[str] = None, ctx: EngineContext = Depends(get_context)):
    """List backup artifacts, oldest first, optionally for one key."""
    try:
        target = as_key(key) if key else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid key: {e}")

    handles = ctx.backups.list_backups(target)
    return BackupListResponse(backups=[
        BackupInfo(key=str(h.key), captured_at=h.captured_at, artifact=h.path.name)
        for h in handles
    ])


@app.post("/apply", response_model=ReportResponse)
def apply_endpoint(req: ApplyRequest, ctx: EngineContext = Depends(get_context),
                   guards: Dict[str, bool] = Depends(get_guards)):
    """Run the enabled tiers of a loadout."""
    audit_event(ctx.logger, "api.apply", {"loadout": req.loadout.name, "dry_run": req.dry_run},
                {"enable": req.enable, "guards": req.guards})
    loadout = _load(ctx, req.loadout, {**guards, **req.guards}, req.enable)

    try:
        report = ctx.orchestrator(dry_run=req.dry_run).apply(loadout.tiers)
    except FatalTierFailure as e:
        raise HTTPException(status_code=409, detail={"error": str(e), "report": e.report.to_dict()})
    except TweakGuardError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return ReportResponse(report=report.to_dict())


@app.post("/undo", response_model=ReportResponse)
def undo_endpoint(req: UndoRequest, ctx: EngineContext = Depends(get_context)):
    """Restore keys from their latest backups and run compensating actions.

    With a loadout, the named modules (or all of them) are undone together
    with any extra keys.
    """
    keys = [as_key(k) for k in req.keys]
    actions = []

    if req.loadout is not None:
        loadout = _load(ctx, req.loadout, None)
        modules = loadout.modules
        if req.modules is not None:
            modules = []
            for name in req.modules:
                module = loadout.module(name)
                if module is None:
                    raise HTTPException(status_code=400, detail=f"Unknown module: {name}")
                modules.append(module)
        for module in modules:
            keys.extend(module.keys)
            actions.extend(module.compensating)
    elif req.modules:
        raise HTTPException(status_code=400, detail="modules require a loadout")

    if not keys and not actions:
        raise HTTPException(status_code=400, detail="Nothing to undo")

    audit_event(ctx.logger, "api.undo", {"keys": len(keys), "actions": len(actions)},
                {"modules": req.modules})
    report = ctx.rollback().undo(keys, actions)
    return ReportResponse(report=report.to_dict())


@app.post("/verify", response_model=ReportResponse)
def verify_endpoint(req: VerifyRequest, ctx: EngineContext = Depends(get_context),
                    guards: Dict[str, bool] = Depends(get_guards)):
    """Check that the enabled tiers' values are in place. Read-only."""
    loadout = _load(ctx, req.loadout, {**guards, **req.guards}, req.enable)
    report = verify(ctx.store, expectations_from_tiers(loadout.tiers), ctx.logger)
    return ReportResponse(report=report.to_dict())
