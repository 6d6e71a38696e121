"""
aureus.api.routes.admin — Parameter administration endpoints (JWT-protected)
============================================================================

Every mutation here is audit-logged by :mod:`aureus.services.admin_service`
with the JWT ``sub`` as actor.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from aureus.api.deps import get_config, get_current_admin, get_engine, stringify_amounts
from aureus.api.routes.ledger import receipt_dict
from aureus.chain.provider import build_event_source
from aureus.config import AureusConfig
from aureus.database.models import EmergencyPolicy
from aureus.services import (
    admin_service,
    ledger_service,
    reconciliation_service,
    settings_service,
    sync_service,
)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class PackageUpdate(BaseModel):
    lock_period_seconds: int
    apy_basis_points: int
    enabled: bool = True
    reason: str | None = None


class ParamsUpdate(BaseModel):
    min_stake_amount: int | None = None
    max_stake_per_user: int | None = None
    max_total_staked_per_package: int | None = None
    emergency_policy: EmergencyPolicy | None = None
    reason: str | None = None


class AmountBody(BaseModel):
    amount: int = Field(..., gt=0)
    reason: str | None = None


class ReasonBody(BaseModel):
    reason: str | None = None


class SettingUpdate(BaseModel):
    key: str
    value: Any
    category: str | None = None
    description: str | None = None


def _scope(cfg: AureusConfig, admin: dict) -> dict:
    return {
        "chain_id": cfg.chain_id,
        "contract_address": cfg.contract_address,
        "actor_id": str(admin["sub"]),
    }


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------
@router.get("/packages")
def list_packages(
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    rows = ledger_service.list_packages(
        engine, chain_id=cfg.chain_id, contract_address=cfg.contract_address,
    )
    return stringify_amounts({"packages": rows})


@router.put("/packages/{package_id}")
def set_package(
    package_id: int,
    body: PackageUpdate,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    """Create or update a package.  Existing positions keep their terms."""
    receipt = admin_service.set_package(
        engine,
        **_scope(cfg, admin),
        package_id=package_id,
        lock_period_seconds=body.lock_period_seconds,
        apy_basis_points=body.apy_basis_points,
        enabled=body.enabled,
        reason=body.reason,
    )
    return receipt_dict(receipt)


# ---------------------------------------------------------------------------
# Global parameters
# ---------------------------------------------------------------------------
@router.patch("/params")
def update_params(
    body: ParamsUpdate,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    scope = _scope(cfg, admin)
    if body.min_stake_amount is not None:
        admin_service.set_min_stake_amount(
            engine, **scope, amount=body.min_stake_amount, reason=body.reason,
        )
    if body.max_stake_per_user is not None:
        admin_service.set_max_stake_per_user(
            engine, **scope, amount=body.max_stake_per_user, reason=body.reason,
        )
    if body.max_total_staked_per_package is not None:
        admin_service.set_max_total_staked_per_package(
            engine, **scope, amount=body.max_total_staked_per_package, reason=body.reason,
        )
    if body.emergency_policy is not None:
        admin_service.set_emergency_policy(
            engine, **scope, policy=body.emergency_policy, reason=body.reason,
        )
    return stringify_amounts(ledger_service.get_contract_state(
        engine, chain_id=cfg.chain_id, contract_address=cfg.contract_address,
    ))


@router.post("/pause")
def pause(
    body: ReasonBody | None = None,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    receipt = admin_service.pause(
        engine, **_scope(cfg, admin), reason=body.reason if body else None,
    )
    return receipt_dict(receipt)


@router.post("/unpause")
def unpause(
    body: ReasonBody | None = None,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    receipt = admin_service.unpause(
        engine, **_scope(cfg, admin), reason=body.reason if body else None,
    )
    return receipt_dict(receipt)


# ---------------------------------------------------------------------------
# Reward liquidity
# ---------------------------------------------------------------------------
@router.post("/rewards/fund")
def fund_rewards(
    body: AmountBody,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    receipt = admin_service.fund_rewards(
        engine, **_scope(cfg, admin), amount=body.amount, reason=body.reason,
    )
    return receipt_dict(receipt)


@router.post("/rewards/withdraw-excess")
def withdraw_excess(
    body: AmountBody,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    receipt = admin_service.withdraw_excess_reward(
        engine, **_scope(cfg, admin), amount=body.amount, reason=body.reason,
    )
    return receipt_dict(receipt)


# ---------------------------------------------------------------------------
# Sync & reconciliation
# ---------------------------------------------------------------------------
@router.get("/sync")
def sync_status(
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    return {"sync": sync_service.get_sync_status(engine, cfg.chain_id, cfg.contract_address)}


@router.post("/sync/run")
def run_sync(
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    """Run one synchronization pass now (skipped if one is in flight)."""
    source = build_event_source(cfg, engine)
    try:
        result = sync_service.run_sync_pass(
            engine, source, cfg.chain_id, cfg.contract_address, start_block=cfg.start_block,
        )
    finally:
        close = getattr(source, "close", None)
        if close is not None:
            close()
    return {
        "skipped": result.skipped,
        "status": result.status,
        "head": result.head,
        "last_processed_block": result.last_processed_block,
        "events_ingested": result.events_ingested,
        "events_processed": result.events_processed,
        "events_failed": result.events_failed,
        "error": result.error,
    }


@router.post("/reconcile")
def reconcile(
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    positions = reconciliation_service.reconcile_positions(
        engine, cfg.chain_id, cfg.contract_address,
    )
    solvency = None
    if cfg.event_source == "ledger":
        solvency = stringify_amounts(reconciliation_service.verify_ledger_solvency(
            engine, cfg.chain_id, cfg.contract_address,
        ))
    return {"positions": positions, "solvency": solvency}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@router.get("/settings")
def get_all_settings(
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    return {"settings": settings_service.get_all_settings(engine)}


@router.put("/settings")
def update_settings(
    body: list[SettingUpdate],
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    items = [
        {
            "key": s.key,
            "value": s.value,
            **({"category": s.category} if s.category else {}),
            **({"description": s.description} if s.description else {}),
        }
        for s in body
    ]
    count = settings_service.bulk_upsert(engine, items, actor_id=str(admin["sub"]))
    return {"updated": count}


# ---------------------------------------------------------------------------
# Audit Log
# ---------------------------------------------------------------------------
@router.get("/audit")
def get_audit_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    target_table: str | None = None,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    """Paginated admin audit log."""
    return admin_service.list_audit_log(
        engine, page=page, page_size=page_size, target_table=target_table,
    )
