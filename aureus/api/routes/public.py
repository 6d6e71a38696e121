"""
aureus.api.routes.public — Read-only public endpoints
======================================================

Served from the projected read-model, so values here lag the ledger until
the synchronizer's next pass (and, on an RPC source, by its confirmation
margin).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from aureus.api.deps import get_config, get_engine, stringify_amounts
from aureus.config import AureusConfig
from aureus.services import read_service, sync_service

router = APIRouter(tags=["public"])


# ---------------------------------------------------------------------------
# GET /packages
# ---------------------------------------------------------------------------
@router.get("/packages")
def get_packages(
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    return {"packages": read_service.list_packages(engine, cfg.chain_id, cfg.contract_address)}


# ---------------------------------------------------------------------------
# GET /positions
# ---------------------------------------------------------------------------
@router.get("/positions")
def get_positions(
    owner: str | None = None,
    status: str = Query("all", pattern="^(all|active|withdrawn|emergency)$"),
    package_id: int | None = Query(None, ge=0, le=255),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    """Paginated positions with the claimable amount computed at request time."""
    result = read_service.list_positions(
        engine,
        cfg.chain_id,
        cfg.contract_address,
        owner=owner,
        status=status,
        package_id=package_id,
        page=page,
        limit=limit,
    )
    return stringify_amounts(result)


@router.get("/positions/{position_id}")
def get_position(
    position_id: int,
    engine=Depends(get_engine),
):
    return stringify_amounts(read_service.get_position(engine, position_id))


# ---------------------------------------------------------------------------
# GET /accounts/{owner}/…
# ---------------------------------------------------------------------------
@router.get("/accounts/{owner}/summary")
def get_account_summary(
    owner: str,
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    return stringify_amounts(
        read_service.get_positions_summary(engine, cfg.chain_id, cfg.contract_address, owner)
    )


@router.get("/accounts/{owner}/transactions")
def get_account_transactions(
    owner: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    return stringify_amounts(read_service.list_transactions(
        engine, cfg.chain_id, cfg.contract_address, owner, page=page, limit=limit,
    ))


@router.get("/accounts/{owner}/transactions/summary")
def get_account_transaction_summary(
    owner: str,
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    return stringify_amounts(read_service.get_transaction_summary(
        engine, cfg.chain_id, cfg.contract_address, owner,
    ))


@router.get("/accounts/{owner}/rewards")
def get_account_rewards(
    owner: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    """Claim history, newest first."""
    return stringify_amounts(read_service.list_reward_history(
        engine, cfg.chain_id, cfg.contract_address, owner, page=page, limit=limit,
    ))


# ---------------------------------------------------------------------------
# GET /transactions/{tx_hash}
# ---------------------------------------------------------------------------
@router.get("/transactions/{tx_hash}")
def get_transaction(
    tx_hash: str,
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    return read_service.get_transaction_by_tx_hash(
        engine, cfg.chain_id, cfg.contract_address, tx_hash,
    )


# ---------------------------------------------------------------------------
# GET /leaderboard
# ---------------------------------------------------------------------------
@router.get("/leaderboard")
def get_leaderboard(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    """Owners ranked by principal still staked."""
    return stringify_amounts(read_service.get_leaderboard(
        engine, cfg.chain_id, cfg.contract_address, page=page, limit=limit,
    ))


# ---------------------------------------------------------------------------
# GET /events/…
# ---------------------------------------------------------------------------
@router.get("/events/recent")
def get_recent_events(
    limit: int = Query(20, ge=1, le=200),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    return {"events": read_service.list_recent_events(
        engine, cfg.chain_id, cfg.contract_address, limit=limit,
    )}


@router.get("/events/unprocessed")
def get_unprocessed_events(
    limit: int = Query(50, ge=1, le=500),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    """Events the projection has not applied yet; ``failed`` counts orphans."""
    return read_service.list_unprocessed_events(
        engine, cfg.chain_id, cfg.contract_address, limit=limit,
    )


# ---------------------------------------------------------------------------
# GET /stats, /sync
# ---------------------------------------------------------------------------
@router.get("/stats")
def get_stats(
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    return stringify_amounts(
        read_service.get_global_stats(engine, cfg.chain_id, cfg.contract_address)
    )


@router.get("/sync")
def get_sync(
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    status = sync_service.get_sync_status(engine, cfg.chain_id, cfg.contract_address)
    if status is None:
        raise HTTPException(404, "No sync has run yet")
    return status
