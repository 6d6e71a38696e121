"""
aureus.api.routes.ledger — Ledger write surface (JWT-protected)
================================================================

The caller's wallet address is the JWT ``sub``; every write acts on the
configured contract.  Amounts are accepted as decimal strings (or JSON
integers) and returned as decimal strings.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from aureus.api.deps import get_config, get_current_account, get_engine, stringify_amounts
from aureus.config import AureusConfig
from aureus.services import ledger_service
from aureus.services.ledger_service import TxReceipt

router = APIRouter(prefix="/ledger", tags=["ledger"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class StakeRequest(BaseModel):
    amount: int = Field(..., description="Token amount in base units")
    package_id: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def receipt_dict(receipt: TxReceipt) -> dict:
    """Serialize a receipt with its emitted events."""
    return stringify_amounts({
        "tx_hash": receipt.tx_hash,
        "block_number": receipt.block_number,
        "position_id": receipt.position_id,
        "principal_paid": receipt.principal_paid,
        "reward_paid": receipt.reward_paid,
        "reward_lost": receipt.reward_lost,
        "events": [e.to_dict() for e in receipt.events],
    })


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------
@router.post("/stake", status_code=201)
def stake(
    body: StakeRequest,
    account: str = Depends(get_current_account),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    receipt = ledger_service.stake(
        engine,
        chain_id=cfg.chain_id,
        contract_address=cfg.contract_address,
        owner=account,
        amount=body.amount,
        package_id=body.package_id,
    )
    return receipt_dict(receipt)


@router.post("/positions/{position_id}/claim")
def claim(
    position_id: int,
    account: str = Depends(get_current_account),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    receipt = ledger_service.claim(
        engine,
        chain_id=cfg.chain_id,
        contract_address=cfg.contract_address,
        owner=account,
        position_id=position_id,
    )
    return receipt_dict(receipt)


@router.post("/positions/{position_id}/withdraw")
def withdraw(
    position_id: int,
    account: str = Depends(get_current_account),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    receipt = ledger_service.withdraw(
        engine,
        chain_id=cfg.chain_id,
        contract_address=cfg.contract_address,
        owner=account,
        position_id=position_id,
    )
    return receipt_dict(receipt)


@router.post("/positions/{position_id}/emergency-withdraw")
def emergency_withdraw(
    position_id: int,
    account: str = Depends(get_current_account),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    receipt = ledger_service.emergency_withdraw(
        engine,
        chain_id=cfg.chain_id,
        contract_address=cfg.contract_address,
        owner=account,
        position_id=position_id,
    )
    return receipt_dict(receipt)


# ---------------------------------------------------------------------------
# Authoritative reads
# ---------------------------------------------------------------------------
@router.get("/positions")
def my_positions(
    account: str = Depends(get_current_account),
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    """The caller's positions straight from the ledger."""
    positions = ledger_service.list_positions(
        engine, chain_id=cfg.chain_id, contract_address=cfg.contract_address, owner=account,
    )
    return stringify_amounts({"positions": positions})


@router.get("/positions/{position_id}")
def position(
    position_id: int,
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    return stringify_amounts(ledger_service.get_position(
        engine, chain_id=cfg.chain_id, contract_address=cfg.contract_address,
        position_id=position_id,
    ))


@router.get("/positions/{position_id}/claimable")
def claimable(
    position_id: int,
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    value = ledger_service.get_claimable(
        engine, chain_id=cfg.chain_id, contract_address=cfg.contract_address,
        position_id=position_id,
    )
    return {"position_id": position_id, "claimable": str(value)}


@router.get("/packages")
def packages(
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    rows = ledger_service.list_packages(
        engine, chain_id=cfg.chain_id, contract_address=cfg.contract_address,
    )
    return stringify_amounts({"packages": rows})


@router.get("/state")
def contract_state(
    engine=Depends(get_engine),
    cfg: AureusConfig = Depends(get_config),
):
    return stringify_amounts(ledger_service.get_contract_state(
        engine, chain_id=cfg.chain_id, contract_address=cfg.contract_address,
    ))
