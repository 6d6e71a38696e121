"""
aureus.api.deps — FastAPI dependency injection
===============================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated, Any

import jwt
from fastapi import Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from aureus.config import AureusConfig, load_config
from aureus.database.engine import create_db_engine
from aureus.engine.events import normalize_address

_WEAK_SECRETS = frozenset({
    "aureus-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"

# Keys whose integer values are token amounts (uint256) and leave the API
# as decimal strings.
AMOUNT_FIELDS = frozenset({
    "amount",
    "principal",
    "principal_paid",
    "reward",
    "reward_paid",
    "reward_lost",
    "reward_total",
    "reward_claimed",
    "reward_accrued",
    "claimable",
    "claimable_reward",
    "claimable_now",
    "lost_reward",
    "min_stake_amount",
    "max_stake_per_user",
    "max_total_staked_per_package",
    "total_locked",
    "total_reward_debt",
    "reward_balance",
    "excess_reward",
    "total_staked",
    "total_earned",
    "total_claimed",
    "total_withdrawn",
    "total_pending",
    "outstanding_reward",
})


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> AureusConfig:
    return load_config(os.getenv("AUREUS_CONFIG", "config.yaml"))


def _decode_bearer(authorization: str | None) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")


def get_current_account(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Validate JWT and return the caller's wallet address (``sub``)."""
    payload = _decode_bearer(authorization)
    try:
        return normalize_address(payload.get("sub", ""))
    except ValueError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token subject is not an address")


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return admin user payload. Raises 401 if invalid."""
    payload = _decode_bearer(authorization)
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return payload


def stringify_amounts(obj: Any) -> Any:
    """Copy *obj* with every amount field rendered as a decimal string."""
    if isinstance(obj, dict):
        return {
            k: str(v) if k in AMOUNT_FIELDS and type(v) is int else stringify_amounts(v)
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [stringify_amounts(v) for v in obj]
    return obj

