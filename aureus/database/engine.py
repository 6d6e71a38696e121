"""
aureus.database.engine — Engine, Sessions & Thread Bridge
==========================================================

The ledger and projection code is plain synchronous SQLAlchemy.  The API
and the sync worker are ``asyncio`` programs, so they hand each unit of DB
work to a thread with :func:`run_db` instead of keeping a second, async
engine around::

    from aureus.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # DATABASE_URL from the env / .env
    init_db(engine, cfg)                 # create_all + seed

    result = await run_db(run_sync_pass, engine, source, chain_id, address)

Ledger writes take a row lock on their contract, so the pool has to cover
the API's request threads plus the worker's pass without starving either.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from aureus.database.models import Base

if TYPE_CHECKING:
    from aureus.config import AureusConfig

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

_POOL_OPTIONS = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 10,      # seconds waiting for a free connection
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Engine for *url*, or for ``DATABASE_URL`` when *url* is omitted.

    ``SQL_ECHO=1`` turns on statement logging.

    Raises ``RuntimeError`` when no URL is available.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and point it at a PostgreSQL database."
        )

    engine = create_engine(
        url,
        echo=os.getenv("SQL_ECHO", "").lower() in {"1", "true", "yes"},
        **_POOL_OPTIONS,
    )
    logger.info("Database engine created → %s/%s", engine.url.host, engine.url.database)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine, cfg: AureusConfig | None = None) -> None:
    """Create missing tables and seed defaults.  Idempotent.

    Settings are always seeded.  The contract row and its packages need the
    contract identity, so they are seeded only when *cfg* is given.

    Deployed databases are migrated with ``alembic upgrade head``; this
    ``create_all`` covers local runs and tests.
    """
    Base.metadata.create_all(engine)
    logger.info("Schema verified (%d tables).", len(Base.metadata.tables))

    from aureus.database.seed import seed_contract, seed_default_settings

    seed_default_settings(engine)
    if cfg is not None:
        seed_contract(engine, cfg)


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Unit of work: commit when the block exits cleanly, roll back on error.

    ::

        with get_session(engine) as session:
            session.add(LedgerPackage(...))
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Await a synchronous DB callable on the default thread pool."""
    return await asyncio.to_thread(func, *args, **kwargs)
