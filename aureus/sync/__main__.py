"""
aureus.sync.__main__ — Entry point for ``python -m aureus.sync``
================================================================

Wiring:
1. Load .env (DATABASE_URL).
2. Load config.yaml (chain identity, event source).
3. Create the SQLAlchemy engine, ensure tables exist, seed defaults.
4. Build the event source (ledger journal or JSON-RPC node).
5. Run the SyncWorker until SIGINT/SIGTERM.

Run with::

    python -m aureus.sync
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal

from dotenv import load_dotenv

from aureus.chain.provider import build_event_source
from aureus.config import load_config
from aureus.database.engine import create_db_engine, init_db
from aureus.services.sync_service import SyncWorker

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("aureus")


async def _serve(worker: SyncWorker) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:  # Windows
            pass
    await worker.run()


def main() -> None:
    """Bootstrap and run the position synchronizer."""

    # 1. Environment variables.
    load_dotenv()

    # 2. Infrastructure configuration.
    cfg = load_config(os.getenv("AUREUS_CONFIG", "config.yaml"))
    logger.info(
        "Config loaded — chain %d, contract %s, source %s",
        cfg.chain_id, cfg.contract_address, cfg.event_source,
    )

    # 3. Database.
    engine = create_db_engine()
    init_db(engine, cfg)

    # 4. Event source.
    source = build_event_source(cfg, engine)

    # 5. Worker (blocks until stopped).
    worker = SyncWorker(
        engine, source, cfg.chain_id, cfg.contract_address, start_block=cfg.start_block,
    )
    logger.info("Starting Aureus synchronizer…")
    try:
        asyncio.run(_serve(worker))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")
    finally:
        close = getattr(source, "close", None)
        if close is not None:
            close()


if __name__ == "__main__":
    main()
