"""
aureus.services.sync_service — Position Synchronizer
=====================================================

Follows one ``(chain_id, contract_address)``: fetches confirmed events in
block batches, ingests them idempotently, projects them, and advances the
cursor.

Guarantees:

* **One pass at a time.**  A pass first takes a lease on the
  ``blockchain_sync`` row with a conditional ``UPDATE`` (only succeeds when
  no live lease exists).  A crashed pass's lease simply expires.
* **Cursor after durability.**  ``last_processed_block`` moves to a batch's
  end only once every event up to that block is marked processed.
* **Reorg margin.**  Only blocks ``≤ head - confirmations`` are fetched,
  and the status is COMPLETED only when the cursor is within
  ``confirmations`` of the head.  A ``reorg_safe`` source (the ledger
  journal) gets no margin.
* **Lease renewal.**  Every cursor advance and every retry after a backoff
  pushes the lease expiry out by another ``lease_seconds``, so a long pass
  keeps its lease.
* **Abortable.**  ``should_stop()`` is checked between batches; whatever
  was committed is consistent.

Provider failures (after retries) end the pass as FAILED with the error
message and bump ``consecutive_failures``; the :class:`SyncWorker` backs
off accordingly.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aureus.chain.provider import EventSource
from aureus.chain.retry import backoff_delay, retry_with_backoff
from aureus.database.engine import get_session, run_db
from aureus.database.models import BlockchainSync, SyncStatus
from aureus.engine.errors import ProviderError
from aureus.engine.events import normalize_address
from aureus.services.projection_service import (
    count_unprocessed,
    ingest_events,
    process_pending_events,
)
from aureus.services.settings_service import SyncSettings, load_sync_settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncResult:
    """Outcome of one :func:`run_sync_pass`."""

    skipped: bool = False
    status: SyncStatus | None = None
    head: int | None = None
    safe_head: int | None = None
    last_processed_block: int | None = None
    batches: int = 0
    events_ingested: int = 0
    events_processed: int = 0
    events_failed: int = 0
    error: str | None = None


# ---------------------------------------------------------------------------
# Cursor row + lease
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(UTC)


def _ensure_sync_row(session: Session, chain_id: int, contract_address: str, start_block: int) -> None:
    exists = session.scalar(
        select(BlockchainSync.id).where(
            BlockchainSync.chain_id == chain_id,
            BlockchainSync.contract_address == contract_address,
        )
    )
    if exists is not None:
        return
    try:
        with session.begin_nested():
            session.add(BlockchainSync(
                chain_id=chain_id,
                contract_address=contract_address,
                last_processed_block=max(start_block - 1, 0),
                current_block=0,
                status=SyncStatus.PENDING.value,
                consecutive_failures=0,
            ))
            session.flush()
    except IntegrityError:
        logger.debug("Sync row for %s created concurrently", contract_address)


def acquire_lease(
    engine: Engine,
    chain_id: int,
    contract_address: str,
    *,
    lease_seconds: int,
    start_block: int = 0,
) -> str | None:
    """Try to take the pass lease.  Returns the lease token, or ``None``."""
    token = str(uuid.uuid4())
    now = _utcnow()
    with get_session(engine) as session:
        _ensure_sync_row(session, chain_id, contract_address, start_block)
        result = session.execute(
            update(BlockchainSync)
            .where(
                BlockchainSync.chain_id == chain_id,
                BlockchainSync.contract_address == contract_address,
                or_(
                    BlockchainSync.lease_token.is_(None),
                    BlockchainSync.lease_expires_at < now,
                ),
            )
            .values(
                lease_token=token,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                status=SyncStatus.PROCESSING.value,
            )
        )
        if result.rowcount != 1:
            return None
    return token


def _release_lease(
    engine: Engine,
    token: str,
    *,
    status: SyncStatus,
    error: str | None,
    head: int | None,
) -> None:
    values = {
        "lease_token": None,
        "lease_expires_at": None,
        "status": status.value,
        "error_message": error,
        "last_sync_at": _utcnow(),
    }
    if head is not None:
        values["current_block"] = head
    if status is SyncStatus.FAILED:
        values["consecutive_failures"] = BlockchainSync.consecutive_failures + 1
    else:
        values["consecutive_failures"] = 0
    with get_session(engine) as session:
        result = session.execute(
            update(BlockchainSync).where(BlockchainSync.lease_token == token).values(**values)
        )
        if result.rowcount != 1:
            logger.warning("Sync lease %s was lost before release", token)


def _renew_lease(engine: Engine, token: str, lease_seconds: int) -> None:
    """Push the lease expiry out.  Raises ``RuntimeError`` if the lease was lost."""
    with get_session(engine) as session:
        result = session.execute(
            update(BlockchainSync)
            .where(BlockchainSync.lease_token == token)
            .values(lease_expires_at=_utcnow() + timedelta(seconds=lease_seconds))
        )
        if result.rowcount != 1:
            raise RuntimeError("Sync lease lost; another pass took over")


def _advance_cursor(
    engine: Engine,
    token: str,
    chain_id: int,
    contract_address: str,
    to_block: int,
    head: int,
    lease_seconds: int,
) -> int:
    """Move the cursor to *to_block* if nothing up to it is pending, renewing
    the lease in the same statement.

    Returns the number of still-unprocessed events (0 means advanced).
    Raises ``RuntimeError`` if the lease was lost.
    """
    with get_session(engine) as session:
        pending = count_unprocessed(session, chain_id, contract_address, to_block)
        if pending:
            return pending
        result = session.execute(
            update(BlockchainSync)
            .where(BlockchainSync.lease_token == token)
            .values(
                last_processed_block=to_block,
                current_block=head,
                lease_expires_at=_utcnow() + timedelta(seconds=lease_seconds),
            )
        )
        if result.rowcount != 1:
            raise RuntimeError("Sync lease lost; another pass took over")
    return 0


# ---------------------------------------------------------------------------
# One pass
# ---------------------------------------------------------------------------

def _project_up_to(
    engine: Engine, chain_id: int, contract_address: str, to_block: int, limit: int, result: SyncResult,
) -> None:
    """Drain pending events ≤ *to_block*, *limit* at a time."""
    while True:
        outcome = process_pending_events(
            engine, chain_id, contract_address, up_to_block=to_block, limit=limit,
        )
        result.events_processed += outcome["processed"]
        result.events_failed += outcome["failed"]
        if outcome["processed"] == 0 or outcome["processed"] + outcome["failed"] < limit:
            return


def run_sync_pass(
    engine: Engine,
    source: EventSource,
    chain_id: int,
    contract_address: str,
    *,
    should_stop: Callable[[], bool] | None = None,
    start_block: int = 0,
    settings: SyncSettings | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncResult:
    """Run one synchronization pass.  Never raises :class:`ProviderError`."""
    contract_address = normalize_address(contract_address)
    if settings is None:
        with Session(engine) as session:
            settings = load_sync_settings(session)

    token = acquire_lease(
        engine, chain_id, contract_address,
        lease_seconds=settings.lease_seconds, start_block=start_block,
    )
    if token is None:
        logger.info("Sync pass for %s skipped: another pass holds the lease", contract_address)
        return SyncResult(skipped=True)

    def backoff(delay: float) -> None:
        sleep(delay)
        _renew_lease(engine, token, settings.lease_seconds)

    def with_retry(fn):
        return retry_with_backoff(
            fn,
            max_retries=settings.max_retries,
            initial_delay=settings.retry_delay_seconds,
            max_delay=settings.max_backoff_seconds,
            sleep=backoff,
        )

    confirmations = 0 if getattr(source, "reorg_safe", False) else settings.confirmations

    result = SyncResult()
    status = SyncStatus.FAILED
    error: str | None = None
    head: int | None = None
    try:
        head = with_retry(source.get_block_number)
        safe_head = max(head - confirmations, 0)
        result.head = head
        result.safe_head = safe_head
        with Session(engine) as session:
            last = session.scalar(
                select(BlockchainSync.last_processed_block).where(
                    BlockchainSync.chain_id == chain_id,
                    BlockchainSync.contract_address == contract_address,
                )
            ) or 0

        while last < safe_head:
            if should_stop is not None and should_stop():
                logger.info("Sync pass for %s stopped at block %d", contract_address, last)
                break
            from_block = last + 1
            to_block = min(last + settings.batch_size, safe_head)
            events = with_retry(lambda: source.get_events(from_block, to_block))
            result.events_ingested += ingest_events(engine, events)
            _project_up_to(
                engine, chain_id, contract_address, to_block, settings.process_limit, result,
            )
            pending = _advance_cursor(
                engine, token, chain_id, contract_address, to_block, head, settings.lease_seconds,
            )
            if pending:
                error = f"{pending} event(s) up to block {to_block} could not be applied"
                logger.error("Sync for %s halted: %s", contract_address, error)
                break
            result.batches += 1
            last = to_block
            logger.debug("Synced blocks %d..%d for %s", from_block, to_block, contract_address)

        result.last_processed_block = last
        if error is None:
            status = (
                SyncStatus.COMPLETED if head - last <= confirmations
                else SyncStatus.PENDING
            )
    except ProviderError as exc:
        error = f"{exc.code}: {exc.message}"
        logger.error("Sync for %s failed: %s", contract_address, error)
    except Exception as exc:
        error = f"{type(exc).__name__}: {exc}"
        raise
    finally:
        _release_lease(engine, token, status=status, error=error, head=head)

    result.status = status
    result.error = error
    if status is SyncStatus.COMPLETED and result.batches:
        logger.info(
            "Sync for %s completed through block %d (head %d): %d new event(s)",
            contract_address, result.last_processed_block, head, result.events_ingested,
        )
    return result


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

def get_sync_status(engine: Engine, chain_id: int, contract_address: str) -> dict | None:
    """The sync status record, or ``None`` before the first pass."""
    contract_address = normalize_address(contract_address)
    with Session(engine) as session:
        row = session.scalar(
            select(BlockchainSync).where(
                BlockchainSync.chain_id == chain_id,
                BlockchainSync.contract_address == contract_address,
            )
        )
        if row is None:
            return None
        return {
            "chain_id": row.chain_id,
            "contract_address": row.contract_address,
            "last_processed_block": row.last_processed_block,
            "current_block": row.current_block,
            "lag_blocks": max(row.current_block - row.last_processed_block, 0),
            "status": row.status,
            "error_message": row.error_message,
            "last_sync_at": row.last_sync_at.isoformat() if row.last_sync_at else None,
            "consecutive_failures": row.consecutive_failures,
            "in_progress": row.lease_token is not None,
        }


# ---------------------------------------------------------------------------
# Worker loop
# ---------------------------------------------------------------------------

def _read_settings(engine: Engine) -> SyncSettings:
    with Session(engine) as session:
        return load_sync_settings(session)


class SyncWorker:
    """Polls forever: one pass, then sleep, with exponential backoff after
    failed passes.  :meth:`stop` is honoured between batches and between
    passes.
    """

    def __init__(
        self,
        engine: Engine,
        source: EventSource,
        chain_id: int,
        contract_address: str,
        *,
        start_block: int = 0,
    ) -> None:
        self.engine = engine
        self.source = source
        self.chain_id = chain_id
        self.contract_address = normalize_address(contract_address)
        self.start_block = start_block
        self.consecutive_failures = 0
        self.last_result: SyncResult | None = None
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def next_delay(self, settings: SyncSettings) -> float:
        if self.consecutive_failures == 0:
            return settings.poll_interval_seconds
        return backoff_delay(
            self.consecutive_failures - 1,
            settings.poll_interval_seconds,
            settings.max_backoff_seconds,
            jitter=0.0,
        )

    async def run_once(self) -> SyncResult | None:
        settings = await run_db(_read_settings, self.engine)
        try:
            result = await run_db(
                run_sync_pass,
                self.engine,
                self.source,
                self.chain_id,
                self.contract_address,
                should_stop=self._stop.is_set,
                start_block=self.start_block,
                settings=settings,
            )
        except Exception:
            logger.exception("Sync pass crashed", extra={"task": "sync"})
            result = None

        if result is None or result.status is SyncStatus.FAILED:
            self.consecutive_failures += 1
        elif not result.skipped:
            self.consecutive_failures = 0
        self.last_result = result
        return result

    async def run(self) -> None:
        logger.info(
            "Sync worker started for %s on chain %d", self.contract_address, self.chain_id,
        )
        while not self._stop.is_set():
            await self.run_once()
            if self._stop.is_set():
                break
            settings = await run_db(_read_settings, self.engine)
            delay = self.next_delay(settings)
            if self.consecutive_failures:
                logger.warning(
                    "Sync failing (%d in a row); next pass in %.1fs",
                    self.consecutive_failures, delay,
                )
            await asyncio.to_thread(self._stop.wait, delay)
        logger.info("Sync worker stopped")
