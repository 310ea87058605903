"""Cleanup service - keeps the ledger, session and audit tables bounded."""

import asyncio
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bms_auth.core.config import get_settings
from bms_auth.core.database import async_session_maker
from bms_auth.core.logging import get_logger
from bms_auth.services.session_guard import SessionGuard, get_session_guard

logger = get_logger("cleanup")

# Wait this long after startup before the first run
STARTUP_DELAY_SECONDS = 60


@dataclass(frozen=True)
class CleanupReport:
    """Counts from one cleanup run."""

    pruned_tokens: int = 0
    expired_sessions: int = 0
    purged_sessions: int = 0
    purged_audit_events: int = 0


class CleanupService:
    """Background service that keeps the auth tables bounded."""

    _instance: Optional["CleanupService"] = None
    _instance_lock: threading.Lock = threading.Lock()
    _task: asyncio.Task | None = None

    def __init__(
        self,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
        audit_retention_days: int | None = None,
    ):
        settings = get_settings()
        self._running = False
        self._interval_seconds = interval_seconds or settings.cleanup_interval_seconds
        self._batch_size = batch_size or settings.cleanup_batch_size
        self._audit_retention = timedelta(
            days=audit_retention_days or settings.audit_retention_days
        )
        self._session_factory: async_sessionmaker[AsyncSession] = async_session_maker
        self._guard: SessionGuard | None = None

    @classmethod
    def get_instance(cls) -> "CleanupService":
        """Get singleton instance of the cleanup service (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                # Double-check locking pattern
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def configure(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        guard: SessionGuard | None = None,
    ) -> None:
        """Point the service at a different database or guard."""
        if session_factory is not None:
            self._session_factory = session_factory
        if guard is not None:
            self._guard = guard

    @property
    def interval_seconds(self) -> int:
        return self._interval_seconds

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the background cleanup task."""
        if self._running:
            logger.warning("Cleanup service is already running")
            return

        self._running = True
        CleanupService._task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            f"Cleanup service started (interval: {self._interval_seconds}s, "
            f"batch size: {self._batch_size})"
        )

    async def stop(self):
        """Stop the background cleanup task."""
        self._running = False
        if CleanupService._task:
            CleanupService._task.cancel()
            try:
                await CleanupService._task
            except asyncio.CancelledError:
                pass
            CleanupService._task = None
        logger.info("Cleanup service stopped")

    async def _cleanup_loop(self):
        """Main loop that periodically runs the cleanup."""
        await asyncio.sleep(STARTUP_DELAY_SECONDS)

        while self._running:
            try:
                await self.run_cleanup_now()
            except Exception as e:
                logger.error(f"Error in auth cleanup: {e}")

            await asyncio.sleep(self._interval_seconds)

    async def run_cleanup_now(self) -> CleanupReport:
        """Run one pass: prune the ledger, sweep sessions, purge old audit events."""
        guard = self._guard or get_session_guard()

        async with self._session_factory() as db:
            try:
                store = guard.store(db)
                pruned = await store.ledger.prune(self._batch_size)
                sweep = await store.sweep_expired(self._batch_size)
                audit_purged = await guard.audit(db).purge_older_than(
                    guard.clock() - self._audit_retention, self._batch_size
                )
            except Exception as e:
                logger.exception(f"Error during auth cleanup: {e}")
                await db.rollback()
                raise

        report = CleanupReport(
            pruned_tokens=pruned,
            expired_sessions=sweep.expired,
            purged_sessions=sweep.purged,
            purged_audit_events=audit_purged,
        )
        if pruned or sweep.expired or sweep.purged or audit_purged:
            logger.info(
                f"Auth cleanup: pruned {pruned} ledger entries, expired "
                f"{sweep.expired} sessions, purged {sweep.purged} sessions "
                f"and {audit_purged} audit events"
            )
        return report
