"""Scheduler for automatic maintenance tasks.

This module provides:
- Daily consistency audit (orphan scan, then missing-blob scan)
- Manual audit function for CLI usage
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from memesync.server.consistency import ConsistencyAuditor, MissingReport, OrphanReport

if TYPE_CHECKING:
    from memesync.server.database import Database
    from memesync.server.storage import ObjectStorage

logger = logging.getLogger(__name__)


def run_consistency_audit(
    db: Database,
    storage: ObjectStorage,
) -> tuple[OrphanReport, MissingReport]:
    """Run both consistency scans and log notable findings.

    Args:
        db: Database instance.
        storage: Object storage instance.

    Returns:
        Tuple of (orphan report, missing-blob report).
    """
    auditor = ConsistencyAuditor(db, storage)
    orphans = auditor.find_orphans()
    missing = auditor.find_missing_blobs()

    if orphans.summary.orphan_count:
        logger.warning(
            "Consistency audit: %d orphaned objects (%d bytes)",
            orphans.summary.orphan_count,
            orphans.summary.orphan_size_bytes,
        )
    if missing.summary.missing_count:
        logger.warning(
            "Consistency audit: %d assets reference missing blobs",
            missing.summary.missing_count,
        )
    if not orphans.summary.orphan_count and not missing.summary.missing_count:
        logger.info("Consistency audit: stores are consistent")

    return orphans, missing


class MaintenanceScheduler:
    """Scheduler for automatic maintenance tasks.

    Runs:
    - Consistency audit daily at the configured hour
    """

    def __init__(
        self,
        db: Database,
        storage: ObjectStorage,
        audit_enabled: bool = True,
        hour: int = 4,
        minute: int = 0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            db: Database instance.
            storage: Object storage instance.
            audit_enabled: Schedule the daily consistency audit.
            hour: Hour to run the audit (0-23).
            minute: Minute to run the audit (0-59).
        """
        self._db = db
        self._storage = storage
        self._audit_enabled = audit_enabled
        self._hour = hour
        self._minute = minute
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def _audit_job(self) -> None:
        """Job function for the scheduled consistency audit."""
        logger.info("Starting scheduled consistency audit")
        try:
            run_consistency_audit(self._db, self._storage)
        except Exception:
            logger.exception("Error during scheduled consistency audit")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return  # Already running
        if not self._audit_enabled:
            logger.debug("Consistency audit disabled, scheduler not started")
            return

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._audit_job,
            trigger=CronTrigger(hour=self._hour, minute=self._minute),
            id="consistency_audit",
            name="Daily consistency audit",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "Maintenance scheduler started (audit daily at %02d:%02d)", self._hour, self._minute
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Maintenance scheduler stopped")

    def run_now(self) -> tuple[OrphanReport, MissingReport]:
        """Run the consistency audit immediately (manual trigger)."""
        return run_consistency_audit(self._db, self._storage)
