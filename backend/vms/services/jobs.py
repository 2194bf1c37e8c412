"""Scheduled visit jobs.

Each job opens its own session, commits its own work and flushes the
notifications it produced. Every monthly and yearly boundary is also a daily
boundary, so the nightly recalculation is what rolls quota periods over.
"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from vms.core.cache import VisitCountCache
from vms.core.clock import Clock
from vms.core.config import Settings, settings as default_settings
from vms.services.attendance_service import AttendanceService
from vms.services.notification_service import Notifier, cleanup_notification_logs
from vms.services.recalculation_service import BulkRecalculationResult, RecalculationEngine
from vms.services.scheduler_service import TaskScheduler

logger = logging.getLogger(__name__)


class VisitJobs:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock,
        notifier_factory: Callable[[], Notifier],
        cache: Optional[VisitCountCache] = None,
        config: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.notifier_factory = notifier_factory
        self.cache = cache
        self.config = config or default_settings

    def end_of_day_sign_out(self) -> int:
        db = self.session_factory()
        try:
            return AttendanceService(db, self.clock, cache=self.cache).sign_out_open_visits()
        finally:
            db.close()

    def nightly_recalculation(self) -> BulkRecalculationResult:
        notifier = self.notifier_factory()
        db = self.session_factory()
        try:
            result = RecalculationEngine(db, self.clock, notifier, self.cache).recalculate_all()
        finally:
            db.close()
        notifier.flush()
        return result

    def cleanup_notification_logs(self) -> int:
        db = self.session_factory()
        try:
            return cleanup_notification_logs(
                db, self.clock.now(), self.config.notification_log_retention_days
            )
        finally:
            db.close()

    def register(self, scheduler: TaskScheduler):
        # Sign-outs first so the recalculation sees yesterday's visits as completed.
        scheduler.add_task("end_of_day_sign_out", self.end_of_day_sign_out, "daily", offset_minutes=1)
        scheduler.add_task("nightly_recalculation", self.nightly_recalculation, "daily", offset_minutes=5)
        scheduler.add_task(
            "notification_log_cleanup", self.cleanup_notification_logs, "daily", offset_minutes=30
        )
