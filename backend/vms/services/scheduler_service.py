"""Background task scheduler for periodic visit jobs (sweeps, recalculation, cleanup)."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from vms.core.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

CADENCES = ("hourly", "daily", "monthly", "yearly")


def next_boundary(cadence: str, after: datetime, offset: timedelta = timedelta()) -> datetime:
    """First calendar boundary (plus ``offset``) strictly after ``after``."""
    if cadence == "hourly":
        base = after.replace(minute=0, second=0, microsecond=0)
        step = lambda b: b + timedelta(hours=1)
    elif cadence == "daily":
        base = after.replace(hour=0, minute=0, second=0, microsecond=0)
        step = lambda b: b + timedelta(days=1)
    elif cadence == "monthly":
        base = after.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        step = lambda b: b.replace(year=b.year + (b.month // 12), month=b.month % 12 + 1)
    elif cadence == "yearly":
        base = after.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
        step = lambda b: b.replace(year=b.year + 1)
    else:
        raise ValueError(f"Unknown cadence: {cadence}")

    candidate = base + offset
    while candidate <= after:
        base = step(base)
        candidate = base + offset
    return candidate


class TaskScheduler:
    """Lightweight asyncio-based task scheduler.

    Runs registered tasks on hourly, daily, monthly or yearly boundaries of
    the injected clock. Does not survive restarts; a job missed while the process
    was down runs at its next boundary.
    """

    def __init__(self, clock: Optional[Clock] = None, poll_seconds: int = 60):
        self.clock = clock or SystemClock()
        self.poll_seconds = poll_seconds
        self._tasks: Dict[str, Dict[str, Any]] = {}
        self._running = False

    async def start(self):
        """Start the scheduler loop."""
        self._running = True
        logger.info("Task scheduler started")

        while self._running:
            await self.run_pending()
            await asyncio.sleep(self.poll_seconds)

    def stop(self):
        self._running = False

    async def run_pending(self) -> int:
        """Run every task that is due. Returns the number of tasks run."""
        now = self.clock.now()
        ran = 0
        for name, task in list(self._tasks.items()):
            if now < task["next_run"]:
                continue
            try:
                if asyncio.iscoroutinefunction(task["func"]):
                    await task["func"]()
                else:
                    # Blocking jobs (bulk DB passes, gateway sends) run in the thread pool
                    loop = asyncio.get_running_loop()
                    await loop.run_in_executor(None, task["func"])
                task["last_run"] = now
                task["run_count"] = task.get("run_count", 0) + 1
                task["last_error"] = None
                logger.debug(f"Scheduled task '{name}' completed")
            except Exception as e:
                task["last_error"] = str(e)
                logger.error(f"Scheduled task '{name}' failed: {e}")
            task["next_run"] = next_boundary(task["cadence"], now, task["offset"])
            ran += 1
        return ran

    def add_task(self, name: str, func: Callable, cadence: str, offset_minutes: int = 0):
        """Run ``func`` at every hourly/daily/monthly/yearly boundary plus an offset."""
        if cadence not in CADENCES:
            raise ValueError(f"Unknown cadence: {cadence}")
        offset = timedelta(minutes=offset_minutes)
        self._tasks[name] = {
            "func": func,
            "cadence": cadence,
            "offset": offset,
            "next_run": next_boundary(cadence, self.clock.now(), offset),
            "last_run": None,
            "run_count": 0,
            "last_error": None,
        }
        logger.info(f"Scheduled task '{name}' {cadence} (+{offset_minutes}m)")

    def get_status(self) -> Dict[str, Any]:
        return {
            name: {
                "cadence": t["cadence"],
                "last_run": t["last_run"].isoformat() if t["last_run"] else None,
                "next_run": t["next_run"].isoformat(),
                "run_count": t.get("run_count", 0),
                "last_error": t.get("last_error"),
            }
            for name, t in self._tasks.items()
        }
