"""
Background Scheduler for RivalPicks

Handles automatic tasks:
- Closing bets whose betting deadline has passed
- Resolving bets whose resolution deadline has passed
- Reminding resolvers before the resolution deadline

Uses asyncio for non-blocking background tasks. The coordinator calls are
blocking sqlite work, so they run in a worker thread.
"""

import asyncio
import logging
import os
import traceback
from functools import partial
from typing import Callable, Optional

from resolution import ResolutionCoordinator

logger = logging.getLogger("RivalPicks-Scheduler")

# Intervals in seconds
CLOSE_INTERVAL = int(os.getenv("SCHEDULER_CLOSE_INTERVAL", "60"))
RESOLVE_INTERVAL = int(os.getenv("SCHEDULER_RESOLVE_INTERVAL", "300"))
REMINDER_INTERVAL = int(os.getenv("SCHEDULER_REMINDER_INTERVAL", "900"))


class BackgroundScheduler:
    """
    Background task scheduler using asyncio.
    Runs periodic tasks without blocking the main API.
    """

    def __init__(self):
        self.tasks: dict[str, asyncio.Task] = {}
        self.running = False
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self.running = True
        self._stop_event = asyncio.Event()
        logger.info("Background scheduler started")

    async def stop(self):
        """Stop all scheduled tasks."""
        self.running = False
        if self._stop_event:
            self._stop_event.set()

        for name, task in self.tasks.items():
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self.tasks.clear()
        logger.info("Background scheduler stopped")

    def schedule_periodic(
        self,
        name: str,
        coro_func: Callable,
        interval_seconds: int,
        run_immediately: bool = False
    ):
        """
        Schedule a coroutine to run periodically.

        Args:
            name: Unique task name
            coro_func: Async function to run
            interval_seconds: Seconds between runs
            run_immediately: Whether to run immediately on start
        """
        if name in self.tasks:
            self.tasks[name].cancel()

        async def periodic_wrapper():
            if not run_immediately:
                await asyncio.sleep(interval_seconds)

            while self.running:
                try:
                    await coro_func()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Error in scheduled task '{name}': {e}")
                    logger.error(traceback.format_exc())

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop

        task = asyncio.create_task(periodic_wrapper())
        self.tasks[name] = task
        logger.info(f"Scheduled task '{name}' to run every {interval_seconds}s")

    def unschedule(self, name: str):
        """Remove a scheduled task."""
        if name in self.tasks:
            self.tasks[name].cancel()
            del self.tasks[name]
            logger.info(f"Unscheduled task '{name}'")


# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None


def get_scheduler() -> BackgroundScheduler:
    """Get or create the global scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = BackgroundScheduler()
    return _scheduler


# ==================== Scheduled Tasks ====================

async def close_expired_bets(coordinator: ResolutionCoordinator):
    """Close OPEN bets whose betting deadline has passed."""
    closed = await asyncio.to_thread(coordinator.close_expired_bets)
    if closed:
        logger.info(f"Auto-closed {len(closed)} bet(s)")
    return closed


async def resolve_overdue_bets(coordinator: ResolutionCoordinator):
    """Resolve CLOSED bets past their resolution deadline with the votes cast so far."""
    results = await asyncio.to_thread(coordinator.resolve_overdue_bets)
    if results:
        logger.info(f"Checked {len(results)} overdue bet(s)")
        for bet_id, state in results:
            logger.info(f"  Bet {bet_id}: {state}")
    return results


async def send_deadline_reminders(coordinator: ResolutionCoordinator):
    """Remind pending resolvers that a resolution deadline is near."""
    reminded = await asyncio.to_thread(coordinator.send_deadline_reminders)
    if reminded:
        logger.info(f"Sent resolution reminders for {len(reminded)} bet(s)")
    return reminded


# ==================== Setup Function ====================

async def setup_scheduler(coordinator: ResolutionCoordinator) -> BackgroundScheduler:
    """
    Setup and start the background scheduler with all tasks.
    Call this when the API starts.
    """
    scheduler = get_scheduler()
    await scheduler.start()

    scheduler.schedule_periodic(
        name="close_bets",
        coro_func=partial(close_expired_bets, coordinator),
        interval_seconds=CLOSE_INTERVAL,
        run_immediately=True
    )

    scheduler.schedule_periodic(
        name="resolve_overdue",
        coro_func=partial(resolve_overdue_bets, coordinator),
        interval_seconds=RESOLVE_INTERVAL,
        run_immediately=False
    )

    scheduler.schedule_periodic(
        name="deadline_reminders",
        coro_func=partial(send_deadline_reminders, coordinator),
        interval_seconds=REMINDER_INTERVAL,
        run_immediately=False
    )

    logger.info("All background tasks scheduled")
    return scheduler


async def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    scheduler = get_scheduler()
    await scheduler.stop()
