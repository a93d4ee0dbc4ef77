"""Scheduled sweeps delegate to the coordinator."""

import asyncio
from datetime import timedelta

from resolution import BetStatus
from resolution.models import utc_now
from scheduler import (
    BackgroundScheduler, close_expired_bets, resolve_overdue_bets, send_deadline_reminders,
)


class TestScheduledTasks:

    def test_close_expired_bets(self, coordinator, make_bet):
        bet = make_bet(deadline=utc_now() - timedelta(minutes=1), resolution_deadline=utc_now() + timedelta(days=1))

        closed = asyncio.run(close_expired_bets(coordinator))

        assert closed == [bet.bet_id]
        assert coordinator.get_bet(bet.bet_id).status == BetStatus.CLOSED

    def test_resolve_overdue_bets(self, coordinator, make_bet):
        bet = make_bet(
            deadline=utc_now() - timedelta(hours=2),
            resolution_deadline=utc_now() - timedelta(hours=1),
        )
        coordinator.close_bet(bet.bet_id)

        results = asyncio.run(resolve_overdue_bets(coordinator))

        assert results == [(bet.bet_id, "NO_VOTES")]
        assert coordinator.get_bet(bet.bet_id).status == BetStatus.CLOSED

    def test_send_deadline_reminders(self, coordinator, make_bet):
        bet = make_bet(
            deadline=utc_now() - timedelta(hours=1),
            resolution_deadline=utc_now() + timedelta(hours=2),
        )
        coordinator.close_bet(bet.bet_id)

        assert asyncio.run(send_deadline_reminders(coordinator)) == [bet.bet_id]


class TestBackgroundScheduler:

    def test_periodic_task_runs_and_stops(self):
        calls = []

        async def tick():
            calls.append(1)

        async def scenario():
            scheduler = BackgroundScheduler()
            await scheduler.start()
            scheduler.schedule_periodic("tick", tick, interval_seconds=60, run_immediately=True)
            await asyncio.sleep(0.05)
            await scheduler.stop()
            return scheduler

        scheduler = asyncio.run(scenario())

        assert calls == [1]
        assert scheduler.tasks == {}
        assert not scheduler.running

    def test_failing_task_keeps_scheduler_alive(self):
        async def broken():
            raise ValueError("sweep failed")

        async def scenario():
            scheduler = BackgroundScheduler()
            await scheduler.start()
            scheduler.schedule_periodic("broken", broken, interval_seconds=60, run_immediately=True)
            await asyncio.sleep(0.05)
            alive = not scheduler.tasks["broken"].done()
            await scheduler.stop()
            return alive

        assert asyncio.run(scenario())
