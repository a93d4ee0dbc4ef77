"""Event fan-out."""

from resolution.events import (
    BetClosedEvent, BetEvent, BetResolutionDeadlineApproachingEvent, BetResolvedEvent, EventDispatcher,
)
from resolution.models import utc_now


class TestEventDispatcher:

    def test_handlers_receive_matching_events(self):
        dispatcher = EventDispatcher()
        everything, resolved = [], []
        dispatcher.subscribe(BetEvent, everything.append)
        dispatcher.subscribe(BetResolvedEvent, resolved.append)

        dispatcher.publish(BetClosedEvent(bet_id="bet_1", resolver_ids=["judge"]))
        dispatcher.publish(BetResolvedEvent(bet_id="bet_1", outcome="YES"))

        assert [e.name for e in everything] == ["BetClosedEvent", "BetResolvedEvent"]
        assert [e.outcome for e in resolved] == ["YES"]

    def test_failing_handler_does_not_stop_delivery(self):
        dispatcher = EventDispatcher()
        received = []

        def broken(event):
            raise ConnectionError("push service down")

        dispatcher.subscribe(BetEvent, broken)
        dispatcher.subscribe(BetEvent, received.append)

        dispatcher.publish(BetClosedEvent(bet_id="bet_1"))

        assert len(received) == 1

    def test_to_dict_serializes_datetimes(self):
        deadline = utc_now()
        event = BetResolutionDeadlineApproachingEvent(
            bet_id="bet_1", pending_resolver_ids=["judge"], resolution_deadline=deadline,
        )

        data = event.to_dict()

        assert data["event"] == "BetResolutionDeadlineApproachingEvent"
        assert data["resolution_deadline"] == deadline.isoformat()
        assert isinstance(data["occurred_at"], str)


class TestCoordinatorEvents:

    def test_handler_failure_does_not_undo_state(self, coordinator, make_bet):
        def broken(event):
            raise RuntimeError("notification failed")

        coordinator.dispatcher.subscribe(BetClosedEvent, broken)
        bet = make_bet()

        coordinator.close_bet(bet.bet_id)

        assert coordinator.get_bet(bet.bet_id).status.value == "CLOSED"
